"""Utilities for the trusted setup pipeline."""

from .utils import (
    setup_logging,
    save_results,
    load_results,
    hash_file,
    PerformanceMonitor,
    create_performance_report,
    check_command_exists,
    format_duration,
    format_bytes,
)

__all__ = [
    'setup_logging',
    'save_results',
    'load_results',
    'hash_file',
    'PerformanceMonitor',
    'create_performance_report',
    'check_command_exists',
    'format_duration',
    'format_bytes',
]
