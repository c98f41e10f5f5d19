"""
Utilities for the trusted setup pipeline: logging, stage timing,
file digests and run report serialization.
"""

import hashlib
import json
import logging
import platform
import shutil
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

import numpy as np
import psutil


@dataclass
class PerformanceMetrics:
    operation: str
    duration_seconds: float
    cpu_percent: float
    memory_mb: float
    timestamp: float
    additional_data: Dict[str, Any] = field(default_factory=dict)


def setup_logging(log_level: str = "INFO", log_file: Optional[Path] = None,
                  log_dir: Path = Path("logs")) -> logging.Logger:
    """Setup logging to a timestamped file and the console"""
    if log_file is None:
        log_file = Path(log_dir) / \
            f"zk_setup_{datetime.now().strftime('%Y%m%d_%H%M%S')}.log"

    log_file = Path(log_file)
    log_file.parent.mkdir(parents=True, exist_ok=True)

    # Clear existing handlers to avoid duplicates
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format='%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s',
        handlers=[
            logging.FileHandler(log_file),
            logging.StreamHandler()
        ]
    )

    logging.getLogger("asyncio").setLevel(logging.WARNING)

    logger = logging.getLogger(__name__)
    logger.info(f"Logging initialized. Log file: {log_file}")

    return logger


class PerformanceMonitor:
    """Records wall time, CPU (including child tools) and memory for each pipeline stage"""

    def __init__(self):
        self.metrics: List[PerformanceMetrics] = []
        self.process = psutil.Process()

    def start_operation(self, operation_name: str) -> 'OperationContext':
        """Start monitoring an operation - returns context manager"""
        return OperationContext(self, operation_name)

    def record_metric(self, metric: PerformanceMetrics):
        self.metrics.append(metric)

    def get_summary(self) -> Dict[str, Any]:
        """Per-operation statistics over all recorded metrics"""
        if not self.metrics:
            return {
                'total_operations': 0,
                'total_duration': 0.0,
                'operations': {}
            }

        operation_groups: Dict[str, List[PerformanceMetrics]] = {}
        for metric in self.metrics:
            operation_groups.setdefault(metric.operation, []).append(metric)

        summary = {
            'total_operations': len(self.metrics),
            'operations': {}
        }

        for op_name, metrics in operation_groups.items():
            durations = [m.duration_seconds for m in metrics]
            cpu_usages = [m.cpu_percent for m in metrics if m.cpu_percent > 0]
            memory_usages = [m.memory_mb for m in metrics if m.memory_mb > 0]

            summary['operations'][op_name] = {
                'count': len(metrics),
                'total_duration': float(np.sum(durations)),
                'avg_duration': float(np.mean(durations)),
                'min_duration': min(durations),
                'max_duration': max(durations),
                'std_duration': float(np.std(durations)) if len(durations) > 1 else 0.0,
                'avg_cpu_percent': float(np.mean(cpu_usages)) if cpu_usages else 0.0,
                'peak_memory_mb': max(memory_usages) if memory_usages else 0.0,
                'failed': sum(1 for m in metrics if m.additional_data.get('exception')),
            }

        summary['total_duration'] = sum(
            op_data['total_duration']
            for op_data in summary['operations'].values()
        )

        return summary


class OperationContext:
    """Context manager for performance monitoring.

    CPU is measured over the controller and every child process it reaped
    during the operation, which is where circom and snarkjs spend their time.
    """

    def __init__(self, monitor: PerformanceMonitor, operation_name: str):
        self.monitor = monitor
        self.operation_name = operation_name
        self.start_time = 0.0
        self.start_cpu = 0.0
        self.start_memory = 0.0

    def __enter__(self):
        self.start_time = time.time()
        try:
            self.start_cpu = cpu_seconds(self.monitor.process)
            self.start_memory = self.monitor.process.memory_info().rss / 1024 / 1024
        except psutil.Error as e:
            logging.debug(f"Performance monitoring error: {e}")
            self.start_cpu = 0.0
            self.start_memory = 0.0
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        duration = time.time() - self.start_time

        try:
            cpu_used = cpu_seconds(self.monitor.process) - self.start_cpu
            end_memory = self.monitor.process.memory_info().rss / 1024 / 1024
        except psutil.Error as e:
            logging.debug(f"Performance monitoring error: {e}")
            cpu_used = 0.0
            end_memory = self.start_memory

        # Above 100% when tools use several cores
        cpu_percent = 100.0 * cpu_used / duration if duration > 0 else 0.0

        self.monitor.record_metric(PerformanceMetrics(
            operation=self.operation_name,
            duration_seconds=duration,
            cpu_percent=cpu_percent,
            memory_mb=max(self.start_memory, end_memory),
            timestamp=self.start_time,
            additional_data={'exception': exc_type is not None, 'cpu_seconds': cpu_used}
        ))
        return False


def cpu_seconds(process: psutil.Process) -> float:
    """CPU time of a process plus the children it has waited for"""
    times = process.cpu_times()
    return times.user + times.system + times.children_user + times.children_system


def get_system_info() -> Dict[str, Any]:
    """Host description recorded alongside run reports"""
    vm = psutil.virtual_memory()
    return {
        'platform': platform.platform(),
        'python_version': platform.python_version(),
        'machine': platform.machine(),
        'cpu_count_logical': psutil.cpu_count(logical=True),
        'total_memory_gb': round(vm.total / 1024 / 1024 / 1024, 2),
        'timestamp': datetime.now().isoformat()
    }


def hash_file(file_path: Path) -> str:
    """Compute Blake2b hash of file"""
    h = hashlib.blake2b()
    with open(file_path, 'rb') as f:
        while chunk := f.read(8192):
            h.update(chunk)
    return h.hexdigest()


def convert_to_serializable(obj: Any) -> Any:
    if hasattr(obj, '__dataclass_fields__'):
        return convert_to_serializable(asdict(obj))
    elif isinstance(obj, Enum):
        return obj.value
    elif isinstance(obj, dict):
        return {str(convert_to_serializable(k)): convert_to_serializable(v)
                for k, v in obj.items()}
    elif isinstance(obj, (list, tuple)):
        return [convert_to_serializable(item) for item in obj]
    elif isinstance(obj, (np.integer, np.floating)):
        return obj.item()
    elif isinstance(obj, Path):
        return str(obj)
    elif isinstance(obj, datetime):
        return obj.isoformat()
    return obj


def save_results(results: Dict[str, Any], filepath: Path) -> Path:
    """Save a run report as JSON with metadata, plus a text summary"""
    filepath = Path(filepath)
    filepath.parent.mkdir(parents=True, exist_ok=True)

    enhanced_results = {
        'metadata': {
            'generated_at': datetime.now().isoformat(),
            'system_info': get_system_info(),
        },
        'data': convert_to_serializable(results)
    }

    tmp_path = filepath.with_name(f"{filepath.name}.tmp")
    with open(tmp_path, 'w') as f:
        json.dump(enhanced_results, f, indent=2, default=str)
    tmp_path.replace(filepath)

    summary_path = filepath.parent / f"{filepath.stem}_summary.txt"
    with open(summary_path, 'w') as f:
        f.write(create_results_summary(results))

    logging.info(f"Results saved to {filepath}")
    return filepath


def load_results(filepath: Path) -> Optional[Dict[str, Any]]:
    """Read back the 'data' section written by save_results"""
    filepath = Path(filepath)
    if not filepath.exists():
        return None
    with open(filepath, 'r') as f:
        content = json.load(f)
    return content.get('data')


def create_results_summary(results: Dict[str, Any]) -> str:
    """Human-readable summary of a setup run"""
    summary = []
    summary.append("=" * 80)
    summary.append("GROTH16 TRUSTED SETUP - RUN SUMMARY")
    summary.append("=" * 80)
    summary.append(f"Generated: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    summary.append(f"Circuit: {results.get('circuit', 'unknown')}")
    summary.append(f"Power of tau: {results.get('power', 'unknown')}")
    summary.append("")

    stages = results.get('stages') or []
    if stages:
        summary.append("STAGES:")
        for stage in stages:
            stage = convert_to_serializable(stage)
            status = "reused" if stage.get('skipped') else "executed"
            duration = format_duration(stage.get('duration') or 0.0)
            summary.append(f"  {stage.get('stage')}: {status} ({duration})")
        summary.append("")

    artifacts = results.get('artifacts') or {}
    if artifacts:
        summary.append("ARTIFACTS:")
        for role, info in artifacts.items():
            size = format_bytes(info.get('size', 0)) if isinstance(info, dict) else ""
            path = info.get('path') if isinstance(info, dict) else info
            summary.append(f"  {role}: {path} {size}".rstrip())
        summary.append("")

    summary.append("=" * 80)
    return "\n".join(summary)


def create_performance_report(metrics: PerformanceMonitor) -> str:
    """Create detailed performance report from metrics"""
    summary = metrics.get_summary()

    report = []
    report.append("=" * 80)
    report.append("GROTH16 TRUSTED SETUP - PERFORMANCE REPORT")
    report.append("=" * 80)
    report.append(f"Total Operations: {summary.get('total_operations', 0)}")
    report.append(f"Total Duration: {format_duration(summary.get('total_duration', 0.0))}")
    report.append("")

    if summary['operations']:
        report.append("STAGE BREAKDOWN:")
        report.append("-" * 60)
        for op_name, op_data in summary['operations'].items():
            report.append(f"\n{op_name.upper()}:")
            report.append(f"  Executions: {op_data['count']}")
            report.append(f"  Total Time: {format_duration(op_data['total_duration'])}")
            if op_data['avg_cpu_percent'] > 0:
                report.append(f"  Average CPU (incl. tools): {op_data['avg_cpu_percent']:.1f}%")
            if op_data['peak_memory_mb'] > 0:
                report.append(f"  Peak Memory: {op_data['peak_memory_mb']:.1f} MB")
            if op_data['failed']:
                report.append(f"  Failed: {op_data['failed']}")
    else:
        report.append("No stages executed.")

    report.append("")
    report.append("=" * 80)
    return "\n".join(report)


def check_command_exists(command: str) -> bool:
    """Check if command exists in system PATH"""
    return shutil.which(command) is not None


def format_duration(seconds: float) -> str:
    """Format duration in human-readable format"""
    if seconds < 1:
        return f"{seconds*1000:.1f}ms"
    elif seconds < 60:
        return f"{seconds:.2f}s"
    elif seconds < 3600:
        minutes = int(seconds // 60)
        secs = seconds % 60
        return f"{minutes}m {secs:.1f}s"
    else:
        hours = int(seconds // 3600)
        minutes = int((seconds % 3600) // 60)
        secs = seconds % 60
        return f"{hours}h {minutes}m {secs:.1f}s"


def format_bytes(bytes_value: int) -> str:
    """Format bytes in human-readable format"""
    value = float(bytes_value)
    for unit in ['B', 'KB', 'MB', 'GB', 'TB']:
        if value < 1024.0:
            return f"{value:.1f}{unit}"
        value /= 1024.0
    return f"{value:.1f}PB"


__all__ = [
    'PerformanceMetrics',
    'PerformanceMonitor',
    'OperationContext',
    'cpu_seconds',
    'setup_logging',
    'get_system_info',
    'hash_file',
    'convert_to_serializable',
    'save_results',
    'load_results',
    'create_results_summary',
    'create_performance_report',
    'check_command_exists',
    'format_duration',
    'format_bytes',
]
