"""Configuration management for the trusted setup pipeline."""

from .config import (
    SetupConfig,
    ToolConfig,
    CeremonyConfig,
    ConfigurationError,
    load_config,
    save_config,
    config_from_dict,
)

__all__ = ['SetupConfig', 'ToolConfig', 'CeremonyConfig', 'ConfigurationError',
           'load_config', 'save_config', 'config_from_dict']
