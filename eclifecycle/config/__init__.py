"""Lifecycle configuration: dataclass sections, YAML/env loading and validation."""

from .loader import (
    LifecycleConfig, RuntimeConfig, NamespacesConfig, NetworkConfig, ReleaseConfig,
    BackupStoreConfig, RestoreConfig, WaitConfig, UpgradeConfig, LoggingConfig,
    ConfigLoader, config_to_dict, load_config
)
from .validator import ValidationResult, validate_config, validate_config_file

__all__ = [
    'LifecycleConfig', 'RuntimeConfig', 'NamespacesConfig', 'NetworkConfig', 'ReleaseConfig',
    'BackupStoreConfig', 'RestoreConfig', 'WaitConfig', 'UpgradeConfig', 'LoggingConfig',
    'ConfigLoader', 'config_to_dict', 'load_config',
    'ValidationResult', 'validate_config', 'validate_config_file',
]
