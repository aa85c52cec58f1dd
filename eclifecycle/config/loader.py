"""
Configuration loader for the lifecycle orchestrators.

One LifecycleConfig is built per invocation (files, then environment, then
command-line overrides) and passed explicitly to every component.
"""

import os
import logging
import yaml
from pathlib import Path
from typing import Callable, Dict, Any, List, Optional
from dataclasses import dataclass, field

from ..errors.errors import new_configuration_error

logger = logging.getLogger(__name__)


@dataclass
class RuntimeConfig:
    """Host runtime paths and ports."""
    data_dir: str = "/var/lib/embedded-cluster"
    admin_console_port: int = 30000
    local_artifact_mirror_port: int = 50000
    binary_name: str = "embedded-cluster"
    kubeconfig: str = ""

    def path_to(self, *parts: str) -> str:
        """Join a path below the data directory."""
        return str(Path(self.data_dir).joinpath(*parts))

    def path_to_kubeconfig(self) -> str:
        """Configured kubeconfig, else the admin kubeconfig written by the cluster install."""
        return self.kubeconfig or self.path_to("k0s", "pki", "admin.conf")


@dataclass
class NamespacesConfig:
    """Namespaces of the components touched by restore and upgrade."""
    embedded_cluster: str = "embedded-cluster"
    velero: str = "velero"
    kotsadm: str = "kotsadm"
    seaweedfs: str = "seaweedfs"
    registry: str = "registry"


@dataclass
class NetworkConfig:
    """Cluster network configuration."""
    pod_cidr: str = ""
    service_cidr: str = ""
    global_cidr: str = ""
    network_interface: str = ""
    k0s_config_path: str = "/etc/k0s/k0s.yaml"


@dataclass
class ReleaseConfig:
    """Facts about the release embedded in the running binary."""
    version: str = ""
    app_slug: str = ""
    version_label: str = ""
    improved_dr: bool = False
    metadata_url: str = "https://embedded-cluster-public-files.s3.amazonaws.com/metadata"


@dataclass
class BackupStoreConfig:
    """S3 backup storage location."""
    endpoint: str = ""
    region: str = ""
    bucket: str = ""
    prefix: str = ""
    access_key_id: str = ""
    secret_access_key: str = ""


@dataclass
class RestoreConfig:
    """Restore behavior."""
    airgap: bool = False
    airgap_bundle: str = ""
    skip_store_validation: bool = False
    assume_yes: bool = False
    backup_list_tries: int = 30
    backup_list_interval: float = 5.0


@dataclass
class WaitConfig:
    """Readiness waiter budgets."""
    steps: int = 60
    duration: float = 5.0
    factor: float = 1.0
    jitter: float = 0.1
    long_steps: int = 720


@dataclass
class UpgradeConfig:
    """Upgrade behavior."""
    local_artifact_mirror_image: str = ""
    operator_chart_name: str = "embedded-cluster-operator"


@dataclass
class LoggingConfig:
    """Logging configuration."""
    level: str = "info"
    format: str = "text"


@dataclass
class LifecycleConfig:
    """Complete lifecycle configuration."""
    schema_version: str = "1.0.0"
    runtime: RuntimeConfig = field(default_factory=RuntimeConfig)
    namespaces: NamespacesConfig = field(default_factory=NamespacesConfig)
    network: NetworkConfig = field(default_factory=NetworkConfig)
    release: ReleaseConfig = field(default_factory=ReleaseConfig)
    backup_store: BackupStoreConfig = field(default_factory=BackupStoreConfig)
    restore: RestoreConfig = field(default_factory=RestoreConfig)
    wait: WaitConfig = field(default_factory=WaitConfig)
    upgrade: UpgradeConfig = field(default_factory=UpgradeConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


_SECTIONS = (
    'runtime', 'namespaces', 'network', 'release', 'backup_store',
    'restore', 'wait', 'upgrade', 'logging',
)

# environment variable -> (section, field)
_ENV_OVERRIDES = {
    'EC_DATA_DIR': ('runtime', 'data_dir'),
    'EC_ADMIN_CONSOLE_PORT': ('runtime', 'admin_console_port'),
    'EC_LOCAL_ARTIFACT_MIRROR_PORT': ('runtime', 'local_artifact_mirror_port'),
    'EC_BINARY_NAME': ('runtime', 'binary_name'),
    'KUBECONFIG': ('runtime', 'kubeconfig'),
    'EC_POD_CIDR': ('network', 'pod_cidr'),
    'EC_SERVICE_CIDR': ('network', 'service_cidr'),
    'EC_NETWORK_INTERFACE': ('network', 'network_interface'),
    'EC_VERSION': ('release', 'version'),
    'EC_APP_SLUG': ('release', 'app_slug'),
    'EC_APP_VERSION_LABEL': ('release', 'version_label'),
    'EC_S3_ENDPOINT': ('backup_store', 'endpoint'),
    'EC_S3_REGION': ('backup_store', 'region'),
    'EC_S3_BUCKET': ('backup_store', 'bucket'),
    'EC_S3_PREFIX': ('backup_store', 'prefix'),
    'EC_S3_ACCESS_KEY_ID': ('backup_store', 'access_key_id'),
    'EC_S3_SECRET_ACCESS_KEY': ('backup_store', 'secret_access_key'),
    'EC_AIRGAP': ('restore', 'airgap'),
    'EC_LOCAL_ARTIFACT_MIRROR_IMAGE': ('upgrade', 'local_artifact_mirror_image'),
    'LOG_LEVEL': ('logging', 'level'),
    'LOG_FORMAT': ('logging', 'format'),
}


class ConfigLoader:
    """Configuration loader for lifecycle configuration."""

    def __init__(self, config_paths: Optional[List[str]] = None):
        """Initialize configuration loader.

        Args:
            config_paths: List of configuration file paths to load
        """
        self.config_paths = config_paths or self._default_config_paths()
        self.unknown_keys: List[str] = []

    @staticmethod
    def _default_config_paths() -> List[str]:
        """Get default configuration file paths."""
        paths = [
            "/etc/embedded-cluster/lifecycle.yaml",
            "./lifecycle.yaml",
        ]

        home = Path.home()
        paths.append(str(home / ".embedded-cluster" / "lifecycle.yaml"))

        return paths

    def load(self) -> LifecycleConfig:
        """Load, merge and validate configuration from all sources.

        Returns:
            LifecycleConfig: Loaded and validated configuration
        """
        config = self.load_without_validation()
        self.validate(config)
        return config

    def load_without_validation(self) -> LifecycleConfig:
        """Load configuration without validation (for testing or special cases).

        Returns:
            LifecycleConfig: Loaded configuration without validation
        """
        config = LifecycleConfig()
        self.unknown_keys = []

        for path in self.config_paths:
            config = self._load_file(path, config)

        config = self._apply_environment_overrides(config)
        config = self._expand_environment_variables(config)

        return config

    def _load_file(self, path: str, config: LifecycleConfig) -> LifecycleConfig:
        """Load configuration from a YAML file.

        Args:
            path: Path to configuration file
            config: Existing configuration to merge with

        Returns:
            LifecycleConfig: Merged configuration

        Raises:
            StandardError: If the file exists but cannot be parsed
        """
        path_obj = Path(path)
        if not path_obj.exists():
            return config

        try:
            with open(path_obj, 'r') as f:
                data = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            raise new_configuration_error("config", "load", f"unable to read config file {path}", e)

        if data:
            if not isinstance(data, dict):
                raise new_configuration_error("config", "load", f"config file {path} must contain a mapping")
            logger.debug(f"Merging configuration from {path}")
            config = self._merge_configs(config, data)

        return config

    def _merge_configs(self, config: LifecycleConfig, data: Dict[str, Any]) -> LifecycleConfig:
        """Merge configuration data into existing config.

        Unknown keys are kept out of the dataclasses and reported by validate.
        """
        config.schema_version = data.get('schema_version', config.schema_version)

        for key in data:
            if key != 'schema_version' and key not in _SECTIONS:
                self.unknown_keys.append(key)

        for section_name in _SECTIONS:
            section_data = data.get(section_name)
            if not isinstance(section_data, dict):
                continue
            section = getattr(config, section_name)
            for key, value in section_data.items():
                if hasattr(section, key):
                    setattr(section, key, value)
                else:
                    self.unknown_keys.append(f"{section_name}.{key}")

        return config

    def _apply_environment_overrides(self, config: LifecycleConfig) -> LifecycleConfig:
        """Apply environment variable overrides.

        Args:
            config: Configuration to override

        Returns:
            LifecycleConfig: Configuration with environment overrides applied
        """
        for env_name, (section_name, field_name) in _ENV_OVERRIDES.items():
            raw = os.getenv(env_name)
            if raw is None or raw == "":
                continue

            section = getattr(config, section_name)
            current = getattr(section, field_name)
            try:
                setattr(section, field_name, _coerce(raw, current))
            except ValueError:
                logger.warning(f"Ignoring {env_name}={raw!r}: expected {type(current).__name__}")

        return config

    def _expand_environment_variables(self, config: LifecycleConfig) -> LifecycleConfig:
        """Expand environment variables in path-like string fields."""
        config.runtime.data_dir = os.path.expandvars(config.runtime.data_dir)
        config.runtime.kubeconfig = os.path.expanduser(os.path.expandvars(config.runtime.kubeconfig))
        config.network.k0s_config_path = os.path.expandvars(config.network.k0s_config_path)
        config.restore.airgap_bundle = os.path.expanduser(os.path.expandvars(config.restore.airgap_bundle))
        config.backup_store.endpoint = os.path.expandvars(config.backup_store.endpoint)

        return config

    def validate(self, config: LifecycleConfig) -> None:
        """Validate configuration.

        Raises:
            StandardError: If configuration is invalid
        """
        from .validator import validate_config

        validation_result = validate_config(config_to_dict(config))
        for key in self.unknown_keys:
            validation_result.add_error(key, None, "Unknown configuration key")

        if not validation_result.valid:
            raise new_configuration_error(
                "config", "validate",
                f"Configuration validation failed:\n{validation_result.format_result()}"
            )

        if validation_result.warnings:
            logger.warning(f"Configuration loaded with warnings:\n{validation_result.format_result()}")


def _coerce(raw: str, current: Any) -> Any:
    if isinstance(current, bool):
        return raw.lower() in ('1', 'true', 'yes')
    if isinstance(current, int):
        return int(raw)
    if isinstance(current, float):
        return float(raw)
    return raw


def config_to_dict(config: LifecycleConfig) -> Dict[str, Any]:
    """Convert configuration to dictionary.

    Args:
        config: Configuration to convert

    Returns:
        Dict[str, Any]: Configuration as dictionary
    """
    result: Dict[str, Any] = {'schema_version': config.schema_version}
    for section_name in _SECTIONS:
        result[section_name] = dict(vars(getattr(config, section_name)))
    return result


def load_config(
    config_path: Optional[str] = None,
    overrides: Optional[Callable[[LifecycleConfig], None]] = None,
) -> LifecycleConfig:
    """Load configuration from an explicit file or the default locations.

    Overrides (command line flags) are applied before validation so they are
    held to the same rules as file and environment values.
    """
    loader = ConfigLoader([config_path] if config_path else None)
    config = loader.load_without_validation()
    if overrides is not None:
        overrides(config)
    loader.validate(config)
    return config
