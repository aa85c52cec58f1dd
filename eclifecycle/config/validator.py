"""
Schema validation for lifecycle configuration.

Each section of the dictionary form of LifecycleConfig is checked by a
pydantic v2 model. Cross-section rules run afterwards and every problem is
collected into a ValidationResult rather than raised one at a time.
"""

import ipaddress
import re
from typing import Dict, Any, List, Union
from pathlib import Path
from pydantic import BaseModel, Field, field_validator, model_validator, ValidationError as PydanticValidationError
from pydantic.config import ConfigDict


class ValidationError:
    """One finding about one config field."""

    def __init__(self, field: str, value: Any, message: str, level: str = "error"):
        self.field = field
        self.value = value
        self.message = message
        self.level = level  # "error" or "warning"

    def __repr__(self):
        return f"ValidationError(field={self.field}, message={self.message}, level={self.level})"


class ValidationResult:
    """Errors and warnings collected while checking a lifecycle config."""

    def __init__(self):
        self.errors: List[ValidationError] = []
        self.warnings: List[ValidationError] = []
        self.valid: bool = True

    def add_error(self, field: str, value: Any, message: str):
        """Record a finding that fails validation."""
        self.errors.append(ValidationError(field, value, message, "error"))
        self.valid = False

    def add_warning(self, field: str, value: Any, message: str):
        """Record a finding that is reported but accepted."""
        self.warnings.append(ValidationError(field, value, message, "warning"))

    def format_result(self) -> str:
        """Human-readable report, one line per finding."""
        output = []

        if self.valid:
            output.append("✅ Configuration is valid")
        else:
            output.append(f"❌ Configuration validation failed with {len(self.errors)} error(s):\n")
            for error in self.errors:
                output.append(f"  ❌ {error.field}: {error.message}")
                if error.value is not None and error.value != "":
                    output.append(f"     Current value: {error.value}")

        if self.warnings:
            output.append(f"\n⚠️  {len(self.warnings)} warning(s):")
            for warning in self.warnings:
                output.append(f"  - {warning.field}: {warning.message}")

        return "\n".join(output)


def _check_cidr(v: str) -> str:
    if v:
        try:
            ipaddress.ip_network(v, strict=False)
        except ValueError:
            raise ValueError(f"Invalid CIDR: {v}")
    return v


class ValidatedRuntimeConfig(BaseModel):
    """Runtime configuration with validation."""
    model_config = ConfigDict(validate_default=True, extra='forbid')

    data_dir: str = Field(default="/var/lib/embedded-cluster", min_length=1)
    admin_console_port: int = Field(default=30000, ge=1, le=65535)
    local_artifact_mirror_port: int = Field(default=50000, ge=1, le=65535)
    binary_name: str = Field(default="embedded-cluster", min_length=1)
    kubeconfig: str = Field(default="")

    @field_validator('data_dir')
    @classmethod
    def validate_data_dir(cls, v):
        """Data directory must be absolute."""
        if not v.startswith('/'):
            raise ValueError("Data directory must be an absolute path")
        return v

    @field_validator('binary_name')
    @classmethod
    def validate_binary_name(cls, v):
        if not re.match(r'^[a-zA-Z0-9][a-zA-Z0-9_\-\.]*$', v):
            raise ValueError("Invalid binary name")
        return v

    @model_validator(mode='after')
    def validate_distinct_ports(self):
        """Admin console and local artifact mirror cannot share a port."""
        if self.admin_console_port == self.local_artifact_mirror_port:
            raise ValueError("Admin console and local artifact mirror ports must differ")
        return self


class ValidatedNamespacesConfig(BaseModel):
    """Namespace configuration with validation."""
    model_config = ConfigDict(validate_default=True, extra='forbid')

    embedded_cluster: str = Field(default="embedded-cluster", pattern=r"^[a-z0-9]([a-z0-9\-]*[a-z0-9])?$")
    velero: str = Field(default="velero", pattern=r"^[a-z0-9]([a-z0-9\-]*[a-z0-9])?$")
    kotsadm: str = Field(default="kotsadm", pattern=r"^[a-z0-9]([a-z0-9\-]*[a-z0-9])?$")
    seaweedfs: str = Field(default="seaweedfs", pattern=r"^[a-z0-9]([a-z0-9\-]*[a-z0-9])?$")
    registry: str = Field(default="registry", pattern=r"^[a-z0-9]([a-z0-9\-]*[a-z0-9])?$")


class ValidatedNetworkConfig(BaseModel):
    """Network configuration with validation."""
    model_config = ConfigDict(validate_default=True, extra='forbid')

    pod_cidr: str = Field(default="")
    service_cidr: str = Field(default="")
    global_cidr: str = Field(default="")
    network_interface: str = Field(default="")
    k0s_config_path: str = Field(default="/etc/k0s/k0s.yaml")

    @field_validator('pod_cidr', 'service_cidr')
    @classmethod
    def validate_cidr(cls, v):
        return _check_cidr(v)

    @field_validator('global_cidr')
    @classmethod
    def validate_global_cidr(cls, v):
        """The global CIDR is split in two halves for pods and services."""
        _check_cidr(v)
        if v:
            network = ipaddress.ip_network(v, strict=False)
            if network.prefixlen >= network.max_prefixlen:
                raise ValueError(f"CIDR {v} is too small to split into pod and service networks")
        return v

    @model_validator(mode='after')
    def validate_cidr_pair(self):
        """Pod and service CIDR are given together or not at all, and never with a global CIDR."""
        if bool(self.pod_cidr) != bool(self.service_cidr):
            raise ValueError("Pod CIDR and service CIDR must be set together")
        if self.global_cidr and self.pod_cidr:
            raise ValueError("Global CIDR cannot be combined with pod and service CIDRs")
        return self


class ValidatedReleaseConfig(BaseModel):
    """Release configuration with validation."""
    model_config = ConfigDict(validate_default=True, extra='forbid')

    version: str = Field(default="")
    app_slug: str = Field(default="")
    version_label: str = Field(default="")
    improved_dr: bool = Field(default=False)
    metadata_url: str = Field(default="https://embedded-cluster-public-files.s3.amazonaws.com/metadata")

    @field_validator('metadata_url')
    @classmethod
    def validate_metadata_url(cls, v):
        if v and not re.match(r'^https?://', v):
            raise ValueError("Metadata URL must start with http:// or https://")
        return v


class ValidatedBackupStoreConfig(BaseModel):
    """Backup storage configuration with validation."""
    model_config = ConfigDict(validate_default=True, extra='forbid')

    endpoint: str = Field(default="")
    region: str = Field(default="")
    bucket: str = Field(default="")
    prefix: str = Field(default="")
    access_key_id: str = Field(default="")
    secret_access_key: str = Field(default="")

    @field_validator('endpoint')
    @classmethod
    def validate_endpoint(cls, v):
        """S3 endpoints need an explicit scheme."""
        if v and not v.startswith(('http://', 'https://')):
            raise ValueError("S3 endpoint must start with http:// or https://")
        return v

    @field_validator('bucket')
    @classmethod
    def validate_bucket_name(cls, v):
        """Validate S3 bucket naming rules."""
        if v and (len(v) < 3 or len(v) > 63 or not re.match(r'^[a-z0-9][a-z0-9\-\.]*[a-z0-9]$', v)):
            raise ValueError(f"Invalid bucket name: {v}")
        return v


class ValidatedRestoreConfig(BaseModel):
    """Restore configuration with validation."""
    model_config = ConfigDict(validate_default=True, extra='forbid')

    airgap: bool = Field(default=False)
    airgap_bundle: str = Field(default="")
    skip_store_validation: bool = Field(default=False)
    assume_yes: bool = Field(default=False)
    backup_list_tries: int = Field(default=30, gt=0)
    backup_list_interval: float = Field(default=5.0, ge=0)


class ValidatedWaitConfig(BaseModel):
    """Readiness waiter budgets with validation."""
    model_config = ConfigDict(validate_default=True, extra='forbid')

    steps: int = Field(default=60, gt=0)
    duration: float = Field(default=5.0, ge=0)
    factor: float = Field(default=1.0, ge=1.0)
    jitter: float = Field(default=0.1, ge=0, le=1.0)
    long_steps: int = Field(default=720, gt=0)


class ValidatedUpgradeConfig(BaseModel):
    """Upgrade configuration with validation."""
    model_config = ConfigDict(validate_default=True, extra='forbid')

    local_artifact_mirror_image: str = Field(default="")
    operator_chart_name: str = Field(default="embedded-cluster-operator", min_length=1)


class ValidatedLoggingConfig(BaseModel):
    """Logging configuration with validation."""
    model_config = ConfigDict(validate_default=True, extra='forbid')

    level: str = Field(default="info", pattern="^(debug|info|warning|error)$")
    format: str = Field(default="text", pattern="^(text|json)$")


_SECTION_MODELS = {
    'runtime': ValidatedRuntimeConfig,
    'namespaces': ValidatedNamespacesConfig,
    'network': ValidatedNetworkConfig,
    'release': ValidatedReleaseConfig,
    'backup_store': ValidatedBackupStoreConfig,
    'restore': ValidatedRestoreConfig,
    'wait': ValidatedWaitConfig,
    'upgrade': ValidatedUpgradeConfig,
    'logging': ValidatedLoggingConfig,
}


class ConfigValidator:
    """Checks a lifecycle config dictionary section by section, then across sections."""

    def __init__(self, config_dict: Dict[str, Any]):
        self.config_dict = config_dict or {}
        self.result = ValidationResult()

    def validate(self) -> ValidationResult:
        """Run the section models and the cross-section rules."""
        for key in self.config_dict:
            if key != 'schema_version' and key not in _SECTION_MODELS:
                self.result.add_error(key, None, "Unknown configuration section")

        for section_name, model in _SECTION_MODELS.items():
            self._validate_section(section_name, model)

        self._validate_cross_field_rules()

        return self.result

    def _validate_section(self, section_name: str, model: type):
        try:
            model(**(self.config_dict.get(section_name) or {}))
        except PydanticValidationError as e:
            for error in e.errors():
                field = section_name + "." + ".".join(str(loc) for loc in error['loc'])
                self.result.add_error(field.rstrip('.'), error.get('input'), error['msg'])

    def _validate_cross_field_rules(self):
        """Rules spanning sections, e.g. distinct ports and CIDR pairs."""
        store = self.config_dict.get('backup_store') or {}
        restore = self.config_dict.get('restore') or {}
        upgrade = self.config_dict.get('upgrade') or {}
        wait = self.config_dict.get('wait') or {}

        # Rule: credentials are given as a pair
        if bool(store.get('access_key_id')) != bool(store.get('secret_access_key')):
            self.result.add_error(
                "backup_store.secret_access_key",
                "",
                "Access key id and secret access key must be set together"
            )

        # Rule: airgap restore without a bundle cannot materialize artifacts
        if restore.get('airgap') and not restore.get('airgap_bundle'):
            self.result.add_warning(
                "restore.airgap_bundle",
                "",
                "Airgap restore without a bundle path; artifacts must already be on the host"
            )

        if restore.get('airgap') and not upgrade.get('local_artifact_mirror_image'):
            self.result.add_warning(
                "upgrade.local_artifact_mirror_image",
                "",
                "Airgap upgrades require a local artifact mirror image"
            )

        # Rule: a zero-length wait makes readiness checks spin
        if wait.get('duration') == 0 and wait.get('steps', 60) > 1:
            self.result.add_warning(
                "wait.duration",
                0,
                "Zero wait duration polls the cluster without delay"
            )


def validate_config(config_dict: Dict[str, Any]) -> ValidationResult:
    """
    Main entry point for configuration validation.

    Args:
        config_dict: Dictionary containing the configuration to validate

    Returns:
        ValidationResult object containing errors and warnings
    """
    validator = ConfigValidator(config_dict)
    return validator.validate()


def validate_config_file(config_path: Union[str, Path]) -> ValidationResult:
    """
    Validate a configuration file.

    Args:
        config_path: Path to the configuration file

    Returns:
        ValidationResult object containing errors and warnings
    """
    import yaml

    config_path = Path(config_path)
    if not config_path.exists():
        result = ValidationResult()
        result.add_error("file", str(config_path), "Configuration file does not exist")
        return result

    try:
        with open(config_path, 'r') as f:
            config_dict = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        result = ValidationResult()
        result.add_error("file", str(config_path), f"Failed to parse YAML: {e}")
        return result

    if config_dict is not None and not isinstance(config_dict, dict):
        result = ValidationResult()
        result.add_error("file", str(config_path), "Configuration must be a mapping")
        return result

    return validate_config(config_dict or {})
