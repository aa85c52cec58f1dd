"""
Backup compatibility checks.

Decides whether a backup can be restored by the running binary and, when it
cannot, explains why in terms an operator can act on. The first failing
check wins.
"""

import ipaddress
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml

from .backups import BACKUP_TYPE_APP, BACKUP_TYPE_LEGACY, BackupFacts, ReplicatedBackup
from ..errors.errors import new_configuration_error

logger = logging.getLogger(__name__)

DEFAULT_GLOBAL_CIDR = "10.244.0.0/16"


@dataclass
class ReleaseInfo:
    """Identity of the running binary and the application it ships."""
    version: str
    app_slug: str
    version_label: str
    improved_dr: bool = False

    @classmethod
    def from_config(cls, release_config) -> 'ReleaseInfo':
        return cls(
            version=release_config.version,
            app_slug=release_config.app_slug,
            version_label=release_config.version_label,
            improved_dr=release_config.improved_dr,
        )


@dataclass
class ClusterNetwork:
    """Network settings of the cluster currently installed on this host."""
    pod_cidr: str = ""
    service_cidr: str = ""

    def configured(self) -> bool:
        return bool(self.pod_cidr or self.service_cidr)


def read_cluster_network(path: str) -> ClusterNetwork:
    """Read pod and service CIDRs from the k0s config on disk."""
    try:
        with open(Path(path), 'r') as f:
            cfg = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise new_configuration_error("restore", "read_k0s_config", "unable to read k0s config file", e)

    network = ((cfg.get("spec") or {}).get("network") or {})
    return ClusterNetwork(
        pod_cidr=network.get("podCIDR") or "",
        service_cidr=network.get("serviceCIDR") or "",
    )


def networks_adjacent_and_same_size(a: str, b: str) -> Tuple[bool, str]:
    """
    Whether network b starts right after network a and has the same size.

    Returns the supernet covering exactly both networks when it exists.
    """
    try:
        net_a = ipaddress.ip_network(a, strict=False)
        net_b = ipaddress.ip_network(b, strict=False)
    except ValueError:
        return False, ""

    if net_a.version != net_b.version or net_a.prefixlen != net_b.prefixlen or net_a.prefixlen == 0:
        return False, ""
    if net_b.network_address != net_a.broadcast_address + 1:
        return False, ""

    supernet = net_a.supernet()
    if not net_b.subnet_of(supernet):
        return False, ""
    return True, str(supernet)


def split_network_cidr(cidr: str) -> Tuple[str, str]:
    """Split a network into its lower half (pods) and upper half (services)."""
    network = ipaddress.ip_network(cidr, strict=False)
    lower, upper = network.subnets(prefixlen_diff=1)
    return str(lower), str(upper)


def desired_cluster_network(network_config) -> ClusterNetwork:
    """Pod and service CIDRs for the cluster about to be installed."""
    if network_config.pod_cidr and network_config.service_cidr:
        return ClusterNetwork(network_config.pod_cidr, network_config.service_cidr)
    pod_cidr, service_cidr = split_network_cidr(network_config.global_cidr or DEFAULT_GLOBAL_CIDR)
    return ClusterNetwork(pod_cidr, service_cidr)


def _trim_v(version: str) -> str:
    return version[1:] if version.startswith("v") else version


def is_backup_restorable(
    backup: Dict[str, Any],
    release: ReleaseInfo,
    is_airgap: bool,
    network: Optional[ClusterNetwork],
    data_dir: str,
) -> Tuple[bool, str]:
    """Check a single velero Backup against the running binary."""
    facts = BackupFacts.from_backup(backup)

    if not facts.is_ec:
        return False, "is not an embedded cluster backup"

    version = _trim_v(facts.version)
    if version != _trim_v(release.version):
        return False, (
            f'has a different embedded cluster version ("{version}") '
            f'than the current version ("{_trim_v(release.version)}")'
        )

    if facts.phase != "Completed":
        return False, f'has a status of "{facts.phase}"'

    if facts.apps_versions is None:
        return False, "is missing the kots.io/apps-versions annotation"

    try:
        apps_versions = json.loads(facts.apps_versions)
    except ValueError:
        return False, "unable to json parse kots.io/apps-versions annotation"
    if not isinstance(apps_versions, dict):
        return False, "unable to json parse kots.io/apps-versions annotation"

    if len(apps_versions) == 0:
        return False, "has no applications"
    if len(apps_versions) > 1:
        return False, "has more than one application"
    if release.app_slug not in apps_versions:
        return False, f'does not contain the "{release.app_slug}" application'

    version_label = apps_versions[release.app_slug]
    if version_label != release.version_label:
        return False, (
            f'has a different app version ("{version_label}") '
            f'than the current version ("{release.version_label}")'
        )

    if facts.is_airgap is None:
        return False, "is missing the kots.io/is-airgap annotation"
    if is_airgap and facts.is_airgap != "true":
        return False, "is not an airgap backup, but the restore is configured to be airgap"
    if not is_airgap and facts.is_airgap != "false":
        return False, "is an airgap backup, but the restore is configured to be online"

    # Both CIDR annotations are written together.
    if facts.pod_cidr is not None and network is not None and network.configured():
        pod_cidr = facts.pod_cidr
        service_cidr = facts.service_cidr or ""
        if pod_cidr != network.pod_cidr or service_cidr != network.service_cidr:
            adjacent, supernet = networks_adjacent_and_same_size(pod_cidr, service_cidr)
            if adjacent:
                return False, (
                    "has a different network configuration than the current cluster. "
                    f"Please rerun with '--cidr {supernet}'."
                )
            return False, (
                "has a different network configuration than the current cluster. "
                f"Please rerun with '--pod-cidr {pod_cidr} --service-cidr {service_cidr}'."
            )

    if facts.data_dir and facts.data_dir != data_dir:
        return False, (
            "has a different data directory than the current cluster. "
            f"Please rerun with '--data-dir {facts.data_dir}'."
        )

    return True, ""


def is_replicated_backup_restorable(
    backup: ReplicatedBackup,
    release: ReleaseInfo,
    is_airgap: bool,
    network: Optional[ClusterNetwork],
    data_dir: str,
) -> Tuple[bool, str]:
    """Check every member of a replicated backup, count and DR mode first."""
    expected = backup.expected_count()
    if expected != len(backup):
        return False, (
            f"has a different number of backups ({len(backup)}) "
            f"than the expected number ({expected})"
        )

    app_backup = backup.app_backup()
    if app_backup is None:
        return False, "missing app backup"

    backup_type = BackupFacts.from_backup(app_backup).backup_type
    if backup_type == BACKUP_TYPE_APP and not release.improved_dr:
        return False, "app backup found but improved dr is not enabled"
    if backup_type == BACKUP_TYPE_LEGACY and release.improved_dr:
        return False, "legacy backup found but improved dr is enabled"

    for member in backup:
        restorable, reason = is_backup_restorable(member, release, is_airgap, network, data_dir)
        if not restorable:
            return False, reason
    return True, ""


def pick_backup_to_restore(backups):
    """
    The most recently completed backup.

    Ties keep the earlier candidate.
    """
    latest = None
    for backup in backups:
        if latest is None:
            latest = backup
            continue
        stamp = backup.completion_timestamp()
        latest_stamp = latest.completion_timestamp()
        if stamp is not None and (latest_stamp is None or stamp > latest_stamp):
            latest = backup
    return latest
