"""
Typed access to velero backups and their grouping into replicated backups.

A disaster-recovery run produces one or more velero Backups that share the
replicated.com/backup-name label. Backups without that label predate the
grouping and stand alone.
"""

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import yaml

from ..kube import kinds

logger = logging.getLogger(__name__)

BACKUP_NAME_LABEL = "replicated.com/backup-name"
BACKUP_TYPE_ANNOTATION = "replicated.com/backup-type"
BACKUP_COUNT_ANNOTATION = "replicated.com/backup-count"
RESTORE_SPEC_ANNOTATION = "replicated.com/restore-spec"

IS_EC_ANNOTATION = "kots.io/embedded-cluster"
VERSION_ANNOTATION = "kots.io/embedded-cluster-version"
APPS_VERSIONS_ANNOTATION = "kots.io/apps-versions"
IS_AIRGAP_ANNOTATION = "kots.io/is-airgap"
IS_HA_ANNOTATION = "kots.io/embedded-cluster-is-ha"
POD_CIDR_ANNOTATION = "kots.io/embedded-cluster-pod-cidr"
SERVICE_CIDR_ANNOTATION = "kots.io/embedded-cluster-service-cidr"
DATA_DIR_ANNOTATION = "kots.io/embedded-cluster-data-dir"
REGISTRY_ANNOTATION = "kots.io/embedded-registry"
SEAWEEDFS_S3_IP_ANNOTATION = "kots.io/embedded-cluster-seaweedfs-s3-ip"
LOCAL_ARTIFACT_MIRROR_PORT_ANNOTATION = "kots.io/embedded-cluster-local-artifact-mirror-port"

BACKUP_TYPE_INFRA = "infra"
BACKUP_TYPE_APP = "app"
BACKUP_TYPE_LEGACY = "legacy"


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse an RFC 3339 timestamp as written by the API server."""
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class BackupFacts:
    """Annotation-encoded facts of a single velero Backup, parsed once."""
    name: str
    phase: str
    completion_timestamp: Optional[datetime]
    is_ec: bool
    version: str
    apps_versions: Optional[str]
    is_airgap: Optional[str]
    is_ha: Optional[str]
    pod_cidr: Optional[str]
    service_cidr: Optional[str]
    data_dir: str
    backup_type: str
    annotations: Dict[str, str]

    @classmethod
    def from_backup(cls, backup: Dict[str, Any]) -> 'BackupFacts':
        metadata = backup.get("metadata") or {}
        status = backup.get("status") or {}
        annotations = metadata.get("annotations") or {}
        return cls(
            name=metadata.get("name", ""),
            phase=status.get("phase", ""),
            completion_timestamp=parse_timestamp(status.get("completionTimestamp")),
            is_ec=annotations.get(IS_EC_ANNOTATION) == "true",
            version=annotations.get(VERSION_ANNOTATION, ""),
            apps_versions=annotations.get(APPS_VERSIONS_ANNOTATION),
            is_airgap=annotations.get(IS_AIRGAP_ANNOTATION),
            is_ha=annotations.get(IS_HA_ANNOTATION),
            pod_cidr=annotations.get(POD_CIDR_ANNOTATION),
            service_cidr=annotations.get(SERVICE_CIDR_ANNOTATION),
            data_dir=annotations.get(DATA_DIR_ANNOTATION, ""),
            backup_type=annotations.get(BACKUP_TYPE_ANNOTATION) or BACKUP_TYPE_LEGACY,
            annotations=dict(annotations),
        )


class ReplicatedBackup:
    """One or more velero Backups produced by a single disaster-recovery run."""

    def __init__(self, backups: List[Dict[str, Any]]):
        self.backups = backups

    def __len__(self) -> int:
        return len(self.backups)

    def __iter__(self):
        return iter(self.backups)

    @property
    def name(self) -> str:
        first = self.backups[0]["metadata"]
        return (first.get("labels") or {}).get(BACKUP_NAME_LABEL) or first.get("name", "")

    def facts(self) -> List[BackupFacts]:
        return [BackupFacts.from_backup(b) for b in self.backups]

    def _by_type(self, *types: str) -> Optional[Dict[str, Any]]:
        for backup in self.backups:
            if BackupFacts.from_backup(backup).backup_type in types:
                return backup
        return None

    def infra_backup(self) -> Optional[Dict[str, Any]]:
        return self._by_type(BACKUP_TYPE_INFRA, BACKUP_TYPE_LEGACY)

    def app_backup(self) -> Optional[Dict[str, Any]]:
        return self._by_type(BACKUP_TYPE_APP, BACKUP_TYPE_LEGACY)

    def expected_count(self) -> int:
        value = ((self.backups[0].get("metadata") or {}).get("annotations") or {}).get(BACKUP_COUNT_ANNOTATION)
        if not value:
            return 1
        try:
            return int(value)
        except ValueError:
            logger.debug(f"Invalid {BACKUP_COUNT_ANNOTATION} annotation {value!r} on backup {self.name}")
            return 1

    def completion_timestamp(self) -> Optional[datetime]:
        """Completion time of the last member backup to complete."""
        stamps = [f.completion_timestamp for f in self.facts() if f.completion_timestamp]
        return max(stamps) if stamps else None

    def annotation(self, key: str) -> Optional[str]:
        """An annotation value, looked up on the infra backup first."""
        ordered = sorted(
            self.backups,
            key=lambda b: BackupFacts.from_backup(b).backup_type == BACKUP_TYPE_APP,
        )
        for backup in ordered:
            annotations = (backup.get("metadata") or {}).get("annotations") or {}
            if key in annotations:
                return annotations[key]
        return None

    def restore_spec(self) -> Optional[Dict[str, Any]]:
        """The vendor-declared restore spec carried by the app backup, if any."""
        app = self.app_backup()
        if app is None:
            return None
        raw = ((app.get("metadata") or {}).get("annotations") or {}).get(RESTORE_SPEC_ANNOTATION)
        if not raw:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            return yaml.safe_load(raw)


def group_backups(backups: List[Dict[str, Any]]) -> List[ReplicatedBackup]:
    """Group velero Backups by the replicated backup name label, keeping list order."""
    groups: Dict[str, List[Dict[str, Any]]] = {}
    for backup in backups:
        metadata = backup.get("metadata") or {}
        key = (metadata.get("labels") or {}).get(BACKUP_NAME_LABEL) or metadata.get("name", "")
        groups.setdefault(key, []).append(backup)
    return [ReplicatedBackup(members) for members in groups.values()]


async def list_replicated_backups(kube, namespace: str) -> List[ReplicatedBackup]:
    backups = await kube.list(kinds.VELERO_BACKUP, namespace)
    return group_backups(backups)


async def get_replicated_backup(kube, namespace: str, name: str) -> ReplicatedBackup:
    """
    Look up a replicated backup by name.

    Falls back to a single legacy backup of that name.
    """
    backups = await kube.list(kinds.VELERO_BACKUP, namespace, {BACKUP_NAME_LABEL: name})
    if backups:
        return ReplicatedBackup(backups)
    return ReplicatedBackup([await kube.get(kinds.VELERO_BACKUP, name, namespace)])
