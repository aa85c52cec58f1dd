"""
Component Restore Driver.

Each disaster-recovery component is restored by its own velero Restore,
named after the backup and the component so that re-running a step finds
the request created by an earlier, interrupted run.
"""

import copy
import logging
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

from .backups import (
    BACKUP_COUNT_ANNOTATION, BACKUP_NAME_LABEL, BACKUP_TYPE_ANNOTATION, IS_AIRGAP_ANNOTATION,
    IS_EC_ANNOTATION, IS_HA_ANNOTATION, REGISTRY_ANNOTATION, SEAWEEDFS_S3_IP_ANNOTATION,
    ReplicatedBackup
)
from ..kube import kinds
from ..kube.helpers import is_deployment_ready, is_statefulset_ready
from ..kube.wait import Backoff, Progress, wait_for_deployment, wait_for_restore, wait_for_workloads
from ..errors.errors import ResourceExistsError, ResourceNotFoundError, StandardError, new_restore_error

logger = logging.getLogger(__name__)

RESOURCE_MODIFIERS_CM_NAME = "restore-resource-modifiers"
RESOURCE_MODIFIERS_KEY = "resource-modifiers.yaml"
RESOURCE_MODIFIERS_TEMPLATE = Path(__file__).parent / "assets" / "resource-modifiers.yaml"

REGISTRY_IP_PLACEHOLDER = "__REGISTRY_SERVICE_IP__"
SEAWEEDFS_IP_PLACEHOLDER = "__SEAWEEDFS_S3_SERVICE_IP__"


class Component(Enum):
    """Disaster-recovery components, each restored by one request."""
    EC_INSTALL = "ec-install"
    ADMIN_CONSOLE = "admin-console"
    SEAWEEDFS = "seaweedfs"
    REGISTRY = "registry"
    EMBEDDED_CLUSTER_OPERATOR = "embedded-cluster-operator"
    APP = "app"


_LABEL_SELECTORS = {
    Component.ADMIN_CONSOLE: {"replicated.com/disaster-recovery-chart": "admin-console"},
    Component.EMBEDDED_CLUSTER_OPERATOR: {"replicated.com/disaster-recovery-chart": "embedded-cluster-operator"},
    Component.EC_INSTALL: {"replicated.com/disaster-recovery": "ec-install"},
    Component.APP: {"replicated.com/disaster-recovery": "app"},
    Component.SEAWEEDFS: {"app.kubernetes.io/name": "seaweedfs"},
    Component.REGISTRY: {"app": "docker-registry"},
}

_MESSAGES = {
    Component.EC_INSTALL: ("Restoring cluster state", "Cluster state restored!"),
    Component.ADMIN_CONSOLE: ("Restoring the Admin Console", "Admin Console restored!"),
    Component.SEAWEEDFS: ("Restoring registry data", "Registry data restored!"),
    Component.REGISTRY: ("Restoring registry", "Registry restored!"),
    Component.EMBEDDED_CLUSTER_OPERATOR: ("Restoring embedded cluster operator", "Embedded cluster operator restored!"),
    Component.APP: ("Restoring application", "Application restored!"),
}


def label_selector(component: Component) -> Dict[str, str]:
    return dict(_LABEL_SELECTORS[component])


def restore_name(backup_name: str, component: Component) -> str:
    return f"{backup_name}.{component.value}"


def _annotations(obj: Dict[str, Any]) -> Dict[str, str]:
    return (obj.get("metadata") or {}).get("annotations") or {}


def registry_ip_from_backup(backup: Dict[str, Any]) -> str:
    """Registry service IP for airgap backups, empty otherwise."""
    annotations = _annotations(backup)
    if IS_AIRGAP_ANNOTATION not in annotations:
        raise new_restore_error("resource_modifiers", "unable to get airgap status from backup")
    if annotations[IS_AIRGAP_ANNOTATION] != "true":
        return ""
    if REGISTRY_ANNOTATION not in annotations:
        raise new_restore_error("resource_modifiers", "embedded registry service IP annotation not found in backup")
    return annotations[REGISTRY_ANNOTATION].split(":")[0]


def seaweedfs_s3_ip_from_backup(backup: Dict[str, Any]) -> str:
    """SeaweedFS S3 service IP for airgap high-availability backups, empty otherwise."""
    annotations = _annotations(backup)
    if IS_AIRGAP_ANNOTATION not in annotations:
        raise new_restore_error("resource_modifiers", "unable to get airgap status from backup")
    if annotations[IS_AIRGAP_ANNOTATION] != "true":
        return ""
    if IS_HA_ANNOTATION not in annotations:
        raise new_restore_error("resource_modifiers", "high availability annotation not found in backup")
    if annotations[IS_HA_ANNOTATION] != "true":
        return ""
    if SEAWEEDFS_S3_IP_ANNOTATION not in annotations:
        raise new_restore_error("resource_modifiers", "unable to get seaweedfs s3 service IP from backup")
    return annotations[SEAWEEDFS_S3_IP_ANNOTATION]


def render_resource_modifiers(backup: Dict[str, Any], template: Optional[str] = None) -> str:
    if template is None:
        template = RESOURCE_MODIFIERS_TEMPLATE.read_text()
    rendered = template.replace(REGISTRY_IP_PLACEHOLDER, registry_ip_from_backup(backup), 1)
    return rendered.replace(SEAWEEDFS_IP_PLACEHOLDER, seaweedfs_s3_ip_from_backup(backup), 1)


def copy_improved_dr_metadata(restore: Dict[str, Any], backup: Dict[str, Any]) -> None:
    """Carry the instance backup name label and type/count annotations over."""
    metadata = restore.setdefault("metadata", {})
    labels = metadata.get("labels") or {}
    annotations = metadata.get("annotations") or {}
    backup_metadata = backup.get("metadata") or {}
    backup_labels = backup_metadata.get("labels") or {}
    backup_annotations = backup_metadata.get("annotations") or {}

    if BACKUP_NAME_LABEL in backup_labels:
        labels[BACKUP_NAME_LABEL] = backup_labels[BACKUP_NAME_LABEL]
    for key in (BACKUP_TYPE_ANNOTATION, BACKUP_COUNT_ANNOTATION):
        if key in backup_annotations:
            annotations[key] = backup_annotations[key]
    metadata["labels"] = labels
    metadata["annotations"] = annotations


class ComponentRestorer:
    """Creates velero Restores per component and waits for them."""

    def __init__(self, kube, config, backoff: Optional[Backoff] = None, progress: Optional[Progress] = None):
        self.kube = kube
        self.config = config
        self.namespaces = config.namespaces
        self.backoff = backoff or Backoff.from_config(config.wait)
        self.progress = progress or logger.info

    async def restore(self, backup: ReplicatedBackup, component: Component) -> None:
        """Restore one component, reusing a request left by an earlier run."""
        if component == Component.APP and self.config.release.improved_dr:
            app_backup = backup.app_backup()
            if app_backup is None:
                raise new_restore_error("restore_component", f"unable to find app backup in {backup.name}")
            spec = backup.restore_spec()
            if spec is None:
                raise new_restore_error("restore_component", f"backup {backup.name} carries no restore spec")
            await self._restore_app_from_spec(app_backup, spec)
            return

        infra_backup = backup.infra_backup()
        if infra_backup is None:
            raise new_restore_error("restore_component", f"unable to find infra backup in {backup.name}")
        await self._restore_from_backup(infra_backup, component)

    async def _get_restore(self, name: str) -> Optional[Dict[str, Any]]:
        try:
            return await self.kube.get(kinds.VELERO_RESTORE, name, self.namespaces.velero)
        except ResourceNotFoundError:
            return None

    async def _create_restore(self, restore: Dict[str, Any]) -> None:
        name = restore["metadata"]["name"]
        logger.debug(f"Creating restore {name}")
        try:
            await self.kube.create(kinds.VELERO_RESTORE, restore)
        except ResourceExistsError:
            logger.debug(f"Restore {name} already exists")

    async def _restore_app_from_spec(self, backup: Dict[str, Any], spec: Dict[str, Any]) -> None:
        name = f"{backup['metadata']['name']}.restore"
        if await self._get_restore(name) is None:
            restore = copy.deepcopy(spec)
            restore["apiVersion"] = "velero.io/v1"
            restore["kind"] = "Restore"
            metadata = restore.setdefault("metadata", {})
            metadata["name"] = name
            metadata["namespace"] = self.namespaces.velero
            metadata.pop("resourceVersion", None)
            metadata.pop("uid", None)
            metadata["annotations"] = dict(metadata.get("annotations") or {}, **{IS_EC_ANNOTATION: "true"})
            copy_improved_dr_metadata(restore, backup)
            restore.setdefault("spec", {})["backupName"] = backup["metadata"]["name"]
            restore.pop("status", None)
            await self._create_restore(restore)

        await self._wait(Component.APP, name)

    async def _restore_from_backup(self, backup: Dict[str, Any], component: Component) -> None:
        name = restore_name(backup["metadata"]["name"], component)
        if await self._get_restore(name) is None:
            restore = {
                "apiVersion": "velero.io/v1",
                "kind": "Restore",
                "metadata": {
                    "name": name,
                    "namespace": self.namespaces.velero,
                    "annotations": {IS_EC_ANNOTATION: "true"},
                    "labels": {},
                },
                "spec": {
                    "backupName": backup["metadata"]["name"],
                    "labelSelector": {"matchLabels": label_selector(component)},
                    "restorePVs": True,
                    "includeClusterResources": True,
                    "resourceModifier": {"kind": "ConfigMap", "name": RESOURCE_MODIFIERS_CM_NAME},
                },
            }
            copy_improved_dr_metadata(restore, backup)
            await self.ensure_resource_modifiers(backup)
            await self._create_restore(restore)

        await self._wait(component, name)

    async def ensure_resource_modifiers(self, backup: Dict[str, Any]) -> None:
        """Materialize the resource modifier ConfigMap the restores reference."""
        cm = {
            "apiVersion": "v1",
            "kind": "ConfigMap",
            "metadata": {"name": RESOURCE_MODIFIERS_CM_NAME, "namespace": self.namespaces.velero},
            "data": {RESOURCE_MODIFIERS_KEY: render_resource_modifiers(backup)},
        }
        try:
            await self.kube.create(kinds.CONFIG_MAP, cm)
        except ResourceExistsError:
            pass

    async def _wait(self, component: Component, name: str) -> None:
        start, done = _MESSAGES[component]
        self.progress(start)

        await wait_for_restore(self.kube, self.namespaces.velero, name, self.backoff)

        try:
            await self._wait_for_workloads(component)
        except StandardError as e:
            raise new_restore_error("wait_for_component", f"unable to wait for {component.value} to be ready", e)

        self.progress(done)

    async def _wait_for_workloads(self, component: Component) -> None:
        kube = self.kube
        if component == Component.ADMIN_CONSOLE:
            ns = self.namespaces.kotsadm
            await wait_for_workloads(
                [
                    ("kotsadm", lambda: is_deployment_ready(kube, ns, "kotsadm")),
                    ("kotsadm-rqlite", lambda: is_statefulset_ready(kube, ns, "kotsadm-rqlite")),
                ],
                "the Admin Console", self.backoff, self.progress,
            )
        elif component == Component.SEAWEEDFS:
            ns = self.namespaces.seaweedfs
            await wait_for_workloads(
                [
                    (sts, lambda sts=sts: is_statefulset_ready(kube, ns, sts))
                    for sts in ("seaweedfs-filer", "seaweedfs-master", "seaweedfs-volume")
                ],
                "SeaweedFS", self.backoff, self.progress,
            )
        elif component == Component.REGISTRY:
            await wait_for_deployment(kube, self.namespaces.registry, "registry", self.backoff)
        elif component == Component.EMBEDDED_CLUSTER_OPERATOR:
            await wait_for_deployment(kube, self.namespaces.embedded_cluster, "embedded-cluster-operator", self.backoff)
