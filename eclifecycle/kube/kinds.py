"""
Descriptors for the cluster object kinds the orchestrators read and write.
"""

from dataclasses import dataclass


@dataclass(frozen=True)
class ResourceKind:
    """API group/version and kind of a cluster object."""
    api_version: str
    kind: str
    namespaced: bool = True

    def __str__(self):
        return self.kind


NAMESPACE = ResourceKind("v1", "Namespace", namespaced=False)
CONFIG_MAP = ResourceKind("v1", "ConfigMap")
SECRET = ResourceKind("v1", "Secret")
NODE = ResourceKind("v1", "Node", namespaced=False)
DEPLOYMENT = ResourceKind("apps/v1", "Deployment")
STATEFUL_SET = ResourceKind("apps/v1", "StatefulSet")
JOB = ResourceKind("batch/v1", "Job")

VELERO_BACKUP = ResourceKind("velero.io/v1", "Backup")
VELERO_RESTORE = ResourceKind("velero.io/v1", "Restore")
VELERO_BACKUP_STORAGE_LOCATION = ResourceKind("velero.io/v1", "BackupStorageLocation")

AUTOPILOT_PLAN = ResourceKind("autopilot.k0sproject.io/v1beta2", "Plan", namespaced=False)
CLUSTER_CONFIG = ResourceKind("k0s.k0sproject.io/v1beta1", "ClusterConfig")
HELM_CHART = ResourceKind("helm.k0sproject.io/v1beta1", "Chart")

INSTALLATION = ResourceKind("embeddedcluster.replicated.com/v1beta1", "Installation", namespaced=False)
