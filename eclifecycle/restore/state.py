"""
Persisted restore progress.

Progress lives in a ConfigMap in the embedded-cluster namespace so that a
restore interrupted by a crash or reboot can resume where it stopped.
"""

import logging
from enum import Enum
from typing import List, Optional, Tuple

from ..kube import kinds
from ..kube.helpers import ensure_namespace
from ..errors.errors import ResourceExistsError, ResourceNotFoundError, StandardError

logger = logging.getLogger(__name__)

STATE_CONFIG_MAP_NAME = "embedded-cluster-restore-state"
STATE_KEY = "state"
BACKUP_NAME_KEY = "backup-name"


class RestoreState(Enum):
    """Restore steps, in execution order."""
    NEW = "new"
    CONFIRM_BACKUP = "confirm-backup"
    RESTORE_EC_INSTALL = "restore-ec-install"
    RESTORE_ADMIN_CONSOLE = "restore-admin-console"
    WAIT_FOR_NODES = "wait-for-nodes"
    RESTORE_SEAWEEDFS = "restore-seaweedfs"
    RESTORE_REGISTRY = "restore-registry"
    RESTORE_EMBEDDED_CLUSTER_OPERATOR = "restore-embedded-cluster-operator"
    RESTORE_EXTENSIONS = "restore-extensions"
    RESTORE_APP = "restore-app"

    @classmethod
    def ordered(cls) -> List['RestoreState']:
        return list(cls)

    @property
    def index(self) -> int:
        return self.ordered().index(self)


class StateStore:
    """Reads and writes the restore state record."""

    def __init__(self, kube, namespace: str):
        self.kube = kube
        self.namespace = namespace

    async def _get(self) -> dict:
        return await self.kube.get(kinds.CONFIG_MAP, STATE_CONFIG_MAP_NAME, self.namespace)

    async def load(self) -> Tuple[RestoreState, str]:
        """
        Current state and backup name.

        An absent, unreadable or unrecognized record reads as a new restore.
        """
        try:
            cm = await self._get()
        except StandardError as e:
            logger.debug(f"No usable restore state record, starting fresh: {e}")
            return RestoreState.NEW, ""

        data = cm.get("data") or {}
        try:
            state = RestoreState(data.get(STATE_KEY, ""))
        except ValueError:
            logger.debug(f"Unknown restore state {data.get(STATE_KEY)!r}, starting fresh")
            return RestoreState.NEW, ""
        return state, data.get(BACKUP_NAME_KEY, "")

    async def save(self, state: RestoreState, backup_name: str = "") -> None:
        """Create or update the record. A blank backup name keeps the stored one."""
        logger.debug(f"Setting restore state to {state.value}")
        await ensure_namespace(self.kube, self.namespace)

        data = {STATE_KEY: state.value}
        if backup_name:
            data[BACKUP_NAME_KEY] = backup_name

        cm = {
            "apiVersion": "v1",
            "kind": "ConfigMap",
            "metadata": {
                "name": STATE_CONFIG_MAP_NAME,
                "namespace": self.namespace,
            },
            "data": data,
        }
        try:
            await self.kube.create(kinds.CONFIG_MAP, cm)
            return
        except ResourceExistsError:
            pass

        existing = await self._get()
        previous = (existing.get("data") or {}).get(BACKUP_NAME_KEY)
        if not backup_name and previous:
            data[BACKUP_NAME_KEY] = previous
        existing["data"] = data
        await self.kube.update(kinds.CONFIG_MAP, existing)

    async def reset(self) -> None:
        logger.debug("Resetting restore state")
        try:
            await self.kube.delete(kinds.CONFIG_MAP, STATE_CONFIG_MAP_NAME, self.namespace)
        except ResourceNotFoundError:
            pass

    async def backup_name(self) -> Optional[str]:
        _, name = await self.load()
        return name or None
