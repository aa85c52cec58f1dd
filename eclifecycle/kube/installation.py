"""
Helpers for the cluster-scoped Installation records.

Installations are named by their creation timestamp, so the newest record
sorts last by name.
"""

import logging
from enum import Enum
from typing import Any, Dict, List

from . import kinds
from ..errors.errors import ResourceNotFoundError

logger = logging.getLogger(__name__)


class InstallationState(Enum):
    """Installation status states"""
    WAITING = "Waiting"
    ENQUEUED = "Enqueued"
    INSTALLING = "Installing"
    KUBERNETES_INSTALLED = "KubernetesInstalled"
    ADDONS_INSTALLING = "AddonsInstalling"
    INSTALLED = "Installed"
    FAILED = "Failed"
    OBSOLETE = "Obsolete"


async def list_installations(kube) -> List[Dict[str, Any]]:
    """All installations, newest first."""
    items = await kube.list(kinds.INSTALLATION)
    return sorted(items, key=lambda i: i["metadata"]["name"], reverse=True)


async def get_latest_installation(kube) -> Dict[str, Any]:
    items = await list_installations(kube)
    if not items:
        raise ResourceNotFoundError("Installation", "latest")
    return items[0]


async def update_installation(kube, installation: Dict[str, Any]) -> Dict[str, Any]:
    """Write the spec back; a stale resourceVersion raises ResourceConflictError."""
    return await kube.update(kinds.INSTALLATION, installation)


async def update_installation_status(kube, installation: Dict[str, Any], state: InstallationState,
                                     reason: str = "") -> Dict[str, Any]:
    status = installation.setdefault("status", {}) or {}
    status["state"] = state.value
    status["reason"] = reason
    installation["status"] = status
    logger.debug(f"Setting installation {installation['metadata']['name']} state to {state.value}")
    return await kube.update_status(kinds.INSTALLATION, installation)


def installation_state(installation: Dict[str, Any]) -> str:
    return (installation.get("status") or {}).get("state", "")


def runtime_config(installation: Dict[str, Any]) -> Dict[str, Any]:
    return (installation.get("spec") or {}).get("runtimeConfig") or {}


def config_version(installation: Dict[str, Any]) -> str:
    return ((installation.get("spec") or {}).get("config") or {}).get("version", "")


def is_airgap(installation: Dict[str, Any]) -> bool:
    return bool((installation.get("spec") or {}).get("airGap"))


def is_high_availability(installation: Dict[str, Any]) -> bool:
    return bool((installation.get("spec") or {}).get("highAvailability"))
