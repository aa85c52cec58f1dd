"""
Autopilot plans: the cluster-scoped objects k0s uses to upgrade itself and to
load container images into the runtime.
"""

import uuid
from enum import Enum
from typing import Any, Dict, List

from ..kube.helpers import CONTROL_PLANE_LABEL

PLAN_NAME = "autopilot"
INSTALLATION_NAME_ANNOTATION = "embedded-cluster.replicated.com/installation-name"


class PlanPhase(Enum):
    """Plan progress as seen by the upgrade"""
    SCHEDULED = "Scheduled"
    RUNNING = "Running"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"


_PHASE_BY_STATE = {
    "Completed": PlanPhase.SUCCEEDED,
    "IncompleteTargets": PlanPhase.FAILED,
    "InconsistentTargets": PlanPhase.FAILED,
    "Restricted": PlanPhase.FAILED,
    "MissingPlatform": PlanPhase.FAILED,
    "MissingSignalNode": PlanPhase.FAILED,
    "ApplyFailed": PlanPhase.FAILED,
    "Warning": PlanPhase.FAILED,
    "Schedulable": PlanPhase.RUNNING,
    "SchedulableWait": PlanPhase.RUNNING,
    "": PlanPhase.SCHEDULED,
}


def plan_state(plan: Dict[str, Any]) -> str:
    return (plan.get("status") or {}).get("state", "")


def plan_phase(plan: Dict[str, Any]) -> PlanPhase:
    # States added by newer k0s releases are treated as still running.
    return _PHASE_BY_STATE.get(plan_state(plan), PlanPhase.RUNNING)


def has_plan_ended(plan: Dict[str, Any]) -> bool:
    return plan_phase(plan) in (PlanPhase.SUCCEEDED, PlanPhase.FAILED)


def has_plan_succeeded(plan: Dict[str, Any]) -> bool:
    return plan_phase(plan) == PlanPhase.SUCCEEDED


def has_plan_failed(plan: Dict[str, Any]) -> bool:
    return plan_phase(plan) == PlanPhase.FAILED


def reason_for_state(plan: Dict[str, Any]) -> str:
    """The plan state followed by every command that did not complete."""
    reason = plan_state(plan)
    incomplete = []
    for command in (plan.get("status") or {}).get("commands") or []:
        state = command.get("state", "")
        if state != "Completed":
            incomplete.append(f"command {command.get('id', '?')} is {state or 'pending'}")
    if incomplete:
        reason = f"{reason}: {', '.join(incomplete)}"
    return reason


def plan_owner(plan: Dict[str, Any]) -> str:
    return ((plan.get("metadata") or {}).get("annotations") or {}).get(INSTALLATION_NAME_ANNOTATION, "")


def is_k0s_upgrade_plan(plan: Dict[str, Any]) -> bool:
    return any("k0supdate" in command for command in (plan.get("spec") or {}).get("commands") or [])


def split_nodes(nodes: List[Dict[str, Any]]):
    """Names of the controller and worker nodes."""
    controllers, workers = [], []
    for node in nodes:
        metadata = node.get("metadata") or {}
        if CONTROL_PLANE_LABEL in (metadata.get("labels") or {}):
            controllers.append(metadata["name"])
        else:
            workers.append(metadata["name"])
    return controllers, workers


def _static_targets(names: List[str]) -> Dict[str, Any]:
    return {"discovery": {"static": {"nodes": names}}}


def k0s_update_command(version: str, url: str, sha256: str, controllers: List[str],
                       workers: List[str]) -> Dict[str, Any]:
    platform = {"url": url}
    if sha256:
        platform["sha256"] = sha256
    return {
        "k0supdate": {
            "version": version,
            "platforms": {
                "linux-amd64": dict(platform),
                "linux-arm64": dict(platform),
            },
            "targets": {
                "controllers": _static_targets(controllers),
                "workers": _static_targets(workers),
            },
        }
    }


def airgap_update_command(version: str, images_url: str, nodes: List[str]) -> Dict[str, Any]:
    return {
        "airgapupdate": {
            "version": version,
            "platforms": {"linux-amd64": {"url": images_url}},
            "workers": _static_targets(nodes),
        }
    }


def new_plan(installation_name: str, commands: List[Dict[str, Any]]) -> Dict[str, Any]:
    return {
        "apiVersion": "autopilot.k0sproject.io/v1beta2",
        "kind": "Plan",
        "metadata": {
            "name": PLAN_NAME,
            "annotations": {INSTALLATION_NAME_ANNOTATION: installation_name},
        },
        "spec": {
            "id": str(uuid.uuid4()),
            "timestamp": "now",
            "commands": commands,
        },
    }
