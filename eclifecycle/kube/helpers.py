"""
Readiness predicates and small idempotent helpers over the cluster API.
"""

import hashlib
import logging
import re
from typing import Any, Callable, Dict, Optional

from . import kinds
from ..errors.errors import ResourceExistsError, ResourceNotFoundError, new_in_progress_error

logger = logging.getLogger(__name__)

CONTROL_PLANE_LABEL = "node-role.kubernetes.io/control-plane"
CHART_NAMESPACE = "kube-system"

_K0S_BUILD_SUFFIX = re.compile(r"\+k0s\.\d+$")


def _workload_ready(obj: Dict[str, Any]) -> bool:
    replicas = (obj.get("spec") or {}).get("replicas")
    if replicas is None:
        return False
    return (obj.get("status") or {}).get("readyReplicas", 0) == replicas


async def is_deployment_ready(kube, namespace: str, name: str) -> bool:
    deploy = await kube.get(kinds.DEPLOYMENT, name, namespace)
    return _workload_ready(deploy)


async def is_statefulset_ready(kube, namespace: str, name: str) -> bool:
    statefulset = await kube.get(kinds.STATEFUL_SET, name, namespace)
    return _workload_ready(statefulset)


def is_node_ready(node: Dict[str, Any]) -> bool:
    for condition in (node.get("status") or {}).get("conditions") or []:
        if condition.get("type") == "Ready":
            return condition.get("status") == "True"
    return False


async def count_control_plane_nodes(kube) -> int:
    nodes = await kube.list(kinds.NODE)
    return sum(1 for node in nodes if CONTROL_PLANE_LABEL in ((node.get("metadata") or {}).get("labels") or {}))


def normalize_kubelet_version(version: str) -> str:
    """Reduce a "+k0s.N" build suffix to "+k0s"."""
    return _K0S_BUILD_SUFFIX.sub("+k0s", version or "")


async def cluster_nodes_match_version(kube, version: str) -> bool:
    """True when every node's kubelet runs the given substrate version."""
    nodes = await kube.list(kinds.NODE)
    for node in nodes:
        kubelet = ((node.get("status") or {}).get("nodeInfo") or {}).get("kubeletVersion", "")
        if normalize_kubelet_version(kubelet) != normalize_kubelet_version(version):
            logger.debug(f"Node {node['metadata']['name']} runs {kubelet}, want {version}")
            return False
    return True


def hash_values(values: str) -> str:
    """sha256 of a chart's values document, as recorded by the chart controller."""
    return hashlib.sha256((values or "").encode()).hexdigest()


def chart_object_name(name: str) -> str:
    return f"k0s-addon-chart-{name}"


def chart_pending_reason(chart: Dict[str, Any]) -> Optional[str]:
    """Why an applied chart has not converged yet, or None when it has."""
    spec = chart.get("spec") or {}
    status = chart.get("status") or {}
    if status.get("releaseName") != spec.get("releaseName"):
        return f"release name mismatch: {status.get('releaseName')} != {spec.get('releaseName')}"
    if status.get("valuesHash") != hash_values(spec.get("values", "")):
        return f"values hash mismatch: {hash_values(spec.get('values', ''))} != {status.get('valuesHash')}"
    if status.get("version") != spec.get("version"):
        return f"version mismatch: {spec.get('version')} != {status.get('version')}"
    return None


async def get_chart_health_version(kube, name: str, version: str) -> bool:
    """
    True when chart k0s-addon-chart-<name> is deployed at the given version.

    A chart reporting an error raises; an unconverged chart is not healthy.
    """
    chart = await kube.get(kinds.HELM_CHART, chart_object_name(name), CHART_NAMESPACE)
    error = (chart.get("status") or {}).get("error")
    if error:
        raise new_in_progress_error("kubernetes", "chart_health", f"chart {name} has error: {error}")
    reason = chart_pending_reason(chart)
    if reason:
        logger.debug(f"Chart {name} not ready: {reason}")
        return False
    return (chart.get("spec") or {}).get("version") == version


async def ensure_namespace(kube, name: str) -> None:
    try:
        await kube.create(kinds.NAMESPACE, {"apiVersion": "v1", "kind": "Namespace", "metadata": {"name": name}})
    except ResourceExistsError:
        pass


async def ensure_object(
    kube,
    kind: kinds.ResourceKind,
    obj: Dict[str, Any],
    should_delete: Optional[Callable[[Dict[str, Any]], bool]] = None,
) -> Dict[str, Any]:
    """
    Create obj unless an object of the same name exists.

    An existing object for which should_delete returns True is deleted and
    replaced. A concurrent create of the same name counts as success.
    """
    metadata = obj["metadata"]
    try:
        existing = await kube.get(kind, metadata["name"], metadata.get("namespace"))
    except ResourceNotFoundError:
        existing = None

    if existing is not None:
        if should_delete is None or not should_delete(existing):
            return existing
        logger.info(f"Replacing {kind} {metadata['name']}")
        try:
            await kube.delete(kind, metadata["name"], metadata.get("namespace"))
        except ResourceNotFoundError:
            pass

    try:
        return await kube.create(kind, obj)
    except ResourceExistsError:
        return await kube.get(kind, metadata["name"], metadata.get("namespace"))
