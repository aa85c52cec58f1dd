"""
Helm chart reconciliation for upgrades.

The desired chart set is built from the vendor charts recorded on the
Installation plus the charts shipped with the release, then compared with
what the k0s ClusterConfig currently applies and with the state reported by
the installed Chart objects.
"""

import copy
import logging
import os
from typing import Any, Dict, List, Optional, Tuple

import yaml

from ..kube import kinds
from ..kube.helpers import CHART_NAMESPACE, chart_pending_reason
from ..kube.installation import is_airgap, runtime_config
from ..errors.errors import new_configuration_error

logger = logging.getLogger(__name__)

DEFAULT_VENDOR_CHART_ORDER = 10
CHART_ORDER_OFFSET = 100
DEFAULT_CONCURRENCY_LEVEL = 1
CLUSTER_CONFIG_NAME = "k0s"

# Fields whose change means the chart has to be reapplied.
_DRIFT_FIELDS = ("version", "order", "chartname", "namespace")


def parse_values(values: str, chart_name: str = "") -> Dict[str, Any]:
    try:
        parsed = yaml.safe_load(values or "") or {}
    except yaml.YAMLError as e:
        raise new_configuration_error("charts", "parse_values", f"unable to parse values of chart {chart_name}", e)
    if not isinstance(parsed, dict):
        raise new_configuration_error("charts", "parse_values", f"values of chart {chart_name} are not a mapping")
    return parsed


def deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Merge override into a copy of base; nested mappings merge, everything else replaces."""
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def _vendor_helm(installation: Dict[str, Any]) -> Dict[str, Any]:
    config = (installation.get("spec") or {}).get("config") or {}
    return (config.get("extensions") or {}).get("helm") or {}


def _user_overrides(installation: Dict[str, Any]) -> Dict[str, str]:
    config = (installation.get("spec") or {}).get("config") or {}
    overrides = (config.get("unsupportedOverrides") or {}).get("builtInExtensions") or []
    return {item["name"]: item.get("values", "") for item in overrides if item.get("name")}


def desired_helm_extensions(installation: Dict[str, Any], metadata, data_dir: str) -> Dict[str, Any]:
    """
    Build the chart set the cluster should run.

    Vendor charts without an order get DEFAULT_VENDOR_CHART_ORDER. Every order
    is then offset by CHART_ORDER_OFFSET since k0s sorts orders as strings.
    """
    vendor = _vendor_helm(installation)
    concurrency = DEFAULT_CONCURRENCY_LEVEL
    if (vendor.get("concurrencyLevel") or 0) > 0:
        concurrency = min(vendor["concurrencyLevel"], DEFAULT_CONCURRENCY_LEVEL)

    charts: List[Dict[str, Any]] = []
    for chart in vendor.get("charts") or []:
        chart = copy.deepcopy(chart)
        if not chart.get("order"):
            chart["order"] = DEFAULT_VENDOR_CHART_ORDER
        charts.append(chart)
    repositories = copy.deepcopy(vendor.get("repositories") or [])

    charts.extend(copy.deepcopy(metadata.configs.get("charts") or []))
    repositories.extend(copy.deepcopy(metadata.configs.get("repositories") or []))

    for chart in charts:
        chart["order"] = (chart.get("order") or 0) + CHART_ORDER_OFFSET

    if is_airgap(installation):
        # Charts were placed on every node by the artifact jobs.
        data_dir = runtime_config(installation).get("dataDir") or data_dir
        repositories = []
        for chart in charts:
            chart["chartname"] = os.path.join(data_dir, "charts", f"{chart['name']}-{chart.get('version', '')}.tgz")

    overrides = _user_overrides(installation)
    for chart in charts:
        if chart["name"] in overrides:
            merged = deep_merge(
                parse_values(chart.get("values", ""), chart["name"]),
                parse_values(overrides[chart["name"]], chart["name"]),
            )
            chart["values"] = yaml.safe_dump(merged, default_flow_style=False)

    return {"concurrencyLevel": concurrency, "repositories": repositories, "charts": charts}


def _by_name(items: List[Dict[str, Any]]) -> Dict[str, Dict[str, Any]]:
    return {item.get("name"): item for item in items or []}


def detect_chart_drift(desired: Dict[str, Any], current: Dict[str, Any]) -> Tuple[bool, List[str]]:
    """Whether the applied chart set differs from the desired one, and which charts changed."""
    drift = False
    changed: List[str] = []

    desired_repos = desired.get("repositories") or []
    current_repos = _by_name(current.get("repositories"))
    if len(desired_repos) != len(current_repos):
        drift = True
    for repo in desired_repos:
        if current_repos.get(repo.get("name")) != repo:
            drift = True

    desired_charts = desired.get("charts") or []
    current_charts = _by_name(current.get("charts"))
    if len(desired_charts) != len(current_charts):
        drift = True

    for chart in desired_charts:
        existing = current_charts.get(chart["name"])
        if existing is None or _chart_differs(chart, existing):
            drift = True
            changed.append(chart["name"])

    return drift, changed


def _chart_differs(desired: Dict[str, Any], existing: Dict[str, Any]) -> bool:
    for key in _DRIFT_FIELDS:
        if desired.get(key) != existing.get(key):
            return True
    return parse_values(desired.get("values", ""), desired["name"]) != \
        parse_values(existing.get("values", ""), existing.get("name", ""))


def detect_chart_completion(current: Dict[str, Any], installed: List[Dict[str, Any]]) -> Tuple[List[str], List[str]]:
    """
    Compare the applied chart set with the installed Chart objects.

    Returns the charts still pending and the errors reported by charts.
    """
    installed_by_release = {
        (chart.get("spec") or {}).get("releaseName"): chart for chart in installed
    }
    pending: List[str] = []
    errors: List[str] = []

    for chart in current.get("charts") or []:
        name = chart["name"]
        found = installed_by_release.get(name)
        if found is None:
            pending.append(name)
            continue

        error = (found.get("status") or {}).get("error")
        if error:
            errors.append(error)
            continue

        reason = chart_pending_reason(found)
        if reason is None and (found.get("spec") or {}).get("version") != chart.get("version"):
            reason = f"applied version {chart.get('version')} not picked up yet"
        if reason:
            logger.debug(f"Chart {name} pending: {reason}")
            pending.append(name)

    return pending, errors


def current_helm_extensions(cluster_config: Dict[str, Any]) -> Dict[str, Any]:
    return ((cluster_config.get("spec") or {}).get("extensions") or {}).get("helm") or {}


async def get_cluster_config(kube) -> Dict[str, Any]:
    return await kube.get(kinds.CLUSTER_CONFIG, CLUSTER_CONFIG_NAME, CHART_NAMESPACE)


async def list_installed_charts(kube) -> List[Dict[str, Any]]:
    return await kube.list(kinds.HELM_CHART, CHART_NAMESPACE)


async def replace_helm_extensions(kube, cluster_config: Dict[str, Any], helm: Dict[str, Any],
                                  changed: Optional[List[str]] = None) -> Dict[str, Any]:
    spec = cluster_config.setdefault("spec", {})
    extensions = spec.get("extensions") or {}
    extensions["helm"] = helm
    spec["extensions"] = extensions
    logger.info(f"Updating cluster config with new helm charts {changed or []}")
    return await kube.update(kinds.CLUSTER_CONFIG, cluster_config)
