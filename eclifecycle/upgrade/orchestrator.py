"""
Upgrade Orchestrator.

Upgrades a running cluster to the release recorded on an Installation: first
the k0s substrate through an autopilot plan, then the addon charts, and
finally the Installation is unlocked. Conditions that only need time (a plan
still running, charts still converging) raise retryable IN_PROGRESS errors;
the caller re-invokes the upgrade until it completes.
"""

import copy
import json
import logging
from typing import Any, Dict, Optional

from . import autopilot
from .artifacts import distribute_artifacts, local_artifact_mirror_port
from .charts import (
    current_helm_extensions, desired_helm_extensions, detect_chart_completion, detect_chart_drift,
    get_cluster_config, list_installed_charts, replace_helm_extensions
)
from .release import ReleaseMetadataProvider, copy_version_metadata_to_cluster
from ..kube import kinds
from ..kube.helpers import CHART_NAMESPACE, chart_object_name, cluster_nodes_match_version, get_chart_health_version
from ..kube.installation import (
    InstallationState, config_version, installation_state, is_airgap, update_installation_status
)
from ..kube.wait import Backoff, PermanentError, Progress, wait_until
from ..errors.errors import (
    ErrorCode, ResourceExistsError, ResourceNotFoundError, StandardError, new_configuration_error,
    new_in_progress_error
)

logger = logging.getLogger(__name__)

UPGRADE_JOB_NAME = "embedded-cluster-upgrade-{}"
UPGRADE_JOB_CONFIG_MAP = "upgrade-job-configmap-{}"
OPERATOR_IMAGE_FRAGMENT = "embedded-cluster-operator-image"
DEFAULT_METRICS_BASE_URL = "https://replicated.app"


def _installation_name(installation: Dict[str, Any]) -> str:
    return installation["metadata"]["name"]


class UpgradeOrchestrator:
    """Drives one upgrade attempt for an Installation."""

    def __init__(
        self,
        kube,
        config,
        metadata: Optional[ReleaseMetadataProvider] = None,
        backoff: Optional[Backoff] = None,
        progress: Optional[Progress] = None,
    ):
        self.kube = kube
        self.config = config
        self.namespace = config.namespaces.embedded_cluster
        self.metadata = metadata or ReleaseMetadataProvider(kube, config)
        self.backoff = backoff or Backoff.from_config(config.wait, long=True)
        self.progress = progress or logger.info

    async def upgrade(self, installation: Dict[str, Any]) -> None:
        """Upgrade the substrate, then the charts, then unlock the Installation."""
        name = _installation_name(installation)
        logger.info(f"Upgrading to installation {name} (version {config_version(installation)})")

        await self.k0s_upgrade(installation)
        await self.chart_upgrade(installation)
        await self.wait_for_operator_chart(config_version(installation))
        await self.unlock_installation(installation)

        logger.info(f"Upgrade to installation {name} completed")

    async def _get_plan(self) -> Optional[Dict[str, Any]]:
        try:
            return await self.kube.get(kinds.AUTOPILOT_PLAN, autopilot.PLAN_NAME)
        except ResourceNotFoundError:
            return None

    async def _delete_plan(self) -> None:
        try:
            await self.kube.delete(kinds.AUTOPILOT_PLAN, autopilot.PLAN_NAME)
        except ResourceNotFoundError:
            pass

    def _k0s_url(self, installation: Dict[str, Any], metadata) -> str:
        if is_airgap(installation):
            # Placed on every node by the artifact jobs and served by the local artifact mirror.
            return f"http://127.0.0.1:{local_artifact_mirror_port(installation)}/bin/k0s-upgrade"

        url = metadata.artifacts.get("k0s", "")
        if not url:
            raise new_configuration_error("upgrade", "k0s_upgrade", "release metadata has no k0s artifact")
        if url.startswith("https://") or url.startswith("http://"):
            return url
        base = (installation.get("spec") or {}).get("metricsBaseURL") or DEFAULT_METRICS_BASE_URL
        return f"{base.rstrip('/')}/embedded-cluster-public-files/{url.lstrip('/')}"

    async def start_autopilot_upgrade(self, installation: Dict[str, Any], metadata) -> Dict[str, Any]:
        """Create the k0s upgrade plan, linked to the installation by name."""
        controllers, workers = autopilot.split_nodes(await self.kube.list(kinds.NODE))
        command = autopilot.k0s_update_command(
            metadata.k0s_version(), self._k0s_url(installation, metadata), metadata.k0s_sha, controllers, workers
        )
        plan = autopilot.new_plan(_installation_name(installation), [command])
        try:
            return await self.kube.create(kinds.AUTOPILOT_PLAN, plan)
        except ResourceExistsError:
            return await self.kube.get(kinds.AUTOPILOT_PLAN, autopilot.PLAN_NAME)

    async def k0s_upgrade(self, installation: Dict[str, Any]) -> None:
        metadata = await self.metadata.metadata_for(installation)
        desired = metadata.k0s_version()
        if not desired:
            raise new_configuration_error("upgrade", "k0s_upgrade", "release metadata has no Kubernetes version")

        if await cluster_nodes_match_version(self.kube, desired):
            logger.debug(f"All nodes already run k0s {desired}")
            return

        name = _installation_name(installation)
        plan = await self._get_plan()
        if plan is not None and autopilot.plan_owner(plan) != name:
            logger.info(f"Deleting autopilot plan owned by installation {autopilot.plan_owner(plan) or 'unknown'}")
            await self._delete_plan()
            plan = None

        if plan is None:
            logger.info(f"Starting k0s autopilot upgrade plan to version {desired}")
            plan = await self.start_autopilot_upgrade(installation, metadata)

        plan_id = (plan.get("spec") or {}).get("id", "")
        if not autopilot.has_plan_ended(plan):
            raise new_in_progress_error("upgrade", "k0s_upgrade", f"an autopilot upgrade is in progress ({plan_id})")

        if autopilot.has_plan_failed(plan):
            raise StandardError(
                ErrorCode.PLAN_FAILED, "upgrade", "k0s_upgrade",
                f"autopilot plan failed: {autopilot.reason_for_state(plan)}"
            )

        if not autopilot.is_k0s_upgrade_plan(plan):
            # A finished image loading plan; replace it with a k0s upgrade.
            await self._delete_plan()
            await self.k0s_upgrade(installation)
            return

        if not await cluster_nodes_match_version(self.kube, desired):
            raise StandardError(
                ErrorCode.NODE_MISMATCH, "upgrade", "k0s_upgrade",
                "cluster nodes did not match version after upgrade"
            )

        logger.info(f"Upgrade to {desired} completed successfully")
        await self._delete_plan()

    async def chart_upgrade(self, installation: Dict[str, Any]) -> None:
        metadata = await self.metadata.metadata_for(installation)
        cluster_config = await get_cluster_config(self.kube)

        desired = desired_helm_extensions(installation, metadata, self.config.runtime.data_dir)
        current = current_helm_extensions(cluster_config)

        drift, changed = detect_chart_drift(desired, current)
        installed = await list_installed_charts(self.kube)
        pending, errors = detect_chart_completion(current, installed)

        # Drift gets applied even when charts report errors; the new charts may fix them.
        if errors and not drift:
            logger.error(f"Chart errors: failed to update helm charts: {','.join(errors)}")
            raise StandardError(
                ErrorCode.CHART_FAILED, "upgrade", "chart_upgrade",
                "helm charts have errors and there is no update to be applied"
            )

        if pending:
            raise new_in_progress_error("upgrade", "chart_upgrade", f"pending charts: [{', '.join(pending)}]")

        if not drift:
            logger.debug("Charts already match the release")
            return

        await replace_helm_extensions(self.kube, cluster_config, desired, changed)

    async def wait_for_operator_chart(self, version: str) -> None:
        chart_name = self.config.upgrade.operator_chart_name
        self.progress(f"Waiting for chart {chart_name} to be healthy at version {version}")

        async def check() -> bool:
            try:
                return await get_chart_health_version(self.kube, chart_name, version)
            except ResourceNotFoundError:
                logger.debug(f"Chart {chart_object_name(chart_name)} not found in {CHART_NAMESPACE} yet")
                return False
            except StandardError as e:
                raise PermanentError(e)

        await wait_until(check, self.backoff)

    async def create_installation(self, installation: Dict[str, Any]) -> None:
        """Create the Installation in the Waiting state; an existing one is left alone."""
        name = _installation_name(installation)
        try:
            await self.kube.get(kinds.INSTALLATION, name)
            logger.info(f"Installation {name} already exists")
            return
        except ResourceNotFoundError:
            pass

        logger.info(f"Creating installation {name}")
        obj = copy.deepcopy(installation)
        obj.pop("status", None)
        try:
            created = await self.kube.create(kinds.INSTALLATION, obj)
        except ResourceExistsError:
            logger.info(f"Installation {name} already exists")
            return

        # Waiting keeps the operator from reconciling the installation mid-upgrade.
        await update_installation_status(self.kube, created, InstallationState.WAITING)
        logger.info("Installation created")

    async def unlock_installation(self, installation: Dict[str, Any]) -> None:
        """Copy the desired spec onto the stored Installation and move it past Waiting."""
        existing = await self.kube.get(kinds.INSTALLATION, _installation_name(installation))
        existing["spec"] = copy.deepcopy(installation.get("spec") or {})
        existing = await self.kube.update(kinds.INSTALLATION, existing)

        if installation_state(existing) == InstallationState.WAITING.value:
            await update_installation_status(self.kube, existing, InstallationState.KUBERNETES_INSTALLED)

    async def operator_image(self, installation: Dict[str, Any]) -> str:
        metadata = await self.metadata.metadata_for(installation)
        return metadata.image_containing(OPERATOR_IMAGE_FRAGMENT)

    async def create_upgrade_job(self, installation: Dict[str, Any], local_artifact_mirror_image: str = "") -> None:
        """
        Prepare an upgrade and start the in-cluster job that runs it.

        Airgap installations first get the release metadata and artifacts
        distributed to the nodes. An existing upgrade job means the
        preparation already happened.
        """
        name = _installation_name(installation)
        job_name = UPGRADE_JOB_NAME.format(name)
        try:
            await self.kube.get(kinds.JOB, job_name, self.namespace)
            logger.info(f"Upgrade job {job_name} already exists")
            return
        except ResourceNotFoundError:
            pass

        pull_policy = "IfNotPresent"
        if is_airgap(installation):
            if not local_artifact_mirror_image:
                raise new_configuration_error(
                    "upgrade", "create_upgrade_job",
                    "local artifact mirror image is required for airgap installations"
                )
            metadata = await self.metadata.metadata_for(installation)
            await copy_version_metadata_to_cluster(self.kube, self.namespace, config_version(installation), metadata)
            await distribute_artifacts(
                self.kube, self.config, installation, metadata, local_artifact_mirror_image, self.backoff
            )
            pull_policy = "Never"

        await self.create_installation(installation)

        config_map_name = UPGRADE_JOB_CONFIG_MAP.format(name)
        await self.kube.create(kinds.CONFIG_MAP, {
            "apiVersion": "v1",
            "kind": "ConfigMap",
            "metadata": {"name": config_map_name, "namespace": self.namespace},
            "data": {"installation.yaml": json.dumps(installation)},
        })

        job = self.upgrade_job(installation, await self.operator_image(installation), pull_policy,
                               local_artifact_mirror_image)
        await self.kube.create(kinds.JOB, job)
        logger.info(f"Created upgrade job {job_name}")

    def upgrade_job(self, installation: Dict[str, Any], image: str, pull_policy: str,
                    local_artifact_mirror_image: str) -> Dict[str, Any]:
        name = _installation_name(installation)
        env = [{"name": "SSL_CERT_DIR", "value": "/certs"}]
        proxy = (installation.get("spec") or {}).get("proxy")
        if proxy:
            env.extend([
                {"name": "HTTP_PROXY", "value": proxy.get("httpProxy", "")},
                {"name": "HTTPS_PROXY", "value": proxy.get("httpsProxy", "")},
                {"name": "NO_PROXY", "value": proxy.get("providedNoProxy", "")},
            ])

        return {
            "apiVersion": "batch/v1",
            "kind": "Job",
            "metadata": {"name": UPGRADE_JOB_NAME.format(name), "namespace": self.namespace},
            "spec": {
                "template": {
                    "spec": {
                        "restartPolicy": "OnFailure",
                        "serviceAccountName": "embedded-cluster-operator",
                        "volumes": [
                            {"name": "config", "configMap": {"name": UPGRADE_JOB_CONFIG_MAP.format(name)}},
                            {"name": "private-cas", "configMap": {"name": "private-cas", "optional": True}},
                        ],
                        "containers": [{
                            "name": "embedded-cluster-updater",
                            "image": image,
                            "imagePullPolicy": pull_policy,
                            "env": env,
                            "command": [
                                "/manager", "upgrade-job",
                                "--installation", "/config/installation.yaml",
                                "--local-artifact-mirror-image", local_artifact_mirror_image,
                            ],
                            "volumeMounts": [
                                {"name": "config", "mountPath": "/config"},
                                {"name": "private-cas", "mountPath": "/certs"},
                            ],
                        }],
                    },
                },
            },
        }
