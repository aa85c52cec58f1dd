"""
Airgap artifact distribution.

Before an airgap upgrade can start, the new binaries, images and charts are
pulled from the registry onto every node by one job per node, then an
autopilot plan loads the images into the container runtime.
"""

import base64
import json
import logging
from typing import Any, Dict, Optional

from . import autopilot
from ..kube import kinds
from ..kube.helpers import ensure_object
from ..kube.installation import runtime_config
from ..kube.wait import Backoff, PermanentError, wait_until
from ..errors.errors import (
    ErrorCode, ResourceExistsError, ResourceNotFoundError, StandardError, new_configuration_error
)

logger = logging.getLogger(__name__)

REGISTRY_SECRET_NAME = "registry-creds"
DEFAULT_PROXY_REGISTRY_DOMAIN = "proxy.replicated.com"
DEFAULT_REPLICATED_REGISTRY_DOMAIN = "registry.replicated.com"
ARTIFACTS_JOB_PREFIX = "copy-artifacts-"
DEFAULT_LOCAL_ARTIFACT_MIRROR_PORT = 50000
CONTAINER_DATA_DIR = "/embedded-cluster"

COPY_ARTIFACTS_SCRIPT = """set -ex
/usr/local/bin/local-artifact-mirror pull binaries --data-dir {data_dir} $INSTALLATION_DATA
/usr/local/bin/local-artifact-mirror pull images --data-dir {data_dir} $INSTALLATION_DATA
/usr/local/bin/local-artifact-mirror pull helmcharts --data-dir {data_dir} $INSTALLATION_DATA
mv {data_dir}/bin/k0s {data_dir}/bin/k0s-upgrade
rm {data_dir}/images/images-amd64-* || true
echo "done"
"""


def _artifacts_error(operation: str, message: str, cause: Exception = None) -> StandardError:
    return StandardError(ErrorCode.KUBERNETES_API, "artifacts", operation, message, cause)


def artifacts_job_name(node_name: str) -> str:
    return f"{ARTIFACTS_JOB_PREFIX}{node_name}"


def _installation_name(installation: Dict[str, Any]) -> str:
    return installation["metadata"]["name"]


def _data_dir(installation: Dict[str, Any], default: str) -> str:
    return runtime_config(installation).get("dataDir") or default


def local_artifact_mirror_port(installation: Dict[str, Any]) -> int:
    mirror = runtime_config(installation).get("localArtifactMirror") or {}
    return mirror.get("port") or DEFAULT_LOCAL_ARTIFACT_MIRROR_PORT


def registry_credentials(installation: Dict[str, Any]) -> str:
    """The dockerconfigjson document used to pull artifacts from the vendor registries."""
    spec = installation.get("spec") or {}
    license_id = (spec.get("licenseInfo") or {}).get("licenseID", "")
    if not license_id:
        raise new_configuration_error("artifacts", "registry_credentials", "installation has no license id")

    domains = ((spec.get("config") or {}).get("domains") or {})
    auth = base64.b64encode(f"{license_id}:{license_id}".encode()).decode()
    entry = {"username": license_id, "password": license_id, "auth": auth}
    auths = {
        domains.get("proxyRegistryDomain") or DEFAULT_PROXY_REGISTRY_DOMAIN: entry,
        domains.get("replicatedRegistryDomain") or DEFAULT_REPLICATED_REGISTRY_DOMAIN: entry,
    }
    return json.dumps({"auths": auths})


async def ensure_registry_secret(kube, namespace: str, installation: Dict[str, Any]) -> str:
    """Create or refresh the registry credentials. Returns "created", "updated" or "unchanged"."""
    encoded = base64.b64encode(registry_credentials(installation).encode()).decode()
    secret = {
        "apiVersion": "v1",
        "kind": "Secret",
        "metadata": {"name": REGISTRY_SECRET_NAME, "namespace": namespace},
        "type": "kubernetes.io/dockerconfigjson",
        "data": {".dockerconfigjson": encoded},
    }
    try:
        await kube.create(kinds.SECRET, secret)
        return "created"
    except ResourceExistsError:
        existing = await kube.get(kinds.SECRET, REGISTRY_SECRET_NAME, namespace)

    if (existing.get("data") or {}).get(".dockerconfigjson") == encoded:
        return "unchanged"
    existing["data"] = secret["data"]
    existing["type"] = secret["type"]
    await kube.update(kinds.SECRET, existing)
    return "updated"


def artifacts_job(installation: Dict[str, Any], node_name: str, namespace: str, image: str,
                  data_dir: str) -> Dict[str, Any]:
    installation_data = base64.b64encode(json.dumps(installation).encode()).decode()
    return {
        "apiVersion": "batch/v1",
        "kind": "Job",
        "metadata": {
            "name": artifacts_job_name(node_name),
            "namespace": namespace,
            "annotations": {autopilot.INSTALLATION_NAME_ANNOTATION: _installation_name(installation)},
        },
        "spec": {
            "backoffLimit": 2,
            "template": {
                "spec": {
                    "nodeName": node_name,
                    "restartPolicy": "OnFailure",
                    "serviceAccountName": "embedded-cluster-operator",
                    "imagePullSecrets": [{"name": REGISTRY_SECRET_NAME}],
                    "tolerations": [{"operator": "Exists"}],
                    "volumes": [{"name": "host", "hostPath": {"path": data_dir, "type": "DirectoryOrCreate"}}],
                    "containers": [{
                        "name": "embedded-cluster-updater",
                        "image": image,
                        "env": [{"name": "INSTALLATION_DATA", "value": installation_data}],
                        "command": ["/bin/sh", "-c", COPY_ARTIFACTS_SCRIPT.format(data_dir=CONTAINER_DATA_DIR)],
                        "volumeMounts": [{"name": "host", "mountPath": CONTAINER_DATA_DIR}],
                    }],
                },
            },
        },
    }


def _owned_by_other(installation: Dict[str, Any]):
    name = _installation_name(installation)

    def should_delete(obj: Dict[str, Any]) -> bool:
        return ((obj.get("metadata") or {}).get("annotations") or {}).get(
            autopilot.INSTALLATION_NAME_ANNOTATION) != name
    return should_delete


async def ensure_artifacts_jobs(kube, namespace: str, installation: Dict[str, Any], image: str,
                                default_data_dir: str) -> None:
    """One copy job per node; jobs left over from another installation are replaced."""
    nodes = await kube.list(kinds.NODE)
    data_dir = _data_dir(installation, default_data_dir)
    for node in nodes:
        job = artifacts_job(installation, node["metadata"]["name"], namespace, image, data_dir)
        await ensure_object(kube, kinds.JOB, job, should_delete=_owned_by_other(installation))


async def list_artifacts_jobs(kube, namespace: str) -> Dict[str, Optional[Dict[str, Any]]]:
    """The copy job of every node, None for nodes without one."""
    jobs: Dict[str, Optional[Dict[str, Any]]] = {}
    for node in await kube.list(kinds.NODE):
        name = node["metadata"]["name"]
        try:
            jobs[name] = await kube.get(kinds.JOB, artifacts_job_name(name), namespace)
        except ResourceNotFoundError:
            jobs[name] = None
    return jobs


async def wait_for_artifacts_jobs(kube, namespace: str, backoff: Optional[Backoff] = None) -> None:
    """Poll until every node's job succeeded; a failed or missing job ends the wait."""
    async def check() -> bool:
        jobs = await list_artifacts_jobs(kube, namespace)
        ready = True
        for node_name, job in jobs.items():
            if job is None:
                raise PermanentError(_artifacts_error("wait_for_jobs", f"job for node {node_name} not found"))
            status = job.get("status") or {}
            if (status.get("succeeded") or 0) > 0:
                continue
            ready = False
            for condition in status.get("conditions") or []:
                if condition.get("type") == "Failed":
                    if condition.get("status") == "True":
                        raise PermanentError(_artifacts_error(
                            "wait_for_jobs",
                            f"job for node {node_name} failed: {condition.get('reason', '')} - "
                            f"{condition.get('message', '')}"
                        ))
                    break
        return ready

    await wait_until(check, backoff)


def airgap_plan(installation: Dict[str, Any], metadata, node_names) -> Dict[str, Any]:
    """The plan that loads the placed images into the container runtime on every node."""
    images_url = f"http://127.0.0.1:{local_artifact_mirror_port(installation)}/images/images-amd64.tar"
    command = autopilot.airgap_update_command(metadata.k0s_version(), images_url, list(node_names))
    return autopilot.new_plan(_installation_name(installation), [command])


async def ensure_airgap_plan(kube, installation: Dict[str, Any], metadata) -> Dict[str, Any]:
    nodes = await kube.list(kinds.NODE)
    plan = airgap_plan(installation, metadata, [n["metadata"]["name"] for n in nodes])
    return await ensure_object(kube, kinds.AUTOPILOT_PLAN, plan, should_delete=_owned_by_other(installation))


async def wait_for_airgap_plan(kube, installation: Dict[str, Any], backoff: Optional[Backoff] = None) -> None:
    name = _installation_name(installation)

    async def check() -> bool:
        plan = await kube.get(kinds.AUTOPILOT_PLAN, autopilot.PLAN_NAME)
        if autopilot.plan_owner(plan) != name:
            raise PermanentError(StandardError(
                ErrorCode.PLAN_FAILED, "artifacts", "wait_for_plan", "autopilot plan for different installation"
            ))
        if autopilot.has_plan_succeeded(plan):
            return True
        if autopilot.has_plan_failed(plan):
            raise PermanentError(StandardError(
                ErrorCode.PLAN_FAILED, "artifacts", "wait_for_plan",
                f"autopilot plan failed: {autopilot.reason_for_state(plan)}"
            ))
        return False

    await wait_until(check, backoff)


async def distribute_artifacts(kube, config, installation: Dict[str, Any], metadata, image: str,
                               backoff: Optional[Backoff] = None) -> None:
    """Place the artifacts on every node, then load the images into the cluster."""
    namespace = config.namespaces.embedded_cluster
    backoff = backoff or Backoff.from_config(config.wait, long=True)

    logger.info("Placing artifacts on nodes...")
    operation = await ensure_registry_secret(kube, namespace, installation)
    if operation != "unchanged":
        logger.info(f"Registry credentials secret {operation}")

    await ensure_artifacts_jobs(kube, namespace, installation, image, config.runtime.data_dir)
    logger.info("Waiting for artifacts to be placed on nodes...")
    await wait_for_artifacts_jobs(kube, namespace, backoff)
    logger.info("Artifacts placed on nodes")

    logger.info("Uploading container images...")
    await ensure_airgap_plan(kube, installation, metadata)
    logger.info("Waiting for container images to be uploaded...")
    await wait_for_airgap_plan(kube, installation, backoff)
    logger.info("Container images uploaded")
