"""
Cluster API client used by the restore and upgrade orchestrators.

All objects are exchanged as plain dictionaries. Every blocking call of the
kubernetes dynamic client runs in a worker thread so the orchestrators stay
on one event loop.
"""

import asyncio
import json
import logging
from typing import Any, Dict, List, Optional

from kubernetes import client, config, dynamic
from kubernetes.client.rest import ApiException
from kubernetes.dynamic import exceptions as dynamic_exceptions
from urllib3.exceptions import HTTPError

from .kinds import ResourceKind
from ..errors.errors import (
    ResourceNotFoundError, ResourceExistsError, ResourceConflictError, new_kubernetes_error
)

logger = logging.getLogger(__name__)


def format_label_selector(selector: Optional[Dict[str, str]]) -> Optional[str]:
    """Render a match-labels mapping as a label selector string."""
    if not selector:
        return None
    return ",".join(f"{key}={value}" for key, value in sorted(selector.items()))


def object_key(obj: Dict[str, Any]) -> tuple:
    metadata = obj.get("metadata") or {}
    return metadata.get("namespace"), metadata.get("name")


class ClusterClient:
    """
    Thin async facade over kubernetes.dynamic.DynamicClient.

    The dynamic client is built on first use, so a client can be handed to
    the restore before the cluster it points at has been installed. A failed
    connection is not cached and the next call tries again.

    API errors are translated into the lifecycle error taxonomy:
    404 becomes ResourceNotFoundError, 409 AlreadyExists becomes
    ResourceExistsError, any other 409 becomes ResourceConflictError.
    Configuration and connection failures raise KUBERNETES_API errors.
    """

    def __init__(self, kubeconfig: Optional[str] = None, api: Optional[client.ApiClient] = None):
        self.kubeconfig = kubeconfig
        self._api = api
        self._dynamic: Optional[dynamic.DynamicClient] = None

    @staticmethod
    def _load_api_client(kubeconfig: Optional[str]) -> client.ApiClient:
        if kubeconfig:
            try:
                api = config.new_client_from_config(config_file=kubeconfig)
            except (config.ConfigException, OSError) as e:
                raise new_kubernetes_error("connect", f"cannot load kubeconfig {kubeconfig}", e)
            logger.info(f"Loaded kubeconfig from {kubeconfig}")
            return api

        try:
            # Try in-cluster config first
            config.load_incluster_config()
            logger.info("Loaded in-cluster Kubernetes configuration")
        except config.ConfigException:
            try:
                config.load_kube_config()
                logger.info("Loaded default kubeconfig")
            except config.ConfigException as e:
                raise new_kubernetes_error("connect", "cannot load Kubernetes configuration", e)
        return client.ApiClient()

    def _client(self) -> dynamic.DynamicClient:
        if self._dynamic is None:
            api = self._api or self._load_api_client(self.kubeconfig)
            try:
                self._dynamic = dynamic.DynamicClient(api)
            except (ApiException, HTTPError) as e:
                raise new_kubernetes_error("connect", "cannot reach the Kubernetes API server", e)
            self._api = api
        return self._dynamic

    def _resource(self, kind: ResourceKind):
        try:
            return self._client().resources.get(api_version=kind.api_version, kind=kind.kind)
        except dynamic_exceptions.ResourceNotFoundError as e:
            raise new_kubernetes_error("discover", f"{kind.api_version} {kind.kind} is not served by the cluster", e)

    async def _call(self, verb: str, kind: ResourceKind, name: Optional[str], namespace: Optional[str], fn):
        try:
            return await asyncio.to_thread(fn)
        except ApiException as e:
            raise self._translate(e, verb, kind, name, namespace)
        except HTTPError as e:
            raise new_kubernetes_error(verb, f"unable to {verb} {kind.kind} {name or ''}".rstrip(), e)

    @staticmethod
    def _translate(e: ApiException, verb: str, kind: ResourceKind, name: Optional[str], namespace: Optional[str]):
        if e.status == 404:
            return ResourceNotFoundError(kind.kind, name or "", namespace, e)
        if e.status == 409:
            reason = ""
            try:
                reason = json.loads(e.body or "{}").get("reason", "")
            except (TypeError, ValueError):
                pass
            if reason == "AlreadyExists":
                return ResourceExistsError(kind.kind, name or "", namespace, e)
            return ResourceConflictError(kind.kind, name or "", namespace, e)
        return new_kubernetes_error(verb, f"unable to {verb} {kind.kind} {name or ''}".rstrip(), e)

    async def get(self, kind: ResourceKind, name: str, namespace: Optional[str] = None) -> Dict[str, Any]:
        def fn():
            return self._resource(kind).get(name=name, namespace=namespace).to_dict()
        return await self._call("get", kind, name, namespace, fn)

    async def list(self, kind: ResourceKind, namespace: Optional[str] = None,
                   label_selector: Optional[Dict[str, str]] = None) -> List[Dict[str, Any]]:
        def fn():
            result = self._resource(kind).get(
                namespace=namespace, label_selector=format_label_selector(label_selector)
            )
            return result.to_dict().get("items") or []
        return await self._call("list", kind, None, namespace, fn)

    async def create(self, kind: ResourceKind, obj: Dict[str, Any]) -> Dict[str, Any]:
        namespace, name = object_key(obj)

        def fn():
            return self._resource(kind).create(body=obj, namespace=namespace).to_dict()
        return await self._call("create", kind, name, namespace, fn)

    async def update(self, kind: ResourceKind, obj: Dict[str, Any]) -> Dict[str, Any]:
        """Replace an object; a stale resourceVersion raises ResourceConflictError."""
        namespace, name = object_key(obj)

        def fn():
            return self._resource(kind).replace(body=obj, namespace=namespace).to_dict()
        return await self._call("update", kind, name, namespace, fn)

    async def update_status(self, kind: ResourceKind, obj: Dict[str, Any]) -> Dict[str, Any]:
        namespace, name = object_key(obj)

        def fn():
            status = self._resource(kind).subresources["status"]
            return status.replace(body=obj, name=name, namespace=namespace).to_dict()
        return await self._call("update_status", kind, name, namespace, fn)

    async def delete(self, kind: ResourceKind, name: str, namespace: Optional[str] = None) -> None:
        def fn():
            self._resource(kind).delete(
                name=name, namespace=namespace, body={"propagationPolicy": "Background"}
            )
        await self._call("delete", kind, name, namespace, fn)
