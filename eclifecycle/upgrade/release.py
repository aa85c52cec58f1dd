"""
Release metadata: the versions, charts, images and artifacts shipped with a
release of the embedded cluster.

Metadata is read from the cluster first (ConfigMap version-metadata-<version>)
and otherwise downloaded from the public metadata endpoint.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import aiohttp

from ..kube import kinds
from ..kube.installation import config_version
from ..errors.errors import (
    ErrorCode, ResourceExistsError, ResourceNotFoundError, StandardError, new_configuration_error
)

logger = logging.getLogger(__name__)

METADATA_KEY = "metadata.json"
K0S_VERSION_KEY = "Kubernetes"


def metadata_config_map_name(version: str) -> str:
    return f"version-metadata-{version.replace('+', '-')}"


def _metadata_error(operation: str, message: str, cause: Exception = None) -> StandardError:
    return StandardError(ErrorCode.CONFIGURATION, "release", operation, message, cause)


@dataclass
class ReleaseMetadata:
    """What a release ships: component versions, charts, images, artifacts."""
    versions: Dict[str, str] = field(default_factory=dict)
    k0s_sha: str = ""
    artifacts: Dict[str, str] = field(default_factory=dict)
    configs: Dict[str, Any] = field(default_factory=dict)
    images: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ReleaseMetadata':
        return cls(
            versions=data.get("Versions") or {},
            k0s_sha=data.get("K0sSHA") or "",
            artifacts=data.get("Artifacts") or {},
            configs=data.get("Configs") or {},
            images=data.get("Images") or [],
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "Versions": self.versions,
            "K0sSHA": self.k0s_sha,
            "Artifacts": self.artifacts,
            "Configs": self.configs,
            "Images": self.images,
        }

    def k0s_version(self) -> str:
        return self.versions.get(K0S_VERSION_KEY, "")

    def image_containing(self, fragment: str) -> str:
        for image in self.images:
            if fragment in image:
                return image
        return ""


class ReleaseMetadataProvider:
    """Looks up and caches release metadata per version."""

    def __init__(self, kube, config, timeout: float = 30):
        self.kube = kube
        self.namespace = config.namespaces.embedded_cluster
        self.metadata_url = config.release.metadata_url.rstrip("/")
        self.timeout = timeout
        self._cache: Dict[str, ReleaseMetadata] = {}

    async def metadata_for(self, installation: Dict[str, Any]) -> ReleaseMetadata:
        version = config_version(installation)
        if not version:
            raise new_configuration_error("release", "metadata_for", "installation has no config version")

        if version in self._cache:
            return self._cache[version]

        metadata = await self._from_cluster(version)
        if metadata is None:
            metadata = await self._from_remote(version)
        self._cache[version] = metadata
        return metadata

    async def _from_cluster(self, version: str) -> Optional[ReleaseMetadata]:
        name = metadata_config_map_name(version)
        try:
            cm = await self.kube.get(kinds.CONFIG_MAP, name, self.namespace)
        except ResourceNotFoundError:
            logger.debug(f"Release metadata config map {name} not found")
            return None

        raw = (cm.get("data") or {}).get(METADATA_KEY)
        if not raw:
            raise _metadata_error("metadata_for", f"config map {name} has no {METADATA_KEY}")
        try:
            return ReleaseMetadata.from_dict(json.loads(raw))
        except (json.JSONDecodeError, AttributeError) as e:
            raise _metadata_error("metadata_for", f"unable to parse release metadata from {name}", e)

    async def _from_remote(self, version: str) -> ReleaseMetadata:
        url = f"{self.metadata_url}/v{version}.json"
        logger.info(f"Fetching release metadata from {url}")
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.get(url) as response:
                    if response.status != 200:
                        text = await response.text()
                        raise _metadata_error(
                            "fetch_metadata", f"unexpected status {response.status} fetching {url}: {text}"
                        )
                    data = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise StandardError(ErrorCode.NETWORK_TIMEOUT, "release", "fetch_metadata", f"unable to fetch {url}", e)
        except json.JSONDecodeError as e:
            raise _metadata_error("fetch_metadata", f"unable to parse release metadata from {url}", e)
        return ReleaseMetadata.from_dict(data)


async def copy_version_metadata_to_cluster(kube, namespace: str, version: str, metadata: ReleaseMetadata) -> None:
    """Store the metadata in the cluster so in-cluster jobs do not need network access."""
    cm = {
        "apiVersion": "v1",
        "kind": "ConfigMap",
        "metadata": {
            "name": metadata_config_map_name(version),
            "namespace": namespace,
        },
        "data": {METADATA_KEY: json.dumps(metadata.to_dict())},
    }
    try:
        await kube.create(kinds.CONFIG_MAP, cm)
    except ResourceExistsError:
        logger.debug(f"Release metadata for {version} already in the cluster")
