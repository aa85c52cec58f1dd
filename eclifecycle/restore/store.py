"""
S3 backup store coordinates and their validation.
"""

import asyncio
import logging
import posixpath
from dataclasses import dataclass
from urllib.parse import urlparse

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from ..kube import kinds
from ..kube.helpers import ensure_namespace
from ..errors.errors import ErrorCode, ResourceExistsError, StandardError

logger = logging.getLogger(__name__)

CREDENTIALS_SECRET_NAME = "cloud-credentials"

S3_CLIENT_CONFIG = Config(
    retries={'max_attempts': 3, 'mode': 'standard'},
    connect_timeout=10,
    read_timeout=30,
)


def _backup_store_error(operation: str, message: str, cause: Exception = None) -> StandardError:
    return StandardError(ErrorCode.BACKUP_STORE, "backup_store", operation, message, cause)


@dataclass
class S3BackupStore:
    """Where velero finds the backups to restore from."""
    endpoint: str = ""
    region: str = ""
    bucket: str = ""
    prefix: str = ""
    access_key_id: str = ""
    secret_access_key: str = ""

    @classmethod
    def from_config(cls, store_config) -> 'S3BackupStore':
        return cls(
            endpoint=store_config.endpoint,
            region=store_config.region,
            bucket=store_config.bucket,
            prefix=store_config.prefix.lstrip("/"),
            access_key_id=store_config.access_key_id,
            secret_access_key=store_config.secret_access_key,
        )

    def has_data(self) -> bool:
        """True when every required coordinate is set. The prefix is optional."""
        return all([self.endpoint, self.region, self.bucket, self.access_key_id, self.secret_access_key])

    def prompt(self, prompter) -> None:
        """Ask the operator for the coordinates."""
        logger.info("Enter information to configure access to your backup storage location.")
        while True:
            self.endpoint = prompter.input("S3 endpoint:", required=True)
            if self.endpoint.startswith("http://") or self.endpoint.startswith("https://"):
                break
            logger.info("Endpoint must start with http:// or https://")
        self.region = prompter.input("Region:", required=True)
        self.bucket = prompter.input("Bucket:", required=True)
        self.prefix = prompter.input("Prefix (press Enter to skip):").lstrip("/")
        self.access_key_id = prompter.input("Access key ID:", required=True)
        self.secret_access_key = prompter.password("Secret access key:")

    def is_aws(self) -> bool:
        return (urlparse(self.endpoint).hostname or "").endswith(".amazonaws.com")

    def backups_prefix(self) -> str:
        return posixpath.join(self.prefix, "backups") + "/"

    def _client(self):
        addressing = "virtual" if self.is_aws() else "path"
        return boto3.client(
            's3',
            endpoint_url=self.endpoint,
            region_name=self.region,
            aws_access_key_id=self.access_key_id,
            aws_secret_access_key=self.secret_access_key,
            config=S3_CLIENT_CONFIG.merge(Config(s3={'addressing_style': addressing})),
        )

    def validate(self) -> None:
        """Require at least one backup under <prefix>/backups/ in the bucket."""
        try:
            client = self._client()
            result = client.list_objects_v2(
                Bucket=self.bucket,
                Delimiter="/",
                Prefix=self.backups_prefix(),
            )
        except (BotoCoreError, ClientError, ValueError) as e:
            raise _backup_store_error("validate", "list objects", e)

        if not result.get("CommonPrefixes"):
            raise _backup_store_error(
                "validate", f"no backups found in {posixpath.normpath(posixpath.join(self.bucket, self.prefix))}"
            )
        logger.debug(f"Found {len(result['CommonPrefixes'])} backup prefixes in {self.bucket}")

    async def validate_async(self) -> None:
        await asyncio.to_thread(self.validate)


def velero_credentials(store: S3BackupStore) -> str:
    return (
        "[default]\n"
        f"aws_access_key_id={store.access_key_id}\n"
        f"aws_secret_access_key={store.secret_access_key}\n"
    )


async def configure_velero_backup_store(kube, namespace: str, store: S3BackupStore) -> None:
    """Point velero's default backup storage location at the store."""
    secret = {
        "apiVersion": "v1",
        "kind": "Secret",
        "metadata": {"name": CREDENTIALS_SECRET_NAME, "namespace": namespace},
        "type": "Opaque",
        "stringData": {"cloud": velero_credentials(store)},
    }
    location = {
        "apiVersion": "velero.io/v1",
        "kind": "BackupStorageLocation",
        "metadata": {"name": "default", "namespace": namespace},
        "spec": {
            "provider": "aws",
            "default": True,
            "objectStorage": {"bucket": store.bucket, "prefix": store.prefix},
            "config": {
                "region": store.region,
                "s3Url": store.endpoint,
                "s3ForcePathStyle": str(not store.is_aws()).lower(),
            },
            "credential": {"name": CREDENTIALS_SECRET_NAME, "key": "cloud"},
        },
    }

    logger.debug(f"Configuring velero backup storage location for bucket {store.bucket}")
    await ensure_namespace(kube, namespace)
    for kind, obj in ((kinds.SECRET, secret), (kinds.VELERO_BACKUP_STORAGE_LOCATION, location)):
        try:
            await kube.create(kind, obj)
        except ResourceExistsError:
            existing = await kube.get(kind, obj["metadata"]["name"], namespace)
            obj["metadata"]["resourceVersion"] = existing["metadata"].get("resourceVersion")
            await kube.update(kind, obj)
