# =====================================================
# FILE: app/services/storage_service.py
# Blob storage for signature images, certificates
# and notary seals (S3 or local filesystem)
# =====================================================

import json
import logging
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from app.core.config import Settings, settings as default_settings
from app.core.exceptions import DependencyFailureError

logger = logging.getLogger(__name__)


class BlobStore(ABC):
    """put(key, data) -> url, get(key) -> bytes"""

    @abstractmethod
    def put(
        self,
        key: str,
        data: bytes,
        content_type: str,
        metadata: Optional[Dict[str, str]] = None
    ) -> str:
        ...

    @abstractmethod
    def get(self, key: str) -> bytes:
        ...

    @abstractmethod
    def key_from_url(self, url: str) -> str:
        ...

    def get_by_url(self, url: str) -> bytes:
        return self.get(self.key_from_url(url))


def _check_key(key: str) -> str:
    if not key or key.startswith("/") or ".." in key.split("/"):
        raise DependencyFailureError(f"Invalid blob key: {key}", reason="InvalidBlobKey")
    return key


class LocalBlobStore(BlobStore):
    """
    Filesystem store used in development and tests.
    Metadata is written next to the blob as `<name>.meta.json`.
    """

    def __init__(self, root_path: str, base_url: str = "local://blobs"):
        self.root = Path(root_path)
        self.base_url = base_url.rstrip("/")

    def _path(self, key: str) -> Path:
        return self.root / _check_key(key)

    def put(self, key, data, content_type, metadata=None):
        path = self._path(key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
            meta = {"content_type": content_type, "metadata": metadata or {}}
            path.with_name(path.name + ".meta.json").write_text(json.dumps(meta))
        except OSError as e:
            logger.error(f"Failed to write blob {key}: {str(e)}")
            raise DependencyFailureError(f"Blob storage write failed for {key}", reason="BlobWriteFailed") from e

        logger.info(f"Stored blob {key} ({len(data)} bytes)")
        return f"{self.base_url}/{key}"

    def get(self, key):
        path = self._path(key)
        try:
            return path.read_bytes()
        except OSError as e:
            logger.error(f"Failed to read blob {key}: {str(e)}")
            raise DependencyFailureError(f"Blob not retrievable: {key}", reason="BlobReadFailed") from e

    def key_from_url(self, url):
        prefix = f"{self.base_url}/"
        if not url or not url.startswith(prefix):
            raise DependencyFailureError(f"Blob URL not served by this store: {url}", reason="UnknownBlobUrl")
        return url[len(prefix):]


class S3BlobStore(BlobStore):
    """AWS S3 (or S3 compatible) store with server side encryption"""

    def __init__(
        self,
        bucket_name: str,
        region_name: str = "us-east-1",
        endpoint_url: Optional[str] = None,
        client=None
    ):
        self.bucket_name = bucket_name
        self.endpoint_url = endpoint_url
        # boto3 reads AWS credentials from the environment or the instance role
        self.s3_client = client or boto3.client(
            "s3",
            region_name=region_name,
            endpoint_url=endpoint_url
        )
        if endpoint_url:
            self.base_url = f"{endpoint_url.rstrip('/')}/{bucket_name}"
        else:
            self.base_url = f"https://{bucket_name}.s3.amazonaws.com"

    def put(self, key, data, content_type, metadata=None):
        put_params = {
            "Bucket": self.bucket_name,
            "Key": _check_key(key),
            "Body": data,
            "ContentType": content_type,
            "Metadata": metadata or {},
        }

        # Only real AWS S3 supports SSE here (not MinIO)
        if not self.endpoint_url or "amazonaws.com" in self.endpoint_url:
            put_params["ServerSideEncryption"] = "AES256"

        try:
            response = self.s3_client.put_object(**put_params)
        except (BotoCoreError, ClientError) as e:
            logger.error(f"S3 upload failed for {key}: {str(e)}")
            raise DependencyFailureError(f"Blob storage write failed for {key}", reason="BlobWriteFailed") from e

        logger.info(f"Uploaded {key} to bucket {self.bucket_name}, ETag: {response.get('ETag', 'unknown')}")
        return f"{self.base_url}/{key}"

    def get(self, key):
        try:
            response = self.s3_client.get_object(Bucket=self.bucket_name, Key=_check_key(key))
            return response["Body"].read()
        except (BotoCoreError, ClientError) as e:
            logger.error(f"S3 download failed for {key}: {str(e)}")
            raise DependencyFailureError(f"Blob not retrievable: {key}", reason="BlobReadFailed") from e

    def key_from_url(self, url):
        prefix = f"{self.base_url}/"
        if not url or not url.startswith(prefix):
            raise DependencyFailureError(f"Blob URL not served by this store: {url}", reason="UnknownBlobUrl")
        return url[len(prefix):]


def get_blob_store(config: Optional[Settings] = None) -> BlobStore:
    """Build the configured blob store"""
    config = config or default_settings

    if config.BLOB_BACKEND == "s3":
        return S3BlobStore(
            bucket_name=config.S3_BUCKET_NAME,
            region_name=config.AWS_DEFAULT_REGION,
            endpoint_url=config.S3_ENDPOINT_URL
        )

    if config.BLOB_BACKEND != "local":
        raise ValueError(f"Unknown blob backend: {config.BLOB_BACKEND}")

    os.makedirs(config.BLOB_LOCAL_PATH, exist_ok=True)
    return LocalBlobStore(config.BLOB_LOCAL_PATH, config.BLOB_BASE_URL)
