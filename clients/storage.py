"""Object storage for drawing tiles and PDFs, backed by Cloudflare R2 (S3 API)."""

from __future__ import annotations

import logging
from io import BytesIO
from typing import Protocol

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from utils.job_errors import ConfigurationError
from utils.storage_utils import (
    PDFS_PREFIX,
    TILES_PREFIX,
    build_object_key,
    join_public_url,
)

logger = logging.getLogger(__name__)

SUPPORTED_PROVIDER = "r2"
IMMUTABLE_CACHE_CONTROL = "public, max-age=31536000, immutable"
_NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound"}
_DOWNLOAD_CHUNK_SIZE = 1024 * 1024


class StorageClient(Protocol):
    """Protocol defining the bucket-level storage operations."""

    bucket_name: str

    def upload_from_bytes(
        self,
        data: bytes,
        key: str,
        content_type: str = "application/octet-stream",
        cache_control: str | None = None,
    ) -> str:
        """Upload bytes under a bucket key."""
        ...

    def download_to_bytes(self, key: str) -> bytes:
        """Download an object into memory."""
        ...

    def delete_keys(self, keys: list[str]) -> None:
        """Delete several objects in one request."""
        ...


class R2StorageClient:
    """Client for Cloudflare R2 through its S3-compatible API."""

    def __init__(self, bucket_name: str, client) -> None:
        """
        Initialize R2 storage client.

        Args:
            bucket_name: Name of the R2 bucket
            client: boto3 S3 client pointed at the R2 endpoint

        Raises:
            ValueError: If bucket_name is empty
        """
        if not bucket_name:
            raise ValueError("Bucket name is required")

        self.bucket_name = bucket_name
        self.client = client

    def upload_from_bytes(
        self,
        data: bytes,
        key: str,
        content_type: str = "application/octet-stream",
        cache_control: str | None = None,
    ) -> str:
        """
        Upload bytes to R2.

        Args:
            data: Bytes to upload
            key: Destination key in bucket (e.g., "drawings-tiles/org/hash/page-0/manifest.json")
            content_type: MIME type (default: application/octet-stream)
            cache_control: Optional Cache-Control header stored with the object

        Returns:
            Full S3 URI (e.g., "s3://bucket/drawings-tiles/...")

        Raises:
            IOError: If upload fails (network error, permission denied)
            ValueError: If key is empty
        """
        if not key:
            raise ValueError("Object key cannot be empty")

        params = {
            "Bucket": self.bucket_name,
            "Key": key,
            "Body": data,
            "ContentType": content_type,
        }
        if cache_control:
            params["CacheControl"] = cache_control

        try:
            self.client.put_object(**params)
            return f"s3://{self.bucket_name}/{key}"
        except (ClientError, BotoCoreError) as e:
            raise OSError(f"Upload failed for {key}: {str(e)}") from e

    def download_to_bytes(self, key: str) -> bytes:
        """
        Download an object from R2 into memory.

        The streamed body is drained chunk by chunk before returning.

        Raises:
            FileNotFoundError: If the object does not exist
            IOError: If download fails or the body is empty
        """
        if not key:
            raise ValueError("Object key cannot be empty")

        try:
            response = self.client.get_object(Bucket=self.bucket_name, Key=key)
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in _NOT_FOUND_CODES:
                raise FileNotFoundError(
                    f"Remote file not found: s3://{self.bucket_name}/{key}"
                ) from e
            raise OSError(f"Download failed for {key}: {str(e)}") from e
        except BotoCoreError as e:
            raise OSError(f"Download failed for {key}: {str(e)}") from e

        body = response.get("Body")
        if body is None:
            raise OSError(f"Download failed for {key}: empty body")

        buffer = BytesIO()
        try:
            for chunk in body.iter_chunks(chunk_size=_DOWNLOAD_CHUNK_SIZE):
                buffer.write(chunk)
        except (ClientError, BotoCoreError) as e:
            raise OSError(f"Download failed for {key}: {str(e)}") from e
        finally:
            body.close()

        return buffer.getvalue()

    def delete_keys(self, keys: list[str]) -> None:
        """
        Delete objects from R2 in one quiet bulk request.

        Raises:
            IOError: If the request fails or R2 reports per-key errors
        """
        if not keys:
            return

        try:
            response = self.client.delete_objects(
                Bucket=self.bucket_name,
                Delete={"Objects": [{"Key": key} for key in keys], "Quiet": True},
            )
        except (ClientError, BotoCoreError) as e:
            raise OSError(f"Delete failed for {len(keys)} objects: {str(e)}") from e

        errors = response.get("Errors") or []
        if errors:
            failed = ", ".join(error.get("Key", "?") for error in errors)
            raise OSError(f"Delete failed for: {failed}")


class ObjectStore:
    """Namespaced gateway over one bucket.

    Logical paths ("org/hash/page-0/manifest.json") are mapped to bucket keys
    under a fixed namespace prefix so tiles and PDFs can share a bucket.
    """

    def __init__(
        self,
        client: StorageClient,
        prefix: str,
        public_base_url: str | None = None,
    ) -> None:
        self.client = client
        self.prefix = prefix
        self.public_base_url = public_base_url

    def key_for(self, path: str) -> str:
        return build_object_key(self.prefix, path)

    def build_base_url(self, path: str) -> str:
        """Public URL for a logical prefix, from the configured override."""
        if not self.public_base_url:
            raise ConfigurationError(
                "Missing DRAWINGS_TILES_BASE_URL or NEXT_PUBLIC_DRAWINGS_TILES_BASE_URL"
            )
        logger.debug(f"[storage.base_url] {self.public_base_url} + {path}")
        return join_public_url(self.public_base_url, path or "")

    def upload(
        self,
        path: str,
        data: bytes,
        content_type: str,
        cache_control: str | None = None,
    ) -> str:
        key = self.key_for(path)
        logger.debug(f"[storage.put] {key} ({content_type})")
        return self.client.upload_from_bytes(
            data,
            key,
            content_type=content_type,
            cache_control=cache_control or IMMUTABLE_CACHE_CONTROL,
        )

    def download(self, path: str) -> bytes:
        key = self.key_for(path)
        logger.debug(f"[storage.get] {key}")
        return self.client.download_to_bytes(key)

    def delete(self, paths: list[str]) -> None:
        keys = [self.key_for(path) for path in paths]
        logger.debug(f"[storage.delete] {len(keys)} objects")
        self.client.delete_keys(keys)


def create_storage_client(cfg) -> R2StorageClient:
    """
    Build the R2 storage client from configuration.

    Called once at worker startup; the result is shared by every job.

    Raises:
        ConfigurationError: If the provider is not 'r2' or credentials are missing
    """
    provider = (cfg.drawings_tiles_storage or "").strip().lower()
    if provider != SUPPORTED_PROVIDER:
        raise ConfigurationError(
            f"DRAWINGS_TILES_STORAGE must be set to r2 (got {cfg.drawings_tiles_storage!r})"
        )

    endpoint = cfg.r2_endpoint or (
        f"https://{cfg.r2_account_id}.r2.cloudflarestorage.com" if cfg.r2_account_id else None
    )
    if not endpoint or not cfg.r2_access_key_id or not cfg.r2_secret_access_key:
        raise ConfigurationError("Missing R2 credentials or endpoint")

    boto_config = BotoConfig(
        s3={"addressing_style": "path" if cfg.r2_force_path_style else "auto"},
        max_pool_connections=max(10, cfg.tile_upload_concurrency * 2),
    )
    client = boto3.client(
        "s3",
        endpoint_url=endpoint,
        aws_access_key_id=cfg.r2_access_key_id,
        aws_secret_access_key=cfg.r2_secret_access_key,
        region_name=cfg.r2_region,
        config=boto_config,
    )
    return R2StorageClient(bucket_name=cfg.r2_bucket, client=client)


def create_tiles_store(client: StorageClient, cfg) -> ObjectStore:
    return ObjectStore(client, TILES_PREFIX, public_base_url=cfg.drawings_tiles_base_url)


def create_pdfs_store(client: StorageClient) -> ObjectStore:
    return ObjectStore(client, PDFS_PREFIX)
