"""
Blob stores for artifact bodies too large to keep inline.

Two implementations share the ``put_text`` / ``get_text`` / ``delete`` contract:
a directory on local disk and S3-compatible object storage (Cloudflare R2).
"""

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional
import json
import logging

from .config import HubConfig

logger = logging.getLogger(__name__)


class BlobStore(ABC):
    @abstractmethod
    def put_text(self, key: str, content: str, content_type: str) -> None: ...

    @abstractmethod
    def get_text(self, key: str) -> str: ...

    @abstractmethod
    def delete(self, key: str) -> None: ...


class FileBlobStore(BlobStore):
    """Stores each blob as a UTF-8 file under ``root``; keys map to relative paths."""

    def __init__(self, root: Path):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if self.root.resolve() not in path.parents:
            raise ValueError(f"Blob key escapes store root: {key!r}")
        return path

    def put_text(self, key: str, content: str, content_type: str) -> None:
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
        meta_path = path.with_name(path.name + ".meta.json")
        meta_path.write_text(json.dumps({"content_type": content_type}), encoding="utf-8")

    def get_text(self, key: str) -> str:
        return self._path(key).read_text(encoding="utf-8")

    def delete(self, key: str) -> None:
        path = self._path(key)
        path.unlink(missing_ok=True)
        path.with_name(path.name + ".meta.json").unlink(missing_ok=True)


class R2BlobStore(BlobStore):
    """S3-compatible object storage; boto3 is imported on first use."""

    def __init__(
        self,
        endpoint: str,
        access_key_id: str,
        secret_access_key: str,
        bucket: str,
        region: str = "auto",
        client=None,
    ):
        if client is None:
            import boto3

            client = boto3.client(
                "s3",
                endpoint_url=endpoint,
                aws_access_key_id=access_key_id,
                aws_secret_access_key=secret_access_key,
                region_name=region,
            )
        self._client = client
        self.bucket = bucket

    def put_text(self, key: str, content: str, content_type: str) -> None:
        self._client.put_object(
            Bucket=self.bucket,
            Key=key,
            Body=content.encode("utf-8"),
            ContentType=content_type,
        )

    def get_text(self, key: str) -> str:
        resp = self._client.get_object(Bucket=self.bucket, Key=key)
        body = resp.get("Body")
        if body is None:
            raise RuntimeError(f"Blob object has no body: {key}")
        return body.read().decode("utf-8")

    def delete(self, key: str) -> None:
        self._client.delete_object(Bucket=self.bucket, Key=key)


def create_blob_store(config: HubConfig) -> Optional[BlobStore]:
    """R2 when fully configured, else a local directory if set, else None."""
    if config.r2_configured:
        logger.info("Using R2 blob store (bucket %s)", config.r2_bucket)
        return R2BlobStore(
            endpoint=config.r2_endpoint,
            access_key_id=config.r2_access_key_id,
            secret_access_key=config.r2_secret_access_key,
            bucket=config.r2_bucket,
            region=config.r2_region,
        )
    if config.blob_folder:
        logger.info("Using file blob store at %s", config.blob_folder)
        return FileBlobStore(Path(config.blob_folder))
    logger.info("No blob store configured; artifact bodies are stored inline")
    return None
