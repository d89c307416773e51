"""
Storage abstraction for S3-compatible object storage and in-memory testing.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional, Protocol

import boto3
from botocore.config import Config


class StorageClient(Protocol):
    """Defines the operations the image pipeline needs from object storage."""

    def upload_bytes(self, path: str, data: bytes, *, content_type: str) -> str:
        ...

    def get_public_url(self, path: str) -> str:
        ...

    def path_from_public_url(self, url: str) -> Optional[str]:
        ...

    def delete_objects(self, paths: Iterable[str]) -> None:
        ...


def _strip_public_prefix(url: str, base_url: str) -> Optional[str]:
    prefix = base_url.rstrip("/") + "/"
    if not url or not url.startswith(prefix):
        return None
    path = url[len(prefix):].split("?", 1)[0]
    return path or None


@dataclass
class InMemoryStorageClient:
    """Test double for storage interactions."""

    base_url: str = "https://example.test/storage/images"
    stored_objects: dict = None
    content_types: dict = None

    def __post_init__(self):
        if self.stored_objects is None:
            self.stored_objects = {}
        if self.content_types is None:
            self.content_types = {}

    def upload_bytes(self, path: str, data: bytes, *, content_type: str) -> str:
        self.stored_objects[path] = bytes(data)
        self.content_types[path] = content_type
        return path

    def get_public_url(self, path: str) -> str:
        return f"{self.base_url}/{path}"

    def path_from_public_url(self, url: str) -> Optional[str]:
        return _strip_public_prefix(url, self.base_url)

    def delete_objects(self, paths: Iterable[str]) -> None:
        for path in paths:
            self.stored_objects.pop(path, None)
            self.content_types.pop(path, None)


@dataclass
class S3StorageClient:
    """
    S3-compatible storage client for the public images bucket.
    """

    bucket: str
    region: str
    endpoint: str
    access_key_id: str
    secret_access_key: str
    public_base_url: Optional[str] = None

    def __post_init__(self):
        # Use virtual-hosted style addressing so public URLs stay stable.
        config = Config(
            s3={"addressing_style": "virtual"},
            signature_version="s3v4",
        )
        self._client = boto3.client(
            "s3",
            endpoint_url=self.endpoint or None,
            region_name=self.region or None,
            aws_access_key_id=self.access_key_id,
            aws_secret_access_key=self.secret_access_key,
            config=config,
        )

    def _base_url(self) -> str:
        if self.public_base_url:
            return self.public_base_url.rstrip("/")
        if self.endpoint:
            return f"{self.endpoint.rstrip('/')}/{self.bucket}"
        return f"https://{self.bucket}.s3.{self.region}.amazonaws.com"

    def upload_bytes(self, path: str, data: bytes, *, content_type: str) -> str:
        self._client.put_object(
            Bucket=self.bucket,
            Key=path,
            Body=data,
            ContentType=content_type,
        )
        return path

    def get_public_url(self, path: str) -> str:
        return f"{self._base_url()}/{path}"

    def path_from_public_url(self, url: str) -> Optional[str]:
        return _strip_public_prefix(url, self._base_url())

    def delete_objects(self, paths: Iterable[str]) -> None:
        objects = [{"Key": path} for path in paths if path]
        if not objects:
            return
        self._client.delete_objects(
            Bucket=self.bucket,
            Delete={"Objects": objects, "Quiet": True},
        )
