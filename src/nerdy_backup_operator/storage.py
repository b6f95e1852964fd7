from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path, PurePosixPath
from typing import Any, BinaryIO
import json
import logging
import os
import posixpath
import shutil
import tempfile

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

logger = logging.getLogger(__name__)

METADATA_SUFFIX = ".metadata.json"
_NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound"}


class StorageError(RuntimeError):
    """Raised when a storage backend operation fails."""


class StorageConfigurationError(StorageError):
    """Raised when a destination cannot be turned into a storage backend."""


class StorageObjectNotFoundError(StorageError):
    """Raised when the requested object does not exist."""


@dataclass(frozen=True)
class StorageConfig:
    type: str
    endpoint: str = ""
    bucket: str = ""
    prefix: str = ""
    access_key: str = ""
    secret_key: str = ""
    region: str = ""
    storage_class: str = ""
    mount_path: Path = Path("/mnt/nfs")


@dataclass(frozen=True)
class ObjectInfo:
    name: str
    path: str
    size: int
    modified_time: datetime | None
    metadata: dict[str, str] = field(default_factory=dict)


class StorageBackend(ABC):
    """Capability contract over an object store; paths are relative to the configured prefix."""

    @abstractmethod
    def upload(self, stream: BinaryIO, path: str, metadata: dict[str, str] | None = None) -> None: ...

    @abstractmethod
    def download(self, path: str) -> BinaryIO: ...

    @abstractmethod
    def delete(self, path: str) -> None: ...

    @abstractmethod
    def list(self, prefix: str, *, include_metadata: bool = True) -> list[ObjectInfo]: ...

    @abstractmethod
    def exists(self, path: str) -> bool: ...

    @abstractmethod
    def get_metadata(self, path: str) -> dict[str, str]: ...


def parse_s3_url(url: str) -> tuple[str, str]:
    cleaned = url.strip()
    if cleaned.startswith("s3://"):
        cleaned = cleaned[len("s3://") :]
    bucket, _, prefix = cleaned.partition("/")
    return bucket, prefix.strip("/")


def parse_nfs_url(url: str) -> tuple[str, str]:
    cleaned = url.strip()
    if cleaned.startswith("nfs://"):
        cleaned = cleaned[len("nfs://") :]
    server, _, export_path = cleaned.partition("/")
    return server, f"/{export_path.strip('/')}"


def new_backend(config: StorageConfig) -> StorageBackend:
    backend_type = config.type.strip().lower()
    if backend_type == "s3":
        return S3Backend(config)
    if backend_type == "nfs":
        return NFSBackend(config)
    raise StorageConfigurationError(f"unsupported storage backend type: {config.type or '<empty>'}")


class S3Backend(StorageBackend):
    def __init__(self, config: StorageConfig, *, s3_client: Any | None = None) -> None:
        if not config.bucket:
            raise StorageConfigurationError("S3 backend requires a bucket name")
        self.config = config
        self.s3_client = s3_client or self._build_client(config)

    @staticmethod
    def _build_client(config: StorageConfig) -> Any:
        client_kwargs: dict[str, Any] = {}
        if config.region:
            client_kwargs["region_name"] = config.region
        if config.access_key and config.secret_key:
            client_kwargs["aws_access_key_id"] = config.access_key
            client_kwargs["aws_secret_access_key"] = config.secret_key
        if config.endpoint:
            client_kwargs["endpoint_url"] = config.endpoint
            # MinIO and Ceph only resolve path-style bucket addressing.
            client_kwargs["config"] = BotoConfig(s3={"addressing_style": "path"})
        try:
            return boto3.client("s3", **client_kwargs)
        except (BotoCoreError, ValueError) as error:
            raise StorageConfigurationError(f"failed to initialize S3 client: {error}") from error

    def upload(self, stream: BinaryIO, path: str, metadata: dict[str, str] | None = None) -> None:
        key = self._key(path)
        extra_args: dict[str, Any] = {"Metadata": dict(metadata or {})}
        if self.config.storage_class:
            extra_args["StorageClass"] = self.config.storage_class
        try:
            self.s3_client.upload_fileobj(stream, self.config.bucket, key, ExtraArgs=extra_args)
        except (ClientError, BotoCoreError) as error:
            raise StorageError(f"failed to upload to s3://{self.config.bucket}/{key}: {error}") from error

    def download(self, path: str) -> BinaryIO:
        key = self._key(path)
        try:
            response = self.s3_client.get_object(Bucket=self.config.bucket, Key=key)
        except ClientError as error:
            if _client_error_code(error) in _NOT_FOUND_CODES:
                raise StorageObjectNotFoundError(f"s3://{self.config.bucket}/{key} does not exist") from error
            raise StorageError(f"failed to download from s3://{self.config.bucket}/{key}: {error}") from error
        except BotoCoreError as error:
            raise StorageError(f"failed to download from s3://{self.config.bucket}/{key}: {error}") from error
        return response["Body"]

    def delete(self, path: str) -> None:
        key = self._key(path)
        try:
            self.s3_client.delete_object(Bucket=self.config.bucket, Key=key)
        except ClientError as error:
            if _client_error_code(error) in _NOT_FOUND_CODES:
                return
            raise StorageError(f"failed to delete s3://{self.config.bucket}/{key}: {error}") from error
        except BotoCoreError as error:
            raise StorageError(f"failed to delete s3://{self.config.bucket}/{key}: {error}") from error

    def list(self, prefix: str, *, include_metadata: bool = True) -> list[ObjectInfo]:
        full_prefix = self._key(prefix)
        if prefix.endswith("/") and not full_prefix.endswith("/"):
            full_prefix = f"{full_prefix}/"
        objects: list[ObjectInfo] = []
        try:
            paginator = self.s3_client.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=self.config.bucket, Prefix=full_prefix):
                for item in page.get("Contents") or []:
                    key = item.get("Key")
                    if not key:
                        continue
                    relative = self._relative(key)
                    metadata: dict[str, str] = {}
                    if include_metadata:
                        try:
                            metadata = self.get_metadata(relative)
                        except StorageError as error:
                            logger.debug("Metadata unavailable for s3://%s/%s: %s", self.config.bucket, key, error)
                    objects.append(
                        ObjectInfo(
                            name=PurePosixPath(key).name,
                            path=relative,
                            size=int(item.get("Size") or 0),
                            modified_time=item.get("LastModified"),
                            metadata=metadata,
                        )
                    )
        except (ClientError, BotoCoreError) as error:
            raise StorageError(f"failed to list objects with prefix {full_prefix}: {error}") from error
        return objects

    def exists(self, path: str) -> bool:
        key = self._key(path)
        try:
            self.s3_client.head_object(Bucket=self.config.bucket, Key=key)
        except ClientError as error:
            if _client_error_code(error) in _NOT_FOUND_CODES:
                return False
            raise StorageError(f"failed to check existence of s3://{self.config.bucket}/{key}: {error}") from error
        except BotoCoreError as error:
            raise StorageError(f"failed to check existence of s3://{self.config.bucket}/{key}: {error}") from error
        return True

    def get_metadata(self, path: str) -> dict[str, str]:
        key = self._key(path)
        try:
            response = self.s3_client.head_object(Bucket=self.config.bucket, Key=key)
        except ClientError as error:
            if _client_error_code(error) in _NOT_FOUND_CODES:
                raise StorageObjectNotFoundError(f"s3://{self.config.bucket}/{key} does not exist") from error
            raise StorageError(f"failed to get metadata for s3://{self.config.bucket}/{key}: {error}") from error
        except BotoCoreError as error:
            raise StorageError(f"failed to get metadata for s3://{self.config.bucket}/{key}: {error}") from error
        return dict(response.get("Metadata") or {})

    def _key(self, path: str) -> str:
        relative = path.strip().lstrip("/")
        if not self.config.prefix:
            return relative
        return posixpath.join(self.config.prefix.strip("/"), relative)

    def _relative(self, key: str) -> str:
        prefix = self.config.prefix.strip("/")
        if prefix and key.startswith(f"{prefix}/"):
            return key[len(prefix) + 1 :]
        return key


class NFSBackend(StorageBackend):
    """Backend over an NFS export mounted into the operator pod at ``mount_path``."""

    def __init__(self, config: StorageConfig) -> None:
        self.config = config
        prefix = config.prefix.strip("/")
        self.root = (config.mount_path / prefix) if prefix else config.mount_path

    def upload(self, stream: BinaryIO, path: str, metadata: dict[str, str] | None = None) -> None:
        target = self._resolve(path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(mode="wb", dir=target.parent, delete=False) as handle:
                shutil.copyfileobj(stream, handle)
                staging = Path(handle.name)
            os.replace(staging, target)
            _metadata_path(target).write_text(json.dumps(dict(metadata or {}), sort_keys=True), encoding="utf-8")
        except OSError as error:
            raise StorageError(f"failed to write {target}: {error}") from error

    def download(self, path: str) -> BinaryIO:
        target = self._resolve(path)
        try:
            return target.open("rb")
        except FileNotFoundError as error:
            raise StorageObjectNotFoundError(f"{target} does not exist") from error
        except OSError as error:
            raise StorageError(f"failed to read {target}: {error}") from error

    def delete(self, path: str) -> None:
        target = self._resolve(path)
        try:
            target.unlink(missing_ok=True)
            _metadata_path(target).unlink(missing_ok=True)
        except OSError as error:
            raise StorageError(f"failed to delete {target}: {error}") from error

    def list(self, prefix: str, *, include_metadata: bool = True) -> list[ObjectInfo]:
        normalized_prefix = prefix.strip().lstrip("/")
        if not self.root.exists():
            return []
        objects: list[ObjectInfo] = []
        try:
            for candidate in sorted(self.root.rglob("*")):
                if not candidate.is_file() or candidate.name.endswith(METADATA_SUFFIX):
                    continue
                relative = candidate.relative_to(self.root).as_posix()
                if not relative.startswith(normalized_prefix):
                    continue
                stat = candidate.stat()
                objects.append(
                    ObjectInfo(
                        name=candidate.name,
                        path=relative,
                        size=stat.st_size,
                        modified_time=datetime.fromtimestamp(stat.st_mtime, tz=UTC),
                        metadata=_read_metadata(candidate) if include_metadata else {},
                    )
                )
        except OSError as error:
            raise StorageError(f"failed to list {self.root} with prefix {normalized_prefix}: {error}") from error
        return objects

    def exists(self, path: str) -> bool:
        return self._resolve(path).is_file()

    def get_metadata(self, path: str) -> dict[str, str]:
        target = self._resolve(path)
        if not target.is_file():
            raise StorageObjectNotFoundError(f"{target} does not exist")
        return _read_metadata(target)

    def _resolve(self, path: str) -> Path:
        relative = PurePosixPath(path.strip().lstrip("/"))
        if ".." in relative.parts:
            raise StorageError(f"path escapes the NFS mount: {path}")
        return self.root.joinpath(*relative.parts)


def _metadata_path(target: Path) -> Path:
    return target.with_name(f"{target.name}{METADATA_SUFFIX}")


def _read_metadata(target: Path) -> dict[str, str]:
    sidecar = _metadata_path(target)
    if not sidecar.exists():
        return {}
    try:
        loaded = json.loads(sidecar.read_text(encoding="utf-8"))
    except (OSError, ValueError) as error:
        raise StorageError(f"failed to read metadata sidecar {sidecar}: {error}") from error
    return {str(key): str(value) for key, value in loaded.items()}


def _client_error_code(error: ClientError) -> str:
    return str(error.response.get("Error", {}).get("Code", ""))
