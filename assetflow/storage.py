# assetflow/storage.py
"""
Key-addressed blob storage for raw and derived assets.

Keys are deterministic: {user_id}/{asset_type}/{asset_id}/{file_name}, so
reprocessing an asset overwrites its artifacts in place instead of accumulating blobs.
"""
import io
import logging
import os
import shutil
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO

from minio import Minio
from minio.error import S3Error

from assetflow.errors import InfrastructureError, NotFoundError

logger = logging.getLogger(__name__)


@dataclass
class StoredAsset:
    storage_id: str


@dataclass
class BlobStream:
    stream: BinaryIO
    content_length: int


def asset_prefix(user_id: str, asset_type: str, asset_id: str) -> str:
    for part in (user_id, asset_type, asset_id):
        if not part or "/" in part or part in (".", ".."):
            raise ValueError(f"invalid storage namespace component: {part!r}")
    return f"{user_id}/{asset_type}/{asset_id}"


def asset_key(user_id: str, asset_type: str, asset_id: str, file_name: str) -> str:
    # strip path parts so a file name can never escape the namespace
    name = Path(file_name).name
    if not name or name in (".", ".."):
        raise ValueError(f"invalid file name: {file_name!r}")
    return f"{asset_prefix(user_id, asset_type, asset_id)}/{name}"


class BlobStore(ABC):
    """Interface consumed by the pipeline and the asset services."""

    @abstractmethod
    def save_asset(self, user_id: str, asset_type: str, asset_id: str, file_name: str,
                   data: bytes, content_type: str) -> StoredAsset:
        raise NotImplementedError

    @abstractmethod
    def get_stream(self, storage_id: str) -> BlobStream:
        raise NotImplementedError

    def read(self, storage_id: str) -> bytes:
        blob = self.get_stream(storage_id)
        try:
            return blob.stream.read()
        finally:
            blob.stream.close()

    @abstractmethod
    def delete_asset(self, user_id: str, asset_type: str, asset_id: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def delete(self, storage_id: str) -> None:
        raise NotImplementedError


class LocalBlobStore(BlobStore):
    def __init__(self, root: str):
        self.root = Path(root).resolve()
        os.makedirs(self.root, exist_ok=True)

    def _path(self, storage_id: str) -> Path:
        path = (self.root / storage_id).resolve()
        if self.root not in path.parents:
            raise NotFoundError(f"storage id outside of store: {storage_id}")
        return path

    def save_asset(self, user_id, asset_type, asset_id, file_name, data, content_type):
        key = asset_key(user_id, asset_type, asset_id, file_name)
        path = self._path(key)
        os.makedirs(path.parent, exist_ok=True)
        tmp = path.with_name(path.name + ".part")
        with open(tmp, "wb") as f:
            f.write(data)
        os.replace(tmp, path)
        logger.debug("Saved %d bytes to %s (%s)", len(data), key, content_type)
        return StoredAsset(storage_id=key)

    def get_stream(self, storage_id):
        path = self._path(storage_id)
        if not path.is_file():
            raise NotFoundError(f"blob not found: {storage_id}")
        return BlobStream(stream=open(path, "rb"), content_length=path.stat().st_size)

    def delete_asset(self, user_id, asset_type, asset_id):
        path = self._path(asset_prefix(user_id, asset_type, asset_id))
        shutil.rmtree(path, ignore_errors=True)

    def delete(self, storage_id):
        path = self._path(storage_id)
        try:
            path.unlink()
        except FileNotFoundError:
            logger.debug("Blob %s already absent", storage_id)


class MinioBlobStore(BlobStore):
    def __init__(self, client: Minio, bucket: str):
        self.client = client
        self.bucket = bucket
        if not client.bucket_exists(bucket):
            client.make_bucket(bucket)

    def save_asset(self, user_id, asset_type, asset_id, file_name, data, content_type):
        key = asset_key(user_id, asset_type, asset_id, file_name)
        try:
            self.client.put_object(self.bucket, key, io.BytesIO(data), length=len(data), content_type=content_type)
        except S3Error as e:
            raise InfrastructureError(f"failed to store {key}: {e}") from e
        return StoredAsset(storage_id=key)

    def get_stream(self, storage_id):
        try:
            stat = self.client.stat_object(self.bucket, storage_id)
            response = self.client.get_object(self.bucket, storage_id)
        except S3Error as e:
            if e.code in ("NoSuchKey", "NoSuchObject"):
                raise NotFoundError(f"blob not found: {storage_id}") from e
            raise InfrastructureError(f"failed to read {storage_id}: {e}") from e
        return BlobStream(stream=response, content_length=stat.size)

    def delete_asset(self, user_id, asset_type, asset_id):
        prefix = asset_prefix(user_id, asset_type, asset_id) + "/"
        for obj in self.client.list_objects(self.bucket, prefix=prefix, recursive=True):
            self.client.remove_object(self.bucket, obj.object_name)

    def delete(self, storage_id):
        self.client.remove_object(self.bucket, storage_id)


def build_blob_store(settings) -> BlobStore:
    if settings.storage_backend == "minio":
        client = Minio(
            settings.minio_endpoint,
            access_key=settings.minio_access_key,
            secret_key=settings.minio_secret_key,
            secure=settings.minio_secure,
        )
        return MinioBlobStore(client, settings.minio_bucket)
    return LocalBlobStore(settings.storage_dir)
