"""
storage.py — Blob store for DropVault: local disk or MinIO (S3-compatible).

Blobs are addressed by the file's external id. Reads and writes are
streamed in chunks so memory use does not grow with file size.
"""

import io
import logging
import os
import re
import uuid
from typing import Iterable, Iterator

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from errors import NotFound, StorageFailure

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 64 * 1024
_SAFE_ID = re.compile(r"^[A-Za-z0-9_.-]+$")


def _check_id(blob_id: str) -> str:
    if not blob_id or not _SAFE_ID.match(blob_id) or blob_id in (".", ".."):
        raise StorageFailure(f"Invalid blob id: {blob_id!r}")
    return blob_id


class BlobStore:
    backend_name = "abstract"

    def read_blob(self, blob_id: str) -> Iterator[bytes]:
        raise NotImplementedError

    def write_blob(self, blob_id: str, chunks: Iterable[bytes]) -> int:
        raise NotImplementedError

    def delete_blob(self, blob_id: str) -> bool:
        raise NotImplementedError

    def exists(self, blob_id: str) -> bool:
        raise NotImplementedError


class LocalDiskBlobStore(BlobStore):
    backend_name = "LocalDisk"

    def __init__(self, root: str):
        self.root = root
        os.makedirs(self.root, exist_ok=True)

    def _path(self, blob_id: str) -> str:
        return os.path.join(self.root, _check_id(blob_id))

    def read_blob(self, blob_id: str) -> Iterator[bytes]:
        path = self._path(blob_id)
        try:
            handle = open(path, "rb")
        except FileNotFoundError:
            raise NotFound(f"Blob {blob_id} not found") from None
        except OSError as e:
            raise StorageFailure(f"Cannot open blob {blob_id}: {e}") from e
        return self._iter_file(handle)

    @staticmethod
    def _iter_file(handle) -> Iterator[bytes]:
        with handle:
            while True:
                chunk = handle.read(READ_CHUNK_SIZE)
                if not chunk:
                    break
                yield chunk

    def write_blob(self, blob_id: str, chunks: Iterable[bytes]) -> int:
        path = self._path(blob_id)
        tmp_path = f"{path}.{uuid.uuid4().hex}.part"
        written = 0
        try:
            with open(tmp_path, "wb") as f:
                for chunk in chunks:
                    f.write(chunk)
                    written += len(chunk)
            os.replace(tmp_path, path)
        except OSError as e:
            logger.error(f"LocalDisk PUT failed for {blob_id}: {e}")
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise StorageFailure(f"Cannot write blob {blob_id}: {e}") from e
        except BaseException:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise
        return written

    def delete_blob(self, blob_id: str) -> bool:
        try:
            os.remove(self._path(blob_id))
            logger.info(f"Blob deleted: {blob_id}")
            return True
        except (OSError, StorageFailure) as e:
            logger.error(f"LocalDisk DELETE failed for {blob_id}: {e}")
            return False

    def exists(self, blob_id: str) -> bool:
        try:
            return os.path.isfile(self._path(blob_id))
        except StorageFailure:
            return False


class _IterStream(io.RawIOBase):
    """File-like adapter so boto3 can upload from a chunk iterator."""

    def __init__(self, chunks: Iterable[bytes]):
        self._it = iter(chunks)
        self._pending = b""
        self.consumed = 0

    def readable(self) -> bool:
        return True

    def readinto(self, buffer) -> int:
        while not self._pending:
            try:
                self._pending = next(self._it)
            except StopIteration:
                return 0
        n = min(len(buffer), len(self._pending))
        buffer[:n] = self._pending[:n]
        self._pending = self._pending[n:]
        self.consumed += n
        return n


class MinioBlobStore(BlobStore):
    backend_name = "MinIO"

    def __init__(self, endpoint: str, access_key: str, secret_key: str, bucket: str):
        self.endpoint = endpoint
        self.bucket = bucket
        self._s3 = boto3.client(
            "s3",
            endpoint_url=endpoint,
            aws_access_key_id=access_key,
            aws_secret_access_key=secret_key,
            config=Config(
                signature_version="s3v4",
                connect_timeout=5,
                read_timeout=30,
                retries={"max_attempts": 3, "mode": "standard"},
            ),
            region_name="us-east-1",
        )
        self._ensure_bucket()

    def _ensure_bucket(self):
        try:
            self._s3.head_bucket(Bucket=self.bucket)
        except ClientError as e:
            if e.response["Error"]["Code"] in ("404", "NoSuchBucket"):
                self._s3.create_bucket(Bucket=self.bucket)
                logger.info(f"Created MinIO bucket: {self.bucket}")
            else:
                raise

    def read_blob(self, blob_id: str) -> Iterator[bytes]:
        try:
            response = self._s3.get_object(Bucket=self.bucket, Key=_check_id(blob_id))
        except ClientError as e:
            if e.response["Error"]["Code"] in ("NoSuchKey", "404"):
                raise NotFound(f"Blob {blob_id} not found") from None
            raise StorageFailure(f"MinIO GET failed for {blob_id}: {e}") from e
        except BotoCoreError as e:
            raise StorageFailure(f"MinIO GET failed for {blob_id}: {e}") from e
        return response["Body"].iter_chunks(READ_CHUNK_SIZE)

    def write_blob(self, blob_id: str, chunks: Iterable[bytes]) -> int:
        stream = _IterStream(chunks)
        try:
            self._s3.upload_fileobj(
                stream,
                self.bucket,
                _check_id(blob_id),
                ExtraArgs={"ContentType": "application/octet-stream"},
            )
        except (ClientError, BotoCoreError) as e:
            logger.error(f"MinIO PUT failed for {blob_id}: {e}")
            raise StorageFailure(f"Cannot write blob {blob_id}: {e}") from e
        return stream.consumed

    def delete_blob(self, blob_id: str) -> bool:
        try:
            self._s3.delete_object(Bucket=self.bucket, Key=_check_id(blob_id))
            logger.info(f"Blob deleted: {blob_id}")
            return True
        except (ClientError, BotoCoreError, StorageFailure) as e:
            logger.error(f"MinIO DELETE failed for {blob_id}: {e}")
            return False

    def exists(self, blob_id: str) -> bool:
        try:
            self._s3.head_object(Bucket=self.bucket, Key=_check_id(blob_id))
            return True
        except ClientError as e:
            if e.response["Error"]["Code"] in ("NoSuchKey", "404", "NotFound"):
                return False
            raise StorageFailure(f"MinIO HEAD failed for {blob_id}: {e}") from e
        except StorageFailure:
            return False


def create_blob_store(settings) -> BlobStore:
    if settings.use_minio:
        try:
            store = MinioBlobStore(
                settings.minio_endpoint,
                settings.minio_access_key,
                settings.minio_secret_key,
                settings.minio_bucket,
            )
            logger.info(f"MinIO connected: {settings.minio_endpoint} / bucket={settings.minio_bucket}")
            return store
        except (ClientError, BotoCoreError) as e:
            logger.warning(f"MinIO unavailable ({e}). Falling back to local disk.")
    return LocalDiskBlobStore(settings.file_storage_path)
