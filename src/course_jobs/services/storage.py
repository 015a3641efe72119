"""Object storage gateway for course artifacts.

This module provides:
- Bucket profiles and the classification of artifact kinds onto them
- Abstract StorageGateway (S3-compatible surface: put, get, presigned URL, multipart)
- Filesystem implementation with HMAC-signed access URLs
- Registry resolving each bucket profile to a gateway once at startup
"""

import asyncio
import hashlib
import hmac
import shutil
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import BinaryIO, Dict, Iterable, Iterator, Optional, Union
from urllib.parse import parse_qs, quote, unquote, urlparse
from uuid import uuid4

from course_jobs.config.settings import PipelineConfig, Settings
from course_jobs.exceptions import NotFoundError, TransientDependencyError, ValidationError
from course_jobs.logging_config import logger
from course_jobs.utils import Clock, utcnow

ObjectData = Union[bytes, BinaryIO]


class BucketProfile(str, Enum):
    """Closed set of storage configurations."""
    PUBLIC = "public"
    PRIVATE = "private"
    LOCAL_TEMP = "local_temp"


ARTIFACT_PROFILES: Dict[str, BucketProfile] = {
    "material": BucketProfile.PUBLIC,
    "submission": BucketProfile.PRIVATE,
    "certificate": BucketProfile.PRIVATE,
    "staging": BucketProfile.LOCAL_TEMP,
}


def classify_artifact(kind: str) -> BucketProfile:
    """Map an artifact kind to its bucket profile.

    Raises:
        ValidationError: If the kind is unknown
    """
    try:
        return ARTIFACT_PROFILES[kind]
    except KeyError:
        raise ValidationError(f"Unknown artifact kind: {kind}") from None


@dataclass(frozen=True)
class ObjectRef:
    """Reference to a stored object."""
    bucket: str
    key: str
    size: int
    etag: str


class StorageGateway(ABC):
    """S3-compatible object storage surface for one bucket."""

    def __init__(self, bucket: str, multipart_threshold: int, part_size: int):
        self.bucket = bucket
        self.multipart_threshold = multipart_threshold
        self.part_size = part_size

    @abstractmethod
    async def put_object(self, key: str, data: ObjectData) -> ObjectRef:
        """Store an object in a single request."""
        pass

    @abstractmethod
    async def get_object(self, ref: ObjectRef) -> bytes:
        pass

    @abstractmethod
    async def delete_object(self, ref: ObjectRef) -> bool:
        pass

    @abstractmethod
    async def multipart_upload(self, key: str, parts: Iterable[bytes]) -> ObjectRef:
        """Store an object from a sequence of parts."""
        pass

    @abstractmethod
    def get_presigned_url(self, ref: ObjectRef, ttl_seconds: int) -> str:
        """Time-limited access URL for an object."""
        pass

    async def upload(self, key: str, data: ObjectData) -> ObjectRef:
        """Store an object, switching to multipart above the size threshold."""
        if isinstance(data, bytes):
            if len(data) > self.multipart_threshold:
                return await self.multipart_upload(key, self._split(data))
            return await self.put_object(key, data)
        size = _stream_size(data)
        if size is None or size > self.multipart_threshold:
            return await self.multipart_upload(key, self._read_parts(data))
        return await self.put_object(key, data)

    def _split(self, data: bytes) -> Iterator[bytes]:
        for offset in range(0, len(data), self.part_size):
            yield data[offset:offset + self.part_size]

    def _read_parts(self, stream: BinaryIO) -> Iterator[bytes]:
        return iter(lambda: stream.read(self.part_size), b"")


def _stream_size(stream: BinaryIO) -> Optional[int]:
    if not stream.seekable():
        return None
    position = stream.tell()
    size = stream.seek(0, 2) - position
    stream.seek(position)
    return size


class LocalStorageGateway(StorageGateway):
    """Filesystem-backed gateway, one directory per bucket."""

    def __init__(
        self,
        base_path: str,
        bucket: str,
        base_url: str,
        signing_secret: str,
        multipart_threshold: int = 20 * 1024 * 1024,
        part_size: int = 8 * 1024 * 1024,
        clock: Clock = utcnow,
    ):
        """Initialize storage gateway with base path.

        Args:
            base_path: Root directory for all buckets
            bucket: Bucket name, used as subdirectory
            base_url: Base URL for presigned links
            signing_secret: HMAC secret for presigned links
            multipart_threshold: Size above which upload() goes multipart
            part_size: Part size used when splitting
            clock: Time source for URL expiry
        """
        super().__init__(bucket, multipart_threshold, part_size)
        self.bucket_dir = Path(base_path) / bucket
        self.bucket_dir.mkdir(parents=True, exist_ok=True)
        self.base_url = base_url.rstrip("/")
        self._secret = signing_secret.encode("utf-8")
        self._clock = clock
        logger.info(f"LocalStorageGateway initialized: bucket={bucket}, path={self.bucket_dir}")

    def _object_path(self, key: str) -> Path:
        if not key or key.startswith("/") or ".." in Path(key).parts:
            raise ValidationError(f"Invalid object key: {key!r}")
        return self.bucket_dir / key

    def _write(self, key: str, chunks: Iterable[bytes]) -> ObjectRef:
        target = self._object_path(key)
        target.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = target.with_name(f".{target.name}.{uuid4().hex}.tmp")
        digest = hashlib.sha256()
        size = 0
        parts = 0
        try:
            with open(tmp_path, "wb") as f:
                for chunk in chunks:
                    f.write(chunk)
                    digest.update(chunk)
                    size += len(chunk)
                    parts += 1
            tmp_path.replace(target)
        except OSError as e:
            tmp_path.unlink(missing_ok=True)
            raise TransientDependencyError(f"Failed to write {self.bucket}/{key}: {e}") from e
        return ObjectRef(bucket=self.bucket, key=key, size=size, etag=f"{digest.hexdigest()[:32]}-{parts}")

    async def put_object(self, key: str, data: ObjectData) -> ObjectRef:
        chunks = [data] if isinstance(data, bytes) else self._read_parts(data)
        ref = await asyncio.to_thread(self._write, key, chunks)
        logger.info(f"Stored object {ref.bucket}/{ref.key} ({ref.size} bytes)")
        return ref

    async def multipart_upload(self, key: str, parts: Iterable[bytes]) -> ObjectRef:
        upload_dir = self.bucket_dir / ".multipart" / uuid4().hex

        def _upload() -> ObjectRef:
            upload_dir.mkdir(parents=True, exist_ok=True)
            part_paths = []
            try:
                for number, part in enumerate(parts, start=1):
                    part_path = upload_dir / f"{number:05d}"
                    part_path.write_bytes(part)
                    part_paths.append(part_path)
                return self._write(key, (p.read_bytes() for p in part_paths))
            except OSError as e:
                raise TransientDependencyError(f"Multipart upload of {self.bucket}/{key} failed: {e}") from e
            finally:
                shutil.rmtree(upload_dir, ignore_errors=True)

        ref = await asyncio.to_thread(_upload)
        logger.info(f"Multipart upload complete {ref.bucket}/{ref.key} ({ref.size} bytes)")
        return ref

    async def get_object(self, ref: ObjectRef) -> bytes:
        path = self._object_path(ref.key)
        try:
            return await asyncio.to_thread(path.read_bytes)
        except FileNotFoundError:
            raise NotFoundError(f"Object not found: {self.bucket}/{ref.key}") from None
        except OSError as e:
            raise TransientDependencyError(f"Failed to read {self.bucket}/{ref.key}: {e}") from e

    async def delete_object(self, ref: ObjectRef) -> bool:
        path = self._object_path(ref.key)
        if not path.exists():
            return False
        path.unlink()
        return True

    def _signature(self, key: str, expires: int) -> str:
        message = f"{self.bucket}/{key}:{expires}".encode("utf-8")
        return hmac.new(self._secret, message, hashlib.sha256).hexdigest()

    def get_presigned_url(self, ref: ObjectRef, ttl_seconds: int) -> str:
        expires = int(self._clock().timestamp()) + ttl_seconds
        signature = self._signature(ref.key, expires)
        return f"{self.base_url}/{self.bucket}/{quote(ref.key)}?expires={expires}&signature={signature}"

    def verify_presigned_url(self, url: str) -> str:
        """Validate a presigned URL and return the object key it grants.

        Raises:
            ValidationError: If the URL is malformed, tampered with or expired
        """
        parsed = urlparse(url)
        prefix = f"/{self.bucket}/"
        base_path = urlparse(self.base_url).path
        path = parsed.path[len(base_path):] if parsed.path.startswith(base_path) else parsed.path
        if not path.startswith(prefix):
            raise ValidationError("URL does not belong to this bucket")
        key = unquote(path[len(prefix):])
        query = parse_qs(parsed.query)
        try:
            expires = int(query["expires"][0])
            signature = query["signature"][0]
        except (KeyError, ValueError):
            raise ValidationError("Presigned URL is missing expires or signature") from None
        if not hmac.compare_digest(signature, self._signature(key, expires)):
            raise ValidationError("Presigned URL signature mismatch")
        if self._clock().timestamp() > expires:
            raise ValidationError("Presigned URL expired")
        return key


class StorageRegistry:
    """Bucket profile to gateway mapping, resolved once at startup."""

    def __init__(self, gateways: Dict[BucketProfile, StorageGateway]):
        missing = set(BucketProfile) - set(gateways)
        if missing:
            raise ValueError(f"No gateway for bucket profiles: {sorted(p.value for p in missing)}")
        self._gateways = dict(gateways)

    def for_profile(self, profile: BucketProfile) -> StorageGateway:
        return self._gateways[profile]

    def for_artifact(self, kind: str) -> StorageGateway:
        return self.for_profile(classify_artifact(kind))

    def for_bucket(self, bucket: str) -> StorageGateway:
        for gateway in self._gateways.values():
            if gateway.bucket == bucket:
                return gateway
        raise ValidationError(f"Unknown bucket: {bucket}")


def build_storage_registry(
    settings: Settings,
    pipeline_config: PipelineConfig,
    clock: Clock = utcnow,
) -> StorageRegistry:
    """Factory function to build filesystem gateways for every bucket profile.

    Returns:
        StorageRegistry configured from settings
    """
    gateways = {
        profile: LocalStorageGateway(
            base_path=settings.storage_base_path,
            bucket=pipeline_config.buckets.get(profile.value, profile.value),
            base_url=settings.storage_base_url,
            signing_secret=settings.storage_signing_secret,
            multipart_threshold=pipeline_config.multipart_threshold_bytes,
            part_size=pipeline_config.part_size_bytes,
            clock=clock,
        )
        for profile in BucketProfile
    }
    return StorageRegistry(gateways)
