from __future__ import annotations

import os
from dataclasses import dataclass
from functools import cached_property
from pathlib import Path
from typing import BinaryIO


class StorageError(RuntimeError):
    pass


class StorageNotFound(StorageError):
    pass


class StorageAccessDenied(StorageError):
    pass


class Storage:
    bucket: str

    def put_bytes(self, key: str, data: bytes, *, content_type: str | None = None) -> None:
        raise NotImplementedError

    def open(self, key: str) -> BinaryIO:
        raise NotImplementedError

    def download(self, key: str) -> bytes:
        """Return the object's bytes; raises StorageNotFound / StorageAccessDenied / StorageError."""
        raise NotImplementedError

    def exists(self, key: str) -> bool:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError


@dataclass(frozen=True)
class LocalStorage(Storage):
    root: Path
    bucket: str = "registrations"

    def _path(self, key: str) -> Path:
        safe_key = key.lstrip("/").replace("\\", "/")
        base = (self.root / self.bucket).resolve()
        p = (base / safe_key).resolve()
        if p != base and base not in p.parents:
            raise StorageAccessDenied(f"Key escapes bucket root: {key!r}")
        return p

    def put_bytes(self, key: str, data: bytes, *, content_type: str | None = None) -> None:
        p = self._path(key)
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_bytes(data)

    def open(self, key: str) -> BinaryIO:
        p = self._path(key)
        if not p.is_file():
            raise StorageNotFound(f"Object not found: {key}")
        return p.open("rb")

    def download(self, key: str) -> bytes:
        p = self._path(key)
        if not p.is_file():
            raise StorageNotFound(f"Object not found: {key}")
        return p.read_bytes()

    def exists(self, key: str) -> bool:
        try:
            return self._path(key).is_file()
        except StorageAccessDenied:
            return False

    def delete(self, key: str) -> None:
        p = self._path(key)
        if p.is_file():
            p.unlink()


_NOT_FOUND_CODES = frozenset({"NoSuchKey", "NotFound", "404"})
_DENIED_CODES = frozenset({"AccessDenied", "Forbidden", "403", "InvalidAccessKeyId", "SignatureDoesNotMatch"})


@dataclass(frozen=True)
class S3Storage(Storage):
    endpoint: str
    region: str
    bucket: str
    access_key_id: str
    secret_access_key: str
    timeout_seconds: float = 5.0

    @cached_property
    def _s3(self):
        return self._client()

    def _client(self):
        try:
            import boto3  # type: ignore
            from botocore.config import Config  # type: ignore
        except Exception as e:  # pragma: no cover
            raise StorageError("boto3 required for S3 storage. Install boto3.") from e
        endpoint_url = None
        if self.endpoint:
            endpoint_url = self.endpoint if self.endpoint.startswith(("http://", "https://")) else f"https://{self.endpoint}"
        return boto3.client(
            "s3",
            endpoint_url=endpoint_url,
            region_name=self.region or None,
            aws_access_key_id=self.access_key_id,
            aws_secret_access_key=self.secret_access_key,
            config=Config(
                connect_timeout=self.timeout_seconds,
                read_timeout=self.timeout_seconds,
                retries={"max_attempts": 1},
            ),
        )

    def _translate(self, key: str, e: Exception) -> StorageError:
        code = ""
        response = getattr(e, "response", None)
        if isinstance(response, dict):
            code = str((response.get("Error") or {}).get("Code") or "")
        if code in _NOT_FOUND_CODES:
            return StorageNotFound(f"Object not found: {key}")
        if code in _DENIED_CODES:
            return StorageAccessDenied(f"Access denied for {key} ({code})")
        return StorageError(f"S3 error for {key}: {e}")

    def put_bytes(self, key: str, data: bytes, *, content_type: str | None = None) -> None:
        extra: dict[str, object] = {}
        if content_type:
            extra["ContentType"] = content_type
        self._s3.put_object(Bucket=self.bucket, Key=key, Body=data, **extra)

    def open(self, key: str) -> BinaryIO:
        try:
            obj = self._s3.get_object(Bucket=self.bucket, Key=key)
        except Exception as e:
            raise self._translate(key, e) from e
        return obj["Body"]  # type: ignore[return-value]

    def download(self, key: str) -> bytes:
        body = self.open(key)
        try:
            return body.read()
        finally:
            body.close()

    def exists(self, key: str) -> bool:
        try:
            self._s3.head_object(Bucket=self.bucket, Key=key)
            return True
        except Exception:
            return False

    def delete(self, key: str) -> None:
        try:
            self._s3.delete_object(Bucket=self.bucket, Key=key)
        except Exception as e:
            raise self._translate(key, e) from e


def storage_from_config(config: dict, *, bucket: str | None = None) -> Storage:
    backend = (config.get("STORAGE_BACKEND") or "local").strip().lower()
    bucket = (bucket or config.get("EVIDENCE_BUCKET") or "registrations").strip()
    timeout = float(config.get("EVIDENCE_PROBE_TIMEOUT_SECONDS") or 5)
    if backend == "s3":
        return S3Storage(
            endpoint=(config.get("S3_ENDPOINT") or "").strip(),
            region=(config.get("S3_REGION") or "us-east-1").strip(),
            bucket=bucket,
            access_key_id=(config.get("S3_ACCESS_KEY_ID") or "").strip(),
            secret_access_key=(config.get("S3_SECRET_ACCESS_KEY") or "").strip(),
            timeout_seconds=timeout,
        )
    # default local
    root = Path(config.get("LOCAL_STORAGE_ROOT") or Path(os.getcwd()) / "storage")
    return LocalStorage(root=root, bucket=bucket)
