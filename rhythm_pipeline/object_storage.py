from __future__ import annotations

import hashlib
import hmac
import json
import os
import re
import time
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any
from urllib.parse import quote


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat()


def _clean_segment(value: str) -> str:
    cleaned = re.sub(r"[^A-Za-z0-9._-]+", "_", value.strip())
    return cleaned or "object"


def _check_key(path: str) -> str:
    key = path.strip().lstrip("/")
    if not key or any(part in {"", ".", ".."} for part in key.split("/")):
        raise ValueError(f"invalid object path: {path!r}")
    return key


def build_pdf_path(*, job_id: str, content_hash: str) -> str:
    """A fresh object path per render; old and new PDFs never share a key."""
    return f"reports/{_clean_segment(job_id)}/report-{content_hash[:12]}-{uuid.uuid4().hex[:8]}.pdf"


@dataclass(frozen=True)
class ObjectStorageConfig:
    backend: str
    bucket: str
    root: str
    prefix: str
    endpoint: str
    region: str
    access_key: str
    secret_key: str
    force_path_style: bool
    signing_secret: str
    public_base_url: str


class ObjectStorageBackend:
    backend_name = "base"

    def upload(self, path: str, content_bytes: bytes, *, content_type: str = "application/pdf") -> str:
        raise NotImplementedError

    def get(self, path: str) -> bytes:
        raise NotImplementedError

    def exists(self, path: str) -> bool:
        raise NotImplementedError

    def delete(self, path: str) -> bool:
        raise NotImplementedError

    def signed_url(self, path: str, *, ttl_seconds: int) -> str:
        raise NotImplementedError


class LocalObjectStorage(ObjectStorageBackend):
    backend_name = "local"

    def __init__(self, *, config: ObjectStorageConfig) -> None:
        self._bucket = config.bucket
        self._root = Path(config.root)
        self._prefix = config.prefix.strip("/")
        self._secret = config.signing_secret.encode("utf-8")
        self._base_url = config.public_base_url.rstrip("/")
        self._root.mkdir(parents=True, exist_ok=True)

    def upload(self, path: str, content_bytes: bytes, *, content_type: str = "application/pdf") -> str:
        target = self._path_for(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(content_bytes)
        self._meta_path(target).write_text(
            json.dumps({"content_type": content_type, "created_at": _now_iso()}, ensure_ascii=True, sort_keys=True),
            encoding="utf-8",
        )
        return _check_key(path)

    def get(self, path: str) -> bytes:
        target = self._path_for(path)
        if not target.exists():
            raise FileNotFoundError(path)
        return target.read_bytes()

    def exists(self, path: str) -> bool:
        return self._path_for(path).exists()

    def delete(self, path: str) -> bool:
        target = self._path_for(path)
        if not target.exists():
            return False
        target.unlink()
        meta = self._meta_path(target)
        if meta.exists():
            meta.unlink()
        return True

    def signed_url(self, path: str, *, ttl_seconds: int) -> str:
        key = self._full_key(path)
        expires = int(time.time()) + int(ttl_seconds)
        signature = hmac.new(self._secret, f"{self._bucket}/{key}:{expires}".encode(), hashlib.sha256).hexdigest()
        return f"{self._base_url}/{self._bucket}/{quote(key)}?expires={expires}&signature={signature}"

    def reset(self) -> None:
        if not self._root.exists():
            return
        for item in sorted(self._root.rglob("*"), reverse=True):
            if item.is_file():
                item.unlink()
            elif item.is_dir():
                item.rmdir()

    def _full_key(self, path: str) -> str:
        key = _check_key(path)
        return f"{self._prefix}/{key}" if self._prefix else key

    def _path_for(self, path: str) -> Path:
        return self._root / self._bucket / self._full_key(path)

    def _meta_path(self, path: Path) -> Path:
        return Path(f"{path}.meta.json")


class S3ObjectStorage(ObjectStorageBackend):
    backend_name = "s3"

    def __init__(self, *, config: ObjectStorageConfig) -> None:
        try:
            import boto3  # type: ignore
        except Exception as exc:  # pragma: no cover - optional dependency
            raise RuntimeError("boto3 is required for s3 object storage backend") from exc
        self._bucket = config.bucket
        self._prefix = config.prefix.strip("/")
        session = boto3.session.Session(
            aws_access_key_id=config.access_key or None,
            aws_secret_access_key=config.secret_key or None,
            region_name=config.region or None,
        )
        self._client = session.client(
            "s3",
            endpoint_url=config.endpoint or None,
            config=boto3.session.Config(s3={"addressing_style": "path" if config.force_path_style else "auto"}),
        )

    def upload(self, path: str, content_bytes: bytes, *, content_type: str = "application/pdf") -> str:
        self._client.put_object(
            Bucket=self._bucket,
            Key=self._full_key(path),
            Body=content_bytes,
            ContentType=content_type,
        )
        return _check_key(path)

    def get(self, path: str) -> bytes:
        response = self._client.get_object(Bucket=self._bucket, Key=self._full_key(path))
        return response["Body"].read()

    def exists(self, path: str) -> bool:
        try:
            self._client.head_object(Bucket=self._bucket, Key=self._full_key(path))
            return True
        except Exception:
            return False

    def delete(self, path: str) -> bool:
        self._client.delete_object(Bucket=self._bucket, Key=self._full_key(path))
        return True

    def signed_url(self, path: str, *, ttl_seconds: int) -> str:
        return self._client.generate_presigned_url(
            "get_object",
            Params={"Bucket": self._bucket, "Key": self._full_key(path)},
            ExpiresIn=int(ttl_seconds),
        )

    def _full_key(self, path: str) -> str:
        key = _check_key(path)
        return f"{self._prefix}/{key}" if self._prefix else key


def create_object_storage_from_env(environ: dict[str, str] | None = None) -> ObjectStorageBackend:
    env = os.environ if environ is None else environ
    backend = env.get("RHYTHM_OBJECT_STORAGE_BACKEND", "local").strip().lower() or "local"
    config = ObjectStorageConfig(
        backend=backend,
        bucket=env.get("OBJECT_STORAGE_BUCKET", "rhythm").strip() or "rhythm",
        root=env.get("OBJECT_STORAGE_ROOT", "/tmp/rhythm-object-storage").strip() or "/tmp/rhythm-object-storage",
        prefix=env.get("OBJECT_STORAGE_PREFIX", "").strip(),
        endpoint=env.get("OBJECT_STORAGE_ENDPOINT", "").strip(),
        region=env.get("OBJECT_STORAGE_REGION", "").strip(),
        access_key=env.get("OBJECT_STORAGE_ACCESS_KEY", "").strip(),
        secret_key=env.get("OBJECT_STORAGE_SECRET_KEY", "").strip(),
        force_path_style=env.get("OBJECT_STORAGE_FORCE_PATH_STYLE", "true").strip().lower()
        not in {"0", "false", "no", "off"},
        signing_secret=env.get("OBJECT_STORAGE_SIGNING_SECRET", "local-dev-signing-secret"),
        public_base_url=env.get("OBJECT_STORAGE_PUBLIC_BASE_URL", "http://localhost:8000/objects").strip()
        or "http://localhost:8000/objects",
    )
    if config.backend == "s3":
        return S3ObjectStorage(config=config)
    return LocalObjectStorage(config=config)


def describe_backend(storage: Any) -> str:
    return str(getattr(storage, "backend_name", "unknown"))
