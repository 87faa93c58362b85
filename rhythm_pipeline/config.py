from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass


def _env_int(env: Mapping[str, str], name: str, *, default: int, minimum: int = 0) -> int:
    raw = env.get(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(minimum, value)


def _env_bool(env: Mapping[str, str], name: str, *, default: bool) -> bool:
    raw = env.get(name, "").strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class PipelineConfig:
    store_backend: str
    postgres_dsn: str
    max_attempts: int
    dedup_enabled: bool
    dedup_window_hours: int
    stage_io_timeout_ms: int
    stage_locks_enabled: bool
    pdf_template_version: str
    signed_url_ttl_s: int
    max_delivery_attempts: int
    content_prompt_version: str

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "PipelineConfig":
        env = os.environ if environ is None else environ
        return cls(
            store_backend=env.get("RHYTHM_STORE_BACKEND", "memory").strip().lower() or "memory",
            postgres_dsn=env.get("POSTGRES_DSN", "").strip(),
            max_attempts=min(5, _env_int(env, "PIPELINE_MAX_ATTEMPTS", default=3, minimum=1)),
            dedup_enabled=_env_bool(env, "DEDUP_ENABLED", default=True),
            dedup_window_hours=_env_int(env, "DEDUP_WINDOW_HOURS", default=24, minimum=1),
            stage_io_timeout_ms=_env_int(env, "STAGE_IO_TIMEOUT_MS", default=10000, minimum=1),
            stage_locks_enabled=_env_bool(env, "STAGE_LOCKS_ENABLED", default=True),
            pdf_template_version=env.get("PDF_TEMPLATE_VERSION", "pdf-v1").strip() or "pdf-v1",
            signed_url_ttl_s=_env_int(env, "PDF_SIGNED_URL_TTL_S", default=3600, minimum=60),
            max_delivery_attempts=_env_int(env, "DELIVERY_MAX_ATTEMPTS", default=5, minimum=1),
            content_prompt_version=env.get("CONTENT_PROMPT_VERSION", "sections-v1").strip() or "sections-v1",
        )
