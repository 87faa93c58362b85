from __future__ import annotations

import logging
import uuid
from datetime import UTC, datetime, timedelta
from typing import Any

from rhythm_pipeline.canonical_hash import hash_payload
from rhythm_pipeline.errors import pipeline_error

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_HOURS = 24
_VOLATILE_KEYS = {"requested_at", "request_id", "trace_id", "correlation_id"}


def _normalize_inputs(value: Any) -> Any:
    if isinstance(value, dict):
        return {
            str(k): _normalize_inputs(v)
            for k, v in value.items()
            if str(k) not in _VOLATILE_KEYS and v is not None
        }
    if isinstance(value, list | tuple):
        return [_normalize_inputs(x) for x in value]
    if isinstance(value, str):
        return value.strip()
    return value


def compute_inputs_hash(context: dict[str, Any]) -> str:
    """Hash diagnosis inputs independent of key order, whitespace and request metadata."""
    return hash_payload(_normalize_inputs(context))


class DedupPolicy:
    def __init__(
        self,
        *,
        runs_repository: Any,
        enabled: bool = True,
        window_hours: int = DEFAULT_WINDOW_HOURS,
    ) -> None:
        self._runs = runs_repository
        self.enabled = enabled
        self.window_hours = window_hours

    def check_duplicate(
        self,
        *,
        inputs_hash: str,
        subject_id: str,
        window_hours: int | None = None,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        """Look for a run with the same inputs for the same patient inside the window.

        Lookup failures fail open: the caller may create a new run and the
        returned ``warning`` says why the check was skipped.
        """
        if not self.enabled:
            return {"is_duplicate": False, "existing_run_id": None, "warning": None}
        hours = self.window_hours if window_hours is None else int(window_hours)
        if hours <= 0:
            raise pipeline_error("VALIDATION_ERROR", "window_hours must be positive")
        since = ((now or datetime.now(UTC)) - timedelta(hours=hours)).isoformat()
        try:
            recent = self._runs.list_recent(patient_id=subject_id, inputs_hash=inputs_hash, since=since)
        except Exception as exc:
            logger.warning(
                "dedup_check_failed inputs_hash=%s error_type=%s",
                inputs_hash[:12],
                type(exc).__name__,
            )
            return {
                "is_duplicate": False,
                "existing_run_id": None,
                "warning": "duplicate check unavailable; proceeding without dedup",
            }
        if not recent:
            return {"is_duplicate": False, "existing_run_id": None, "warning": None}
        existing = recent[0]
        logger.warning(
            "dedup_duplicate_detected run_id=%s inputs_hash=%s window_hours=%s",
            existing["run_id"],
            inputs_hash[:12],
            hours,
        )
        return {
            "is_duplicate": True,
            "existing_run_id": existing["run_id"],
            "warning": f"identical inputs already submitted within {hours}h",
        }

    def submit_diagnosis_run(self, *, patient_id: str, inputs: dict[str, Any]) -> dict[str, Any]:
        if not patient_id.strip():
            raise pipeline_error("VALIDATION_ERROR", "patient_id must not be empty")
        inputs_hash = compute_inputs_hash(inputs)
        check = self.check_duplicate(inputs_hash=inputs_hash, subject_id=patient_id)
        if check["is_duplicate"]:
            return {
                "run_id": check["existing_run_id"],
                "inputs_hash": inputs_hash,
                "is_duplicate": True,
                "warning": check["warning"],
            }
        run = self._runs.create(
            run={
                "run_id": f"run_{uuid.uuid4().hex[:12]}",
                "patient_id": patient_id,
                "inputs_hash": inputs_hash,
                "status": "queued",
                "created_at": datetime.now(UTC).isoformat(),
                "duplicate_of": None,
            }
        )
        logger.info("diagnosis_run_created run_id=%s", run["run_id"])
        return {
            "run_id": run["run_id"],
            "inputs_hash": inputs_hash,
            "is_duplicate": False,
            "warning": check["warning"],
        }
