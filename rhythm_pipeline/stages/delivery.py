from __future__ import annotations

import logging
from typing import Any

from rhythm_pipeline.errors import ApiError, pipeline_error
from rhythm_pipeline.stages.base import StageProcessor, StageTimeoutError, call_with_timeout

logger = logging.getLogger(__name__)

NOTIFICATION_TYPE = "REPORT_READY"
NOTIFICATION_CHANNEL = "in_app"


def delivery_attempts_used(job: dict[str, Any]) -> int:
    return sum(
        1 for err in job.get("errors") or [] if err.get("stage") == "delivery" and err.get("code") == "DELIVERY_ERROR"
    )


class DeliveryStageProcessor(StageProcessor):
    stage = "delivery"

    def _check_eligible(self, job: dict[str, Any], validation: dict[str, Any]) -> int:
        if not validation.get("overall_passed"):
            raise pipeline_error(
                "DELIVERY_INELIGIBLE",
                "report did not pass validation",
                details={"overall_status": validation.get("overall_status")},
            )
        attempt = delivery_attempts_used(job) + 1
        if attempt > self.deps.config.max_delivery_attempts:
            self.deps.jobs.record_failure(
                job["job_id"],
                stage=self.stage,
                code="DELIVERY_INELIGIBLE",
                message="delivery attempts exhausted",
                terminal=True,
            )
            raise pipeline_error(
                "DELIVERY_INELIGIBLE",
                "delivery attempts exhausted",
                details={"max_delivery_attempts": self.deps.config.max_delivery_attempts},
            )
        return attempt

    def _report_url(self, job_id: str) -> str | None:
        pointer = self.deps.artifacts.get(job_id=job_id, artifact_type="pdf")
        if not pointer or not pointer.get("pdf_path"):
            return None
        return self.deps.object_storage.signed_url(pointer["pdf_path"], ttl_seconds=self.deps.config.signed_url_ttl_s)

    def _send(self, *, recipient: str, payload: dict[str, Any]) -> str:
        try:
            return call_with_timeout(
                lambda: self.deps.notifications.create_notification(user_id=recipient, payload=payload),
                timeout_ms=self.deps.config.stage_io_timeout_ms,
            )
        except StageTimeoutError as exc:
            raise pipeline_error("DELIVERY_ERROR", str(exc)) from exc
        except ApiError:
            raise
        except Exception as exc:
            raise pipeline_error("DELIVERY_ERROR", f"notification sink error: {type(exc).__name__}") from exc

    def run(self, job: dict[str, Any], *, recipient_user_id: str | None = None, **_: Any) -> dict[str, Any]:
        job_id = job["job_id"]
        existing = self.deps.artifacts.get(job_id=job_id, artifact_type="delivery")
        if existing is not None and existing.get("delivery_status") == "DELIVERED":
            return {
                "delivery": existing,
                "notification_ids": list(existing.get("notification_ids") or []),
                "is_new_delivery": False,
            }

        validation = self.load_artifact(job_id, "validation_result", missing_code="LOAD_VALIDATION_FAILED")
        attempt = self._check_eligible(job, validation)

        recipient = recipient_user_id
        if not recipient:
            assessment = self.deps.assessments.get(assessment_id=job["assessment_id"]) or {}
            recipient = assessment.get("patient_id")
        if not recipient:
            raise pipeline_error("VALIDATION_ERROR", "no recipient for report delivery")

        # A notification from an earlier call whose record write failed is reused, not resent.
        sent = [n for n in self.deps.notifications.list_for_job(job_id=job_id) if n.get("notification_type") == NOTIFICATION_TYPE]
        if sent:
            notification_ids = [n["notification_id"] for n in sent]
        else:
            metadata: dict[str, Any] = {
                "assessment_id": job["assessment_id"],
                "validation_status": validation.get("overall_status"),
            }
            report_url = self._report_url(job_id)
            if report_url:
                metadata["report_url"] = report_url
            notification_id = self._send(
                recipient=recipient,
                payload={
                    "job_id": job_id,
                    "notification_type": NOTIFICATION_TYPE,
                    "channel": NOTIFICATION_CHANNEL,
                    "subject": "Your assessment report is ready",
                    "message": "Your report has been reviewed and is now available.",
                    "metadata": metadata,
                    "status": "PENDING",
                    "created_at": self.now_iso(),
                },
            )
            notification_ids = [notification_id]

        record = {
            "job_id": job_id,
            "delivery_status": "DELIVERED",
            "notification_ids": notification_ids,
            "delivered_at": self.now_iso(),
            "delivery_attempt": attempt,
        }
        saved = self.save_artifact(job_id, "delivery", record)
        logger.info("report_delivered job_id=%s notifications=%s attempt=%s", job_id, len(notification_ids), attempt)
        return {"delivery": saved, "notification_ids": notification_ids, "is_new_delivery": True}
