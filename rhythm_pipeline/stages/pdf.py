from __future__ import annotations

import logging
import time
from typing import Any

from rhythm_pipeline.canonical_hash import canonical_hash
from rhythm_pipeline.errors import pipeline_error
from rhythm_pipeline.pdf_renderer import render_report_pdf
from rhythm_pipeline.stages.base import StageProcessor, StageTimeoutError, call_with_timeout

logger = logging.getLogger(__name__)


class PdfStageProcessor(StageProcessor):
    """Render, upload, repoint, then clean up: the old PDF stays valid until the pointer moves."""

    stage = "pdf"

    def _delete_quietly(self, path: str, *, reason: str, job_id: str) -> None:
        try:
            call_with_timeout(
                lambda: self.deps.object_storage.delete(path),
                timeout_ms=self.deps.config.stage_io_timeout_ms,
            )
        except Exception as exc:
            logger.warning(
                "pdf_object_delete_failed job_id=%s reason=%s error_type=%s",
                job_id,
                reason,
                type(exc).__name__,
            )

    def run(self, job: dict[str, Any], **kwargs: Any) -> dict[str, Any]:
        job_id = job["job_id"]
        report = self.load_artifact(job_id, "sections", missing_code="LOAD_SECTIONS_FAILED")
        template_version = self.deps.config.pdf_template_version
        sections_version = str(report.get("sections_version") or "")
        sections = report.get("sections") or []
        content_hash = canonical_hash(
            template_version,
            {
                "template_version": template_version,
                "sections_version": sections_version,
                "sections_data": sections,
            },
        )

        old_pointer = self.deps.artifacts.get(job_id=job_id, artifact_type="pdf")
        if old_pointer is not None and old_pointer.get("content_hash") == content_hash:
            return {
                "pdf_path": old_pointer["pdf_path"],
                "content_hash": content_hash,
                "size_bytes": old_pointer.get("size_bytes"),
                "generation_time_ms": 0,
                "is_new_pdf": False,
            }

        started = time.perf_counter()
        try:
            pdf_bytes = render_report_pdf(
                sections=sections,
                template_version=template_version,
                sections_version=sections_version,
            )
        except Exception as exc:
            raise pipeline_error("PDF_GENERATION_FAILED", f"pdf render failed: {type(exc).__name__}") from exc
        generation_time_ms = int((time.perf_counter() - started) * 1000)

        new_path = self.deps.pdf_path_factory(job_id=job_id, content_hash=content_hash)
        try:
            call_with_timeout(
                lambda: self.deps.object_storage.upload(new_path, pdf_bytes, content_type="application/pdf"),
                timeout_ms=self.deps.config.stage_io_timeout_ms,
            )
        except Exception as exc:
            # A timed-out upload may still land after we give up on it.
            if isinstance(exc, StageTimeoutError):
                self._delete_quietly(new_path, reason="upload_timed_out", job_id=job_id)
            raise pipeline_error("PDF_UPLOAD_FAILED", f"pdf upload failed: {type(exc).__name__}") from exc

        pointer = {
            "job_id": job_id,
            "pdf_path": new_path,
            "content_hash": content_hash,
            "template_version": template_version,
            "sections_version": sections_version,
            "size_bytes": len(pdf_bytes),
            "generated_at": self.now_iso(),
        }
        try:
            saved = self.save_artifact(job_id, "pdf", pointer)
        except Exception as exc:
            self._delete_quietly(new_path, reason="pointer_update_failed", job_id=job_id)
            raise pipeline_error(
                "PDF_POINTER_UPDATE_FAILED",
                f"pdf pointer update failed: {type(exc).__name__}",
            ) from exc

        old_path = (old_pointer or {}).get("pdf_path")
        if old_path and old_path != new_path:
            self._delete_quietly(old_path, reason="replaced", job_id=job_id)

        logger.info("pdf_generated job_id=%s size_bytes=%s replaced=%s", job_id, len(pdf_bytes), bool(old_path))
        return {
            "pdf_path": saved["pdf_path"],
            "content_hash": content_hash,
            "size_bytes": saved["size_bytes"],
            "generation_time_ms": generation_time_ms,
            "is_new_pdf": True,
        }
