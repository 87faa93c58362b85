from __future__ import annotations

import pytest

from rhythm_pipeline.object_storage import (
    LocalObjectStorage,
    build_pdf_path,
    create_object_storage_from_env,
    describe_backend,
)


def _local(tmp_path) -> LocalObjectStorage:
    storage = create_object_storage_from_env(
        {
            "RHYTHM_OBJECT_STORAGE_BACKEND": "local",
            "OBJECT_STORAGE_ROOT": str(tmp_path),
            "OBJECT_STORAGE_SIGNING_SECRET": "s3cret",
            "OBJECT_STORAGE_PUBLIC_BASE_URL": "https://files.example.test/",
        }
    )
    assert isinstance(storage, LocalObjectStorage)
    return storage


def test_local_storage_roundtrip_and_delete(tmp_path):
    storage = _local(tmp_path)
    key = storage.upload("reports/job_1/report.pdf", b"%PDF-1.4", content_type="application/pdf")
    assert key == "reports/job_1/report.pdf"
    assert storage.exists(key) is True
    assert storage.get(key) == b"%PDF-1.4"
    assert (tmp_path / "rhythm" / "reports" / "job_1" / "report.pdf.meta.json").exists()
    assert storage.delete(key) is True
    assert storage.delete(key) is False
    with pytest.raises(FileNotFoundError):
        storage.get(key)


@pytest.mark.parametrize("path", ["", "reports/../secrets.pdf", "reports//x.pdf", "./x.pdf"])
def test_local_storage_rejects_unsafe_paths(tmp_path, path):
    storage = _local(tmp_path)
    with pytest.raises(ValueError, match="invalid object path"):
        storage.upload(path, b"x")


def test_signed_url_carries_expiry_and_signature(tmp_path):
    storage = _local(tmp_path)
    url = storage.signed_url("reports/job_1/report.pdf", ttl_seconds=600)
    assert url.startswith("https://files.example.test/rhythm/reports/job_1/report.pdf?expires=")
    assert "&signature=" in url


def test_build_pdf_path_is_fresh_per_render():
    first = build_pdf_path(job_id="job/1", content_hash="a" * 64)
    second = build_pdf_path(job_id="job/1", content_hash="a" * 64)
    assert first != second
    assert first.startswith("reports/job_1/report-aaaaaaaaaaaa-")
    assert first.endswith(".pdf")


def test_reset_clears_local_objects(tmp_path):
    storage = _local(tmp_path)
    storage.upload("reports/a.pdf", b"x")
    storage.reset()
    assert storage.exists("reports/a.pdf") is False
    assert describe_backend(storage) == "local"
