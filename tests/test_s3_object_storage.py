"""Tests for S3ObjectStorage with mocked boto3."""

import sys
from unittest.mock import MagicMock, patch

import pytest


@pytest.fixture
def mock_boto3():
    """Mock boto3 module for S3ObjectStorage tests."""
    mock_boto3_module = MagicMock()
    mock_client = MagicMock()
    mock_boto3_module.session.Session.return_value.client.return_value = mock_client

    with patch.dict(sys.modules, {"boto3": mock_boto3_module}):
        yield mock_boto3_module, mock_client


def _storage(prefix: str = ""):
    from rhythm_pipeline.object_storage import create_object_storage_from_env

    return create_object_storage_from_env(
        {
            "RHYTHM_OBJECT_STORAGE_BACKEND": "s3",
            "OBJECT_STORAGE_BUCKET": "reports-bucket",
            "OBJECT_STORAGE_PREFIX": prefix,
            "OBJECT_STORAGE_ENDPOINT": "http://localhost:9000",
            "OBJECT_STORAGE_REGION": "us-east-1",
        }
    )


def test_s3_upload_uses_prefixed_key(mock_boto3):
    _, mock_client = mock_boto3
    storage = _storage(prefix="prod")

    key = storage.upload("reports/job_1/report.pdf", b"%PDF", content_type="application/pdf")

    assert key == "reports/job_1/report.pdf"
    mock_client.put_object.assert_called_once_with(
        Bucket="reports-bucket",
        Key="prod/reports/job_1/report.pdf",
        Body=b"%PDF",
        ContentType="application/pdf",
    )


def test_s3_signed_url_uses_presign(mock_boto3):
    _, mock_client = mock_boto3
    mock_client.generate_presigned_url.return_value = "https://s3.example/presigned"
    storage = _storage()

    assert storage.signed_url("reports/job_1/report.pdf", ttl_seconds=900) == "https://s3.example/presigned"
    mock_client.generate_presigned_url.assert_called_once_with(
        "get_object",
        Params={"Bucket": "reports-bucket", "Key": "reports/job_1/report.pdf"},
        ExpiresIn=900,
    )


def test_s3_exists_returns_false_when_head_fails(mock_boto3):
    _, mock_client = mock_boto3
    mock_client.head_object.side_effect = Exception("Not found")
    storage = _storage()

    assert storage.exists("reports/missing.pdf") is False
    assert storage.delete("reports/missing.pdf") is True
    mock_client.delete_object.assert_called_once_with(Bucket="reports-bucket", Key="reports/missing.pdf")
