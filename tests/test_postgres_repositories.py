from __future__ import annotations

import pytest

from rhythm_pipeline.db.postgres import PostgresTxRunner, validate_identifier
from rhythm_pipeline.repositories import PostgresJobsRepository, PostgresRuleVersionsRepository


class FakeCursor:
    def __init__(self, statements: list, rows: list):
        self._statements = statements
        self._rows = rows
        self._result: list = []

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def execute(self, query: str, params=None):
        self._statements.append((query, params))
        if query.strip().lower().startswith("select payload"):
            self._result = list(self._rows)
        else:
            self._result = []

    def fetchone(self):
        return self._result[0] if self._result else None

    def fetchall(self):
        return list(self._result)


class FakeConnection:
    def __init__(self, statements: list, rows: list):
        self._statements = statements
        self._rows = rows

    def cursor(self):
        return FakeCursor(self._statements, self._rows)


class FakeRunner:
    def __init__(self, rows: list | None = None):
        self.statements: list = []
        self.rows = rows or []
        self.transactions = 0

    def run_in_tx(self, *, fn):
        self.transactions += 1
        return fn(FakeConnection(self.statements, self.rows))


def test_validate_identifier_rejects_injection():
    assert validate_identifier("processing_jobs") == "processing_jobs"
    with pytest.raises(ValueError, match="invalid SQL identifier"):
        PostgresJobsRepository(tx_runner=FakeRunner(), table_name="jobs;drop table jobs")
    with pytest.raises(ValueError, match="invalid SQL identifier"):
        PostgresRuleVersionsRepository(tx_runner=FakeRunner(), audit_table="audit log")


def test_tx_runner_requires_dsn():
    with pytest.raises(ValueError, match="POSTGRES_DSN"):
        PostgresTxRunner("   ")


def test_postgres_jobs_repository_create_get_and_update():
    stored = {"job_id": "job_1", "assessment_id": "as_1", "stage": "risk", "status": "pending"}
    runner = FakeRunner(rows=[(stored,)])
    repo = PostgresJobsRepository(tx_runner=runner, table_name="jobs")

    repo.create(job={**stored, "correlation_id": "corr_1", "schema_version": "v1"})
    insert_sql, insert_params = runner.statements[0]
    assert "INSERT INTO jobs" in insert_sql
    assert "ON CONFLICT(assessment_id, correlation_id, schema_version) DO NOTHING" in insert_sql
    assert insert_params[:4] == ("job_1", "as_1", "corr_1", "v1")

    assert repo.get(job_id="job_1") == stored

    updated = repo.update(job_id="job_1", patch={"stage": "ranking"})
    assert updated["stage"] == "ranking"
    select_sql, _ = runner.statements[-2]
    update_sql, update_params = runner.statements[-1]
    assert "FOR UPDATE" in select_sql
    assert update_sql.strip().startswith("UPDATE jobs")
    assert update_params[0] == "ranking"
    assert update_params[-1] == "job_1"


def test_postgres_jobs_repository_missing_row_returns_none():
    repo = PostgresJobsRepository(tx_runner=FakeRunner(rows=[]))
    assert repo.get(job_id="missing") is None
    assert repo.update(job_id="missing", patch={"stage": "pdf"}) is None


def test_rule_versions_transaction_takes_advisory_lock_and_reuses_connection():
    version = {"version_id": "rv_1", "rule_key": "DIZZINESS", "version": 1, "status": "draft"}
    runner = FakeRunner(rows=[(version,)])
    repo = PostgresRuleVersionsRepository(tx_runner=runner)

    def _op(tx_repo):
        assert tx_repo.get_version(version_id="rv_1")["status"] == "draft"
        return tx_repo.update_status(version_id="rv_1", status="active", extra={"activated_at": "now"})

    result = repo.run_in_tx(_op)

    assert result["status"] == "active"
    assert result["activated_at"] == "now"
    assert runner.transactions == 1
    lock_sql, lock_params = runner.statements[0]
    assert "pg_advisory_xact_lock" in lock_sql
    assert lock_params == ("rule_versions",)

    repo.get_version(version_id="rv_1")
    assert runner.transactions == 2
