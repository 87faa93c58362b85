from __future__ import annotations

import json
from typing import Any

from rhythm_pipeline.db.postgres import PostgresTxRunner, validate_identifier


class InMemoryJobsRepository:
    def __init__(self, jobs: dict[str, dict[str, Any]]) -> None:
        self._jobs = jobs

    def create(self, *, job: dict[str, Any]) -> dict[str, Any]:
        self._jobs[str(job["job_id"])] = dict(job)
        return dict(job)

    def get(self, *, job_id: str) -> dict[str, Any] | None:
        row = self._jobs.get(job_id)
        if row is None:
            return None
        return dict(row)

    def update(self, *, job_id: str, patch: dict[str, Any]) -> dict[str, Any] | None:
        row = self._jobs.get(job_id)
        if row is None:
            return None
        row.update(patch)
        return dict(row)

    def find_by_key(
        self,
        *,
        assessment_id: str,
        correlation_id: str,
        schema_version: str,
    ) -> dict[str, Any] | None:
        for row in self._jobs.values():
            if (
                row.get("assessment_id") == assessment_id
                and row.get("correlation_id") == correlation_id
                and row.get("schema_version") == schema_version
            ):
                return dict(row)
        return None


class PostgresJobsRepository:
    """Processing jobs keyed by job_id; the full record lives in a jsonb payload column."""

    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "processing_jobs") -> None:
        self._tx_runner = tx_runner
        self._table_name = validate_identifier(table_name)

    def create(self, *, job: dict[str, Any]) -> dict[str, Any]:
        payload = dict(job)
        sql = f"""
            INSERT INTO {self._table_name} (
                job_id, assessment_id, correlation_id, schema_version, stage, status, payload, updated_at
            ) VALUES (%s, %s, %s, %s, %s, %s, %s::jsonb, %s)
            ON CONFLICT(assessment_id, correlation_id, schema_version) DO NOTHING
        """

        def _op(conn: Any) -> dict[str, Any]:
            with conn.cursor() as cur:
                cur.execute(
                    sql,
                    (
                        payload["job_id"],
                        payload.get("assessment_id"),
                        payload.get("correlation_id"),
                        payload.get("schema_version", "v1"),
                        payload.get("stage"),
                        payload.get("status"),
                        json.dumps(payload, ensure_ascii=True, sort_keys=True),
                        payload.get("updated_at"),
                    ),
                )
            return payload

        return self._tx_runner.run_in_tx(fn=_op)

    def get(self, *, job_id: str) -> dict[str, Any] | None:
        sql = f"""
            SELECT payload
            FROM {self._table_name}
            WHERE job_id = %s
            LIMIT 1
        """

        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(sql, (job_id,))
                row = cur.fetchone()
            if row is None or not isinstance(row[0], dict):
                return None
            return dict(row[0])

        return self._tx_runner.run_in_tx(fn=_op)

    def update(self, *, job_id: str, patch: dict[str, Any]) -> dict[str, Any] | None:
        select_sql = f"SELECT payload FROM {self._table_name} WHERE job_id = %s FOR UPDATE"
        update_sql = f"""
            UPDATE {self._table_name}
            SET stage = %s, status = %s, payload = %s::jsonb, updated_at = %s
            WHERE job_id = %s
        """

        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(select_sql, (job_id,))
                row = cur.fetchone()
                if row is None or not isinstance(row[0], dict):
                    return None
                merged = {**row[0], **patch}
                cur.execute(
                    update_sql,
                    (
                        merged.get("stage"),
                        merged.get("status"),
                        json.dumps(merged, ensure_ascii=True, sort_keys=True),
                        merged.get("updated_at"),
                        job_id,
                    ),
                )
            return merged

        return self._tx_runner.run_in_tx(fn=_op)

    def find_by_key(
        self,
        *,
        assessment_id: str,
        correlation_id: str,
        schema_version: str,
    ) -> dict[str, Any] | None:
        sql = f"""
            SELECT payload
            FROM {self._table_name}
            WHERE assessment_id = %s AND correlation_id = %s AND schema_version = %s
            LIMIT 1
        """

        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(sql, (assessment_id, correlation_id, schema_version))
                row = cur.fetchone()
            if row is None or not isinstance(row[0], dict):
                return None
            return dict(row[0])

        return self._tx_runner.run_in_tx(fn=_op)
