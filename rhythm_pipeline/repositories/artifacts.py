from __future__ import annotations

import copy
import json
from typing import Any

from rhythm_pipeline.db.postgres import PostgresTxRunner, validate_identifier

ARTIFACT_TYPES = (
    "risk_bundle",
    "ranking",
    "sections",
    "safety_check",
    "validation_result",
    "delivery",
    "pdf",
)


def _check_type(artifact_type: str) -> str:
    if artifact_type not in ARTIFACT_TYPES:
        raise ValueError(f"unknown artifact type: {artifact_type}")
    return artifact_type


class InMemoryArtifactsRepository:
    def __init__(self, artifacts: dict[tuple[str, str], dict[str, Any]]) -> None:
        self._artifacts = artifacts

    def get(self, *, job_id: str, artifact_type: str) -> dict[str, Any] | None:
        row = self._artifacts.get((job_id, _check_type(artifact_type)))
        if row is None:
            return None
        return copy.deepcopy(row)

    def put(self, *, job_id: str, artifact_type: str, data: dict[str, Any]) -> dict[str, Any]:
        item = copy.deepcopy(data)
        self._artifacts[(job_id, _check_type(artifact_type))] = item
        return copy.deepcopy(item)

    def list_types(self, *, job_id: str) -> list[str]:
        return [t for t in ARTIFACT_TYPES if (job_id, t) in self._artifacts]


class PostgresArtifactsRepository:
    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "pipeline_artifacts") -> None:
        self._tx_runner = tx_runner
        self._table_name = validate_identifier(table_name)

    def get(self, *, job_id: str, artifact_type: str) -> dict[str, Any] | None:
        sql = f"""
            SELECT payload
            FROM {self._table_name}
            WHERE job_id = %s AND artifact_type = %s
            LIMIT 1
        """

        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(sql, (job_id, _check_type(artifact_type)))
                row = cur.fetchone()
            if row is None or not isinstance(row[0], dict):
                return None
            return row[0]

        return self._tx_runner.run_in_tx(fn=_op)

    def put(self, *, job_id: str, artifact_type: str, data: dict[str, Any]) -> dict[str, Any]:
        item = dict(data)
        sql = f"""
            INSERT INTO {self._table_name} (job_id, artifact_type, payload, updated_at)
            VALUES (%s, %s, %s::jsonb, now())
            ON CONFLICT(job_id, artifact_type) DO UPDATE
            SET payload = EXCLUDED.payload,
                updated_at = EXCLUDED.updated_at
        """

        def _op(conn: Any) -> dict[str, Any]:
            with conn.cursor() as cur:
                cur.execute(
                    sql,
                    (job_id, _check_type(artifact_type), json.dumps(item, ensure_ascii=True, sort_keys=True)),
                )
            return item

        return self._tx_runner.run_in_tx(fn=_op)

    def list_types(self, *, job_id: str) -> list[str]:
        sql = f"SELECT artifact_type FROM {self._table_name} WHERE job_id = %s"

        def _op(conn: Any) -> list[str]:
            with conn.cursor() as cur:
                cur.execute(sql, (job_id,))
                rows = cur.fetchall() or []
            present = {str(row[0]) for row in rows}
            return [t for t in ARTIFACT_TYPES if t in present]

        return self._tx_runner.run_in_tx(fn=_op)
