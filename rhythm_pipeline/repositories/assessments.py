from __future__ import annotations

import json
from typing import Any

from rhythm_pipeline.db.postgres import PostgresTxRunner, validate_identifier


class InMemoryAssessmentsRepository:
    """Completed assessments: owner, answers and structured intake."""

    def __init__(self, assessments: dict[str, dict[str, Any]]) -> None:
        self._assessments = assessments

    def upsert(self, *, assessment: dict[str, Any]) -> dict[str, Any]:
        item = dict(assessment)
        self._assessments[str(item["assessment_id"])] = item
        return dict(item)

    def get(self, *, assessment_id: str) -> dict[str, Any] | None:
        row = self._assessments.get(assessment_id)
        return None if row is None else dict(row)

    def get_answers(self, *, assessment_id: str) -> dict[str, float]:
        row = self._assessments.get(assessment_id) or {}
        return dict(row.get("answers") or {})

    def get_intake(self, *, assessment_id: str) -> dict[str, Any]:
        row = self._assessments.get(assessment_id) or {}
        return {
            "structured_data": dict(row.get("structured_data") or {}),
            "conversation_turns": list(row.get("conversation_turns") or []),
        }


class PostgresAssessmentsRepository:
    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "assessments") -> None:
        self._tx_runner = tx_runner
        self._table_name = validate_identifier(table_name)

    def upsert(self, *, assessment: dict[str, Any]) -> dict[str, Any]:
        item = dict(assessment)
        sql = f"""
            INSERT INTO {self._table_name} (assessment_id, patient_id, payload)
            VALUES (%s, %s, %s::jsonb)
            ON CONFLICT(assessment_id) DO UPDATE
            SET patient_id = EXCLUDED.patient_id,
                payload = EXCLUDED.payload
        """

        def _op(conn: Any) -> dict[str, Any]:
            with conn.cursor() as cur:
                cur.execute(
                    sql,
                    (item["assessment_id"], item.get("patient_id"), json.dumps(item, ensure_ascii=True, sort_keys=True)),
                )
            return item

        return self._tx_runner.run_in_tx(fn=_op)

    def get(self, *, assessment_id: str) -> dict[str, Any] | None:
        sql = f"SELECT payload FROM {self._table_name} WHERE assessment_id = %s LIMIT 1"

        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(sql, (assessment_id,))
                row = cur.fetchone()
            if row is None or not isinstance(row[0], dict):
                return None
            return row[0]

        return self._tx_runner.run_in_tx(fn=_op)

    def get_answers(self, *, assessment_id: str) -> dict[str, float]:
        row = self.get(assessment_id=assessment_id) or {}
        return dict(row.get("answers") or {})

    def get_intake(self, *, assessment_id: str) -> dict[str, Any]:
        row = self.get(assessment_id=assessment_id) or {}
        return {
            "structured_data": dict(row.get("structured_data") or {}),
            "conversation_turns": list(row.get("conversation_turns") or []),
        }
