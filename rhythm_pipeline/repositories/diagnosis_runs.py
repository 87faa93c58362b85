from __future__ import annotations

import json
from typing import Any

from rhythm_pipeline.db.postgres import PostgresTxRunner, validate_identifier


class InMemoryDiagnosisRunsRepository:
    def __init__(self, runs: dict[str, dict[str, Any]]) -> None:
        self._runs = runs

    def create(self, *, run: dict[str, Any]) -> dict[str, Any]:
        item = dict(run)
        self._runs[str(item["run_id"])] = item
        return dict(item)

    def get(self, *, run_id: str) -> dict[str, Any] | None:
        row = self._runs.get(run_id)
        return None if row is None else dict(row)

    def list_recent(self, *, patient_id: str, inputs_hash: str, since: str) -> list[dict[str, Any]]:
        rows = [
            dict(x)
            for x in self._runs.values()
            if x.get("patient_id") == patient_id
            and x.get("inputs_hash") == inputs_hash
            and str(x.get("created_at") or "") >= since
        ]
        return sorted(rows, key=lambda x: str(x.get("created_at") or ""), reverse=True)


class PostgresDiagnosisRunsRepository:
    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "diagnosis_runs") -> None:
        self._tx_runner = tx_runner
        self._table_name = validate_identifier(table_name)

    def create(self, *, run: dict[str, Any]) -> dict[str, Any]:
        item = dict(run)
        sql = f"""
            INSERT INTO {self._table_name} (run_id, patient_id, inputs_hash, status, created_at, payload)
            VALUES (%s, %s, %s, %s, %s, %s::jsonb)
        """

        def _op(conn: Any) -> dict[str, Any]:
            with conn.cursor() as cur:
                cur.execute(
                    sql,
                    (
                        item["run_id"],
                        item["patient_id"],
                        item["inputs_hash"],
                        item.get("status", "queued"),
                        item.get("created_at"),
                        json.dumps(item, ensure_ascii=True, sort_keys=True),
                    ),
                )
            return item

        return self._tx_runner.run_in_tx(fn=_op)

    def get(self, *, run_id: str) -> dict[str, Any] | None:
        sql = f"SELECT payload FROM {self._table_name} WHERE run_id = %s LIMIT 1"

        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(sql, (run_id,))
                row = cur.fetchone()
            if row is None or not isinstance(row[0], dict):
                return None
            return row[0]

        return self._tx_runner.run_in_tx(fn=_op)

    def list_recent(self, *, patient_id: str, inputs_hash: str, since: str) -> list[dict[str, Any]]:
        sql = f"""
            SELECT payload
            FROM {self._table_name}
            WHERE patient_id = %s AND inputs_hash = %s AND created_at >= %s
            ORDER BY created_at DESC
        """

        def _op(conn: Any) -> list[dict[str, Any]]:
            with conn.cursor() as cur:
                cur.execute(sql, (patient_id, inputs_hash, since))
                rows = cur.fetchall() or []
            return [row[0] for row in rows if isinstance(row[0], dict)]

        return self._tx_runner.run_in_tx(fn=_op)
