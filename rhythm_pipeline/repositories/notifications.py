from __future__ import annotations

import json
import uuid
from typing import Any

from rhythm_pipeline.db.postgres import PostgresTxRunner, validate_identifier


class InMemoryNotificationsRepository:
    def __init__(self, notifications: dict[str, dict[str, Any]]) -> None:
        self._notifications = notifications

    def create_notification(self, *, user_id: str, payload: dict[str, Any]) -> str:
        notification_id = f"ntf_{uuid.uuid4().hex[:12]}"
        self._notifications[notification_id] = {
            **payload,
            "notification_id": notification_id,
            "user_id": user_id,
        }
        return notification_id

    def list_for_job(self, *, job_id: str) -> list[dict[str, Any]]:
        return [dict(x) for x in self._notifications.values() if x.get("job_id") == job_id]


class PostgresNotificationsRepository:
    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "notifications") -> None:
        self._tx_runner = tx_runner
        self._table_name = validate_identifier(table_name)

    def create_notification(self, *, user_id: str, payload: dict[str, Any]) -> str:
        notification_id = f"ntf_{uuid.uuid4().hex[:12]}"
        item = {**payload, "notification_id": notification_id, "user_id": user_id}
        sql = f"""
            INSERT INTO {self._table_name} (
                notification_id, user_id, job_id, notification_type, status, payload
            ) VALUES (%s, %s, %s, %s, %s, %s::jsonb)
        """

        def _op(conn: Any) -> str:
            with conn.cursor() as cur:
                cur.execute(
                    sql,
                    (
                        notification_id,
                        user_id,
                        item.get("job_id"),
                        item.get("notification_type"),
                        item.get("status", "pending"),
                        json.dumps(item, ensure_ascii=True, sort_keys=True),
                    ),
                )
            return notification_id

        return self._tx_runner.run_in_tx(fn=_op)

    def list_for_job(self, *, job_id: str) -> list[dict[str, Any]]:
        sql = f"SELECT payload FROM {self._table_name} WHERE job_id = %s ORDER BY notification_id ASC"

        def _op(conn: Any) -> list[dict[str, Any]]:
            with conn.cursor() as cur:
                cur.execute(sql, (job_id,))
                rows = cur.fetchall() or []
            return [row[0] for row in rows if isinstance(row[0], dict)]

        return self._tx_runner.run_in_tx(fn=_op)
