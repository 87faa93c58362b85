from __future__ import annotations

import copy
import json
import threading
from collections.abc import Callable
from typing import Any

from rhythm_pipeline.db.postgres import PostgresTxRunner, validate_identifier


class InMemoryRuleVersionsRepository:
    """Rule, rule-version and audit rows held in dicts.

    ``run_in_tx`` snapshots the rows and restores them when the callback raises,
    so a multi-step status change is all-or-nothing.
    """

    def __init__(
        self,
        *,
        rules: dict[str, dict[str, Any]],
        versions: dict[str, dict[str, Any]],
        audit_records: list[dict[str, Any]],
    ) -> None:
        self._rules = rules
        self._versions = versions
        self._audit_records = audit_records
        self._lock = threading.RLock()

    def run_in_tx(self, fn: Callable[["InMemoryRuleVersionsRepository"], Any]) -> Any:
        with self._lock:
            rules_snapshot = copy.deepcopy(self._rules)
            versions_snapshot = copy.deepcopy(self._versions)
            audit_len = len(self._audit_records)
            try:
                return fn(self)
            except Exception:
                self._rules.clear()
                self._rules.update(rules_snapshot)
                self._versions.clear()
                self._versions.update(versions_snapshot)
                del self._audit_records[audit_len:]
                raise

    def insert_rule(self, *, rule: dict[str, Any]) -> dict[str, Any]:
        item = dict(rule)
        self._rules[str(item["rule_key"])] = item
        return dict(item)

    def get_rule(self, *, rule_key: str) -> dict[str, Any] | None:
        row = self._rules.get(rule_key)
        return None if row is None else dict(row)

    def list_rules(self, *, kind: str | None = None) -> list[dict[str, Any]]:
        rows = [dict(x) for x in self._rules.values() if kind is None or x.get("kind") == kind]
        return sorted(rows, key=lambda x: str(x["rule_key"]))

    def insert_version(self, *, version: dict[str, Any]) -> dict[str, Any]:
        item = copy.deepcopy(version)
        self._versions[str(item["version_id"])] = item
        return copy.deepcopy(item)

    def get_version(self, *, version_id: str) -> dict[str, Any] | None:
        row = self._versions.get(version_id)
        return None if row is None else copy.deepcopy(row)

    def update_version(self, *, version_id: str, patch: dict[str, Any]) -> dict[str, Any] | None:
        row = self._versions.get(version_id)
        if row is None:
            return None
        row.update(copy.deepcopy(patch))
        return copy.deepcopy(row)

    def update_status(
        self,
        *,
        version_id: str,
        status: str,
        extra: dict[str, Any] | None = None,
    ) -> dict[str, Any] | None:
        return self.update_version(version_id=version_id, patch={**(extra or {}), "status": status})

    def list_versions(self, *, rule_key: str) -> list[dict[str, Any]]:
        rows = [copy.deepcopy(x) for x in self._versions.values() if x.get("rule_key") == rule_key]
        return sorted(rows, key=lambda x: int(x["version"]))

    def list_active_by_key(self, *, rule_key: str) -> list[dict[str, Any]]:
        return [x for x in self.list_versions(rule_key=rule_key) if x.get("status") == "active"]

    def max_version(self, *, rule_key: str) -> int:
        return max((int(x["version"]) for x in self._versions.values() if x.get("rule_key") == rule_key), default=0)

    def insert_audit(self, *, record: dict[str, Any]) -> dict[str, Any]:
        item = copy.deepcopy(record)
        self._audit_records.append(item)
        return copy.deepcopy(item)

    def last_audit_hash(self) -> str:
        if not self._audit_records:
            return ""
        return str(self._audit_records[-1].get("audit_hash") or "")

    def list_audit(self, *, record_id: str | None = None) -> list[dict[str, Any]]:
        return [
            copy.deepcopy(x)
            for x in self._audit_records
            if record_id is None or x.get("record_id") == record_id
        ]


class PostgresRuleVersionsRepository:
    """Rule registry tables in PostgreSQL.

    Inside ``run_in_tx`` every call reuses the transaction's connection, and the
    registry advisory lock serializes concurrent status changes.
    """

    def __init__(
        self,
        *,
        tx_runner: PostgresTxRunner,
        rules_table: str = "rules",
        versions_table: str = "rule_versions",
        audit_table: str = "rule_audit_records",
    ) -> None:
        self._tx_runner = tx_runner
        self._rules_table = validate_identifier(rules_table)
        self._versions_table = validate_identifier(versions_table)
        self._audit_table = validate_identifier(audit_table)
        self._local = threading.local()

    def _run(self, op: Callable[[Any], Any]) -> Any:
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            return op(conn)
        return self._tx_runner.run_in_tx(fn=op)

    def run_in_tx(self, fn: Callable[["PostgresRuleVersionsRepository"], Any]) -> Any:
        def _tx(conn: Any) -> Any:
            with conn.cursor() as cur:
                cur.execute("SELECT pg_advisory_xact_lock(hashtext(%s))", (self._versions_table,))
            self._local.conn = conn
            try:
                return fn(self)
            finally:
                self._local.conn = None

        return self._tx_runner.run_in_tx(fn=_tx)

    def _fetch_payloads(self, sql: str, params: tuple[Any, ...]) -> list[dict[str, Any]]:
        def _op(conn: Any) -> list[dict[str, Any]]:
            with conn.cursor() as cur:
                cur.execute(sql, params)
                rows = cur.fetchall() or []
            return [dict(row[0]) for row in rows if isinstance(row[0], dict)]

        return self._run(_op)

    def insert_rule(self, *, rule: dict[str, Any]) -> dict[str, Any]:
        item = dict(rule)
        sql = f"""
            INSERT INTO {self._rules_table} (rule_key, kind, payload)
            VALUES (%s, %s, %s::jsonb)
        """

        def _op(conn: Any) -> dict[str, Any]:
            with conn.cursor() as cur:
                cur.execute(sql, (item["rule_key"], item.get("kind"), json.dumps(item, ensure_ascii=True, sort_keys=True)))
            return item

        return self._run(_op)

    def get_rule(self, *, rule_key: str) -> dict[str, Any] | None:
        rows = self._fetch_payloads(
            f"SELECT payload FROM {self._rules_table} WHERE rule_key = %s LIMIT 1",
            (rule_key,),
        )
        return rows[0] if rows else None

    def list_rules(self, *, kind: str | None = None) -> list[dict[str, Any]]:
        if kind is None:
            return self._fetch_payloads(f"SELECT payload FROM {self._rules_table} ORDER BY rule_key ASC", ())
        return self._fetch_payloads(
            f"SELECT payload FROM {self._rules_table} WHERE kind = %s ORDER BY rule_key ASC",
            (kind,),
        )

    def insert_version(self, *, version: dict[str, Any]) -> dict[str, Any]:
        item = dict(version)
        sql = f"""
            INSERT INTO {self._versions_table} (version_id, rule_key, version, status, payload)
            VALUES (%s, %s, %s, %s, %s::jsonb)
        """

        def _op(conn: Any) -> dict[str, Any]:
            with conn.cursor() as cur:
                cur.execute(
                    sql,
                    (
                        item["version_id"],
                        item["rule_key"],
                        int(item["version"]),
                        item.get("status"),
                        json.dumps(item, ensure_ascii=True, sort_keys=True),
                    ),
                )
            return item

        return self._run(_op)

    def get_version(self, *, version_id: str) -> dict[str, Any] | None:
        rows = self._fetch_payloads(
            f"SELECT payload FROM {self._versions_table} WHERE version_id = %s LIMIT 1",
            (version_id,),
        )
        return rows[0] if rows else None

    def update_version(self, *, version_id: str, patch: dict[str, Any]) -> dict[str, Any] | None:
        select_sql = f"SELECT payload FROM {self._versions_table} WHERE version_id = %s FOR UPDATE"
        update_sql = f"""
            UPDATE {self._versions_table}
            SET status = %s, payload = %s::jsonb
            WHERE version_id = %s
        """

        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(select_sql, (version_id,))
                row = cur.fetchone()
                if row is None or not isinstance(row[0], dict):
                    return None
                merged = {**row[0], **patch}
                cur.execute(
                    update_sql,
                    (merged.get("status"), json.dumps(merged, ensure_ascii=True, sort_keys=True), version_id),
                )
            return merged

        return self._run(_op)

    def update_status(
        self,
        *,
        version_id: str,
        status: str,
        extra: dict[str, Any] | None = None,
    ) -> dict[str, Any] | None:
        return self.update_version(version_id=version_id, patch={**(extra or {}), "status": status})

    def list_versions(self, *, rule_key: str) -> list[dict[str, Any]]:
        return self._fetch_payloads(
            f"SELECT payload FROM {self._versions_table} WHERE rule_key = %s ORDER BY version ASC",
            (rule_key,),
        )

    def list_active_by_key(self, *, rule_key: str) -> list[dict[str, Any]]:
        return self._fetch_payloads(
            f"""
            SELECT payload FROM {self._versions_table}
            WHERE rule_key = %s AND status = 'active'
            ORDER BY version ASC
            """,
            (rule_key,),
        )

    def max_version(self, *, rule_key: str) -> int:
        sql = f"SELECT COALESCE(MAX(version), 0) FROM {self._versions_table} WHERE rule_key = %s"

        def _op(conn: Any) -> int:
            with conn.cursor() as cur:
                cur.execute(sql, (rule_key,))
                row = cur.fetchone()
            return int(row[0]) if row else 0

        return self._run(_op)

    def insert_audit(self, *, record: dict[str, Any]) -> dict[str, Any]:
        item = dict(record)
        sql = f"""
            INSERT INTO {self._audit_table} (
                audit_id, table_name, record_id, operation, created_at, audit_hash, payload
            ) VALUES (%s, %s, %s, %s, %s, %s, %s::jsonb)
        """

        def _op(conn: Any) -> dict[str, Any]:
            with conn.cursor() as cur:
                cur.execute(
                    sql,
                    (
                        item["audit_id"],
                        item.get("table_name"),
                        item.get("record_id"),
                        item.get("operation"),
                        item.get("created_at"),
                        item.get("audit_hash"),
                        json.dumps(item, ensure_ascii=True, sort_keys=True),
                    ),
                )
            return item

        return self._run(_op)

    def last_audit_hash(self) -> str:
        sql = f"SELECT audit_hash FROM {self._audit_table} ORDER BY seq DESC LIMIT 1"

        def _op(conn: Any) -> str:
            with conn.cursor() as cur:
                cur.execute(sql)
                row = cur.fetchone()
            return str(row[0] or "") if row else ""

        return self._run(_op)

    def list_audit(self, *, record_id: str | None = None) -> list[dict[str, Any]]:
        if record_id is None:
            return self._fetch_payloads(f"SELECT payload FROM {self._audit_table} ORDER BY seq ASC", ())
        return self._fetch_payloads(
            f"SELECT payload FROM {self._audit_table} WHERE record_id = %s ORDER BY seq ASC",
            (record_id,),
        )
