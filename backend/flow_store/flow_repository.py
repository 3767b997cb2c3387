from __future__ import annotations

import json
import sqlite3
from typing import Any

from .database import SQLiteFlowDB

_JSON_COLUMNS = {
    "pricing_snapshot_json": "pricing_snapshot",
    "form_requirement_json": "form_requirement",
    "metadata_json": "metadata",
}
_PLAIN_COLUMNS = (
    "id",
    "patient_id",
    "category_id",
    "product_id",
    "subscription_duration_id",
    "status",
    "form_submission_id",
    "order_id",
    "consultation_id",
    "invoice_id",
    "version",
    "started_at",
    "completed_at",
    "updated_at",
)


class StaleWriteError(Exception):
    """The stored flow version moved on since it was read."""


def _json_dumps(value: Any) -> str | None:
    if value is None:
        return None
    return json.dumps(value, sort_keys=True, separators=(",", ":"))


def _row_to_record(row: sqlite3.Row) -> dict[str, Any]:
    record = {column: row[column] for column in _PLAIN_COLUMNS}
    for column, key in _JSON_COLUMNS.items():
        raw = row[column]
        record[key] = json.loads(raw) if raw else None
    if record["metadata"] is None:
        record["metadata"] = {}
    return record


class FlowRepository:
    """Row-level persistence for flows and recommendation candidates.

    Records are plain dicts; JSON columns are decoded on read.
    """

    def __init__(self, db: SQLiteFlowDB) -> None:
        self._db = db

    def insert_flow(self, conn: sqlite3.Connection, record: dict[str, Any]) -> None:
        conn.execute(
            """
            INSERT INTO flows (
              id, patient_id, category_id, product_id, subscription_duration_id, status,
              pricing_snapshot_json, form_requirement_json, form_submission_id, order_id,
              consultation_id, invoice_id, metadata_json, version, started_at, completed_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                record["id"],
                record.get("patient_id"),
                record["category_id"],
                record.get("product_id"),
                record.get("subscription_duration_id"),
                record["status"],
                _json_dumps(record.get("pricing_snapshot")),
                _json_dumps(record.get("form_requirement")),
                record.get("form_submission_id"),
                record.get("order_id"),
                record.get("consultation_id"),
                record.get("invoice_id"),
                _json_dumps(record.get("metadata") or {}),
                record.get("version", 1),
                record["started_at"],
                record.get("completed_at"),
                record["updated_at"],
            ),
        )

    def get_flow(self, flow_id: str, conn: sqlite3.Connection | None = None) -> dict[str, Any] | None:
        if conn is not None:
            row = conn.execute("SELECT * FROM flows WHERE id = ?", (flow_id,)).fetchone()
            return _row_to_record(row) if row else None
        with self._db.connection() as own_conn:
            row = own_conn.execute("SELECT * FROM flows WHERE id = ?", (flow_id,)).fetchone()
            return _row_to_record(row) if row else None

    def update_flow(self, conn: sqlite3.Connection, record: dict[str, Any], *, expected_version: int) -> int:
        """Write ``record`` if the stored version still equals ``expected_version``.

        Returns the new version.
        """
        new_version = expected_version + 1
        cursor = conn.execute(
            """
            UPDATE flows
            SET patient_id = ?,
                product_id = ?,
                subscription_duration_id = ?,
                status = ?,
                pricing_snapshot_json = ?,
                form_requirement_json = ?,
                form_submission_id = ?,
                order_id = ?,
                consultation_id = ?,
                invoice_id = ?,
                metadata_json = ?,
                version = ?,
                completed_at = ?,
                updated_at = ?
            WHERE id = ? AND version = ?
            """,
            (
                record.get("patient_id"),
                record.get("product_id"),
                record.get("subscription_duration_id"),
                record["status"],
                _json_dumps(record.get("pricing_snapshot")),
                _json_dumps(record.get("form_requirement")),
                record.get("form_submission_id"),
                record.get("order_id"),
                record.get("consultation_id"),
                record.get("invoice_id"),
                _json_dumps(record.get("metadata") or {}),
                new_version,
                record.get("completed_at"),
                record["updated_at"],
                record["id"],
                expected_version,
            ),
        )
        if cursor.rowcount != 1:
            raise StaleWriteError(f"Flow {record['id']} is no longer at version {expected_version}")
        return new_version

    def list_flows(self, *, status: str | None = None, limit: int = 50) -> list[dict[str, Any]]:
        bounded = max(1, min(500, int(limit)))
        with self._db.connection() as conn:
            if status:
                rows = conn.execute(
                    "SELECT * FROM flows WHERE status = ? ORDER BY updated_at DESC LIMIT ?",
                    (status, bounded),
                ).fetchall()
            else:
                rows = conn.execute("SELECT * FROM flows ORDER BY updated_at DESC LIMIT ?", (bounded,)).fetchall()
        return [_row_to_record(row) for row in rows]

    def insert_candidates(self, conn: sqlite3.Connection, candidates: list[dict[str, Any]]) -> None:
        for candidate in candidates:
            conn.execute(
                """
                INSERT INTO recommendation_candidates (
                  id, flow_id, product_id, rank, score, reason_codes_json, presented_at, accepted_at, rejected_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, NULL, NULL)
                """,
                (
                    candidate["candidate_id"],
                    candidate["flow_id"],
                    candidate["product_id"],
                    candidate["rank"],
                    candidate["score"],
                    json.dumps(list(candidate["reason_codes"])),
                    candidate["presented_at"],
                ),
            )

    def list_candidates(self, flow_id: str) -> list[dict[str, Any]]:
        with self._db.connection() as conn:
            rows = conn.execute(
                """
                SELECT id, flow_id, product_id, rank, score, reason_codes_json, presented_at, accepted_at, rejected_at
                FROM recommendation_candidates
                WHERE flow_id = ?
                ORDER BY rank ASC
                """,
                (flow_id,),
            ).fetchall()
        return [
            {
                "candidate_id": row["id"],
                "flow_id": row["flow_id"],
                "product_id": row["product_id"],
                "rank": row["rank"],
                "score": row["score"],
                "reason_codes": json.loads(row["reason_codes_json"]),
                "presented_at": row["presented_at"],
                "accepted_at": row["accepted_at"],
                "rejected_at": row["rejected_at"],
            }
            for row in rows
        ]

    def resolve_candidate(self, flow_id: str, candidate_id: str, *, accepted: bool, resolved_at: str) -> bool:
        """Stamp a still-open candidate as accepted or rejected. False if it was already resolved."""
        column = "accepted_at" if accepted else "rejected_at"
        with self._db.connection() as conn:
            cursor = conn.execute(
                f"""
                UPDATE recommendation_candidates
                SET {column} = ?
                WHERE id = ? AND flow_id = ? AND accepted_at IS NULL AND rejected_at IS NULL
                """,
                (resolved_at, candidate_id, flow_id),
            )
            return cursor.rowcount == 1
