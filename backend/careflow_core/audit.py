"""Append-only, hash-chained audit trail of flow transitions.

Only the digest of a transition payload is stored; the payload itself may
contain PHI that already lives on the flow and its collaborators. Storage
triggers reject UPDATE and DELETE on ``audit_entries``.
"""

from __future__ import annotations

import logging
import sqlite3
import uuid
from typing import Any, Iterator

from flow_store.database import SQLiteFlowDB
from flow_store.digest import PayloadDigester
from flow_store.time_utils import to_iso, utc_now

from .models import AuditEntry

logger = logging.getLogger(__name__)

GENESIS_HASH = "0" * 64


def transition_key(flow_id: str, to_status: str) -> str:
    return f"{flow_id}:{to_status}"


def _row_to_entry(row: sqlite3.Row) -> AuditEntry:
    return AuditEntry(
        entry_id=row["id"],
        flow_id=row["flow_id"],
        sequence=row["sequence"],
        from_status=row["from_status"],
        to_status=row["to_status"],
        actor=row["actor"],
        timestamp=row["created_at"],
        payload_digest=row["payload_digest"],
        idempotency_key=row["idempotency_key"],
        prev_hash=row["prev_hash"],
        entry_hash=row["entry_hash"],
    )


class AuditTrail:
    def __init__(self, db: SQLiteFlowDB, digester: PayloadDigester | None = None) -> None:
        self._db = db
        self.digester = digester or PayloadDigester()

    def append(
        self,
        flow_id: str,
        from_status: str | None,
        to_status: str,
        actor: str,
        payload: dict[str, Any],
        *,
        conn: sqlite3.Connection | None = None,
        idempotency_key: str | None = None,
    ) -> AuditEntry:
        """Append one entry. Pass ``conn`` to join the caller's transaction."""
        if conn is None:
            with self._db.connection() as own_conn:
                return self._append(own_conn, flow_id, from_status, to_status, actor, payload, idempotency_key)
        return self._append(conn, flow_id, from_status, to_status, actor, payload, idempotency_key)

    def _append(
        self,
        conn: sqlite3.Connection,
        flow_id: str,
        from_status: str | None,
        to_status: str,
        actor: str,
        payload: dict[str, Any],
        idempotency_key: str | None,
    ) -> AuditEntry:
        last = conn.execute(
            """
            SELECT sequence, entry_hash
            FROM audit_entries
            WHERE flow_id = ?
            ORDER BY sequence DESC
            LIMIT 1
            """,
            (flow_id,),
        ).fetchone()
        sequence = (last["sequence"] + 1) if last else 1
        prev_hash = last["entry_hash"] if last else GENESIS_HASH

        entry_id = uuid.uuid4().hex
        timestamp = to_iso(utc_now())
        payload_digest = self.digester.digest(payload)
        key = idempotency_key or transition_key(flow_id, to_status)
        entry_hash = self.digester.chain_hash(
            prev_hash,
            entry_id,
            flow_id,
            str(sequence),
            from_status or "",
            to_status,
            actor,
            timestamp,
            payload_digest,
        )
        conn.execute(
            """
            INSERT INTO audit_entries (
              id, flow_id, sequence, from_status, to_status, actor,
              payload_digest, idempotency_key, prev_hash, entry_hash, created_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                entry_id,
                flow_id,
                sequence,
                from_status,
                to_status,
                actor,
                payload_digest,
                key,
                prev_hash,
                entry_hash,
                timestamp,
            ),
        )
        logger.debug("audit entry %s flow=%s seq=%s %s -> %s", entry_id, flow_id, sequence, from_status, to_status)
        return AuditEntry(
            entry_id=entry_id,
            flow_id=flow_id,
            sequence=sequence,
            from_status=from_status,
            to_status=to_status,
            actor=actor,
            timestamp=timestamp,
            payload_digest=payload_digest,
            idempotency_key=key,
            prev_hash=prev_hash,
            entry_hash=entry_hash,
        )

    def entries(self, flow_id: str) -> list[AuditEntry]:
        with self._db.connection() as conn:
            rows = conn.execute(
                """
                SELECT id, flow_id, sequence, from_status, to_status, actor, payload_digest,
                       idempotency_key, prev_hash, entry_hash, created_at
                FROM audit_entries
                WHERE flow_id = ?
                ORDER BY sequence ASC
                """,
                (flow_id,),
            ).fetchall()
        return [_row_to_entry(row) for row in rows]

    def count(self, flow_id: str) -> int:
        with self._db.connection() as conn:
            row = conn.execute("SELECT COUNT(*) AS n FROM audit_entries WHERE flow_id = ?", (flow_id,)).fetchone()
        return int(row["n"])

    def export_stream(self, flow_id: str) -> Iterator[dict[str, Any]]:
        for entry in self.entries(flow_id):
            yield entry.as_export()

    def verify_chain(self, flow_id: str) -> bool:
        prev_hash = GENESIS_HASH
        for expected_sequence, entry in enumerate(self.entries(flow_id), start=1):
            if entry.sequence != expected_sequence or entry.prev_hash != prev_hash:
                return False
            recomputed = self.digester.chain_hash(
                entry.prev_hash,
                entry.entry_id,
                entry.flow_id,
                str(entry.sequence),
                entry.from_status or "",
                entry.to_status,
                entry.actor,
                entry.timestamp,
                entry.payload_digest,
            )
            if recomputed != entry.entry_hash:
                return False
            prev_hash = entry.entry_hash
        return True
