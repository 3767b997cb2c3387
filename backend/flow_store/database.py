from __future__ import annotations

import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator


class SQLiteFlowDB:
    def __init__(self, db_path: str) -> None:
        self._path = Path(db_path).expanduser().resolve()
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._init_schema()

    @property
    def path(self) -> str:
        return str(self._path)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._path), timeout=30.0, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        conn = self._connect()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_schema(self) -> None:
        with self._lock, self.connection() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS flows (
                  id TEXT PRIMARY KEY,
                  patient_id TEXT,
                  category_id TEXT NOT NULL,
                  product_id TEXT,
                  subscription_duration_id TEXT,
                  status TEXT NOT NULL,
                  pricing_snapshot_json TEXT,
                  form_requirement_json TEXT,
                  form_submission_id TEXT,
                  order_id TEXT,
                  consultation_id TEXT,
                  invoice_id TEXT,
                  metadata_json TEXT NOT NULL,
                  version INTEGER NOT NULL DEFAULT 1,
                  started_at TEXT NOT NULL,
                  completed_at TEXT,
                  updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS audit_entries (
                  id TEXT PRIMARY KEY,
                  flow_id TEXT NOT NULL REFERENCES flows(id),
                  sequence INTEGER NOT NULL,
                  from_status TEXT,
                  to_status TEXT NOT NULL,
                  actor TEXT NOT NULL,
                  payload_digest TEXT NOT NULL,
                  idempotency_key TEXT NOT NULL UNIQUE,
                  prev_hash TEXT NOT NULL,
                  entry_hash TEXT NOT NULL,
                  created_at TEXT NOT NULL,
                  UNIQUE(flow_id, sequence)
                );

                CREATE TRIGGER IF NOT EXISTS audit_entries_no_update
                BEFORE UPDATE ON audit_entries
                BEGIN
                  SELECT RAISE(ABORT, 'audit entries are append-only');
                END;

                CREATE TRIGGER IF NOT EXISTS audit_entries_no_delete
                BEFORE DELETE ON audit_entries
                BEGIN
                  SELECT RAISE(ABORT, 'audit entries are append-only');
                END;

                CREATE TABLE IF NOT EXISTS recommendation_candidates (
                  id TEXT PRIMARY KEY,
                  flow_id TEXT NOT NULL REFERENCES flows(id),
                  product_id TEXT NOT NULL,
                  rank INTEGER NOT NULL,
                  score REAL NOT NULL,
                  reason_codes_json TEXT NOT NULL,
                  presented_at TEXT NOT NULL,
                  accepted_at TEXT,
                  rejected_at TEXT,
                  CHECK (accepted_at IS NULL OR rejected_at IS NULL)
                );

                CREATE INDEX IF NOT EXISTS idx_flows_status
                  ON flows(status, updated_at);
                CREATE INDEX IF NOT EXISTS idx_audit_entries_flow_sequence
                  ON audit_entries(flow_id, sequence);
                CREATE INDEX IF NOT EXISTS idx_candidates_flow_rank
                  ON recommendation_candidates(flow_id, rank);
                """
            )
