from __future__ import annotations

import hashlib
import hmac
import sqlite3

import pytest

from careflow_core.audit import GENESIS_HASH, AuditTrail
from careflow_core.lifecycle import FlowLifecycle
from flow_store import PayloadDigester
from flow_store.digest import canonical_json


def _flow(orchestrator) -> str:
    return orchestrator.initialize_flow("weight-mgmt", "tester").flow_id


def test_entries_are_hash_chained_in_sequence(orchestrator):
    flow_id = _flow(orchestrator)
    orchestrator.select_product(flow_id, "semaglutide-1", "monthly", "tester")

    entries = orchestrator.audit_entries(flow_id)
    assert [entry.sequence for entry in entries] == [1, 2, 3]
    assert entries[0].prev_hash == GENESIS_HASH
    assert entries[0].from_status is None
    for previous, current in zip(entries, entries[1:]):
        assert current.prev_hash == previous.entry_hash
    assert orchestrator.audit.verify_chain(flow_id) is True


def test_audit_rows_reject_update_and_delete(orchestrator, db):
    flow_id = _flow(orchestrator)
    before = orchestrator.audit.count(flow_id)

    with pytest.raises(sqlite3.DatabaseError, match="append-only"):
        with db.connection() as conn:
            conn.execute("UPDATE audit_entries SET actor = 'mallory' WHERE flow_id = ?", (flow_id,))
    with pytest.raises(sqlite3.DatabaseError, match="append-only"):
        with db.connection() as conn:
            conn.execute("DELETE FROM audit_entries WHERE flow_id = ?", (flow_id,))

    assert orchestrator.audit.count(flow_id) == before
    assert orchestrator.audit_entries(flow_id)[0].actor == "tester"


def test_audit_count_only_grows(orchestrator, intake_form):
    flow_id = _flow(orchestrator)
    counts = [orchestrator.audit.count(flow_id)]
    orchestrator.select_product(flow_id, "semaglutide-1", "monthly", "tester")
    counts.append(orchestrator.audit.count(flow_id))
    orchestrator.submit_intake(flow_id, intake_form, "tester")
    counts.append(orchestrator.audit.count(flow_id))
    orchestrator.cancel(flow_id, "changed_mind", "tester")
    counts.append(orchestrator.audit.count(flow_id))
    orchestrator.cancel(flow_id, "changed_mind", "tester")
    counts.append(orchestrator.audit.count(flow_id))
    assert counts == [1, 3, 6, 7, 7]


def test_payload_is_stored_only_as_digest(db):
    trail = AuditTrail(db)
    payload = {"form_data": {"allergies": "penicillin"}}
    with db.connection() as conn:
        conn.execute(
            """
            INSERT INTO flows (id, category_id, status, metadata_json, version, started_at, updated_at)
            VALUES ('flow_raw', 'weight-mgmt', 'category_selected', '{}', 1, '2026-01-01', '2026-01-01')
            """
        )
    entry = trail.append("flow_raw", None, "category_selected", "tester", payload)
    expected = hashlib.sha256(canonical_json(payload).encode("utf-8")).hexdigest()
    assert entry.payload_digest == expected

    with db.connection() as conn:
        row = conn.execute("SELECT * FROM audit_entries WHERE id = ?", (entry.entry_id,)).fetchone()
    assert "penicillin" not in " ".join(str(value) for value in tuple(row))


def test_salted_digest_uses_hmac():
    digester = PayloadDigester(algorithm="sha512", salt="pepper")
    payload = {"b": 2, "a": 1}
    expected = hmac.new(b"pepper", b'{"a":1,"b":2}', "sha512").hexdigest()
    assert digester.digest(payload) == expected
    with pytest.raises(ValueError):
        PayloadDigester(algorithm="not-a-hash")


def test_verify_chain_detects_tampering(orchestrator, db):
    flow_id = _flow(orchestrator)
    orchestrator.select_product(flow_id, "semaglutide-1", "monthly", "tester")
    # Bypass the append-only triggers the way an attacker with file access could.
    with db.connection() as conn:
        conn.execute("DROP TRIGGER audit_entries_no_update")
        conn.execute("UPDATE audit_entries SET actor = 'mallory' WHERE flow_id = ? AND sequence = 2", (flow_id,))
    assert orchestrator.audit.verify_chain(flow_id) is False


def test_recorded_statuses_form_a_valid_path(orchestrator, intake_form):
    flow_id = _flow(orchestrator)
    orchestrator.select_product(flow_id, "semaglutide-1", None, "tester")
    orchestrator.reprice(flow_id, "spring_promo", "tester")
    orchestrator.configure_subscription(flow_id, "quarterly", "tester")
    orchestrator.submit_intake(flow_id, intake_form, "tester")
    orchestrator.request_consultation(flow_id, "tester")
    orchestrator.record_consultation_outcome(flow_id, "approved", "clinician")
    orchestrator.activate_subscription(flow_id, "tester")
    orchestrator.mark_fulfilled(flow_id, "pharmacy")
    orchestrator.complete_flow(flow_id, "tester")

    entries = orchestrator.audit_entries(flow_id)
    transitions = [entry.to_status for entry in entries if entry.is_transition]
    assert FlowLifecycle().is_valid_history(transitions)
    assert transitions[-1] == "completed"
    assert len(entries) == len(transitions) + 1

    exported = orchestrator.export_audit(flow_id)
    assert [row["sequence"] for row in exported] == list(range(1, len(entries) + 1))
    assert set(exported[0]) == {
        "entry_id",
        "flow_id",
        "sequence",
        "from_status",
        "to_status",
        "actor",
        "timestamp",
        "payload_digest",
        "prev_hash",
        "entry_hash",
    }
