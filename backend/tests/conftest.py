from __future__ import annotations

import importlib
import sys
from pathlib import Path
from typing import Callable

import pytest
from fastapi.testclient import TestClient

BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

from careflow_core import CollaboratorHooks, FlowOrchestrator  # noqa: E402
from careflow_core.demo_catalog import demo_catalog  # noqa: E402
from careflow_core.hooks import FLOW_EVENTS, FlowEvent  # noqa: E402
from flow_store import SQLiteFlowDB  # noqa: E402

INTAKE_FORM = {
    "full_name": "Ada Patient",
    "date_of_birth": "1990-04-01",
    "current_weight": "82",
    "allergies": "none",
}


@pytest.fixture
def backend_module(tmp_path, monkeypatch):
    db_path = tmp_path / "careflow-test.sqlite"
    monkeypatch.setenv("CAREFLOW_DB_PATH", str(db_path))
    monkeypatch.setenv("ALLOW_ANON", "false")
    monkeypatch.delenv("CAREFLOW_CATALOG_PATH", raising=False)
    monkeypatch.delenv("CAREFLOW_DIGEST_SALT", raising=False)
    for event_name in FLOW_EVENTS:
        monkeypatch.delenv(f"CAREFLOW_{event_name.upper()}_URL", raising=False)

    if "main" in sys.modules:
        module = importlib.reload(sys.modules["main"])
    else:
        module = importlib.import_module("main")
    return module


@pytest.fixture
def client(backend_module):
    with TestClient(backend_module.app) as test_client:
        yield test_client


@pytest.fixture
def auth_headers() -> Callable[[str], dict[str, str]]:
    def _make(actor_id: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {actor_id}"}

    return _make


@pytest.fixture
def db(tmp_path) -> SQLiteFlowDB:
    return SQLiteFlowDB(str(tmp_path / "flows.sqlite"))


@pytest.fixture
def catalog():
    return demo_catalog()


@pytest.fixture
def emitted_events() -> list[FlowEvent]:
    return []


@pytest.fixture
def hooks(emitted_events) -> CollaboratorHooks:
    collaborators = CollaboratorHooks()

    def _recording_handler(prefix: str):
        def _handle(event: FlowEvent) -> str:
            emitted_events.append(event)
            return f"{prefix}-{event.flow_id[-6:]}-{len(emitted_events)}"

        return _handle

    for event_name in sorted(FLOW_EVENTS):
        collaborators.register(event_name, _recording_handler(event_name.split("_")[0]))
    return collaborators


@pytest.fixture
def orchestrator(db, catalog, hooks) -> FlowOrchestrator:
    return FlowOrchestrator(db=db, catalog=catalog, hooks=hooks, retry_backoff_seconds=0)


@pytest.fixture
def intake_form() -> dict[str, str]:
    return dict(INTAKE_FORM)
