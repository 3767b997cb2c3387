from __future__ import annotations

import hashlib
import json
import logging
import os
import re
from pathlib import Path
from typing import Any, Iterator

from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from careflow_core import CatalogReadModel, CollaboratorHooks, FlowOrchestrator
from careflow_core.audit import AuditTrail
from careflow_core.demo_catalog import demo_catalog
from careflow_core.errors import ConfigurationError, FlowError
from careflow_core.hooks import (
    CONSULTATION_REQUESTED,
    INTAKE_RECORDED,
    INVOICE_REQUESTED,
    ORDER_REQUESTED,
    PATIENT_LINK_REQUESTED,
    http_reference_handler,
    local_reference_handler,
)
from careflow_core.models import Flow
from flow_store import PayloadDigester, SQLiteFlowDB
from flow_store.time_utils import to_iso, utc_now

_ENV_KEY_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _load_local_env_file(path: Path) -> None:
    try:
        lines = path.read_text(encoding="utf-8").splitlines()
    except OSError:
        return
    for raw in lines:
        line = raw.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        if not _ENV_KEY_RE.fullmatch(key):
            continue
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in {"'", '"'}:
            value = value[1:-1]
        os.environ.setdefault(key, value)


def _bootstrap_local_env() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    for candidate in (repo_root / ".env", repo_root / "backend/.env"):
        if candidate.exists():
            _load_local_env_file(candidate)


_bootstrap_local_env()

logging.basicConfig(
    level=os.getenv("CAREFLOW_LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("ignoring non-integer %s=%r; using %s", name, raw, default)
        return default


_COLLABORATOR_PREFIXES = {
    PATIENT_LINK_REQUESTED: "pat",
    INTAKE_RECORDED: "form",
    ORDER_REQUESTED: "ord",
    CONSULTATION_REQUESTED: "cons",
    INVOICE_REQUESTED: "inv",
}


def _collaborator_handler(event_name: str, prefix: str):
    # e.g. CAREFLOW_ORDER_REQUESTED_URL=https://orders.internal/api/flow-events
    url = (os.getenv(f"CAREFLOW_{event_name.upper()}_URL") or "").strip()
    if not url:
        return local_reference_handler(prefix)
    timeout_seconds = float(_env_int("CAREFLOW_COLLABORATOR_TIMEOUT_SECONDS", 10))
    logger.info("routing %s to %s", event_name, url)
    return http_reference_handler(
        url,
        token=os.getenv("CAREFLOW_COLLABORATOR_TOKEN") or None,
        timeout_seconds=timeout_seconds,
    )


class FlowCreateRequest(BaseModel):
    category_id: str
    patient_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class ProductSelectionRequest(BaseModel):
    product_id: str
    subscription_duration_id: str | None = None
    patient_profile: dict[str, Any] | None = None


class SubscriptionRequest(BaseModel):
    subscription_duration_id: str | None = None


class IntakeSubmission(BaseModel):
    form_data: dict[str, Any] = Field(default_factory=dict)


class ConsultationOutcomeRequest(BaseModel):
    outcome: str
    notes: str | None = None


class CancelRequest(BaseModel):
    reason: str = "patient_request"


class RepriceRequest(BaseModel):
    reason: str


class CareFlowApp:
    def __init__(self) -> None:
        db_path = os.getenv(
            "CAREFLOW_DB_PATH",
            str((Path(__file__).resolve().parent / "careflow.sqlite")),
        )
        self.db = SQLiteFlowDB(db_path)
        self.catalog = self._load_catalog()
        self.digester = PayloadDigester(
            algorithm=os.getenv("CAREFLOW_DIGEST_ALGORITHM", "sha256"),
            salt=os.getenv("CAREFLOW_DIGEST_SALT") or None,
        )

        self.hooks = CollaboratorHooks()
        for event_name, prefix in _COLLABORATOR_PREFIXES.items():
            self.hooks.register(event_name, _collaborator_handler(event_name, prefix))

        self.orchestrator = FlowOrchestrator(
            db=self.db,
            catalog=self.catalog,
            hooks=self.hooks,
            audit=AuditTrail(self.db, self.digester),
            max_recommendations=_env_int("CAREFLOW_MAX_RECOMMENDATIONS", 3),
            persistence_max_attempts=_env_int("CAREFLOW_PERSISTENCE_MAX_ATTEMPTS", 3),
        )

    def _load_catalog(self) -> CatalogReadModel:
        catalog_path = os.getenv("CAREFLOW_CATALOG_PATH")
        if catalog_path:
            logger.info("loading catalog from %s", catalog_path)
            return CatalogReadModel.from_json_file(catalog_path)
        return demo_catalog()


container = CareFlowApp()
app = FastAPI(title="CareFlow Backend")

allowed_origins = os.getenv("ALLOWED_ORIGINS", "http://localhost:3000").split(",")
app.add_middleware(
    CORSMiddleware,
    allow_origins=[origin.strip() for origin in allowed_origins],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(FlowError)
async def flow_error_handler(request: Request, exc: FlowError) -> JSONResponse:
    if isinstance(exc, ConfigurationError):
        logger.error("configuration error on %s %s: %s", request.method, request.url.path, exc.message)
    elif not exc.user_facing:
        logger.warning("%s on %s %s: %s", exc.code, request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.http_status, content={"error": exc.as_error()})


_TRUSTED_ACTOR_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._:@-]{1,63}$")


def _validated_actor_id(x_actor_id: str) -> str:
    candidate = x_actor_id.strip()
    if not candidate or not _TRUSTED_ACTOR_ID_RE.fullmatch(candidate):
        raise HTTPException(status_code=400, detail="Invalid X-Actor-Id")
    return candidate


def get_actor_id(auth_header: str | None) -> str:
    raw = auth_header.replace("Bearer", "", 1).strip() if auth_header else ""
    if not raw:
        if os.getenv("ALLOW_ANON", "false").lower() == "true":
            return "anonymous"
        raise HTTPException(status_code=401, detail="Missing Authorization")
    # Bearer tokens are opaque; long ones are hashed so they never reach the audit log.
    if len(raw) > 96:
        return f"token_{hashlib.sha256(raw.encode('utf-8')).hexdigest()[:24]}"
    return raw


def resolve_actor_id(authorization: str | None, x_actor_id: str | None) -> str:
    if x_actor_id is not None:
        return _validated_actor_id(x_actor_id)
    return get_actor_id(authorization)


def _envelope(flow: Flow) -> dict[str, Any]:
    return container.orchestrator.snapshot(flow).as_envelope()


@app.get("/health")
def health():
    return {"ok": True, "db_path": container.db.path, "time": to_iso(utc_now())}


@app.post("/flows", status_code=201)
def create_flow(
    payload: FlowCreateRequest,
    authorization: str | None = Header(default=None),
    x_actor_id: str | None = Header(default=None),
):
    actor = resolve_actor_id(authorization, x_actor_id)
    flow = container.orchestrator.initialize_flow(
        payload.category_id,
        actor,
        patient_id=payload.patient_id,
        metadata=payload.metadata,
    )
    return _envelope(flow)


@app.get("/flows")
def list_flows(
    status: str | None = None,
    limit: int = 50,
    authorization: str | None = Header(default=None),
    x_actor_id: str | None = Header(default=None),
):
    resolve_actor_id(authorization, x_actor_id)
    return {"items": [_envelope(flow) for flow in container.orchestrator.list_flows(status=status, limit=limit)]}


@app.get("/flows/{flow_id}")
def get_flow(
    flow_id: str,
    authorization: str | None = Header(default=None),
    x_actor_id: str | None = Header(default=None),
):
    resolve_actor_id(authorization, x_actor_id)
    return container.orchestrator.get_status(flow_id).as_envelope()


@app.post("/flows/{flow_id}/product")
def select_product(
    flow_id: str,
    payload: ProductSelectionRequest,
    authorization: str | None = Header(default=None),
    x_actor_id: str | None = Header(default=None),
):
    actor = resolve_actor_id(authorization, x_actor_id)
    flow = container.orchestrator.select_product(
        flow_id,
        payload.product_id,
        payload.subscription_duration_id,
        actor,
        patient_profile=payload.patient_profile,
    )
    body = _envelope(flow)
    body["recommendations"] = [c.to_dict() for c in container.orchestrator.list_recommendations(flow_id)]
    return body


@app.post("/flows/{flow_id}/subscription")
def configure_subscription(
    flow_id: str,
    payload: SubscriptionRequest,
    authorization: str | None = Header(default=None),
    x_actor_id: str | None = Header(default=None),
):
    actor = resolve_actor_id(authorization, x_actor_id)
    return _envelope(container.orchestrator.configure_subscription(flow_id, payload.subscription_duration_id, actor))


@app.post("/flows/{flow_id}/intake/start")
def start_intake(
    flow_id: str,
    authorization: str | None = Header(default=None),
    x_actor_id: str | None = Header(default=None),
):
    actor = resolve_actor_id(authorization, x_actor_id)
    return _envelope(container.orchestrator.start_intake(flow_id, actor))


@app.post("/flows/{flow_id}/intake")
def submit_intake(
    flow_id: str,
    payload: IntakeSubmission,
    authorization: str | None = Header(default=None),
    x_actor_id: str | None = Header(default=None),
):
    actor = resolve_actor_id(authorization, x_actor_id)
    return _envelope(container.orchestrator.submit_intake(flow_id, payload.form_data, actor))


@app.post("/flows/{flow_id}/consultation")
def request_consultation(
    flow_id: str,
    authorization: str | None = Header(default=None),
    x_actor_id: str | None = Header(default=None),
):
    actor = resolve_actor_id(authorization, x_actor_id)
    return _envelope(container.orchestrator.request_consultation(flow_id, actor))


@app.post("/flows/{flow_id}/consultation/outcome")
def record_consultation_outcome(
    flow_id: str,
    payload: ConsultationOutcomeRequest,
    authorization: str | None = Header(default=None),
    x_actor_id: str | None = Header(default=None),
):
    actor = resolve_actor_id(authorization, x_actor_id)
    flow = container.orchestrator.record_consultation_outcome(flow_id, payload.outcome, actor, notes=payload.notes)
    return _envelope(flow)


@app.post("/flows/{flow_id}/subscription/activate")
def activate_subscription(
    flow_id: str,
    authorization: str | None = Header(default=None),
    x_actor_id: str | None = Header(default=None),
):
    actor = resolve_actor_id(authorization, x_actor_id)
    return _envelope(container.orchestrator.activate_subscription(flow_id, actor))


@app.post("/flows/{flow_id}/fulfillment")
def mark_fulfilled(
    flow_id: str,
    authorization: str | None = Header(default=None),
    x_actor_id: str | None = Header(default=None),
):
    actor = resolve_actor_id(authorization, x_actor_id)
    return _envelope(container.orchestrator.mark_fulfilled(flow_id, actor))


@app.post("/flows/{flow_id}/complete")
def complete_flow(
    flow_id: str,
    authorization: str | None = Header(default=None),
    x_actor_id: str | None = Header(default=None),
):
    actor = resolve_actor_id(authorization, x_actor_id)
    return _envelope(container.orchestrator.complete_flow(flow_id, actor))


@app.post("/flows/{flow_id}/cancel")
def cancel_flow(
    flow_id: str,
    payload: CancelRequest | None = None,
    authorization: str | None = Header(default=None),
    x_actor_id: str | None = Header(default=None),
):
    actor = resolve_actor_id(authorization, x_actor_id)
    reason = (payload or CancelRequest()).reason
    return _envelope(container.orchestrator.cancel(flow_id, reason, actor))


@app.post("/flows/{flow_id}/reprice")
def reprice_flow(
    flow_id: str,
    payload: RepriceRequest,
    authorization: str | None = Header(default=None),
    x_actor_id: str | None = Header(default=None),
):
    actor = resolve_actor_id(authorization, x_actor_id)
    return _envelope(container.orchestrator.reprice(flow_id, payload.reason, actor))


@app.get("/flows/{flow_id}/recommendations")
def list_recommendations(
    flow_id: str,
    authorization: str | None = Header(default=None),
    x_actor_id: str | None = Header(default=None),
):
    resolve_actor_id(authorization, x_actor_id)
    return {"items": [c.to_dict() for c in container.orchestrator.list_recommendations(flow_id)]}


@app.post("/flows/{flow_id}/recommendations/{candidate_id}/accept")
def accept_recommendation(
    flow_id: str,
    candidate_id: str,
    authorization: str | None = Header(default=None),
    x_actor_id: str | None = Header(default=None),
):
    actor = resolve_actor_id(authorization, x_actor_id)
    return container.orchestrator.accept_recommendation(flow_id, candidate_id, actor).to_dict()


@app.post("/flows/{flow_id}/recommendations/{candidate_id}/reject")
def reject_recommendation(
    flow_id: str,
    candidate_id: str,
    authorization: str | None = Header(default=None),
    x_actor_id: str | None = Header(default=None),
):
    actor = resolve_actor_id(authorization, x_actor_id)
    return container.orchestrator.reject_recommendation(flow_id, candidate_id, actor).to_dict()


@app.get("/flows/{flow_id}/audit")
def export_audit(
    flow_id: str,
    authorization: str | None = Header(default=None),
    x_actor_id: str | None = Header(default=None),
):
    resolve_actor_id(authorization, x_actor_id)
    # Load eagerly so a missing flow is a 404, not a broken stream.
    entries = container.orchestrator.export_audit(flow_id)

    def ndjson_stream() -> Iterator[str]:
        for entry in entries:
            yield json.dumps(entry, sort_keys=True) + "\n"

    return StreamingResponse(ndjson_stream(), media_type="application/x-ndjson")
