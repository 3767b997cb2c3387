from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable

import httpx

from .errors import CollaboratorUnavailable, ConfigurationError

logger = logging.getLogger(__name__)

PATIENT_LINK_REQUESTED = "patient_link_requested"
INTAKE_RECORDED = "intake_recorded"
ORDER_REQUESTED = "order_requested"
CONSULTATION_REQUESTED = "consultation_requested"
INVOICE_REQUESTED = "invoice_requested"

FLOW_EVENTS = {
    PATIENT_LINK_REQUESTED,
    INTAKE_RECORDED,
    ORDER_REQUESTED,
    CONSULTATION_REQUESTED,
    INVOICE_REQUESTED,
}


@dataclass(frozen=True)
class FlowEvent:
    name: str
    flow_id: str
    payload: dict[str, Any] = field(default_factory=dict)


EventHandler = Callable[[FlowEvent], str]
EventObserver = Callable[[FlowEvent, str], None]


def local_reference_handler(prefix: str) -> EventHandler:
    """Handler that only mints an id, for running without downstream subsystems."""

    def _handle(event: FlowEvent) -> str:
        return f"{prefix}_{uuid.uuid4().hex}"

    return _handle


def _collaborator_error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        err = payload.get("error")
        if isinstance(err, dict) and isinstance(err.get("message"), str):
            return err["message"].strip()
        if isinstance(payload.get("message"), str):
            return payload["message"].strip()
    return response.text.strip() or f"HTTP {response.status_code}"


def http_reference_handler(
    url: str,
    *,
    token: str | None = None,
    timeout_seconds: float = 10.0,
    transport: httpx.BaseTransport | None = None,
) -> EventHandler:
    """Handler that POSTs the event to a downstream subsystem and reads back its reference id.

    The subsystem answers with ``{"reference_id": ...}`` (``id`` is accepted too).
    """

    def _handle(event: FlowEvent) -> str:
        headers = {"Content-Type": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        idempotency_key = event.payload.get("idempotency_key")
        if idempotency_key:
            headers["Idempotency-Key"] = str(idempotency_key)
        body = {"event": event.name, "flow_id": event.flow_id, "payload": event.payload}
        with httpx.Client(timeout=httpx.Timeout(timeout_seconds, connect=5.0), transport=transport) as client:
            response = client.post(url, headers=headers, json=body)
        if response.status_code >= 400:
            raise RuntimeError(_collaborator_error_message(response))
        data = response.json()
        reference_id = None
        if isinstance(data, dict):
            reference_id = data.get("reference_id") or data.get("id")
        if not isinstance(reference_id, str):
            raise RuntimeError(f"{event.name} collaborator response has no reference id")
        return reference_id

    return _handle


class CollaboratorHooks:
    """Fire-and-confirm calls to the patient, order, consultation and invoice subsystems.

    Each event has exactly one handler, which returns the reference id the flow
    stores. Observers see the event after the flow change is committed.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, EventHandler] = {}
        self._observers: list[EventObserver] = []

    def register(self, event_name: str, handler: EventHandler) -> None:
        if event_name not in FLOW_EVENTS:
            raise ValueError(f"Unknown flow event: {event_name}")
        self._handlers[event_name] = handler

    def add_observer(self, observer: EventObserver) -> None:
        self._observers.append(observer)

    def request(self, event: FlowEvent) -> str:
        handler = self._handlers.get(event.name)
        if handler is None:
            raise ConfigurationError(f"No collaborator registered for {event.name}")
        try:
            reference_id = handler(event)
        except Exception as exc:
            logger.warning("collaborator for %s failed on flow %s: %s", event.name, event.flow_id, exc)
            raise CollaboratorUnavailable(f"{event.name} collaborator failed", event=event.name) from exc
        if not isinstance(reference_id, str) or not reference_id.strip():
            raise CollaboratorUnavailable(f"{event.name} collaborator returned no reference id", event=event.name)
        return reference_id

    def notify(self, event: FlowEvent, reference_id: str) -> None:
        for observer in self._observers:
            try:
                observer(event, reference_id)
            except Exception:
                # The transition is already committed; an observer cannot undo it.
                logger.exception("observer failed for %s on flow %s", event.name, event.flow_id)
