from __future__ import annotations

import logging
import sqlite3
import time
import uuid
from datetime import datetime
from typing import Any, Callable, Mapping, TypeVar

from flow_store.database import SQLiteFlowDB
from flow_store.flow_repository import FlowRepository, StaleWriteError
from flow_store.time_utils import to_iso, utc_now

from .audit import AuditTrail, transition_key
from .catalog import CatalogReadModel, Product
from .errors import (
    CandidateAlreadyResolved,
    CandidateNotFound,
    ComputationError,
    ConcurrentModification,
    ConfigurationError,
    FlowError,
    FlowNotFound,
    FlowNotPending,
    FlowNotReady,
    IncompleteForm,
    InvalidCategory,
    InvalidConsultationOutcome,
    InvalidSubscriptionDuration,
    InvalidTransition,
    PatientMismatch,
    PersistenceError,
    ProductInactive,
    ProductNotInCategory,
    RepricingLocked,
    ValidationFailed,
)
from .forms import FormRequirementResolver
from .hooks import (
    CONSULTATION_REQUESTED,
    INTAKE_RECORDED,
    INVOICE_REQUESTED,
    ORDER_REQUESTED,
    PATIENT_LINK_REQUESTED,
    CollaboratorHooks,
    FlowEvent,
)
from .lifecycle import FlowLifecycle
from .locks import FlowLockManager
from .models import (
    CANCELLED,
    CATEGORY_SELECTED,
    COMPLETED,
    CONSULTATION_APPROVED,
    CONSULTATION_OUTCOMES,
    CONSULTATION_PENDING,
    CONSULTATION_REJECTED,
    INTAKE_COMPLETED,
    INTAKE_STARTED,
    INVOICE_GENERATED,
    ORDER_CREATED,
    ORDER_FULFILLED,
    PRODUCT_SELECTED,
    SUBSCRIPTION_ACTIVE,
    SUBSCRIPTION_CONFIGURED,
    AuditEntry,
    Flow,
    FlowSnapshot,
    FormRequirement,
    PricingSnapshot,
    RecommendationCandidate,
)
from .pricing import PricingEngine
from .recommendations import RecommendationEngine

logger = logging.getLogger(__name__)

T = TypeVar("T")

REPRICEABLE_STATES = {PRODUCT_SELECTED, SUBSCRIPTION_CONFIGURED, INTAKE_STARTED}
INTAKE_ENTRY_STATES = {SUBSCRIPTION_CONFIGURED, INTAKE_STARTED}


def _flow_to_record(flow: Flow) -> dict[str, Any]:
    return {
        "id": flow.flow_id,
        "patient_id": flow.patient_id,
        "category_id": flow.category_id,
        "product_id": flow.product_id,
        "subscription_duration_id": flow.subscription_duration_id,
        "status": flow.status,
        "pricing_snapshot": flow.pricing_snapshot.to_dict() if flow.pricing_snapshot else None,
        "form_requirement": flow.form_requirement.to_dict() if flow.form_requirement else None,
        "form_submission_id": flow.form_submission_id,
        "order_id": flow.order_id,
        "consultation_id": flow.consultation_id,
        "invoice_id": flow.invoice_id,
        "metadata": flow.metadata,
        "version": flow.version,
        "started_at": flow.started_at,
        "completed_at": flow.completed_at,
        "updated_at": flow.updated_at,
    }


def _flow_from_record(record: dict[str, Any]) -> Flow:
    snapshot = record.get("pricing_snapshot")
    requirement = record.get("form_requirement")
    return Flow(
        flow_id=record["id"],
        patient_id=record.get("patient_id"),
        category_id=record["category_id"],
        product_id=record.get("product_id"),
        subscription_duration_id=record.get("subscription_duration_id"),
        status=record["status"],
        pricing_snapshot=PricingSnapshot.from_dict(snapshot) if snapshot else None,
        form_requirement=FormRequirement.from_dict(requirement) if requirement else None,
        form_submission_id=record.get("form_submission_id"),
        order_id=record.get("order_id"),
        consultation_id=record.get("consultation_id"),
        invoice_id=record.get("invoice_id"),
        metadata=dict(record.get("metadata") or {}),
        version=int(record.get("version") or 1),
        started_at=record["started_at"],
        completed_at=record.get("completed_at"),
        updated_at=record["updated_at"],
    )


class FlowOrchestrator:
    """Drives a patient flow from category selection to completion.

    Every mutating operation holds the flow's try-lock, loads the flow, checks
    the transition, runs the pure collaborators, and then writes the new flow
    state together with its audit entries in a single SQLite transaction.
    """

    def __init__(
        self,
        *,
        db: SQLiteFlowDB,
        catalog: CatalogReadModel,
        hooks: CollaboratorHooks,
        audit: AuditTrail | None = None,
        pricing: PricingEngine | None = None,
        recommendations: RecommendationEngine | None = None,
        locks: FlowLockManager | None = None,
        max_recommendations: int = 3,
        persistence_max_attempts: int = 3,
        retry_backoff_seconds: float = 0.05,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.db = db
        self.catalog = catalog
        self.hooks = hooks
        self.audit = audit or AuditTrail(db)
        self.pricing = pricing or PricingEngine()
        self.recommendations = recommendations or RecommendationEngine()
        self.locks = locks or FlowLockManager()
        self.lifecycle = FlowLifecycle()
        self.repository = FlowRepository(db)
        self.max_recommendations = max_recommendations
        self.persistence_max_attempts = max(1, persistence_max_attempts)
        self.retry_backoff_seconds = retry_backoff_seconds
        self._clock = clock

    # Persistence

    def _now(self) -> str:
        return to_iso(self._clock())

    def _with_retry(self, operation: Callable[[], T], *, flow_id: str | None) -> T:
        attempt = 0
        while True:
            attempt += 1
            try:
                return operation()
            except StaleWriteError as exc:
                raise ConcurrentModification(str(exc), flow_id=flow_id) from exc
            except sqlite3.IntegrityError as exc:
                # Unique idempotency key: this transition was already applied.
                raise ConcurrentModification(
                    f"Flow {flow_id} transition was already applied by another request.", flow_id=flow_id
                ) from exc
            except sqlite3.OperationalError as exc:
                if attempt >= self.persistence_max_attempts:
                    logger.error("persistence failed for flow %s after %s attempts: %s", flow_id, attempt, exc)
                    raise PersistenceError(f"Persistence failed after {attempt} attempts", flow_id=flow_id) from exc
                logger.warning("persistence attempt %s failed for flow %s: %s; retrying", attempt, flow_id, exc)
                time.sleep(self.retry_backoff_seconds * attempt)
            except sqlite3.Error as exc:
                raise PersistenceError("Persistence failed", flow_id=flow_id) from exc

    def _load(self, flow_id: str) -> Flow:
        record = self._with_retry(lambda: self.repository.get_flow(flow_id), flow_id=flow_id)
        if record is None:
            raise FlowNotFound(f"Flow {flow_id} does not exist.", flow_id=flow_id)
        return _flow_from_record(record)

    def _commit(
        self,
        before: Flow,
        after: Flow,
        steps: list[tuple[str, str]],
        actor: str,
        payload: dict[str, Any],
        *,
        candidates: list[RecommendationCandidate] | None = None,
        idempotency_key: str | None = None,
    ) -> Flow:
        record = _flow_to_record(after)

        def _write() -> int:
            with self.db.connection() as conn:
                version = self.repository.update_flow(conn, record, expected_version=before.version)
                for from_status, to_status in steps:
                    self.audit.append(
                        before.flow_id,
                        from_status,
                        to_status,
                        actor,
                        payload,
                        conn=conn,
                        idempotency_key=idempotency_key,
                    )
                if candidates:
                    self.repository.insert_candidates(conn, [candidate.to_dict() for candidate in candidates])
                return version

        new_version = self._with_retry(_write, flow_id=before.flow_id)
        committed = after.copy(version=new_version)
        for from_status, to_status in steps:
            logger.info("flow %s %s -> %s by %s", committed.flow_id, from_status, to_status, actor)
        return committed

    # Pure collaborators

    def _price(self, product: Product, duration_id: str | None, *, reason: str) -> PricingSnapshot:
        now = self._clock()
        try:
            result = self.pricing.compute_price(
                product.product_id,
                product.base_price,
                duration_id,
                self.catalog.pricing_rules(),
                category_id=product.category_id,
                now=now,
                currency=product.currency,
            )
        except FlowError:
            raise
        except Exception as exc:
            logger.exception("pricing failed for product %s", product.product_id)
            raise ComputationError("Pricing failed", product_id=product.product_id) from exc
        if result.clamped_to_zero:
            logger.warning("price for product %s clamped to zero by rules %s", product.product_id, result.applied_rule_ids)
        return PricingSnapshot.from_result(result, frozen_at=to_iso(now), reason=reason)

    def _recommend(
        self, flow: Flow, product: Product, patient_profile: Mapping[str, Any] | None
    ) -> list[RecommendationCandidate]:
        try:
            return self.recommendations.recommend(
                flow.category_id,
                patient_profile,
                self.catalog.products(),
                self.max_recommendations,
                flow_id=flow.flow_id,
                presented_at=self._now(),
                exclude_product_ids=[product.product_id],
            )
        except FlowError:
            raise
        except Exception as exc:
            logger.exception("recommendation scoring failed for flow %s", flow.flow_id)
            raise ComputationError("Recommendations failed", flow_id=flow.flow_id) from exc

    def _form_resolver(self) -> FormRequirementResolver:
        return FormRequirementResolver(
            self.catalog.form_templates,
            self.catalog.category_form_mappings,
            self.catalog.product_form_mappings,
        )

    def _resolve_form(self, category_id: str, product_id: str | None) -> FormRequirement:
        try:
            return self._form_resolver().resolve(category_id, product_id)
        except ConfigurationError:
            logger.error("form mapping for %s/%s is malformed", category_id, product_id)
            raise

    def _product_for(self, flow: Flow) -> Product:
        product = self.catalog.get_product(flow.product_id or "")
        if product is None or not product.active:
            raise ProductInactive(f"Product {flow.product_id} is no longer available.", product_id=flow.product_id)
        return product

    def _validate_duration(self, product: Product, duration_id: str) -> None:
        duration = self.catalog.get_duration(duration_id)
        if duration is None or not duration.active or duration_id not in product.subscription_duration_ids:
            raise InvalidSubscriptionDuration(
                f"Subscription duration {duration_id} is not offered for product {product.product_id}.",
                product_id=product.product_id,
                subscription_duration_id=duration_id,
            )

    # Operations

    def initialize_flow(
        self,
        category_id: str,
        actor: str,
        *,
        patient_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Flow:
        category = self.catalog.get_category(category_id)
        if category is None or not category.active:
            raise InvalidCategory(f"Category {category_id} is not available.", category_id=category_id)

        now = self._now()
        flow = Flow(
            flow_id=f"flow_{uuid.uuid4().hex}",
            patient_id=patient_id,
            category_id=category_id,
            status=CATEGORY_SELECTED,
            started_at=now,
            updated_at=now,
            metadata={**(metadata or {}), "category_name": category.name},
        )
        payload = {"action": "initialize_flow", "category_id": category_id, "patient_id": patient_id}

        def _write() -> None:
            with self.db.connection() as conn:
                self.repository.insert_flow(conn, _flow_to_record(flow))
                self.audit.append(flow.flow_id, None, CATEGORY_SELECTED, actor, payload, conn=conn)

        self._with_retry(_write, flow_id=flow.flow_id)
        logger.info("flow %s initialized in category %s by %s", flow.flow_id, category_id, actor)
        return flow

    def select_product(
        self,
        flow_id: str,
        product_id: str,
        subscription_duration_id: str | None = None,
        actor: str = "system",
        *,
        patient_profile: Mapping[str, Any] | None = None,
    ) -> Flow:
        with self.locks.hold(flow_id):
            flow = self._load(flow_id)
            self.lifecycle.assert_transition(flow.status, PRODUCT_SELECTED)

            product = self.catalog.get_product(product_id)
            if product is None or product.category_id != flow.category_id:
                raise ProductNotInCategory(
                    f"Product {product_id} is not offered in category {flow.category_id}.",
                    product_id=product_id,
                    category_id=flow.category_id,
                )
            if not product.active:
                raise ProductInactive(f"Product {product_id} is not active.", product_id=product_id)
            if subscription_duration_id:
                self._validate_duration(product, subscription_duration_id)

            snapshot = self._price(product, subscription_duration_id, reason="product_selected")
            candidates = self._recommend(flow, product, patient_profile)
            requirement = self._resolve_form(flow.category_id, product_id)

            targets = [PRODUCT_SELECTED]
            if subscription_duration_id or not product.offers_subscription:
                targets.append(SUBSCRIPTION_CONFIGURED)
            steps = self.lifecycle.path(flow.status, *targets)

            metadata = dict(flow.metadata)
            metadata["product_name"] = product.name
            updated = flow.copy(
                product_id=product_id,
                subscription_duration_id=subscription_duration_id or None,
                status=targets[-1],
                pricing_snapshot=snapshot,
                form_requirement=requirement,
                metadata=metadata,
                updated_at=self._now(),
            )
            payload = {
                "action": "select_product",
                "product_id": product_id,
                "subscription_duration_id": subscription_duration_id,
                "pricing_snapshot": snapshot.to_dict(),
                "form_template_id": requirement.form_template_id,
            }
            return self._commit(flow, updated, steps, actor, payload, candidates=candidates)

    def configure_subscription(self, flow_id: str, subscription_duration_id: str | None, actor: str) -> Flow:
        with self.locks.hold(flow_id):
            flow = self._load(flow_id)
            steps = self.lifecycle.path(flow.status, SUBSCRIPTION_CONFIGURED)
            product = self._product_for(flow)

            snapshot = flow.pricing_snapshot
            metadata = dict(flow.metadata)
            if subscription_duration_id:
                self._validate_duration(product, subscription_duration_id)
                snapshot = self._price(product, subscription_duration_id, reason="subscription_configured")
                history = list(metadata.get("pricing_history") or [])
                if flow.pricing_snapshot:
                    history.append(flow.pricing_snapshot.to_dict())
                metadata["pricing_history"] = history

            updated = flow.copy(
                subscription_duration_id=subscription_duration_id or None,
                status=SUBSCRIPTION_CONFIGURED,
                pricing_snapshot=snapshot,
                metadata=metadata,
                updated_at=self._now(),
            )
            payload = {
                "action": "configure_subscription",
                "subscription_duration_id": subscription_duration_id,
                "pricing_snapshot": snapshot.to_dict() if snapshot else None,
            }
            return self._commit(flow, updated, steps, actor, payload)

    def start_intake(self, flow_id: str, actor: str) -> Flow:
        with self.locks.hold(flow_id):
            flow = self._load(flow_id)
            steps = self.lifecycle.path(flow.status, INTAKE_STARTED)
            updated = flow.copy(status=INTAKE_STARTED, updated_at=self._now())
            payload = {
                "action": "start_intake",
                "form_template_id": flow.form_requirement.form_template_id if flow.form_requirement else None,
            }
            return self._commit(flow, updated, steps, actor, payload)

    def submit_intake(self, flow_id: str, form_data: Mapping[str, Any], actor: str) -> Flow:
        with self.locks.hold(flow_id):
            flow = self._load(flow_id)
            if flow.status not in INTAKE_ENTRY_STATES:
                raise FlowNotReady(
                    f"Flow {flow_id} cannot accept an intake form in status {flow.status}.",
                    flow_id=flow_id,
                    status=flow.status,
                )
            requirement = flow.form_requirement or self._resolve_form(flow.category_id, flow.product_id)
            missing = self._form_resolver().missing_fields(requirement, form_data)
            if missing:
                raise IncompleteForm(missing)

            targets = [INTAKE_COMPLETED, ORDER_CREATED]
            if flow.status != INTAKE_STARTED:
                targets.insert(0, INTAKE_STARTED)
            steps = self.lifecycle.path(flow.status, *targets)

            patient_id = self._link_patient(flow, form_data)
            form_submission_id = self.hooks.request(
                FlowEvent(
                    INTAKE_RECORDED,
                    flow_id,
                    {
                        "flow_id": flow_id,
                        "patient_id": patient_id,
                        "form_template_id": requirement.form_template_id,
                        "form_data": dict(form_data),
                        "idempotency_key": transition_key(flow_id, INTAKE_COMPLETED),
                    },
                )
            )
            order_event = FlowEvent(
                ORDER_REQUESTED,
                flow_id,
                {
                    "flow_id": flow_id,
                    "patient_id": patient_id,
                    "product_id": flow.product_id,
                    "pricing_snapshot": flow.pricing_snapshot.to_dict() if flow.pricing_snapshot else None,
                    "idempotency_key": transition_key(flow_id, ORDER_CREATED),
                },
            )
            order_id = self.hooks.request(order_event)

            updated = flow.copy(
                patient_id=patient_id,
                status=ORDER_CREATED,
                form_requirement=requirement,
                form_submission_id=form_submission_id,
                order_id=order_id,
                updated_at=self._now(),
            )
            payload = {
                "action": "submit_intake",
                "form_data": dict(form_data),
                "patient_id": patient_id,
                "form_submission_id": form_submission_id,
                "order_id": order_id,
            }
            committed = self._commit(flow, updated, steps, actor, payload)
        self.hooks.notify(order_event, order_id)
        return committed

    def _link_patient(self, flow: Flow, form_data: Mapping[str, Any]) -> str:
        supplied = form_data.get("patient_id")
        supplied = str(supplied).strip() if supplied else None
        if flow.patient_id:
            if supplied and supplied != flow.patient_id:
                raise PatientMismatch(
                    "The intake form belongs to a different patient than this flow.",
                    flow_id=flow.flow_id,
                )
            return flow.patient_id
        if supplied:
            return supplied
        return self.hooks.request(
            FlowEvent(
                PATIENT_LINK_REQUESTED,
                flow.flow_id,
                {
                    "flow_id": flow.flow_id,
                    "category_id": flow.category_id,
                    "idempotency_key": transition_key(flow.flow_id, "patient_linked"),
                },
            )
        )

    def request_consultation(self, flow_id: str, actor: str) -> Flow:
        with self.locks.hold(flow_id):
            flow = self._load(flow_id)
            steps = self.lifecycle.path(flow.status, CONSULTATION_PENDING)
            event = FlowEvent(
                CONSULTATION_REQUESTED,
                flow_id,
                {
                    "flow_id": flow_id,
                    "patient_id": flow.patient_id,
                    "product_id": flow.product_id,
                    "order_id": flow.order_id,
                    "form_submission_id": flow.form_submission_id,
                    "idempotency_key": transition_key(flow_id, CONSULTATION_PENDING),
                },
            )
            consultation_id = self.hooks.request(event)
            updated = flow.copy(status=CONSULTATION_PENDING, consultation_id=consultation_id, updated_at=self._now())
            payload = {"action": "request_consultation", "consultation_id": consultation_id}
            committed = self._commit(flow, updated, steps, actor, payload)
        self.hooks.notify(event, consultation_id)
        return committed

    def record_consultation_outcome(
        self,
        flow_id: str,
        outcome: str,
        actor: str,
        *,
        notes: str | None = None,
    ) -> Flow:
        normalized = (outcome or "").strip().lower()
        if normalized not in CONSULTATION_OUTCOMES:
            raise InvalidConsultationOutcome(
                f"Consultation outcome must be one of: {', '.join(sorted(CONSULTATION_OUTCOMES))}.",
                outcome=outcome,
            )
        with self.locks.hold(flow_id):
            flow = self._load(flow_id)
            if flow.status != CONSULTATION_PENDING:
                raise FlowNotPending(
                    f"Flow {flow_id} is not awaiting a consultation outcome (status {flow.status}).",
                    flow_id=flow_id,
                    status=flow.status,
                )
            payload = {"action": "record_consultation_outcome", "outcome": normalized, "notes": notes}

            if normalized == "rejected":
                steps = self.lifecycle.path(flow.status, CONSULTATION_REJECTED, CANCELLED)
                metadata = dict(flow.metadata)
                metadata["cancellation"] = {"reason": "consultation_rejected", "from_status": CONSULTATION_REJECTED}
                updated = flow.copy(status=CANCELLED, metadata=metadata, updated_at=self._now())
                return self._commit(flow, updated, steps, actor, payload)

            steps = self.lifecycle.path(flow.status, CONSULTATION_APPROVED, INVOICE_GENERATED)
            event = FlowEvent(
                INVOICE_REQUESTED,
                flow_id,
                {
                    "flow_id": flow_id,
                    "order_id": flow.order_id,
                    "patient_id": flow.patient_id,
                    # The frozen snapshot, never a fresh computation.
                    "pricing_snapshot": flow.pricing_snapshot.to_dict() if flow.pricing_snapshot else None,
                    "idempotency_key": transition_key(flow_id, INVOICE_GENERATED),
                },
            )
            invoice_id = self.hooks.request(event)
            updated = flow.copy(status=INVOICE_GENERATED, invoice_id=invoice_id, updated_at=self._now())
            payload["invoice_id"] = invoice_id
            committed = self._commit(flow, updated, steps, actor, payload)
        self.hooks.notify(event, invoice_id)
        return committed

    def activate_subscription(self, flow_id: str, actor: str) -> Flow:
        with self.locks.hold(flow_id):
            flow = self._load(flow_id)
            if not flow.subscription_duration_id or flow.status != INVOICE_GENERATED:
                raise InvalidTransition(flow.status, SUBSCRIPTION_ACTIVE)
            steps = self.lifecycle.path(flow.status, SUBSCRIPTION_ACTIVE)
            updated = flow.copy(status=SUBSCRIPTION_ACTIVE, updated_at=self._now())
            payload = {"action": "activate_subscription", "subscription_duration_id": flow.subscription_duration_id}
            return self._commit(flow, updated, steps, actor, payload)

    def mark_fulfilled(self, flow_id: str, actor: str) -> Flow:
        with self.locks.hold(flow_id):
            flow = self._load(flow_id)
            required = SUBSCRIPTION_ACTIVE if flow.subscription_duration_id else INVOICE_GENERATED
            if flow.status != required:
                raise InvalidTransition(flow.status, ORDER_FULFILLED)
            steps = self.lifecycle.path(flow.status, ORDER_FULFILLED)
            updated = flow.copy(status=ORDER_FULFILLED, updated_at=self._now())
            payload = {"action": "mark_fulfilled", "order_id": flow.order_id}
            return self._commit(flow, updated, steps, actor, payload)

    def complete_flow(self, flow_id: str, actor: str) -> Flow:
        with self.locks.hold(flow_id):
            flow = self._load(flow_id)
            steps = self.lifecycle.path(flow.status, COMPLETED)
            now = self._now()
            updated = flow.copy(status=COMPLETED, completed_at=now, updated_at=now)
            payload = {"action": "complete_flow"}
            return self._commit(flow, updated, steps, actor, payload)

    def cancel(self, flow_id: str, reason: str, actor: str) -> Flow:
        with self.locks.hold(flow_id):
            flow = self._load(flow_id)
            if flow.status == CANCELLED:
                logger.info("flow %s already cancelled; cancel by %s is a no-op", flow_id, actor)
                return flow
            steps = self.lifecycle.path(flow.status, CANCELLED)
            metadata = dict(flow.metadata)
            metadata["cancellation"] = {"reason": reason, "from_status": flow.status}
            updated = flow.copy(status=CANCELLED, metadata=metadata, updated_at=self._now())
            payload = {"action": "cancel", "reason": reason}
            return self._commit(flow, updated, steps, actor, payload)

    def reprice(self, flow_id: str, reason: str, actor: str) -> Flow:
        if not reason or not reason.strip():
            raise ValidationFailed("A reason is required to reprice a flow.", flow_id=flow_id)
        with self.locks.hold(flow_id):
            flow = self._load(flow_id)
            if flow.status not in REPRICEABLE_STATES:
                raise RepricingLocked(
                    f"Flow {flow_id} can no longer be repriced (status {flow.status}).",
                    flow_id=flow_id,
                    status=flow.status,
                )
            product = self._product_for(flow)
            snapshot = self._price(product, flow.subscription_duration_id, reason=reason.strip())
            metadata = dict(flow.metadata)
            history = list(metadata.get("pricing_history") or [])
            if flow.pricing_snapshot:
                history.append(flow.pricing_snapshot.to_dict())
            metadata["pricing_history"] = history
            updated = flow.copy(pricing_snapshot=snapshot, metadata=metadata, updated_at=self._now())
            payload = {"action": "reprice", "reason": reason.strip(), "pricing_snapshot": snapshot.to_dict()}
            return self._commit(
                flow,
                updated,
                [(flow.status, flow.status)],
                actor,
                payload,
                idempotency_key=f"{flow_id}:reprice:{len(history)}",
            )

    # Reads

    def get_flow(self, flow_id: str) -> Flow:
        return self._load(flow_id)

    def get_status(self, flow_id: str) -> FlowSnapshot:
        return self.snapshot(self._load(flow_id))

    def snapshot(self, flow: Flow) -> FlowSnapshot:
        cancelled_from = (flow.metadata.get("cancellation") or {}).get("from_status")
        return FlowSnapshot(
            flow=flow,
            completion_percentage=self.lifecycle.completion_percentage(flow.status, cancelled_from),
            allowed_transitions=self.lifecycle.allowed_next(flow.status),
        )

    def list_flows(self, *, status: str | None = None, limit: int = 50) -> list[Flow]:
        records = self._with_retry(lambda: self.repository.list_flows(status=status, limit=limit), flow_id=None)
        return [_flow_from_record(record) for record in records]

    def audit_entries(self, flow_id: str) -> list[AuditEntry]:
        self._load(flow_id)
        return self._with_retry(lambda: self.audit.entries(flow_id), flow_id=flow_id)

    def export_audit(self, flow_id: str) -> list[dict[str, Any]]:
        self._load(flow_id)
        return self._with_retry(lambda: list(self.audit.export_stream(flow_id)), flow_id=flow_id)

    def list_recommendations(self, flow_id: str) -> list[RecommendationCandidate]:
        self._load(flow_id)
        rows = self._with_retry(lambda: self.repository.list_candidates(flow_id), flow_id=flow_id)
        return [
            RecommendationCandidate(
                candidate_id=row["candidate_id"],
                flow_id=row["flow_id"],
                product_id=row["product_id"],
                score=row["score"],
                reason_codes=tuple(row["reason_codes"]),
                presented_at=row["presented_at"],
                rank=row["rank"],
                accepted_at=row["accepted_at"],
                rejected_at=row["rejected_at"],
            )
            for row in rows
        ]

    def accept_recommendation(self, flow_id: str, candidate_id: str, actor: str) -> RecommendationCandidate:
        return self._resolve_recommendation(flow_id, candidate_id, actor, accepted=True)

    def reject_recommendation(self, flow_id: str, candidate_id: str, actor: str) -> RecommendationCandidate:
        return self._resolve_recommendation(flow_id, candidate_id, actor, accepted=False)

    def _resolve_recommendation(
        self, flow_id: str, candidate_id: str, actor: str, *, accepted: bool
    ) -> RecommendationCandidate:
        with self.locks.hold(flow_id):
            flow = self._load(flow_id)
            if flow.is_terminal:
                raise FlowNotReady(
                    f"Flow {flow_id} is {flow.status}; its recommendations can no longer change.",
                    flow_id=flow_id,
                    status=flow.status,
                )
            candidates = {candidate.candidate_id: candidate for candidate in self.list_recommendations(flow_id)}
            if candidate_id not in candidates:
                raise CandidateNotFound(
                    f"Recommendation {candidate_id} was not presented on flow {flow_id}.",
                    flow_id=flow_id,
                    candidate_id=candidate_id,
                )
            resolved_at = self._now()
            changed = self._with_retry(
                lambda: self.repository.resolve_candidate(
                    flow_id, candidate_id, accepted=accepted, resolved_at=resolved_at
                ),
                flow_id=flow_id,
            )
            if not changed:
                raise CandidateAlreadyResolved(
                    f"Recommendation {candidate_id} was already {candidates[candidate_id].status}.",
                    candidate_id=candidate_id,
                )
        logger.info(
            "recommendation %s on flow %s %s by %s",
            candidate_id,
            flow_id,
            "accepted" if accepted else "rejected",
            actor,
        )
        candidate = candidates[candidate_id]
        if accepted:
            candidate.accepted_at = resolved_at
        else:
            candidate.rejected_at = resolved_at
        return candidate
