from __future__ import annotations

from dataclasses import dataclass, field, replace
from decimal import Decimal
from typing import Any


CATEGORY_SELECTED = "category_selected"
PRODUCT_SELECTED = "product_selected"
SUBSCRIPTION_CONFIGURED = "subscription_configured"
INTAKE_STARTED = "intake_started"
INTAKE_COMPLETED = "intake_completed"
ORDER_CREATED = "order_created"
CONSULTATION_PENDING = "consultation_pending"
CONSULTATION_APPROVED = "consultation_approved"
CONSULTATION_REJECTED = "consultation_rejected"
INVOICE_GENERATED = "invoice_generated"
SUBSCRIPTION_ACTIVE = "subscription_active"
ORDER_FULFILLED = "order_fulfilled"
COMPLETED = "completed"
CANCELLED = "cancelled"

CANONICAL_PATH = (
    CATEGORY_SELECTED,
    PRODUCT_SELECTED,
    SUBSCRIPTION_CONFIGURED,
    INTAKE_STARTED,
    INTAKE_COMPLETED,
    ORDER_CREATED,
    CONSULTATION_PENDING,
    CONSULTATION_APPROVED,
    INVOICE_GENERATED,
    SUBSCRIPTION_ACTIVE,
    ORDER_FULFILLED,
    COMPLETED,
)
TERMINAL_STATES = {COMPLETED, CANCELLED}
FLOW_STATES = set(CANONICAL_PATH) | {CONSULTATION_REJECTED, CANCELLED}

CONSULTATION_OUTCOMES = {"approved", "rejected"}


def _money(value: Decimal) -> str:
    return str(value)


@dataclass(frozen=True)
class PriceResult:
    product_id: str
    currency: str
    base_price: Decimal
    final_price: Decimal
    discount_amount: Decimal
    applied_rule_ids: tuple[str, ...] = ()
    clamped_to_zero: bool = False
    subscription_duration_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "product_id": self.product_id,
            "currency": self.currency,
            "base_price": _money(self.base_price),
            "final_price": _money(self.final_price),
            "discount_amount": _money(self.discount_amount),
            "applied_rule_ids": list(self.applied_rule_ids),
            "clamped_to_zero": self.clamped_to_zero,
            "subscription_duration_id": self.subscription_duration_id,
        }


@dataclass(frozen=True)
class PricingSnapshot:
    """Price frozen onto a flow. Never recomputed in place."""

    product_id: str
    currency: str
    base_price: Decimal
    final_price: Decimal
    discount_amount: Decimal
    applied_rule_ids: tuple[str, ...]
    clamped_to_zero: bool
    subscription_duration_id: str | None
    frozen_at: str
    reason: str = "product_selected"

    @classmethod
    def from_result(cls, result: PriceResult, *, frozen_at: str, reason: str = "product_selected") -> "PricingSnapshot":
        return cls(
            product_id=result.product_id,
            currency=result.currency,
            base_price=result.base_price,
            final_price=result.final_price,
            discount_amount=result.discount_amount,
            applied_rule_ids=tuple(result.applied_rule_ids),
            clamped_to_zero=result.clamped_to_zero,
            subscription_duration_id=result.subscription_duration_id,
            frozen_at=frozen_at,
            reason=reason,
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PricingSnapshot":
        return cls(
            product_id=data["product_id"],
            currency=data["currency"],
            base_price=Decimal(data["base_price"]),
            final_price=Decimal(data["final_price"]),
            discount_amount=Decimal(data["discount_amount"]),
            applied_rule_ids=tuple(data.get("applied_rule_ids") or ()),
            clamped_to_zero=bool(data.get("clamped_to_zero")),
            subscription_duration_id=data.get("subscription_duration_id"),
            frozen_at=data["frozen_at"],
            reason=data.get("reason") or "product_selected",
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "product_id": self.product_id,
            "currency": self.currency,
            "base_price": _money(self.base_price),
            "final_price": _money(self.final_price),
            "discount_amount": _money(self.discount_amount),
            "applied_rule_ids": list(self.applied_rule_ids),
            "clamped_to_zero": self.clamped_to_zero,
            "subscription_duration_id": self.subscription_duration_id,
            "frozen_at": self.frozen_at,
            "reason": self.reason,
        }


@dataclass(frozen=True)
class RuleCondition:
    field: str
    operator: str
    value: Any = None

    def to_dict(self) -> dict[str, Any]:
        return {"field": self.field, "operator": self.operator, "value": self.value}


@dataclass(frozen=True)
class ConditionalRule:
    field_id: str
    condition: RuleCondition
    effect: str

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ConditionalRule":
        condition = data.get("condition") or {}
        return cls(
            field_id=str(data["field_id"]),
            condition=RuleCondition(
                field=str(condition.get("field", "")),
                operator=str(condition.get("operator", "equals")),
                value=condition.get("value"),
            ),
            effect=str(data.get("effect", "require")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {"field_id": self.field_id, "condition": self.condition.to_dict(), "effect": self.effect}


@dataclass(frozen=True)
class FormRequirement:
    category_id: str
    product_id: str | None
    form_template_id: str | None
    required_field_ids: tuple[str, ...] = ()
    conditional_rules: tuple[ConditionalRule, ...] = ()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FormRequirement":
        return cls(
            category_id=data["category_id"],
            product_id=data.get("product_id"),
            form_template_id=data.get("form_template_id"),
            required_field_ids=tuple(data.get("required_field_ids") or ()),
            conditional_rules=tuple(ConditionalRule.from_dict(item) for item in data.get("conditional_rules") or ()),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "category_id": self.category_id,
            "product_id": self.product_id,
            "form_template_id": self.form_template_id,
            "required_field_ids": list(self.required_field_ids),
            "conditional_rules": [rule.to_dict() for rule in self.conditional_rules],
        }


@dataclass
class RecommendationCandidate:
    candidate_id: str
    flow_id: str | None
    product_id: str
    score: float
    reason_codes: tuple[str, ...]
    presented_at: str | None
    rank: int = 0
    accepted_at: str | None = None
    rejected_at: str | None = None

    @property
    def status(self) -> str:
        if self.accepted_at:
            return "accepted"
        if self.rejected_at:
            return "rejected"
        return "presented"

    def to_dict(self) -> dict[str, Any]:
        return {
            "candidate_id": self.candidate_id,
            "flow_id": self.flow_id,
            "product_id": self.product_id,
            "score": self.score,
            "reason_codes": list(self.reason_codes),
            "rank": self.rank,
            "presented_at": self.presented_at,
            "accepted_at": self.accepted_at,
            "rejected_at": self.rejected_at,
            "status": self.status,
        }


@dataclass(frozen=True)
class AuditEntry:
    entry_id: str
    flow_id: str
    sequence: int
    from_status: str | None
    to_status: str
    actor: str
    timestamp: str
    payload_digest: str
    idempotency_key: str
    prev_hash: str
    entry_hash: str

    @property
    def is_transition(self) -> bool:
        # Repricing entries keep the status and are not state changes.
        return self.from_status != self.to_status

    def as_export(self) -> dict[str, Any]:
        return {
            "entry_id": self.entry_id,
            "flow_id": self.flow_id,
            "sequence": self.sequence,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "actor": self.actor,
            "timestamp": self.timestamp,
            "payload_digest": self.payload_digest,
            "prev_hash": self.prev_hash,
            "entry_hash": self.entry_hash,
        }


@dataclass
class Flow:
    flow_id: str
    category_id: str
    status: str
    started_at: str
    updated_at: str
    patient_id: str | None = None
    product_id: str | None = None
    subscription_duration_id: str | None = None
    pricing_snapshot: PricingSnapshot | None = None
    form_requirement: FormRequirement | None = None
    form_submission_id: str | None = None
    order_id: str | None = None
    consultation_id: str | None = None
    invoice_id: str | None = None
    completed_at: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    version: int = 1

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATES

    def copy(self, **changes: Any) -> "Flow":
        updated = replace(self, **changes)
        if "metadata" not in changes:
            updated.metadata = dict(self.metadata)
        return updated

    def to_dict(self) -> dict[str, Any]:
        return {
            "flow_id": self.flow_id,
            "patient_id": self.patient_id,
            "category_id": self.category_id,
            "product_id": self.product_id,
            "subscription_duration_id": self.subscription_duration_id,
            "status": self.status,
            "pricing_snapshot": self.pricing_snapshot.to_dict() if self.pricing_snapshot else None,
            "form_requirement": self.form_requirement.to_dict() if self.form_requirement else None,
            "form_submission_id": self.form_submission_id,
            "order_id": self.order_id,
            "consultation_id": self.consultation_id,
            "invoice_id": self.invoice_id,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "updated_at": self.updated_at,
            "metadata": self.metadata,
            "version": self.version,
        }


@dataclass
class FlowSnapshot:
    flow: Flow
    completion_percentage: float
    allowed_transitions: list[str] = field(default_factory=list)

    @property
    def status(self) -> str:
        return self.flow.status

    def as_envelope(self) -> dict[str, Any]:
        return {
            **self.flow.to_dict(),
            "completion_percentage": self.completion_percentage,
            "is_terminal": self.flow.is_terminal,
            "allowed_transitions": self.allowed_transitions,
        }
