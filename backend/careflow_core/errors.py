from __future__ import annotations

from typing import Any


class FlowError(Exception):
    """Base class for every error the orchestrator lets escape."""

    category = "internal"
    code = "flow_error"
    http_status = 500
    user_message = "Something went wrong. Please retry."

    def __init__(self, message: str | None = None, **details: Any) -> None:
        self.message = message or self.user_message
        self.details = {key: value for key, value in details.items() if value is not None}
        super().__init__(self.message)

    @property
    def user_facing(self) -> bool:
        return self.category in {"validation", "state"}

    def as_error(self) -> dict[str, Any]:
        if self.user_facing:
            return {"code": self.code, "message": self.message, "details": self.details}
        return {"code": self.code, "message": self.user_message, "details": {}}


# Validation errors: bad caller input, never retried.


class ValidationFailed(FlowError):
    category = "validation"
    code = "validation_failed"
    http_status = 422
    user_message = "The request is invalid."


class InvalidCategory(ValidationFailed):
    code = "invalid_category"


class ProductNotInCategory(ValidationFailed):
    code = "product_not_in_category"


class ProductInactive(ValidationFailed):
    code = "product_inactive"


class InvalidSubscriptionDuration(ValidationFailed):
    code = "invalid_subscription_duration"


class InvalidConsultationOutcome(ValidationFailed):
    code = "invalid_consultation_outcome"


class PatientMismatch(ValidationFailed):
    code = "patient_mismatch"


class IncompleteForm(ValidationFailed):
    code = "incomplete_form"

    def __init__(self, missing_field_ids: list[str]) -> None:
        self.missing_field_ids = list(missing_field_ids)
        super().__init__(
            f"Intake form is missing required fields: {', '.join(self.missing_field_ids)}",
            missing_field_ids=self.missing_field_ids,
        )


# State errors: the caller is out of sync with the flow.


class FlowStateError(FlowError):
    category = "state"
    code = "flow_state_error"
    http_status = 409
    user_message = "The flow is not in a state that allows this action."


class FlowNotFound(FlowStateError):
    code = "flow_not_found"
    http_status = 404


class InvalidTransition(FlowStateError):
    code = "invalid_transition"

    def __init__(self, from_status: str | None, to_status: str) -> None:
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"Invalid transition: {from_status} -> {to_status}",
            from_status=from_status,
            to_status=to_status,
        )


class FlowNotReady(FlowStateError):
    code = "flow_not_ready"


class FlowNotPending(FlowStateError):
    code = "flow_not_pending"


class RepricingLocked(FlowStateError):
    code = "repricing_locked"


class CandidateNotFound(FlowStateError):
    code = "candidate_not_found"
    http_status = 404


class CandidateAlreadyResolved(FlowStateError):
    code = "candidate_already_resolved"


# Concurrency errors: re-read the flow and retry the whole operation.


class ConcurrentModification(FlowError):
    category = "concurrency"
    code = "concurrent_modification"
    http_status = 409
    user_message = "The flow was modified by another request. Please retry."


# Configuration errors: bad administrative setup, internal only.


class ConfigurationError(FlowError):
    category = "configuration"
    code = "configuration_error"
    http_status = 500
    user_message = "The service is misconfigured. Please contact support."


class MalformedFormMapping(ConfigurationError):
    code = "malformed_form_mapping"


class MalformedPricingRule(ConfigurationError):
    code = "malformed_pricing_rule"


class MalformedCatalog(ConfigurationError):
    code = "malformed_catalog"


# Business logic failures, distinct from bad input.


class ComputationError(FlowError):
    category = "computation"
    code = "computation_unavailable"
    http_status = 503
    user_message = "Pricing or recommendations are temporarily unavailable. Please retry."


# Infrastructure errors: retried by the caller with the same idempotency key.


class InfrastructureError(FlowError):
    category = "infrastructure"
    code = "infrastructure_error"
    http_status = 503
    user_message = "The service is temporarily unavailable. Please retry."


class PersistenceError(InfrastructureError):
    code = "persistence_unavailable"


class CollaboratorUnavailable(InfrastructureError):
    code = "collaborator_unavailable"
