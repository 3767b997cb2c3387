from __future__ import annotations

from decimal import Decimal

import pytest

from careflow_core.errors import (
    CandidateAlreadyResolved,
    CandidateNotFound,
    CollaboratorUnavailable,
    ComputationError,
    FlowNotFound,
    FlowNotPending,
    FlowNotReady,
    IncompleteForm,
    InvalidCategory,
    InvalidConsultationOutcome,
    InvalidSubscriptionDuration,
    InvalidTransition,
    PatientMismatch,
    ProductInactive,
    ProductNotInCategory,
    RepricingLocked,
    ValidationFailed,
)
from careflow_core.hooks import INVOICE_REQUESTED, ORDER_REQUESTED, PATIENT_LINK_REQUESTED
from careflow_core.pricing import PricingRule


def _at_subscription_configured(orchestrator, duration: str | None = "monthly") -> str:
    flow = orchestrator.initialize_flow("weight-mgmt", "patient-1")
    orchestrator.select_product(flow.flow_id, "semaglutide-1", duration, "patient-1")
    if duration is None:
        orchestrator.configure_subscription(flow.flow_id, None, "patient-1")
    return flow.flow_id


def _at_consultation_pending(orchestrator, intake_form, duration: str | None = "monthly") -> str:
    flow_id = _at_subscription_configured(orchestrator, duration)
    orchestrator.submit_intake(flow_id, intake_form, "patient-1")
    orchestrator.request_consultation(flow_id, "patient-1")
    return flow_id


def _events(emitted_events, name: str):
    return [event for event in emitted_events if event.name == name]


def test_initialize_flow_starts_at_category_selected(orchestrator):
    flow = orchestrator.initialize_flow("weight-mgmt", "patient-1", patient_id="pat-1")
    snapshot = orchestrator.get_status(flow.flow_id)
    assert snapshot.status == "category_selected"
    assert snapshot.flow.patient_id == "pat-1"
    assert snapshot.completion_percentage == 8.33
    assert snapshot.allowed_transitions == ["cancelled", "product_selected"]


@pytest.mark.parametrize("category_id", ["unknown", "legacy-care"])
def test_initialize_flow_rejects_unknown_or_inactive_category(orchestrator, category_id):
    with pytest.raises(InvalidCategory):
        orchestrator.initialize_flow(category_id, "patient-1")


def test_select_product_with_monthly_discount_freezes_price(orchestrator):
    flow_id = _at_subscription_configured(orchestrator)
    snapshot = orchestrator.get_status(flow_id)
    assert snapshot.status == "subscription_configured"
    assert snapshot.flow.pricing_snapshot.final_price == Decimal("180.00")
    assert snapshot.flow.pricing_snapshot.applied_rule_ids == ("wm-monthly-10",)
    assert snapshot.flow.form_requirement.form_template_id == "weight-intake-v1"
    assert snapshot.completion_percentage == 25.0


def test_select_product_without_duration_waits_for_subscription_choice(orchestrator):
    flow = orchestrator.initialize_flow("weight-mgmt", "patient-1")
    selected = orchestrator.select_product(flow.flow_id, "semaglutide-1", None, "patient-1")
    assert selected.status == "product_selected"
    assert selected.pricing_snapshot.final_price == Decimal("200.00")

    configured = orchestrator.configure_subscription(flow.flow_id, "quarterly", "patient-1")
    assert configured.status == "subscription_configured"
    assert configured.pricing_snapshot.final_price == Decimal("170.00")
    assert configured.pricing_snapshot.reason == "subscription_configured"
    assert configured.metadata["pricing_history"][0]["final_price"] == "200.00"


def test_one_time_product_skips_subscription_choice(orchestrator):
    flow = orchestrator.initialize_flow("weight-mgmt", "patient-1")
    selected = orchestrator.select_product(flow.flow_id, "nutrition-coaching", None, "patient-1")
    assert selected.status == "subscription_configured"
    assert selected.subscription_duration_id is None


@pytest.mark.parametrize(
    "product_id, duration, error",
    [
        ("finasteride-1", "monthly", ProductNotInCategory),
        ("does-not-exist", None, ProductNotInCategory),
        ("orlistat-legacy", "monthly", ProductInactive),
        ("metformin-er", "quarterly", InvalidSubscriptionDuration),
        ("semaglutide-1", "annual", InvalidSubscriptionDuration),
    ],
)
def test_select_product_validation(orchestrator, product_id, duration, error):
    flow = orchestrator.initialize_flow("weight-mgmt", "patient-1")
    with pytest.raises(error):
        orchestrator.select_product(flow.flow_id, product_id, duration, "patient-1")
    assert orchestrator.get_status(flow.flow_id).status == "category_selected"
    assert orchestrator.audit.count(flow.flow_id) == 1


def test_select_product_stores_ranked_recommendations(orchestrator):
    flow = orchestrator.initialize_flow("weight-mgmt", "patient-1")
    orchestrator.select_product(
        flow.flow_id,
        "semaglutide-1",
        "monthly",
        "patient-1",
        patient_profile={"segment": "new_patient", "goals": ["glp1"]},
    )
    candidates = orchestrator.list_recommendations(flow.flow_id)
    assert 0 < len(candidates) <= 3
    assert "semaglutide-1" not in {c.product_id for c in candidates}
    assert candidates[0].product_id == "tirzepatide-1"
    assert [c.rank for c in candidates] == list(range(1, len(candidates) + 1))
    assert all(c.status == "presented" for c in candidates)


def test_recommendation_accept_and_reject(orchestrator):
    flow_id = _at_subscription_configured(orchestrator)
    first, second = orchestrator.list_recommendations(flow_id)[:2]

    accepted = orchestrator.accept_recommendation(flow_id, first.candidate_id, "patient-1")
    assert accepted.status == "accepted"
    rejected = orchestrator.reject_recommendation(flow_id, second.candidate_id, "patient-1")
    assert rejected.status == "rejected"

    with pytest.raises(CandidateAlreadyResolved):
        orchestrator.reject_recommendation(flow_id, first.candidate_id, "patient-1")
    with pytest.raises(CandidateNotFound):
        orchestrator.accept_recommendation(flow_id, "rec_missing", "patient-1")
    statuses = {c.candidate_id: c.status for c in orchestrator.list_recommendations(flow_id)}
    assert statuses[first.candidate_id] == "accepted"
    assert statuses[second.candidate_id] == "rejected"


def test_recommendations_are_frozen_once_flow_is_cancelled(orchestrator):
    flow_id = _at_subscription_configured(orchestrator)
    first, second = orchestrator.list_recommendations(flow_id)[:2]
    orchestrator.cancel(flow_id, "changed_mind", "patient-1")

    with pytest.raises(FlowNotReady):
        orchestrator.accept_recommendation(flow_id, first.candidate_id, "patient-1")
    with pytest.raises(FlowNotReady):
        orchestrator.reject_recommendation(flow_id, second.candidate_id, "patient-1")
    assert all(c.status == "presented" for c in orchestrator.list_recommendations(flow_id))


def test_incomplete_intake_lists_missing_fields_and_keeps_status(orchestrator, intake_form):
    flow_id = _at_subscription_configured(orchestrator)
    before = orchestrator.audit.count(flow_id)
    del intake_form["allergies"]

    with pytest.raises(IncompleteForm) as excinfo:
        orchestrator.submit_intake(flow_id, intake_form, "patient-1")

    assert excinfo.value.missing_field_ids == ["allergies"]
    assert excinfo.value.as_error()["details"] == {"missing_field_ids": ["allergies"]}
    assert orchestrator.get_status(flow_id).status == "subscription_configured"
    assert orchestrator.audit.count(flow_id) == before


def test_conditional_field_is_enforced(orchestrator, intake_form):
    flow_id = _at_subscription_configured(orchestrator)
    intake_form["pregnant"] = "yes"
    with pytest.raises(IncompleteForm) as excinfo:
        orchestrator.submit_intake(flow_id, intake_form, "patient-1")
    assert excinfo.value.missing_field_ids == ["pregnancy_due_date"]


def test_complete_intake_creates_order(orchestrator, intake_form, emitted_events):
    flow_id = _at_subscription_configured(orchestrator)
    before = [entry.entry_id for entry in orchestrator.audit_entries(flow_id)]

    flow = orchestrator.submit_intake(flow_id, intake_form, "patient-1")

    assert flow.status == "order_created"
    assert flow.order_id and flow.form_submission_id and flow.patient_id
    new_entries = [entry for entry in orchestrator.audit_entries(flow_id) if entry.entry_id not in before]
    assert [entry.to_status for entry in new_entries] == ["intake_started", "intake_completed", "order_created"]
    assert len([entry for entry in new_entries if entry.to_status == "order_created"]) == 1

    (order_event,) = _events(emitted_events, ORDER_REQUESTED)
    assert order_event.payload["product_id"] == "semaglutide-1"
    assert order_event.payload["patient_id"] == flow.patient_id
    assert order_event.payload["pricing_snapshot"]["final_price"] == "180.00"
    assert len(_events(emitted_events, PATIENT_LINK_REQUESTED)) == 1


def test_intake_uses_known_patient_and_rejects_mismatch(orchestrator, intake_form, emitted_events):
    flow = orchestrator.initialize_flow("weight-mgmt", "patient-1", patient_id="pat-9")
    orchestrator.select_product(flow.flow_id, "semaglutide-1", "monthly", "patient-1")

    with pytest.raises(PatientMismatch):
        orchestrator.submit_intake(flow.flow_id, {**intake_form, "patient_id": "pat-other"}, "patient-1")

    submitted = orchestrator.submit_intake(flow.flow_id, {**intake_form, "patient_id": "pat-9"}, "patient-1")
    assert submitted.patient_id == "pat-9"
    assert _events(emitted_events, PATIENT_LINK_REQUESTED) == []


def test_intake_after_explicit_start(orchestrator, intake_form):
    flow_id = _at_subscription_configured(orchestrator)
    started = orchestrator.start_intake(flow_id, "patient-1")
    assert started.status == "intake_started"
    assert started.form_requirement.required_field_ids[-1] == "allergies"
    assert orchestrator.submit_intake(flow_id, intake_form, "patient-1").status == "order_created"


def test_intake_before_subscription_is_not_ready(orchestrator, intake_form):
    flow = orchestrator.initialize_flow("weight-mgmt", "patient-1")
    with pytest.raises(FlowNotReady):
        orchestrator.submit_intake(flow.flow_id, intake_form, "patient-1")


def test_rejected_consultation_cancels_without_invoice(orchestrator, intake_form, emitted_events):
    flow_id = _at_consultation_pending(orchestrator, intake_form)

    flow = orchestrator.record_consultation_outcome(flow_id, "rejected", "clinician-1")

    assert flow.status == "cancelled"
    assert flow.invoice_id is None
    assert flow.metadata["cancellation"] == {"reason": "consultation_rejected", "from_status": "consultation_rejected"}
    assert _events(emitted_events, INVOICE_REQUESTED) == []
    statuses = [entry.to_status for entry in orchestrator.audit_entries(flow_id)]
    assert statuses[-2:] == ["consultation_rejected", "cancelled"]
    assert orchestrator.get_status(flow_id).completion_percentage == round(8 / 12 * 100, 2)


def test_approved_consultation_invoices_frozen_snapshot(orchestrator, catalog, intake_form, emitted_events):
    flow_id = _at_consultation_pending(orchestrator, intake_form)
    # Pricing changes after selection must not leak into the invoice.
    orchestrator.catalog = catalog.with_pricing_rules(
        [
            PricingRule.from_dict(
                {
                    "rule_id": "flash-sale",
                    "scope_type": "product",
                    "scope_id": "semaglutide-1",
                    "discount_type": "percentage",
                    "discount_value": "0.5",
                    "priority": 1,
                }
            )
        ]
    )

    flow = orchestrator.record_consultation_outcome(flow_id, "APPROVED", "clinician-1")

    assert flow.status == "invoice_generated"
    assert flow.invoice_id
    (invoice_event,) = _events(emitted_events, INVOICE_REQUESTED)
    assert invoice_event.payload["pricing_snapshot"]["final_price"] == "180.00"
    assert invoice_event.payload["order_id"] == flow.order_id
    assert orchestrator.get_status(flow_id).flow.pricing_snapshot.final_price == Decimal("180.00")


def test_consultation_outcome_guards(orchestrator, intake_form):
    flow_id = _at_subscription_configured(orchestrator)
    with pytest.raises(InvalidConsultationOutcome):
        orchestrator.record_consultation_outcome(flow_id, "maybe", "clinician-1")
    with pytest.raises(FlowNotPending):
        orchestrator.record_consultation_outcome(flow_id, "approved", "clinician-1")


def test_subscription_flow_runs_to_completion(orchestrator, intake_form):
    flow_id = _at_consultation_pending(orchestrator, intake_form)
    orchestrator.record_consultation_outcome(flow_id, "approved", "clinician-1")

    with pytest.raises(InvalidTransition):
        orchestrator.mark_fulfilled(flow_id, "pharmacy")

    orchestrator.activate_subscription(flow_id, "billing")
    orchestrator.mark_fulfilled(flow_id, "pharmacy")
    flow = orchestrator.complete_flow(flow_id, "system")

    assert flow.status == "completed"
    assert flow.completed_at is not None
    snapshot = orchestrator.get_status(flow_id)
    assert snapshot.completion_percentage == 100.0
    assert snapshot.allowed_transitions == []
    assert snapshot.flow.is_terminal


def test_one_time_flow_skips_subscription_activation(orchestrator, intake_form):
    flow_id = _at_consultation_pending(orchestrator, intake_form, duration=None)
    orchestrator.record_consultation_outcome(flow_id, "approved", "clinician-1")

    with pytest.raises(InvalidTransition):
        orchestrator.activate_subscription(flow_id, "billing")

    assert orchestrator.mark_fulfilled(flow_id, "pharmacy").status == "order_fulfilled"
    assert orchestrator.complete_flow(flow_id, "system").status == "completed"


def test_backward_and_skipping_transitions_are_rejected(orchestrator, intake_form):
    flow_id = _at_subscription_configured(orchestrator)
    with pytest.raises(InvalidTransition):
        orchestrator.select_product(flow_id, "tirzepatide-1", "monthly", "patient-1")
    with pytest.raises(InvalidTransition):
        orchestrator.request_consultation(flow_id, "patient-1")
    with pytest.raises(InvalidTransition):
        orchestrator.complete_flow(flow_id, "patient-1")


def test_cancel_is_idempotent(orchestrator):
    flow_id = _at_subscription_configured(orchestrator)
    cancelled = orchestrator.cancel(flow_id, "changed_mind", "patient-1")
    assert cancelled.status == "cancelled"
    assert cancelled.metadata["cancellation"] == {"reason": "changed_mind", "from_status": "subscription_configured"}
    count = orchestrator.audit.count(flow_id)

    again = orchestrator.cancel(flow_id, "other_reason", "patient-1")

    assert again.status == "cancelled"
    assert again.metadata["cancellation"]["reason"] == "changed_mind"
    assert again.version == cancelled.version
    assert orchestrator.audit.count(flow_id) == count
    assert orchestrator.get_status(flow_id).completion_percentage == 25.0


def test_cancel_after_completion_is_invalid(orchestrator, intake_form):
    flow_id = _at_consultation_pending(orchestrator, intake_form, duration=None)
    orchestrator.record_consultation_outcome(flow_id, "approved", "clinician-1")
    orchestrator.mark_fulfilled(flow_id, "pharmacy")
    orchestrator.complete_flow(flow_id, "system")
    with pytest.raises(InvalidTransition):
        orchestrator.cancel(flow_id, "too_late", "patient-1")


def test_snapshot_is_immutable_after_selection(orchestrator, catalog, intake_form):
    flow_id = _at_subscription_configured(orchestrator)
    original = orchestrator.get_status(flow_id).flow.pricing_snapshot
    orchestrator.catalog = catalog.with_pricing_rules([])

    orchestrator.submit_intake(flow_id, intake_form, "patient-1")
    orchestrator.request_consultation(flow_id, "patient-1")

    assert orchestrator.get_status(flow_id).flow.pricing_snapshot == original


def test_reprice_records_reason_and_history(orchestrator, catalog, intake_form):
    flow_id = _at_subscription_configured(orchestrator)
    orchestrator.catalog = catalog.with_pricing_rules([])

    repriced = orchestrator.reprice(flow_id, "promo_expired", "ops-1")

    assert repriced.status == "subscription_configured"
    assert repriced.pricing_snapshot.final_price == Decimal("200.00")
    assert repriced.pricing_snapshot.reason == "promo_expired"
    assert repriced.metadata["pricing_history"][0]["final_price"] == "180.00"
    last = orchestrator.audit_entries(flow_id)[-1]
    assert (last.from_status, last.to_status, last.actor) == ("subscription_configured", "subscription_configured", "ops-1")
    assert not last.is_transition

    with pytest.raises(ValidationFailed):
        orchestrator.reprice(flow_id, "  ", "ops-1")
    orchestrator.submit_intake(flow_id, intake_form, "patient-1")
    with pytest.raises(RepricingLocked):
        orchestrator.reprice(flow_id, "too_late", "ops-1")


def test_unknown_flow(orchestrator):
    with pytest.raises(FlowNotFound):
        orchestrator.get_status("flow_missing")
    with pytest.raises(FlowNotFound):
        orchestrator.cancel("flow_missing", "x", "patient-1")


def test_collaborator_failure_leaves_flow_untouched(orchestrator, hooks, intake_form):
    flow_id = _at_subscription_configured(orchestrator)
    before = orchestrator.get_status(flow_id).flow

    def _down(event):
        raise ConnectionError("order service unreachable")

    hooks.register(ORDER_REQUESTED, _down)
    with pytest.raises(CollaboratorUnavailable):
        orchestrator.submit_intake(flow_id, intake_form, "patient-1")

    after = orchestrator.get_status(flow_id).flow
    assert after.status == before.status
    assert after.version == before.version


def test_pricing_failure_is_a_computation_error(orchestrator, monkeypatch):
    flow = orchestrator.initialize_flow("weight-mgmt", "patient-1")

    def _broken(*args, **kwargs):
        raise ArithmeticError("boom")

    monkeypatch.setattr(orchestrator.pricing, "compute_price", _broken)
    with pytest.raises(ComputationError):
        orchestrator.select_product(flow.flow_id, "semaglutide-1", "monthly", "patient-1")
    assert orchestrator.get_status(flow.flow_id).status == "category_selected"


def test_observers_run_after_commit_and_cannot_break_flow(orchestrator, hooks, intake_form):
    seen = []

    def _observer(event, reference_id):
        seen.append((event.name, reference_id, orchestrator.get_status(event.flow_id).status))
        raise RuntimeError("observer bug")

    hooks.add_observer(_observer)
    flow_id = _at_subscription_configured(orchestrator)
    flow = orchestrator.submit_intake(flow_id, intake_form, "patient-1")
    assert seen == [(ORDER_REQUESTED, flow.order_id, "order_created")]
