"""Attribution run lifecycle: creation, execution, failure accounting and cancellation."""

import threading
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select

from attribution_engine.errors import ConflictError, InternalError, InvalidInputError, NotFoundError
from attribution_engine.models import AttributionResult, AttributionRun, RunStatusEnum, utcnow
from attribution_engine.services.attribution_run_service import attributed_amount, split_amount


class CancelAfter:
    """Stands in for threading.Event: reports set after ``checks`` calls."""

    def __init__(self, checks: int):
        self.remaining = checks

    def is_set(self) -> bool:
        if self.remaining <= 0:
            return True
        self.remaining -= 1
        return False


def _run(run_service, tenant_id, model_code, config=None):
    return run_service.create_run(tenant_id, model_code, f"{model_code} run", config)


# ----------------------------------------------------------------------
# Creation
# ----------------------------------------------------------------------

def test_create_run_stores_pending_run_with_default_window(run_service, reference_data):
    run = _run(run_service, reference_data.tenant_id, "LINEAR")

    assert run.status == RunStatusEnum.pending.value
    assert run.config["time_window_hours"] == 72
    assert run.config["version"] == 1
    assert run_service.get_run(reference_data.tenant_id, run.id).id == run.id


def test_create_run_with_unknown_model_is_not_found(run_service, reference_data):
    with pytest.raises(NotFoundError):
        _run(run_service, reference_data.tenant_id, "U_SHAPED")


def test_create_run_with_invalid_config_is_rejected(run_service, reference_data):
    with pytest.raises(InvalidInputError):
        _run(run_service, reference_data.tenant_id, "LINEAR", {"time_window_hours": 0})
    with pytest.raises(InvalidInputError):
        _run(run_service, reference_data.tenant_id, "LINEAR", {"lookback": 24})


def test_create_run_for_unknown_tenant_is_not_found(run_service):
    with pytest.raises(NotFoundError):
        _run(run_service, 999999, "LINEAR")


def test_runs_are_scoped_per_tenant(run_service, reference_data):
    run = _run(run_service, reference_data.tenant_id, "LINEAR")
    with pytest.raises(NotFoundError):
        run_service.get_run(reference_data.other_tenant_id, run.id)
    with pytest.raises(NotFoundError):
        run_service.list_results(reference_data.other_tenant_id, run.id)


# ----------------------------------------------------------------------
# Execution
# ----------------------------------------------------------------------

def test_first_touch_single_interaction(run_service, ingest_interaction, ingest_conversion, reference_data, t0):
    interaction = ingest_interaction("call-1", t0, agent="AG-1")
    conversion = ingest_conversion(100, t0 + timedelta(hours=1))
    run = _run(run_service, reference_data.tenant_id, "FIRST_TOUCH")

    outcome = run_service.execute_run(run.id)

    assert outcome.status == RunStatusEnum.completed.value
    (result,) = run_service.list_results(reference_data.tenant_id, run.id)
    assert result.interaction_id == interaction.interaction_id
    assert result.conversion_event_id == conversion.conversion_event_id
    assert result.attribution_weight == pytest.approx(1.0)
    assert result.attributed_amount == Decimal("100")
    assert result.is_primary_touch is True
    assert result.agent_id == reference_data.agent_id
    assert result.team_id == reference_data.team_id
    assert result.vendor_id == reference_data.vendor_id


def test_linear_splits_evenly(run_service, ingest_interaction, ingest_conversion, reference_data, t0):
    ingest_interaction("call-1", t0)
    ingest_interaction("chat-1", t0 + timedelta(hours=2), channel="chat")
    ingest_conversion(200, t0 + timedelta(hours=3))
    run = _run(run_service, reference_data.tenant_id, "LINEAR")

    run_service.execute_run(run.id)

    results = run_service.list_results(reference_data.tenant_id, run.id)
    assert [r.attribution_weight for r in results] == [pytest.approx(0.5), pytest.approx(0.5)]
    assert [r.attributed_amount for r in results] == [Decimal("100"), Decimal("100")]
    assert not any(r.is_primary_touch for r in results)


def test_conversion_without_interactions_is_skipped(run_service, ingest_conversion, reference_data, t0):
    ingest_conversion(50, t0)
    run = _run(run_service, reference_data.tenant_id, "LAST_TOUCH")

    outcome = run_service.execute_run(run.id)

    assert outcome.status == RunStatusEnum.completed.value
    assert (outcome.conversions_total, outcome.attributed, outcome.skipped) == (1, 0, 1)
    assert run_service.list_results(reference_data.tenant_id, run.id) == []

    stored = run_service.get_run(reference_data.tenant_id, run.id)
    assert stored.status == RunStatusEnum.completed.value
    assert stored.conversions_skipped == 1
    assert stored.completed_at is not None


def test_interactions_outside_window_are_ignored(run_service, ingest_interaction, ingest_conversion, reference_data, t0):
    ingest_interaction("old-call", t0)
    ingest_conversion(80, t0 + timedelta(hours=25))
    run = _run(run_service, reference_data.tenant_id, "LINEAR", {"time_window_hours": 24})

    outcome = run_service.execute_run(run.id)
    assert outcome.skipped == 1


def test_last_touch_marks_latest_interaction(run_service, ingest_interaction, ingest_conversion, reference_data, t0):
    ingest_interaction("call-1", t0)
    latest = ingest_interaction("call-2", t0 + timedelta(hours=1))
    ingest_conversion(40, t0 + timedelta(hours=2))
    run = _run(run_service, reference_data.tenant_id, "LAST_TOUCH")

    run_service.execute_run(run.id)

    results = run_service.list_results(reference_data.tenant_id, run.id)
    primary = [r for r in results if r.is_primary_touch]
    assert [r.interaction_id for r in primary] == [latest.interaction_id]
    assert primary[0].attributed_amount == Decimal("40")
    assert sum(r.attributed_amount for r in results) == Decimal("40")


def test_time_decay_favours_recent_interactions(run_service, ingest_interaction, ingest_conversion, reference_data, t0):
    for i in range(3):
        ingest_interaction(f"call-{i}", t0 + timedelta(hours=i))
    ingest_conversion(300, t0 + timedelta(hours=4))
    run = _run(run_service, reference_data.tenant_id, "TIME_DECAY")

    run_service.execute_run(run.id)

    weights = [r.attribution_weight for r in run_service.list_results(reference_data.tenant_id, run.id)]
    assert weights[0] < weights[1] < weights[2]
    assert sum(weights) == pytest.approx(1.0)


def test_attributed_amount_rounds_half_up():
    assert attributed_amount(Decimal("100"), 1 / 3) == Decimal("33.333333")
    assert attributed_amount(Decimal("0.000001"), 0.5) == Decimal("0.000001")


def test_split_amount_gives_rounding_remainder_to_largest_weight():
    assert split_amount(Decimal("100"), [1 / 3, 1 / 3, 1 / 3]) == [
        Decimal("33.333333"),
        Decimal("33.333333"),
        Decimal("33.333334"),
    ]
    assert split_amount(Decimal("10"), [0.6, 0.2, 0.2]) == [Decimal("6"), Decimal("2"), Decimal("2")]
    shares = split_amount(Decimal("0.000001"), [0.5, 0.5])
    assert sum(shares) == Decimal("0.000001")
    assert split_amount(Decimal("5"), []) == []


def test_linear_shares_add_up_to_conversion_amount(run_service, ingest_interaction, ingest_conversion, reference_data, t0):
    for i in range(3):
        ingest_interaction(f"call-{i}", t0 + timedelta(hours=i))
    ingest_conversion(100, t0 + timedelta(hours=4))
    run = _run(run_service, reference_data.tenant_id, "LINEAR")

    run_service.execute_run(run.id)

    results = run_service.list_results(reference_data.tenant_id, run.id)
    assert [r.attributed_amount for r in results] == [
        Decimal("33.333333"),
        Decimal("33.333333"),
        Decimal("33.333334"),
    ]
    assert sum(r.attributed_amount for r in results) == Decimal("100")


def test_rerun_replaces_results(run_service, ingest_interaction, ingest_conversion, reference_data, t0):
    ingest_interaction("call-1", t0)
    ingest_conversion(90, t0 + timedelta(hours=3))
    run = _run(run_service, reference_data.tenant_id, "LINEAR")

    run_service.execute_run(run.id)
    run_service.execute_run(run.id)
    assert len(run_service.list_results(reference_data.tenant_id, run.id)) == 1

    ingest_interaction("call-2", t0 + timedelta(hours=1))
    ingest_interaction("call-3", t0 + timedelta(hours=2))
    run_service.execute_run(run.id)

    results = run_service.list_results(reference_data.tenant_id, run.id)
    assert len(results) == 3
    assert sum(r.attributed_amount for r in results) == Decimal("90")


def test_event_type_and_amount_filters(run_service, ingest_interaction, ingest_conversion, reference_data, t0):
    ingest_interaction("call-1", t0)
    ingest_conversion(100, t0 + timedelta(hours=1))
    ingest_conversion(10, t0 + timedelta(hours=1))
    ingest_conversion(100, t0 + timedelta(hours=1), event_type="refund")
    run = _run(
        run_service,
        reference_data.tenant_id,
        "LINEAR",
        {"event_types": ["purchase"], "min_purchase_amount": 50},
    )

    outcome = run_service.execute_run(run.id)
    assert (outcome.conversions_total, outcome.attributed) == (1, 1)


def test_conversions_of_other_tenants_are_not_attributed(
    run_service, ingestion_service, ingest_interaction, ingest_conversion, reference_data, t0
):
    from attribution_engine import schemas

    ingest_interaction("call-1", t0)
    ingest_conversion(100, t0 + timedelta(hours=1))
    ingestion_service.ingest_conversion(
        reference_data.other_tenant_id,
        schemas.IngestConversionRequest(
            event_source="billing",
            event_type="purchase",
            customer_identifiers=[{"type": "phone", "value": "+15550000001"}],
            currency="USD",
            amount_decimal=Decimal("70"),
            occurred_at=t0 + timedelta(hours=1),
        ),
    )
    run = _run(run_service, reference_data.tenant_id, "LINEAR")

    assert run_service.execute_run(run.id).conversions_total == 1


def test_parallel_execution_attributes_every_conversion(run_service, ingest_interaction, ingest_conversion, reference_data, t0):
    for i in range(4):
        phone = f"+1555000100{i}"
        ingest_interaction(f"call-{i}", t0, phone=phone)
        ingest_conversion(25, t0 + timedelta(hours=1), phone=phone)
    run = _run(run_service, reference_data.tenant_id, "LINEAR")

    outcome = run_service.execute_run(run.id, max_workers=2)

    assert (outcome.conversions_total, outcome.attributed, outcome.failed) == (4, 4, 0)
    assert len(run_service.list_results(reference_data.tenant_id, run.id)) == 4


# ----------------------------------------------------------------------
# Failures and cancellation
# ----------------------------------------------------------------------

def test_failing_conversion_is_counted_and_run_completes(
    run_service, ingest_interaction, ingest_conversion, reference_data, monkeypatch, t0
):
    ingest_interaction("call-1", t0)
    bad = ingest_conversion(10, t0 + timedelta(hours=1))
    ingest_conversion(20, t0 + timedelta(hours=2))
    run = _run(run_service, reference_data.tenant_id, "LINEAR")

    real_attribute = run_service._attribute_conversion

    def attribute(context, conversion):
        if conversion.id == bad.conversion_event_id:
            raise ValueError("corrupt journey")
        return real_attribute(context, conversion)

    monkeypatch.setattr(run_service, "_attribute_conversion", attribute)

    outcome = run_service.execute_run(run.id)

    assert outcome.status == RunStatusEnum.completed.value
    assert (outcome.attributed, outcome.failed) == (1, 1)
    stored = run_service.get_run(reference_data.tenant_id, run.id)
    assert stored.conversions_failed == 1
    assert stored.error_summary == [f"conversion {bad.conversion_event_id}: ValueError: corrupt journey"]


def test_error_summary_is_capped(session_factory, ingest_interaction, ingest_conversion, reference_data, monkeypatch, t0):
    from attribution_engine.services.attribution_run_service import AttributionRunService

    service = AttributionRunService(session_factory, max_error_summaries=1)
    ingest_interaction("call-1", t0)
    ingest_conversion(10, t0 + timedelta(hours=1))
    ingest_conversion(20, t0 + timedelta(hours=2))
    run = _run(service, reference_data.tenant_id, "LINEAR")

    def always_fail(context, conversion):
        raise ValueError("boom")

    monkeypatch.setattr(service, "_attribute_conversion", always_fail)

    outcome = service.execute_run(run.id)
    assert outcome.failed == 2
    assert len(outcome.errors) == 1


def test_run_level_failure_marks_run_failed(run_service, ingest_conversion, reference_data, monkeypatch, t0):
    ingest_conversion(10, t0)
    run = _run(run_service, reference_data.tenant_id, "LINEAR")

    def broken_load(context):
        raise RuntimeError("conversion query exploded")

    monkeypatch.setattr(run_service, "_load_conversions", broken_load)

    with pytest.raises(InternalError):
        run_service.execute_run(run.id)

    stored = run_service.get_run(reference_data.tenant_id, run.id)
    assert stored.status == RunStatusEnum.failed.value
    assert stored.error_summary == ["run: RuntimeError: conversion query exploded"]


def test_cancelled_before_start_processes_nothing(run_service, ingest_interaction, ingest_conversion, reference_data, t0):
    ingest_interaction("call-1", t0)
    ingest_conversion(10, t0 + timedelta(hours=1))
    run = _run(run_service, reference_data.tenant_id, "LINEAR")
    cancel = threading.Event()
    cancel.set()

    outcome = run_service.execute_run(run.id, cancel_event=cancel)

    assert outcome.cancelled is True
    assert outcome.status == RunStatusEnum.failed.value
    assert outcome.attributed == 0
    stored = run_service.get_run(reference_data.tenant_id, run.id)
    assert stored.cancelled is True
    assert stored.status == RunStatusEnum.failed.value


def test_cancellation_between_conversions(run_service, ingest_interaction, ingest_conversion, reference_data, t0):
    ingest_interaction("call-1", t0)
    for hour in (1, 2, 3):
        ingest_conversion(10, t0 + timedelta(hours=hour))
    run = _run(run_service, reference_data.tenant_id, "LINEAR")

    outcome = run_service.execute_run(run.id, cancel_event=CancelAfter(1))

    assert outcome.cancelled is True
    assert (outcome.conversions_total, outcome.attributed) == (3, 1)
    assert len(run_service.list_results(reference_data.tenant_id, run.id)) == 1


def test_running_run_cannot_be_claimed_twice(run_service, test_db_session, reference_data):
    run = _run(run_service, reference_data.tenant_id, "LINEAR")
    stored = test_db_session.get(AttributionRun, run.id)
    stored.status = RunStatusEnum.running.value
    test_db_session.commit()

    with pytest.raises(ConflictError):
        run_service.execute_run(run.id)


def test_executing_missing_run_is_not_found(run_service):
    with pytest.raises(NotFoundError):
        run_service.execute_run(424242)


def test_conflict_carries_run_id(run_service, test_db_session, reference_data):
    run = _run(run_service, reference_data.tenant_id, "LINEAR")
    stored = test_db_session.get(AttributionRun, run.id)
    stored.status = RunStatusEnum.running.value
    test_db_session.commit()

    with pytest.raises(ConflictError) as exc_info:
        run_service.execute_run(run.id)

    assert exc_info.value.details["run_id"] == run.id


def test_run_with_expired_lease_is_taken_over(run_service, ingest_interaction, ingest_conversion, test_db_session, reference_data, t0):
    ingest_interaction("call-1", t0)
    ingest_conversion(10, t0 + timedelta(hours=1))
    run = _run(run_service, reference_data.tenant_id, "LINEAR")
    # the executor that claimed it died two hours ago
    stored = test_db_session.get(AttributionRun, run.id)
    stored.status = RunStatusEnum.running.value
    stored.updated_at = utcnow() - timedelta(hours=2)
    test_db_session.commit()

    outcome = run_service.execute_run(run.id)

    assert outcome.status == RunStatusEnum.completed.value
    assert outcome.attributed == 1
    assert run_service.get_run(reference_data.tenant_id, run.id).status == RunStatusEnum.completed.value


def test_executor_renews_lease_between_conversions(session_factory, ingest_interaction, ingest_conversion, reference_data, monkeypatch, t0):
    from attribution_engine.services.attribution_run_service import AttributionRunService

    service = AttributionRunService(session_factory, lease_seconds=0)
    ingest_interaction("call-1", t0)
    ingest_conversion(10, t0 + timedelta(hours=1))
    ingest_conversion(20, t0 + timedelta(hours=2))
    run = _run(service, reference_data.tenant_id, "LINEAR")

    renewals = []
    real_renew = service._renew_lease

    def renew(run_id):
        renewals.append(run_id)
        real_renew(run_id)

    monkeypatch.setattr(service, "_renew_lease", renew)

    assert service.execute_run(run.id).attributed == 2
    assert renewals == [run.id, run.id]


def _stored_conversion_ids(test_db_session, run_id):
    # end the session's read snapshot so rows committed by the run are visible
    test_db_session.rollback()
    return set(
        test_db_session.execute(
            select(AttributionResult.conversion_event_id).where(AttributionResult.attribution_run_id == run_id)
        ).scalars()
    )


def test_cancelled_rerun_drops_results_of_unprocessed_conversions(
    run_service, ingest_interaction, ingest_conversion, test_db_session, reference_data, t0
):
    ingest_interaction("call-1", t0)
    conversions = [ingest_conversion(10, t0 + timedelta(hours=hour)) for hour in (1, 2, 3)]
    run = _run(run_service, reference_data.tenant_id, "LINEAR")
    run_service.execute_run(run.id)
    assert len(_stored_conversion_ids(test_db_session, run.id)) == 3

    outcome = run_service.execute_run(run.id, cancel_event=CancelAfter(1))

    assert outcome.cancelled is True
    assert _stored_conversion_ids(test_db_session, run.id) == {conversions[0].conversion_event_id}


def test_failed_conversion_on_rerun_drops_its_previous_results(
    run_service, ingest_interaction, ingest_conversion, test_db_session, reference_data, monkeypatch, t0
):
    ingest_interaction("call-1", t0)
    good = ingest_conversion(10, t0 + timedelta(hours=1))
    bad = ingest_conversion(20, t0 + timedelta(hours=2))
    run = _run(run_service, reference_data.tenant_id, "LINEAR")
    run_service.execute_run(run.id)

    real_attribute = run_service._attribute_conversion

    def attribute(context, conversion):
        if conversion.id == bad.conversion_event_id:
            raise ValueError("corrupt journey")
        return real_attribute(context, conversion)

    monkeypatch.setattr(run_service, "_attribute_conversion", attribute)

    outcome = run_service.execute_run(run.id)

    assert (outcome.attributed, outcome.failed) == (1, 1)
    assert _stored_conversion_ids(test_db_session, run.id) == {good.conversion_event_id}
