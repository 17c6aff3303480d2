"""Call lifecycle webhook events."""

from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from attribution_engine import schemas
from attribution_engine.errors import InvalidInputError, NotFoundError
from attribution_engine.models import Interaction
from attribution_engine.services.call_event_service import CallEventService


@pytest.fixture
def call_events(test_db_session, reference_data):
    return CallEventService(test_db_session)


def _event(event_type, call_id="call-77", **data):
    return schemas.CallWebhookPayload(event_type=event_type, call_id=call_id, data=data)


def _start(call_events, tenant_id, t0, **data):
    data.setdefault("phone_number", "+15557770000")
    data.setdefault("started_at", t0.isoformat() + "Z")
    return call_events.handle(tenant_id, _event("call.started", **data))


def test_call_started_creates_interaction(call_events, test_db_session, reference_data, t0):
    ack = _start(call_events, reference_data.tenant_id, t0, agent_id="AG-1", email="caller@example.com")

    assert ack.status == "processed"
    interaction = test_db_session.get(Interaction, ack.interaction_id)
    assert interaction.external_interaction_id == "call-77"
    assert interaction.channel_id == reference_data.channel_ids["call"]
    assert interaction.started_at == t0
    assert interaction.direction == "inbound"
    assert interaction.language == "en"
    assert interaction.customer_id is not None
    assert [p.agent_id for p in interaction.participants] == [reference_data.agent_id]


def test_legacy_event_names_are_accepted(call_events, reference_data, t0):
    payload = schemas.CallWebhookPayload.model_validate(
        {"event": "call.start", "call_id": "call-9", "data": {"started_at": t0.isoformat()}}
    )
    assert call_events.handle(reference_data.tenant_id, payload).status == "processed"


def test_call_ended_sets_duration_and_outcome(call_events, test_db_session, reference_data, t0):
    started = _start(call_events, reference_data.tenant_id, t0)

    ack = call_events.handle(
        reference_data.tenant_id,
        _event(
            "call.ended",
            ended_at=(t0 + timedelta(minutes=5)).isoformat(),
            transcript_url="s3://transcripts/call-77.json",
            outcome="sale_likely",
        ),
    )

    assert ack.interaction_id == started.interaction_id
    interaction = test_db_session.get(Interaction, started.interaction_id)
    assert interaction.duration_seconds == 300
    assert interaction.transcript_location == "s3://transcripts/call-77.json"
    assert interaction.outcome_prediction == "sale_likely"


def test_call_ending_before_start_is_rejected(call_events, reference_data, t0):
    _start(call_events, reference_data.tenant_id, t0)
    with pytest.raises(InvalidInputError):
        call_events.handle(
            reference_data.tenant_id, _event("call.ended", ended_at=(t0 - timedelta(minutes=1)).isoformat())
        )


def test_intent_detected_updates_probability(call_events, test_db_session, reference_data, t0):
    started = _start(call_events, reference_data.tenant_id, t0)

    call_events.handle(
        reference_data.tenant_id,
        _event(
            "call.intent.detected",
            primary_intent="upgrade",
            secondary_intents=["billing"],
            purchase_probability=0.65,
        ),
    )

    interaction = test_db_session.get(Interaction, started.interaction_id)
    assert interaction.primary_intent == "upgrade"
    assert interaction.secondary_intents == ["billing"]
    assert interaction.purchase_probability == pytest.approx(0.65)


def test_intent_probability_out_of_range_is_rejected(call_events, reference_data, t0):
    _start(call_events, reference_data.tenant_id, t0)
    with pytest.raises(InvalidInputError):
        call_events.handle(reference_data.tenant_id, _event("call.intent.detected", purchase_probability=1.5))


def test_transcript_updated(call_events, test_db_session, reference_data, t0):
    started = _start(call_events, reference_data.tenant_id, t0)
    call_events.handle(reference_data.tenant_id, _event("call.transcript.updated", transcript_url="s3://t/2.json"))
    assert test_db_session.get(Interaction, started.interaction_id).transcript_location == "s3://t/2.json"


def test_update_for_unknown_call_is_not_found(call_events, reference_data):
    with pytest.raises(NotFoundError):
        call_events.handle(reference_data.tenant_id, _event("call.ended", call_id="never-started"))


def test_updates_do_not_cross_tenants(call_events, reference_data, t0):
    _start(call_events, reference_data.tenant_id, t0)
    with pytest.raises(NotFoundError):
        call_events.handle(reference_data.other_tenant_id, _event("call.ended"))


def test_unknown_event_types_are_acknowledged(call_events, reference_data):
    ack = call_events.handle(reference_data.tenant_id, _event("call.recording.ready"))
    assert ack.status == "received"
    assert ack.interaction_id is None


def test_redelivered_call_started_keeps_one_interaction(call_events, test_db_session, reference_data, t0):
    first = _start(call_events, reference_data.tenant_id, t0, agent_id="AG-1")
    again = _start(call_events, reference_data.tenant_id, t0, agent_id="AG-1")

    assert again.interaction_id == first.interaction_id
    count = test_db_session.execute(
        select(func.count()).select_from(Interaction).where(Interaction.external_interaction_id == "call-77")
    ).scalar_one()
    assert count == 1


def test_redelivered_call_started_gets_full_linear_credit(
    call_events, run_service, ingest_conversion, reference_data, t0
):
    started = _start(call_events, reference_data.tenant_id, t0)
    _start(call_events, reference_data.tenant_id, t0)
    ingest_conversion(100, t0 + timedelta(hours=1), phone="+15557770000")
    run = run_service.create_run(reference_data.tenant_id, "LINEAR", "linear", None)

    run_service.execute_run(run.id)

    (result,) = run_service.list_results(reference_data.tenant_id, run.id)
    assert result.interaction_id == started.interaction_id
    assert result.attribution_weight == pytest.approx(1.0)
    assert result.attributed_amount == Decimal("100")
