"""Agent, vendor and intent revenue rollups."""

from datetime import timedelta
from decimal import Decimal

import pytest

from attribution_engine.errors import InvalidInputError, NotFoundError
from attribution_engine.services.analytics_service import AnalyticsService


@pytest.fixture
def analytics(test_db_session, reference_data):
    return AnalyticsService(test_db_session)


@pytest.fixture
def journey(ingest_interaction, ingest_conversion, t0):
    """Two calls by AG-1 and a chat by AG-2 before one 300.00 purchase."""
    ingest_interaction(
        "call-1", t0, agent="AG-1", vendor_code="acme-bpo",
        primary_intent="upgrade", ended_at=t0 + timedelta(seconds=600),
    )
    ingest_interaction(
        "call-2", t0 + timedelta(minutes=30), agent="AG-1",
        primary_intent="upgrade", ended_at=t0 + timedelta(minutes=35),
    )
    ingest_interaction("chat-1", t0 + timedelta(hours=1), channel="chat", agent="AG-2", primary_intent="billing")
    return ingest_conversion(300, t0 + timedelta(hours=2))


def _execute(run_service, tenant_id, model_code):
    run = run_service.create_run(tenant_id, model_code, f"{model_code} run")
    run_service.execute_run(run.id)
    return run.id


def test_no_completed_run_gives_empty_rollups(analytics, reference_data, journey):
    assert analytics.agent_revenue(reference_data.tenant_id) == []
    assert analytics.vendor_comparison(reference_data.tenant_id) == []
    assert analytics.intent_revenue(reference_data.tenant_id) == []


def test_agent_revenue(analytics, run_service, reference_data, journey):
    _execute(run_service, reference_data.tenant_id, "LINEAR")

    rows = analytics.agent_revenue(reference_data.tenant_id)

    assert [r.agent_id for r in rows] == [reference_data.agent_id, reference_data.second_agent_id]
    top, second = rows
    assert top.total_attributed_amount == Decimal("200")
    assert top.total_conversions == 1
    assert top.avg_attributed_amount_per_interaction == Decimal("100")
    assert (top.vendor_name, top.team_name) == ("Acme BPO", "Renewals")
    assert second.total_attributed_amount == Decimal("100")
    assert second.vendor_id == reference_data.direct_vendor_id
    assert second.team_id is None


def test_agent_revenue_filters_by_vendor(analytics, run_service, reference_data, journey):
    _execute(run_service, reference_data.tenant_id, "LINEAR")

    rows = analytics.agent_revenue(reference_data.tenant_id, vendor_id=reference_data.direct_vendor_id)
    assert [r.agent_id for r in rows] == [reference_data.second_agent_id]


def test_vendor_comparison(analytics, run_service, reference_data, journey):
    _execute(run_service, reference_data.tenant_id, "LINEAR")

    rows = analytics.vendor_comparison(reference_data.tenant_id)

    assert [(r.name, r.total_attributed_amount, r.total_conversions) for r in rows] == [
        ("Acme BPO", Decimal("200"), 1),
        ("In-house", Decimal("100"), 1),
    ]
    assert rows[0].avg_conversion_value == Decimal("200")


def test_intent_revenue(analytics, run_service, reference_data, journey):
    _execute(run_service, reference_data.tenant_id, "LINEAR")

    upgrade, billing = analytics.intent_revenue(reference_data.tenant_id)

    assert upgrade.intent_code == "upgrade"
    assert upgrade.total_attributed_amount == Decimal("200")
    assert upgrade.avg_handle_time_seconds == pytest.approx(450)
    assert upgrade.profitability_score == pytest.approx(200 / 450 * 1000)
    assert billing.intent_code == "billing"
    assert billing.avg_handle_time_seconds == 0
    assert billing.profitability_score == 0


def test_rollups_read_one_run_only(analytics, run_service, reference_data, journey):
    linear_run = _execute(run_service, reference_data.tenant_id, "LINEAR")
    _execute(run_service, reference_data.tenant_id, "LINEAR")
    _execute(run_service, reference_data.tenant_id, "FIRST_TOUCH")

    latest = {r.agent_id: r.total_attributed_amount for r in analytics.agent_revenue(reference_data.tenant_id)}
    assert latest == {reference_data.agent_id: Decimal("300"), reference_data.second_agent_id: Decimal("0")}

    linear = analytics.vendor_comparison(reference_data.tenant_id, model_code="LINEAR")
    assert sum(r.total_attributed_amount for r in linear) == Decimal("300")

    pinned = analytics.agent_revenue(reference_data.tenant_id, run_id=linear_run)
    assert sum(r.total_attributed_amount for r in pinned) == Decimal("300")
    assert pinned[0].total_attributed_amount == Decimal("200")


def test_date_range_bounds_conversions(analytics, run_service, reference_data, journey, t0):
    _execute(run_service, reference_data.tenant_id, "LINEAR")

    assert analytics.vendor_comparison(reference_data.tenant_id, start=t0 + timedelta(hours=3)) == []
    inclusive = analytics.vendor_comparison(
        reference_data.tenant_id, start=t0 + timedelta(hours=2), end=t0 + timedelta(hours=2)
    )
    assert len(inclusive) == 2

    with pytest.raises(InvalidInputError):
        analytics.agent_revenue(reference_data.tenant_id, start=t0 + timedelta(hours=1), end=t0)


def test_run_scope_errors(analytics, run_service, reference_data, journey):
    run_id = _execute(run_service, reference_data.tenant_id, "LINEAR")

    with pytest.raises(NotFoundError):
        analytics.agent_revenue(reference_data.other_tenant_id, run_id=run_id)
    with pytest.raises(NotFoundError):
        analytics.agent_revenue(reference_data.tenant_id, model_code="U_SHAPED")
    with pytest.raises(InvalidInputError):
        analytics.agent_revenue(reference_data.tenant_id, model_code="FIRST_TOUCH", run_id=run_id)


def test_analytics_endpoints(client, tenant_headers, run_service, reference_data, journey, t0):
    run_id = _execute(run_service, reference_data.tenant_id, "LINEAR")

    agents = client.get("/v1/analytics/agents/revenue", headers=tenant_headers)
    assert agents.status_code == 200
    assert Decimal(agents.json()[0]["total_attributed_amount"]) == Decimal("200")

    vendors = client.get(
        "/v1/analytics/vendors/comparison",
        params={"from": t0.isoformat(), "to": (t0 + timedelta(days=1)).isoformat(), "run_id": run_id},
        headers=tenant_headers,
    )
    assert [v["name"] for v in vendors.json()] == ["Acme BPO", "In-house"]

    intents = client.get("/v1/analytics/intents/revenue", params={"model_code": "LINEAR"}, headers=tenant_headers)
    assert [i["intent_code"] for i in intents.json()] == ["upgrade", "billing"]

    missing = client.get("/v1/analytics/agents/revenue", params={"run_id": 987654}, headers=tenant_headers)
    assert missing.status_code == 404
    assert missing.json()["details"] == {"run_id": 987654}
