"""Pytest configuration for attribution engine integration tests

WHAT: Provides a SQLite database with seeded reference data, the services
    under test, and a TestClient wired to the same database
WHY: Every test gets its own database file, so runs (which open their own
    sessions and worker threads) see exactly what the test ingested
REFERENCES:
    - attribution_engine/main.py: FastAPI application
    - attribution_engine/database.py: Engine/session configuration
    - attribution_engine/services/: Services under test
"""

import os
import sys
from datetime import datetime, timedelta
from pathlib import Path
from types import SimpleNamespace
from typing import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session, sessionmaker

# Ensure backend is in path
BACKEND_ROOT = Path(__file__).resolve().parents[2]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

# Set test environment
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379")
os.environ.pop("SENTRY_DSN", None)


T0 = datetime(2026, 3, 10, 12, 0, 0)


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest.fixture
def test_db_engine(tmp_path):
    """File-backed SQLite engine (worker threads need a shared database)."""
    from attribution_engine.database import build_engine
    from attribution_engine.models import Base

    engine = build_engine(f"sqlite:///{tmp_path / 'attribution.db'}")
    Base.metadata.create_all(bind=engine)

    yield engine

    engine.dispose()


@pytest.fixture
def session_factory(test_db_engine) -> sessionmaker:
    return sessionmaker(bind=test_db_engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def test_db_session(session_factory) -> Generator[Session, None, None]:
    session = session_factory()
    yield session
    session.rollback()
    session.close()


# ============================================================================
# Reference Data
# ============================================================================

@pytest.fixture
def reference_data(test_db_session):
    """Seed one tenant with vendors/teams/agents plus the global closed sets."""
    from attribution_engine.models import (
        Agent,
        Channel,
        Currency,
        EventSource,
        Product,
        Team,
        Tenant,
        Vendor,
    )
    from attribution_engine.services.attribution_models import sync_model_catalog

    db = test_db_session

    tenant = Tenant(name="Acme Insurance", code="acme")
    other_tenant = Tenant(name="Globex", code="globex")
    db.add_all([tenant, other_tenant])
    db.flush()

    channels = {name: Channel(name=name) for name in ("call", "chat", "email")}
    db.add_all(channels.values())

    vendor = Vendor(tenant_id=tenant.id, name="Acme BPO", code="acme-bpo")
    direct_vendor = Vendor(tenant_id=tenant.id, name="In-house", code="direct")
    db.add_all([vendor, direct_vendor])
    db.flush()

    team = Team(tenant_id=tenant.id, vendor_id=vendor.id, name="Renewals")
    db.add(team)
    db.flush()

    agent = Agent(vendor_id=vendor.id, team_id=team.id, name="Dana Agent", external_agent_id="AG-1")
    second_agent = Agent(vendor_id=direct_vendor.id, team_id=None, name="Sam Agent", external_agent_id="AG-2")
    freelance_agent = Agent(vendor_id=None, team_id=None, name="Kim Agent", external_agent_id="AG-3")
    db.add_all([agent, second_agent, freelance_agent])

    event_source = EventSource(name="billing", type="billing")
    currency = Currency(code="USD", name="US Dollar")
    product = Product(external_product_id="SKU-1", name="Home policy", category="insurance")
    db.add_all([event_source, currency, product])

    sync_model_catalog(db)
    db.commit()

    return SimpleNamespace(
        tenant_id=tenant.id,
        other_tenant_id=other_tenant.id,
        channel_ids={name: c.id for name, c in channels.items()},
        vendor_id=vendor.id,
        direct_vendor_id=direct_vendor.id,
        team_id=team.id,
        agent_id=agent.id,
        second_agent_id=second_agent.id,
        freelance_agent_id=freelance_agent.id,
        event_source_id=event_source.id,
        currency_id=currency.id,
        product_id=product.id,
    )


# ============================================================================
# Service Fixtures
# ============================================================================

@pytest.fixture
def ingestion_service(test_db_session, reference_data):
    from attribution_engine.services.ingestion_service import IngestionService

    return IngestionService(test_db_session)


@pytest.fixture
def identity_service(test_db_session, reference_data):
    from attribution_engine.services.identity_service import IdentityService

    return IdentityService(test_db_session)


@pytest.fixture
def run_service(session_factory, reference_data):
    from attribution_engine.services.attribution_run_service import AttributionRunService

    return AttributionRunService(session_factory)


@pytest.fixture
def ingest_interaction(ingestion_service, reference_data):
    """Ingest an interaction with sensible defaults; returns the response."""
    from attribution_engine import schemas

    def _ingest(
        external_id: str,
        started_at: datetime,
        phone: str = "+15550000001",
        channel: str = "call",
        agent: str = None,
        **overrides,
    ):
        identifiers = overrides.pop(
            "customer_identifiers",
            [{"type": "phone", "value": phone}] if phone else [],
        )
        participants = overrides.pop(
            "participants",
            [{"participant_type": "agent", "external_agent_id": agent}] if agent else [],
        )
        request = schemas.IngestInteractionRequest(
            external_interaction_id=external_id,
            channel=channel,
            started_at=started_at,
            customer_identifiers=identifiers,
            participants=participants,
            **overrides,
        )
        return ingestion_service.ingest_interaction(reference_data.tenant_id, request)

    return _ingest


@pytest.fixture
def ingest_conversion(ingestion_service, reference_data):
    """Ingest a purchase with sensible defaults; returns the response."""
    from attribution_engine import schemas

    def _ingest(
        amount,
        occurred_at: datetime,
        phone: str = "+15550000001",
        event_type: str = "purchase",
        **overrides,
    ):
        identifiers = overrides.pop("customer_identifiers", [{"type": "phone", "value": phone}])
        request = schemas.IngestConversionRequest(
            event_source=overrides.pop("event_source", "billing"),
            event_type=event_type,
            customer_identifiers=identifiers,
            currency=overrides.pop("currency", "USD"),
            amount_decimal=amount,
            occurred_at=occurred_at,
            **overrides,
        )
        return ingestion_service.ingest_conversion(reference_data.tenant_id, request)

    return _ingest


# ============================================================================
# Application & Client Fixtures
# ============================================================================

@pytest.fixture
def app(test_db_session, session_factory, reference_data):
    """FastAPI application bound to the test database."""
    from attribution_engine.database import get_db, get_session_factory
    from attribution_engine.main import create_app

    test_app = create_app()

    def override_get_db():
        try:
            yield test_db_session
        finally:
            test_db_session.close()

    test_app.dependency_overrides[get_db] = override_get_db
    test_app.dependency_overrides[get_session_factory] = lambda: session_factory

    return test_app


@pytest.fixture
def client(app) -> TestClient:
    return TestClient(app)


@pytest.fixture
def tenant_headers(reference_data):
    return {"X-Tenant-ID": str(reference_data.tenant_id)}


@pytest.fixture
def t0() -> datetime:
    return T0


@pytest.fixture
def hours():
    return lambda n: timedelta(hours=n)
