"""SQLAlchemy ORM models and enums.

This module defines the attribution schema: reference data (channels, vendors,
agents, currencies, ...), the unified customer identity, ingested interactions
and conversion events, and the attribution runs/results they feed.

Timestamps are stored as naive UTC datetimes.
"""

import enum
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship


# Single Base used by the entire application
Base = declarative_base()

# SQLite only autoincrements INTEGER PRIMARY KEY columns
BigIntPK = BigInteger().with_variant(Integer, "sqlite")


def utcnow() -> datetime:
    """Naive UTC now, the format every DateTime column uses."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# Enums ---------------------------------------------------------

class RunStatusEnum(str, enum.Enum):
    pending = "pending"
    running = "running"
    completed = "completed"
    failed = "failed"


class IdentifierTypeEnum(str, enum.Enum):
    """Well-known identifier types. Other values are accepted as-is."""
    phone = "phone"
    email = "email"
    external_id = "external_id"


# Reference data -------------------------------------------------
# Closed sets managed outside the attribution core. The core only reads them.

class Tenant(Base):
    __tablename__ = "tenants"

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    name = Column(String, nullable=False)
    code = Column(String, unique=True, nullable=False)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=utcnow)

    def __str__(self):
        return self.name


class Channel(Base):
    """Communication channel (call, chat, email, web)."""
    __tablename__ = "channels"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, unique=True, nullable=False)
    description = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow)

    def __str__(self):
        return self.name


class Vendor(Base):
    """BPO vendor operating agents on behalf of a tenant."""
    __tablename__ = "vendors"
    __table_args__ = (
        UniqueConstraint("tenant_id", "code", name="uq_vendor_tenant_code"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(BigInteger, ForeignKey("tenants.id"), nullable=False)
    name = Column(String, nullable=False)
    code = Column(String, nullable=False)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=utcnow)

    def __str__(self):
        return f"{self.name} ({self.code})"


class Team(Base):
    __tablename__ = "teams"

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(BigInteger, ForeignKey("tenants.id"), nullable=False)
    vendor_id = Column(Integer, ForeignKey("vendors.id"), nullable=True)
    name = Column(String, nullable=False)
    created_at = Column(DateTime, default=utcnow)

    def __str__(self):
        return self.name


class Agent(Base):
    """Human agent handling interactions. Resolved from participants by external id."""
    __tablename__ = "agents"

    id = Column(Integer, primary_key=True, autoincrement=True)
    vendor_id = Column(Integer, ForeignKey("vendors.id"), nullable=True)
    team_id = Column(Integer, ForeignKey("teams.id"), nullable=True)
    name = Column(String, nullable=False)
    email = Column(String, nullable=True)
    external_agent_id = Column(String, unique=True, nullable=False)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=utcnow)

    team = relationship("Team")
    vendor = relationship("Vendor")

    def __str__(self):
        return f"{self.name} ({self.external_agent_id})"


class EventSource(Base):
    """Source system that emits conversions (CRM, billing, ...)."""
    __tablename__ = "event_sources"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, unique=True, nullable=False)
    type = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow)

    def __str__(self):
        return self.name


class Currency(Base):
    __tablename__ = "currencies"

    id = Column(Integer, primary_key=True, autoincrement=True)
    code = Column(String(3), unique=True, nullable=False)
    name = Column(String, nullable=True)

    def __str__(self):
        return self.code


class Product(Base):
    __tablename__ = "products"

    id = Column(Integer, primary_key=True, autoincrement=True)
    external_product_id = Column(String, unique=True, nullable=False)
    name = Column(String, nullable=False)
    category = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow)

    def __str__(self):
        return self.name


# Identity -------------------------------------------------------

class Customer(Base):
    """Unified customer identity.

    WHAT: Opaque entity that all identifiers, interactions and conversions point to
    WHY: Channels never agree on a single customer key; the identity store merges them here
    """
    __tablename__ = "customers"

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    tenant_id = Column(BigInteger, ForeignKey("tenants.id"), nullable=False, index=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    identifiers = relationship("CustomerIdentifier", back_populates="customer")

    def __str__(self):
        return f"Customer {self.id}"


class CustomerIdentifier(Base):
    """A raw identifier (phone, email, external id) owned by exactly one customer.

    WHAT: (tenant_id, type, value) is unique
    WHY: First writer wins; conflicting inserts are ignored and the owner re-read
    """
    __tablename__ = "customer_identifiers"
    __table_args__ = (
        UniqueConstraint("tenant_id", "type", "value", name="uq_customer_identifier_tenant_type_value"),
    )

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    tenant_id = Column(BigInteger, ForeignKey("tenants.id"), nullable=False)
    customer_id = Column(BigInteger, ForeignKey("customers.id"), nullable=False, index=True)
    type = Column(String, nullable=False)
    value = Column(String, nullable=False)
    source_system = Column(String, nullable=True)
    is_primary = Column(Boolean, default=False)
    created_at = Column(DateTime, default=utcnow)

    customer = relationship("Customer", back_populates="identifiers")

    def __str__(self):
        return f"{self.type}:{self.value}"


# Events ---------------------------------------------------------

class Interaction(Base):
    """A call, chat or other touchpoint, optionally linked to a customer."""
    __tablename__ = "interactions"
    __table_args__ = (
        UniqueConstraint("tenant_id", "external_interaction_id", name="uq_interaction_tenant_external"),
        Index("ix_interactions_customer_started", "customer_id", "started_at"),
    )

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    tenant_id = Column(BigInteger, ForeignKey("tenants.id"), nullable=False)
    # Nullable until a linking step resolves the customer
    customer_id = Column(BigInteger, ForeignKey("customers.id"), nullable=True)
    external_interaction_id = Column(String, nullable=False)
    channel_id = Column(Integer, ForeignKey("channels.id"), nullable=False)
    vendor_id = Column(Integer, ForeignKey("vendors.id"), nullable=True)

    started_at = Column(DateTime, nullable=False)
    ended_at = Column(DateTime, nullable=True)
    duration_seconds = Column(Integer, nullable=True)

    direction = Column(String, nullable=True)
    language = Column(String, nullable=True)
    transcript_location = Column(String, nullable=True)
    primary_intent = Column(String, nullable=True)
    secondary_intents = Column(JSON, nullable=True)
    outcome_prediction = Column(String, nullable=True)
    purchase_probability = Column(Float, nullable=True)
    raw_metadata = Column(JSON, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    channel = relationship("Channel")
    participants = relationship(
        "InteractionParticipant",
        back_populates="interaction",
        cascade="all, delete-orphan",
        order_by="InteractionParticipant.id",
    )

    def __str__(self):
        return f"Interaction {self.external_interaction_id} at {self.started_at}"


class InteractionParticipant(Base):
    __tablename__ = "interaction_participants"

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    interaction_id = Column(BigInteger, ForeignKey("interactions.id", ondelete="CASCADE"), nullable=False, index=True)
    participant_type = Column(String, nullable=False)
    agent_id = Column(Integer, ForeignKey("agents.id"), nullable=True)
    role = Column(String, nullable=True)
    metadata_ = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow)

    interaction = relationship("Interaction", back_populates="participants")
    agent = relationship("Agent")

    def __str__(self):
        return f"{self.participant_type} ({self.role})"


class ConversionEvent(Base):
    """Immutable monetizable outcome (purchase, renewal) to be attributed."""
    __tablename__ = "conversion_events"
    __table_args__ = (
        Index("ix_conversion_events_tenant_occurred", "tenant_id", "occurred_at"),
    )

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    tenant_id = Column(BigInteger, ForeignKey("tenants.id"), nullable=False)
    customer_id = Column(BigInteger, ForeignKey("customers.id"), nullable=False, index=True)
    event_source_id = Column(Integer, ForeignKey("event_sources.id"), nullable=False)
    external_event_id = Column(String, nullable=True)
    event_type = Column(String, nullable=False)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=True)
    currency_id = Column(Integer, ForeignKey("currencies.id"), nullable=False)
    amount_decimal = Column(Numeric(14, 2), nullable=False)
    occurred_at = Column(DateTime, nullable=False)
    raw_payload = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow)

    event_source = relationship("EventSource")
    currency = relationship("Currency")

    def __str__(self):
        return f"{self.event_type} {self.amount_decimal} at {self.occurred_at}"


# Attribution ----------------------------------------------------

class AttributionModel(Base):
    """Catalog row for a weighting strategy. Seeded from the in-code registry."""
    __tablename__ = "attribution_models"

    id = Column(Integer, primary_key=True, autoincrement=True)
    code = Column(String, unique=True, nullable=False)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    params = Column(JSON, default=dict)
    created_at = Column(DateTime, default=utcnow)

    def __str__(self):
        return self.code


class AttributionRun(Base):
    """One batch execution of a weighting model over a tenant's conversions.

    WHAT: Lifecycle pending -> running -> completed | failed, plus outcome counts
    WHY: Callers poll status and need to tell a clean run from one that skipped conversions
    """
    __tablename__ = "attribution_runs"

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    tenant_id = Column(BigInteger, ForeignKey("tenants.id"), nullable=False, index=True)
    model_id = Column(Integer, ForeignKey("attribution_models.id"), nullable=False)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    config = Column(JSON, nullable=False, default=dict)
    status = Column(String, nullable=False, default=RunStatusEnum.pending.value)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    # Outcome accounting (per execution)
    conversions_total = Column(Integer, default=0)
    conversions_attributed = Column(Integer, default=0)
    conversions_skipped = Column(Integer, default=0)
    conversions_failed = Column(Integer, default=0)
    error_summary = Column(JSON, nullable=True)
    cancelled = Column(Boolean, default=False)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    model = relationship("AttributionModel")
    results = relationship("AttributionResult", back_populates="run")

    def __str__(self):
        return f"{self.name} ({self.status})"


class AttributionResult(Base):
    """Credit assigned to one interaction for one conversion within one run."""
    __tablename__ = "attribution_results"
    __table_args__ = (
        UniqueConstraint(
            "attribution_run_id", "conversion_event_id", "interaction_id",
            name="uq_attribution_result_run_conversion_interaction",
        ),
        Index("ix_attribution_results_tenant_agent", "tenant_id", "agent_id"),
    )

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    tenant_id = Column(BigInteger, ForeignKey("tenants.id"), nullable=False)
    attribution_run_id = Column(BigInteger, ForeignKey("attribution_runs.id"), nullable=False)
    conversion_event_id = Column(BigInteger, ForeignKey("conversion_events.id"), nullable=False, index=True)
    interaction_id = Column(BigInteger, ForeignKey("interactions.id"), nullable=False)
    customer_id = Column(BigInteger, ForeignKey("customers.id"), nullable=False)
    agent_id = Column(Integer, ForeignKey("agents.id"), nullable=True)
    team_id = Column(Integer, ForeignKey("teams.id"), nullable=True)
    vendor_id = Column(Integer, ForeignKey("vendors.id"), nullable=True)
    model_id = Column(Integer, ForeignKey("attribution_models.id"), nullable=False)

    attribution_weight = Column(Float, nullable=False)
    attributed_amount = Column(Numeric(18, 6), nullable=False)
    is_primary_touch = Column(Boolean, default=False)
    created_at = Column(DateTime, default=utcnow)

    run = relationship("AttributionRun", back_populates="results")

    def __str__(self):
        return f"Run {self.attribution_run_id}: conversion {self.conversion_event_id} <- interaction {self.interaction_id} ({self.attribution_weight:.4f})"
