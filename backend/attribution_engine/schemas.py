"""Pydantic schemas for request/response payloads."""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator


# =============================================================================
# SHARED
# =============================================================================

class ErrorResponse(BaseModel):
    """Standard error response."""

    error: str = Field(description="Machine-readable error code", examples=["not_found"])
    detail: str = Field(description="Error message", examples=["Unknown channel: fax"])
    details: Optional[Dict[str, Any]] = Field(default=None, description="Offending values, when known")


class IdentifierIn(BaseModel):
    """A raw customer identifier as reported by a source system."""

    type: str = Field(min_length=1, description="Identifier type (phone, email, external_id, ...)", examples=["phone"])
    value: str = Field(min_length=1, description="Identifier value", examples=["+15551230000"])
    source_system: Optional[str] = Field(default=None, description="System that reported the identifier")
    is_primary: bool = Field(default=False, description="Preferred identifier of this type")

    @field_validator("type", "value")
    @classmethod
    def _strip(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("must not be blank")
        return v


# =============================================================================
# INGESTION
# =============================================================================

class ParticipantIn(BaseModel):
    """Someone taking part in an interaction (agent, customer, bot)."""

    participant_type: str = Field(description="agent, customer, bot, ...", examples=["agent"])
    external_agent_id: Optional[str] = Field(default=None, description="Agent id in the vendor's system")
    role: Optional[str] = Field(default=None, examples=["primary"])
    metadata: Optional[Dict[str, Any]] = None


class IngestInteractionRequest(BaseModel):
    """Payload for recording one customer touchpoint."""

    external_interaction_id: str = Field(min_length=1, description="Interaction id in the source system")
    channel: str = Field(description="Channel name (closed set)", examples=["call"])
    vendor_code: Optional[str] = Field(default=None, description="Vendor code within the tenant")
    customer_identifiers: List[IdentifierIn] = Field(default_factory=list)
    started_at: datetime
    ended_at: Optional[datetime] = None
    direction: Optional[str] = Field(default=None, examples=["inbound"])
    language: Optional[str] = Field(default=None, examples=["en"])
    transcript_location: Optional[str] = None
    primary_intent: Optional[str] = None
    secondary_intents: Optional[List[str]] = None
    outcome_prediction: Optional[str] = None
    purchase_probability: Optional[float] = Field(default=None, ge=0, le=1)
    participants: List[ParticipantIn] = Field(default_factory=list)
    raw_metadata: Optional[Dict[str, Any]] = None

    model_config = {
        "json_schema_extra": {
            "example": {
                "external_interaction_id": "call-8812",
                "channel": "call",
                "vendor_code": "acme-bpo",
                "customer_identifiers": [{"type": "phone", "value": "+15551230000"}],
                "started_at": "2026-03-02T10:00:00Z",
                "ended_at": "2026-03-02T10:07:30Z",
                "participants": [{"participant_type": "agent", "external_agent_id": "AG-17"}],
            }
        }
    }


class IngestInteractionResponse(BaseModel):
    interaction_id: int
    customer_id: Optional[int] = None
    created: bool = Field(default=True, description="False when the interaction was already stored")


class IngestConversionRequest(BaseModel):
    """Payload for recording a revenue event (purchase, renewal, ...)."""

    external_event_id: Optional[str] = None
    event_source: str = Field(description="Event source name (closed set)", examples=["billing"])
    event_type: str = Field(min_length=1, examples=["purchase"])
    customer_identifiers: List[IdentifierIn] = Field(default_factory=list)
    product_external_id: Optional[str] = None
    currency: str = Field(description="ISO currency code", examples=["USD"])
    amount_decimal: Decimal = Field(ge=0, description="Conversion value")
    occurred_at: datetime
    raw_payload: Optional[Dict[str, Any]] = None


class IngestConversionResponse(BaseModel):
    conversion_event_id: int
    customer_id: int


# =============================================================================
# ATTRIBUTION
# =============================================================================

class AttributionRunConfig(BaseModel):
    """Versioned configuration stored on an attribution run.

    Unknown keys are rejected so typos surface at creation time instead of
    silently falling back to defaults during execution.
    """

    version: Literal[1] = 1
    time_window_hours: int = Field(default=72, gt=0, description="Lookback window before each conversion")
    include_channels: List[str] = Field(default_factory=list, description="Channel allow-list; empty means all")
    event_types: List[str] = Field(default_factory=list, description="Conversion event types; empty means all")
    min_purchase_amount: float = Field(default=0, ge=0)

    model_config = {"extra": "forbid"}


class AttributionModelOut(BaseModel):
    code: str
    name: str
    description: str
    params: Dict[str, Any] = Field(default_factory=dict)


class CreateRunRequest(BaseModel):
    """Payload for creating a pending attribution run."""

    name: str = Field(min_length=1, examples=["March last-touch"])
    model_code: str = Field(description="Attribution model code", examples=["LAST_TOUCH"])
    description: Optional[str] = None
    config: Dict[str, Any] = Field(default_factory=dict)


class RunOut(BaseModel):
    id: int
    tenant_id: int
    model_id: int
    name: str
    description: Optional[str] = None
    config: Dict[str, Any]
    status: str
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    conversions_total: int = 0
    conversions_attributed: int = 0
    conversions_skipped: int = 0
    conversions_failed: int = 0
    error_summary: Optional[List[str]] = None
    cancelled: bool = False
    created_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class ExecuteRunResponse(BaseModel):
    """Result of an execute request: the run itself, or the queued job."""

    run: RunOut
    enqueued: bool = False
    job_id: Optional[str] = None


class ResultOut(BaseModel):
    id: int
    attribution_run_id: int
    conversion_event_id: int
    interaction_id: int
    customer_id: int
    agent_id: Optional[int] = None
    team_id: Optional[int] = None
    vendor_id: Optional[int] = None
    model_id: int
    attribution_weight: float
    attributed_amount: Decimal
    is_primary_touch: bool

    model_config = {"from_attributes": True}


# =============================================================================
# CUSTOMER JOURNEY
# =============================================================================

class JourneyIdentifierOut(BaseModel):
    type: str
    value: str
    source_system: Optional[str] = None
    is_primary: bool = False


class JourneyParticipantOut(BaseModel):
    participant_type: str
    agent_id: Optional[int] = None
    agent_name: Optional[str] = None
    role: Optional[str] = None


class JourneyInteractionOut(BaseModel):
    id: int
    external_interaction_id: str
    channel: str
    started_at: datetime
    ended_at: Optional[datetime] = None
    duration_seconds: Optional[int] = None
    direction: Optional[str] = None
    primary_intent: Optional[str] = None
    purchase_probability: Optional[float] = None
    participants: List[JourneyParticipantOut] = Field(default_factory=list)


class JourneyConversionOut(BaseModel):
    id: int
    event_type: str
    event_source: str
    currency: str
    amount_decimal: Decimal
    occurred_at: datetime


class CustomerJourneyOut(BaseModel):
    customer_id: int
    identifiers: List[JourneyIdentifierOut]
    interactions: List[JourneyInteractionOut]
    conversions: List[JourneyConversionOut]


# =============================================================================
# ANALYTICS
# =============================================================================

class AgentRevenueOut(BaseModel):
    """Credit earned by one agent within one attribution run."""

    agent_id: int
    name: str
    email: Optional[str] = None
    vendor_id: Optional[int] = None
    vendor_name: Optional[str] = None
    team_id: Optional[int] = None
    team_name: Optional[str] = None
    total_attributed_amount: Decimal
    total_conversions: int
    avg_attributed_amount_per_interaction: Decimal


class VendorRevenueOut(BaseModel):
    vendor_id: int
    name: str
    total_attributed_amount: Decimal
    total_conversions: int
    avg_conversion_value: Decimal


class IntentRevenueOut(BaseModel):
    intent_code: str
    total_attributed_amount: Decimal
    total_conversions: int
    avg_handle_time_seconds: float = Field(description="Average duration of the credited interactions")
    profitability_score: float = Field(description="Attributed amount per 1000 seconds of average handle time")


# =============================================================================
# WEBHOOKS
# =============================================================================

class CallWebhookPayload(BaseModel):
    """Call lifecycle event pushed by the telephony/conversation platform.

    Generic providers send ``event`` instead of ``event_type``; both are accepted.
    """

    event_type: str = Field(min_length=1, examples=["call.started"])
    call_id: str = Field(min_length=1)
    data: Dict[str, Any] = Field(default_factory=dict)
    timestamp: Optional[datetime] = None

    @model_validator(mode="before")
    @classmethod
    def _accept_event_alias(cls, values: Any) -> Any:
        if isinstance(values, dict) and "event_type" not in values and "event" in values:
            values = {**values, "event_type": values["event"]}
        return values


class WebhookAck(BaseModel):
    status: Literal["processed", "received"]
    message: Optional[str] = None
    interaction_id: Optional[int] = None
