"""Call lifecycle event processing.

WHAT: Applies call events pushed by the conversation-intelligence platform
    to interactions on the ``call`` channel.
WHY: A call is ingested when it starts, and its end time, transcript and
    detected intent arrive later as separate events. Attribution reads
    purchase_probability and duration from the same interaction row, so
    updates must land on the row created at call start.

EVENTS:
    call.started (alias call.start)  -> ingest interaction (identifiers from phone_number/email)
    call.ended   (alias call.end)    -> ended_at, duration_seconds, transcript_url, outcome
    call.transcript.updated          -> transcript_location
    call.intent.detected             -> primary_intent, secondary_intents, purchase_probability
    anything else                    -> acknowledged, not processed

Updates are keyed by (tenant_id, external_interaction_id = call_id).

REFERENCES:
    - attribution_engine/routers/webhooks.py (HTTP adapter)
    - attribution_engine/services/ingestion_service.py
"""

import logging
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .. import schemas
from ..errors import InvalidInputError, NotFoundError, TransactionFailureError
from ..models import IdentifierTypeEnum, Interaction, utcnow
from ..utils.dates import as_naive_utc
from .ingestion_service import IngestionService

logger = logging.getLogger(__name__)

CALL_CHANNEL = "call"

EVENT_ALIASES = {
    "call.start": "call.started",
    "call.end": "call.ended",
}


def _parse_timestamp(value: Any, fallback: Optional[datetime]) -> datetime:
    """ISO-8601 string from the event data, else the envelope timestamp, else now."""
    if isinstance(value, str):
        try:
            return as_naive_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
        except ValueError:
            logger.debug(f"[CALL_EVENTS] Unparseable timestamp {value!r}, using envelope time")
    if fallback is not None:
        return as_naive_utc(fallback)
    return utcnow()


def _string(data: Dict[str, Any], key: str, default: Optional[str] = None) -> Optional[str]:
    value = data.get(key)
    return value if isinstance(value, str) and value else default


class CallEventService:
    def __init__(self, db: Session):
        self.db = db

    def handle(self, tenant_id: int, payload: schemas.CallWebhookPayload) -> schemas.WebhookAck:
        event_type = EVENT_ALIASES.get(payload.event_type, payload.event_type)
        handler = {
            "call.started": self._call_started,
            "call.ended": self._call_ended,
            "call.transcript.updated": self._transcript_updated,
            "call.intent.detected": self._intent_detected,
        }.get(event_type)

        if handler is None:
            logger.info(f"[CALL_EVENTS] Ignoring event type {payload.event_type}", extra={"tenant_id": tenant_id})
            return schemas.WebhookAck(status="received", message="Event type not processed")

        interaction_id = handler(tenant_id, payload)
        return schemas.WebhookAck(status="processed", interaction_id=interaction_id)

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    def _call_started(self, tenant_id: int, payload: schemas.CallWebhookPayload) -> int:
        data = payload.data
        identifiers = []
        phone = _string(data, "phone_number")
        if phone:
            identifiers.append(schemas.IdentifierIn(type=IdentifierTypeEnum.phone.value, value=phone, source_system="telephony"))
        email = _string(data, "email")
        if email:
            identifiers.append(schemas.IdentifierIn(type=IdentifierTypeEnum.email.value, value=email, source_system="telephony"))

        participants = []
        agent_ref = _string(data, "agent_id")
        if agent_ref:
            participants.append(schemas.ParticipantIn(participant_type="agent", external_agent_id=agent_ref))

        request = schemas.IngestInteractionRequest(
            external_interaction_id=payload.call_id,
            channel=CALL_CHANNEL,
            vendor_code=_string(data, "vendor_code"),
            customer_identifiers=identifiers,
            started_at=_parse_timestamp(data.get("started_at"), payload.timestamp),
            direction=_string(data, "direction", "inbound"),
            language=_string(data, "language", "en"),
            participants=participants,
            raw_metadata=data or None,
        )
        return IngestionService(self.db).ingest_interaction(tenant_id, request).interaction_id

    def _call_ended(self, tenant_id: int, payload: schemas.CallWebhookPayload) -> int:
        data = payload.data
        interaction = self._get_interaction(tenant_id, payload.call_id)

        ended_at = _parse_timestamp(data.get("ended_at"), payload.timestamp)
        if ended_at < interaction.started_at:
            raise InvalidInputError(f"Call {payload.call_id} cannot end before it started")

        interaction.ended_at = ended_at
        interaction.duration_seconds = int((ended_at - interaction.started_at).total_seconds())
        transcript_url = _string(data, "transcript_url")
        if transcript_url:
            interaction.transcript_location = transcript_url
        outcome = _string(data, "outcome")
        if outcome:
            interaction.outcome_prediction = outcome
        return self._save(interaction, "call.ended")

    def _transcript_updated(self, tenant_id: int, payload: schemas.CallWebhookPayload) -> int:
        interaction = self._get_interaction(tenant_id, payload.call_id)
        transcript_url = _string(payload.data, "transcript_url")
        if transcript_url:
            interaction.transcript_location = transcript_url
        return self._save(interaction, "call.transcript.updated")

    def _intent_detected(self, tenant_id: int, payload: schemas.CallWebhookPayload) -> int:
        data = payload.data
        interaction = self._get_interaction(tenant_id, payload.call_id)

        primary_intent = _string(data, "primary_intent")
        if primary_intent:
            interaction.primary_intent = primary_intent

        secondary = data.get("secondary_intents")
        if isinstance(secondary, list) and secondary:
            interaction.secondary_intents = [str(intent) for intent in secondary]

        probability = data.get("purchase_probability")
        if isinstance(probability, (int, float)) and not isinstance(probability, bool):
            if not 0 <= probability <= 1:
                raise InvalidInputError("purchase_probability must be between 0 and 1")
            interaction.purchase_probability = float(probability)
        return self._save(interaction, "call.intent.detected")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _get_interaction(self, tenant_id: int, call_id: str) -> Interaction:
        interaction = self.db.execute(
            select(Interaction).where(
                Interaction.tenant_id == tenant_id, Interaction.external_interaction_id == call_id
            )
        ).scalar_one_or_none()
        if interaction is None:
            raise NotFoundError(f"No interaction for call {call_id}", details={"call_id": call_id})
        return interaction

    def _save(self, interaction: Interaction, event_type: str) -> int:
        try:
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.exception(f"[CALL_EVENTS] Failed to apply {event_type}")
            raise TransactionFailureError(f"Failed to apply {event_type}") from e
        logger.info(
            f"[CALL_EVENTS] Applied {event_type} to interaction {interaction.id}",
            extra={"tenant_id": interaction.tenant_id},
        )
        return interaction.id
