"""Event ingestion service.

WHAT: Persists interactions (calls, chats, ...) and conversion events, resolving
    the customer through IdentityService and reference names through
    ReferenceDataService.
WHY: Attribution runs read only what ingestion wrote. Every ingest is one
    transaction, so a half-written interaction (row without participants,
    customer without identifiers) never becomes visible to a run.

Error mapping:
    - unknown tenant / channel / event source / currency -> NotFoundError
    - interaction already stored under (tenant_id, external_interaction_id) ->
      the existing row is returned with created=False, nothing is written
    - unknown vendor / product / agent -> stored as NULL, not an error
    - no identifiers on a conversion, ended_at before started_at -> InvalidInputError
    - SQLAlchemy failure -> TransactionFailureError (after rollback)

REFERENCES:
    - attribution_engine/services/identity_service.py
    - attribution_engine/services/reference_data.py
    - attribution_engine/routers/ingest.py (HTTP adapter)
"""

import logging
from typing import Callable, TypeVar

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from .. import schemas
from ..errors import (
    AttributionEngineError,
    InternalError,
    InvalidInputError,
    NotFoundError,
    TransactionFailureError,
)
from ..models import ConversionEvent, Interaction, InteractionParticipant, Tenant
from ..utils.dates import as_naive_utc
from .identity_service import IdentityService
from .reference_data import ReferenceDataService

logger = logging.getLogger(__name__)

T = TypeVar("T")


class IngestionService:
    """Write path for interactions and conversion events."""

    def __init__(self, db: Session):
        self.db = db
        self.identity = IdentityService(db)
        self.reference = ReferenceDataService(db)

    def ingest_interaction(
        self, tenant_id: int, request: schemas.IngestInteractionRequest
    ) -> schemas.IngestInteractionResponse:
        """Record one touchpoint. Customer resolution is skipped when no identifiers are sent."""
        return self._in_transaction("interaction", lambda: self._write_interaction(tenant_id, request))

    def ingest_conversion(
        self, tenant_id: int, request: schemas.IngestConversionRequest
    ) -> schemas.IngestConversionResponse:
        """Record one revenue event. Conversion events are immutable once written."""
        return self._in_transaction("conversion", lambda: self._write_conversion(tenant_id, request))

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _in_transaction(self, kind: str, write: Callable[[], T]) -> T:
        try:
            response = write()
            self.db.commit()
            return response
        except AttributionEngineError:
            self.db.rollback()
            raise
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.exception(f"[INGEST] Failed to store {kind}")
            raise TransactionFailureError(f"Failed to store {kind}: {e.__class__.__name__}") from e
        except Exception as e:
            self.db.rollback()
            logger.exception(f"[INGEST] Unexpected error storing {kind}")
            raise InternalError(f"Unexpected error storing {kind}") from e

    def _write_interaction(
        self, tenant_id: int, request: schemas.IngestInteractionRequest
    ) -> schemas.IngestInteractionResponse:
        self._require_tenant(tenant_id)
        started_at = as_naive_utc(request.started_at)
        ended_at = as_naive_utc(request.ended_at)
        if ended_at is not None and ended_at < started_at:
            raise InvalidInputError("ended_at must not be earlier than started_at")

        existing = self._find_interaction(tenant_id, request.external_interaction_id)
        if existing is not None:
            return self._already_stored(existing)

        channel_id = self.reference.channel_id(request.channel)
        if channel_id is None:
            raise NotFoundError(f"Unknown channel: {request.channel}", details={"channel": request.channel})

        vendor_id = None
        if request.vendor_code:
            vendor_id = self.reference.vendor_id(tenant_id, request.vendor_code)
            if vendor_id is None:
                logger.info(
                    "[INGEST] Unknown vendor code, storing interaction without vendor",
                    extra={"tenant_id": tenant_id, "vendor_code": request.vendor_code},
                )

        customer_id = None
        if request.customer_identifiers:
            customer_id = self.identity.resolve(tenant_id, request.customer_identifiers).id

        duration_seconds = None
        if ended_at is not None:
            duration_seconds = int((ended_at - started_at).total_seconds())

        interaction = Interaction(
            tenant_id=tenant_id,
            customer_id=customer_id,
            external_interaction_id=request.external_interaction_id,
            channel_id=channel_id,
            vendor_id=vendor_id,
            started_at=started_at,
            ended_at=ended_at,
            duration_seconds=duration_seconds,
            direction=request.direction,
            language=request.language,
            transcript_location=request.transcript_location,
            primary_intent=request.primary_intent,
            secondary_intents=request.secondary_intents or None,
            outcome_prediction=request.outcome_prediction,
            purchase_probability=request.purchase_probability,
            raw_metadata=request.raw_metadata,
        )
        for participant in request.participants:
            agent_id = None
            if participant.external_agent_id:
                agent_id = self.reference.agent_id(participant.external_agent_id)
            interaction.participants.append(
                InteractionParticipant(
                    participant_type=participant.participant_type,
                    agent_id=agent_id,
                    role=participant.role,
                    metadata_=participant.metadata,
                )
            )

        # Concurrent duplicates surface as a unique violation on (tenant_id, external_interaction_id)
        savepoint = self.db.begin_nested()
        self.db.add(interaction)
        try:
            self.db.flush()
        except IntegrityError:
            savepoint.rollback()
            existing = self._find_interaction(tenant_id, request.external_interaction_id)
            if existing is None:
                raise
            return self._already_stored(existing)
        savepoint.commit()

        logger.info(
            f"[INGEST] Stored interaction {interaction.id}",
            extra={"tenant_id": tenant_id, "channel": request.channel, "customer_id": customer_id},
        )
        return schemas.IngestInteractionResponse(interaction_id=interaction.id, customer_id=customer_id)

    def _write_conversion(
        self, tenant_id: int, request: schemas.IngestConversionRequest
    ) -> schemas.IngestConversionResponse:
        self._require_tenant(tenant_id)
        if not request.customer_identifiers:
            raise InvalidInputError("Conversion events require at least one customer identifier")
        if request.amount_decimal < 0:
            raise InvalidInputError("amount_decimal must not be negative")

        event_source_id = self.reference.event_source_id(request.event_source)
        if event_source_id is None:
            raise NotFoundError(
                f"Unknown event source: {request.event_source}", details={"event_source": request.event_source}
            )

        currency_id = self.reference.currency_id(request.currency)
        if currency_id is None:
            raise NotFoundError(f"Unknown currency: {request.currency}", details={"currency": request.currency})

        product_id = None
        if request.product_external_id:
            product_id = self.reference.product_id(request.product_external_id)

        customer = self.identity.resolve(tenant_id, request.customer_identifiers)

        conversion = ConversionEvent(
            tenant_id=tenant_id,
            customer_id=customer.id,
            event_source_id=event_source_id,
            external_event_id=request.external_event_id,
            event_type=request.event_type,
            product_id=product_id,
            currency_id=currency_id,
            amount_decimal=request.amount_decimal,
            occurred_at=as_naive_utc(request.occurred_at),
            raw_payload=request.raw_payload,
        )
        self.db.add(conversion)
        self.db.flush()

        logger.info(
            f"[INGEST] Stored conversion {conversion.id}",
            extra={"tenant_id": tenant_id, "event_type": request.event_type, "customer_id": customer.id},
        )
        return schemas.IngestConversionResponse(conversion_event_id=conversion.id, customer_id=customer.id)

    def _require_tenant(self, tenant_id: int) -> None:
        if self.db.get(Tenant, tenant_id) is None:
            raise NotFoundError(f"Tenant {tenant_id} not found", details={"tenant_id": tenant_id})

    def _find_interaction(self, tenant_id: int, external_interaction_id: str):
        return self.db.execute(
            select(Interaction).where(
                Interaction.tenant_id == tenant_id,
                Interaction.external_interaction_id == external_interaction_id,
            )
        ).scalar_one_or_none()

    @staticmethod
    def _already_stored(interaction: Interaction) -> schemas.IngestInteractionResponse:
        logger.info(
            f"[INGEST] Interaction {interaction.external_interaction_id} already stored as {interaction.id}",
            extra={"tenant_id": interaction.tenant_id},
        )
        return schemas.IngestInteractionResponse(
            interaction_id=interaction.id,
            customer_id=interaction.customer_id,
            created=False,
        )
