"""Identity resolution service.

WHAT: Maps raw identifiers (phone, email, external ids) to one durable Customer
    per tenant, and serves the customer journey read path.
WHY: Calls, chats and billing events each know the customer by a different
    identifier. Attribution only works if they all land on the same customer.

HOW:
    - Lookup: the first identifier in request order that is already owned
      by a customer decides the match. Conflicting owners are logged, not merged.
    - Create: a new Customer plus its identifiers are written inside one
      SAVEPOINT. Identifier inserts use INSERT ... ON CONFLICT DO NOTHING on
      (tenant_id, type, value), so a concurrent writer that got there first
      shows up as a skipped row instead of an IntegrityError.
    - If every insert was skipped, the concurrent writer owns all our
      identifiers: the savepoint is rolled back (no empty customer left
      behind) and the winner is returned.

This service flushes but never commits. The caller owns the transaction.

REFERENCES:
    - attribution_engine/models.py (Customer, CustomerIdentifier)
    - attribution_engine/services/ingestion_service.py (caller)
"""

import logging
from datetime import datetime
from typing import Iterable, List, Optional, Tuple

from sqlalchemy import and_, or_, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session, joinedload, selectinload

from .. import schemas
from ..errors import InternalError, InvalidInputError, NotFoundError
from ..models import (
    ConversionEvent,
    Customer,
    CustomerIdentifier,
    Interaction,
    InteractionParticipant,
    utcnow,
)
from ..utils.dates import as_naive_utc

logger = logging.getLogger(__name__)

_INSERT_BY_DIALECT = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


def _identifier_key(identifier) -> Tuple[str, str]:
    return identifier.type, identifier.value


def _dedupe(identifiers: Iterable) -> list:
    """Drop repeated (type, value) pairs, keeping the first occurrence."""
    seen = set()
    unique = []
    for identifier in identifiers or []:
        key = _identifier_key(identifier)
        if key in seen:
            continue
        seen.add(key)
        unique.append(identifier)
    return unique


class IdentityService:
    """Resolve identifiers to customers within one session."""

    def __init__(self, db: Session):
        self.db = db

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def resolve(self, tenant_id: int, identifiers: List[schemas.IdentifierIn]) -> Customer:
        """Return the customer owning any of ``identifiers``, creating one if none does.

        Raises:
            InvalidInputError: no identifiers given
            InternalError: every identifier conflicted but no owner could be re-read
        """
        unique = _dedupe(identifiers)
        if not unique:
            raise InvalidInputError("At least one customer identifier is required")

        existing = self.find_customer(tenant_id, unique)
        if existing is not None:
            return existing

        savepoint = self.db.begin_nested()
        customer = Customer(tenant_id=tenant_id)
        self.db.add(customer)
        self.db.flush()

        inserted = self._insert_identifiers(tenant_id, customer.id, unique)
        if inserted == 0:
            # A concurrent writer claimed every identifier after our lookup
            savepoint.rollback()
            winner = self.find_customer(tenant_id, unique)
            if winner is None:
                raise InternalError(
                    "Identifier insert conflicted but no owning customer was found",
                    details={"tenant_id": tenant_id},
                )
            logger.info(
                "[IDENTITY] Lost creation race, using existing customer",
                extra={"tenant_id": tenant_id, "customer_id": winner.id},
            )
            return winner

        savepoint.commit()
        logger.debug(
            "[IDENTITY] Created customer",
            extra={"tenant_id": tenant_id, "customer_id": customer.id, "identifiers": inserted},
        )
        return customer

    def find_customer(self, tenant_id: int, identifiers: List) -> Optional[Customer]:
        """First-match-wins lookup in request order."""
        keys = [_identifier_key(i) for i in identifiers]
        if not keys:
            return None

        rows = self.db.execute(
            select(CustomerIdentifier.type, CustomerIdentifier.value, CustomerIdentifier.customer_id).where(
                CustomerIdentifier.tenant_id == tenant_id,
                or_(*[and_(CustomerIdentifier.type == t, CustomerIdentifier.value == v) for t, v in keys]),
            )
        ).all()
        owners = {(row.type, row.value): row.customer_id for row in rows}

        distinct_owners = set(owners.values())
        if len(distinct_owners) > 1:
            logger.warning(
                "[IDENTITY] Identifiers map to multiple customers; first match wins",
                extra={"tenant_id": tenant_id, "customer_ids": sorted(distinct_owners)},
            )

        for key in keys:
            if key in owners:
                return self.db.get(Customer, owners[key])
        return None

    def attach_identifiers(self, customer: Customer, identifiers: List[schemas.IdentifierIn]) -> int:
        """Add identifiers to an existing customer. Returns the number of new rows."""
        unique = _dedupe(identifiers)
        if not unique:
            return 0
        return self._insert_identifiers(customer.tenant_id, customer.id, unique)

    def _insert_identifiers(self, tenant_id: int, customer_id: int, identifiers: List) -> int:
        dialect = self.db.get_bind().dialect.name
        insert = _INSERT_BY_DIALECT.get(dialect)
        if insert is None:
            raise InternalError(f"Identifier upsert is not supported on {dialect}")

        inserted = 0
        now = utcnow()
        for identifier in identifiers:
            stmt = (
                insert(CustomerIdentifier.__table__)
                .values(
                    tenant_id=tenant_id,
                    customer_id=customer_id,
                    type=identifier.type,
                    value=identifier.value,
                    source_system=getattr(identifier, "source_system", None),
                    is_primary=bool(getattr(identifier, "is_primary", False)),
                    created_at=now,
                )
                .on_conflict_do_nothing(index_elements=["tenant_id", "type", "value"])
            )
            result = self.db.execute(stmt)
            inserted += result.rowcount or 0
        return inserted

    # ------------------------------------------------------------------
    # Journey read path
    # ------------------------------------------------------------------

    def get_customer_journey(
        self,
        customer_id: int,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        tenant_id: Optional[int] = None,
    ) -> schemas.CustomerJourneyOut:
        """Identifiers, interactions and conversions of one customer, oldest first.

        ``start``/``end`` bound interactions by started_at and conversions by
        occurred_at, both inclusive. When ``tenant_id`` is given a customer of
        another tenant is reported as missing.
        """
        customer = self.db.get(Customer, customer_id)
        if customer is None or (tenant_id is not None and customer.tenant_id != tenant_id):
            raise NotFoundError(f"Customer {customer_id} not found")

        start = as_naive_utc(start)
        end = as_naive_utc(end)

        identifiers = self.db.execute(
            select(CustomerIdentifier)
            .where(CustomerIdentifier.customer_id == customer_id)
            .order_by(
                CustomerIdentifier.is_primary.desc(),
                CustomerIdentifier.created_at.asc(),
                CustomerIdentifier.id.asc(),
            )
        ).scalars().all()

        interaction_query = (
            select(Interaction)
            .options(
                joinedload(Interaction.channel),
                selectinload(Interaction.participants).joinedload(InteractionParticipant.agent),
            )
            .where(Interaction.customer_id == customer_id)
        )
        if start is not None:
            interaction_query = interaction_query.where(Interaction.started_at >= start)
        if end is not None:
            interaction_query = interaction_query.where(Interaction.started_at <= end)
        interactions = self.db.execute(
            interaction_query.order_by(Interaction.started_at.asc(), Interaction.id.asc())
        ).scalars().all()

        conversion_query = (
            select(ConversionEvent)
            .options(joinedload(ConversionEvent.event_source), joinedload(ConversionEvent.currency))
            .where(ConversionEvent.customer_id == customer_id)
        )
        if start is not None:
            conversion_query = conversion_query.where(ConversionEvent.occurred_at >= start)
        if end is not None:
            conversion_query = conversion_query.where(ConversionEvent.occurred_at <= end)
        conversions = self.db.execute(
            conversion_query.order_by(ConversionEvent.occurred_at.asc(), ConversionEvent.id.asc())
        ).scalars().all()

        return schemas.CustomerJourneyOut(
            customer_id=customer_id,
            identifiers=[
                schemas.JourneyIdentifierOut(
                    type=i.type,
                    value=i.value,
                    source_system=i.source_system,
                    is_primary=bool(i.is_primary),
                )
                for i in identifiers
            ],
            interactions=[
                schemas.JourneyInteractionOut(
                    id=i.id,
                    external_interaction_id=i.external_interaction_id,
                    channel=i.channel.name,
                    started_at=i.started_at,
                    ended_at=i.ended_at,
                    duration_seconds=i.duration_seconds,
                    direction=i.direction,
                    primary_intent=i.primary_intent,
                    purchase_probability=i.purchase_probability,
                    participants=[
                        schemas.JourneyParticipantOut(
                            participant_type=p.participant_type,
                            agent_id=p.agent_id,
                            agent_name=p.agent.name if p.agent else None,
                            role=p.role,
                        )
                        for p in i.participants
                    ],
                )
                for i in interactions
            ],
            conversions=[
                schemas.JourneyConversionOut(
                    id=c.id,
                    event_type=c.event_type,
                    event_source=c.event_source.name,
                    currency=c.currency.code,
                    amount_decimal=c.amount_decimal,
                    occurred_at=c.occurred_at,
                )
                for c in conversions
            ],
        )
