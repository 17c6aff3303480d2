"""Reference data lookups.

WHAT: Resolves names/codes from ingestion payloads to reference row ids.
WHY: Channels, vendors, event sources, currencies, products and agents are
    closed sets owned by other systems. The attribution core only needs their
    ids, and a missing row is either a hard error (channel, currency, event
    source) or a soft miss (vendor, product, agent). Callers decide which;
    every lookup here returns ``None`` on a miss.

REFERENCES:
    - attribution_engine/models.py (Channel, Vendor, EventSource, Currency, Product, Agent)
    - attribution_engine/services/ingestion_service.py (consumer)
"""

from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..models import Agent, Channel, Currency, EventSource, Product, Vendor


class ReferenceDataService:
    """Id lookups against the reference tables for one session."""

    def __init__(self, db: Session):
        self.db = db

    def channel_id(self, name: str) -> Optional[int]:
        return self.db.execute(select(Channel.id).where(Channel.name == name)).scalar_one_or_none()

    def vendor_id(self, tenant_id: int, code: str) -> Optional[int]:
        return self.db.execute(
            select(Vendor.id).where(Vendor.tenant_id == tenant_id, Vendor.code == code)
        ).scalar_one_or_none()

    def event_source_id(self, name: str) -> Optional[int]:
        return self.db.execute(select(EventSource.id).where(EventSource.name == name)).scalar_one_or_none()

    def currency_id(self, code: str) -> Optional[int]:
        return self.db.execute(
            select(Currency.id).where(Currency.code == code.upper())
        ).scalar_one_or_none()

    def product_id(self, external_product_id: str) -> Optional[int]:
        return self.db.execute(
            select(Product.id).where(Product.external_product_id == external_product_id)
        ).scalar_one_or_none()

    def agent_id(self, external_agent_id: str) -> Optional[int]:
        return self.db.execute(
            select(Agent.id).where(Agent.external_agent_id == external_agent_id)
        ).scalar_one_or_none()
