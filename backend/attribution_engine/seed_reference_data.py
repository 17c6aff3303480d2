"""Seed the global reference data the attribution core reads.

Channels, event sources and currencies are closed sets: ingestion rejects
names that are not in these tables. Attribution models are mirrored from
MODEL_CATALOG so runs can reference them by id.

Safe to run repeatedly; existing rows are left alone.

Usage:
    cd backend
    python -m attribution_engine.seed_reference_data
"""

import logging
from typing import Dict, List

from sqlalchemy import select
from sqlalchemy.orm import Session

from attribution_engine.database import get_sync_session
from attribution_engine.models import Channel, Currency, EventSource
from attribution_engine.services.attribution_models import sync_model_catalog

logger = logging.getLogger(__name__)

CHANNELS = {
    "call": "Phone calls (inbound and outbound)",
    "chat": "Live chat and messaging",
    "email": "Email threads",
    "web": "Web sessions and ad clicks",
}

EVENT_SOURCES = [
    ("billing", "billing"),
    ("crm", "crm"),
    ("ecommerce", "ecommerce"),
]

CURRENCIES = {
    "USD": "US Dollar",
    "EUR": "Euro",
    "GBP": "British Pound",
}


def seed(db: Session) -> Dict[str, int]:
    """Insert missing reference rows. Returns created counts per table; caller commits."""
    created = {"channels": 0, "event_sources": 0, "currencies": 0}

    existing_channels = set(db.execute(select(Channel.name)).scalars().all())
    for name, description in CHANNELS.items():
        if name not in existing_channels:
            db.add(Channel(name=name, description=description))
            created["channels"] += 1

    existing_sources = set(db.execute(select(EventSource.name)).scalars().all())
    for name, source_type in EVENT_SOURCES:
        if name not in existing_sources:
            db.add(EventSource(name=name, type=source_type))
            created["event_sources"] += 1

    existing_currencies = set(db.execute(select(Currency.code)).scalars().all())
    new_currencies: List[Currency] = [
        Currency(code=code, name=name) for code, name in CURRENCIES.items() if code not in existing_currencies
    ]
    db.add_all(new_currencies)
    created["currencies"] = len(new_currencies)

    created["attribution_models"] = sync_model_catalog(db)
    db.flush()
    return created


def main() -> None:
    logging.basicConfig(level=logging.INFO)
    with get_sync_session() as db:
        created = seed(db)
        db.commit()
    logger.info(f"[SEED] Reference data ready: {created}")


if __name__ == "__main__":
    main()
