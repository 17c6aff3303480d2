"""Customer journey endpoint."""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from .. import schemas
from ..database import get_db
from ..deps import get_tenant_id
from ..services.identity_service import IdentityService


router = APIRouter(
    prefix="/v1/customers",
    tags=["Customers"],
    responses={
        404: {"model": schemas.ErrorResponse, "description": "Not Found"},
    },
)


@router.get(
    "/{customer_id}/journey",
    response_model=schemas.CustomerJourneyOut,
    summary="Get a customer's journey",
    description="""
    Identifiers (primary first), interactions with channel and participants,
    and conversion events of one customer, oldest first.

    `start`/`end` bound interactions by start time and conversions by
    occurrence time, inclusive.
    """,
)
def get_customer_journey(
    customer_id: int,
    start: Optional[datetime] = Query(default=None),
    end: Optional[datetime] = Query(default=None),
    tenant_id: int = Depends(get_tenant_id),
    db: Session = Depends(get_db),
):
    return IdentityService(db).get_customer_journey(customer_id, start=start, end=end, tenant_id=tenant_id)
