"""
Revenue analytics API.

WHY:
- Operations compare agents, vendors and call intents by the revenue they earned
- Numbers must come from one attribution run, never a sum across reruns

WHAT:
- GET /v1/analytics/agents/revenue
- GET /v1/analytics/vendors/comparison
- GET /v1/analytics/intents/revenue

Every endpoint takes from/to (conversion occurred_at, inclusive), model_code
and run_id. Without run_id the latest completed run (of model_code) is used.

REFERENCES:
- attribution_engine/services/analytics_service.py (all logic)
"""

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from .. import schemas
from ..database import get_db
from ..deps import get_tenant_id
from ..services.analytics_service import AnalyticsService


router = APIRouter(
    prefix="/v1/analytics",
    tags=["Analytics"],
    responses={
        400: {"model": schemas.ErrorResponse, "description": "Invalid input"},
        404: {"model": schemas.ErrorResponse, "description": "Unknown run or model"},
    },
)


@router.get(
    "/agents/revenue",
    response_model=List[schemas.AgentRevenueOut],
    summary="Revenue attributed per agent",
)
def get_agent_revenue(
    start: Optional[datetime] = Query(default=None, alias="from"),
    end: Optional[datetime] = Query(default=None, alias="to"),
    vendor_id: Optional[int] = Query(default=None, description="Only agents of this vendor"),
    model_code: Optional[str] = Query(default=None, description="Use the latest completed run of this model"),
    run_id: Optional[int] = Query(default=None),
    tenant_id: int = Depends(get_tenant_id),
    db: Session = Depends(get_db),
):
    return AnalyticsService(db).agent_revenue(
        tenant_id, start=start, end=end, vendor_id=vendor_id, model_code=model_code, run_id=run_id
    )


@router.get(
    "/vendors/comparison",
    response_model=List[schemas.VendorRevenueOut],
    summary="Revenue attributed per vendor",
)
def get_vendor_comparison(
    start: Optional[datetime] = Query(default=None, alias="from"),
    end: Optional[datetime] = Query(default=None, alias="to"),
    model_code: Optional[str] = Query(default=None),
    run_id: Optional[int] = Query(default=None),
    tenant_id: int = Depends(get_tenant_id),
    db: Session = Depends(get_db),
):
    return AnalyticsService(db).vendor_comparison(
        tenant_id, start=start, end=end, model_code=model_code, run_id=run_id
    )


@router.get(
    "/intents/revenue",
    response_model=List[schemas.IntentRevenueOut],
    summary="Revenue and handle time per call intent",
)
def get_intent_revenue(
    start: Optional[datetime] = Query(default=None, alias="from"),
    end: Optional[datetime] = Query(default=None, alias="to"),
    model_code: Optional[str] = Query(default=None),
    run_id: Optional[int] = Query(default=None),
    tenant_id: int = Depends(get_tenant_id),
    db: Session = Depends(get_db),
):
    """Intents without credited interactions are omitted."""
    return AnalyticsService(db).intent_revenue(
        tenant_id, start=start, end=end, model_code=model_code, run_id=run_id
    )
