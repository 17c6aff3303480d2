"""
Call lifecycle webhooks.

WHY:
- The conversation platform reports call start, end, transcript and intent
  as separate events; each one updates the same interaction

WHAT:
- POST /v1/webhooks/calls: accepts `event_type` (or `event`) + `call_id` + `data`
- Unknown event types are acknowledged with status "received"

Signature verification happens upstream of this service.

REFERENCES:
- attribution_engine/services/call_event_service.py
"""

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from .. import schemas
from ..database import get_db
from ..deps import get_tenant_id
from ..services.call_event_service import CallEventService


router = APIRouter(prefix="/v1/webhooks", tags=["Webhooks"])


@router.post(
    "/calls",
    response_model=schemas.WebhookAck,
    responses={404: {"model": schemas.ErrorResponse, "description": "Unknown call"}},
    summary="Receive a call lifecycle event",
)
def receive_call_event(
    payload: schemas.CallWebhookPayload,
    tenant_id: int = Depends(get_tenant_id),
    db: Session = Depends(get_db),
):
    return CallEventService(db).handle(tenant_id, payload)
