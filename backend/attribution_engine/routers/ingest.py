"""
Interaction and conversion ingestion API.

WHY:
- Telephony, chat and CRM/billing systems push touchpoints and revenue events
- Attribution runs only see what was ingested here

WHAT:
- POST /v1/interactions: one touchpoint, customer resolved from identifiers;
  redelivery of a known external_interaction_id answers 200 with the stored id
- POST /v1/conversions: one revenue event, identifiers mandatory

REFERENCES:
- attribution_engine/services/ingestion_service.py (all logic)
- attribution_engine/schemas.py:IngestInteractionRequest, IngestConversionRequest
"""

from fastapi import APIRouter, Depends, Response, status
from sqlalchemy.orm import Session

from .. import schemas
from ..database import get_db
from ..deps import get_tenant_id
from ..services.ingestion_service import IngestionService


router = APIRouter(
    prefix="/v1",
    tags=["Ingestion"],
    responses={
        400: {"model": schemas.ErrorResponse, "description": "Invalid input"},
        404: {"model": schemas.ErrorResponse, "description": "Unknown reference data"},
        500: {"model": schemas.ErrorResponse, "description": "Internal Server Error"},
    },
)


@router.post(
    "/interactions",
    response_model=schemas.IngestInteractionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Ingest an interaction",
)
def ingest_interaction(
    payload: schemas.IngestInteractionRequest,
    response: Response,
    tenant_id: int = Depends(get_tenant_id),
    db: Session = Depends(get_db),
):
    """Store a call/chat/email touchpoint.

    Unknown vendor codes and agent ids are stored as empty references;
    an unknown channel rejects the request.
    """
    result = IngestionService(db).ingest_interaction(tenant_id, payload)
    if not result.created:
        response.status_code = status.HTTP_200_OK
    return result


@router.post(
    "/conversions",
    response_model=schemas.IngestConversionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Ingest a conversion event",
)
def ingest_conversion(
    payload: schemas.IngestConversionRequest,
    tenant_id: int = Depends(get_tenant_id),
    db: Session = Depends(get_db),
):
    return IngestionService(db).ingest_conversion(tenant_id, payload)
