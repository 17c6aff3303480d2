"""
Attribution runs API.

WHY:
- Analysts create a run (model + config), execute it, and read per-interaction credit
- Execution can take minutes, so it can be handed to the arq worker

WHAT:
- GET  /v1/attribution/models
- POST /v1/attribution/runs
- GET  /v1/attribution/runs/{run_id}
- GET  /v1/attribution/runs/{run_id}/results
- POST /v1/attribution/runs/{run_id}/execute[?background=true]

REFERENCES:
- attribution_engine/services/attribution_run_service.py (all logic)
- attribution_engine/services/attribution_models.py (catalog)
- attribution_engine/workers/arq_enqueue.py (background execution)
"""

import asyncio
import logging
from typing import List

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import sessionmaker

from .. import schemas
from ..database import get_session_factory
from ..deps import Settings, get_settings, get_tenant_id
from ..services.attribution_models import list_models
from ..services.attribution_run_service import AttributionRunService
from ..workers.arq_enqueue import enqueue_attribution_run

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/v1/attribution",
    tags=["Attribution"],
    responses={
        400: {"model": schemas.ErrorResponse, "description": "Invalid input"},
        404: {"model": schemas.ErrorResponse, "description": "Not Found"},
        409: {"model": schemas.ErrorResponse, "description": "Run already executing"},
        500: {"model": schemas.ErrorResponse, "description": "Internal Server Error"},
    },
)


def get_run_service(
    session_factory: sessionmaker = Depends(get_session_factory),
    settings: Settings = Depends(get_settings),
) -> AttributionRunService:
    return AttributionRunService(
        session_factory,
        max_workers=settings.ATTRIBUTION_MAX_WORKERS,
        default_window_hours=settings.ATTRIBUTION_DEFAULT_WINDOW_HOURS,
        max_error_summaries=settings.ATTRIBUTION_MAX_ERROR_SUMMARIES,
        lease_seconds=settings.ATTRIBUTION_RUN_LEASE_SECONDS,
    )


@router.get("/models", response_model=List[schemas.AttributionModelOut], summary="List attribution models")
def get_models():
    return [
        schemas.AttributionModelOut(
            code=definition.code.value,
            name=definition.name,
            description=definition.description,
            params=dict(definition.params),
        )
        for definition in list_models()
    ]


@router.post(
    "/runs",
    response_model=schemas.RunOut,
    status_code=status.HTTP_201_CREATED,
    summary="Create an attribution run",
)
def create_run(
    payload: schemas.CreateRunRequest,
    tenant_id: int = Depends(get_tenant_id),
    service: AttributionRunService = Depends(get_run_service),
):
    """Create a pending run. Unknown model codes answer 404, invalid config 400."""
    return service.create_run(
        tenant_id,
        payload.model_code,
        payload.name,
        payload.config,
        description=payload.description,
    )


@router.get("/runs/{run_id}", response_model=schemas.RunOut, summary="Get run status")
def get_run(
    run_id: int,
    tenant_id: int = Depends(get_tenant_id),
    service: AttributionRunService = Depends(get_run_service),
):
    return service.get_run(tenant_id, run_id)


@router.get("/runs/{run_id}/results", response_model=List[schemas.ResultOut], summary="List run results")
def get_run_results(
    run_id: int,
    tenant_id: int = Depends(get_tenant_id),
    service: AttributionRunService = Depends(get_run_service),
):
    return service.list_results(tenant_id, run_id)


@router.post(
    "/runs/{run_id}/execute",
    response_model=schemas.ExecuteRunResponse,
    summary="Execute an attribution run",
    description="""
    Executes the run inline and returns its final state, or with
    `background=true` queues it for the arq worker and returns immediately.
    Re-executing a finished run replaces its results.
    """,
)
async def execute_run(
    run_id: int,
    background: bool = Query(default=False),
    tenant_id: int = Depends(get_tenant_id),
    service: AttributionRunService = Depends(get_run_service),
):
    run = await asyncio.to_thread(service.get_run, tenant_id, run_id)

    if background:
        job = await enqueue_attribution_run(run.id)
        return schemas.ExecuteRunResponse(
            run=schemas.RunOut.model_validate(run),
            enqueued=job["status"] == "enqueued",
            job_id=job["job_id"],
        )

    await asyncio.to_thread(service.execute_run, run.id)
    run = await asyncio.to_thread(service.get_run, tenant_id, run_id)
    return schemas.ExecuteRunResponse(run=schemas.RunOut.model_validate(run))
