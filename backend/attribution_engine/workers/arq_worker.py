"""ARQ async worker for attribution runs.

WHAT:
    Executes attribution runs queued by the API.

WHY:
    AttributionRunService.execute_run is synchronous and long-running. The
    worker runs it in a thread (asyncio.to_thread) so the event loop keeps
    heartbeating while conversions are processed.

USAGE:
    arq attribution_engine.workers.arq_worker.WorkerSettings

    # Or use the start script
    python -m attribution_engine.workers.start_arq_worker

REFERENCES:
    - https://arq-docs.helpmanual.io/
    - attribution_engine/services/attribution_run_service.py
    - attribution_engine/workers/arq_enqueue.py
"""

from __future__ import annotations

import asyncio
import logging
import threading
from datetime import datetime, timezone
from typing import Dict

from attribution_engine.database import SessionLocal
from attribution_engine.deps import get_settings
from attribution_engine.errors import AttributionEngineError, ConflictError, NotFoundError
from attribution_engine.services.attribution_run_service import AttributionRunService
from attribution_engine.telemetry import capture_exception, init_sentry
from attribution_engine.workers.arq_enqueue import QUEUE_NAME, get_redis_settings

logger = logging.getLogger(__name__)

JOB_TIMEOUT_SECONDS = 3600


def build_run_service() -> AttributionRunService:
    settings = get_settings()
    return AttributionRunService(
        SessionLocal,
        max_workers=settings.ATTRIBUTION_MAX_WORKERS,
        default_window_hours=settings.ATTRIBUTION_DEFAULT_WINDOW_HOURS,
        max_error_summaries=settings.ATTRIBUTION_MAX_ERROR_SUMMARIES,
        lease_seconds=settings.ATTRIBUTION_RUN_LEASE_SECONDS,
    )


# =============================================================================
# JOBS
# =============================================================================

async def process_attribution_run_job(ctx: Dict, run_id: int) -> Dict:
    """Execute one attribution run.

    A run that is missing or already running is reported, not retried.
    Run-level failures are already recorded on the run row by the service.
    """
    logger.info(f"[ARQ] Starting attribution run {run_id}")
    service = ctx.get("run_service") or build_run_service()
    cancel_event = ctx.setdefault("cancel_event", threading.Event())

    try:
        outcome = await asyncio.to_thread(service.execute_run, run_id, cancel_event)
    except (NotFoundError, ConflictError) as e:
        logger.warning(f"[ARQ] Attribution run {run_id} not executed: {e.message}")
        return {"success": False, "error": e.message}
    except AttributionEngineError as e:
        capture_exception(e, extra={"operation": "process_attribution_run_job", "run_id": run_id})
        return {"success": False, "error": e.message}

    return {
        "success": outcome.status == "completed",
        "status": outcome.status,
        "conversions_total": outcome.conversions_total,
        "attributed": outcome.attributed,
        "skipped": outcome.skipped,
        "failed": outcome.failed,
        "cancelled": outcome.cancelled,
    }


# =============================================================================
# LIFECYCLE
# =============================================================================

async def startup(ctx: Dict) -> None:
    """Worker startup - initialize resources and log config."""
    init_sentry()
    ctx["startup_time"] = datetime.now(timezone.utc)
    ctx["jobs_processed"] = 0
    ctx["cancel_event"] = threading.Event()
    ctx["run_service"] = build_run_service()
    logger.info(f"[ARQ] Attribution worker started (queue={QUEUE_NAME})")


async def shutdown(ctx: Dict) -> None:
    """Stop in-flight runs between conversions and log stats."""
    cancel_event = ctx.get("cancel_event")
    if cancel_event is not None:
        cancel_event.set()
    uptime = datetime.now(timezone.utc) - ctx.get("startup_time", datetime.now(timezone.utc))
    logger.info(f"[ARQ] Worker shutting down: {ctx.get('jobs_processed', 0)} job(s) in {uptime}")


async def on_job_end(ctx: Dict) -> None:
    ctx["jobs_processed"] = ctx.get("jobs_processed", 0) + 1


# =============================================================================
# WORKER SETTINGS
# =============================================================================

class WorkerSettings:
    """ARQ worker configuration.

    - max_jobs=4: runs are heavy; each may use its own thread pool
    - retry_jobs=False: a failed run is recorded as failed, re-execution is explicit
    """

    functions = [process_attribution_run_job]

    on_startup = startup
    on_shutdown = shutdown
    after_job_end = on_job_end

    redis_settings = get_redis_settings()
    queue_name = QUEUE_NAME

    max_jobs = 4
    job_timeout = JOB_TIMEOUT_SECONDS
    keep_result = 3600
    retry_jobs = False
    health_check_interval = 30
