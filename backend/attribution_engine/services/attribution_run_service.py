"""Attribution run controller.

WHAT:
    Creates attribution runs and executes them: for every matching conversion
    event, build the journey, compute weights, and write AttributionResult rows.

WHY:
    Runs are long (one journey query per conversion) and are normally executed
    by the arq worker. They must survive individual bad conversions, report
    exactly what happened, and be safe to re-run.

LIFECYCLE:
    pending -> running -> completed | failed

    - Claiming is a single UPDATE ... WHERE status != 'running'; losing the
      claim means another executor owns the run (ConflictError).
    - A claim is a lease: the executor refreshes updated_at between
      conversions. A run left `running` with updated_at older than
      lease_seconds (crashed worker) is taken over by the next claim.
    - Each conversion is its own transaction in its own session. It first
      deletes this run's previous rows for the conversion, then inserts the
      new ones, so re-running replaces results instead of duplicating them.
    - A failing conversion is logged, sent to Sentry and counted; the run
      continues and still ends `completed`.
    - A failure outside per-conversion work (loading the run or conversions,
      writing the final status) ends the run `failed` and is re-raised.
    - Cancellation is checked between conversions. A cancelled run ends
      `failed` with cancelled=True.
    - A cancelled run, or one with failed conversions, keeps only the rows of
      conversions settled in this execution. Rows left over from a previous
      execution for unprocessed or failed conversions are purged.

REFERENCES:
    - attribution_engine/services/journey_builder.py
    - attribution_engine/services/attribution_models.py
    - attribution_engine/workers/arq_worker.py (background executor)
    - attribution_engine/routers/attribution.py (HTTP adapter)
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from datetime import datetime, timedelta
from typing import Any, Dict, List, NamedTuple, Optional, Sequence, Set

from pydantic import ValidationError
from sqlalchemy import delete, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from .. import schemas
from ..errors import (
    AttributionEngineError,
    ConflictError,
    InternalError,
    InvalidInputError,
    NotFoundError,
    TransactionFailureError,
)
from ..models import (
    AttributionModel,
    AttributionResult,
    AttributionRun,
    ConversionEvent,
    Interaction,
    RunStatusEnum,
    Tenant,
    utcnow,
)
from ..telemetry.sentry import capture_exception, capture_message
from .attribution_models import compute_weights, get_model_definition, is_primary_touch
from .journey_builder import JourneyBuilder, journey_window

logger = logging.getLogger(__name__)

AMOUNT_QUANTUM = Decimal("0.000001")
DEFAULT_MAX_ERROR_SUMMARIES = 20
DEFAULT_LEASE_SECONDS = 900
PURGE_CHUNK_SIZE = 500


class _Conversion(NamedTuple):
    """Detached view of a conversion event, safe to hand to worker threads."""

    id: int
    tenant_id: int
    customer_id: int
    amount: Decimal
    occurred_at: datetime


@dataclass
class _RunContext:
    run_id: int
    model_id: int
    model_code: str
    config: schemas.AttributionRunConfig


@dataclass
class RunOutcome:
    """What one execution of a run did. Persisted onto the run row."""

    run_id: int
    status: str = RunStatusEnum.running.value
    conversions_total: int = 0
    attributed: int = 0
    skipped: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)
    cancelled: bool = False
    max_errors: int = DEFAULT_MAX_ERROR_SUMMARIES
    # conversions whose rows were rewritten (attributed or skipped) in this execution
    settled_ids: Set[int] = field(default_factory=set)

    def record_failure(self, conversion_id: int, exc: Exception) -> None:
        self.failed += 1
        if len(self.errors) < self.max_errors:
            self.errors.append(f"conversion {conversion_id}: {exc.__class__.__name__}: {exc}")

    def as_columns(self) -> Dict[str, Any]:
        return {
            "conversions_total": self.conversions_total,
            "conversions_attributed": self.attributed,
            "conversions_skipped": self.skipped,
            "conversions_failed": self.failed,
            "error_summary": list(self.errors),
            "cancelled": self.cancelled,
        }


def attributed_amount(amount: Decimal, weight: float) -> Decimal:
    """Share of ``amount`` for ``weight``, quantized to the result column's scale."""
    return (Decimal(amount) * Decimal(repr(weight))).quantize(AMOUNT_QUANTUM, rounding=ROUND_HALF_UP)


def split_amount(amount: Decimal, weights: Sequence[float]) -> List[Decimal]:
    """Per-weight shares of ``amount`` that add up to exactly ``amount``.

    Each share is rounded like ``attributed_amount``; the rounding remainder
    goes to the largest weight (the latest of equal weights).
    """
    shares = [attributed_amount(amount, weight) for weight in weights]
    if not shares:
        return shares
    remainder = Decimal(amount).quantize(AMOUNT_QUANTUM, rounding=ROUND_HALF_UP) - sum(shares)
    if remainder:
        largest = max(range(len(weights)), key=lambda i: (weights[i], i))
        shares[largest] += remainder
    return shares


class _LeaseHeartbeat:
    """Refreshes a claimed run's updated_at at most once per ``interval`` seconds."""

    def __init__(self, service: "AttributionRunService", run_id: int, interval: float):
        self.service = service
        self.run_id = run_id
        self.interval = interval
        self.last_beat = time.monotonic()

    def beat(self) -> None:
        now = time.monotonic()
        if now - self.last_beat < self.interval:
            return
        self.last_beat = now
        self.service._renew_lease(self.run_id)


class AttributionRunService:
    """Create, execute and inspect attribution runs.

    Every method opens its own session(s) from ``session_factory``; execution
    uses one session per conversion so worker threads never share one.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        max_workers: int = 1,
        default_window_hours: int = 72,
        max_error_summaries: int = DEFAULT_MAX_ERROR_SUMMARIES,
        lease_seconds: int = DEFAULT_LEASE_SECONDS,
    ):
        self.session_factory = session_factory
        self.max_workers = max(1, max_workers)
        self.default_window_hours = default_window_hours
        self.max_error_summaries = max_error_summaries
        self.lease_seconds = max(0, lease_seconds)

    # ------------------------------------------------------------------
    # Create / read
    # ------------------------------------------------------------------

    def create_run(
        self,
        tenant_id: int,
        model_code: str,
        name: str,
        config: Optional[Dict[str, Any]] = None,
        description: Optional[str] = None,
    ) -> AttributionRun:
        """Validate and store a pending run.

        Raises:
            NotFoundError: unknown model code, model not registered, unknown tenant
            InvalidInputError: config does not validate
        """
        definition = get_model_definition(model_code)
        run_config = self._validate_config(config)

        with self.session_factory() as db:
            if db.get(Tenant, tenant_id) is None:
                raise NotFoundError(f"Tenant {tenant_id} not found")

            model_id = db.execute(
                select(AttributionModel.id).where(AttributionModel.code == definition.code.value)
            ).scalar_one_or_none()
            if model_id is None:
                raise NotFoundError(f"Attribution model {definition.code.value} is not registered")

            run = AttributionRun(
                tenant_id=tenant_id,
                model_id=model_id,
                name=name,
                description=description,
                config=run_config.model_dump(),
                status=RunStatusEnum.pending.value,
            )
            db.add(run)
            self._commit(db, "create attribution run")
            logger.info(
                f"[ATTRIBUTION] Created run {run.id}",
                extra={"tenant_id": tenant_id, "model_code": definition.code.value},
            )
            return run

    def get_run(self, tenant_id: int, run_id: int) -> AttributionRun:
        with self.session_factory() as db:
            run = db.execute(
                select(AttributionRun).where(AttributionRun.id == run_id, AttributionRun.tenant_id == tenant_id)
            ).scalar_one_or_none()
            if run is None:
                raise NotFoundError(f"Attribution run {run_id} not found")
            return run

    def list_results(self, tenant_id: int, run_id: int) -> List[AttributionResult]:
        """Results of a run ordered by conversion, then interaction start."""
        with self.session_factory() as db:
            exists = db.execute(
                select(AttributionRun.id).where(AttributionRun.id == run_id, AttributionRun.tenant_id == tenant_id)
            ).scalar_one_or_none()
            if exists is None:
                raise NotFoundError(f"Attribution run {run_id} not found")

            return list(
                db.execute(
                    select(AttributionResult)
                    .join(Interaction, AttributionResult.interaction_id == Interaction.id)
                    .where(AttributionResult.attribution_run_id == run_id)
                    .order_by(
                        AttributionResult.conversion_event_id.asc(),
                        Interaction.started_at.asc(),
                        Interaction.id.asc(),
                    )
                ).scalars().all()
            )

    # ------------------------------------------------------------------
    # Execute
    # ------------------------------------------------------------------

    def execute_run(
        self,
        run_id: int,
        cancel_event: Optional[threading.Event] = None,
        max_workers: Optional[int] = None,
    ) -> RunOutcome:
        """Execute (or re-execute) a run to completion.

        Raises:
            NotFoundError: run does not exist
            ConflictError: run is already running and its lease has not expired
            TransactionFailureError / InternalError: run-level failure (run marked failed)
        """
        self._claim(run_id)
        outcome = RunOutcome(run_id=run_id, max_errors=self.max_error_summaries)

        try:
            context = self._load_context(run_id)
            conversions = self._load_conversions(context)
            outcome.conversions_total = len(conversions)

            logger.info(
                f"[ATTRIBUTION] Executing run {run_id}: {len(conversions)} conversion(s)",
                extra={"run_id": run_id, "model_code": context.model_code},
            )

            heartbeat = _LeaseHeartbeat(self, run_id, self.lease_seconds / 4)
            workers = max(1, max_workers or self.max_workers)
            if workers == 1:
                self._process_sequential(context, conversions, outcome, cancel_event, heartbeat)
            else:
                self._process_parallel(context, conversions, outcome, cancel_event, workers, heartbeat)

            outcome.status = (
                RunStatusEnum.failed.value if outcome.cancelled else RunStatusEnum.completed.value
            )
            if outcome.cancelled or outcome.failed:
                self._purge_unsettled(run_id, outcome.settled_ids)
            self._finish(run_id, outcome)
            if outcome.failed:
                capture_message(
                    f"Attribution run {run_id} finished with {outcome.failed} failed conversion(s)",
                    level="warning",
                    extra={"run_id": run_id, "errors": outcome.errors},
                )
        except Exception as e:
            logger.exception(f"[ATTRIBUTION] Run {run_id} failed")
            outcome.status = RunStatusEnum.failed.value
            self._mark_failed(run_id, outcome, e)
            capture_exception(e, extra={"run_id": run_id})
            if isinstance(e, (TransactionFailureError, InternalError)):
                raise
            if isinstance(e, SQLAlchemyError):
                raise TransactionFailureError(f"Attribution run {run_id} failed: {e.__class__.__name__}") from e
            raise InternalError(f"Attribution run {run_id} failed: {e}") from e

        logger.info(
            f"[ATTRIBUTION] Run {run_id} {outcome.status}: "
            f"{outcome.attributed} attributed, {outcome.skipped} skipped, {outcome.failed} failed",
            extra={"run_id": run_id, "cancelled": outcome.cancelled},
        )
        return outcome

    def _process_sequential(self, context, conversions, outcome, cancel_event, heartbeat) -> None:
        for conversion in conversions:
            if cancel_event is not None and cancel_event.is_set():
                outcome.cancelled = True
                break
            self._tally(outcome, conversion, self._safe_attribute(context, conversion))
            heartbeat.beat()

    def _process_parallel(self, context, conversions, outcome, cancel_event, workers, heartbeat) -> None:
        def task(conversion: _Conversion):
            if cancel_event is not None and cancel_event.is_set():
                return None
            return self._safe_attribute(context, conversion)

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=f"attribution-run-{context.run_id}") as pool:
            futures = [(conversion, pool.submit(task, conversion)) for conversion in conversions]
            for conversion, future in futures:
                result = future.result()
                if result is None:
                    outcome.cancelled = True
                    continue
                self._tally(outcome, conversion, result)
                heartbeat.beat()

    @staticmethod
    def _tally(outcome: RunOutcome, conversion: _Conversion, result) -> None:
        if isinstance(result, Exception):
            outcome.record_failure(conversion.id, result)
        elif result:
            outcome.attributed += 1
            outcome.settled_ids.add(conversion.id)
        else:
            outcome.skipped += 1
            outcome.settled_ids.add(conversion.id)

    def _safe_attribute(self, context: _RunContext, conversion: _Conversion):
        """True if attributed, False if no journey, the exception if it failed."""
        try:
            return self._attribute_conversion(context, conversion)
        except Exception as e:
            logger.exception(
                f"[ATTRIBUTION] Failed to attribute conversion {conversion.id}",
                extra={"run_id": context.run_id, "conversion_id": conversion.id},
            )
            capture_exception(e, extra={"run_id": context.run_id, "conversion_id": conversion.id})
            return e

    def _attribute_conversion(self, context: _RunContext, conversion: _Conversion) -> bool:
        with self.session_factory() as db:
            try:
                # Write first so the conversion's transaction holds the write lock before reading
                db.execute(
                    delete(AttributionResult)
                    .where(
                        AttributionResult.attribution_run_id == context.run_id,
                        AttributionResult.conversion_event_id == conversion.id,
                    )
                    .execution_options(synchronize_session=False)
                )

                window_start, window_end = journey_window(conversion, context.config.time_window_hours)
                touchpoints = JourneyBuilder(db).build_journey(
                    conversion.customer_id,
                    window_start,
                    window_end,
                    context.config.include_channels,
                )
                if not touchpoints:
                    db.commit()
                    return False

                n = len(touchpoints)
                weights = compute_weights(n, context.model_code, touchpoints)
                amounts = split_amount(conversion.amount, weights)
                for index, (touchpoint, weight, amount) in enumerate(zip(touchpoints, weights, amounts)):
                    db.add(AttributionResult(
                        tenant_id=conversion.tenant_id,
                        attribution_run_id=context.run_id,
                        conversion_event_id=conversion.id,
                        interaction_id=touchpoint.interaction_id,
                        customer_id=conversion.customer_id,
                        agent_id=touchpoint.agent_id,
                        team_id=touchpoint.team_id,
                        vendor_id=touchpoint.vendor_id,
                        model_id=context.model_id,
                        attribution_weight=weight,
                        attributed_amount=amount,
                        is_primary_touch=is_primary_touch(context.model_code, index, n),
                    ))
                db.commit()
                return True
            except Exception:
                db.rollback()
                raise

    # ------------------------------------------------------------------
    # Run state transitions
    # ------------------------------------------------------------------

    def _claim(self, run_id: int) -> None:
        with self.session_factory() as db:
            now = utcnow()
            claim_values = dict(
                status=RunStatusEnum.running.value,
                started_at=now,
                completed_at=None,
                updated_at=now,
                cancelled=False,
            )
            claimed = db.execute(
                update(AttributionRun)
                .where(AttributionRun.id == run_id, AttributionRun.status != RunStatusEnum.running.value)
                .values(**claim_values)
                .execution_options(synchronize_session=False)
            ).rowcount
            if not claimed:
                # Executor that stopped renewing its lease (crashed worker)
                claimed = db.execute(
                    update(AttributionRun)
                    .where(
                        AttributionRun.id == run_id,
                        AttributionRun.status == RunStatusEnum.running.value,
                        AttributionRun.updated_at < now - timedelta(seconds=self.lease_seconds),
                    )
                    .values(**claim_values)
                    .execution_options(synchronize_session=False)
                ).rowcount
                if claimed:
                    logger.warning(
                        f"[ATTRIBUTION] Taking over run {run_id}: lease older than {self.lease_seconds}s",
                        extra={"run_id": run_id},
                    )
            if claimed:
                self._commit(db, "claim attribution run")
                return

            db.rollback()
            if db.get(AttributionRun, run_id) is None:
                raise NotFoundError(f"Attribution run {run_id} not found", details={"run_id": run_id})
            raise ConflictError(
                f"Attribution run {run_id} is already running",
                details={"run_id": run_id, "lease_seconds": self.lease_seconds},
            )

    def _renew_lease(self, run_id: int) -> None:
        try:
            with self.session_factory() as db:
                db.execute(
                    update(AttributionRun)
                    .where(AttributionRun.id == run_id, AttributionRun.status == RunStatusEnum.running.value)
                    .values(updated_at=utcnow())
                    .execution_options(synchronize_session=False)
                )
                self._commit(db, "renew attribution run lease")
        except (TransactionFailureError, SQLAlchemyError):
            # next beat retries; the run itself is unaffected
            logger.warning(f"[ATTRIBUTION] Could not renew lease of run {run_id}", extra={"run_id": run_id})

    def _purge_unsettled(self, run_id: int, settled_ids: Set[int]) -> int:
        """Delete rows of conversions this execution did not rewrite."""
        with self.session_factory() as db:
            stored = db.execute(
                select(AttributionResult.conversion_event_id)
                .where(AttributionResult.attribution_run_id == run_id)
                .distinct()
            ).scalars().all()
            stale = sorted(set(stored) - settled_ids)
            for start in range(0, len(stale), PURGE_CHUNK_SIZE):
                db.execute(
                    delete(AttributionResult)
                    .where(
                        AttributionResult.attribution_run_id == run_id,
                        AttributionResult.conversion_event_id.in_(stale[start:start + PURGE_CHUNK_SIZE]),
                    )
                    .execution_options(synchronize_session=False)
                )
            self._commit(db, "purge stale attribution results")

        if stale:
            logger.info(
                f"[ATTRIBUTION] Purged stale results of {len(stale)} conversion(s) from run {run_id}",
                extra={"run_id": run_id},
            )
        return len(stale)

    def _load_context(self, run_id: int) -> _RunContext:
        with self.session_factory() as db:
            row = db.execute(
                select(AttributionRun.config, AttributionModel.id, AttributionModel.code)
                .join(AttributionModel, AttributionRun.model_id == AttributionModel.id)
                .where(AttributionRun.id == run_id)
            ).one()
            stored = {"time_window_hours": self.default_window_hours, **(row[0] or {})}
            try:
                config = schemas.AttributionRunConfig.model_validate(stored)
            except ValidationError as e:
                raise InvalidInputError(f"Stored config of run {run_id} is invalid: {e}") from e
            return _RunContext(run_id=run_id, model_id=row[1], model_code=row[2], config=config)

    def _load_conversions(self, context: _RunContext) -> List[_Conversion]:
        with self.session_factory() as db:
            tenant_id = db.execute(
                select(AttributionRun.tenant_id).where(AttributionRun.id == context.run_id)
            ).scalar_one()
            query = select(
                ConversionEvent.id,
                ConversionEvent.tenant_id,
                ConversionEvent.customer_id,
                ConversionEvent.amount_decimal,
                ConversionEvent.occurred_at,
            ).where(ConversionEvent.tenant_id == tenant_id)
            if context.config.event_types:
                query = query.where(ConversionEvent.event_type.in_(context.config.event_types))
            if context.config.min_purchase_amount > 0:
                query = query.where(
                    ConversionEvent.amount_decimal >= Decimal(repr(context.config.min_purchase_amount))
                )
            query = query.order_by(ConversionEvent.occurred_at.asc(), ConversionEvent.id.asc())
            return [_Conversion(*row) for row in db.execute(query).all()]

    def _finish(self, run_id: int, outcome: RunOutcome) -> None:
        with self.session_factory() as db:
            now = utcnow()
            db.execute(
                update(AttributionRun)
                .where(AttributionRun.id == run_id)
                .values(status=outcome.status, completed_at=now, updated_at=now, **outcome.as_columns())
                .execution_options(synchronize_session=False)
            )
            self._commit(db, "finish attribution run")

    def _mark_failed(self, run_id: int, outcome: RunOutcome, error: Exception) -> None:
        if len(outcome.errors) < outcome.max_errors:
            outcome.errors.append(f"run: {error.__class__.__name__}: {error}")
        try:
            self._purge_unsettled(run_id, outcome.settled_ids)
        except (AttributionEngineError, SQLAlchemyError):
            logger.exception(f"[ATTRIBUTION] Could not purge stale results of run {run_id}")
        try:
            self._finish(run_id, outcome)
        except (AttributionEngineError, SQLAlchemyError):
            logger.exception(f"[ATTRIBUTION] Could not mark run {run_id} as failed")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _validate_config(self, config: Optional[Dict[str, Any]]) -> schemas.AttributionRunConfig:
        payload = {"time_window_hours": self.default_window_hours, **(config or {})}
        try:
            return schemas.AttributionRunConfig.model_validate(payload)
        except ValidationError as e:
            raise InvalidInputError(f"Invalid attribution run config: {e.errors(include_url=False)}") from e

    @staticmethod
    def _commit(db: Session, action: str) -> None:
        try:
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.exception(f"[ATTRIBUTION] Failed to {action}")
            raise TransactionFailureError(f"Failed to {action}: {e.__class__.__name__}") from e
