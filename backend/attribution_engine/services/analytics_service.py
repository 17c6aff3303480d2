"""Revenue rollups over attribution results.

WHAT: Agent revenue, vendor comparison and intent profitability, each summed
    from the AttributionResult rows of a single run.
WHY: Reruns and runs of different models hold overlapping credit for the
    same conversions. Summing across runs would count a conversion once per
    run, so every rollup reads exactly one run.

Run selection:
    - run_id given      -> that run (must belong to the tenant)
    - otherwise         -> latest completed run of the tenant, restricted to
                           model_code when given
    - no such run       -> empty rollup

Filters bound conversions by occurred_at, inclusive at both ends.

REFERENCES:
    - attribution_engine/services/attribution_run_service.py (writes the rows)
    - attribution_engine/routers/analytics.py (HTTP adapter)
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import distinct, func, select
from sqlalchemy.orm import Session

from .. import schemas
from ..errors import InvalidInputError, NotFoundError
from ..models import (
    Agent,
    AttributionModel,
    AttributionResult,
    AttributionRun,
    ConversionEvent,
    Interaction,
    RunStatusEnum,
    Team,
    Vendor,
)
from ..utils.dates import as_naive_utc
from .attribution_models import get_model_definition
from .attribution_run_service import AMOUNT_QUANTUM

logger = logging.getLogger(__name__)

# Attributed amount per 1000 seconds of average handle time
PROFITABILITY_SCALE = 1000


def _money(value) -> Decimal:
    return Decimal(value or 0).quantize(AMOUNT_QUANTUM)


def _ratio(total: Decimal, count: int) -> Decimal:
    return (total / count).quantize(AMOUNT_QUANTUM) if count else Decimal(0).quantize(AMOUNT_QUANTUM)


class AnalyticsService:
    def __init__(self, db: Session):
        self.db = db

    def agent_revenue(
        self,
        tenant_id: int,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        vendor_id: Optional[int] = None,
        model_code: Optional[str] = None,
        run_id: Optional[int] = None,
    ) -> List[schemas.AgentRevenueOut]:
        """Credit per agent, highest total first.

        avg_attributed_amount_per_interaction divides the agent's total by
        the number of distinct interactions that earned it.
        """
        start, end = self._bounds(start, end)
        scope = self._resolve_run(tenant_id, model_code, run_id)
        if scope is None:
            return []

        total = func.sum(AttributionResult.attributed_amount)
        query = (
            select(
                Agent.id,
                Agent.name,
                Agent.email,
                Agent.vendor_id,
                Vendor.name.label("vendor_name"),
                Agent.team_id,
                Team.name.label("team_name"),
                total.label("total"),
                func.count(distinct(AttributionResult.conversion_event_id)).label("conversions"),
                func.count(distinct(AttributionResult.interaction_id)).label("interactions"),
            )
            .select_from(AttributionResult)
            .join(Agent, AttributionResult.agent_id == Agent.id)
            .outerjoin(Vendor, Agent.vendor_id == Vendor.id)
            .outerjoin(Team, Agent.team_id == Team.id)
        )
        query = self._scoped(query, tenant_id, scope, start, end)
        if vendor_id is not None:
            query = query.where(Agent.vendor_id == vendor_id)
        query = query.group_by(
            Agent.id, Agent.name, Agent.email, Agent.vendor_id, Vendor.name, Agent.team_id, Team.name
        ).order_by(total.desc(), Agent.id.asc())

        rows = []
        for row in self.db.execute(query):
            amount = _money(row.total)
            rows.append(schemas.AgentRevenueOut(
                agent_id=row.id,
                name=row.name,
                email=row.email,
                vendor_id=row.vendor_id,
                vendor_name=row.vendor_name,
                team_id=row.team_id,
                team_name=row.team_name,
                total_attributed_amount=amount,
                total_conversions=row.conversions,
                avg_attributed_amount_per_interaction=_ratio(amount, row.interactions),
            ))
        return rows

    def vendor_comparison(
        self,
        tenant_id: int,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        model_code: Optional[str] = None,
        run_id: Optional[int] = None,
    ) -> List[schemas.VendorRevenueOut]:
        """Credit per vendor of the touchpoint, highest total first."""
        start, end = self._bounds(start, end)
        scope = self._resolve_run(tenant_id, model_code, run_id)
        if scope is None:
            return []

        total = func.sum(AttributionResult.attributed_amount)
        query = (
            select(
                Vendor.id,
                Vendor.name,
                total.label("total"),
                func.count(distinct(AttributionResult.conversion_event_id)),
            )
            .select_from(AttributionResult)
            .join(Vendor, AttributionResult.vendor_id == Vendor.id)
        )
        query = self._scoped(query, tenant_id, scope, start, end)
        query = query.group_by(Vendor.id, Vendor.name).order_by(total.desc(), Vendor.id.asc())

        rows = []
        for vendor_id, name, amount, conversions in self.db.execute(query):
            amount = _money(amount)
            rows.append(schemas.VendorRevenueOut(
                vendor_id=vendor_id,
                name=name,
                total_attributed_amount=amount,
                total_conversions=conversions,
                avg_conversion_value=_ratio(amount, conversions),
            ))
        return rows

    def intent_revenue(
        self,
        tenant_id: int,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        model_code: Optional[str] = None,
        run_id: Optional[int] = None,
    ) -> List[schemas.IntentRevenueOut]:
        """Credit per primary intent of the credited interaction.

        avg_handle_time_seconds averages duration over distinct interactions
        with a known duration. profitability_score is the total per 1000
        seconds of that average, 0 when no duration is known.
        """
        start, end = self._bounds(start, end)
        scope = self._resolve_run(tenant_id, model_code, run_id)
        if scope is None:
            return []

        has_intent = (Interaction.primary_intent.is_not(None), Interaction.primary_intent != "")
        total = func.sum(AttributionResult.attributed_amount)
        totals_query = (
            select(
                Interaction.primary_intent,
                total.label("total"),
                func.count(distinct(AttributionResult.conversion_event_id)),
            )
            .select_from(AttributionResult)
            .join(Interaction, AttributionResult.interaction_id == Interaction.id)
            .where(*has_intent)
        )
        totals_query = self._scoped(totals_query, tenant_id, scope, start, end)
        totals_query = totals_query.group_by(Interaction.primary_intent).order_by(
            total.desc(), Interaction.primary_intent.asc()
        )

        credited = (
            select(Interaction.id, Interaction.primary_intent, Interaction.duration_seconds)
            .select_from(AttributionResult)
            .join(Interaction, AttributionResult.interaction_id == Interaction.id)
            .where(*has_intent)
        )
        credited = self._scoped(credited, tenant_id, scope, start, end).distinct().subquery()
        durations = dict(
            self.db.execute(
                select(credited.c.primary_intent, func.avg(credited.c.duration_seconds))
                .group_by(credited.c.primary_intent)
            ).all()
        )

        rows = []
        for intent, amount, conversions in self.db.execute(totals_query):
            amount = _money(amount)
            avg_duration = float(durations.get(intent) or 0)
            score = float(amount) / avg_duration * PROFITABILITY_SCALE if avg_duration else 0.0
            rows.append(schemas.IntentRevenueOut(
                intent_code=intent,
                total_attributed_amount=amount,
                total_conversions=conversions,
                avg_handle_time_seconds=avg_duration,
                profitability_score=score,
            ))
        return rows

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _resolve_run(self, tenant_id: int, model_code: Optional[str], run_id: Optional[int]) -> Optional[int]:
        code = get_model_definition(model_code).code.value if model_code else None

        if run_id is not None:
            row = self.db.execute(
                select(AttributionRun.id, AttributionModel.code)
                .join(AttributionModel, AttributionRun.model_id == AttributionModel.id)
                .where(AttributionRun.id == run_id, AttributionRun.tenant_id == tenant_id)
            ).one_or_none()
            if row is None:
                raise NotFoundError(f"Attribution run {run_id} not found", details={"run_id": run_id})
            if code is not None and row[1] != code:
                raise InvalidInputError(
                    f"Attribution run {run_id} used model {row[1]}, not {code}",
                    details={"run_id": run_id, "model_code": code},
                )
            return run_id

        query = select(AttributionRun.id).where(
            AttributionRun.tenant_id == tenant_id, AttributionRun.status == RunStatusEnum.completed.value
        )
        if code is not None:
            query = query.join(AttributionModel, AttributionRun.model_id == AttributionModel.id).where(
                AttributionModel.code == code
            )
        latest = self.db.execute(
            query.order_by(AttributionRun.completed_at.desc(), AttributionRun.id.desc()).limit(1)
        ).scalar_one_or_none()
        if latest is None:
            logger.info(
                "[ANALYTICS] No completed attribution run to report on",
                extra={"tenant_id": tenant_id, "model_code": code},
            )
        return latest

    @staticmethod
    def _bounds(start: Optional[datetime], end: Optional[datetime]):
        start, end = as_naive_utc(start), as_naive_utc(end)
        if start is not None and end is not None and start > end:
            raise InvalidInputError("'from' must not be later than 'to'")
        return start, end

    @staticmethod
    def _scoped(query, tenant_id: int, run_id: int, start: Optional[datetime], end: Optional[datetime]):
        query = query.where(
            AttributionResult.attribution_run_id == run_id,
            AttributionResult.tenant_id == tenant_id,
        )
        if start is None and end is None:
            return query
        query = query.join(ConversionEvent, AttributionResult.conversion_event_id == ConversionEvent.id)
        if start is not None:
            query = query.where(ConversionEvent.occurred_at >= start)
        if end is not None:
            query = query.where(ConversionEvent.occurred_at <= end)
        return query
