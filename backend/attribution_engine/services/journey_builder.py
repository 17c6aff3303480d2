"""Journey construction for attribution.

WHAT: Collects the interactions a customer had in the lookback window before a
    conversion, oldest first, each tagged with the agent/team/vendor that
    should receive its credit.
WHY: Weight strategies are position-based, so ordering is part of the
    contract: ascending started_at, ties broken by interaction id.

Window: ``occurred_at - time_window_hours <= started_at <= occurred_at``,
inclusive at both ends.

Credit target per interaction: the agent participant with the lowest
participant id. team_id comes from that agent; vendor_id from that agent,
else from the interaction itself.

REFERENCES:
    - attribution_engine/services/attribution_run_service.py (consumer)
    - attribution_engine/services/attribution_models.py (compute_weights)
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional, Sequence, Tuple

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from ..models import Channel, Interaction, InteractionParticipant

AGENT_PARTICIPANT_TYPE = "agent"


@dataclass(frozen=True)
class Touchpoint:
    """One interaction inside a conversion's journey."""

    interaction_id: int
    started_at: datetime
    channel_id: int
    purchase_probability: Optional[float] = None
    agent_id: Optional[int] = None
    team_id: Optional[int] = None
    vendor_id: Optional[int] = None


def journey_window(conversion, hours: int) -> Tuple[datetime, datetime]:
    """(window_start, window_end) for a conversion-like object with ``occurred_at``."""
    window_end = conversion.occurred_at
    return window_end - timedelta(hours=hours), window_end


class JourneyBuilder:
    def __init__(self, db: Session):
        self.db = db

    def build_journey(
        self,
        customer_id: int,
        window_start: datetime,
        window_end: datetime,
        channel_allow_list: Optional[Sequence[str]] = None,
    ) -> List[Touchpoint]:
        query = (
            select(Interaction)
            .options(selectinload(Interaction.participants).selectinload(InteractionParticipant.agent))
            .where(
                Interaction.customer_id == customer_id,
                Interaction.started_at >= window_start,
                Interaction.started_at <= window_end,
            )
        )
        if channel_allow_list:
            query = query.join(Channel, Interaction.channel_id == Channel.id).where(
                Channel.name.in_(list(channel_allow_list))
            )
        query = query.order_by(Interaction.started_at.asc(), Interaction.id.asc())

        interactions = self.db.execute(query).scalars().all()
        return [self._to_touchpoint(interaction) for interaction in interactions]

    @staticmethod
    def _to_touchpoint(interaction: Interaction) -> Touchpoint:
        agent_id = team_id = None
        vendor_id = interaction.vendor_id

        agent_participants = [
            p for p in interaction.participants
            if p.participant_type == AGENT_PARTICIPANT_TYPE and p.agent_id is not None
        ]
        if agent_participants:
            participant = min(agent_participants, key=lambda p: p.id)
            agent_id = participant.agent_id
            agent = participant.agent
            if agent is not None:
                team_id = agent.team_id
                if agent.vendor_id is not None:
                    vendor_id = agent.vendor_id

        return Touchpoint(
            interaction_id=interaction.id,
            started_at=interaction.started_at,
            channel_id=interaction.channel_id,
            purchase_probability=interaction.purchase_probability,
            agent_id=agent_id,
            team_id=team_id,
            vendor_id=vendor_id,
        )
