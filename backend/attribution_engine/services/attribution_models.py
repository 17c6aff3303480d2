"""Attribution model registry and weight calculator.

WHAT:
    - AttributionModelCode: closed set of supported weighting models
    - MODEL_CATALOG: code -> ModelDefinition (display data + weight strategy)
    - compute_weights(): credit split across an ordered journey
    - sync_model_catalog(): mirrors the catalog into attribution_models rows

WHY:
    Runs reference models by database id, but the weighting logic lives in
    code. Keeping both behind one registry means a model cannot exist in the
    database without a strategy, and dispatch is a table lookup instead of a
    chain of string comparisons.

WEIGHTS (n touchpoints, index 0 = oldest):
    FIRST_TOUCH  [1, 0, ..., 0]
    LAST_TOUCH   [0, ..., 0, 1]
    LINEAR       1/n each
    TIME_DECAY   exp(-0.5 * (n - i - 1)), normalized (half-life ~1.4 touches)
    AI_WEIGHTED  1/n each until a learned model is plugged in; receives the
                 touchpoints so purchase_probability is available to it

Every strategy returns non-negative weights summing to 1.

REFERENCES:
    - attribution_engine/services/attribution_run_service.py (consumer)
    - attribution_engine/services/journey_builder.py (Touchpoint)
"""

import enum
import logging
import math
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..errors import InvalidInputError, NotFoundError
from ..models import AttributionModel

logger = logging.getLogger(__name__)

TIME_DECAY_RATE = 0.5

WeightStrategy = Callable[[int, Optional[Sequence[Any]]], List[float]]


class AttributionModelCode(str, enum.Enum):
    FIRST_TOUCH = "FIRST_TOUCH"
    LAST_TOUCH = "LAST_TOUCH"
    LINEAR = "LINEAR"
    TIME_DECAY = "TIME_DECAY"
    AI_WEIGHTED = "AI_WEIGHTED"


# =============================================================================
# STRATEGIES
# =============================================================================

def _first_touch(n: int, touchpoints=None) -> List[float]:
    return [1.0] + [0.0] * (n - 1)


def _last_touch(n: int, touchpoints=None) -> List[float]:
    return [0.0] * (n - 1) + [1.0]


def _linear(n: int, touchpoints=None) -> List[float]:
    return [1.0 / n] * n


def _time_decay(n: int, touchpoints=None) -> List[float]:
    raw = [math.exp(-TIME_DECAY_RATE * (n - i - 1)) for i in range(n)]
    total = sum(raw)
    return [w / total for w in raw]


def _ai_weighted(n: int, touchpoints=None) -> List[float]:
    # Uniform until a trained model is available
    return _linear(n, touchpoints)


# =============================================================================
# REGISTRY
# =============================================================================

@dataclass(frozen=True)
class ModelDefinition:
    code: AttributionModelCode
    name: str
    description: str
    strategy: WeightStrategy
    params: Dict[str, Any] = field(default_factory=dict)


MODEL_CATALOG: Dict[AttributionModelCode, ModelDefinition] = {
    AttributionModelCode.FIRST_TOUCH: ModelDefinition(
        code=AttributionModelCode.FIRST_TOUCH,
        name="First Touch",
        description="All credit to the earliest interaction in the window.",
        strategy=_first_touch,
    ),
    AttributionModelCode.LAST_TOUCH: ModelDefinition(
        code=AttributionModelCode.LAST_TOUCH,
        name="Last Touch",
        description="All credit to the latest interaction before the conversion.",
        strategy=_last_touch,
    ),
    AttributionModelCode.LINEAR: ModelDefinition(
        code=AttributionModelCode.LINEAR,
        name="Linear",
        description="Equal credit to every interaction in the window.",
        strategy=_linear,
    ),
    AttributionModelCode.TIME_DECAY: ModelDefinition(
        code=AttributionModelCode.TIME_DECAY,
        name="Time Decay",
        description="More credit to interactions closer to the conversion.",
        strategy=_time_decay,
        params={"decay_rate": TIME_DECAY_RATE},
    ),
    AttributionModelCode.AI_WEIGHTED: ModelDefinition(
        code=AttributionModelCode.AI_WEIGHTED,
        name="AI Weighted",
        description="Credit weighted by a learned model; uniform until one is configured.",
        strategy=_ai_weighted,
        params={"fallback": AttributionModelCode.LINEAR.value},
    ),
}


def _parse_code(model_code: Union[str, AttributionModelCode]) -> Optional[AttributionModelCode]:
    try:
        return AttributionModelCode(model_code)
    except ValueError:
        return None


def get_model_definition(model_code: Union[str, AttributionModelCode]) -> ModelDefinition:
    """Look up a model by code.

    Raises:
        NotFoundError: code is not in the catalog
    """
    code = _parse_code(model_code)
    if code is None:
        raise NotFoundError(f"Unknown attribution model: {model_code}")
    return MODEL_CATALOG[code]


def list_models() -> List[ModelDefinition]:
    return list(MODEL_CATALOG.values())


def sync_model_catalog(db: Session) -> int:
    """Insert or update one attribution_models row per catalog entry.

    Flushes only; the caller commits. Returns the number of rows inserted.
    """
    existing = {
        row.code: row
        for row in db.execute(select(AttributionModel)).scalars().all()
    }
    created = 0
    for definition in MODEL_CATALOG.values():
        row = existing.get(definition.code.value)
        if row is None:
            db.add(AttributionModel(
                code=definition.code.value,
                name=definition.name,
                description=definition.description,
                params=dict(definition.params),
            ))
            created += 1
        else:
            row.name = definition.name
            row.description = definition.description
            row.params = dict(definition.params)
    db.flush()
    if created:
        logger.info(f"[MODELS] Registered {created} attribution model(s)")
    return created


# =============================================================================
# WEIGHT CALCULATOR
# =============================================================================

def compute_weights(
    n: int,
    model_code: Union[str, AttributionModelCode],
    touchpoints: Optional[Sequence[Any]] = None,
) -> List[float]:
    """Split one unit of credit across ``n`` chronologically ordered touchpoints.

    Unknown model codes fall back to LINEAR.

    Raises:
        InvalidInputError: n < 1
    """
    if n < 1:
        raise InvalidInputError(f"Cannot compute weights for {n} touchpoints")

    code = _parse_code(model_code)
    if code is None:
        logger.warning(f"[MODELS] Unknown attribution model '{model_code}', falling back to LINEAR")
        code = AttributionModelCode.LINEAR

    return MODEL_CATALOG[code].strategy(n, touchpoints)


def is_primary_touch(model_code: Union[str, AttributionModelCode], index: int, n: int) -> bool:
    """The single-touch models mark the touchpoint that received all the credit."""
    code = _parse_code(model_code)
    if code is AttributionModelCode.FIRST_TOUCH:
        return index == 0
    if code is AttributionModelCode.LAST_TOUCH:
        return index == n - 1
    return False
