"""Composite confidence scoring.

Blends three signals into one integer score in [0, 100]:

    composite = 0.5 * perception + 0.3 * coherence + 0.2 * constraint

* perception: mean per-ingredient confidence, lifted to a floor for items the
  user confirmed, plus a small bias from how often the same ingredient name
  was confirmed before.
* coherence: a step-count heuristic for how detailed the protocol is.
* constraint: share of protocol-referenced ingredients that were actually
  perceived; penalizes hallucinated references.

All constants live on ``FusionParams`` so they can be tuned from config.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterable, Mapping, Optional
import math

from culinarylens.schema import Ingredient, Protocol, name_key


@dataclass(frozen=True)
class FusionParams:
    confirmed_floor: float = 0.85
    memory_bias_per_confirmation: float = 0.02
    memory_bias_cap: float = 0.10
    coherence_min_steps: int = 3
    coherence_high: float = 1.0
    coherence_low: float = 0.7
    perception_weight: float = 0.5
    coherence_weight: float = 0.3
    constraint_weight: float = 0.2


@dataclass(frozen=True)
class FusionBreakdown:
    perception: float
    coherence: float
    constraint: float
    score: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "perception": round(self.perception, 4),
            "coherence": round(self.coherence, 4),
            "constraint": round(self.constraint, 4),
            "score": self.score,
        }


def _memory_count(memory: Mapping[str, Any], key: str) -> float:
    try:
        count = float(memory.get(key, 0) or 0)
    except (TypeError, ValueError):
        return 0.0
    if math.isnan(count) or count < 0:
        return 0.0
    return count


def _unit(value: Any) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    if not math.isfinite(number):
        return 0.0
    return max(0.0, min(1.0, number))


def perception_term(
    ingredients: Iterable[Ingredient],
    memory_bias: Optional[Mapping[str, Any]] = None,
    params: FusionParams = FusionParams(),
) -> float:
    items = list(ingredients)
    if not items:
        return 1.0
    memory = {name_key(k): v for k, v in (memory_bias or {}).items()}
    total = 0.0
    for item in items:
        score = _unit(item.confidence)
        if item.verification_status == "confirmed":
            score = max(score, params.confirmed_floor)
        bias = min(_memory_count(memory, item.key) * params.memory_bias_per_confirmation, params.memory_bias_cap)
        total += min(score + bias, 1.0)
    return total / len(items)


def coherence_term(protocol: Protocol, params: FusionParams = FusionParams()) -> float:
    if len(protocol.instructions) > params.coherence_min_steps:
        return params.coherence_high
    return params.coherence_low


def constraint_term(ingredients: Iterable[Ingredient], protocol: Protocol) -> float:
    referenced = [name_key(name) for name in protocol.ingredients_used]
    if not referenced:
        return 1.0
    perceived = {item.key for item in ingredients}
    hallucinated = sum(1 for name in referenced if name not in perceived)
    return max(0.0, 1.0 - hallucinated / len(referenced))


def fusion_breakdown(
    ingredients: Iterable[Ingredient],
    protocol: Protocol,
    memory_bias: Optional[Mapping[str, Any]] = None,
    params: FusionParams = FusionParams(),
) -> FusionBreakdown:
    items = list(ingredients)
    perception = perception_term(items, memory_bias, params)
    coherence = coherence_term(protocol, params)
    constraint = constraint_term(items, protocol)
    composite = (
        params.perception_weight * perception
        + params.coherence_weight * coherence
        + params.constraint_weight * constraint
    )
    if not math.isfinite(composite):
        composite = 0.0
    # half-up rounding, not banker's rounding
    score = int(math.floor(composite * 100 + 0.5))
    return FusionBreakdown(
        perception=perception,
        coherence=coherence,
        constraint=constraint,
        score=max(0, min(100, score)),
    )


def composite_confidence(
    ingredients: Iterable[Ingredient],
    protocol: Protocol,
    memory_bias: Optional[Mapping[str, Any]] = None,
    params: FusionParams = FusionParams(),
) -> int:
    return fusion_breakdown(ingredients, protocol, memory_bias, params).score
