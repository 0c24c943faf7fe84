from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterable, Optional

from residencia.core.errors import ValidationError
from residencia.core.grades import round_half_away

WRITTEN_WEIGHT = 0.6
COMPETENCY_WEIGHT = 0.3
PRESENTATION_WEIGHT = 0.1

TITULATION_PRESENTATION_WEIGHT = 0.8
TITULATION_EXAM_WEIGHT = 0.2


@dataclass(frozen=True)
class WeightedComponent:
    value: Optional[float]
    weight: float


def compute_weighted(components: Iterable[WeightedComponent]) -> Optional[float]:
    """
    Weighted mean over the components that have a value.

    Missing components drop out and the remaining weights are renormalized.
    Returns None when nothing contributes; absent data never becomes 0.
    """
    weighted_sum = 0.0
    total_weight = 0.0
    has_value = False

    for component in components:
        weight = component.weight
        if isinstance(weight, bool) or not isinstance(weight, (int, float)) or not math.isfinite(weight):
            raise ValidationError(f"Invalid weight: {weight!r}")
        if weight < 0:
            raise ValidationError("Weights must be non-negative")
        if component.value is None:
            continue
        value = component.value
        if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
            raise ValidationError(f"Invalid component value: {value!r}")
        has_value = True
        weighted_sum += value * weight
        total_weight += weight

    if not has_value or total_weight <= 0:
        return None
    return weighted_sum / total_weight


def subject_final_grade(
    written: Optional[float],
    competency: Optional[float],
    presentation: Optional[float],
) -> Optional[float]:
    return compute_weighted(
        [
            WeightedComponent(written, WRITTEN_WEIGHT),
            WeightedComponent(competency, COMPETENCY_WEIGHT),
            WeightedComponent(presentation, PRESENTATION_WEIGHT),
        ]
    )


def subject_progress(
    written: Optional[float],
    competency: Optional[float],
    presentation: Optional[float],
) -> int:
    progress = 0.0
    for value, weight in (
        (written, WRITTEN_WEIGHT),
        (competency, COMPETENCY_WEIGHT),
        (presentation, PRESENTATION_WEIGHT),
    ):
        if value is not None:
            progress += weight
    return int(round(progress * 100))


def titulation_grade(presentation: Optional[float], exam: Optional[float]) -> Optional[float]:
    # Titulation is terminal: both parts are required, no renormalization.
    if not presentation or not exam:
        return None
    weighted = compute_weighted(
        [
            WeightedComponent(presentation, TITULATION_PRESENTATION_WEIGHT),
            WeightedComponent(exam, TITULATION_EXAM_WEIGHT),
        ]
    )
    if weighted is None:
        return None
    return round_half_away(weighted, 1)
