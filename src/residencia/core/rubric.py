from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from residencia.core.errors import ValidationError
from residencia.core.grades import clamp_grade, round_half_away
from residencia.core.models import SixMonthStatus

MAX_SCORE = 4
PASSING_SCORE = 0.6 * MAX_SCORE
SIX_MONTH_PASSING_GRADE = 5.0

SCORE_LABELS: Dict[int, str] = {
    0: "Insatisfactorio",
    1: "Inadecuado",
    2: "Puede mejorar",
    3: "Satisfactorio",
    4: "Excelente",
}


@dataclass(frozen=True)
class RubricDimension:
    id: str
    dimension: str
    weight: float
    descriptors: Dict[int, str] = field(default_factory=lambda: dict(SCORE_LABELS))


@dataclass(frozen=True)
class ScoredDimension:
    weight: float
    score: Optional[int]


@dataclass(frozen=True)
class RubricResult:
    weighted_score: float
    final_grade: float


CONTINUITY_EXAM_RUBRIC: Tuple[RubricDimension, ...] = (
    RubricDimension("1", "Conocimiento teórico", 0.25),
    RubricDimension("2", "Interpretación de imágenes", 0.30),
    RubricDimension("3", "Razonamiento clínico y diagnóstico diferencial", 0.25),
    RubricDimension("4", "Comunicación del informe", 0.10),
    RubricDimension("5", "Profesionalismo", 0.10),
)


def _check_score(score: int) -> None:
    if isinstance(score, bool) or not isinstance(score, int) or not 0 <= score <= MAX_SCORE:
        raise ValidationError(f"Rubric scores must be integers between 0 and {MAX_SCORE}")


def score_rubric(dimensions: Iterable[ScoredDimension]) -> RubricResult:
    weighted_score = 0.0
    for item in dimensions:
        if not isinstance(item.weight, (int, float)) or not math.isfinite(item.weight) or item.weight < 0:
            raise ValidationError("Rubric weights must be non-negative numbers")
        if item.score is None:
            continue
        _check_score(item.score)
        weighted_score += item.score * item.weight

    if weighted_score < PASSING_SCORE:
        grade = 1 + (weighted_score / PASSING_SCORE) * 3
    else:
        grade = 4 + ((weighted_score - PASSING_SCORE) / (MAX_SCORE - PASSING_SCORE)) * 3

    return RubricResult(
        weighted_score=weighted_score,
        final_grade=round_half_away(clamp_grade(grade), 1),
    )


def missing_dimensions(scores: Mapping[str, int], rubric: Iterable[RubricDimension]) -> List[str]:
    return [item.id for item in rubric if scores.get(item.id) is None]


def score_exam(
    scores: Mapping[str, int],
    rubric: Iterable[RubricDimension] = CONTINUITY_EXAM_RUBRIC,
    *,
    require_complete: bool = True,
) -> RubricResult:
    rubric = tuple(rubric)
    known = {item.id for item in rubric}
    unknown = sorted(set(scores) - known)
    if unknown:
        raise ValidationError(f"Unknown rubric dimensions: {', '.join(unknown)}")
    if require_complete:
        missing = missing_dimensions(scores, rubric)
        if missing:
            raise ValidationError(f"All rubric dimensions must be scored, missing: {', '.join(missing)}")
    return score_rubric(ScoredDimension(item.weight, scores.get(item.id)) for item in rubric)


def six_month_status(grade: float) -> SixMonthStatus:
    # Continuity checkpoint is stricter than the 4.0 used for subjects.
    if grade > SIX_MONTH_PASSING_GRADE:
        return SixMonthStatus.APPROVED
    return SixMonthStatus.FAILED
