import math
from typing import Any

from residencia.core.errors import ValidationError

MIN_GRADE = 1.0
MAX_GRADE = 7.0
PASSING_GRADE = 4.0
DEFAULT_DEMAND = 0.60


def clamp_grade(value: float) -> float:
    return max(MIN_GRADE, min(MAX_GRADE, value))


def round_half_away(value: float, places: int = 1) -> float:
    """Round half away from zero, the way the grade sheets are printed."""
    factor = 10 ** places
    scaled = abs(value) * factor
    rounded = math.floor(scaled + 0.5) / factor
    return math.copysign(rounded, value) if value else 0.0


def score_to_grade(score: float, max_score: float, *, demand: float = DEFAULT_DEMAND) -> float:
    """
    Convert a raw score into the 1.0-7.0 scale.

    passing_score = max_score * demand maps to 4.0; the transform is linear
    on each side of it:
        score <  passing: 1.0 + 3.0 * score / passing
        score >= passing: 4.0 + 3.0 * (score - passing) / (max_score - passing)
    """
    if max_score < 0 or score < 0:
        raise ValidationError("Scores must be non-negative")
    if not 0 < demand < 1:
        raise ValidationError("demand must be between 0 and 1")
    if max_score == 0:
        return MIN_GRADE

    passing_score = max_score * demand
    if score < passing_score:
        grade = MIN_GRADE + (PASSING_GRADE - MIN_GRADE) * (score / passing_score)
    else:
        grade = PASSING_GRADE + (MAX_GRADE - PASSING_GRADE) * (
            (score - passing_score) / (max_score - passing_score)
        )
    return round_half_away(clamp_grade(grade), 1)


def is_passing(grade: float) -> bool:
    return grade >= PASSING_GRADE


def validate_grade(value: Any, field_name: str = "grade") -> float:
    try:
        grade = float(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"{field_name} must be a number") from exc
    if math.isnan(grade) or not MIN_GRADE <= grade <= MAX_GRADE:
        raise ValidationError(f"{field_name} must be between {MIN_GRADE} and {MAX_GRADE}")
    return grade
