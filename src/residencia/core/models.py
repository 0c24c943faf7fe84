from __future__ import annotations

import dataclasses
import types
import typing
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from residencia.core.errors import PreconditionError


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Naive datetimes are taken to be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12].upper()}"


class GradeComponent(str, Enum):
    WRITTEN = "Written"
    COMPETENCY = "Competency"
    PRESENTATION = "Presentation"
    TRANSVERSAL = "Transversal"


class SubjectType(str, Enum):
    STANDARD = "Standard"
    TRANSVERSAL = "Transversal"


class EvaluationKind(str, Enum):
    COMPETENCY = "Competency"
    PRESENTATION = "Presentation"


class AttemptState(str, Enum):
    SUBMITTED = "submitted"
    IN_PROGRESS = "in_progress"
    EXPIRED = "expired"
    PENDING_REVIEW = "pending_review"


class RowStatus(str, Enum):
    NOT_STARTED = "NotStarted"
    PARTIAL = "Partial"
    COMPLETE = "Complete"


class ActaStatus(str, Enum):
    PENDING = "Pending"
    ACCEPTED = "Accepted"


class SignatureType(str, Enum):
    PIN = "PIN"
    DRAW = "Draw"


class SixMonthStatus(str, Enum):
    APPROVED = "Aprobado"
    FAILED = "Reprobado"


class ExamStatus(str, Enum):
    PENDING = "Pending"
    COMPLETED = "Completed"


class SurveyStatus(str, Enum):
    PENDING = "Pending"
    COMPLETED = "Completed"


class TitulationStatus(str, Enum):
    PENDING = "Pending"
    APPROVED = "Approved"
    FAILED = "Failed"


def _encode(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {f.name: _encode(getattr(value, f.name)) for f in dataclasses.fields(value)}
    if isinstance(value, dict):
        return {str(key): _encode(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_encode(item) for item in value]
    return value


def _decode(tp: Any, value: Any) -> Any:
    if value is None:
        return None

    origin = typing.get_origin(tp)
    args = typing.get_args(tp)

    if origin in (typing.Union, types.UnionType):
        options = [arg for arg in args if arg is not type(None)]
        return _decode(options[0], value) if len(options) == 1 else value
    if origin is list:
        item_type = args[0] if args else Any
        return [_decode(item_type, item) for item in value]
    if origin is dict:
        key_type, item_type = args if args else (Any, Any)
        return {_decode(key_type, key): _decode(item_type, item) for key, item in value.items()}

    if isinstance(tp, type):
        if issubclass(tp, Enum):
            return tp(value)
        if issubclass(tp, datetime):
            if isinstance(value, datetime):
                return as_utc(value)
            return as_utc(datetime.fromisoformat(str(value).replace("Z", "+00:00")))
        if issubclass(tp, Document):
            return tp.from_dict(value)
        if tp is bool:
            return bool(value)
        if tp in (int, float, str):
            return tp(value)
    return value


class Document:
    """Mixin giving dataclass entities a plain-dict representation for stores and JSON."""

    def to_dict(self) -> Dict[str, Any]:
        return _encode(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]):
        hints = typing.get_type_hints(cls)
        kwargs = {
            f.name: _decode(hints[f.name], data[f.name])
            for f in dataclasses.fields(cls)
            if f.name in data
        }
        return cls(**kwargs)


@dataclass
class Resident(Document):
    id: str
    name: str
    course: str = ""
    status: str = "Activo"


@dataclass
class Teacher(Document):
    id: str
    name: str


@dataclass
class Subject(Document):
    id: str
    name: str
    code: str = ""
    type: SubjectType = SubjectType.STANDARD
    lead_teacher_id: str = ""
    participating_teacher_ids: List[str] = field(default_factory=list)


@dataclass
class Quiz(Document):
    id: str
    title: str
    subject: str = ""
    subject_id: Optional[str] = None


@dataclass
class QuizAttempt(Document):
    id: str
    quiz_id: str
    resident_id: str
    score: Optional[float] = None
    state: AttemptState = AttemptState.SUBMITTED
    points_obtained: float = 0.0
    points_possible: float = 0.0
    submitted_at: Optional[datetime] = None

    @classmethod
    def graded(
        cls,
        quiz_id: str,
        resident_id: str,
        points_obtained: float,
        points_possible: float,
    ) -> "QuizAttempt":
        from residencia.core.grades import score_to_grade

        return cls(
            id=new_id("ATT"),
            quiz_id=quiz_id,
            resident_id=resident_id,
            score=score_to_grade(points_obtained, points_possible),
            state=AttemptState.SUBMITTED,
            points_obtained=points_obtained,
            points_possible=points_possible,
            submitted_at=utc_now(),
        )


@dataclass
class Evaluation(Document):
    id: str
    kind: EvaluationKind
    resident_id: str
    subject_id: str
    teacher_id: str
    average_score: float
    scores: Dict[str, float] = field(default_factory=dict)
    date: datetime = field(default_factory=utc_now)


@dataclass
class ManualGradeEntry(Document):
    id: str
    resident_id: str
    subject_id: str
    component: GradeComponent
    grade: float
    comment: str = ""
    author_id: str = ""
    created_at: datetime = field(default_factory=utc_now)

    @staticmethod
    def key_id(resident_id: str, subject_id: str, component: GradeComponent) -> str:
        return f"MAN-{component.value}-{resident_id}-{subject_id}"

    @property
    def key(self) -> tuple:
        return (self.resident_id, self.subject_id, self.component)


@dataclass
class ActaContent(Document):
    written_grade: float
    competency_grade: float
    presentation_grade: float
    final_grade: float
    written_detail: str = ""
    competency_details: Dict[str, float] = field(default_factory=dict)
    presentation_details: Dict[str, float] = field(default_factory=dict)
    teacher_comment: str = ""


@dataclass
class Signature(Document):
    type: SignatureType
    data: str
    timestamp: datetime = field(default_factory=utc_now)


@dataclass
class Acta(Document):
    id: str
    resident_id: str
    subject_id: str
    teacher_id: str
    content: ActaContent
    status: ActaStatus = ActaStatus.PENDING
    generated_at: datetime = field(default_factory=utc_now)
    signature: Optional[Signature] = None


@dataclass
class SixMonthExam(Document):
    id: str
    resident_id: str
    commission_ids: List[str]
    case_topics: List[str]
    scores: Dict[str, int]
    numeric_grade: float
    final_status: SixMonthStatus
    comments: str = ""
    date: datetime = field(default_factory=utc_now)


@dataclass
class FinalExam(Document):
    id: str
    resident_id: str
    commission_ids: List[str]
    topics: List[str]
    scores: Dict[str, int] = field(default_factory=dict)
    final_grade: Optional[float] = None
    status: ExamStatus = ExamStatus.PENDING
    passed: bool = False
    comments: str = ""
    date: datetime = field(default_factory=utc_now)


@dataclass
class SurveyStub(Document):
    id: str
    resident_id: str
    teacher_id: str
    subject_id: str
    status: SurveyStatus = SurveyStatus.PENDING
    responses: Dict[str, str] = field(default_factory=dict)
    date: datetime = field(default_factory=utc_now)


# Read models, derived on every request and never persisted.


@dataclass
class ResolvedComponent(Document):
    value: Optional[float]
    is_manual: bool = False
    detail: str = ""
    scores: Dict[str, float] = field(default_factory=dict)


@dataclass
class GradeRow(Document):
    resident_id: str
    resident_name: str
    subject_id: str
    subject_name: str
    lead_teacher_id: str
    written: ResolvedComponent
    competency: ResolvedComponent
    presentation: ResolvedComponent
    final_grade: Optional[float]
    progress: int
    status: RowStatus
    has_acta: bool = False

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["is_written_manual"] = self.is_written_manual
        data["is_competency_manual"] = self.is_competency_manual
        data["is_presentation_manual"] = self.is_presentation_manual
        return data

    @property
    def is_written_manual(self) -> bool:
        return self.written.is_manual

    @property
    def is_competency_manual(self) -> bool:
        return self.competency.is_manual

    @property
    def is_presentation_manual(self) -> bool:
        return self.presentation.is_manual


@dataclass
class TransversalRow(Document):
    resident_id: str
    resident_name: str
    subject_id: str
    subject_name: str
    lead_teacher_id: str
    grade: Optional[float]
    comment: str = ""

    @property
    def has_grade(self) -> bool:
        return self.grade is not None

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["has_grade"] = self.has_grade
        return data


@dataclass
class TitulationRecord(Document):
    resident_id: str
    resident_name: str
    subjects_count: int
    presentation_grade: float
    exam_grade: Optional[float]
    final_titulation_grade: Optional[float]
    status: TitulationStatus


@dataclass(frozen=True)
class ActaCandidate:
    """A grade row that is complete enough to be certified."""

    resident_id: str
    subject_id: str
    teacher_id: str
    written_grade: float
    competency_grade: float
    presentation_grade: float
    final_grade: float
    written_detail: str = ""
    competency_details: Dict[str, float] = field(default_factory=dict)
    presentation_details: Dict[str, float] = field(default_factory=dict)
    teacher_comment: str = ""

    def __post_init__(self) -> None:
        missing = [
            name
            for name in ("written_grade", "competency_grade", "presentation_grade", "final_grade")
            if getattr(self, name) is None
        ]
        if missing:
            raise PreconditionError(f"Acta cannot be generated, missing: {', '.join(missing)}")

    @classmethod
    def from_row(cls, row: GradeRow, teacher_comment: str = "") -> "ActaCandidate":
        if row.progress < 100:
            raise PreconditionError(
                f"Acta requires all grade components (progress {row.progress}%)"
            )
        return cls(
            resident_id=row.resident_id,
            subject_id=row.subject_id,
            teacher_id=row.lead_teacher_id,
            written_grade=row.written.value,
            competency_grade=row.competency.value,
            presentation_grade=row.presentation.value,
            final_grade=row.final_grade,
            written_detail=row.written.detail,
            competency_details=dict(row.competency.scores),
            presentation_details=dict(row.presentation.scores),
            teacher_comment=teacher_comment,
        )

    def to_content(self) -> ActaContent:
        return ActaContent(
            written_grade=self.written_grade,
            competency_grade=self.competency_grade,
            presentation_grade=self.presentation_grade,
            final_grade=self.final_grade,
            written_detail=self.written_detail,
            competency_details=dict(self.competency_details),
            presentation_details=dict(self.presentation_details),
            teacher_comment=self.teacher_comment,
        )
