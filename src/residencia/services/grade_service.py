from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Iterable, List, Mapping, Optional

from residencia.core.errors import NotFoundError, ValidationError
from residencia.core.grades import PASSING_GRADE, validate_grade
from residencia.core.models import (
    Evaluation,
    EvaluationKind,
    ExamStatus,
    FinalExam,
    GradeComponent,
    GradeRow,
    ManualGradeEntry,
    QuizAttempt,
    ResolvedComponent,
    Resident,
    SixMonthExam,
    Subject,
    SubjectType,
    TitulationRecord,
    TransversalRow,
    new_id,
    utc_now,
)
from residencia.core.resolution import GradeIndex
from residencia.core.rubric import CONTINUITY_EXAM_RUBRIC, RubricDimension, score_exam, six_month_status
from residencia.core.titulation import compute_titulation
from residencia.services.store import Store

logger = logging.getLogger(__name__)

WEIGHTED_COMPONENTS = (
    GradeComponent.WRITTEN,
    GradeComponent.COMPETENCY,
    GradeComponent.PRESENTATION,
)


@dataclass(frozen=True)
class GradeChange:
    resident_id: str
    subject_id: Optional[str]
    reason: str


Listener = Callable[[GradeChange], None]


def _clean_list(values: Iterable[str]) -> List[str]:
    return [str(value).strip() for value in values if str(value).strip()]


class GradeService:
    """
    Store-backed entry point for grade reads and evaluator writes.

    Grade rows are rebuilt from the store on every read. Callers that cache
    rows subscribe to change notifications instead of reloading everything.
    """

    def __init__(self, store: Store) -> None:
        self.store = store
        self._listeners: List[Listener] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def notify(self, change: GradeChange) -> None:
        for listener in list(self._listeners):
            listener(change)

    async def load_index(self) -> GradeIndex:
        subjects, quizzes, attempts, competencies, presentations, manual, actas = await asyncio.gather(
            self.store.subjects.get_all(),
            self.store.quizzes.get_all(),
            self.store.attempts.get_all(),
            self.store.competencies.get_all(),
            self.store.presentations.get_all(),
            self.store.manual_grades.get_all(),
            self.store.actas.get_all(),
        )
        return GradeIndex(
            subjects=subjects,
            quizzes=quizzes,
            attempts=attempts,
            evaluations=[*competencies, *presentations],
            manual_grades=manual,
            actas=actas,
        )

    async def require_resident(self, resident_id: str) -> Resident:
        if not resident_id:
            raise ValidationError("A resident must be selected")
        resident = await self.store.residents.get(resident_id)
        if resident is None:
            raise NotFoundError(f"Resident {resident_id} not found")
        return resident

    async def require_subject(self, subject_id: str) -> Subject:
        if not subject_id:
            raise ValidationError("A subject must be selected")
        subject = await self.store.subjects.get(subject_id)
        if subject is None:
            raise NotFoundError(f"Subject {subject_id} not found")
        return subject

    async def _require_teachers(self, teacher_ids: Iterable[str]) -> None:
        known = {teacher.id for teacher in await self.store.teachers.get_all()}
        unknown = [teacher_id for teacher_id in teacher_ids if teacher_id not in known]
        if unknown:
            raise NotFoundError(f"Teachers not found: {', '.join(unknown)}")

    # Read models

    async def grade_rows(
        self,
        resident_id: Optional[str] = None,
        subject_id: Optional[str] = None,
        teacher_id: Optional[str] = None,
    ) -> List[GradeRow]:
        index = await self.load_index()
        residents = await self.store.residents.get_all()
        if resident_id:
            residents = [r for r in residents if r.id == resident_id]
        subjects = list(index.subjects.values())
        if subject_id:
            subjects = [s for s in subjects if s.id == subject_id]
        if teacher_id:
            subjects = [s for s in subjects if s.lead_teacher_id == teacher_id]
        return index.build_rows(residents, subjects)

    async def grade_row(self, resident_id: str, subject_id: str) -> GradeRow:
        resident = await self.require_resident(resident_id)
        subject = await self.require_subject(subject_id)
        index = await self.load_index()
        return index.build_row(resident, subject)

    async def resolve_component(
        self, resident_id: str, subject_id: str, component: GradeComponent
    ) -> ResolvedComponent:
        index = await self.load_index()
        return index.resolve_component(resident_id, subject_id, component)

    async def transversal_rows(
        self,
        resident_id: Optional[str] = None,
        subject_id: Optional[str] = None,
    ) -> List[TransversalRow]:
        index = await self.load_index()
        residents = await self.store.residents.get_all()
        if resident_id:
            residents = [r for r in residents if r.id == resident_id]
        subjects = list(index.subjects.values())
        if subject_id:
            subjects = [s for s in subjects if s.id == subject_id]
        return index.transversal_rows(residents, subjects)

    async def titulation(self, resident_id: str) -> TitulationRecord:
        resident = await self.require_resident(resident_id)
        index = await self.load_index()
        final_exams = await self.store.final_exams.get_all()
        return compute_titulation(resident, index.subjects.values(), index, final_exams)

    async def titulations(self) -> List[TitulationRecord]:
        index = await self.load_index()
        residents, final_exams = await asyncio.gather(
            self.store.residents.get_all(),
            self.store.final_exams.get_all(),
        )
        return [
            compute_titulation(resident, index.subjects.values(), index, final_exams)
            for resident in residents
        ]

    # Manual overrides

    async def set_manual_grade(
        self,
        resident_id: str,
        subject_id: str,
        component: GradeComponent,
        grade: float,
        comment: str = "",
        author_id: str = "",
    ) -> ManualGradeEntry:
        grade = validate_grade(grade)
        await self.require_resident(resident_id)
        subject = await self.require_subject(subject_id)

        if subject.type == SubjectType.TRANSVERSAL and component != GradeComponent.TRANSVERSAL:
            raise ValidationError(f"Subject {subject.name} only takes a {GradeComponent.TRANSVERSAL.value} grade")
        if subject.type == SubjectType.STANDARD and component not in WEIGHTED_COMPONENTS:
            raise ValidationError(f"Subject {subject.name} does not take a {component.value} grade")

        entry = ManualGradeEntry(
            id=ManualGradeEntry.key_id(resident_id, subject_id, component),
            resident_id=resident_id,
            subject_id=subject_id,
            component=component,
            grade=grade,
            comment=comment.strip(),
            author_id=author_id,
            created_at=utc_now(),
        )

        async with self.store.locks(("manual", *entry.key)):
            existing = [e for e in await self.store.manual_grades.get_all() if e.key == entry.key]
            if existing:
                entry.id = existing[0].id
                saved = await self.store.manual_grades.update(entry)
            else:
                saved = await self.store.manual_grades.create(entry)

        logger.info(
            "Manual %s grade %.1f set for resident %s in subject %s by %s",
            component.value,
            grade,
            resident_id,
            subject_id,
            author_id or "unknown",
        )
        self.notify(GradeChange(resident_id, subject_id, "manual_grade_set"))
        return saved

    async def delete_manual_grade(
        self, resident_id: str, subject_id: str, component: GradeComponent
    ) -> bool:
        key = (resident_id, subject_id, component)
        async with self.store.locks(("manual", *key)):
            existing = [e for e in await self.store.manual_grades.get_all() if e.key == key]
            for entry in existing:
                await self.store.manual_grades.delete(entry.id)

        if not existing:
            return False
        logger.info(
            "Manual %s grade removed for resident %s in subject %s",
            component.value,
            resident_id,
            subject_id,
        )
        self.notify(GradeChange(resident_id, subject_id, "manual_grade_deleted"))
        return True

    # Automatic sources

    async def record_attempt(
        self,
        quiz_id: str,
        resident_id: str,
        points_obtained: float,
        points_possible: float,
    ) -> QuizAttempt:
        await self.require_resident(resident_id)
        quiz = await self.store.quizzes.get(quiz_id)
        if quiz is None:
            raise NotFoundError(f"Quiz {quiz_id} not found")
        if points_possible < 0 or points_obtained < 0 or points_obtained > points_possible:
            raise ValidationError("points_obtained must be between 0 and points_possible")

        attempt = await self.store.attempts.create(
            QuizAttempt.graded(quiz_id, resident_id, points_obtained, points_possible)
        )
        logger.info("Quiz %s attempt by %s graded %.1f", quiz_id, resident_id, attempt.score)
        self.notify(GradeChange(resident_id, quiz.subject_id, "attempt_recorded"))
        return attempt

    async def record_evaluation(
        self,
        kind: EvaluationKind,
        resident_id: str,
        subject_id: str,
        teacher_id: str,
        scores: Mapping[str, float],
    ) -> Evaluation:
        await self.require_resident(resident_id)
        subject = await self.require_subject(subject_id)
        if subject.type == SubjectType.TRANSVERSAL:
            raise ValidationError(f"Subject {subject.name} is graded directly and takes no {kind.value} evaluations")
        await self._require_teachers([teacher_id])
        if not scores:
            raise ValidationError("At least one criterion must be scored")

        normalized = {
            str(key): validate_grade(value, f"score for criterion {key}")
            for key, value in scores.items()
        }
        evaluation = Evaluation(
            id=new_id("COMP" if kind == EvaluationKind.COMPETENCY else "PRES"),
            kind=kind,
            resident_id=resident_id,
            subject_id=subject_id,
            teacher_id=teacher_id,
            average_score=sum(normalized.values()) / len(normalized),
            scores=normalized,
        )
        collection = (
            self.store.competencies if kind == EvaluationKind.COMPETENCY else self.store.presentations
        )
        saved = await collection.create(evaluation)
        logger.info(
            "%s evaluation %s for resident %s averaged %.2f",
            kind.value,
            saved.id,
            resident_id,
            saved.average_score,
        )
        self.notify(GradeChange(resident_id, subject_id, "evaluation_recorded"))
        return saved

    # Structured exams

    async def _validate_exam(
        self,
        resident_id: str,
        commission_ids: Iterable[str],
        topics: Iterable[str],
    ) -> tuple[List[str], List[str]]:
        await self.require_resident(resident_id)
        commission = _clean_list(commission_ids)
        if not commission:
            raise ValidationError("At least one commission member must be selected")
        cleaned_topics = _clean_list(topics)
        if not cleaned_topics:
            raise ValidationError("At least one clinical case must be registered")
        await self._require_teachers(commission)
        return commission, cleaned_topics

    async def save_six_month_exam(
        self,
        resident_id: str,
        commission_ids: Iterable[str],
        case_topics: Iterable[str],
        scores: Mapping[str, int],
        comments: str = "",
        *,
        exam_id: Optional[str] = None,
        date: Optional[datetime] = None,
        rubric: Iterable[RubricDimension] = CONTINUITY_EXAM_RUBRIC,
    ) -> SixMonthExam:
        commission, topics = await self._validate_exam(resident_id, commission_ids, case_topics)
        result = score_exam(scores, rubric)

        exam = SixMonthExam(
            id=exam_id or new_id("EXAM6M"),
            resident_id=resident_id,
            commission_ids=commission,
            case_topics=topics,
            scores={str(key): value for key, value in scores.items()},
            numeric_grade=result.final_grade,
            final_status=six_month_status(result.final_grade),
            comments=comments,
            date=date or utc_now(),
        )
        async with self.store.locks(("six_month_exam", exam.id)):
            if await self.store.six_month_exams.get(exam.id) is not None:
                saved = await self.store.six_month_exams.update(exam)
            else:
                saved = await self.store.six_month_exams.create(exam)

        logger.info(
            "Six-month exam %s for resident %s: %.1f %s",
            saved.id,
            resident_id,
            saved.numeric_grade,
            saved.final_status.value,
        )
        return saved

    async def save_final_exam(
        self,
        resident_id: str,
        commission_ids: Iterable[str],
        topics: Iterable[str],
        scores: Mapping[str, int],
        comments: str = "",
        *,
        exam_id: Optional[str] = None,
        date: Optional[datetime] = None,
        rubric: Iterable[RubricDimension] = CONTINUITY_EXAM_RUBRIC,
    ) -> FinalExam:
        commission, cleaned_topics = await self._validate_exam(resident_id, commission_ids, topics)
        result = score_exam(scores, rubric)

        exam = FinalExam(
            id=exam_id or new_id("FINAL"),
            resident_id=resident_id,
            commission_ids=commission,
            topics=cleaned_topics,
            scores={str(key): value for key, value in scores.items()},
            final_grade=result.final_grade,
            status=ExamStatus.COMPLETED,
            passed=result.final_grade >= PASSING_GRADE,
            comments=comments,
            date=date or utc_now(),
        )
        async with self.store.locks(("final_exam", exam.id)):
            if await self.store.final_exams.get(exam.id) is not None:
                saved = await self.store.final_exams.update(exam)
            else:
                saved = await self.store.final_exams.create(exam)

        logger.info("Final exam %s for resident %s: %.1f", saved.id, resident_id, saved.final_grade)
        self.notify(GradeChange(resident_id, None, "final_exam_saved"))
        return saved
