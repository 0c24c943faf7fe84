"""
Grade resolution: turns raw grade sources into per-subject grade rows.

Precedence for every component is manual override first, automatic source
second. Sources are indexed once per GradeIndex so that building the full
residents x subjects grid stays linear in the number of records.
"""

from __future__ import annotations

from collections import defaultdict
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from residencia.core.models import (
    Acta,
    Evaluation,
    EvaluationKind,
    GradeComponent,
    GradeRow,
    ManualGradeEntry,
    Quiz,
    QuizAttempt,
    ResolvedComponent,
    Resident,
    RowStatus,
    Subject,
    SubjectType,
    TransversalRow,
    as_utc,
)
from residencia.core.weighting import subject_final_grade, subject_progress

CROSS_SUBJECT_TAG = "Interdisciplinario"
NO_QUIZZES_DETAIL = "No quizzes assigned"
PENDING_DETAIL = "Pending"

_EVALUATION_KINDS = {
    GradeComponent.COMPETENCY: EvaluationKind.COMPETENCY,
    GradeComponent.PRESENTATION: EvaluationKind.PRESENTATION,
}


def _normalize_name(value: str) -> str:
    return (value or "").strip().lower()


def quiz_matches_subject(quiz: Quiz, subject: Subject) -> bool:
    if quiz.subject_id:
        return quiz.subject_id == subject.id
    if quiz.subject == CROSS_SUBJECT_TAG:
        return True
    return _normalize_name(quiz.subject) == _normalize_name(subject.name)


def best_attempt(attempts: Iterable[QuizAttempt]) -> Optional[QuizAttempt]:
    best: Optional[QuizAttempt] = None
    for attempt in attempts:
        if attempt.score is None:
            continue
        if best is None or attempt.score > best.score:
            best = attempt
    return best


class GradeIndex:
    def __init__(
        self,
        *,
        subjects: Sequence[Subject] = (),
        quizzes: Sequence[Quiz] = (),
        attempts: Sequence[QuizAttempt] = (),
        evaluations: Sequence[Evaluation] = (),
        manual_grades: Sequence[ManualGradeEntry] = (),
        actas: Sequence[Acta] = (),
    ) -> None:
        self.subjects: Dict[str, Subject] = {subject.id: subject for subject in subjects}
        self.quizzes: List[Quiz] = list(quizzes)

        self._attempts: Dict[Tuple[str, str], List[QuizAttempt]] = defaultdict(list)
        for attempt in attempts:
            self._attempts[(attempt.quiz_id, attempt.resident_id)].append(attempt)

        self._evaluations: Dict[Tuple[str, str, EvaluationKind], List[Evaluation]] = defaultdict(list)
        for evaluation in evaluations:
            key = (evaluation.resident_id, evaluation.subject_id, evaluation.kind)
            self._evaluations[key].append(evaluation)
        for records in self._evaluations.values():
            records.sort(key=lambda item: as_utc(item.date))

        self._manual: Dict[Tuple[str, str, GradeComponent], ManualGradeEntry] = {}
        for entry in manual_grades:
            self._manual[entry.key] = entry

        self._actas: Dict[Tuple[str, str], Acta] = {}
        for acta in actas:
            self._actas.setdefault((acta.resident_id, acta.subject_id), acta)

        self._subject_quizzes: Dict[str, List[Quiz]] = {}

    def quizzes_for(self, subject: Subject) -> List[Quiz]:
        cached = self._subject_quizzes.get(subject.id)
        if cached is None:
            cached = [quiz for quiz in self.quizzes if quiz_matches_subject(quiz, subject)]
            self._subject_quizzes[subject.id] = cached
        return cached

    def manual_entry(
        self, resident_id: str, subject_id: str, component: GradeComponent
    ) -> Optional[ManualGradeEntry]:
        return self._manual.get((resident_id, subject_id, component))

    def manual_entries_for(self, resident_id: str, subject_id: str) -> List[ManualGradeEntry]:
        return [
            entry
            for component in GradeComponent
            if (entry := self._manual.get((resident_id, subject_id, component))) is not None
        ]

    def acta_for(self, resident_id: str, subject_id: str) -> Optional[Acta]:
        return self._actas.get((resident_id, subject_id))

    def resolve_component(
        self, resident_id: str, subject_id: str, component: GradeComponent
    ) -> ResolvedComponent:
        manual = self.manual_entry(resident_id, subject_id, component)
        if manual is not None:
            return ResolvedComponent(value=manual.grade, is_manual=True, detail=manual.comment)

        if component == GradeComponent.WRITTEN:
            subject = self.subjects.get(subject_id)
            if subject is None:
                return ResolvedComponent(value=None, detail=NO_QUIZZES_DETAIL)
            return self._resolve_written(resident_id, subject)
        if component in _EVALUATION_KINDS:
            return self._resolve_evaluations(resident_id, subject_id, _EVALUATION_KINDS[component])
        return ResolvedComponent(value=None)

    def _resolve_written(self, resident_id: str, subject: Subject) -> ResolvedComponent:
        quizzes = self.quizzes_for(subject)
        if not quizzes:
            return ResolvedComponent(value=None, detail=NO_QUIZZES_DETAIL)

        best_scores: List[float] = []
        details: List[str] = []
        for quiz in quizzes:
            best = best_attempt(self._attempts.get((quiz.id, resident_id), ()))
            if best is None:
                details.append(f"{quiz.title}: {PENDING_DETAIL}")
                continue
            best_scores.append(best.score)
            details.append(f"{quiz.title}: {best.score:.1f}")

        value = sum(best_scores) / len(best_scores) if best_scores else None
        return ResolvedComponent(value=value, detail="\n".join(details))

    def _resolve_evaluations(
        self, resident_id: str, subject_id: str, kind: EvaluationKind
    ) -> ResolvedComponent:
        records = self._evaluations.get((resident_id, subject_id, kind), [])
        if not records:
            return ResolvedComponent(value=None)
        average = sum(record.average_score for record in records) / len(records)
        return ResolvedComponent(
            value=average,
            detail=f"{len(records)} evaluation(s)",
            scores=dict(records[-1].scores),
        )

    def build_row(self, resident: Resident, subject: Subject) -> GradeRow:
        written = self.resolve_component(resident.id, subject.id, GradeComponent.WRITTEN)
        competency = self.resolve_component(resident.id, subject.id, GradeComponent.COMPETENCY)
        presentation = self.resolve_component(resident.id, subject.id, GradeComponent.PRESENTATION)

        progress = subject_progress(written.value, competency.value, presentation.value)
        if progress == 100:
            status = RowStatus.COMPLETE
        elif progress > 0:
            status = RowStatus.PARTIAL
        else:
            status = RowStatus.NOT_STARTED

        return GradeRow(
            resident_id=resident.id,
            resident_name=resident.name,
            subject_id=subject.id,
            subject_name=subject.name,
            lead_teacher_id=subject.lead_teacher_id,
            written=written,
            competency=competency,
            presentation=presentation,
            final_grade=subject_final_grade(written.value, competency.value, presentation.value),
            progress=progress,
            status=status,
            has_acta=self.acta_for(resident.id, subject.id) is not None,
        )

    def build_rows(self, residents: Iterable[Resident], subjects: Iterable[Subject]) -> List[GradeRow]:
        standard = [subject for subject in subjects if subject.type == SubjectType.STANDARD]
        return [self.build_row(resident, subject) for resident in residents for subject in standard]

    def transversal_rows(
        self, residents: Iterable[Resident], subjects: Iterable[Subject]
    ) -> List[TransversalRow]:
        transversal = [subject for subject in subjects if subject.type == SubjectType.TRANSVERSAL]
        rows: List[TransversalRow] = []
        for resident in residents:
            for subject in transversal:
                entry = self.manual_entry(resident.id, subject.id, GradeComponent.TRANSVERSAL)
                rows.append(
                    TransversalRow(
                        resident_id=resident.id,
                        resident_name=resident.name,
                        subject_id=subject.id,
                        subject_name=subject.name,
                        lead_teacher_id=subject.lead_teacher_id,
                        grade=entry.grade if entry else None,
                        comment=entry.comment if entry else "",
                    )
                )
        return rows
