from __future__ import annotations

from typing import Iterable, List, Optional

from residencia.core.grades import PASSING_GRADE, round_half_away
from residencia.core.models import (
    ExamStatus,
    FinalExam,
    GradeComponent,
    Resident,
    Subject,
    TitulationRecord,
    TitulationStatus,
)
from residencia.core.resolution import GradeIndex
from residencia.core.weighting import titulation_grade


def closing_grade(index: GradeIndex, resident_id: str, subject_id: str) -> Optional[float]:
    """Certified acta grade first, otherwise any manual grade for the pair."""
    acta = index.acta_for(resident_id, subject_id)
    if acta is not None:
        return acta.content.final_grade

    transversal = index.manual_entry(resident_id, subject_id, GradeComponent.TRANSVERSAL)
    if transversal is not None:
        return transversal.grade

    entries = index.manual_entries_for(resident_id, subject_id)
    if entries:
        return entries[0].grade
    return None


def completed_exam_grade(resident_id: str, final_exams: Iterable[FinalExam]) -> Optional[float]:
    for exam in final_exams:
        if exam.resident_id == resident_id and exam.status == ExamStatus.COMPLETED:
            return exam.final_grade
    return None


def compute_titulation(
    resident: Resident,
    subjects: Iterable[Subject],
    index: GradeIndex,
    final_exams: Iterable[FinalExam],
) -> TitulationRecord:
    grades: List[float] = []
    for subject in subjects:
        grade = closing_grade(index, resident.id, subject.id)
        if grade is not None:
            grades.append(grade)

    # 0 means "no closed subjects"; real grades are never below 1.0.
    presentation_grade = 0.0
    if grades:
        presentation_grade = round_half_away(sum(grades) / len(grades), 1)

    exam_grade = completed_exam_grade(resident.id, final_exams)
    final_grade = titulation_grade(presentation_grade, exam_grade)

    if final_grade is None:
        status = TitulationStatus.PENDING
    elif final_grade >= PASSING_GRADE:
        status = TitulationStatus.APPROVED
    else:
        status = TitulationStatus.FAILED

    return TitulationRecord(
        resident_id=resident.id,
        resident_name=resident.name,
        subjects_count=len(grades),
        presentation_grade=presentation_grade,
        exam_grade=exam_grade,
        final_titulation_grade=final_grade,
        status=status,
    )
