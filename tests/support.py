from datetime import datetime, timedelta, timezone

from residencia.core.models import (
    Acta,
    ActaContent,
    Evaluation,
    EvaluationKind,
    Quiz,
    QuizAttempt,
    Resident,
    Subject,
    SubjectType,
    Teacher,
)
from residencia.services.store import Store

BASE_DATE = datetime(2024, 3, 1, tzinfo=timezone.utc)

RESIDENT = Resident(id="R1", name="Camila Rojas", course="Radiología")
OTHER_RESIDENT = Resident(id="R2", name="Diego Muñoz", course="Radiología")
LEAD = Teacher(id="T1", name="Dra. Soto")
COMMISSION = Teacher(id="T2", name="Dr. Pérez")

CHEST = Subject(id="S1", name="Radiología Torácica", code="RAD-101", lead_teacher_id="T1")
NEURO = Subject(id="S2", name="Neurorradiología", code="RAD-201", lead_teacher_id="T2")
ETHICS = Subject(
    id="S3",
    name="Ética Médica",
    code="TR-01",
    type=SubjectType.TRANSVERSAL,
    lead_teacher_id="T2",
)

CHEST_QUIZ = Quiz(id="Q1", title="Quiz Tórax", subject="radiología torácica ")


def attempt(attempt_id, score, quiz_id="Q1", resident_id="R1"):
    return QuizAttempt(id=attempt_id, quiz_id=quiz_id, resident_id=resident_id, score=score)


def evaluation(evaluation_id, kind, average, resident_id="R1", subject_id="S1", days=0, scores=None):
    return Evaluation(
        id=evaluation_id,
        kind=kind,
        resident_id=resident_id,
        subject_id=subject_id,
        teacher_id="T1",
        average_score=average,
        scores=scores or {"1": average},
        date=BASE_DATE + timedelta(days=days),
    )


def acta(acta_id, final_grade, resident_id="R1", subject_id="S1"):
    return Acta(
        id=acta_id,
        resident_id=resident_id,
        subject_id=subject_id,
        teacher_id="T1",
        content=ActaContent(
            written_grade=final_grade,
            competency_grade=final_grade,
            presentation_grade=final_grade,
            final_grade=final_grade,
        ),
    )


def complete_store(**extra):
    """R1 in S1 with best quiz 6.0, competency 5.5 and presentation 4.0 (final 5.65)."""
    seed = dict(
        residents=[RESIDENT, OTHER_RESIDENT],
        teachers=[LEAD, COMMISSION],
        subjects=[CHEST, NEURO, ETHICS],
        quizzes=[CHEST_QUIZ],
        attempts=[attempt("A1", 5.0), attempt("A2", 6.0)],
        competencies=[evaluation("C1", EvaluationKind.COMPETENCY, 5.5, scores={"1": 5.0, "2": 6.0})],
        presentations=[evaluation("P1", EvaluationKind.PRESENTATION, 4.0)],
    )
    seed.update(extra)
    return Store.in_memory(**seed)


def empty_store():
    return Store.in_memory(
        residents=[RESIDENT, OTHER_RESIDENT],
        teachers=[LEAD, COMMISSION],
        subjects=[CHEST, NEURO, ETHICS],
        quizzes=[CHEST_QUIZ],
    )
