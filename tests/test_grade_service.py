import asyncio
import unittest

from support import complete_store, empty_store

from residencia.core.errors import NotFoundError, ValidationError
from residencia.core.models import (
    EvaluationKind,
    ExamStatus,
    GradeComponent,
    RowStatus,
    SixMonthStatus,
    TitulationStatus,
)
from residencia.core.rubric import CONTINUITY_EXAM_RUBRIC
from residencia.services.grade_service import GradeChange, GradeService


def uniform(score):
    return {item.id: score for item in CONTINUITY_EXAM_RUBRIC}


class EndToEndGradeTests(unittest.IsolatedAsyncioTestCase):
    async def test_sources_to_final_grade(self):
        service = GradeService(empty_store())

        first = await service.record_attempt("Q1", "R1", 22, 30)
        second = await service.record_attempt("Q1", "R1", 26, 30)
        self.assertEqual((first.score, second.score), (5.0, 6.0))

        competency = await service.record_evaluation(
            EvaluationKind.COMPETENCY, "R1", "S1", "T1", {"1": 5.0, "2": 6.0}
        )
        self.assertAlmostEqual(competency.average_score, 5.5)
        await service.record_evaluation(EvaluationKind.PRESENTATION, "R1", "S1", "T1", {"1": 4})

        row = await service.grade_row("R1", "S1")
        self.assertEqual(row.written.value, 6.0)
        self.assertAlmostEqual(row.final_grade, 5.65, delta=1e-9)
        self.assertEqual(row.progress, 100)
        self.assertEqual(row.status, RowStatus.COMPLETE)

        await service.set_manual_grade("R1", "S1", GradeComponent.COMPETENCY, 7.0, author_id="T1")
        row = await service.grade_row("R1", "S1")
        self.assertAlmostEqual(row.final_grade, 6.1, delta=1e-9)
        self.assertTrue(row.is_competency_manual)


class ManualGradeTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.store = complete_store()
        self.service = GradeService(self.store)

    async def test_upsert_keeps_one_entry_per_key(self):
        await self.service.set_manual_grade("R1", "S1", GradeComponent.WRITTEN, 5.0, "primera")
        saved = await self.service.set_manual_grade("R1", "S1", GradeComponent.WRITTEN, 6.5, " segunda ")
        entries = await self.store.manual_grades.get_all()
        self.assertEqual(len(entries), 1)
        self.assertEqual(saved.id, "MAN-Written-R1-S1")
        self.assertEqual((entries[0].grade, entries[0].comment), (6.5, "segunda"))

    async def test_concurrent_writes_keep_one_entry(self):
        await asyncio.gather(
            *[
                self.service.set_manual_grade("R1", "S1", GradeComponent.PRESENTATION, grade)
                for grade in (4.0, 5.0, 6.0)
            ]
        )
        entries = await self.store.manual_grades.get_all()
        self.assertEqual(len(entries), 1)

    async def test_delete_falls_back_to_automatic_source(self):
        await self.service.set_manual_grade("R1", "S1", GradeComponent.COMPETENCY, 7.0)
        self.assertTrue(await self.service.delete_manual_grade("R1", "S1", GradeComponent.COMPETENCY))

        competency = await self.service.resolve_component("R1", "S1", GradeComponent.COMPETENCY)
        self.assertAlmostEqual(competency.value, 5.5)
        self.assertFalse(competency.is_manual)
        self.assertFalse(await self.service.delete_manual_grade("R1", "S1", GradeComponent.COMPETENCY))

    async def test_invalid_manual_grades(self):
        with self.assertRaises(ValidationError):
            await self.service.set_manual_grade("R1", "S1", GradeComponent.WRITTEN, 7.5)
        with self.assertRaises(ValidationError):
            await self.service.set_manual_grade("R1", "", GradeComponent.WRITTEN, 5.0)
        with self.assertRaises(NotFoundError):
            await self.service.set_manual_grade("R404", "S1", GradeComponent.WRITTEN, 5.0)
        with self.assertRaises(NotFoundError):
            await self.service.set_manual_grade("R1", "S404", GradeComponent.WRITTEN, 5.0)

    async def test_component_must_fit_subject_type(self):
        with self.assertRaises(ValidationError):
            await self.service.set_manual_grade("R1", "S1", GradeComponent.TRANSVERSAL, 5.0)
        with self.assertRaises(ValidationError):
            await self.service.set_manual_grade("R1", "S3", GradeComponent.WRITTEN, 5.0)

        await self.service.set_manual_grade("R1", "S3", GradeComponent.TRANSVERSAL, 6.0, "Aprobado")
        rows = await self.service.transversal_rows(resident_id="R1")
        self.assertEqual([(row.subject_id, row.grade) for row in rows], [("S3", 6.0)])

    async def test_listeners_are_notified(self):
        changes = []
        unsubscribe = self.service.subscribe(changes.append)

        await self.service.set_manual_grade("R1", "S1", GradeComponent.WRITTEN, 5.0)
        await self.service.delete_manual_grade("R1", "S1", GradeComponent.WRITTEN)
        self.assertEqual(
            changes,
            [
                GradeChange("R1", "S1", "manual_grade_set"),
                GradeChange("R1", "S1", "manual_grade_deleted"),
            ],
        )

        unsubscribe()
        await self.service.set_manual_grade("R1", "S1", GradeComponent.WRITTEN, 5.0)
        self.assertEqual(len(changes), 2)

    async def test_mutations_are_logged(self):
        with self.assertLogs("residencia.services.grade_service", level="INFO") as logs:
            await self.service.set_manual_grade("R1", "S1", GradeComponent.WRITTEN, 5.0, author_id="T1")
        self.assertIn("Manual Written grade 5.0 set for resident R1", logs.output[0])


class ReadModelTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.service = GradeService(complete_store())

    async def test_grade_rows_filters(self):
        rows = await self.service.grade_rows()
        self.assertEqual(len(rows), 4)
        self.assertEqual({row.subject_id for row in rows}, {"S1", "S2"})

        mine = await self.service.grade_rows(resident_id="R1", subject_id="S1")
        self.assertEqual(len(mine), 1)
        self.assertAlmostEqual(mine[0].final_grade, 5.65, delta=1e-9)

        led = await self.service.grade_rows(teacher_id="T2")
        self.assertEqual({row.subject_id for row in led}, {"S2"})

    async def test_unknown_ids(self):
        with self.assertRaises(NotFoundError):
            await self.service.grade_row("R404", "S1")
        with self.assertRaises(NotFoundError):
            await self.service.titulation("R404")

    async def test_titulation_read_models(self):
        await self.service.set_manual_grade("R1", "S3", GradeComponent.TRANSVERSAL, 6.0)
        await self.service.save_final_exam("R1", ["T1", "T2"], ["Nódulo pulmonar"], uniform(3))

        record = await self.service.titulation("R1")
        self.assertEqual(record.presentation_grade, 6.0)
        self.assertEqual(record.exam_grade, 5.1)
        self.assertEqual(record.final_titulation_grade, 5.8)
        self.assertEqual(record.status, TitulationStatus.APPROVED)

        records = {item.resident_id: item for item in await self.service.titulations()}
        self.assertEqual(records["R2"].status, TitulationStatus.PENDING)
        self.assertIsNone(records["R2"].final_titulation_grade)


class SourceRecordingTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.service = GradeService(empty_store())

    async def test_attempt_validation(self):
        with self.assertRaises(NotFoundError):
            await self.service.record_attempt("Q404", "R1", 10, 20)
        with self.assertRaises(ValidationError):
            await self.service.record_attempt("Q1", "R1", 25, 20)

    async def test_evaluation_validation(self):
        with self.assertRaises(ValidationError):
            await self.service.record_evaluation(EvaluationKind.COMPETENCY, "R1", "S1", "T1", {})
        with self.assertRaises(ValidationError):
            await self.service.record_evaluation(EvaluationKind.COMPETENCY, "R1", "S1", "T1", {"1": 8})
        with self.assertRaises(NotFoundError):
            await self.service.record_evaluation(EvaluationKind.COMPETENCY, "R1", "S1", "T404", {"1": 5})
        for kind in EvaluationKind:
            with self.assertRaises(ValidationError):
                await self.service.record_evaluation(kind, "R1", "S3", "T2", {"1": 5})
        self.assertEqual(await self.service.store.competencies.get_all(), [])
        self.assertEqual(await self.service.store.presentations.get_all(), [])


class ExamTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.store = empty_store()
        self.service = GradeService(self.store)

    async def test_six_month_exam_grading(self):
        exam = await self.service.save_six_month_exam("R1", ["T1"], ["TEP"], uniform(4))
        self.assertEqual(exam.numeric_grade, 7.0)
        self.assertEqual(exam.final_status, SixMonthStatus.APPROVED)

        exam = await self.service.save_six_month_exam("R1", ["T1"], ["TEP"], uniform(2))
        self.assertLess(exam.numeric_grade, 4.0)
        self.assertEqual(exam.final_status, SixMonthStatus.FAILED)

    async def test_six_month_exam_upserts_by_id(self):
        first = await self.service.save_six_month_exam("R1", ["T1"], ["TEP"], uniform(2))
        second = await self.service.save_six_month_exam(
            "R1", ["T1", "T2"], ["TEP"], uniform(3), exam_id=first.id
        )
        exams = await self.store.six_month_exams.get_all()
        self.assertEqual(len(exams), 1)
        self.assertEqual(exams[0].numeric_grade, second.numeric_grade)
        self.assertEqual(exams[0].commission_ids, ["T1", "T2"])

    async def test_exam_validation(self):
        with self.assertRaises(ValidationError):
            await self.service.save_six_month_exam("R1", [], ["TEP"], uniform(3))
        with self.assertRaises(ValidationError):
            await self.service.save_six_month_exam("R1", ["T1"], ["  "], uniform(3))
        with self.assertRaises(ValidationError):
            await self.service.save_six_month_exam("", ["T1"], ["TEP"], uniform(3))
        with self.assertRaises(NotFoundError):
            await self.service.save_six_month_exam("R1", ["T404"], ["TEP"], uniform(3))

        incomplete = uniform(3)
        del incomplete["5"]
        with self.assertRaises(ValidationError):
            await self.service.save_six_month_exam("R1", ["T1"], ["TEP"], incomplete)
        self.assertEqual(await self.store.six_month_exams.get_all(), [])

    async def test_final_exam(self):
        exam = await self.service.save_final_exam("R1", ["T1"], ["Nódulo pulmonar"], uniform(3))
        self.assertEqual(exam.final_grade, 5.1)
        self.assertEqual(exam.status, ExamStatus.COMPLETED)
        self.assertTrue(exam.passed)

        failed = await self.service.save_final_exam("R2", ["T1"], ["Nódulo pulmonar"], uniform(1))
        self.assertFalse(failed.passed)


if __name__ == "__main__":
    unittest.main()
