"""
Acta (grade certificate) lifecycle: NoActa -> Pending -> Accepted.

Accepted is terminal. Signing an acta raises a pending teacher-evaluation
survey for the resident through the survey collaborator.
"""

from __future__ import annotations

import logging
import re
from typing import List, Optional, Protocol

from residencia.core.errors import NotFoundError, PreconditionError, ValidationError
from residencia.core.models import (
    Acta,
    ActaCandidate,
    ActaStatus,
    Signature,
    SignatureType,
    SubjectType,
    SurveyStatus,
    SurveyStub,
    new_id,
    utc_now,
)
from residencia.services.grade_service import GradeChange, GradeService
from residencia.services.store import Store

logger = logging.getLogger(__name__)

PIN_PATTERN = re.compile(r"[0-9]{4}")


class SurveyCollaborator(Protocol):
    async def create(self, survey: SurveyStub) -> SurveyStub:
        ...


def validate_signature(signature: Signature) -> None:
    """
    Check the signature payload shape.

    A PIN is any four digits and is not checked against a credential; it
    records intent to sign, it does not authenticate the signer.
    """
    if signature.type == SignatureType.PIN:
        if not PIN_PATTERN.fullmatch(signature.data or ""):
            raise ValidationError("PIN must be exactly 4 digits")
    elif signature.type == SignatureType.DRAW:
        if not (signature.data or "").strip():
            raise ValidationError("A drawn signature is required")
    else:
        raise ValidationError(f"Unsupported signature type: {signature.type}")


class ActaService:
    def __init__(self, store: Store, grades: GradeService, surveys: SurveyCollaborator) -> None:
        self.store = store
        self.grades = grades
        self.surveys = surveys

    async def _existing(self, resident_id: str, subject_id: str) -> Optional[Acta]:
        for acta in await self.store.actas.get_all():
            if acta.resident_id == resident_id and acta.subject_id == subject_id:
                return acta
        return None

    async def list_actas(
        self,
        resident_id: Optional[str] = None,
        subject_id: Optional[str] = None,
    ) -> List[Acta]:
        actas = await self.store.actas.get_all()
        if resident_id:
            actas = [a for a in actas if a.resident_id == resident_id]
        if subject_id:
            actas = [a for a in actas if a.subject_id == subject_id]
        return sorted(actas, key=lambda a: a.generated_at, reverse=True)

    async def get(self, acta_id: str) -> Acta:
        acta = await self.store.actas.get(acta_id)
        if acta is None:
            raise NotFoundError(f"Acta {acta_id} not found")
        return acta

    async def generate(self, resident_id: str, subject_id: str, teacher_comment: str = "") -> Acta:
        async with self.store.locks(("acta", resident_id, subject_id)):
            subject = await self.grades.require_subject(subject_id)
            if subject.type != SubjectType.STANDARD:
                logger.warning("Acta rejected for %s subject %s", subject.type.value, subject_id)
                raise PreconditionError(f"Subject {subject.name} is graded directly and takes no acta")
            row = await self.grades.grade_row(resident_id, subject_id)

            existing = await self._existing(resident_id, subject_id)
            if existing is not None:
                logger.warning(
                    "Acta already exists for resident %s in subject %s (%s)",
                    resident_id,
                    subject_id,
                    existing.id,
                )
                raise PreconditionError(f"An acta already exists for this subject ({existing.id})")

            try:
                candidate = ActaCandidate.from_row(row, teacher_comment.strip())
            except PreconditionError:
                logger.warning(
                    "Acta rejected for resident %s in subject %s at %s%% progress",
                    resident_id,
                    subject_id,
                    row.progress,
                )
                raise

            acta = await self.store.actas.create(
                Acta(
                    id=new_id("ACTA"),
                    resident_id=candidate.resident_id,
                    subject_id=candidate.subject_id,
                    teacher_id=candidate.teacher_id,
                    content=candidate.to_content(),
                    status=ActaStatus.PENDING,
                    generated_at=utc_now(),
                )
            )

        logger.info(
            "Acta %s generated for resident %s in subject %s with final grade %.2f",
            acta.id,
            resident_id,
            subject_id,
            acta.content.final_grade,
        )
        self.grades.notify(GradeChange(resident_id, subject_id, "acta_generated"))
        return acta

    async def sign(self, acta_id: str, signature: Signature) -> Acta:
        validate_signature(signature)

        async with self.store.locks(("acta-sign", acta_id)):
            acta = await self.get(acta_id)
            if acta.status != ActaStatus.PENDING:
                raise PreconditionError(f"Acta {acta_id} is already {acta.status.value}")

            acta.status = ActaStatus.ACCEPTED
            acta.signature = Signature(type=signature.type, data=signature.data, timestamp=utc_now())
            acta = await self.store.actas.update(acta)

            # The survey request is part of the signature; undo the acceptance if it fails.
            try:
                await self.surveys.create(
                    SurveyStub(
                        id=new_id("SURV-AUTO"),
                        resident_id=acta.resident_id,
                        teacher_id=acta.teacher_id,
                        subject_id=acta.subject_id,
                        status=SurveyStatus.PENDING,
                    )
                )
            except Exception:
                logger.error("Survey request failed for acta %s, reverting to Pending", acta.id)
                acta.status = ActaStatus.PENDING
                acta.signature = None
                await self.store.actas.update(acta)
                raise

        logger.info("Acta %s accepted by resident %s", acta.id, acta.resident_id)
        self.grades.notify(GradeChange(acta.resident_id, acta.subject_id, "acta_signed"))
        return acta
