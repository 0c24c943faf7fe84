import logging

from residencia.core.models import SurveyStatus, SurveyStub
from residencia.services.store import Store

logger = logging.getLogger(__name__)


class SurveyService:
    """Teacher-evaluation survey requests raised when a resident accepts an acta."""

    def __init__(self, store: Store) -> None:
        self.store = store

    async def create(self, survey: SurveyStub) -> SurveyStub:
        created = await self.store.surveys.create(survey)
        logger.info(
            "Survey %s requested from resident %s for teacher %s",
            created.id,
            created.resident_id,
            created.teacher_id,
        )
        return created

    async def pending_for(self, resident_id: str) -> list[SurveyStub]:
        surveys = await self.store.surveys.get_all()
        return [s for s in surveys if s.resident_id == resident_id and s.status == SurveyStatus.PENDING]
