import logging
from datetime import datetime
from functools import lru_cache
from typing import Dict, List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, status
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from residencia.config.logging_config import configure_logging
from residencia.config.settings import settings
from residencia.core.errors import (
    GradeEngineError,
    NotFoundError,
    PreconditionError,
    StoreError,
    ValidationError,
)
from residencia.core.models import EvaluationKind, GradeComponent, Signature, SignatureType
from residencia.services.acta_service import ActaService
from residencia.services.grade_service import GradeService
from residencia.services.store import Store
from residencia.services.survey_service import SurveyService
from residencia.state.session_state import SessionState

configure_logging()
logger = logging.getLogger(__name__)

app = FastAPI(title="Residencia Grades API", version="1.0.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=list(settings.cors_allowed_origins),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class ManualGradePayload(BaseModel):
    resident_id: str
    subject_id: str
    component: GradeComponent
    grade: float
    comment: str = ""


class AttemptPayload(BaseModel):
    quiz_id: str
    resident_id: str
    points_obtained: float
    points_possible: float


class EvaluationPayload(BaseModel):
    kind: EvaluationKind
    resident_id: str
    subject_id: str
    teacher_id: Optional[str] = None
    scores: Dict[str, float]


class ActaPayload(BaseModel):
    resident_id: str
    subject_id: str
    teacher_comment: str = ""


class SignaturePayload(BaseModel):
    type: SignatureType
    data: str


class SixMonthExamPayload(BaseModel):
    id: Optional[str] = None
    resident_id: str
    commission_ids: List[str] = Field(default_factory=list)
    case_topics: List[str] = Field(default_factory=list)
    scores: Dict[str, int]
    comments: str = ""
    date: Optional[datetime] = None


class FinalExamPayload(BaseModel):
    id: Optional[str] = None
    resident_id: str
    commission_ids: List[str] = Field(default_factory=list)
    topics: List[str] = Field(default_factory=list)
    scores: Dict[str, int]
    comments: str = ""
    date: Optional[datetime] = None


_ERROR_STATUS = (
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (PreconditionError, status.HTTP_409_CONFLICT),
    (StoreError, status.HTTP_500_INTERNAL_SERVER_ERROR),
)


def _http_error(exc: GradeEngineError) -> HTTPException:
    for error_type, status_code in _ERROR_STATUS:
        if isinstance(exc, error_type):
            break
    else:
        status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    if status_code >= 500:
        logger.error("Request failed: %s", exc)
    return HTTPException(status_code=status_code, detail=str(exc))


@lru_cache(maxsize=1)
def get_store() -> Store:
    return Store.from_settings()


def get_grade_service(store: Store = Depends(get_store)) -> GradeService:
    return GradeService(store)


def get_acta_service(
    store: Store = Depends(get_store),
    grades: GradeService = Depends(get_grade_service),
) -> ActaService:
    return ActaService(store, grades, SurveyService(store))


def get_session(
    x_user_id: Optional[str] = Header(default=None),
    x_user_role: Optional[str] = Header(default=None),
) -> SessionState:
    if not x_user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing x-user-id header")
    return SessionState(uid=x_user_id, role=x_user_role or "")


def _require_evaluator(session: SessionState) -> None:
    if not session.is_evaluator:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Evaluator role required")


def _visible_resident(session: SessionState, resident_id: Optional[str]) -> Optional[str]:
    """Resident filter the caller is allowed to use; residents only ever see themselves."""
    if resident_id and not session.can_view_resident(resident_id):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Residents can only view their own records")
    return resident_id if session.is_evaluator else session.uid


@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


@app.get("/grades")
async def list_grades(
    resident_id: Optional[str] = None,
    subject_id: Optional[str] = None,
    teacher_id: Optional[str] = None,
    session: SessionState = Depends(get_session),
    grades: GradeService = Depends(get_grade_service),
) -> List[Dict]:
    resident_id = _visible_resident(session, resident_id)
    try:
        rows = await grades.grade_rows(resident_id, subject_id, teacher_id)
        return [row.to_dict() for row in rows]
    except GradeEngineError as exc:
        raise _http_error(exc) from exc


@app.get("/grades/{resident_id}/{subject_id}")
async def get_grade(
    resident_id: str,
    subject_id: str,
    session: SessionState = Depends(get_session),
    grades: GradeService = Depends(get_grade_service),
) -> Dict:
    _visible_resident(session, resident_id)
    try:
        row = await grades.grade_row(resident_id, subject_id)
        return row.to_dict()
    except GradeEngineError as exc:
        raise _http_error(exc) from exc


@app.get("/transversal-grades")
async def list_transversal_grades(
    resident_id: Optional[str] = None,
    subject_id: Optional[str] = None,
    session: SessionState = Depends(get_session),
    grades: GradeService = Depends(get_grade_service),
) -> List[Dict]:
    resident_id = _visible_resident(session, resident_id)
    try:
        rows = await grades.transversal_rows(resident_id, subject_id)
        return [row.to_dict() for row in rows]
    except GradeEngineError as exc:
        raise _http_error(exc) from exc


@app.put("/manual-grades")
async def set_manual_grade(
    payload: ManualGradePayload,
    session: SessionState = Depends(get_session),
    grades: GradeService = Depends(get_grade_service),
) -> Dict:
    _require_evaluator(session)
    try:
        entry = await grades.set_manual_grade(
            payload.resident_id,
            payload.subject_id,
            payload.component,
            payload.grade,
            comment=payload.comment,
            author_id=session.uid,
        )
        return entry.to_dict()
    except GradeEngineError as exc:
        raise _http_error(exc) from exc


@app.delete("/manual-grades/{resident_id}/{subject_id}/{component}")
async def delete_manual_grade(
    resident_id: str,
    subject_id: str,
    component: GradeComponent,
    session: SessionState = Depends(get_session),
    grades: GradeService = Depends(get_grade_service),
) -> Dict[str, str]:
    _require_evaluator(session)
    try:
        removed = await grades.delete_manual_grade(resident_id, subject_id, component)
        return {"status": "deleted" if removed else "unchanged"}
    except GradeEngineError as exc:
        raise _http_error(exc) from exc


@app.post("/attempts")
async def record_attempt(
    payload: AttemptPayload,
    session: SessionState = Depends(get_session),
    grades: GradeService = Depends(get_grade_service),
) -> Dict:
    _visible_resident(session, payload.resident_id)
    try:
        attempt = await grades.record_attempt(
            payload.quiz_id,
            payload.resident_id,
            payload.points_obtained,
            payload.points_possible,
        )
        return attempt.to_dict()
    except GradeEngineError as exc:
        raise _http_error(exc) from exc


@app.post("/evaluations")
async def record_evaluation(
    payload: EvaluationPayload,
    session: SessionState = Depends(get_session),
    grades: GradeService = Depends(get_grade_service),
) -> Dict:
    _require_evaluator(session)
    try:
        evaluation = await grades.record_evaluation(
            payload.kind,
            payload.resident_id,
            payload.subject_id,
            payload.teacher_id or session.uid,
            payload.scores,
        )
        return evaluation.to_dict()
    except GradeEngineError as exc:
        raise _http_error(exc) from exc


@app.get("/actas")
async def list_actas(
    resident_id: Optional[str] = None,
    subject_id: Optional[str] = None,
    session: SessionState = Depends(get_session),
    actas: ActaService = Depends(get_acta_service),
) -> List[Dict]:
    resident_id = _visible_resident(session, resident_id)
    try:
        return [acta.to_dict() for acta in await actas.list_actas(resident_id, subject_id)]
    except GradeEngineError as exc:
        raise _http_error(exc) from exc


@app.post("/actas")
async def generate_acta(
    payload: ActaPayload,
    session: SessionState = Depends(get_session),
    actas: ActaService = Depends(get_acta_service),
) -> Dict:
    _require_evaluator(session)
    try:
        acta = await actas.generate(payload.resident_id, payload.subject_id, payload.teacher_comment)
        return acta.to_dict()
    except GradeEngineError as exc:
        raise _http_error(exc) from exc


@app.post("/actas/{acta_id}/sign")
async def sign_acta(
    acta_id: str,
    payload: SignaturePayload,
    session: SessionState = Depends(get_session),
    actas: ActaService = Depends(get_acta_service),
) -> Dict:
    try:
        acta = await actas.get(acta_id)
        if acta.resident_id != session.uid:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Only the resident named on the acta can sign it",
            )
        signed = await actas.sign(acta_id, Signature(type=payload.type, data=payload.data))
        return signed.to_dict()
    except GradeEngineError as exc:
        raise _http_error(exc) from exc


@app.get("/surveys/pending")
async def list_pending_surveys(
    session: SessionState = Depends(get_session),
    store: Store = Depends(get_store),
) -> List[Dict]:
    try:
        surveys = await SurveyService(store).pending_for(session.uid)
        return [survey.to_dict() for survey in surveys]
    except GradeEngineError as exc:
        raise _http_error(exc) from exc


@app.post("/six-month-exams")
async def save_six_month_exam(
    payload: SixMonthExamPayload,
    session: SessionState = Depends(get_session),
    grades: GradeService = Depends(get_grade_service),
) -> Dict:
    _require_evaluator(session)
    try:
        exam = await grades.save_six_month_exam(
            payload.resident_id,
            payload.commission_ids,
            payload.case_topics,
            payload.scores,
            payload.comments,
            exam_id=payload.id,
            date=payload.date,
        )
        return exam.to_dict()
    except GradeEngineError as exc:
        raise _http_error(exc) from exc


@app.post("/final-exams")
async def save_final_exam(
    payload: FinalExamPayload,
    session: SessionState = Depends(get_session),
    grades: GradeService = Depends(get_grade_service),
) -> Dict:
    _require_evaluator(session)
    try:
        exam = await grades.save_final_exam(
            payload.resident_id,
            payload.commission_ids,
            payload.topics,
            payload.scores,
            payload.comments,
            exam_id=payload.id,
            date=payload.date,
        )
        return exam.to_dict()
    except GradeEngineError as exc:
        raise _http_error(exc) from exc


@app.get("/titulation")
async def list_titulation(
    session: SessionState = Depends(get_session),
    grades: GradeService = Depends(get_grade_service),
) -> List[Dict]:
    try:
        if session.is_evaluator:
            records = await grades.titulations()
        else:
            records = [await grades.titulation(session.uid)]
        return [record.to_dict() for record in records]
    except GradeEngineError as exc:
        raise _http_error(exc) from exc


@app.get("/titulation/{resident_id}")
async def get_titulation(
    resident_id: str,
    session: SessionState = Depends(get_session),
    grades: GradeService = Depends(get_grade_service),
) -> Dict:
    _visible_resident(session, resident_id)
    try:
        record = await grades.titulation(resident_id)
        return record.to_dict()
    except GradeEngineError as exc:
        raise _http_error(exc) from exc
