from dataclasses import dataclass
import os
from dotenv import load_dotenv


load_dotenv()


def _split_csv(value: str) -> tuple[str, ...]:
    return tuple(item.strip() for item in value.split(",") if item.strip())


@dataclass(frozen=True)
class Settings:
    store_backend: str = os.getenv("RESIDENCIA_STORE_BACKEND", "memory").strip().lower()
    log_level: str = os.getenv("RESIDENCIA_LOG_LEVEL", "INFO").upper()
    evaluator_roles: tuple[str, ...] = _split_csv(
        os.getenv("RESIDENCIA_EVALUATOR_ROLES", "evaluator,teacher,admin").lower()
    )

    appwrite_endpoint: str = os.getenv("APPWRITE_ENDPOINT", "")
    appwrite_project_id: str = os.getenv("APPWRITE_PROJECT_ID", "")
    appwrite_api_key: str = os.getenv("APPWRITE_API_KEY") or os.getenv("APPWRITE_FUNCTION_API_KEY", "")
    appwrite_database_id: str = os.getenv("APPWRITE_DATABASE_ID", "")

    appwrite_residents_collection_id: str = os.getenv("APPWRITE_RESIDENTS_COLLECTION_ID", "residents")
    appwrite_teachers_collection_id: str = os.getenv("APPWRITE_TEACHERS_COLLECTION_ID", "teachers")
    appwrite_subjects_collection_id: str = os.getenv("APPWRITE_SUBJECTS_COLLECTION_ID", "subjects")
    appwrite_quizzes_collection_id: str = os.getenv("APPWRITE_QUIZZES_COLLECTION_ID", "quizzes")
    appwrite_attempts_collection_id: str = os.getenv("APPWRITE_ATTEMPTS_COLLECTION_ID", "attempts")
    appwrite_competencies_collection_id: str = os.getenv("APPWRITE_COMPETENCIES_COLLECTION_ID", "competencies")
    appwrite_presentations_collection_id: str = os.getenv("APPWRITE_PRESENTATIONS_COLLECTION_ID", "presentations")
    appwrite_manual_grades_collection_id: str = os.getenv("APPWRITE_MANUAL_GRADES_COLLECTION_ID", "manual_grades")
    appwrite_actas_collection_id: str = os.getenv("APPWRITE_ACTAS_COLLECTION_ID", "actas")
    appwrite_final_exams_collection_id: str = os.getenv("APPWRITE_FINAL_EXAMS_COLLECTION_ID", "final_exams")
    appwrite_six_month_exams_collection_id: str = os.getenv(
        "APPWRITE_SIX_MONTH_EXAMS_COLLECTION_ID", "six_month_exams"
    )
    appwrite_surveys_collection_id: str = os.getenv("APPWRITE_SURVEYS_COLLECTION_ID", "surveys")

    cors_allowed_origins: tuple[str, ...] = _split_csv(
        os.getenv("CORS_ALLOWED_ORIGINS", "http://localhost:5173,http://127.0.0.1:5173")
    )

    def collection_id(self, name: str) -> str:
        return getattr(self, f"appwrite_{name}_collection_id")


settings = Settings()
