from dataclasses import dataclass
from typing import Optional

from residencia.config.settings import settings


@dataclass(frozen=True)
class SessionState:
    uid: Optional[str] = None
    role: str = ""

    @property
    def is_authenticated(self) -> bool:
        return bool(self.uid)

    @property
    def is_evaluator(self) -> bool:
        # Role comes from the caller's identity provider; nothing is verified here.
        return self.is_authenticated and self.role.strip().lower() in settings.evaluator_roles

    def can_view_resident(self, resident_id: str) -> bool:
        return self.is_evaluator or self.uid == resident_id
