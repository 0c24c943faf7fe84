from __future__ import annotations

import asyncio
import copy
import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Generic, Hashable, Iterable, List, Optional, Type, TypeVar

from residencia.config.settings import settings
from residencia.core.errors import StoreError
from residencia.core.models import (
    Acta,
    Document,
    Evaluation,
    FinalExam,
    ManualGradeEntry,
    Quiz,
    QuizAttempt,
    Resident,
    SixMonthExam,
    Subject,
    SurveyStub,
    Teacher,
)

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=Document)

COLLECTIONS: Dict[str, Type[Document]] = {
    "residents": Resident,
    "teachers": Teacher,
    "subjects": Subject,
    "quizzes": Quiz,
    "attempts": QuizAttempt,
    "competencies": Evaluation,
    "presentations": Evaluation,
    "manual_grades": ManualGradeEntry,
    "actas": Acta,
    "final_exams": FinalExam,
    "six_month_exams": SixMonthExam,
    "surveys": SurveyStub,
}


class Collection(ABC, Generic[T]):
    """Async CRUD over one entity collection."""

    def __init__(self, name: str, entity: Type[T]) -> None:
        self.name = name
        self.entity = entity

    @abstractmethod
    async def get_all(self) -> List[T]:
        ...

    async def get(self, entity_id: str) -> Optional[T]:
        for item in await self.get_all():
            if item.id == entity_id:
                return item
        return None

    @abstractmethod
    async def create(self, entity: T) -> T:
        ...

    @abstractmethod
    async def update(self, entity: T) -> T:
        ...

    @abstractmethod
    async def delete(self, entity_id: str) -> None:
        ...


class MemoryCollection(Collection[T]):
    """Process-local collection; entities are copied in and out whole."""

    def __init__(self, name: str, entity: Type[T], items: Iterable[T] = ()) -> None:
        super().__init__(name, entity)
        self._items: Dict[str, T] = {}
        for item in items:
            self._items[item.id] = copy.deepcopy(item)

    async def get_all(self) -> List[T]:
        return [copy.deepcopy(item) for item in self._items.values()]

    async def get(self, entity_id: str) -> Optional[T]:
        item = self._items.get(entity_id)
        return copy.deepcopy(item) if item is not None else None

    async def create(self, entity: T) -> T:
        if entity.id in self._items:
            raise StoreError(f"{self.name}: document {entity.id} already exists")
        self._items[entity.id] = copy.deepcopy(entity)
        return copy.deepcopy(entity)

    async def update(self, entity: T) -> T:
        if entity.id not in self._items:
            raise StoreError(f"{self.name}: document {entity.id} not found")
        self._items[entity.id] = copy.deepcopy(entity)
        return copy.deepcopy(entity)

    async def delete(self, entity_id: str) -> None:
        if self._items.pop(entity_id, None) is None:
            raise StoreError(f"{self.name}: document {entity_id} not found")


class KeyedLocks:
    """
    One asyncio.Lock per key, for check-then-write sequences on a single key.

    A key's lock is dropped once its holder releases it and nobody else is
    waiting, so the table only holds keys in use.
    """

    def __init__(self) -> None:
        self._locks: Dict[Hashable, asyncio.Lock] = {}
        self._users: Dict[Hashable, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def __call__(self, key: Hashable) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                del self._locks[key]


class Store:
    def __init__(self, collections: Dict[str, Collection]) -> None:
        missing = [name for name in COLLECTIONS if name not in collections]
        if missing:
            raise StoreError(f"Missing collections: {', '.join(missing)}")

        self.residents: Collection[Resident] = collections["residents"]
        self.teachers: Collection[Teacher] = collections["teachers"]
        self.subjects: Collection[Subject] = collections["subjects"]
        self.quizzes: Collection[Quiz] = collections["quizzes"]
        self.attempts: Collection[QuizAttempt] = collections["attempts"]
        self.competencies: Collection[Evaluation] = collections["competencies"]
        self.presentations: Collection[Evaluation] = collections["presentations"]
        self.manual_grades: Collection[ManualGradeEntry] = collections["manual_grades"]
        self.actas: Collection[Acta] = collections["actas"]
        self.final_exams: Collection[FinalExam] = collections["final_exams"]
        self.six_month_exams: Collection[SixMonthExam] = collections["six_month_exams"]
        self.surveys: Collection[SurveyStub] = collections["surveys"]

        self.locks = KeyedLocks()

    @classmethod
    def in_memory(cls, **seed: Iterable[Document]) -> "Store":
        unknown = sorted(set(seed) - set(COLLECTIONS))
        if unknown:
            raise StoreError(f"Unknown collections: {', '.join(unknown)}")
        return cls(
            {
                name: MemoryCollection(name, entity, seed.get(name, ()))
                for name, entity in COLLECTIONS.items()
            }
        )

    @classmethod
    def from_settings(cls) -> "Store":
        if settings.store_backend == "memory":
            logger.info("Using in-memory store")
            return cls.in_memory()
        if settings.store_backend == "appwrite":
            from residencia.services.appwrite_store import appwrite_collections

            logger.info("Using Appwrite store at %s", settings.appwrite_endpoint)
            return cls(appwrite_collections())
        raise StoreError(f"Unsupported store backend: {settings.store_backend}")
