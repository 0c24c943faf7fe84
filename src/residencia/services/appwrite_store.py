from __future__ import annotations

import asyncio
import dataclasses
import json
import types
import typing
from typing import Any, Dict, List, Optional, Set, Type

from appwrite.client import Client
from appwrite.exception import AppwriteException
from appwrite.query import Query
from appwrite.services.databases import Databases

from residencia.config.settings import settings
from residencia.core.errors import StoreError
from residencia.core.models import Document
from residencia.services.store import COLLECTIONS, Collection, T

PAGE_SIZE = 100


def _json_fields(entity: Type[Document]) -> Set[str]:
    """Fields holding mappings or nested documents, stored as JSON strings."""
    names: Set[str] = set()
    hints = typing.get_type_hints(entity)
    for item in dataclasses.fields(entity):
        tp = hints[item.name]
        options = [tp]
        if typing.get_origin(tp) in (typing.Union, types.UnionType):
            options = [arg for arg in typing.get_args(tp) if arg is not type(None)]
        for option in options:
            origin = typing.get_origin(option)
            if origin is dict or (isinstance(option, type) and issubclass(option, Document)):
                names.add(item.name)
    return names


def make_databases(endpoint: str, project_id: str, api_key: str) -> Databases:
    if not endpoint:
        raise StoreError("Missing APPWRITE_ENDPOINT in environment")
    if not project_id:
        raise StoreError("Missing APPWRITE_PROJECT_ID in environment")
    if not api_key:
        raise StoreError("Missing APPWRITE_API_KEY in environment")

    client = Client()
    client.set_endpoint(endpoint.rstrip("/"))
    client.set_project(project_id)
    client.set_key(api_key)
    return Databases(client)


class AppwriteCollection(Collection[T]):
    def __init__(
        self,
        name: str,
        entity: Type[T],
        db: Databases,
        database_id: str,
        collection_id: str,
    ) -> None:
        if not database_id:
            raise StoreError("Missing APPWRITE_DATABASE_ID in environment")
        super().__init__(name, entity)
        self.db = db
        self.database_id = database_id
        self.collection_id = collection_id
        self._json_fields = _json_fields(entity)

    def _to_payload(self, entity: T) -> Dict[str, Any]:
        data = entity.to_dict()
        data.pop("id", None)
        for key in self._json_fields:
            if data.get(key) is not None:
                data[key] = json.dumps(data[key])
        return data

    def _from_document(self, doc: Dict[str, Any]) -> T:
        data = {key: value for key, value in doc.items() if not key.startswith("$")}
        data["id"] = doc["$id"]
        for key in self._json_fields:
            value = data.get(key)
            if isinstance(value, str) and value:
                try:
                    data[key] = json.loads(value)
                except ValueError as exc:
                    raise StoreError(f"{self.name}: invalid JSON in {key} of {doc['$id']}") from exc
        return self.entity.from_dict(data)

    def _list_documents(self, queries: List[str]) -> List[Dict]:
        try:
            result = self.db.list_documents(self.database_id, self.collection_id, queries=queries)
            return list(result.get("documents", []))
        except AppwriteException as exc:
            raise StoreError(str(exc)) from exc

    def _list_all(self) -> List[Dict]:
        docs: List[Dict] = []
        offset = 0
        while True:
            page = self._list_documents([Query.limit(PAGE_SIZE), Query.offset(offset)])
            docs.extend(page)
            if len(page) < PAGE_SIZE:
                return docs
            offset += PAGE_SIZE

    def _get_document(self, document_id: str) -> Optional[Dict]:
        try:
            return self.db.get_document(self.database_id, self.collection_id, document_id)
        except AppwriteException as exc:
            if getattr(exc, "code", None) == 404:
                return None
            raise StoreError(str(exc)) from exc

    def _create_document(self, document_id: str, data: Dict) -> Dict:
        try:
            return self.db.create_document(self.database_id, self.collection_id, document_id, data)
        except AppwriteException as exc:
            raise StoreError(str(exc)) from exc

    def _update_document(self, document_id: str, data: Dict) -> Dict:
        try:
            return self.db.update_document(self.database_id, self.collection_id, document_id, data)
        except AppwriteException as exc:
            raise StoreError(str(exc)) from exc

    def _delete_document(self, document_id: str) -> None:
        try:
            self.db.delete_document(self.database_id, self.collection_id, document_id)
        except AppwriteException as exc:
            raise StoreError(str(exc)) from exc

    # The SDK is blocking; run it off the event loop.

    async def get_all(self) -> List[T]:
        docs = await asyncio.to_thread(self._list_all)
        return [self._from_document(doc) for doc in docs]

    async def get(self, entity_id: str) -> Optional[T]:
        doc = await asyncio.to_thread(self._get_document, entity_id)
        return self._from_document(doc) if doc is not None else None

    async def create(self, entity: T) -> T:
        doc = await asyncio.to_thread(self._create_document, entity.id, self._to_payload(entity))
        return self._from_document(doc)

    async def update(self, entity: T) -> T:
        doc = await asyncio.to_thread(self._update_document, entity.id, self._to_payload(entity))
        return self._from_document(doc)

    async def delete(self, entity_id: str) -> None:
        await asyncio.to_thread(self._delete_document, entity_id)


def appwrite_collections(db: Optional[Databases] = None) -> Dict[str, Collection]:
    db = db or make_databases(
        settings.appwrite_endpoint,
        settings.appwrite_project_id,
        settings.appwrite_api_key,
    )
    return {
        name: AppwriteCollection(
            name,
            entity,
            db,
            settings.appwrite_database_id,
            settings.collection_id(name),
        )
        for name, entity in COLLECTIONS.items()
    }
