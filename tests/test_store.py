import asyncio
import unittest
from datetime import datetime, timezone

from appwrite.exception import AppwriteException
from support import RESIDENT, acta, evaluation

from residencia.core.errors import StoreError
from residencia.core.models import (
    Acta,
    ActaStatus,
    Evaluation,
    EvaluationKind,
    Resident,
    Signature,
    SignatureType,
)
from residencia.services.appwrite_store import PAGE_SIZE, AppwriteCollection, _json_fields
from residencia.services.store import Collection, KeyedLocks, MemoryCollection, Store


class FakeDatabases:
    """Stands in for appwrite.services.databases.Databases."""

    def __init__(self):
        self.documents = {}
        self.list_calls = []

    def list_documents(self, database_id, collection_id, queries=None):
        self.list_calls.append(queries)
        offset = 0
        for query in queries or []:
            if "offset" in query:
                offset = int("".join(ch for ch in query.split("offset")[1] if ch.isdigit()))
        docs = list(self.documents.values())[offset : offset + PAGE_SIZE]
        return {"total": len(self.documents), "documents": docs}

    def get_document(self, database_id, collection_id, document_id):
        if document_id not in self.documents:
            raise AppwriteException("Document not found", 404)
        return self.documents[document_id]

    def create_document(self, database_id, collection_id, document_id, data):
        if document_id in self.documents:
            raise AppwriteException("Document already exists", 409)
        self.documents[document_id] = {"$id": document_id, "$collectionId": collection_id, **data}
        return self.documents[document_id]

    def update_document(self, database_id, collection_id, document_id, data):
        if document_id not in self.documents:
            raise AppwriteException("Document not found", 404)
        self.documents[document_id].update(data)
        return self.documents[document_id]

    def delete_document(self, database_id, collection_id, document_id):
        if self.documents.pop(document_id, None) is None:
            raise AppwriteException("Document not found", 404)


class MemoryStoreTests(unittest.IsolatedAsyncioTestCase):
    async def test_entities_are_copied_in_and_out(self):
        collection = MemoryCollection("residents", Resident, [RESIDENT])
        fetched = await collection.get("R1")
        fetched.name = "Changed"
        self.assertEqual((await collection.get("R1")).name, RESIDENT.name)

    async def test_missing_documents(self):
        collection = MemoryCollection("residents", Resident)
        self.assertIsNone(await collection.get("R1"))
        with self.assertRaises(StoreError):
            await collection.update(RESIDENT)
        with self.assertRaises(StoreError):
            await collection.delete("R1")

    async def test_duplicate_create(self):
        collection = MemoryCollection("residents", Resident, [RESIDENT])
        with self.assertRaises(StoreError):
            await collection.create(RESIDENT)

    async def test_in_memory_seed(self):
        store = Store.in_memory(residents=[RESIDENT])
        self.assertEqual([r.id for r in await store.residents.get_all()], ["R1"])
        self.assertEqual(await store.actas.get_all(), [])
        with self.assertRaises(StoreError):
            Store.in_memory(grades=[])

    async def test_keyed_locks(self):
        locks = KeyedLocks()
        order = []

        async def worker(name):
            async with locks("key"):
                order.append(f"{name}-in")
                await asyncio.sleep(0)
                order.append(f"{name}-out")

        await asyncio.gather(worker("a"), worker("b"))
        self.assertEqual(order, ["a-in", "a-out", "b-in", "b-out"])
        self.assertEqual(len(locks), 0)

    async def test_released_locks_are_dropped(self):
        locks = KeyedLocks()
        for n in range(50):
            async with locks(("acta", "R1", f"S{n}")):
                self.assertEqual(len(locks), 1)
        self.assertEqual(len(locks), 0)

    async def test_distinct_keys_do_not_block(self):
        locks = KeyedLocks()
        async with locks(("acta", "R1", "S1")):
            await asyncio.wait_for(self._hold(locks, ("acta", "R1", "S2")), timeout=1)
            self.assertEqual(len(locks), 1)

    async def _hold(self, locks, key):
        async with locks(key):
            await asyncio.sleep(0)

    def test_collection_is_abstract(self):
        with self.assertRaises(TypeError):
            Collection("residents", Resident)


class DocumentTests(unittest.TestCase):
    def test_nested_document_round_trip(self):
        original = acta("ACTA-1", 5.7)
        original.status = ActaStatus.ACCEPTED
        original.signature = Signature(type=SignatureType.PIN, data="1234")
        data = original.to_dict()
        self.assertEqual(data["status"], "Accepted")
        self.assertEqual(data["signature"]["type"], "PIN")
        self.assertIsInstance(data["generated_at"], str)
        self.assertEqual(Acta.from_dict(data), original)

    def test_unknown_keys_are_ignored(self):
        resident = Resident.from_dict({"id": "R9", "name": "Ana", "$createdAt": "2024-01-01"})
        self.assertEqual(resident, Resident(id="R9", name="Ana"))

    def test_dates_decode_as_utc(self):
        data = evaluation("C1", EvaluationKind.COMPETENCY, 5.0).to_dict()
        data["date"] = "2024-03-02T12:00:00"
        self.assertEqual(Evaluation.from_dict(data).date, datetime(2024, 3, 2, 12, 0, tzinfo=timezone.utc))
        data["date"] = "2024-03-02T09:00:00-03:00"
        decoded = Evaluation.from_dict(data).date
        self.assertEqual(decoded.tzinfo, timezone.utc)
        self.assertEqual(decoded.hour, 12)


class AppwriteCollectionTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.db = FakeDatabases()
        self.actas = AppwriteCollection("actas", Acta, self.db, "db", "actas")
        self.evaluations = AppwriteCollection("competencies", Evaluation, self.db, "db", "competencies")

    def test_json_fields(self):
        self.assertEqual(_json_fields(Acta), {"content", "signature"})
        self.assertEqual(_json_fields(Evaluation), {"scores"})
        self.assertEqual(_json_fields(Resident), set())

    def test_missing_database_id(self):
        with self.assertRaises(StoreError):
            AppwriteCollection("actas", Acta, self.db, "", "actas")

    async def test_nested_fields_are_stored_as_json(self):
        created = await self.actas.create(acta("ACTA-1", 5.7))
        stored = self.db.documents["ACTA-1"]
        self.assertIsInstance(stored["content"], str)
        self.assertNotIn("id", stored)
        self.assertEqual(created.content.final_grade, 5.7)
        self.assertEqual((await self.actas.get("ACTA-1")).content, created.content)

    async def test_get_missing_returns_none(self):
        self.assertIsNone(await self.actas.get("nope"))

    async def test_sdk_errors_become_store_errors(self):
        await self.actas.create(acta("ACTA-1", 5.7))
        with self.assertRaises(StoreError):
            await self.actas.create(acta("ACTA-1", 5.7))
        with self.assertRaises(StoreError):
            await self.actas.delete("nope")

    async def test_get_all_pages_through_results(self):
        for number in range(PAGE_SIZE + 5):
            await self.evaluations.create(
                evaluation(f"C{number}", EvaluationKind.COMPETENCY, 5.0)
            )
        items = await self.evaluations.get_all()
        self.assertEqual(len(items), PAGE_SIZE + 5)
        self.assertEqual(len(self.db.list_calls), 2)
        self.assertEqual(items[0].scores, {"1": 5.0})


if __name__ == "__main__":
    unittest.main()
