"""Record Store

Generic create / read / update / query over the external entity store,
keyed by entity type and opaque string id. Every engine service goes
through this class rather than touching collections directly.

Failure policy:
- Any PyMongoError becomes PersistenceError.
- Reads are idempotent and retried with exponential backoff.
- Writes are NOT retried here; callers make them safe to replay with
  idempotency keys or compare-and-set guards.
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from database import database
from stocrx.errors import NotFoundError, PersistenceError

logger = logging.getLogger(__name__)

# Read retry configuration
MAX_READ_ATTEMPTS = 3
INITIAL_BACKOFF_SECONDS = 0.2
MAX_BACKOFF_SECONDS = 2.0

# entity type -> (collection, id field)
ENTITY_COLLECTIONS: Dict[str, Tuple[str, str]] = {
    "vehicle": ("vehicles", "vehicle_id"),
    "subscription": ("subscriptions", "subscription_id"),
    "payment": ("payments", "payment_id"),
    "claim": ("claims", "claim_id"),
    "activity": ("activity_logs", "activity_id"),
}


class RecordStore:
    """Async CRUD facade over MongoDB (motor)."""

    def _get_db(self):
        db = database.get_db()
        if db is None:
            raise PersistenceError("Record store is not connected", rule="store_available")
        return db

    def _collection(self, entity: str):
        try:
            name, _ = ENTITY_COLLECTIONS[entity]
        except KeyError:
            raise ValueError(f"Unknown entity type: {entity}")
        return self._get_db()[name]

    @staticmethod
    def _id_field(entity: str) -> str:
        return ENTITY_COLLECTIONS[entity][1]

    async def _read(self, op_name: str, op: Callable[[], Awaitable[Any]]) -> Any:
        """Run a read with exponential backoff retries."""
        for attempt in range(MAX_READ_ATTEMPTS):
            try:
                return await op()
            except PyMongoError as e:
                if attempt >= MAX_READ_ATTEMPTS - 1:
                    logger.error(f"Record store read {op_name} failed after {attempt + 1} attempts: {e}")
                    raise PersistenceError(f"Record store read failed: {op_name}", rule="store_available") from e
                backoff = min(INITIAL_BACKOFF_SECONDS * (2 ** attempt), MAX_BACKOFF_SECONDS)
                logger.warning(f"Record store read {op_name} failed, retry in {backoff}s (attempt {attempt + 1}): {e}")
                await asyncio.sleep(backoff)

    async def _write(self, op_name: str, op: Callable[[], Awaitable[Any]]) -> Any:
        try:
            return await op()
        except DuplicateKeyError:
            raise
        except PyMongoError as e:
            logger.error(f"Record store write {op_name} failed: {e}")
            raise PersistenceError(f"Record store write failed: {op_name}", rule="store_available") from e

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    async def get(self, entity: str, entity_id: str) -> Optional[Dict[str, Any]]:
        collection = self._collection(entity)
        query = {self._id_field(entity): entity_id}
        return await self._read(f"get {entity}", lambda: collection.find_one(query, {"_id": 0}))

    async def require(self, entity: str, entity_id: str) -> Dict[str, Any]:
        doc = await self.get(entity, entity_id)
        if not doc:
            raise NotFoundError(entity, entity_id)
        return doc

    async def find_one(self, entity: str, query: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        collection = self._collection(entity)
        return await self._read(f"find_one {entity}", lambda: collection.find_one(query, {"_id": 0}))

    async def query(
        self,
        entity: str,
        query: Dict[str, Any],
        sort: Optional[List[Tuple[str, int]]] = None,
        limit: int = 0,
    ) -> List[Dict[str, Any]]:
        collection = self._collection(entity)

        async def _run():
            cursor = collection.find(query, {"_id": 0})
            if sort:
                cursor = cursor.sort(sort)
            if limit:
                cursor = cursor.limit(limit)
            return await cursor.to_list(limit or None)

        return await self._read(f"query {entity}", _run)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    async def create(self, entity: str, doc: Dict[str, Any]) -> Dict[str, Any]:
        """Insert a document. DuplicateKeyError is re-raised untouched."""
        collection = self._collection(entity)
        await self._write(f"create {entity}", lambda: collection.insert_one(dict(doc)))
        return doc

    async def update(
        self,
        entity: str,
        entity_id: str,
        fields: Dict[str, Any],
        expected: Optional[Dict[str, Any]] = None,
        inc: Optional[Dict[str, Any]] = None,
        push: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Set fields on one record, optionally only if `expected` still matches.

        Returns False when the record is missing or the guard no longer holds.
        """
        collection = self._collection(entity)
        query = {self._id_field(entity): entity_id}
        if expected:
            query.update(expected)
        update: Dict[str, Any] = {"$set": fields}
        if inc:
            update["$inc"] = inc
        if push:
            update["$push"] = push
        result = await self._write(f"update {entity}", lambda: collection.update_one(query, update))
        return result.modified_count > 0

    async def find_one_and_update(
        self,
        entity: str,
        query: Dict[str, Any],
        update: Dict[str, Any],
    ) -> Optional[Dict[str, Any]]:
        """Atomic conditional update returning the document after the change."""
        collection = self._collection(entity)
        return await self._write(
            f"find_one_and_update {entity}",
            lambda: collection.find_one_and_update(
                query,
                update,
                projection={"_id": 0},
                return_document=ReturnDocument.AFTER,
            ),
        )

    async def delete(self, entity: str, entity_id: str) -> bool:
        collection = self._collection(entity)
        query = {self._id_field(entity): entity_id}
        result = await self._write(f"delete {entity}", lambda: collection.delete_one(query))
        return result.deleted_count > 0


# Global store instance
record_store = RecordStore()
