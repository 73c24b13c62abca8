"""
Pytest configuration and shared test helpers for backend tests.

Engine tests run against FakeDatabase, an in-memory stand-in for the motor
database that supports the query and update operators the record store
uses. Every operation yields to the event loop once so concurrent
coroutines interleave the way they would against a real server.
"""
import asyncio
import copy
import itertools
import os
import sys
from datetime import datetime, timezone
from pathlib import Path

# Skip heavy server startup (MongoDB, scheduler) when running under pytest.
os.environ.setdefault("PYTEST_RUNNING", "1")
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import pytest
from fastapi.testclient import TestClient
from pymongo.errors import DuplicateKeyError

from database import database
from server import app
import stocrx.services.subscription_lock as subscription_lock_module
from stocrx.models.subscriptions import Cadence, Subscription, SubscriptionStatus
from stocrx.models.vehicles import Vehicle, VehicleStatus

UNIQUE_FIELDS = {
    "vehicles": ("vehicle_id",),
    "subscriptions": ("subscription_id",),
    "payments": ("payment_id", "idempotency_key"),
    "claims": ("claim_id",),
    "activity_logs": ("activity_id",),
}


def _sort_key(value):
    return (value is not None, value if value is not None else 0)


def _matches_operator(present, value, op, arg):
    if op == "$in":
        return value in arg
    if op == "$nin":
        return value not in arg
    if op == "$ne":
        return value != arg
    if op == "$exists":
        return present == bool(arg)
    if value is None:
        return False
    if op == "$lt":
        return value < arg
    if op == "$lte":
        return value <= arg
    if op == "$gt":
        return value > arg
    if op == "$gte":
        return value >= arg
    raise NotImplementedError(f"FakeCollection does not support {op}")


def matches(doc, query):
    for key, cond in query.items():
        if key == "$or":
            if not any(matches(doc, sub) for sub in cond):
                return False
            continue
        present = key in doc
        value = doc.get(key)
        if isinstance(cond, dict) and cond and all(k.startswith("$") for k in cond):
            if not all(_matches_operator(present, value, op, arg) for op, arg in cond.items()):
                return False
        elif cond is None:
            if value is not None:
                return False
        elif isinstance(value, list) and not isinstance(cond, list):
            if cond not in value:
                return False
        elif value != cond:
            return False
    return True


def apply_update(doc, update):
    for op, fields in update.items():
        for key, arg in fields.items():
            if op == "$set":
                doc[key] = copy.deepcopy(arg)
            elif op == "$inc":
                doc[key] = doc.get(key, 0) + arg
            elif op == "$unset":
                doc.pop(key, None)
            elif op == "$push":
                doc.setdefault(key, []).append(copy.deepcopy(arg))
            else:
                raise NotImplementedError(f"FakeCollection does not support {op}")


def _project(doc, projection):
    out = copy.deepcopy(doc)
    if projection and projection.get("_id") == 0:
        out.pop("_id", None)
    return out


class UpdateResult:
    def __init__(self, matched_count, modified_count):
        self.matched_count = matched_count
        self.modified_count = modified_count


class DeleteResult:
    def __init__(self, deleted_count):
        self.deleted_count = deleted_count


class FakeCursor:
    def __init__(self, docs):
        self._docs = docs

    def sort(self, key_or_list, direction=None):
        keys = key_or_list if isinstance(key_or_list, list) else [(key_or_list, direction or 1)]
        for field, order in reversed(keys):
            self._docs.sort(key=lambda d: _sort_key(d.get(field)), reverse=order < 0)
        return self

    def limit(self, count):
        if count:
            self._docs = self._docs[:count]
        return self

    async def to_list(self, length=None):
        await asyncio.sleep(0)
        return self._docs[:length] if length else list(self._docs)


class FakeCollection:
    _ids = itertools.count(1)

    def __init__(self, name):
        self.name = name
        self.docs = []
        self._failures = {}

    def fail_next(self, operation, exc, skip=0):
        """Make a coming call to `operation` raise `exc`, after letting `skip` calls through."""
        self._failures.setdefault(operation, []).extend([None] * skip + [exc])

    async def _enter(self, operation):
        await asyncio.sleep(0)
        pending = self._failures.get(operation)
        if pending:
            exc = pending.pop(0)
            if exc is not None:
                raise exc

    def _find(self, query):
        return [doc for doc in self.docs if matches(doc, query)]

    async def insert_one(self, doc):
        await self._enter("insert_one")
        for field in UNIQUE_FIELDS.get(self.name, ()):
            if field in doc and any(d.get(field) == doc[field] for d in self.docs):
                raise DuplicateKeyError(f"E11000 duplicate key error collection: {self.name} index: {field}")
        stored = copy.deepcopy(doc)
        stored["_id"] = next(self._ids)
        self.docs.append(stored)

    async def find_one(self, query, projection=None):
        await self._enter("find_one")
        found = self._find(query)
        return _project(found[0], projection) if found else None

    def find(self, query, projection=None):
        return FakeCursor([_project(d, projection) for d in self._find(query)])

    async def update_one(self, query, update):
        await self._enter("update_one")
        found = self._find(query)
        if not found:
            return UpdateResult(0, 0)
        before = copy.deepcopy(found[0])
        apply_update(found[0], update)
        return UpdateResult(1, int(found[0] != before))

    async def find_one_and_update(self, query, update, projection=None, return_document=None):
        await self._enter("find_one_and_update")
        found = self._find(query)
        if not found:
            return None
        apply_update(found[0], update)
        return _project(found[0], projection)

    async def delete_one(self, query):
        await self._enter("delete_one")
        found = self._find(query)
        if not found:
            return DeleteResult(0)
        self.docs.remove(found[0])
        return DeleteResult(1)

    async def count_documents(self, query):
        await asyncio.sleep(0)
        return len(self._find(query))

    async def create_index(self, *args, **kwargs):
        return None


class FakeDatabase:
    def __init__(self):
        self._collections = {}

    def __getitem__(self, name):
        if name not in self._collections:
            self._collections[name] = FakeCollection(name)
        return self._collections[name]

    def __getattr__(self, name):
        if name.startswith("_"):
            raise AttributeError(name)
        return self[name]

    async def command(self, *args, **kwargs):
        return {"ok": 1}


class Seeder:
    """Writes fixture records straight into the fake store."""

    def __init__(self, db):
        self.db = db

    async def vehicle(self, **overrides):
        fields = dict(
            year=2022,
            make="Toyota",
            model="Camry",
            price=20000.0,
            weekly_subscription=200.0,
            monthly_subscription=800.0,
            down_payment=1000.0,
        )
        fields.update(overrides)
        doc = Vehicle(**fields).model_dump()
        await self.db.vehicles.insert_one(doc)
        return doc

    async def subscription(self, vehicle, **overrides):
        fields = dict(
            vehicle_id=vehicle["vehicle_id"],
            customer_email="driver@example.com",
            term_months=6,
            cadence=Cadence.WEEKLY,
            remaining_balance=vehicle["price"],
        )
        fields.update(overrides)
        doc = Subscription(**fields).model_dump()
        await self.db.subscriptions.insert_one(doc)

        held = {
            SubscriptionStatus.ACTIVE: VehicleStatus.SUBSCRIBED,
            SubscriptionStatus.DELINQUENT: VehicleStatus.SUBSCRIBED,
            SubscriptionStatus.SUSPENDED: VehicleStatus.MAINTENANCE,
        }.get(SubscriptionStatus(doc["status"]))
        if held:
            await self.db.vehicles.update_one(
                {"vehicle_id": vehicle["vehicle_id"]},
                {"$set": {"status": held.value, "subscribed_by": doc["subscription_id"]}},
            )
        return doc

    async def get(self, collection, query):
        return await self.db[collection].find_one(query, {"_id": 0})


@pytest.fixture
def fake_db(monkeypatch):
    db = FakeDatabase()
    monkeypatch.setattr(database, "db", db)
    monkeypatch.setattr(subscription_lock_module, "LOCK_POLL_SECONDS", 0.001)
    return db


@pytest.fixture
def seed(fake_db):
    return Seeder(fake_db)


@pytest.fixture
def now():
    return datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def client(fake_db):
    """Return a TestClient for the main FastAPI app (server:app) backed by the fake store."""
    return TestClient(app, raise_server_exceptions=False)
