"""
Shared fixtures for token meter tests.

FakeDatabase is an in-memory stand-in for a motor database that supports the
subset of MongoDB the ledger uses. Every operation yields to the event loop
once before touching data, so concurrent callers interleave the way they do
against a real server while each update stays atomic.
"""

import asyncio
import copy
import sys
from pathlib import Path
from types import SimpleNamespace

import pytest
from pymongo import ReturnDocument

sys.path.insert(0, str(Path(__file__).parent.parent))

from token_meter.config import LEDGER_COLLECTION
from token_meter.ledger import new_ledger_doc
from token_meter.pricing import PricingOracle


class FakeClock:
    """Monotonic clock the tests advance by hand."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


def _match(doc, query):
    """Return (matched, positional) where positional maps array field -> index."""
    positional = {}
    for key, cond in query.items():
        if isinstance(cond, dict) and "$elemMatch" in cond:
            criteria = cond["$elemMatch"]
            index = next(
                (i for i, item in enumerate(doc.get(key) or [])
                 if all(item.get(k) == v for k, v in criteria.items())),
                None
            )
            if index is None:
                return False, {}
            positional[key] = index
        elif "." in key:
            head, field = key.split(".", 1)
            values = [item.get(field) for item in doc.get(head) or []]
            if isinstance(cond, dict) and "$ne" in cond:
                if cond["$ne"] in values:
                    return False, {}
            elif cond not in values:
                return False, {}
        elif isinstance(cond, dict):
            value = doc.get(key)
            if "$gte" in cond and (value is None or value < cond["$gte"]):
                return False, {}
            if "$ne" in cond and value == cond["$ne"]:
                return False, {}
        elif doc.get(key) != cond:
            return False, {}
    return True, positional


def _project(doc, projection):
    doc = copy.deepcopy(doc)
    if not projection:
        return doc
    included = [k for k, v in projection.items() if v and k != "_id"]
    if included:
        doc = {k: doc[k] for k in included if k in doc}
    elif projection.get("_id") == 0:
        doc.pop("_id", None)
    return doc


def _apply(doc, update, positional, inserting=False):
    if inserting:
        for key, value in update.get("$setOnInsert", {}).items():
            doc[key] = copy.deepcopy(value)
    for key, value in update.get("$set", {}).items():
        if ".$." in key:
            head, field = key.split(".$.", 1)
            doc[head][positional[head]][field] = copy.deepcopy(value)
        else:
            doc[key] = copy.deepcopy(value)
    for key, value in update.get("$inc", {}).items():
        doc[key] = doc.get(key, 0) + value
    for key, value in update.get("$push", {}).items():
        doc.setdefault(key, []).append(copy.deepcopy(value))


class FakeCollection:
    def __init__(self):
        self.docs = []
        self._next_id = 1

    def _find(self, query):
        for doc in self.docs:
            matched, positional = _match(doc, query)
            if matched:
                return doc, positional
        return None, {}

    def _upsert(self, query, update):
        doc = {"_id": self._next_id}
        self._next_id += 1
        doc.update({k: copy.deepcopy(v) for k, v in query.items() if not isinstance(v, dict) and "." not in k})
        _apply(doc, update, {}, inserting=True)
        self.docs.append(doc)
        return doc

    async def find_one(self, query, projection=None):
        await asyncio.sleep(0)
        doc, _ = self._find(query)
        return _project(doc, projection) if doc is not None else None

    async def update_one(self, query, update, upsert=False):
        await asyncio.sleep(0)
        doc, positional = self._find(query)
        if doc is None:
            if upsert:
                created = self._upsert(query, update)
                return SimpleNamespace(matched_count=0, modified_count=0, upserted_id=created["_id"])
            return SimpleNamespace(matched_count=0, modified_count=0, upserted_id=None)
        _apply(doc, update, positional)
        return SimpleNamespace(matched_count=1, modified_count=1, upserted_id=None)

    async def find_one_and_update(
        self,
        query,
        update,
        projection=None,
        return_document=ReturnDocument.BEFORE,
        upsert=False
    ):
        await asyncio.sleep(0)
        doc, positional = self._find(query)
        if doc is None:
            if not upsert:
                return None
            doc = self._upsert(query, update)
            return _project(doc, projection) if return_document == ReturnDocument.AFTER else None

        before = copy.deepcopy(doc)
        _apply(doc, update, positional)
        return _project(doc if return_document == ReturnDocument.AFTER else before, projection)


class FakeDatabase:
    def __init__(self):
        self.collections = {}

    def __getitem__(self, name):
        return self.collections.setdefault(name, FakeCollection())

    def __getattr__(self, name):
        if name.startswith("_"):
            raise AttributeError(name)
        return self[name]


def seed_ledger(db, tenant, balance=0, included_pool=0, total_purchased=None, **extra):
    """Insert a ledger document directly, bypassing the service."""
    doc = new_ledger_doc(tenant)
    doc.update({
        "balance": balance,
        "included_pool": included_pool,
        "total_purchased": balance - included_pool if total_purchased is None else total_purchased,
    })
    doc.update(extra)
    db[LEDGER_COLLECTION].docs.append(doc)
    return doc


def ledger_doc(db, tenant):
    doc, _ = db[LEDGER_COLLECTION]._find({"tenant": tenant})
    return doc


@pytest.fixture
def fake_db():
    return FakeDatabase()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def oracle(clock):
    """Oracle pinned to the fallback rate ($0.10 per 1M) with no network."""
    return PricingOracle(api_key="", clock=clock)
