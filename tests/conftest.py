"""Pytest configuration with basic asyncio support and an in-memory Mongo."""

import asyncio
import copy
import itertools
import types

import pytest

from mongo import CrawlStore


def pytest_configure(config):
    """Register the ``asyncio`` marker for asynchronous tests."""
    config.addinivalue_line(
        "markers", "asyncio: mark async test to run in event loop"
    )


@pytest.hookimpl(tryfirst=True)
def pytest_pyfunc_call(pyfuncitem):
    """Run functions marked with ``asyncio`` in a new event loop."""
    if pyfuncitem.get_closest_marker("asyncio"):
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        try:
            argnames = pyfuncitem._fixtureinfo.argnames
            kwargs = {name: pyfuncitem.funcargs[name] for name in argnames}
            loop.run_until_complete(pyfuncitem.obj(**kwargs))
        finally:
            loop.close()
            asyncio.set_event_loop(None)
        return True


_MISSING = object()
_ids = itertools.count(1)


def _get(doc: dict, dotted: str):
    value = doc
    for part in dotted.split("."):
        if not isinstance(value, dict) or part not in value:
            return _MISSING
        value = value[part]
    return value


def _set(doc: dict, dotted: str, value) -> None:
    parts = dotted.split(".")
    target = doc
    for part in parts[:-1]:
        target = target.setdefault(part, {})
    target[parts[-1]] = copy.deepcopy(value)


def _matches(doc: dict, query: dict) -> bool:
    for key, cond in query.items():
        value = _get(doc, key)
        if isinstance(cond, dict) and cond and all(k.startswith("$") for k in cond):
            for op, arg in cond.items():
                if op == "$ne":
                    if value is not _MISSING and value == arg:
                        return False
                elif op == "$in":
                    if value is _MISSING or value not in arg:
                        return False
                elif op == "$exists":
                    if (value is not _MISSING) != bool(arg):
                        return False
                else:  # pragma: no cover - not used by the store
                    raise NotImplementedError(op)
        elif value is _MISSING or value != cond:
            return False
    return True


class _AsyncCursor:
    def __init__(self, docs):
        self._docs = list(docs)

    def __aiter__(self):
        return self

    async def __anext__(self):
        if not self._docs:
            raise StopAsyncIteration
        return self._docs.pop(0)


class FakeCollection:
    """Small subset of a motor collection operating on in-memory dicts.

    Each operation completes without awaiting in between finding and
    modifying a document, which mirrors the per-document atomicity of
    MongoDB under asyncio scheduling.
    """

    def __init__(self):
        self.docs: list[dict] = []
        self.indexes: list[tuple] = []

    def insert(self, doc: dict) -> dict:
        doc = copy.deepcopy(doc)
        doc.setdefault("_id", next(_ids))
        self.docs.append(doc)
        return doc

    def _first(self, query):
        for doc in self.docs:
            if _matches(doc, query):
                return doc
        return None

    @staticmethod
    def _apply(doc: dict, update: dict, inserting: bool) -> None:
        for key, value in update.get("$set", {}).items():
            _set(doc, key, value)
        for key, value in update.get("$inc", {}).items():
            current = _get(doc, key)
            _set(doc, key, (0 if current is _MISSING else current) + value)
        if inserting:
            for key, value in update.get("$setOnInsert", {}).items():
                _set(doc, key, value)

    async def find_one_and_update(self, query, update, return_document=None, **_kwargs):
        await asyncio.sleep(0)
        doc = self._first(query)
        if doc is None:
            return None
        self._apply(doc, update, inserting=False)
        return copy.deepcopy(doc)

    async def find_one(self, query, projection=None):
        doc = self._first(query)
        return copy.deepcopy(doc) if doc is not None else None

    def find(self, query=None, projection=None):
        return _AsyncCursor(copy.deepcopy(doc) for doc in self.docs if _matches(doc, query or {}))

    def _update_one(self, query, update, upsert=False):
        doc = self._first(query)
        if doc is not None:
            self._apply(doc, update, inserting=False)
            return types.SimpleNamespace(matched_count=1, modified_count=1, upserted_id=None)
        if not upsert:
            return types.SimpleNamespace(matched_count=0, modified_count=0, upserted_id=None)
        new_doc = {k: v for k, v in query.items() if not isinstance(v, dict)}
        new_doc["_id"] = next(_ids)
        self._apply(new_doc, update, inserting=True)
        self.docs.append(new_doc)
        return types.SimpleNamespace(matched_count=0, modified_count=0, upserted_id=new_doc["_id"])

    async def update_one(self, query, update, upsert=False):
        return self._update_one(query, update, upsert)

    async def update_many(self, query, update):
        matched = [doc for doc in self.docs if _matches(doc, query)]
        for doc in matched:
            self._apply(doc, update, inserting=False)
        return types.SimpleNamespace(matched_count=len(matched), modified_count=len(matched))

    async def bulk_write(self, operations, ordered=True):
        upserted = 0
        for op in operations:
            result = self._update_one(op._filter, op._doc, op._upsert)
            if result.upserted_id is not None:
                upserted += 1
        return types.SimpleNamespace(upserted_count=upserted)

    async def count_documents(self, query, limit=0):
        count = sum(1 for doc in self.docs if _matches(doc, query))
        return min(count, limit) if limit else count

    async def delete_many(self, query):
        before = len(self.docs)
        self.docs = [doc for doc in self.docs if not _matches(doc, query)]
        return types.SimpleNamespace(deleted_count=before - len(self.docs))

    def aggregate(self, pipeline):
        docs = list(self.docs)
        for stage in pipeline:
            if "$match" in stage:
                docs = [doc for doc in docs if _matches(doc, stage["$match"])]
            elif "$group" in stage:
                field = stage["$group"]["_id"].lstrip("$")
                counts: dict = {}
                for doc in docs:
                    key = _get(doc, field)
                    counts[key] = counts.get(key, 0) + 1
                docs = [{"_id": key, "count": value} for key, value in counts.items()]
        return _AsyncCursor(docs)

    async def create_index(self, keys, **options):
        self.indexes.append((keys, options))
        return options.get("name")


class FakeDatabase:
    def __init__(self):
        self.collections: dict[str, FakeCollection] = {}

    def __getitem__(self, name: str) -> FakeCollection:
        return self.collections.setdefault(name, FakeCollection())


@pytest.fixture
def fake_db() -> FakeDatabase:
    return FakeDatabase()


@pytest.fixture
def store(fake_db) -> CrawlStore:
    return CrawlStore(fake_db)


@pytest.fixture
def queue(fake_db) -> FakeCollection:
    return fake_db["queue"]
