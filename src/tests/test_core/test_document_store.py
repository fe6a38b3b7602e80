import pytest
import pytest_asyncio
import asyncio

from iot_fleet.storage.database import SQLiteStore
from iot_fleet.storage.memory import MemoryStore


@pytest_asyncio.fixture(params=["memory", "sqlite"])
async def document_store(request, tmp_path):
    if request.param == "memory":
        store = MemoryStore()
    else:
        store = SQLiteStore(str(tmp_path / "fleet.db"), max_connections=3)
    await store.initialize()
    yield store
    await store.close()


@pytest.mark.asyncio
async def test_insert_is_create_only(document_store):
    assert await document_store.insert("commands", "c1", {"status": "PENDING"})
    assert not await document_store.insert("commands", "c1", {"status": "SENT"})
    assert await document_store.get("commands", "c1") == {"status": "PENDING"}


@pytest.mark.asyncio
async def test_get_missing_returns_none(document_store):
    assert await document_store.get("commands", "missing") is None


@pytest.mark.asyncio
async def test_update_missing_key_is_noop(document_store):
    assert await document_store.update("commands", "missing", lambda d: {**d, "status": "SENT"}) is None
    assert await document_store.get("commands", "missing") is None


@pytest.mark.asyncio
async def test_update_can_decline(document_store):
    await document_store.insert("commands", "c1", {"status": "ACKNOWLEDGED"})

    result = await document_store.update("commands", "c1", lambda d: None)

    assert result is None
    assert await document_store.get("commands", "c1") == {"status": "ACKNOWLEDGED"}


@pytest.mark.asyncio
async def test_upsert_creates_then_updates(document_store):
    def bump(document):
        if document is None:
            return {"count": 1}
        document["count"] += 1
        return document

    assert await document_store.upsert("gateways", "app/gw", bump) == {"count": 1}
    assert await document_store.upsert("gateways", "app/gw", bump) == {"count": 2}


@pytest.mark.asyncio
async def test_concurrent_upserts_are_atomic(document_store):
    def bump(document):
        if document is None:
            return {"count": 1}
        document["count"] += 1
        return document

    await asyncio.gather(*(document_store.upsert("gateways", "app/gw", bump) for _ in range(20)))

    assert (await document_store.get("gateways", "app/gw"))["count"] == 20


@pytest.mark.asyncio
async def test_update_many_returns_changed_documents(document_store):
    for key, status in (("a", "PENDING"), ("b", "SENT"), ("c", "FAILED")):
        await document_store.insert("commands", key, {"key": key, "status": status})

    def expire(document):
        if document["status"] not in ("PENDING", "SENT"):
            return None
        document["status"] = "EXPIRED"
        return document

    changed = await document_store.update_many("commands", expire)

    assert sorted(d["key"] for d in changed) == ["a", "b"]
    assert (await document_store.get("commands", "c"))["status"] == "FAILED"
    assert await document_store.update_many("commands", expire) == []


@pytest.mark.asyncio
async def test_find_with_predicate(document_store):
    await document_store.insert("presence", "devices/a", {"online": True})
    await document_store.insert("presence", "devices/b", {"online": False})
    await document_store.insert("targets", "v1", {"online": True})

    assert len(await document_store.find("presence")) == 2
    assert await document_store.find("presence", lambda d: d["online"]) == [{"online": True}]


@pytest.mark.asyncio
async def test_sqlite_store_survives_reopen(tmp_path):
    path = str(tmp_path / "fleet.db")
    store = SQLiteStore(path)
    await store.initialize()
    await store.insert("commands", "c1", {"status": "SENT"})
    await store.close()

    reopened = SQLiteStore(path)
    await reopened.initialize()
    assert await reopened.get("commands", "c1") == {"status": "SENT"}
    await reopened.close()
