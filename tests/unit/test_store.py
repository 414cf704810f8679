import pytest

from flowline.errors import Conflict
from flowline.persistence import InMemoryStore, SQLStore, get_store, set_store


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path):
    if request.param == "memory":
        return InMemoryStore()
    return SQLStore(f"sqlite+aiosqlite:///{tmp_path / 'store.db'}")


@pytest.mark.asyncio
async def test_put_get_and_versions(store):
    first = await store.put("things", "a", {"n": 1}, expected_version=0)
    assert first.version == 1

    second = await store.put("things", "a", {"n": 2}, expected_version=1)
    assert second.version == 2
    row = await store.get("things", "a")
    assert row.data == {"n": 2}
    assert row.version == 2

    with pytest.raises(Conflict):
        await store.put("things", "a", {"n": 3}, expected_version=1)
    with pytest.raises(Conflict):
        await store.put("things", "a", {"n": 3}, expected_version=0)

    # no expected version means last write wins
    assert (await store.put("things", "a", {"n": 4})).version == 3
    assert await store.get("things", "missing") is None
    await store.close()


@pytest.mark.asyncio
async def test_failed_transaction_leaves_no_trace(store):
    await store.put("things", "a", {"n": 1})

    with pytest.raises(RuntimeError):
        async with store.transaction() as tx:
            await tx.put("things", "a", {"n": 2})
            await tx.put("things", "b", {"n": 1})
            # reads see the transaction's own writes
            assert (await tx.get("things", "a")).data == {"n": 2}
            raise RuntimeError("boom")

    assert (await store.get("things", "a")).data == {"n": 1}
    assert await store.get("things", "b") is None
    await store.close()


@pytest.mark.asyncio
async def test_range_is_ordered_by_key(store):
    for key in ("job/2", "job/10", "job/1", "other/1"):
        await store.put("things", key, {"key": key})

    rows = await store.range("things", "job/")
    assert [r.key for r in rows] == ["job/1", "job/10", "job/2"]

    newest = await store.range("things", "job/", limit=1, reverse=True)
    assert [r.key for r in newest] == ["job/2"]
    assert await store.range("empty") == []
    await store.close()


@pytest.mark.asyncio
async def test_delete(store):
    await store.put("things", "a", {"n": 1})
    with pytest.raises(Conflict):
        await store.delete("things", "a", expected_version=5)
    assert await store.delete("things", "a", expected_version=1)
    assert not await store.delete("things", "a")
    assert await store.range("things") == []
    await store.close()


@pytest.mark.asyncio
async def test_tx_helper_returns_the_result(store):
    async def work(tx):
        await tx.put("things", "a", {"n": 1})
        return "done"

    assert await store.tx(work) == "done"
    assert (await store.get("things", "a")).data == {"n": 1}
    await store.close()


@pytest.mark.asyncio
async def test_memory_store_rejects_nested_transactions():
    store = InMemoryStore()
    async with store.transaction():
        with pytest.raises(RuntimeError):
            async with store.transaction():
                pass


def test_get_store_without_database_is_a_shared_memory_store():
    first = get_store()
    assert isinstance(first, InMemoryStore)
    assert get_store() is first
    set_store(None)
    assert get_store() is not first


def test_get_store_upgrades_database_urls(tmp_path):
    store = get_store(f"sqlite:///{tmp_path / 'x.db'}")
    assert isinstance(store, SQLStore)
    assert store.database_url.startswith("sqlite+aiosqlite://")

    postgres = get_store("postgres://user:pw@localhost/flowline")
    assert postgres.database_url == "postgresql+asyncpg://user:pw@localhost/flowline"

    with pytest.raises(ValueError):
        get_store("mysql://localhost/flowline")
