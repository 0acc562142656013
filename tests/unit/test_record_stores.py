import pytest

from genbatch.errors import RecordStoreError
from genbatch.storage import InMemoryRecordStore, SQLiteRecordStore, TargetRecord


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path):
    if request.param == "memory":
        return InMemoryRecordStore()
    return SQLiteRecordStore(tmp_path / "records.db")


def _record(scope="gen42", slug="what-is-rust", **kwargs) -> TargetRecord:
    defaults = dict(kind="answer", correlation_id=f"answer-{scope}-1", content="A language.")
    defaults.update(kwargs)
    return TargetRecord(scope=scope, slug=slug, **defaults)


@pytest.mark.asyncio
async def test_upsert_is_idempotent_on_natural_key(store):
    record_id, created = await store.upsert(_record())
    assert created

    again_id, created_again = await store.upsert(_record(content="A different answer."))
    assert not created_again
    assert again_id == record_id
    assert await store.count() == 1

    stored = await store.get("gen42", "what-is-rust")
    assert stored.record_id == record_id
    assert stored.content == "A language."


@pytest.mark.asyncio
async def test_list_and_get(store):
    await store.upsert(_record(slug="one"))
    await store.upsert(_record(slug="two"))
    await store.upsert(_record(scope="other", slug="one", metadata={"batch_id": "batch-1"}))

    assert sorted(r.slug for r in await store.list_records(scope="gen42")) == ["one", "two"]
    assert len(await store.list_records()) == 3
    other = await store.get("other", "one")
    assert other.metadata == {"batch_id": "batch-1"}
    assert await store.get("gen42", "missing") is None


@pytest.mark.asyncio
async def test_embeddings_are_stored(store):
    await store.upsert(_record(slug="embedding-1", kind="embedding", content=None, embedding=[0.1, 0.2]))
    stored = await store.get("gen42", "embedding-1")
    assert stored.embedding == [0.1, 0.2]


@pytest.mark.asyncio
async def test_sqlite_records_survive_reopen(tmp_path):
    first = SQLiteRecordStore(tmp_path / "records.db")
    record_id, _ = await first.upsert(_record())
    first.close()

    reopened = SQLiteRecordStore(tmp_path / "records.db")
    again_id, created = await reopened.upsert(_record())
    assert not created
    assert again_id == record_id


@pytest.mark.asyncio
async def test_sqlite_write_failure_raises_record_store_error(tmp_path):
    store = SQLiteRecordStore(tmp_path / "records.db")
    store._conn.execute(
        "CREATE TRIGGER reject_writes BEFORE INSERT ON records "
        "BEGIN SELECT RAISE(ABORT, 'records are read only'); END"
    )

    with pytest.raises(RecordStoreError, match="records are read only"):
        await store.upsert(_record())

    assert await store.count() == 0
