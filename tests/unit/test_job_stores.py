import json

import pytest

from genbatch.contracts import WorkItem
from genbatch.errors import (
    JobClaimError,
    JobExistsError,
    JobNotFoundError,
    JobStoreUnavailableError,
)
from genbatch.persistence import (
    CheckpointFileStore,
    FileJobStore,
    InMemoryJobStore,
    JobStatus,
    SQLiteJobStore,
    resume_job,
)


@pytest.fixture(params=["memory", "file", "sqlite"])
def store(request, tmp_path):
    if request.param == "memory":
        return InMemoryJobStore()
    if request.param == "file":
        return FileJobStore(tmp_path / "jobs")
    return SQLiteJobStore(tmp_path / "jobs.db")


@pytest.mark.asyncio
async def test_create_and_load(store):
    job = await store.create("job-1", source="items.txt")
    assert job.status is JobStatus.PENDING
    assert job.processed_count == 0

    loaded = await store.load("job-1")
    assert loaded.source == "items.txt"
    assert loaded.total_items is None

    with pytest.raises(JobExistsError):
        await store.create("job-1")
    with pytest.raises(JobNotFoundError):
        await store.load("missing")


@pytest.mark.asyncio
async def test_checkpoint_is_additive(store):
    await store.create("job-1")
    await store.checkpoint("job-1", processed_ids=["a", "b"])
    job = await store.checkpoint("job-1", processed_ids=["b", "c"], failed_ids=["d"])

    assert job.processed_ids == {"a", "b", "c"}
    assert job.failed_ids == {"d"}
    assert job.processed_count == 4

    job = await store.checkpoint("job-1", processed_ids=["d"])
    assert job.failed_ids == {"d"}
    assert job.outstanding_failures == set()
    assert job.processed_count == 4


@pytest.mark.asyncio
async def test_claim_is_compare_and_set(store):
    await store.create("job-1")
    job = await store.claim("job-1")
    assert job.status is JobStatus.PROCESSING

    with pytest.raises(JobClaimError) as excinfo:
        await store.claim("job-1")
    assert excinfo.value.actual == "processing"


@pytest.mark.asyncio
async def test_next_job_prefers_processing_then_oldest_pending(store):
    for job_id in ("job-1", "job-2", "job-3"):
        await store.create(job_id)
    assert (await store.next_job()).job_id == "job-1"

    await store.claim("job-3")
    assert (await store.next_job()).job_id == "job-3"

    await store.mark_status("job-3", JobStatus.DONE)
    await store.mark_status("job-1", JobStatus.ERROR, "source missing")
    assert (await store.next_job()).job_id == "job-2"

    await store.mark_status("job-2", JobStatus.DONE)
    assert await store.next_job() is None


@pytest.mark.asyncio
async def test_mark_status_and_list(store):
    await store.create("job-1")
    await store.create("job-2")
    job = await store.mark_status("job-2", JobStatus.ERROR, "disk full")
    assert job.error_message == "disk full"

    errored = await store.list_jobs(status=JobStatus.ERROR)
    assert [j.job_id for j in errored] == ["job-2"]
    assert [j.job_id for j in await store.list_jobs()] == ["job-1", "job-2"]


@pytest.mark.asyncio
async def test_resume_from_error_keeps_progress(store):
    await store.create("job-1")
    await store.claim("job-1")
    await store.checkpoint("job-1", processed_ids=["a"], failed_ids=["b"])
    await store.mark_status("job-1", JobStatus.ERROR, "source unreadable")

    job = await resume_job(store, "job-1")

    assert job.status is JobStatus.PROCESSING
    assert job.error_message is None
    assert job.processed_ids == {"a"}
    assert job.failed_ids == {"b"}


@pytest.mark.asyncio
async def test_set_total_and_completion(store):
    await store.create("job-1")
    job = await store.set_total("job-1", 2)
    assert not job.is_complete
    job = await store.checkpoint("job-1", processed_ids=["a"], failed_ids=["b"])
    assert job.is_complete


def test_remaining_filters_in_original_order():
    from genbatch.persistence import Job

    job = Job(job_id="j", processed_ids={"b"}, failed_ids={"d"})
    items = [WorkItem(id=i) for i in "abcde"]

    assert [i.id for i in job.remaining(items)] == ["a", "c", "e"]
    assert [i.id for i in job.remaining(items, retry_failed=True)] == ["a", "c", "d", "e"]


@pytest.mark.asyncio
async def test_durable_stores_survive_reopen(tmp_path):
    for make in (lambda: FileJobStore(tmp_path / "jobs"), lambda: SQLiteJobStore(tmp_path / "j.db")):
        first = make()
        await first.create("job-1")
        await first.checkpoint("job-1", processed_ids=["a", "b"])

        reopened = make()
        job = await reopened.load("job-1")
        assert job.processed_ids == {"a", "b"}


@pytest.mark.asyncio
async def test_file_checkpoint_format_and_atomic_writes(tmp_path):
    store = FileJobStore(tmp_path)
    await store.create("job-1")
    await store.set_total("job-1", 3)
    for item in ("a", "b", "c"):
        await store.checkpoint("job-1", processed_ids=[item])

    data = json.loads((tmp_path / "job-1.json").read_text())
    assert data["processedIds"] == ["a", "b", "c"]
    assert data["failedIds"] == []
    assert data["totalFound"] == 3
    assert "lastRun" in data
    assert [p.name for p in tmp_path.iterdir()] == ["job-1.json"]


@pytest.mark.asyncio
async def test_corrupt_checkpoint_is_reported(tmp_path):
    (tmp_path / "job-1.json").write_text('{"jobId": "job-1", "processedIds": [')
    with pytest.raises(JobStoreUnavailableError):
        await FileJobStore(tmp_path).load("job-1")


@pytest.mark.asyncio
async def test_checkpoint_file_store_reset(tmp_path):
    path = tmp_path / ".genbatch-progress.json"
    store = CheckpointFileStore(path)
    await store.create("items")
    await store.checkpoint("items", processed_ids=["a"])
    assert path.exists()

    store.reset()
    assert not path.exists()
    with pytest.raises(JobNotFoundError):
        await store.load("items")
