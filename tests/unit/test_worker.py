import pytest

from genbatch.downstream import ItemOutcome
from genbatch.persistence import InMemoryJobStore, JobStatus
from genbatch.ratelimit import SlidingWindowLimiter
from genbatch.worker import Worker


class FakeClock:
    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self):
        return self.now

    async def sleep(self, delay):
        self.sleeps.append(delay)
        self.now += delay


class FakeClient:
    """Succeeds unless the id is in ``fail``; raises on call number ``crash_at``."""

    def __init__(self, fail=(), crash_at=None):
        self.fail = set(fail)
        self.crash_at = crash_at
        self.calls = []

    async def call(self, item):
        if self.crash_at is not None and len(self.calls) + 1 == self.crash_at:
            raise RuntimeError("process killed")
        self.calls.append(item.id)
        if item.id in self.fail:
            return ItemOutcome(item_id=item.id, success=False, status_code=400, error="rejected")
        return ItemOutcome(item_id=item.id, success=True, status_code=200)


def _source(tmp_path, count: int):
    path = tmp_path / "items.txt"
    path.write_text("".join(f"gen-{i}\n" for i in range(1, count + 1)))
    return path


def _worker(store, client, batch_size=5, clock=None):
    clock = clock or FakeClock()
    limiter = SlidingWindowLimiter(100, 60, clock=clock, sleep=clock.sleep)
    return Worker(store, client, limiter, batch_size=batch_size)


@pytest.mark.asyncio
async def test_run_once_makes_bounded_progress(tmp_path):
    store = InMemoryJobStore()
    await store.create("job-1", source=str(_source(tmp_path, 12)))
    client = FakeClient()
    worker = _worker(store, client)

    first = await worker.run_once()
    assert first.job_id == "job-1"
    assert first.attempted == 5
    assert first.status is JobStatus.PROCESSING
    assert first.total_items == 12

    second = await worker.run_once()
    third = await worker.run_once()
    assert second.processed_count == 10
    assert third.attempted == 2
    assert third.done

    assert client.calls == [f"gen-{i}" for i in range(1, 13)]
    assert (await worker.run_once()).idle


@pytest.mark.asyncio
async def test_failures_are_recorded_then_redriven_on_resume(tmp_path):
    store = InMemoryJobStore()
    await store.create("job-1", source=str(_source(tmp_path, 6)))
    worker = _worker(store, FakeClient(fail={"gen-2", "gen-5"}))

    report = await worker.run_job("job-1")
    assert report.done
    assert report.failed == {"gen-2": "rejected", "gen-5": "rejected"}
    assert report.outstanding_failures == ["gen-2", "gen-5"]

    retry_client = FakeClient(fail={"gen-5"})
    resumed = await _worker(store, retry_client).run_job("job-1", resume=True)

    assert retry_client.calls == ["gen-2", "gen-5"]
    assert resumed.outstanding_failures == ["gen-5"]
    job = await store.load("job-1")
    assert job.processed_ids == {"gen-1", "gen-2", "gen-3", "gen-4", "gen-6"}
    assert job.processed_count == 6


@pytest.mark.asyncio
async def test_crash_then_resume_does_not_repeat_items(tmp_path):
    store = InMemoryJobStore()
    await store.create("job-1", source=str(_source(tmp_path, 10)))
    crashing = FakeClient(crash_at=4)

    with pytest.raises(RuntimeError):
        await _worker(store, crashing).run_job("job-1")

    job = await store.load("job-1")
    assert job.processed_ids == {"gen-1", "gen-2", "gen-3"}
    assert job.status is JobStatus.PROCESSING

    client = FakeClient()
    report = await _worker(store, client).run_job("job-1", resume=True)

    assert client.calls == [f"gen-{i}" for i in range(4, 11)]
    assert report.skipped == 3
    assert report.done


@pytest.mark.asyncio
async def test_resumed_run_matches_single_pass(tmp_path):
    source = str(_source(tmp_path, 9))
    single = InMemoryJobStore()
    await single.create("job", source=source)
    await _worker(single, FakeClient(fail={"gen-7"})).run_job("job")

    split = InMemoryJobStore()
    await split.create("job", source=source)
    await _worker(split, FakeClient(fail={"gen-7"})).run_job("job", limit=4)
    await _worker(split, FakeClient(fail={"gen-7"})).run_job("job", resume=True)

    one, two = await single.load("job"), await split.load("job")
    assert one.processed_ids == two.processed_ids
    assert one.failed_ids == two.failed_ids
    assert two.status is JobStatus.DONE


@pytest.mark.asyncio
async def test_unreadable_source_marks_job_error(tmp_path):
    store = InMemoryJobStore()
    await store.create("job-1", source=str(tmp_path / "missing.txt"))
    worker = _worker(store, FakeClient())

    report = await worker.run_once()
    assert report.fatal
    assert report.status is JobStatus.ERROR
    assert "missing.txt" in (await store.load("job-1")).error_message

    assert (await worker.run_once()).idle


@pytest.mark.asyncio
async def test_error_job_needs_resume(tmp_path):
    store = InMemoryJobStore()
    await store.create("job-1", source=str(_source(tmp_path, 2)))
    await store.mark_status("job-1", JobStatus.ERROR, "operator stopped it")
    client = FakeClient()

    report = await _worker(store, client).run_job("job-1")
    assert report.fatal
    assert "resume" in report.error
    assert client.calls == []

    report = await _worker(store, client).run_job("job-1", resume=True)
    assert report.done
    assert client.calls == ["gen-1", "gen-2"]


@pytest.mark.asyncio
async def test_requests_are_paced_by_the_window(tmp_path):
    store = InMemoryJobStore()
    await store.create("job-1", source=str(_source(tmp_path, 5)))
    clock = FakeClock()
    limiter = SlidingWindowLimiter(2, 10, clock=clock, sleep=clock.sleep)
    worker = Worker(store, FakeClient(), limiter, batch_size=5)

    await worker.run_once()

    assert clock.sleeps == [10, 10]
    assert limiter.total_wait == 20
