"""Long-running worker scenarios under the default pacing window."""

import pytest

from genbatch.downstream import ItemOutcome
from genbatch.persistence import FileJobStore, JobStatus
from genbatch.ratelimit import SlidingWindowLimiter
from genbatch.worker import Worker


class Clock:
    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self):
        return self.now

    async def sleep(self, delay):
        self.sleeps.append(delay)
        self.now += delay


class CountingClient:
    def __init__(self, crash_after=None):
        self.crash_after = crash_after
        self.calls = []

    async def call(self, item):
        if self.crash_after is not None and len(self.calls) == self.crash_after:
            raise RuntimeError("worker process killed")
        self.calls.append(item.id)
        return ItemOutcome(item_id=item.id, success=True, status_code=200)


@pytest.fixture
def source(tmp_path):
    path = tmp_path / "generations.txt"
    path.write_text("".join(f"gen-{i}\n" for i in range(1, 501)))
    return path


@pytest.mark.asyncio
async def test_five_hundred_items_in_bounded_invocations(tmp_path, source):
    store = FileJobStore(tmp_path / "jobs")
    await store.create("gens", source=str(source))
    clock = Clock()
    limiter = SlidingWindowLimiter(9, 56, clock=clock, sleep=clock.sleep)
    client = CountingClient()
    worker = Worker(store, client, limiter, batch_size=5)

    invocations = 0
    while True:
        report = await worker.run_once()
        if report.idle:
            break
        invocations += 1
        assert report.attempted <= 5

    job = await store.load("gens")
    assert invocations == 100
    assert job.status is JobStatus.DONE
    assert job.processed_count == 500
    assert len(client.calls) == 500
    assert len(set(client.calls)) == 500
    # 500 requests at 9 per 56s window: one wait after every ninth request
    assert len(clock.sleeps) == 55


@pytest.mark.asyncio
async def test_crash_midway_then_resume(tmp_path, source):
    store = FileJobStore(tmp_path / "jobs")
    await store.create("gens", source=str(source))
    clock = Clock()
    limiter = SlidingWindowLimiter(9, 56, clock=clock, sleep=clock.sleep)

    crashing = CountingClient(crash_after=250)
    with pytest.raises(RuntimeError):
        await Worker(store, crashing, limiter).run_job("gens")

    reopened = FileJobStore(tmp_path / "jobs")
    job = await reopened.load("gens")
    assert job.processed_count == 250

    client = CountingClient()
    report = await Worker(reopened, client, limiter).run_job("gens", resume=True)

    assert report.done
    assert report.skipped == 250
    assert client.calls == [f"gen-{i}" for i in range(251, 501)]
