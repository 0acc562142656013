import json

import pytest

from genbatch.downstream import ItemOutcome
from genbatch.errors import SourceUnavailableError
from genbatch.persistence import InMemoryJobStore
from genbatch.ratelimit import SlidingWindowLimiter
from genbatch.sources import FileWorkSource
from genbatch.worker import Worker


class RecordingClient:
    def __init__(self):
        self.calls = []

    async def call(self, item):
        self.calls.append(item.id)
        return ItemOutcome(item_id=item.id, success=True, status_code=200)


def _write(path, lines):
    path.write_text("\n".join(lines) + "\n")
    return path


def test_bare_ids_and_json_objects(tmp_path):
    path = _write(
        tmp_path / "items.jsonl",
        [
            "gen-1",
            json.dumps({"id": "gen-2", "correlation_id": "answer-gen42-2", "model": "m"}),
            "",
            "gen-1",
        ],
    )

    items = FileWorkSource(path).load()

    assert [item.id for item in items] == ["gen-1", "gen-2"]
    assert items[1].key == "answer-gen42-2"
    assert items[1].payload == {"model": "m"}


def test_lines_with_wrongly_typed_fields_are_skipped(tmp_path):
    path = _write(
        tmp_path / "items.jsonl",
        [
            "a",
            json.dumps({"id": "b", "correlation_id": ["answer-gen42-1"]}),
            "{not json",
            json.dumps({"correlation_id": "answer-gen42-2"}),
            "c",
        ],
    )
    source = FileWorkSource(path)

    items = source.load()

    assert [item.id for item in items] == ["a", "c"]
    assert source.invalid_lines == [2, 3, 4]


@pytest.mark.asyncio
async def test_job_completes_past_wrongly_typed_line(tmp_path):
    path = _write(
        tmp_path / "items.jsonl",
        ["a", json.dumps({"id": "b", "correlation_id": ["answer-gen42-1"]}), "c"],
    )
    store = InMemoryJobStore()
    await store.create("job-1", source=str(path))
    client = RecordingClient()
    worker = Worker(store, client, SlidingWindowLimiter(100, 60), batch_size=5)

    report = await worker.run_job("job-1")

    assert report.done
    assert report.processed_count == 2
    assert client.calls == ["a", "c"]


def test_missing_file_is_unavailable(tmp_path):
    with pytest.raises(SourceUnavailableError):
        FileWorkSource(tmp_path / "missing.jsonl").load()
