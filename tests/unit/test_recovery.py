import json

import pytest

from genbatch.batches.inmemory import InMemoryBatchService
from genbatch.contracts import BatchStatus, ReconcileOutcome
from genbatch.errors import RecordStoreError
from genbatch.mappers import ResultMapper, load_request_titles
from genbatch.recovery import RecoveryEngine
from genbatch.storage import InMemoryRecordStore, SQLiteRecordStore

PROMPTS = {
    "answer-gen42-1": "What is Rust?",
    "answer-gen42-2": "What is Go?",
    "answer-gen42-3": "What is Zig?",
}


def _write_requests(path, prompts=PROMPTS):
    lines = [
        json.dumps(
            {
                "custom_id": cid,
                "method": "POST",
                "url": "/v1/chat/completions",
                "body": {"model": "gpt-4o-mini", "messages": [{"role": "user", "content": prompt}]},
            }
        )
        for cid, prompt in prompts.items()
    ]
    path.write_text("\n".join(lines) + "\n")
    return path


async def _submit(service, path):
    file_id = await service.upload(path.read_bytes(), path.name)
    handle = await service.create_batch(file_id, "/v1/chat/completions", {"owner": "gen42"})
    return handle.batch_id


def _output(cid, text, status_code=200):
    return json.dumps(
        {
            "id": f"req-{cid}",
            "custom_id": cid,
            "response": {
                "status_code": status_code,
                "body": {"choices": [{"message": {"role": "assistant", "content": text}}]},
            },
            "error": None,
        }
    )


@pytest.fixture
def requests_file(tmp_path):
    return _write_requests(tmp_path / "questions.jsonl")


@pytest.mark.asyncio
async def test_second_recovery_skips_everything(requests_file):
    service = InMemoryBatchService()
    store = InMemoryRecordStore()
    batch_id = await _submit(service, requests_file)
    service.complete(batch_id)
    engine = RecoveryEngine(service, store)

    first = await engine.recover(batch_id)
    second = await engine.recover(batch_id)

    assert (first.recovered, first.skipped, first.failed) == (3, 0, 0)
    assert (second.recovered, second.skipped, second.failed) == (0, 3, 0)
    assert await store.count() == 3
    first_ids = {r.target_record_id for r in first.batches[0].results}
    second_ids = {r.target_record_id for r in second.batches[0].results}
    assert first_ids == second_ids


@pytest.mark.asyncio
async def test_titles_come_from_request_file(requests_file):
    service = InMemoryBatchService()
    store = InMemoryRecordStore()
    batch_id = await _submit(service, requests_file)
    service.complete(batch_id)

    mapper = ResultMapper(load_request_titles(requests_file))
    await RecoveryEngine(service, store, mapper=mapper).recover(batch_id)

    record = await store.get("gen42", "answer-1")
    assert record.title == "What is Rust?"
    assert record.content == "Result for answer-gen42-1"
    assert record.metadata == {"owner": "gen42", "batch_id": batch_id}


@pytest.mark.asyncio
async def test_failed_results_are_reported(requests_file):
    service = InMemoryBatchService()
    batch_id = await _submit(service, requests_file)

    def responder(request):
        if request["custom_id"] == "answer-gen42-2":
            return {"status_code": 500, "body": {"error": {"message": "server overloaded"}}}
        if request["custom_id"] == "answer-gen42-3":
            return {"error": {"code": "rate_limit_exceeded", "message": "Too many requests"}}
        return {"status_code": 200, "body": {"choices": [{"message": {"content": "Fine"}}]}}

    service.complete(batch_id, responder)
    summary = await RecoveryEngine(service, InMemoryRecordStore()).recover(batch_id)

    assert (summary.recovered, summary.failed) == (1, 2)
    assert sorted(summary.failures) == [
        f"{batch_id} answer-gen42-2: server overloaded",
        f"{batch_id} answer-gen42-3: Too many requests",
    ]


@pytest.mark.asyncio
async def test_malformed_lines_fail_individually(requests_file):
    service = InMemoryBatchService()
    batch_id = await _submit(service, requests_file)
    service.attach_output(
        batch_id,
        [
            _output("answer-gen42-1", "One"),
            "{not json",
            json.dumps({"response": {"status_code": 200}}),
            _output("Not A Valid Id", "Three"),
            "",
            _output("answer-gen42-2", "Two"),
        ],
    )

    summary = await RecoveryEngine(service, InMemoryRecordStore()).recover(batch_id)
    batch = summary.batches[0]

    assert batch.recovered == 2
    assert batch.failed == 3
    assert [f.line for f in batch.line_failures] == [2, 3, 4]
    assert batch.line_failures[2].correlation_id == "Not A Valid Id"


@pytest.mark.asyncio
async def test_terminal_failures_are_not_recoverable(requests_file):
    service = InMemoryBatchService()
    batch_id = await _submit(service, requests_file)
    service.set_status(batch_id, BatchStatus.EXPIRED)

    summary = await RecoveryEngine(service, InMemoryRecordStore()).recover(batch_id)

    assert summary.not_recoverable == [batch_id]
    assert summary.errors == {}
    assert "expired" in summary.batches[0].error


@pytest.mark.asyncio
async def test_cancelled_batch_that_completes_late_is_recovered(requests_file):
    service = InMemoryBatchService()
    store = InMemoryRecordStore()
    batch_id = await _submit(service, requests_file)
    await service.cancel_batch(batch_id)
    engine = RecoveryEngine(service, store)

    pending = await engine.recover(batch_id)
    assert pending.pending == [batch_id]
    assert pending.recovered == 0

    service.complete(batch_id)
    assert (await engine.recover(batch_id)).recovered == 3


@pytest.mark.asyncio
async def test_unknown_batch_is_an_error(requests_file):
    summary = await RecoveryEngine(InMemoryBatchService(), InMemoryRecordStore()).recover("batch-x")
    assert "batch-x" in summary.errors


@pytest.mark.asyncio
async def test_recover_all_batches(tmp_path):
    service = InMemoryBatchService()
    store = InMemoryRecordStore()
    first = await _submit(service, _write_requests(tmp_path / "a.jsonl", {"answer-gen1-1": "A?"}))
    second = await _submit(service, _write_requests(tmp_path / "b.jsonl", {"answer-gen2-1": "B?"}))
    failed = await _submit(service, _write_requests(tmp_path / "c.jsonl", {"answer-gen3-1": "C?"}))
    running = await _submit(service, _write_requests(tmp_path / "d.jsonl", {"answer-gen4-1": "D?"}))
    service.complete(first)
    service.complete(second)
    service.set_status(failed, BatchStatus.FAILED)
    service.set_status(running, BatchStatus.IN_PROGRESS)

    summary = await RecoveryEngine(service, store, fan_out=2).recover()

    assert sorted(b.batch_id for b in summary.batches) == sorted([first, second, failed])
    assert summary.recovered == 2
    assert summary.not_recoverable == [failed]
    outcomes = {r.outcome for b in summary.batches for r in b.results}
    assert outcomes == {ReconcileOutcome.RECOVERED}


@pytest.mark.asyncio
async def test_recovery_is_idempotent_across_restarts(tmp_path, requests_file):
    service = InMemoryBatchService()
    batch_id = await _submit(service, requests_file)
    service.complete(batch_id)

    store = SQLiteRecordStore(tmp_path / "records.db")
    await RecoveryEngine(service, store).recover(batch_id)
    store.close()

    reopened = SQLiteRecordStore(tmp_path / "records.db")
    summary = await RecoveryEngine(service, reopened).recover(batch_id)
    assert summary.skipped == 3
    assert await reopened.count() == 3


@pytest.mark.asyncio
async def test_recovery_with_and_without_titles_targets_the_same_rows(requests_file):
    service = InMemoryBatchService()
    store = InMemoryRecordStore()
    batch_id = await _submit(service, requests_file)
    service.complete(batch_id)

    titled = ResultMapper(load_request_titles(requests_file))
    first = await RecoveryEngine(service, store, mapper=titled).recover(batch_id)
    second = await RecoveryEngine(service, store).recover(batch_id)

    assert first.recovered == 3
    assert (second.recovered, second.skipped, second.failed) == (0, 3, 0)
    assert await store.count() == 3


@pytest.mark.asyncio
async def test_non_object_responses_fail_individually(requests_file):
    service = InMemoryBatchService()
    batch_id = await _submit(service, requests_file)
    service.attach_output(
        batch_id,
        [
            json.dumps({"custom_id": "answer-gen42-1", "response": "oops"}),
            json.dumps({"custom_id": "answer-gen42-2", "response": {"status_code": 200, "body": [1]}}),
            _output("answer-gen42-3", "Three"),
        ],
        error_lines=[json.dumps({"custom_id": "answer-gen42-4", "response": ["x"], "error": None})],
    )

    summary = await RecoveryEngine(service, InMemoryRecordStore()).recover(batch_id)

    assert (summary.recovered, summary.failed) == (1, 3)
    assert sorted(summary.failures) == [
        f"{batch_id} answer-gen42-1: Malformed response: str",
        f"{batch_id} answer-gen42-2: Malformed response body: list",
        f"{batch_id} answer-gen42-4: Missing response",
    ]


class FlakyRecordStore(InMemoryRecordStore):
    def __init__(self, broken_slug):
        super().__init__()
        self.broken_slug = broken_slug

    async def upsert(self, record):
        if record.slug == self.broken_slug:
            raise RecordStoreError(f"disk full writing {record.slug}")
        return await super().upsert(record)


@pytest.mark.asyncio
async def test_store_write_failure_only_fails_that_item(requests_file):
    service = InMemoryBatchService()
    store = FlakyRecordStore("answer-2")
    batch_id = await _submit(service, requests_file)
    service.complete(batch_id)

    summary = await RecoveryEngine(service, store).recover(batch_id)

    assert (summary.recovered, summary.failed) == (2, 1)
    assert summary.failures == [f"{batch_id} answer-gen42-2: disk full writing answer-2"]
    assert await store.count() == 2
