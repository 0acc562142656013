import json

import pytest

from genbatch.contracts import WorkItem
from genbatch.errors import CorrelationIdError
from genbatch.request_lines import (
    build_request_line,
    clean_request_file,
    validate_request_line,
    write_request_file,
)


def _chat(custom_id="answer-gen42-1", **overrides):
    line = {
        "custom_id": custom_id,
        "method": "POST",
        "url": "/v1/chat/completions",
        "body": {"model": "gpt-4o-mini", "messages": [{"role": "user", "content": "Hi"}]},
    }
    line.update(overrides)
    return json.dumps(line)


def test_validate_accepts_chat_and_embedding_requests():
    assert validate_request_line(_chat())["custom_id"] == "answer-gen42-1"
    embedding = _chat(
        url="/v1/embeddings", body={"model": "text-embedding-3-small", "input": "hello"}
    )
    assert validate_request_line(embedding) is not None


@pytest.mark.parametrize(
    "line",
    [
        "not json",
        "[1, 2]",
        _chat(custom_id=""),
        _chat(body={"messages": []}),
        _chat(body={"model": "m", "messages": "hi"}),
        _chat(body={"model": "m"}),
        json.dumps({"custom_id": "x", "method": "POST", "url": "/v1/chat/completions"}),
    ],
)
def test_validate_rejects_incomplete_lines(line):
    assert validate_request_line(line) is None


def test_clean_request_file_skips_blank_and_invalid_lines(tmp_path):
    path = tmp_path / "chunk.jsonl"
    path.write_text(
        "\n".join([_chat("answer-gen42-1"), "", "{broken", _chat("answer-gen42-2"), "  "]),
        encoding="utf-8",
    )

    cleaned = clean_request_file(path)

    assert cleaned.valid_lines == 2
    assert cleaned.invalid_lines == 1
    assert [json.loads(line)["custom_id"] for line in cleaned.content.splitlines()] == [
        "answer-gen42-1",
        "answer-gen42-2",
    ]
    assert len(cleaned.content.splitlines()) == 2


def test_build_request_line_uses_correlation_id():
    item = WorkItem(
        id="q1",
        correlation_id="answer-gen42-1",
        payload={"model": "gpt-4o-mini", "messages": [{"role": "user", "content": "Hi"}]},
    )
    line = build_request_line(item)
    assert line.custom_id == "answer-gen42-1"
    assert line.method == "POST"
    assert validate_request_line(line.to_json()) is not None


def test_build_request_line_requires_valid_correlation_id():
    with pytest.raises(ValueError):
        build_request_line(WorkItem(id="q1", payload={}))
    with pytest.raises(CorrelationIdError):
        build_request_line(WorkItem(id="q1", correlation_id="not an id", payload={}))


def test_write_request_file(tmp_path):
    items = [
        WorkItem(
            id=f"q{i}",
            correlation_id=f"answer-gen42-{i}",
            payload={"model": "m", "messages": [{"role": "user", "content": f"Q{i}"}]},
        )
        for i in range(1, 4)
    ]
    path = tmp_path / "requests.jsonl"
    assert write_request_file(items, path) == 3
    assert clean_request_file(path).valid_lines == 3
