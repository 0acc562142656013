import json

import httpx
import pytest

from genbatch.contracts import WorkItem
from genbatch.downstream import DownstreamClient

URL = "http://downstream.test/generate"


async def no_sleep(delay):
    return None


def _client(handler, **kwargs) -> DownstreamClient:
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return DownstreamClient(URL, client=http, sleep=no_sleep, **kwargs)


@pytest.mark.asyncio
async def test_posts_id_and_params():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(json.loads(request.content))
        return httpx.Response(200, json={"ok": True})

    client = _client(handler)
    outcome = await client.call(WorkItem(id="gen-1", payload={"language": "en", "limit": 3}))

    assert outcome.success
    assert outcome.status_code == 200
    assert outcome.attempts == 1
    assert outcome.response == {"ok": True}
    assert seen == [{"id": "gen-1", "language": "en", "limit": 3}]


@pytest.mark.asyncio
async def test_client_error_fails_item_with_error_field():
    def handler(request):
        return httpx.Response(400, json={"error": "generation not found"})

    outcome = await _client(handler).call(WorkItem(id="gen-404"))

    assert not outcome.success
    assert outcome.status_code == 400
    assert outcome.attempts == 1
    assert outcome.error == "generation not found"


@pytest.mark.asyncio
async def test_raw_text_is_captured_when_body_is_not_json():
    def handler(request):
        return httpx.Response(422, text="unprocessable")

    outcome = await _client(handler).call(WorkItem(id="gen-2"))
    assert outcome.error == "unprocessable"


@pytest.mark.asyncio
async def test_server_errors_are_retried_then_succeed():
    responses = iter(
        [
            httpx.Response(503, text="busy"),
            httpx.Response(429, json={"error": "slow down"}),
            httpx.Response(201, json={"id": "gen-3"}),
        ]
    )

    outcome = await _client(lambda request: next(responses)).call(WorkItem(id="gen-3"))

    assert outcome.success
    assert outcome.attempts == 3
    assert outcome.status_code == 201


@pytest.mark.asyncio
async def test_retries_stop_at_attempt_ceiling():
    calls = []

    def handler(request):
        calls.append(1)
        return httpx.Response(500, json={"error": "boom"})

    outcome = await _client(handler, max_attempts=3).call(WorkItem(id="gen-4"))

    assert not outcome.success
    assert len(calls) == 3
    assert outcome.status_code == 500
    assert "boom" in outcome.error


@pytest.mark.asyncio
async def test_network_errors_become_item_failures():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    outcome = await _client(handler, max_attempts=2).call(WorkItem(id="gen-5"))

    assert not outcome.success
    assert outcome.attempts == 2
    assert outcome.status_code is None
    assert "Network error" in outcome.error
