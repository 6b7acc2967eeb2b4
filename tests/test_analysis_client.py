from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from compliance_analyzer.errors import ExternalServiceUnavailable
from compliance_analyzer.nodes.analysis_client import OllamaAnalysisClient
from compliance_analyzer.nodes.batch_planner import plan_batches
from compliance_analyzer.nodes.request_builder import build_guideline_block, build_request

from conftest import make_record


def _client(handler, **kwargs) -> OllamaAnalysisClient:
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return OllamaAnalysisClient(
        "http://ollama:11434/", "test-model", backoff_base_s=0, http_client=http, **kwargs,
    )


@pytest.fixture
def request_(index):
    batch = plan_batches([make_record(i) for i in range(3)], 50)[0]
    return build_request(batch, build_guideline_block(index))


def test_returns_raw_response_text(request_) -> None:
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"response": 'prose {"general": {"items": []}}', "done": True})

    raw = asyncio.run(_client(handler).analyze(request_))

    assert raw == 'prose {"general": {"items": []}}'
    assert str(seen[0].url) == "http://ollama:11434/api/generate"
    payload = json.loads(seen[0].content)
    assert payload["model"] == "test-model"
    assert payload["stream"] is False
    assert payload["format"] == "json"
    assert payload["system"] == request_.output_instructions
    assert "Reply quickly" in payload["prompt"]


def test_timeout_applies_to_injected_client(request_) -> None:
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.extensions["timeout"])
        return httpx.Response(200, json={"response": "ok"})

    asyncio.run(_client(handler, timeout_s=42.0).analyze(request_))
    assert seen[0]["read"] == 42.0
    assert seen[0]["connect"] == 42.0


def test_json_mode_can_be_disabled(request_) -> None:
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(json.loads(request.content))
        return httpx.Response(200, json={"response": "ok"})

    asyncio.run(_client(handler, json_mode=False).analyze(request_))
    assert "format" not in seen[0]


def test_retries_server_errors_then_succeeds(request_) -> None:
    statuses = [503, 429, 200]

    def handler(request: httpx.Request) -> httpx.Response:
        status = statuses.pop(0)
        return httpx.Response(status, json={"response": "done"} if status == 200 else {"error": "busy"})

    assert asyncio.run(_client(handler, max_retries=3).analyze(request_)) == "done"
    assert statuses == []


def test_client_errors_are_not_retried(request_) -> None:
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(404, json={"error": "model not found"})

    with pytest.raises(ExternalServiceUnavailable, match="HTTP 404"):
        asyncio.run(_client(handler, max_retries=3).analyze(request_))
    assert len(calls) == 1


def test_connection_errors_exhaust_retries(request_) -> None:
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(ExternalServiceUnavailable, match="ConnectError"):
        asyncio.run(_client(handler, max_retries=2).analyze(request_))
    assert len(calls) == 2


def test_non_json_body_is_retried_as_transport_error(request_) -> None:
    bodies = [httpx.Response(200, text="<html>gateway</html>"), httpx.Response(200, json={"response": "x"})]

    def handler(request: httpx.Request) -> httpx.Response:
        return bodies.pop(0)

    assert asyncio.run(_client(handler).analyze(request_)) == "x"


def test_health() -> None:
    def up(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/api/tags"
        return httpx.Response(200, json={"models": []})

    def down(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    assert asyncio.run(_client(up).health()) is True
    assert asyncio.run(_client(down).health()) is False
