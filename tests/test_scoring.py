"""
tests/test_scoring.py — Upstream scoring client.

Uses httpx.MockTransport in place of the network.

Covers:
    - POST {base}/predict with the JSON payload and Connection: close
    - Error mapping: upstream status + message, transport errors, timeouts
    - Non-JSON / non-object success bodies are failures
    - Keep-alive ping

Requires: pytest, httpx
"""

from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from biasdash.scoring import ScoringClient, ScoringError

BASE = "http://scorer.test/v1/"


def _client(handler) -> ScoringClient:
    return ScoringClient(BASE, timeout=2, transport=httpx.MockTransport(handler))


class TestPredict:
    def test_success(self):
        seen: dict = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["method"] = request.method
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            seen["connection"] = request.headers.get("connection")
            return httpx.Response(200, json={"qualification_score": 73.5, "model": "v3"})

        result = asyncio.run(_client(handler).predict({"age_group": 2, "ed_level": 3}))

        assert result == {"qualification_score": 73.5, "model": "v3"}
        assert seen["method"] == "POST"
        assert seen["url"] == "http://scorer.test/v1/predict"
        assert seen["body"] == {"age_group": 2, "ed_level": 3}
        assert seen["connection"] == "close"

    def test_upstream_error_message_extracted(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(503, json={"error": "model is warming up"})

        with pytest.raises(ScoringError) as exc_info:
            asyncio.run(_client(handler).predict({}))
        assert exc_info.value.status_code == 503
        assert exc_info.value.message == "model is warming up"

    @pytest.mark.parametrize("key", ["detail", "message"])
    def test_alternative_message_keys(self, key):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(422, json={key: "bad features"})

        with pytest.raises(ScoringError) as exc_info:
            asyncio.run(_client(handler).predict({}))
        assert exc_info.value.status_code == 422
        assert exc_info.value.message == "bad features"

    def test_upstream_error_without_body(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(502, text="<html>bad gateway</html>")

        with pytest.raises(ScoringError) as exc_info:
            asyncio.run(_client(handler).predict({}))
        assert exc_info.value.status_code == 502
        assert exc_info.value.message == "Bad Gateway"

    def test_transport_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(ScoringError) as exc_info:
            asyncio.run(_client(handler).predict({}))
        assert exc_info.value.status_code is None
        assert "connection refused" in exc_info.value.message

    def test_timeout(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("read timed out", request=request)

        with pytest.raises(ScoringError) as exc_info:
            asyncio.run(_client(handler).predict({}))
        assert exc_info.value.status_code is None
        assert "timed out" in exc_info.value.message

    def test_non_json_success_body(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, text="ok")

        with pytest.raises(ScoringError):
            asyncio.run(_client(handler).predict({}))

    def test_non_object_success_body(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json=[1, 2, 3])

        with pytest.raises(ScoringError):
            asyncio.run(_client(handler).predict({}))

    def test_no_retry(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(500, json={"error": "boom"})

        with pytest.raises(ScoringError):
            asyncio.run(_client(handler).predict({}))
        assert len(calls) == 1


class TestKeepalive:
    def test_ping_hits_root(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append((request.method, str(request.url)))
            return httpx.Response(200, text="up")

        assert asyncio.run(_client(handler).ping()) == 200
        assert seen == [("GET", "http://scorer.test/v1/")]

    def test_loop_swallows_failures_until_cancelled(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            raise httpx.ConnectError("down", request=request)

        async def run() -> None:
            task = asyncio.create_task(_client(handler).keepalive_loop(0.01))
            await asyncio.sleep(0.1)
            assert not task.done()
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        asyncio.run(run())
        assert len(calls) >= 2

    @pytest.mark.parametrize("error", [
        httpx.InvalidURL("bad base url"),
        RuntimeError("resolver exploded"),
    ])
    def test_loop_survives_non_http_errors(self, error):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            raise error

        async def run() -> None:
            task = asyncio.create_task(_client(handler).keepalive_loop(0.01))
            await asyncio.sleep(0.1)
            assert not task.done()
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        asyncio.run(run())
        assert len(calls) >= 2
