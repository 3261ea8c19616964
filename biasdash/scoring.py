"""
biasdash.scoring — Client for the upstream qualification-score service.

One operation, predict(payload), POSTs JSON to ``{base_url}/predict``.

Design contract:
    - Fixed timeout (SCORING_TIMEOUT_SECONDS). No retries.
    - No connection reuse: every call builds its own AsyncClient and sends
      ``Connection: close``. The upstream has dropped pooled connections.
    - Every failure (transport error, timeout, non-2xx, non-object body)
      surfaces as ScoringError(status_code | None, message).
    - Scores are passed through unscaled; they are already 0-100.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Mapping
from typing import Any

import httpx

from biasdash.constants import SCORING_PREDICT_PATH, SCORING_TIMEOUT_SECONDS

logger = logging.getLogger("biasdash.scoring")

_MESSAGE_KEYS: tuple[str, ...] = ("error", "detail", "message")


class ScoringError(Exception):
    """Upstream scoring call failed.

    ``status_code`` is the upstream HTTP status when a response arrived,
    None for transport failures and timeouts.
    """

    def __init__(self, status_code: int | None, message: str) -> None:
        self.status_code = status_code
        self.message = message
        super().__init__(f"[{status_code}] {message}" if status_code else message)


def _error_message(response: httpx.Response) -> str:
    """Pull a human-readable message out of an upstream error body."""
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        for key in _MESSAGE_KEYS:
            value = body.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
    return response.reason_phrase or f"Upstream returned HTTP {response.status_code}"


class ScoringClient:
    """Stateless client bound to one upstream base URL.

    ``transport`` exists for tests (httpx.MockTransport); production
    callers leave it None.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = SCORING_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=httpx.Timeout(self.timeout),
            headers={"Connection": "close"},
            transport=self._transport,
        )

    async def predict(self, payload: Mapping[str, Any]) -> dict[str, Any]:
        url = f"{self.base_url}{SCORING_PREDICT_PATH}"
        try:
            async with self._client() as client:
                response = await client.post(url, json=dict(payload))
        except httpx.TimeoutException:
            raise ScoringError(None, f"Scoring service timed out after {self.timeout:g}s")
        except httpx.HTTPError as exc:
            raise ScoringError(None, str(exc) or type(exc).__name__)

        if not response.is_success:
            raise ScoringError(response.status_code, _error_message(response))

        try:
            body = response.json()
        except ValueError:
            raise ScoringError(response.status_code, "Scoring service returned a non-JSON body")
        if not isinstance(body, dict):
            raise ScoringError(response.status_code, "Scoring service returned a non-object body")
        return body

    async def ping(self) -> int:
        """GET the upstream root. Returns the status code."""
        async with self._client() as client:
            response = await client.get(f"{self.base_url}/")
        return response.status_code

    async def keepalive_loop(self, interval: float) -> None:
        """Ping forever every ``interval`` seconds until cancelled.

        Every ping failure is logged at DEBUG and swallowed, including a
        malformed base URL (httpx.InvalidURL is not an HTTPError).
        """
        while True:
            await asyncio.sleep(interval)
            try:
                status = await self.ping()
                logger.debug(json.dumps({"event": "keepalive_ping", "status": status}))
            except Exception as exc:  # noqa: BLE001
                logger.debug(json.dumps({
                    "event": "keepalive_ping_failed",
                    "error_type": type(exc).__name__,
                }))
