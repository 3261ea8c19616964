"""
tests/test_security.py — Header policy and request-log helpers.

Requires: pytest, starlette
"""

from __future__ import annotations

import pytest
from starlette.responses import Response

from biasdash.security import NO_STORE, apply_security_headers, is_uncacheable, mask_ip


@pytest.mark.parametrize("path,expected", [
    ("/api", True),
    ("/api/summary", True),
    ("/health", True),
    ("/ready", True),
    ("/", False),
    ("/apix", False),
    ("/assets/app.js", False),
])
def test_is_uncacheable(path, expected):
    assert is_uncacheable(path) is expected


def test_api_response_headers():
    response = Response("{}", headers={"ETag": '"abc"'})
    apply_security_headers(response, "/api/summary", enable_hsts=True)
    assert response.headers["cache-control"] == NO_STORE
    assert "etag" not in response.headers
    assert response.headers["strict-transport-security"].startswith("max-age=")


def test_frontend_response_keeps_cache_headers():
    response = Response("x", headers={"Cache-Control": "public, max-age=60"})
    apply_security_headers(response, "/assets/app.js", enable_hsts=False)
    assert response.headers["cache-control"] == "public, max-age=60"
    assert "strict-transport-security" not in response.headers
    assert response.headers["x-frame-options"] == "DENY"


@pytest.mark.parametrize("ip,expected", [
    ("203.0.113.77", "203.0.0.0/16"),
    ("2001:db8:abcd:12::1", "2001:db8:abcd::/48"),
    ("testclient", "unknown"),
    (None, "unknown"),
])
def test_mask_ip(ip, expected):
    assert mask_ip(ip) == expected
