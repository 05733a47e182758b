"""Shared test fixtures for the waymark test suite."""

from __future__ import annotations

from collections.abc import Callable
from typing import TYPE_CHECKING

import pytest
from starlette.requests import Request

from waymark.config import Settings
from waymark.plugins import PluginRegistry

if TYPE_CHECKING:
    from pathlib import Path

RequestFactory = Callable[..., Request]


def build_request(
    path: str = "/",
    *,
    method: str = "GET",
    headers: dict[str, str] | None = None,
    query_string: bytes = b"",
    body: bytes = b"",
) -> Request:
    """Build a starlette Request from a hand-written ASGI scope."""
    scope = {
        "type": "http",
        "http_version": "1.1",
        "method": method,
        "scheme": "http",
        "server": ("testserver", 80),
        "root_path": "",
        "path": path,
        "raw_path": path.encode(),
        "query_string": query_string,
        "headers": [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()],
    }

    async def receive() -> dict:
        return {"type": "http.request", "body": body, "more_body": False}

    return Request(scope, receive)


@pytest.fixture()
def make_request() -> RequestFactory:
    return build_request


@pytest.fixture()
def settings() -> Settings:
    return Settings()


@pytest.fixture()
def registry(settings: Settings, tmp_path: Path) -> PluginRegistry:
    return PluginRegistry(settings, "production", tmp_path)
