"""Integration test fixtures.

Provides an Application wired to a tiny pattern router and an httpx client
that drives it over ASGI.
"""

from __future__ import annotations

import re
from collections.abc import AsyncIterator, Callable

import httpx
import pytest

from waymark.application import Application
from waymark.config import Settings
from waymark.models.routing import Route, RouteMatch

_PARAM = re.compile(r":(\w+)")


def pattern_matcher(routes: list[Route]) -> Callable[[str], RouteMatch | None]:
    """Match ``/users/:id`` style route paths, first route wins."""
    compiled = [
        (re.compile("^" + _PARAM.sub(r"(?P<\1>[^/]+)", route.path) + "/?$"), route)
        for route in routes
    ]

    def match(pathname: str) -> RouteMatch | None:
        for pattern, route in compiled:
            found = pattern.match(pathname)
            if found:
                return RouteMatch(route=route, params=found.groupdict(), pathname=pathname)
        return None

    return match


@pytest.fixture()
def app() -> Application:
    return Application(env={"API_URL": "https://api.example.com"})


@pytest.fixture()
def mount(app: Application) -> Callable[..., Application]:
    """Install routes on the app fixture: ``mount(Route(...), Route(...))``."""

    def _mount(*routes: Route) -> Application:
        app.set_routes(list(routes))
        app.set_route_matcher(pattern_matcher(list(routes)))
        return app

    return _mount


@pytest.fixture()
async def client(app: Application) -> AsyncIterator[httpx.AsyncClient]:
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as c:
        yield c


@pytest.fixture()
def build_app() -> Callable[..., Application]:
    """Build a standalone Application: ``build_app(settings, *routes)``."""

    def _build(settings: Settings | None = None, *routes: Route) -> Application:
        built = Application(settings, env={})
        built.set_routes(list(routes))
        built.set_route_matcher(pattern_matcher(list(routes)))
        return built

    return _build
