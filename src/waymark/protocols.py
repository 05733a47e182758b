"""Protocol interfaces for the collaborators the Application talks to.

The router, route modules, middleware and plugins are all supplied from
outside this package. The Application references these protocols, not
concrete implementations, so that:
- Tests can pass plain functions and lambdas
- Any router (file based or hand-written) can be plugged in
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any, Protocol, TypeAlias

if TYPE_CHECKING:
    from starlette.requests import Request
    from starlette.responses import Response

    from waymark.context import RequestContext
    from waymark.models.routing import RouteArgs, RouteMatch

Next: TypeAlias = "Callable[[], Awaitable[Response]]"
RouteMatcher: TypeAlias = "Callable[[str], RouteMatch | None]"
RouteHandler: TypeAlias = "Callable[[RouteArgs], Any]"


class MiddlewareHandler(Protocol):
    """Middleware receives the request, its context and the rest of the chain.

    Return a response either by awaiting ``next_()`` (optionally transforming
    the result) or by building one directly to short-circuit the chain.
    """

    def __call__(
        self, request: Request, context: RequestContext, next_: Next
    ) -> Response | Awaitable[Response]: ...


class Bundler(Protocol):
    """External build step run between the plugins' build_start and build_end."""

    async def __call__(self, app: Any) -> None: ...


class PluginLike(Protocol):
    """Anything with a name can be registered as a plugin.

    Hooks (setup, transform, resolve_id, load, configure_server,
    build_start, build_end) are all optional and looked up by attribute.
    """

    name: str
