from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from starlette.requests import Request

    from waymark.context import RequestContext
    from waymark.protocols import RouteHandler


@dataclass(frozen=True)
class RouteArgs:
    """Single argument passed to loaders, actions and method handlers."""

    request: Request
    params: dict[str, str]
    context: RequestContext


@dataclass
class RouteModule:
    """Handlers exported by a route file.

    Every hook is optional. A plain Python module with top-level ``loader``,
    ``action`` or ``GET``/``POST``/... functions is accepted wherever a
    RouteModule is, since the Application looks hooks up by attribute.
    """

    loader: RouteHandler | None = None
    action: RouteHandler | None = None
    before_load: RouteHandler | None = None
    # HTTP method (upper case) → handler, e.g. {"GET": list_items}
    handlers: dict[str, RouteHandler] = field(default_factory=dict)


@dataclass
class Route:
    """A route definition produced by the external router."""

    id: str
    path: str
    file: str = ""
    index: bool = False
    layout: bool = False
    children: list[Route] = field(default_factory=list)
    module: RouteModule | Any | None = None


@dataclass(frozen=True)
class RouteMatch:
    """A matched route plus the path parameters extracted for it."""

    route: Route
    params: dict[str, str]
    pathname: str
