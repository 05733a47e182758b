"""Middleware chain and built-in middleware.

A middleware is ``(request, context, next_) -> Response``. The chain runs
middleware strictly in registration order; the final step is route
dispatch. Each middleware either awaits ``next_()`` once, optionally
rewriting the result, or returns its own response to stop the chain.
"""

from __future__ import annotations

import inspect
import time
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING

import structlog
from starlette.responses import Response

from waymark.errors import MiddlewareError

if TYPE_CHECKING:
    from starlette.requests import Request

    from waymark.context import RequestContext
    from waymark.plugins import PluginRegistry
    from waymark.protocols import MiddlewareHandler, Next

log = structlog.get_logger()


@dataclass(frozen=True)
class MiddlewareDefinition:
    """A middleware handler, optionally restricted to some paths.

    Path patterns: ``"*"`` matches everything, ``"/api/*"`` matches a
    prefix, anything else must equal the pathname.
    """

    handler: MiddlewareHandler
    paths: tuple[str, ...] = ()

    def applies_to(self, pathname: str) -> bool:
        if not self.paths:
            return True
        return any(_match_path(pathname, pattern) for pattern in self.paths)


def _match_path(pathname: str, pattern: str) -> bool:
    if pattern == "*":
        return True
    if pattern.endswith("/*"):
        return pathname.startswith(pattern[:-2])
    return pathname == pattern


async def run_middleware(
    middlewares: Sequence[MiddlewareHandler],
    request: Request,
    context: RequestContext,
    final: Next,
) -> Response:
    """Run ``middlewares`` in order, then ``final``.

    Each middleware invocation gets its own ``next_``. Calling it a second
    time raises MiddlewareError instead of dispatching downstream again.
    """

    async def dispatch(index: int) -> Response:
        if index >= len(middlewares):
            return await final()

        called = False

        async def next_() -> Response:
            nonlocal called
            if called:
                raise MiddlewareError("next() called multiple times in middleware")
            called = True
            return await dispatch(index + 1)

        result = middlewares[index](request, context, next_)
        if inspect.isawaitable(result):
            result = await result
        return result

    return await dispatch(0)


# ---------------------------------------------------------------------------
# Built-in middleware
# ---------------------------------------------------------------------------


def request_logger() -> MiddlewareHandler:
    """Log each request with its status and duration."""

    async def middleware(request: Request, context: RequestContext, next_: Next) -> Response:
        start = time.perf_counter()
        req_log = log.bind(method=request.method, path=context.url.path)
        req_log.info("request_started")

        response = await next_()

        req_log.info(
            "request_finished",
            status=response.status_code,
            duration_ms=round((time.perf_counter() - start) * 1000, 2),
        )
        return response

    return middleware


def cors(
    *,
    origin: str | Iterable[str] | Callable[[str], bool] = "*",
    methods: Sequence[str] = ("GET", "POST", "PUT", "DELETE", "PATCH", "OPTIONS"),
    allowed_headers: Sequence[str] = ("Content-Type", "Authorization"),
    exposed_headers: Sequence[str] = (),
    credentials: bool = False,
    max_age: int = 86400,
) -> MiddlewareHandler:
    """CORS headers and preflight handling.

    Headers go through ``context.response_headers`` so they are present on
    error responses too.
    """
    allowed_origins = None if isinstance(origin, str) or callable(origin) else frozenset(origin)

    def resolve_origin(request_origin: str | None) -> str | None:
        if isinstance(origin, str):
            return origin
        if not request_origin:
            return None
        if allowed_origins is not None:
            return request_origin if request_origin in allowed_origins else None
        return request_origin if origin(request_origin) else None

    async def middleware(request: Request, context: RequestContext, next_: Next) -> Response:
        allow_origin = resolve_origin(request.headers.get("origin"))

        if request.method == "OPTIONS":
            headers = {
                "Access-Control-Allow-Origin": allow_origin or "*",
                "Access-Control-Allow-Methods": ", ".join(methods),
                "Access-Control-Allow-Headers": ", ".join(allowed_headers),
                "Access-Control-Max-Age": str(max_age),
            }
            if credentials:
                headers["Access-Control-Allow-Credentials"] = "true"
            return Response(status_code=204, headers=headers)

        if allow_origin:
            context.response_headers["Access-Control-Allow-Origin"] = allow_origin
        if exposed_headers:
            context.response_headers["Access-Control-Expose-Headers"] = ", ".join(exposed_headers)
        if credentials:
            context.response_headers["Access-Control-Allow-Credentials"] = "true"
        return await next_()

    return middleware


def security_headers(
    *,
    content_security_policy: str | None = "default-src 'self'",
    x_frame_options: str | None = "SAMEORIGIN",
    x_content_type_options: bool = True,
    referrer_policy: str | None = "strict-origin-when-cross-origin",
    permissions_policy: str | None = None,
) -> MiddlewareHandler:
    """Common security headers; pass None (or False) to omit one."""
    headers: dict[str, str] = {}
    if content_security_policy:
        headers["Content-Security-Policy"] = content_security_policy
    if x_frame_options:
        headers["X-Frame-Options"] = x_frame_options
    if x_content_type_options:
        headers["X-Content-Type-Options"] = "nosniff"
    if referrer_policy:
        headers["Referrer-Policy"] = referrer_policy
    if permissions_policy:
        headers["Permissions-Policy"] = permissions_policy

    async def middleware(request: Request, context: RequestContext, next_: Next) -> Response:
        for name, value in headers.items():
            context.response_headers[name] = value
        return await next_()

    return middleware


def virtual_modules(
    registry: PluginRegistry,
    *,
    prefix: str = "/@virtual/",
    media_type: str = "application/javascript",
) -> MiddlewareHandler:
    """Serve plugin-provided virtual modules under ``prefix``.

    The id after the prefix goes through resolve_id, load and transform.
    Requests whose id no plugin resolves or loads fall through to ``next_``.
    """

    async def middleware(request: Request, context: RequestContext, next_: Next) -> Response:
        path = context.url.path
        if not path.startswith(prefix):
            return await next_()

        resolved = registry.resolve_id(path[len(prefix) :])
        if resolved is None:
            return await next_()

        code = await registry.load(resolved)
        if code is None:
            return await next_()

        code = await registry.transform(code, resolved)
        log.debug("virtual_module_served", id=resolved, size=len(code))
        return Response(code, media_type=media_type)

    return middleware

