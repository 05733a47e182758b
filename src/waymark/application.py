"""The Application: configuration, plugins and request dispatch.

Request flow for ``handle``:
  1. Build a fresh RequestContext
  2. Work out the effective method (form ``_method`` override)
  3. Run the middleware chain; its last step dispatches to the matched route
  4. Turn any exception into an error response (caught once, here)
  5. Apply the context's headers, cache policy and cookies to the response

Routes, middleware and plugins are configured before serving starts and
are read-only while requests are in flight.
"""

from __future__ import annotations

import functools
import inspect
import os
import re
import traceback
import uuid
from collections.abc import Iterable, Mapping, Sequence
from pathlib import Path
from typing import TYPE_CHECKING, Any

import structlog
from starlette.requests import Request
from starlette.responses import JSONResponse, PlainTextResponse, Response

from waymark.config import Settings
from waymark.context import RequestContext
from waymark.errors import NotFoundError
from waymark.middleware import MiddlewareDefinition, run_middleware
from waymark.models.routing import RouteArgs
from waymark.plugins import DevServer, PluginRegistry

if TYPE_CHECKING:
    from starlette.types import Receive, Scope, Send

    from waymark.models.routing import Route
    from waymark.protocols import Bundler, MiddlewareHandler, PluginLike, RouteMatcher

log = structlog.get_logger()

HTTP_METHODS: frozenset[str] = frozenset({"GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"})
READ_METHODS: frozenset[str] = frozenset({"GET", "HEAD"})

METHOD_OVERRIDE_FIELD = "_method"
METHOD_OVERRIDE_ALLOWED: frozenset[str] = frozenset({"PUT", "PATCH", "DELETE"})
_FORM_CONTENT_TYPES = ("application/x-www-form-urlencoded", "multipart/form-data")


def json_response(data: Any, status_code: int = 200) -> Response:
    """JSON-encode ``data``; degrade to a 500 envelope if it cannot be encoded."""
    try:
        return JSONResponse(data, status_code=status_code)
    except (TypeError, ValueError):
        log.warning("response_serialization_failed", status=status_code, exc_info=True)
        return JSONResponse({"error": "Failed to serialize response data"}, status_code=500)


def normalise_base_path(base_path: str | None) -> str:
    """Collapse repeated slashes and drop trailing ones; "/" means no base path."""
    if not base_path or base_path == "/":
        return ""
    return re.sub(r"/{2,}", "/", base_path).rstrip("/")


def strip_base_path(pathname: str, base_path: str | None) -> str:
    base = normalise_base_path(base_path)
    if not base or not (pathname == base or pathname.startswith(base + "/")):
        return pathname
    stripped = pathname[len(base) :] or "/"
    return stripped if stripped.startswith("/") else "/" + stripped


def _hook(module: Any, name: str) -> Any:
    hook = getattr(module, name, None)
    return hook if callable(hook) else None


def _method_handler(module: Any, method: str) -> Any:
    if method not in HTTP_METHODS:
        return None
    handlers = getattr(module, "handlers", None)
    if isinstance(handlers, Mapping) and callable(handlers.get(method)):
        return handlers[method]
    return _hook(module, method)


async def _call(handler: Any, args: RouteArgs) -> Any:
    result = handler(args)
    if inspect.isawaitable(result):
        result = await result
    return result


class Application:
    """Owns configuration, routes, middleware and the plugin registry."""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        routes: Sequence[Route] | None = None,
        plugins: Iterable[PluginLike] | None = None,
        env: Mapping[str, str] | None = None,
        root: str | Path | None = None,
    ) -> None:
        self.settings = settings or Settings()
        self.routes: list[Route] = list(routes or [])
        self.plugins: list[PluginLike] = list(plugins or [])
        # Snapshot handed to every RequestContext; contexts never read os.environ.
        self.env: dict[str, str] = dict(os.environ if env is None else env)
        self.root = Path(root) if root is not None else Path.cwd()

        self._registry = PluginRegistry(self.settings, self.settings.mode, self.root)
        self._middlewares: list[MiddlewareDefinition] = []
        self._route_matcher: RouteMatcher | None = None
        self._server_configured: list[PluginLike] = []

    @property
    def plugin_registry(self) -> PluginRegistry:
        return self._registry

    @property
    def middlewares(self) -> tuple[MiddlewareDefinition, ...]:
        return tuple(self._middlewares)

    # -- configuration-time mutators ----------------------------------------

    def use(self, plugin: PluginLike) -> Application:
        """Queue a plugin; it is registered by dev(), build() or start()."""
        self.plugins.append(plugin)
        return self

    def middleware(
        self, handler: MiddlewareHandler, path: str | Sequence[str] | None = None
    ) -> Application:
        if path is None:
            paths: tuple[str, ...] = ()
        elif isinstance(path, str):
            paths = (path,)
        else:
            paths = tuple(path)
        self._middlewares.append(MiddlewareDefinition(handler=handler, paths=paths))
        return self

    def set_route_matcher(self, matcher: RouteMatcher | None) -> None:
        self._route_matcher = matcher

    def set_routes(self, routes: Sequence[Route]) -> None:
        self.routes = list(routes)

    # -- request handling ----------------------------------------------------

    async def handle(self, request: Request) -> Response:
        """Produce the response for ``request``. Never raises."""
        context = RequestContext(request, self.env)
        pathname = context.url.path

        with structlog.contextvars.bound_contextvars(
            request_id=uuid.uuid4().hex[:12],
            method=request.method,
            path=pathname,
        ):
            try:
                method = await self._effective_method(request)
                middlewares = [m.handler for m in self._middlewares if m.applies_to(pathname)]
                response = await run_middleware(
                    middlewares,
                    request,
                    context,
                    functools.partial(self._handle_route, request, context, method),
                )
                if not isinstance(response, Response):
                    raise TypeError(
                        f"middleware chain returned {type(response).__name__}, expected a Response"
                    )
                return context.apply_to_response(response)
            except Exception as exc:
                # Error responses get the context headers too (e.g. CORS).
                return context.apply_to_response(self._handle_error(exc))

    async def _effective_method(self, request: Request) -> str:
        """Return the method to dispatch on.

        A form POST may ask to be treated as PUT, PATCH or DELETE through a
        hidden ``_method`` field. The request itself is left unchanged.
        """
        method = request.method.upper()
        if method != "POST":
            return method

        content_type = request.headers.get("content-type", "")
        if not any(form_type in content_type for form_type in _FORM_CONTENT_TYPES):
            return method

        try:
            # Buffer the body first so handlers can still read it afterwards.
            await request.body()
            form = await request.form()
        except Exception:
            log.debug("method_override_form_unreadable", exc_info=True)
            return method

        override = form.get(METHOD_OVERRIDE_FIELD)
        if not isinstance(override, str):
            return method

        normalised = override.upper()
        return normalised if normalised in METHOD_OVERRIDE_ALLOWED else method

    async def _handle_route(self, request: Request, context: RequestContext, method: str) -> Response:
        """Terminal step of the middleware chain."""
        pathname = strip_base_path(context.url.path, self.settings.base_path)

        matcher = self._route_matcher
        if matcher is None:
            return PlainTextResponse("Router not configured", status_code=500)

        match = matcher(pathname)
        if match is None:
            return PlainTextResponse("Not Found", status_code=404)

        module = match.route.module
        if module is None:
            return PlainTextResponse("Route module not loaded", status_code=500)

        args = RouteArgs(request=request, params=match.params, context=context)

        # API-style routes export one handler per HTTP method.
        handler = _method_handler(module, method)
        if handler is not None:
            result = await _call(handler, args)
            if isinstance(result, Response):
                return result
            if result is None:
                return Response(status_code=200)
            return json_response(result)

        before_load = _hook(module, "before_load")
        if before_load is not None:
            await _call(before_load, args)

        if method not in READ_METHODS:
            action = _hook(module, "action")
            if action is None:
                return PlainTextResponse("Method Not Allowed", status_code=405)
            result = await _call(action, args)
            if isinstance(result, Response):
                return result
            return json_response(result)

        loader_data = None
        loader = _hook(module, "loader")
        if loader is not None:
            result = await _call(loader, args)
            if isinstance(result, Response):
                return result
            loader_data = result

        if "application/json" in request.headers.get("accept", ""):
            return json_response(loader_data)

        # Full-page rendering belongs to the renderer; without one, return the envelope.
        return json_response({"loaderData": loader_data, "params": match.params})

    def _handle_error(self, exc: Exception) -> Response:
        if isinstance(exc, NotFoundError):
            log.info("request_not_found", data=exc.data)
            return json_response(exc.to_dict(), status_code=exc.status)

        log.error("request_error", error=str(exc), exc_info=True)

        if self.settings.server.development:
            stack = "".join(traceback.format_exception(exc)).splitlines()
            return json_response({"error": str(exc), "stack": stack}, status_code=500)

        return PlainTextResponse("Internal Server Error", status_code=500)

    # -- lifecycle -----------------------------------------------------------

    async def _initialize_plugins(self) -> None:
        pending = [plugin for plugin in self.plugins if plugin not in self._registry]
        await self._registry.register_all(pending)

    async def dev(self) -> None:
        """Register plugins, let them configure the dev server, install their middleware."""
        await self._initialize_plugins()

        # Plugins configured by an earlier dev() call already installed their middleware.
        pending = [
            plugin
            for plugin in self._registry.plugins
            if not any(plugin is done for done in self._server_configured)
        ]
        server = DevServer(config=self.settings)
        await self._registry.configure_server(server, pending)
        self._server_configured.extend(pending)
        for handler in server.middlewares:
            self.middleware(handler)

        log.info(
            "dev_server_ready",
            url=f"http://{self.settings.server.host}:{self.settings.server.port}",
            plugins=len(self._registry),
            plugin_middleware=len(server.middlewares),
        )

    async def build(self, bundler: Bundler | None = None) -> None:
        """Run the build hooks around ``bundler``, the external build step."""
        await self._initialize_plugins()
        await self._registry.build_start()

        log.info(
            "build_started",
            target=self.settings.build.target,
            out_dir=self.settings.build.out_dir,
        )
        if bundler is not None:
            await bundler(self)

        await self._registry.build_end()
        log.info("build_finished", out_dir=self.settings.build.out_dir)

    async def start(self) -> None:
        await self._initialize_plugins()
        log.info(
            "server_starting",
            url=f"http://{self.settings.server.host}:{self.settings.server.port}",
            mode=self.settings.mode,
        )

    # -- ASGI ----------------------------------------------------------------

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] == "lifespan":
            await self._lifespan(receive, send)
            return
        if scope["type"] != "http":
            raise RuntimeError(f"Unsupported ASGI scope type: {scope['type']}")

        response = await self.handle(Request(scope, receive))
        await response(scope, receive, send)

    async def _lifespan(self, receive: Receive, send: Send) -> None:
        while True:
            message = await receive()
            if message["type"] == "lifespan.startup":
                try:
                    await self.start()
                except Exception as exc:
                    log.error("server_start_failed", exc_info=True)
                    await send({"type": "lifespan.startup.failed", "message": str(exc)})
                    return
                await send({"type": "lifespan.startup.complete"})
            elif message["type"] == "lifespan.shutdown":
                log.info("server_stopping")
                await send({"type": "lifespan.shutdown.complete"})
                return


def create_app(settings: Settings | None = None, **options: Any) -> Application:
    return Application(settings, **options)


def is_application(value: object) -> bool:
    return isinstance(value, Application)
