"""Plugin pipeline.

Plugins hook into the application lifecycle and into module processing:

- setup             once, when the plugin is registered
- transform         chained: each plugin sees the previous plugin's output
- resolve_id, load  first non-None answer wins (virtual modules)
- configure_server, build_start, build_end
                    fan out to every plugin, in registration order

All hooks are optional. A hook may return a value or an awaitable, except
resolve_id, which is synchronous.
"""

from __future__ import annotations

import inspect
from collections.abc import Awaitable, Callable, Iterable, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import structlog

from waymark.errors import PluginError

if TYPE_CHECKING:
    from pathlib import Path

    from waymark.config import Mode, Settings
    from waymark.protocols import MiddlewareHandler, PluginLike

log = structlog.get_logger()

TransformHook = Callable[[str, str], "str | None | Awaitable[str | None]"]
ResolveIdHook = Callable[[str], "str | None"]
LoadHook = Callable[[str], "str | None | Awaitable[str | None]"]


@dataclass(frozen=True)
class PluginContext:
    """Passed to every plugin's setup hook."""

    config: Settings
    mode: Mode
    root: Path


@dataclass
class DevServer:
    """Handed to configure_server hooks.

    Middleware appended to ``middlewares`` is installed into the
    application's chain once every plugin has been configured.
    """

    config: Settings
    middlewares: list[MiddlewareHandler] = field(default_factory=list)


@dataclass(frozen=True)
class Plugin:
    name: str
    setup: Callable[[PluginContext], Any] | None = None
    transform: TransformHook | None = None
    resolve_id: ResolveIdHook | None = None
    load: LoadHook | None = None
    configure_server: Callable[[DevServer], Any] | None = None
    build_start: Callable[[], Any] | None = None
    build_end: Callable[[], Any] | None = None


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


def _hook(plugin: PluginLike, name: str) -> Callable[..., Any] | None:
    hook = getattr(plugin, name, None)
    return hook if callable(hook) else None


# ---------------------------------------------------------------------------
# Hook runners shared by PluginRegistry and compose_plugins
# ---------------------------------------------------------------------------


async def _run_transform(plugins: Sequence[PluginLike], code: str, id_: str) -> str:
    result = code
    for plugin in plugins:
        hook = _hook(plugin, "transform")
        if hook is None:
            continue
        transformed = await _maybe_await(hook(result, id_))
        if transformed is not None:
            result = transformed
    return result


def _run_resolve_id(plugins: Sequence[PluginLike], id_: str) -> str | None:
    for plugin in plugins:
        hook = _hook(plugin, "resolve_id")
        if hook is None:
            continue
        resolved = hook(id_)
        if resolved is not None:
            return resolved
    return None


async def _run_load(plugins: Sequence[PluginLike], id_: str) -> str | None:
    for plugin in plugins:
        hook = _hook(plugin, "load")
        if hook is None:
            continue
        loaded = await _maybe_await(hook(id_))
        if loaded is not None:
            return loaded
    return None


async def _run_each(plugins: Sequence[PluginLike], hook_name: str, *args: Any) -> None:
    # An exception aborts the remaining plugins for this call.
    for plugin in plugins:
        hook = _hook(plugin, hook_name)
        if hook is not None:
            await _maybe_await(hook(*args))


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class PluginRegistry:
    """Ordered set of plugins, unique by name.

    Owned by one Application. Registration is a configuration-time
    operation; it is not safe to register while requests are in flight.
    """

    def __init__(self, config: Settings, mode: Mode, root: Path) -> None:
        self._plugins: list[PluginLike] = []
        self._context = PluginContext(config=config, mode=mode, root=root)

    @property
    def context(self) -> PluginContext:
        return self._context

    @property
    def plugins(self) -> tuple[PluginLike, ...]:
        return tuple(self._plugins)

    def __contains__(self, plugin: object) -> bool:
        return any(registered is plugin for registered in self._plugins)

    def __len__(self) -> int:
        return len(self._plugins)

    def get_plugin(self, name: str) -> PluginLike | None:
        return next((p for p in self._plugins if p.name == name), None)

    async def register(self, plugin: PluginLike) -> None:
        """Add ``plugin`` and run its setup hook.

        The plugin is appended before setup runs, so a failing setup
        propagates but leaves the plugin in the registry.
        """
        name = getattr(plugin, "name", None)
        if not name:
            raise PluginError("Plugin must have a name")

        if self.get_plugin(name) is not None:
            log.warning("plugin_duplicate_skipped", plugin=name)
            return

        self._plugins.append(plugin)
        log.debug("plugin_registered", plugin=name, position=len(self._plugins))

        setup = _hook(plugin, "setup")
        if setup is not None:
            await _maybe_await(setup(self._context))

    async def register_all(self, plugins: Iterable[PluginLike]) -> None:
        for plugin in plugins:
            await self.register(plugin)

    async def transform(self, code: str, id_: str) -> str:
        return await _run_transform(self._plugins, code, id_)

    def resolve_id(self, id_: str) -> str | None:
        return _run_resolve_id(self._plugins, id_)

    async def load(self, id_: str) -> str | None:
        return await _run_load(self._plugins, id_)

    async def configure_server(
        self, server: DevServer, plugins: Sequence[PluginLike] | None = None
    ) -> None:
        """Run configure_server on every plugin, or only on ``plugins`` when given."""
        await _run_each(self._plugins if plugins is None else plugins, "configure_server", server)

    async def build_start(self) -> None:
        await _run_each(self._plugins, "build_start")

    async def build_end(self) -> None:
        await _run_each(self._plugins, "build_end")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def define_plugin(name: str, **hooks: Any) -> Plugin:
    """Build a Plugin from keyword hooks: ``define_plugin("x", transform=fn)``."""
    return Plugin(name=name, **hooks)


def compose_plugins(name: str, plugins: Sequence[PluginLike]) -> Plugin:
    """Wrap several plugins into one that behaves like a single plugin.

    Hooks fan out to the wrapped plugins in order with the registry's own
    chaining rules. The composed transform returns None when no wrapped
    plugin changed the code.
    """
    wrapped = tuple(plugins)

    async def setup(context: PluginContext) -> None:
        await _run_each(wrapped, "setup", context)

    async def transform(code: str, id_: str) -> str | None:
        result = await _run_transform(wrapped, code, id_)
        return result if result != code else None

    def resolve_id(id_: str) -> str | None:
        return _run_resolve_id(wrapped, id_)

    async def load(id_: str) -> str | None:
        return await _run_load(wrapped, id_)

    async def configure_server(server: DevServer) -> None:
        await _run_each(wrapped, "configure_server", server)

    async def build_start() -> None:
        await _run_each(wrapped, "build_start")

    async def build_end() -> None:
        await _run_each(wrapped, "build_end")

    return Plugin(
        name=name,
        setup=setup,
        transform=transform,
        resolve_id=resolve_id,
        load=load,
        configure_server=configure_server,
        build_start=build_start,
        build_end=build_end,
    )


def is_plugin(value: object) -> bool:
    return isinstance(getattr(value, "name", None), str)
