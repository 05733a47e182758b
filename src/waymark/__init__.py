"""Waymark: request dispatch, request context and plugin pipeline for a server-side web framework."""

from __future__ import annotations

import warnings
from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("waymark")
except PackageNotFoundError:
    # Source-tree execution without installed package metadata.
    warnings.warn(
        "Package metadata for 'waymark' not found; using fallback version '0.0.0+unknown'.",
        RuntimeWarning,
        stacklevel=2,
    )
    __version__ = "0.0.0+unknown"

from waymark.application import Application, create_app  # noqa: E402
from waymark.config import Settings  # noqa: E402
from waymark.context import RequestContext, create_context  # noqa: E402
from waymark.errors import NotFoundError, not_found  # noqa: E402
from waymark.plugins import Plugin, PluginRegistry, compose_plugins, define_plugin  # noqa: E402

__all__ = [
    "__version__",
    "Application",
    "create_app",
    "Settings",
    "RequestContext",
    "create_context",
    "NotFoundError",
    "not_found",
    "Plugin",
    "PluginRegistry",
    "compose_plugins",
    "define_plugin",
]
