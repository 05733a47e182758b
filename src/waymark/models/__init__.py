from __future__ import annotations

from waymark.models.cache import CacheOptions
from waymark.models.routing import Route, RouteArgs, RouteMatch, RouteModule

__all__ = [
    # cache
    "CacheOptions",
    # routing
    "Route",
    "RouteArgs",
    "RouteMatch",
    "RouteModule",
]
