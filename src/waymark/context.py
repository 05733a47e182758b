"""Request-scoped context.

One RequestContext is created per inbound request and threaded explicitly
through middleware and route handlers. It carries:
- a key/value store for passing data between middleware and handlers
- the cache policy and cache tags for the response
- the inbound cookies and the Set-Cookie directives to emit
- extra response headers, merged onto whatever response is produced

Nothing in here is shared between requests.
"""

from __future__ import annotations

import copy
import re
from collections.abc import Iterable, Mapping
from datetime import UTC, datetime
from email.utils import format_datetime
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Literal
from urllib.parse import quote, unquote

import structlog
from starlette.datastructures import URL, MutableHeaders

from waymark.models.cache import CacheOptions

if TYPE_CHECKING:
    from starlette.requests import Request
    from starlette.responses import Response

log = structlog.get_logger()

SameSite = Literal["Strict", "Lax", "None"]

FALLBACK_URL = "http://localhost/"

# Same unreserved set as JavaScript's encodeURIComponent (alphanumerics are implicit).
_URI_COMPONENT_SAFE = "-_.!~*'()"
_MALFORMED_ESCAPE = re.compile(r"%(?![0-9A-Fa-f]{2})")


def _encode_component(value: str) -> str:
    return quote(value, safe=_URI_COMPONENT_SAFE)


def _decode_component(value: str) -> str:
    """Percent-decode ``value``, or return it untouched if the encoding is malformed."""
    if _MALFORMED_ESCAPE.search(value):
        return value
    try:
        return unquote(value, errors="strict")
    except UnicodeDecodeError:
        return value


def _http_date(moment: datetime) -> str:
    # Naive datetimes are taken to be UTC.
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    return format_datetime(moment.astimezone(UTC), usegmt=True)


def parse_cookie_header(header: str) -> dict[str, str]:
    """Parse a Cookie header into a name → value dict.

    Pairs without ``=`` or with an empty name are skipped. A value with
    broken percent-encoding is kept raw instead of failing the whole parse.
    """
    cookies: dict[str, str] = {}
    for pair in header.split(";"):
        name, sep, value = pair.partition("=")
        if not sep:
            continue
        name = name.strip()
        if not name:
            continue
        cookies[name] = _decode_component(value.strip())
    return cookies


class CacheControl:
    """Cache policy for the current request.

    ``set`` replaces the policy (last write wins) while tags only ever
    accumulate, de-duplicated, in first-seen order.
    """

    def __init__(self) -> None:
        self._options: CacheOptions | None = None
        self._tags: list[str] = []

    def set(self, options: CacheOptions | Mapping[str, Any] | None = None, **fields: Any) -> None:
        if options is not None and fields:
            raise TypeError("pass either a CacheOptions object or keyword fields, not both")
        if options is None:
            options = CacheOptions(**fields)
        elif not isinstance(options, CacheOptions):
            options = CacheOptions.model_validate(options)

        self._options = options
        if options.tags is not None:
            self.add_tags(options.tags)

    def get(self) -> CacheOptions | None:
        return self._options

    def get_tags(self) -> list[str]:
        return list(self._tags)

    def add_tags(self, tags: Iterable[str]) -> None:
        for tag in tags:
            if tag not in self._tags:
                self._tags.append(tag)

    def header_value(self) -> str | None:
        if self._options is None:
            return None

        parts = ["private" if self._options.private else "public"]
        if self._options.max_age is not None:
            parts.append(f"max-age={self._options.max_age}")
        if self._options.stale_while_revalidate is not None:
            parts.append(f"stale-while-revalidate={self._options.stale_while_revalidate}")
        return ", ".join(parts)


class CookieJar:
    """Inbound cookies plus the Set-Cookie directives queued for the response.

    Writes update the in-memory view immediately, so later reads in the
    same request see them. Every write queues a new directive; repeated
    writes to one name produce several Set-Cookie headers and the client
    keeps the last.
    """

    def __init__(self, cookies: dict[str, str] | None = None) -> None:
        self._cookies: dict[str, str] = dict(cookies or {})
        self._pending: list[str] = []

    def get(self, name: str, default: str | None = None) -> str | None:
        return self._cookies.get(name, default)

    def has(self, name: str) -> bool:
        return name in self._cookies

    def get_all(self) -> dict[str, str]:
        return dict(self._cookies)

    def set(
        self,
        name: str,
        value: str,
        *,
        max_age: int | None = None,
        expires: datetime | None = None,
        path: str = "/",
        domain: str | None = None,
        http_only: bool = True,
        secure: bool = False,
        same_site: SameSite | None = None,
    ) -> None:
        self._cookies[name] = value

        parts = [f"{_encode_component(name)}={_encode_component(value)}"]
        if max_age is not None:
            parts.append(f"Max-Age={max_age}")
        if expires is not None:
            parts.append(f"Expires={_http_date(expires)}")
        parts.append(f"Path={path}")
        if domain:
            parts.append(f"Domain={domain}")
        if http_only:
            parts.append("HttpOnly")
        if secure:
            parts.append("Secure")
        if same_site:
            parts.append(f"SameSite={same_site}")
        self._pending.append("; ".join(parts))

    def delete(
        self,
        name: str,
        *,
        path: str = "/",
        domain: str | None = None,
        http_only: bool = True,
    ) -> None:
        self._cookies.pop(name, None)

        parts = [f"{_encode_component(name)}=", "Max-Age=0", f"Path={path}"]
        if domain:
            parts.append(f"Domain={domain}")
        if http_only:
            parts.append("HttpOnly")
        self._pending.append("; ".join(parts))

    def pending(self) -> list[str]:
        """Set-Cookie directives queued so far, in call order."""
        return list(self._pending)


class RequestContext:
    """Per-request state shared by middleware and route handlers."""

    def __init__(self, request: Request, env: Mapping[str, str] | None = None) -> None:
        try:
            self.url = URL(str(request.url))
        except (KeyError, TypeError, ValueError):
            # Malformed scope from a misconfigured proxy or test harness
            log.debug("context_url_fallback", fallback=FALLBACK_URL, exc_info=True)
            self.url = URL(FALLBACK_URL)

        # Snapshot: later changes to the source mapping are not visible.
        self.env: Mapping[str, str] = MappingProxyType(dict(env or {}))
        self.response_headers = MutableHeaders()
        self.cache = CacheControl()
        self.cookies = CookieJar(parse_cookie_header(request.headers.get("cookie", "")))
        self._store: dict[str, Any] = {}

    # -- key/value store -----------------------------------------------------

    def get(self, key: str, default: Any = None) -> Any:
        return self._store.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self._store[key] = value

    def has(self, key: str) -> bool:
        return key in self._store

    def delete(self, key: str) -> bool:
        """Remove ``key``; return whether it was present."""
        if key not in self._store:
            return False
        del self._store[key]
        return True

    # -- response policy -----------------------------------------------------

    def build_cache_control_header(self) -> str | None:
        """Cache-Control value for the current policy, or None if none was set."""
        return self.cache.header_value()

    def apply_to_response(self, response: Response) -> Response:
        """Return a copy of ``response`` with this context's headers applied.

        - context response headers overwrite same-named response headers
        - Cache-Control and X-Cache-Tags are only added when absent
        - queued Set-Cookie directives are always appended

        Status, body (or body iterator) and background task are untouched.
        """
        applied = copy.copy(response)
        applied.raw_headers = list(response.raw_headers)
        # Response.headers caches a view over raw_headers; drop the copied one.
        vars(applied).pop("_headers", None)
        headers = applied.headers

        for key in dict.fromkeys(self.response_headers.keys()):
            values = self.response_headers.getlist(key)
            if key == "set-cookie":
                for value in values:
                    headers.append(key, value)
            else:
                headers[key] = ", ".join(values)

        cache_control = self.build_cache_control_header()
        if cache_control is not None and "cache-control" not in headers:
            headers["Cache-Control"] = cache_control

        tags = self.cache.get_tags()
        if tags and "x-cache-tags" not in headers:
            headers["X-Cache-Tags"] = ",".join(tags)

        for directive in self.cookies.pending():
            headers.append("Set-Cookie", directive)

        return applied


def create_context(request: Request, env: Mapping[str, str] | None = None) -> RequestContext:
    """Create an isolated context for ``request``."""
    return RequestContext(request, env)


def is_request_context(value: object) -> bool:
    return isinstance(value, RequestContext)
