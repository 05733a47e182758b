"""Unit tests for waymark.context."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING

import pytest
from starlette.requests import Request
from starlette.responses import PlainTextResponse, Response, StreamingResponse

from waymark.context import (
    FALLBACK_URL,
    RequestContext,
    create_context,
    is_request_context,
    parse_cookie_header,
)
from waymark.models.cache import CacheOptions

if TYPE_CHECKING:
    from tests.conftest import RequestFactory


# ---------------------------------------------------------------------------
# Construction
# ---------------------------------------------------------------------------


class TestConstruction:
    def test_url_parsed_from_request(self, make_request: RequestFactory) -> None:
        ctx = create_context(make_request("/users/42", query_string=b"tab=posts"))
        assert ctx.url.path == "/users/42"
        assert ctx.url.query == "tab=posts"
        assert ctx.url.hostname == "testserver"

    def test_malformed_scope_falls_back_to_placeholder_url(self) -> None:
        scope = {"type": "http", "method": "GET", "headers": []}  # no path
        ctx = RequestContext(Request(scope))
        assert str(ctx.url) == FALLBACK_URL

    def test_env_is_a_snapshot(self, make_request: RequestFactory) -> None:
        source = {"API_URL": "https://api.example.com"}
        ctx = RequestContext(make_request(), env=source)
        source["API_URL"] = "changed"
        source["NEW"] = "1"
        assert ctx.env["API_URL"] == "https://api.example.com"
        assert "NEW" not in ctx.env

    def test_env_is_read_only(self, make_request: RequestFactory) -> None:
        ctx = RequestContext(make_request(), env={"A": "1"})
        with pytest.raises(TypeError):
            ctx.env["A"] = "2"  # type: ignore[index]

    def test_env_defaults_to_empty(self, make_request: RequestFactory) -> None:
        assert dict(RequestContext(make_request()).env) == {}

    def test_is_request_context(self, make_request: RequestFactory) -> None:
        assert is_request_context(create_context(make_request()))
        assert not is_request_context(object())


# ---------------------------------------------------------------------------
# Key/value store
# ---------------------------------------------------------------------------


class TestStore:
    def test_set_and_get(self, make_request: RequestFactory) -> None:
        ctx = create_context(make_request())
        ctx.set("user", {"id": 1})
        assert ctx.get("user") == {"id": 1}
        assert ctx.has("user")

    def test_missing_key(self, make_request: RequestFactory) -> None:
        ctx = create_context(make_request())
        assert ctx.get("missing") is None
        assert ctx.get("missing", "fallback") == "fallback"
        assert not ctx.has("missing")

    def test_delete_reports_presence(self, make_request: RequestFactory) -> None:
        ctx = create_context(make_request())
        ctx.set("k", None)
        assert ctx.delete("k") is True
        assert ctx.delete("k") is False
        assert not ctx.has("k")

    def test_contexts_do_not_share_state(self, make_request: RequestFactory) -> None:
        first = create_context(make_request())
        second = create_context(make_request())
        first.set("k", "v")
        first.cache.add_tags(["t"])
        first.response_headers["X-Test"] = "1"
        assert not second.has("k")
        assert second.cache.get_tags() == []
        assert "x-test" not in second.response_headers


# ---------------------------------------------------------------------------
# Cache policy
# ---------------------------------------------------------------------------


class TestCacheControl:
    def test_header_is_none_until_set(self, make_request: RequestFactory) -> None:
        ctx = create_context(make_request())
        assert ctx.build_cache_control_header() is None
        assert ctx.cache.get() is None

    def test_empty_options_yield_public(self, make_request: RequestFactory) -> None:
        ctx = create_context(make_request())
        ctx.cache.set({})
        assert ctx.build_cache_control_header() == "public"

    def test_max_age_zero_is_included(self, make_request: RequestFactory) -> None:
        ctx = create_context(make_request())
        ctx.cache.set(max_age=0)
        assert ctx.build_cache_control_header() == "public, max-age=0"

    def test_full_policy_order(self, make_request: RequestFactory) -> None:
        ctx = create_context(make_request())
        ctx.cache.set(CacheOptions(private=True, max_age=60, stale_while_revalidate=300))
        assert ctx.build_cache_control_header() == "private, max-age=60, stale-while-revalidate=300"

    def test_last_set_wins(self, make_request: RequestFactory) -> None:
        ctx = create_context(make_request())
        ctx.cache.set(max_age=60, private=True)
        ctx.cache.set(stale_while_revalidate=10)
        assert ctx.build_cache_control_header() == "public, stale-while-revalidate=10"
        assert ctx.cache.get() == CacheOptions(stale_while_revalidate=10)

    def test_tags_accumulate_without_duplicates(self, make_request: RequestFactory) -> None:
        ctx = create_context(make_request())
        ctx.cache.set(tags=["posts", "user:1"])
        ctx.cache.set(tags=["posts", "feed"])
        assert ctx.cache.get_tags() == ["posts", "user:1", "feed"]

    def test_set_without_tags_keeps_existing_tags(self, make_request: RequestFactory) -> None:
        ctx = create_context(make_request())
        ctx.cache.set(tags=["posts"])
        ctx.cache.set(max_age=5)
        assert ctx.cache.get_tags() == ["posts"]

    def test_add_tags_leaves_policy_alone(self, make_request: RequestFactory) -> None:
        ctx = create_context(make_request())
        ctx.cache.add_tags(["a", "a", "b"])
        assert ctx.cache.get_tags() == ["a", "b"]
        assert ctx.cache.get() is None
        assert ctx.build_cache_control_header() is None

    def test_options_and_fields_together_rejected(self, make_request: RequestFactory) -> None:
        ctx = create_context(make_request())
        with pytest.raises(TypeError):
            ctx.cache.set(CacheOptions(), max_age=1)


# ---------------------------------------------------------------------------
# Cookies
# ---------------------------------------------------------------------------


class TestCookieParsing:
    def test_well_formed_pairs(self) -> None:
        assert parse_cookie_header("a=1; b=two") == {"a": "1", "b": "two"}

    def test_values_are_percent_decoded(self) -> None:
        assert parse_cookie_header("greeting=hello%20world") == {"greeting": "hello world"}

    def test_pairs_without_equals_or_name_are_skipped(self) -> None:
        assert parse_cookie_header("flag; =orphan; ok=1") == {"ok": "1"}

    def test_value_may_contain_equals(self) -> None:
        assert parse_cookie_header("token=a=b=c") == {"token": "a=b=c"}

    def test_whitespace_trimmed(self) -> None:
        assert parse_cookie_header("  a = 1 ;b=2  ") == {"a": "1", "b": "2"}

    @pytest.mark.parametrize("raw", ["%E0%A4%A", "100%", "%zz", "%FF"])
    def test_malformed_encoding_kept_raw(self, raw: str) -> None:
        assert parse_cookie_header(f"bad={raw}; good=1") == {"bad": raw, "good": "1"}

    def test_empty_header(self) -> None:
        assert parse_cookie_header("") == {}


class TestCookieJar:
    def test_inbound_cookies_readable(self, make_request: RequestFactory) -> None:
        ctx = create_context(make_request(headers={"Cookie": "session=abc; theme=dark"}))
        assert ctx.cookies.get("session") == "abc"
        assert ctx.cookies.has("theme")
        assert not ctx.cookies.has("missing")
        assert ctx.cookies.get_all() == {"session": "abc", "theme": "dark"}

    def test_set_defaults(self, make_request: RequestFactory) -> None:
        ctx = create_context(make_request())
        ctx.cookies.set("session", "abc")
        assert ctx.cookies.pending() == ["session=abc; Path=/; HttpOnly"]

    def test_set_is_visible_to_later_reads(self, make_request: RequestFactory) -> None:
        ctx = create_context(make_request(headers={"Cookie": "session=old"}))
        ctx.cookies.set("session", "new")
        assert ctx.cookies.get("session") == "new"

    def test_set_all_options_in_order(self, make_request: RequestFactory) -> None:
        ctx = create_context(make_request())
        ctx.cookies.set(
            "session",
            "abc",
            max_age=3600,
            expires=datetime(2030, 1, 1, tzinfo=UTC),
            path="/app",
            domain="example.com",
            http_only=False,
            secure=True,
            same_site="Lax",
        )
        assert ctx.cookies.pending() == [
            "session=abc; Max-Age=3600; Expires=Tue, 01 Jan 2030 00:00:00 GMT; "
            "Path=/app; Domain=example.com; Secure; SameSite=Lax"
        ]

    def test_naive_expires_treated_as_utc(self, make_request: RequestFactory) -> None:
        ctx = create_context(make_request())
        ctx.cookies.set("a", "1", expires=datetime(2030, 1, 1, 12, 30))
        assert "Expires=Tue, 01 Jan 2030 12:30:00 GMT" in ctx.cookies.pending()[0]

    def test_name_and_value_are_uri_encoded(self, make_request: RequestFactory) -> None:
        ctx = create_context(make_request())
        ctx.cookies.set("my cookie", "a b;c/d")
        assert ctx.cookies.pending() == ["my%20cookie=a%20b%3Bc%2Fd; Path=/; HttpOnly"]

    def test_repeated_set_appends_directives(self, make_request: RequestFactory) -> None:
        ctx = create_context(make_request())
        ctx.cookies.set("n", "1")
        ctx.cookies.set("n", "2")
        assert ctx.cookies.pending() == ["n=1; Path=/; HttpOnly", "n=2; Path=/; HttpOnly"]

    def test_delete(self, make_request: RequestFactory) -> None:
        ctx = create_context(make_request(headers={"Cookie": "session=abc"}))
        ctx.cookies.delete("session")
        assert not ctx.cookies.has("session")
        assert ctx.cookies.pending() == ["session=; Max-Age=0; Path=/; HttpOnly"]

    def test_delete_with_overrides(self, make_request: RequestFactory) -> None:
        ctx = create_context(make_request())
        ctx.cookies.delete("session", path="/app", domain="example.com", http_only=False)
        assert ctx.cookies.pending() == ["session=; Max-Age=0; Path=/app; Domain=example.com"]


# ---------------------------------------------------------------------------
# apply_to_response
# ---------------------------------------------------------------------------


class TestApplyToResponse:
    def test_returns_new_response_with_same_status_and_body(
        self, make_request: RequestFactory
    ) -> None:
        ctx = create_context(make_request())
        original = PlainTextResponse("created", status_code=201)
        ctx.response_headers["X-Extra"] = "1"

        applied = ctx.apply_to_response(original)

        assert applied is not original
        assert applied.status_code == 201
        assert applied.body == b"created"
        assert applied.headers["x-extra"] == "1"
        assert "x-extra" not in original.headers

    def test_context_headers_overwrite_response_headers(self, make_request: RequestFactory) -> None:
        ctx = create_context(make_request())
        ctx.response_headers["X-Frame-Options"] = "DENY"
        applied = ctx.apply_to_response(Response(headers={"X-Frame-Options": "SAMEORIGIN"}))
        assert applied.headers.getlist("x-frame-options") == ["DENY"]

    def test_multi_valued_context_header_joined(self, make_request: RequestFactory) -> None:
        ctx = create_context(make_request())
        ctx.response_headers.append("Vary", "Accept")
        ctx.response_headers.append("Vary", "Cookie")
        applied = ctx.apply_to_response(Response())
        assert applied.headers["vary"] == "Accept, Cookie"

    def test_cache_control_added_when_absent(self, make_request: RequestFactory) -> None:
        ctx = create_context(make_request())
        ctx.cache.set(max_age=60)
        applied = ctx.apply_to_response(Response())
        assert applied.headers["cache-control"] == "public, max-age=60"

    def test_cache_control_never_overwritten(self, make_request: RequestFactory) -> None:
        ctx = create_context(make_request())
        ctx.cache.set(max_age=60, tags=["posts"])
        applied = ctx.apply_to_response(
            Response(headers={"Cache-Control": "no-store", "X-Cache-Tags": "mine"})
        )
        assert applied.headers["cache-control"] == "no-store"
        assert applied.headers["x-cache-tags"] == "mine"

    def test_no_cache_headers_without_policy(self, make_request: RequestFactory) -> None:
        applied = create_context(make_request()).apply_to_response(Response())
        assert "cache-control" not in applied.headers
        assert "x-cache-tags" not in applied.headers

    def test_cache_tags_header(self, make_request: RequestFactory) -> None:
        ctx = create_context(make_request())
        ctx.cache.add_tags(["posts", "user:1"])
        applied = ctx.apply_to_response(Response())
        assert applied.headers["x-cache-tags"] == "posts,user:1"
        # Tags alone do not create a policy
        assert "cache-control" not in applied.headers

    def test_set_cookie_always_appended(self, make_request: RequestFactory) -> None:
        ctx = create_context(make_request())
        ctx.cookies.set("b", "2")
        applied = ctx.apply_to_response(Response(headers={"Set-Cookie": "a=1"}))
        assert applied.headers.getlist("set-cookie") == ["a=1", "b=2; Path=/; HttpOnly"]

    def test_streaming_body_preserved(self, make_request: RequestFactory) -> None:
        async def chunks():
            yield b"part"

        original = StreamingResponse(chunks(), status_code=202)
        applied = create_context(make_request()).apply_to_response(original)
        assert isinstance(applied, StreamingResponse)
        assert applied.body_iterator is original.body_iterator
        assert applied.status_code == 202
