"""
Unit tests for the session token owner (SessionManager).

Tests verify:
- capture() is first-writer-wins and ignores empty values.
- invalidate() clears the token and the in-flight hints.
- is_valid() rejects empty tokens, 401/403, HTML bodies and non-JSON bodies.
- is_valid() treats a failing probe as invalid and never mutates the token.
- Concurrent captures from many threads store exactly one token.
- Tokens are never logged in clear.

CHANGELOG:
- 2026-03-02: Initial creation (STORY-105)

TODO:
- None
"""

from __future__ import annotations

import logging
import threading
from unittest.mock import AsyncMock

import httpx
import pytest
from harvester.src.session import SessionManager, masked_token, probe_reply_is_valid


class TestCapture:
    """capture() stores the first token only."""

    def test_first_capture_stored(self) -> None:
        """An empty session accepts a captured token."""
        session = SessionManager()

        assert session.capture("tok-1") is True
        assert session.get() == "tok-1"

    def test_later_capture_ignored(self) -> None:
        """A second capture never overwrites the held token."""
        session = SessionManager()
        session.capture("tok-1")

        assert session.capture("tok-2") is False
        assert session.get() == "tok-1"

    @pytest.mark.parametrize("value", ["", "   ", None])
    def test_empty_values_ignored(self, value: str | None) -> None:
        """Blank or missing header values are not tokens."""
        session = SessionManager()

        assert session.capture(value) is False
        assert session.get() == ""

    def test_capture_after_invalidate_accepted(self) -> None:
        """After invalidation a fresh capture is stored again."""
        session = SessionManager()
        session.capture("old")
        session.invalidate()

        assert session.capture("new") is True
        assert session.get() == "new"

    def test_concurrent_captures_store_exactly_one(self) -> None:
        """Many threads racing to capture leave exactly one winner."""
        session = SessionManager()
        results: list[bool] = []
        results_lock = threading.Lock()
        start = threading.Barrier(16)

        def worker(n: int) -> None:
            start.wait()
            stored = session.capture(f"tok-{n}")
            with results_lock:
                results.append(stored)

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(16)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count(True) == 1
        assert session.get().startswith("tok-")

    def test_token_not_logged_in_clear(self, caplog: pytest.LogCaptureFixture) -> None:
        """Only a fingerprint of the token reaches the logs."""
        session = SessionManager()
        with caplog.at_level(logging.DEBUG):
            session.capture("very-secret-token-value")

        assert "very-secret-token-value" not in caplog.text
        assert masked_token("very-secret-token-value") in caplog.text


class TestInvalidate:
    """invalidate() clears token and hints together."""

    def test_clears_token_and_hints(self) -> None:
        """Both the token and all hints are gone afterwards."""
        session = SessionManager()
        session.capture("tok")
        session.add_hint("locate-tree#1")

        session.invalidate()

        assert session.get() == ""
        assert session.hints() == []

    def test_invalidate_on_empty_session_is_noop(self) -> None:
        """Invalidating without a token does not fail."""
        session = SessionManager()
        session.invalidate()
        assert session.get() == ""


class TestHints:
    """In-flight hints are recorded once, in order."""

    def test_hints_deduplicated_and_ordered(self) -> None:
        """Repeated hints are stored once; order is preserved."""
        session = SessionManager()
        for hint in ("a", "b", "a", "", "c"):
            session.add_hint(hint)

        assert session.hints() == ["a", "b", "c"]

    def test_hints_returns_snapshot(self) -> None:
        """Mutating the returned list does not affect the session."""
        session = SessionManager()
        session.add_hint("a")
        session.hints().append("b")

        assert session.hints() == ["a"]


class TestProbeReply:
    """probe_reply_is_valid() decides on status and body head."""

    @pytest.mark.parametrize(
        ("status", "body", "expected"),
        [
            (200, '{"success": true}', True),
            (200, '[{"id": 1}]', True),
            (200, '  {"padded": 1}', True),
            (401, '{"error": "unauthorized"}', False),
            (403, '{"error": "forbidden"}', False),
            (200, "<!doctype html><html>", False),
            (200, "<!DOCTYPE html><html>", False),
            (200, "<html><head>", False),
            (200, "redirecting...", False),
            (200, "", False),
        ],
    )
    def test_reply_classification(self, status: int, body: str, expected: bool) -> None:
        """Only JSON-looking bodies without a rejection status are valid."""
        assert probe_reply_is_valid(status, body) is expected


class TestIsValid:
    """is_valid() probes the portal without touching the token."""

    @pytest.mark.asyncio
    async def test_empty_token_is_invalid_without_probe(self) -> None:
        """No token means invalid; the probe is never called."""
        session = SessionManager()
        probe = AsyncMock()

        assert await session.is_valid(probe) is False
        probe.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_json_reply_is_valid(self) -> None:
        """A 200 JSON reply confirms the session and passes the token to the probe."""
        session = SessionManager()
        session.capture("tok")
        probe = AsyncMock(return_value=(200, '{"data": {}}'))

        assert await session.is_valid(probe) is True
        probe.assert_awaited_once_with("tok")

    @pytest.mark.asyncio
    async def test_html_login_page_with_200_is_invalid(self) -> None:
        """HTTP 200 with a doctype body is an expired session."""
        session = SessionManager()
        session.capture("tok")
        probe = AsyncMock(return_value=(200, "<!doctype html>..."))

        assert await session.is_valid(probe) is False
        assert session.get() == "tok"

    @pytest.mark.asyncio
    async def test_401_is_invalid(self) -> None:
        """A 401 reply means the portal rejected the token."""
        session = SessionManager()
        session.capture("tok")

        assert await session.is_valid(AsyncMock(return_value=(401, ""))) is False

    @pytest.mark.asyncio
    async def test_probe_exception_is_invalid(self) -> None:
        """A network error during the probe counts as invalid."""
        session = SessionManager()
        session.capture("tok")
        probe = AsyncMock(side_effect=httpx.ConnectError("unreachable"))

        assert await session.is_valid(probe) is False
        assert session.get() == "tok"


class TestMaskedToken:
    """masked_token() never reveals the value."""

    def test_empty(self) -> None:
        """Empty and None render as 'empty'."""
        assert masked_token("") == "empty"
        assert masked_token(None) == "empty"

    def test_fingerprint_shape(self) -> None:
        """Length and a 10-char sha256 prefix are shown."""
        masked = masked_token("abcdef")
        assert masked.startswith("len=6 sha256=")
        assert len(masked.split("sha256=")[1]) == 10
        assert "abcdef" not in masked
