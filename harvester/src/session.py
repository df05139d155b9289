"""
Owner of the portal's ephemeral Roarand session token.

The token is captured passively from browser traffic (request or response
headers carrying ``Roarand``) and replayed by the transport on every API
call. It is the only state shared between the passive capture listener
and the harvest cycle, so every read and write goes through one exclusive
lock. Playwright event handlers are plain callbacks, so a
``threading.Lock`` is used: no critical section ever awaits.

Operations:
- capture(value): first-writer-wins; ignored while a token is held.
- add_hint(hint) / hints(): in-flight request identifiers kept as a
  data-recovery fallback.
- get(): current token or ``""``.
- is_valid(probe): probe a stable endpoint and inspect status + body head.
- invalidate(): clear token and hints atomically.

CHANGELOG:
- 2026-03-05: Treat non-JSON probe bodies as invalid, not only 401/403
- 2026-03-02: Initial creation (STORY-105)

TODO:
- None
"""

from __future__ import annotations

import hashlib
import logging
import threading
from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)

Probe = Callable[[str], Awaitable[tuple[int, str]]]
"""Async callable taking the token and returning ``(status, body_head)``."""

_REJECTED_STATUSES = frozenset({401, 403})


def masked_token(value: str | None) -> str:
    """Return a short non-reversible token fingerprint for diagnostics."""
    if not value:
        return "empty"
    digest = hashlib.sha256(value.encode("utf-8")).hexdigest()[:10]
    return f"len={len(value)} sha256={digest}"


def probe_reply_is_valid(status: int, body_head: str) -> bool:
    """Decide whether a probe reply proves the session is still alive.

    The portal does not reliably signal expiry with a status code: an
    expired session is often answered with ``200`` and the HTML login
    page. Only a JSON-looking body with an accepted status counts.
    """
    if status in _REJECTED_STATUSES:
        return False
    head = (body_head or "").strip()
    if head.startswith("<") or head.lower().startswith("<!doctype"):
        return False
    return head.startswith(("{", "["))


class SessionManager:
    """Thread-safe holder of the single usable Roarand token."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._token: str = ""
        self._hints: list[str] = []

    # ------------------------------------------------------------------
    # Token
    # ------------------------------------------------------------------

    def capture(self, value: str | None) -> bool:
        """Store *value* as the token if none is held yet.

        A late capture (possibly replaying a stale header) never overwrites
        a token that is already held; call :meth:`invalidate` first.

        Returns:
            ``True`` if the value was stored.
        """
        if not value or not value.strip():
            return False
        with self._lock:
            if self._token:
                return False
            self._token = value.strip()
            fingerprint = masked_token(self._token)
        logger.info("Captured session token (%s)", fingerprint)
        return True

    def get(self) -> str:
        """Return the current token, or ``""`` if none is held."""
        with self._lock:
            return self._token

    def invalidate(self) -> None:
        """Clear the token and all in-flight hints."""
        with self._lock:
            had_token = bool(self._token)
            self._token = ""
            self._hints = []
        if had_token:
            logger.info("Session token invalidated")

    async def is_valid(self, probe: Probe) -> bool:
        """Check the held token against the portal.

        The token is read under the lock; the probe request itself runs
        outside it so a slow portal never blocks passive capture.

        Args:
            probe: Async callable issuing the authenticated probe request.

        Returns:
            ``False`` when no token is held, the probe fails, the portal
            answers 401/403, or the body is not JSON (login page).
        """
        token = self.get()
        if not token:
            return False
        try:
            status, body_head = await probe(token)
        except Exception:
            logger.warning("Session probe failed", exc_info=True)
            return False
        valid = probe_reply_is_valid(status, body_head)
        if not valid:
            logger.warning(
                "Session probe rejected (status=%d, body=%r)", status, (body_head or "")[:20]
            )
        return valid

    # ------------------------------------------------------------------
    # In-flight hints
    # ------------------------------------------------------------------

    def add_hint(self, hint: str) -> None:
        """Remember an upstream request identifier for later recovery."""
        if not hint:
            return
        with self._lock:
            if hint not in self._hints:
                self._hints.append(hint)

    def hints(self) -> list[str]:
        """Return a snapshot of the recorded hints, oldest first."""
        with self._lock:
            return list(self._hints)
