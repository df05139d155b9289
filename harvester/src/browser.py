"""
Headless browser collaborator: portal login and passive token capture.

The portal issues its ``Roarand`` session token only to its own web UI, so
a real Chromium page (Playwright async API) logs in and every request and
response it makes is observed. Any ``roarand`` header seen is handed to
:meth:`SessionManager.capture`; successful ``locate-tree`` responses (the
UI's own topology call) are kept as in-flight hints so their bodies can be
recovered later as a topology fallback.

Playwright event handlers run on the event loop thread as plain callbacks;
they only touch the SessionManager, whose lock never spans an await.

CHANGELOG:
- 2026-03-05: Reload once if no token after 20 s; read storage fallbacks
- 2026-03-03: Initial creation (STORY-106)

TODO:
- None
"""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
from collections.abc import Callable, Mapping
from typing import Any

from playwright.async_api import (
    Browser,
    BrowserContext,
    Page,
    Playwright,
    Request,
    Response,
    async_playwright,
)
from playwright.async_api import Error as PlaywrightError

from harvester.src.session import SessionManager

logger = logging.getLogger(__name__)

TOKEN_HEADER = "roarand"
LOCATE_TREE_MARKER = "locate-tree"

USERNAME_SELECTOR = "#username"
PASSWORD_SELECTOR = "#value"

LOGIN_FORM_TIMEOUT_MS = 30_000
LOGIN_REDIRECT_TIMEOUT_MS = 30_000

_EXTRACT_TOKEN_JS = """() => {
    if (window.roarand) return String(window.roarand);
    for (const part of document.cookie.split(';')) {
        const cookie = part.trim();
        if (cookie.toLowerCase().startsWith('roarand=')) return cookie.substring(8);
    }
    return localStorage.getItem('roarand') || sessionStorage.getItem('roarand') || '';
}"""


def _find_token(headers: Mapping[str, str]) -> str:
    for key, value in headers.items():
        if key.lower() == TOKEN_HEADER and value:
            return value
    return ""


class PortalBrowser:
    """Playwright-driven login collaborator and passive capture listener.

    Args:
        session: SessionManager receiving captured tokens and hints.
        login_url: Page that shows the portal login form.
        headless: Launch Chromium without a window.
        playwright_factory: Returns a Playwright context manager
            (``async_playwright`` by default; tests inject a fake).
    """

    def __init__(
        self,
        session: SessionManager,
        *,
        login_url: str,
        headless: bool = True,
        playwright_factory: Callable[[], Any] = async_playwright,
    ) -> None:
        self._session = session
        self._login_url = login_url
        self._headless = headless
        self._playwright_factory = playwright_factory
        self._playwright: Playwright | None = None
        self._browser: Browser | None = None
        self._context: BrowserContext | None = None
        self._page: Page | None = None
        self._hint_responses: dict[str, Response] = {}
        self._hint_counter = itertools.count(1)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Launch Chromium, open a page and attach the traffic listeners."""
        self._playwright = await self._playwright_factory().start()
        self._browser = await self._playwright.chromium.launch(headless=self._headless)
        self._context = await self._browser.new_context()
        self._page = await self._context.new_page()
        self._page.on("request", self._on_request)
        self._page.on("response", self._on_response)
        logger.info("Browser started (headless=%s)", self._headless)

    async def close(self) -> None:
        """Close the page, browser and Playwright driver."""
        if self._context is not None:
            await self._context.close()
            self._context = None
        if self._browser is not None:
            await self._browser.close()
            self._browser = None
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None
        self._page = None

    async def __aenter__(self) -> PortalBrowser:
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        await self.close()

    def _require_page(self) -> Page:
        if self._page is None:
            raise RuntimeError("Browser not started. Call start() or use async with.")
        return self._page

    # ------------------------------------------------------------------
    # Passive capture
    # ------------------------------------------------------------------

    def _on_request(self, request: Request) -> None:
        token = _find_token(request.headers)
        if token:
            self._session.capture(token)

    def _on_response(self, response: Response) -> None:
        token = _find_token(response.headers)
        if token:
            self._session.capture(token)
        if LOCATE_TREE_MARKER in response.url and response.status == 200:
            hint = f"{LOCATE_TREE_MARKER}#{next(self._hint_counter)}"
            self._hint_responses[hint] = response
            self._session.add_hint(hint)

    # ------------------------------------------------------------------
    # Login and token
    # ------------------------------------------------------------------

    async def login(self, username: str, password: str) -> bool:
        """Fill the login form, submit it and wait to leave the login page.

        Returns:
            ``True`` once the page URL no longer contains ``login``.
        """
        page = self._require_page()
        self._hint_responses.clear()
        try:
            await page.goto(self._login_url, wait_until="domcontentloaded")
            await page.wait_for_selector(
                USERNAME_SELECTOR, state="visible", timeout=LOGIN_FORM_TIMEOUT_MS
            )
            await page.fill(USERNAME_SELECTOR, username)
            await page.fill(PASSWORD_SELECTOR, password)
            await page.press(PASSWORD_SELECTOR, "Enter")
            await page.wait_for_url(
                lambda url: "login" not in url.lower(), timeout=LOGIN_REDIRECT_TIMEOUT_MS
            )
        except PlaywrightError as exc:
            logger.warning("Portal login failed: %s", exc)
            return False
        logger.info("Portal login succeeded")
        return True

    async def _extract_token(self) -> str:
        try:
            value = await self._require_page().evaluate(_EXTRACT_TOKEN_JS)
        except PlaywrightError:
            logger.debug("Token extraction script failed", exc_info=True)
            return ""
        return value if isinstance(value, str) else ""

    async def wait_for_token(
        self,
        timeout_s: float = 60.0,
        *,
        reload_after_s: float = 20.0,
        poll_interval_s: float = 1.0,
    ) -> bool:
        """Wait until a token has been captured, trying page storage each tick.

        If no token arrived after *reload_after_s*, the page is reloaded
        once to trigger fresh authenticated traffic.

        Returns:
            ``True`` if the SessionManager holds a token before *timeout_s*.
        """
        loop = asyncio.get_running_loop()
        started = loop.time()
        reloaded = False
        while True:
            if self._session.get():
                return True
            extracted = await self._extract_token()
            if extracted:
                self._session.capture(extracted)
                if self._session.get():
                    logger.info("Session token read from page storage")
                    return True

            elapsed = loop.time() - started
            if elapsed >= timeout_s:
                logger.warning("No session token captured within %.0fs", timeout_s)
                return False
            if not reloaded and elapsed >= reload_after_s:
                logger.warning("No session token after %.0fs, reloading page", elapsed)
                try:
                    await self._require_page().reload(wait_until="domcontentloaded")
                except PlaywrightError as exc:
                    logger.warning("Page reload failed: %s", exc)
                reloaded = True
            await asyncio.sleep(poll_interval_s)

    # ------------------------------------------------------------------
    # Data recovery and cookies
    # ------------------------------------------------------------------

    async def recover_tree(self) -> dict[str, Any] | None:
        """Return the first hinted ``locate-tree`` body that parses as a JSON object."""
        for hint in self._session.hints():
            response = self._hint_responses.get(hint)
            if response is None:
                continue
            try:
                body = await response.text()
            except PlaywrightError:
                logger.debug("Body of %s no longer available", hint)
                continue
            if not body.lstrip().startswith("{"):
                continue
            try:
                tree = json.loads(body)
            except json.JSONDecodeError:
                continue
            logger.info("Recovered topology tree from %s (%d bytes)", hint, len(body))
            return tree
        return None

    async def cookies(self) -> list[dict[str, Any]]:
        """Export the browser context cookies for the HTTP transport."""
        if self._context is None:
            raise RuntimeError("Browser not started. Call start() or use async with.")
        return [dict(cookie) for cookie in await self._context.cookies()]
