"""
HTTPS transport replaying the captured Roarand token against portal endpoints.

The browser collaborator logs in and captures the token; this client then
talks to the portal's internal JSON endpoints directly with httpx, sending
the browser's cookies, the same ``X-Requested-With`` / ``X-Timezone-Offset``
headers the web UI sends, the current token in a ``Roarand`` header, and a
``_=<epoch ms>`` cache-buster on every call.

Replies are only accepted when they are HTTP 200 with a JSON object body.
401/403 or an HTML body (the login page served after expiry) raise
:class:`~harvester.src.errors.SessionInvalidError`; anything else raises
:class:`~harvester.src.errors.PortalResponseError`.

CHANGELOG:
- 2026-03-10: Report malformed children-list and station blocks as PortalResponseError
- 2026-03-06: Add station KPI and social-contribution endpoints (STORY-110)
- 2026-03-03: Initial creation (STORY-106)

TODO:
- None
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any

import httpx
from pydantic import ValidationError

from harvester.src.errors import PortalResponseError, SessionInvalidError
from harvester.src.models import ChildDevice, FetchMode, SocialContribution, StationKPI
from harvester.src.session import SessionManager
from harvester.src.signals import (
    CHILD_DEVICE_MOC_TYPES,
    GATEWAY_DETAIL_SIGNAL_IDS,
    ORG_TREE_TYPE_IDS,
    STRING_KPI_SIGNAL_IDS,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Endpoint paths (relative to the portal base URL)
# ---------------------------------------------------------------------------

STATION_KPI_PATH = "/rest/pvms/web/station/v1/overview/station-kpi-data"
SOCIAL_CONTRIBUTION_PATH = "/rest/pvms/web/station/v1/station/social-contribution"
ORG_TREE_PATH = "/rest/dp/pvms/organization/v1/tree"
REALTIME_PATH = "/rest/pvms/web/device/v1/device-realtime-data"
REAL_KPI_PATH = "/rest/pvms/web/device/v1/device-real-kpi"
CONFIG_SIGNAL_PATH = "/rest/neteco/web/config/device/v1/config/query-moc-config-signal"
CHILDREN_LIST_PATH = "/rest/neteco/web/config/device/v1/children-list"

PROBE_STATION_DN = "NE=00000000"
"""Station DN used by the session probe; any DN works, only auth is checked."""

_PROBE_BODY_CHARS = 50
_ORG_TREE_PAGE_SIZE = 100
_CHILDREN_PAGE_SIZE = 500

Params = list[tuple[str, str]]


def _cache_buster() -> tuple[str, str]:
    return ("_", str(int(time.time() * 1000)))


class PortalClient:
    """Token-replaying client for the portal's internal JSON API.

    Args:
        base_url: Portal base URL. Must start with ``https://``.
        session: The :class:`SessionManager` holding the Roarand token.
        timeout_s: Per-request timeout in seconds.
        timezone_offset_min: Value of the ``X-Timezone-Offset`` header.
        client: Optional pre-built ``httpx.AsyncClient`` (tests inject one
            with a ``MockTransport``).

    Raises:
        ValueError: If *base_url* does not start with ``https://``.
    """

    def __init__(
        self,
        base_url: str,
        session: SessionManager,
        *,
        timeout_s: float = 15.0,
        timezone_offset_min: int = 420,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        if not base_url.lower().startswith("https://"):
            raise ValueError(f"Portal base URL must use HTTPS (got: '{base_url}')")
        self._base_url = base_url.rstrip("/")
        self._session = session
        self._timezone_offset_min = timezone_offset_min
        self._client = client or httpx.AsyncClient(
            base_url=self._base_url,
            timeout=timeout_s,
            verify=True,
        )

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    async def __aenter__(self) -> PortalClient:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        await self.aclose()

    def set_cookies(self, cookies: list[dict[str, Any]]) -> None:
        """Replace the client's cookies with those exported by the browser.

        Args:
            cookies: Playwright-style cookie dicts (``name``, ``value``,
                ``domain``, ``path``).
        """
        self._client.cookies.clear()
        for cookie in cookies:
            self._client.cookies.set(
                cookie["name"],
                cookie["value"],
                domain=cookie.get("domain", ""),
                path=cookie.get("path", "/"),
            )
        logger.debug("Loaded %d browser cookies into transport", len(cookies))

    # ------------------------------------------------------------------
    # Session probe
    # ------------------------------------------------------------------

    async def probe(self, token: str) -> tuple[int, str]:
        """Issue the lightweight authenticated probe used by ``is_valid``.

        Returns:
            ``(status_code, first 50 characters of the body, stripped)``.
        """
        response = await self._client.get(
            STATION_KPI_PATH,
            params=[("stationDn", PROBE_STATION_DN), _cache_buster()],
            headers=self._headers(token),
        )
        return response.status_code, response.text[:_PROBE_BODY_CHARS].strip()

    # ------------------------------------------------------------------
    # Topology
    # ------------------------------------------------------------------

    async def fetch_org_tree(self, parent_dn: str) -> dict[str, Any]:
        """Return the organization subtree below *parent_dn* (site or gateway)."""
        payload = {
            "parentDn": parent_dn,
            "treeDepth": "device",
            "pageParam": {"pageId": 1, "pageSize": _ORG_TREE_PAGE_SIZE, "needPage": True},
            "displayCond": {"self": True, "status": True},
            "filterCond": {
                "nameType": "device",
                "mocIdInclude": [],
                "typeIdInclude": list(ORG_TREE_TYPE_IDS),
            },
        }
        return await self._request("POST", ORG_TREE_PATH, json_body=payload)

    async def fetch_children(self, parent_dn: str) -> list[ChildDevice]:
        """Return the secondary devices (with static params) behind a gateway."""
        params: Params = [
            ("conditionParams.curPage", "0"),
            ("conditionParams.recordperpage", str(_CHILDREN_PAGE_SIZE)),
            ("conditionParams.parentDn", parent_dn),
            ("conditionParams.monitoringRelation", "true"),
            ("conditionParams.mocTypes", ",".join(str(t) for t in CHILD_DEVICE_MOC_TYPES)),
        ]
        data = await self._request("GET", CHILDREN_LIST_PATH, params=params)
        items = data.get("data")
        if not isinstance(items, list):
            return []
        try:
            return [ChildDevice.model_validate(item) for item in items if isinstance(item, dict)]
        except ValidationError as exc:
            raise PortalResponseError(f"malformed children-list for {parent_dn}: {exc}") from exc

    # ------------------------------------------------------------------
    # Per-device signals
    # ------------------------------------------------------------------

    async def fetch_realtime(
        self, device_dn: str, *, display_access_model: bool = False
    ) -> dict[str, Any]:
        """Return the raw realtime signal payload of one device."""
        params: Params = [("deviceDn", device_dn)]
        if display_access_model:
            params.append(("displayAccessModel", "true"))
        return await self._request("GET", REALTIME_PATH, params=params)

    async def fetch_string_kpi(self, device_dn: str) -> dict[str, Any]:
        """Return the raw PV string / MPPT signal payload of one inverter."""
        params: Params = [("signalIds", str(s)) for s in STRING_KPI_SIGNAL_IDS]
        params.append(("deviceDn", device_dn))
        return await self._request("GET", REAL_KPI_PATH, params=params)

    async def fetch_config_signals(self, device_dn: str) -> dict[str, Any]:
        """Return the static config signals (SN, model, IP, ...) of a gateway."""
        params: Params = [
            ("dn", device_dn),
            ("signals", ",".join(str(s) for s in GATEWAY_DETAIL_SIGNAL_IDS)),
        ]
        return await self._request("GET", CONFIG_SIGNAL_PATH, params=params)

    async def fetch_device(self, device_dn: str, mode: FetchMode) -> dict[str, Any]:
        """Fetch one device payload from the endpoint selected by *mode*."""
        if mode is FetchMode.STRING_KPI:
            return await self.fetch_string_kpi(device_dn)
        return await self.fetch_realtime(
            device_dn, display_access_model=mode is FetchMode.REALTIME_DISPLAY
        )

    # ------------------------------------------------------------------
    # Station
    # ------------------------------------------------------------------

    async def fetch_station_kpi(self, station_dn: str) -> StationKPI:
        """Return the station KPI block (energy, power, income)."""
        data = await self._request(
            "GET", STATION_KPI_PATH, params=[("stationDn", station_dn)]
        )
        kpi = data.get("kpiData")
        if not isinstance(kpi, dict):
            raise PortalResponseError(f"station KPI for {station_dn} has no kpiData")
        try:
            return StationKPI.model_validate(kpi)
        except ValidationError as exc:
            raise PortalResponseError(f"malformed kpiData for {station_dn}: {exc}") from exc

    async def fetch_social_contribution(self, station_dn: str) -> SocialContribution:
        """Return the station's environmental contribution block."""
        params: Params = [
            ("dn", station_dn),
            ("clientTime", str(int(time.time() * 1000))),
            ("timeZone", str(self._timezone_offset_min // 60)),
        ]
        data = await self._request("GET", SOCIAL_CONTRIBUTION_PATH, params=params)
        if not data.get("success"):
            raise PortalResponseError(f"social contribution for {station_dn}: success=false")
        block = data.get("data")
        try:
            return SocialContribution.model_validate(block if isinstance(block, dict) else {})
        except ValidationError as exc:
            raise PortalResponseError(
                f"malformed social contribution for {station_dn}: {exc}"
            ) from exc

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _headers(self, token: str) -> dict[str, str]:
        return {
            "Accept": "application/json",
            "X-Requested-With": "XMLHttpRequest",
            "X-Timezone-Offset": str(self._timezone_offset_min),
            "Roarand": token,
        }

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Params | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        token = self._session.get()
        if not token:
            raise SessionInvalidError("No Roarand token available")

        query = list(params or [])
        query.append(_cache_buster())
        try:
            response = await self._client.request(
                method,
                path,
                params=query,
                json=json_body,
                headers=self._headers(token),
            )
        except httpx.HTTPError as exc:
            raise PortalResponseError(f"{method} {path} failed: {exc}") from exc

        return _decode(response, path)


def _decode(response: httpx.Response, path: str) -> dict[str, Any]:
    """Validate a portal reply and return its JSON object body."""
    status = response.status_code
    if status in (401, 403):
        raise SessionInvalidError(f"{path} rejected the session (HTTP {status})")
    if status != 200:
        raise PortalResponseError(f"{path} returned HTTP {status}", status=status)

    body = response.text.lstrip()
    if body.startswith("<"):
        raise SessionInvalidError(f"{path} returned HTML instead of JSON")
    if not body.startswith("{"):
        raise PortalResponseError(
            f"{path} returned a non-object body starting with {body[:20]!r}", status=status
        )
    try:
        data = json.loads(body)
    except json.JSONDecodeError as exc:
        raise PortalResponseError(f"{path} returned invalid JSON: {exc}", status=status) from exc
    return data
