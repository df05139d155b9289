"""
Harvester daemon main loop for the FusionSolar portal telemetry pipeline.

One long-lived asyncio worker repeats the harvest cycle:

1. **Ensure session**: probe the held Roarand token; when it is missing or
   rejected, invalidate it, log in through the headless browser, wait for
   the token to be captured, and copy the browser cookies to the HTTP
   transport. A failed login sleeps ``login_retry_s`` and retries.
2. **Discover** (all sites first): plant record from station KPI and
   social contribution, gateway topology, gateway records.
3. **Fetch + normalize** per category in paced chunks: inverters
   (realtime with display flag, then string KPI), meters, sensors.
4. **Emit**: records are appended to the local SQLite spool and the
   health file is rewritten.

Failures below the cycle level (one site, one chunk, one device) are
logged and skipped; an unexpected exception in a cycle is logged and the
loop continues. SIGTERM/SIGINT set a shared asyncio.Event that ends the
loop after the current step.

CHANGELOG:
- 2026-03-09: Optional per-string records for inverters
- 2026-03-08: Report unclassified devices in the cycle report
- 2026-03-07: Two-phase cycle (discover all sites, then fetch all)
- 2026-03-02: Initial creation (STORY-113)

TODO:
- None
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import signal
import sys
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from harvester.src.discovery import discover_topology
from harvester.src.errors import DiscoveryFailedError, HarvesterError, LoginFailedError
from harvester.src.fetcher import BatchFetcher
from harvester.src.models import (
    ClassifiedDevice,
    DeviceCategory,
    DeviceContext,
    FetchMode,
    NormalizedRecord,
    SiteConfig,
    SiteTopology,
)
from harvester.src.normalizer import (
    normalize,
    normalize_gateway,
    normalize_station,
    normalize_string_data,
)
from harvester.src.session import SessionManager, masked_token

if TYPE_CHECKING:
    from harvester.src.browser import PortalBrowser
    from harvester.src.config import HarvesterSettings
    from harvester.src.health import HealthWriter
    from harvester.src.signals import SignalTables
    from harvester.src.spool import Spool
    from harvester.src.transport import PortalClient

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Structured JSON logging setup
# ---------------------------------------------------------------------------


def configure_logging(level: int = logging.INFO) -> None:
    """Configure structured JSON logging on the root logger (stderr)."""

    class _JsonFormatter(logging.Formatter):
        """Minimal JSON log formatter."""

        def format(self, record: logging.LogRecord) -> str:
            log_entry = {
                "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
                "level": record.levelname,
                "logger": record.name,
                "msg": record.getMessage(),
            }
            if record.exc_info and record.exc_info[1] is not None:
                log_entry["exception"] = self.formatException(record.exc_info)
            return json.dumps(log_entry)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(_JsonFormatter())
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)


def log_config_summary(settings: HarvesterSettings) -> None:
    """Log a config summary at startup; the password is only fingerprinted."""
    logger.info(
        "Harvester starting with config: "
        "portal_base_url=%s, portal_login_url=%s, portal_username=%s, "
        "sites=%s, signals_path=%s, cycle_interval_s=%s, login_retry_s=%s, "
        "token_wait_s=%s, inverter_batch_size=%s, meter_batch_size=%s, "
        "jitter_ms=%s-%s, chunk_timeout_s=%s, spool_path=%s, health_path=%s, "
        "headless=%s, emit_string_records=%s, password_masked=%s",
        settings.portal_base_url,
        settings.portal_login_url,
        settings.portal_username,
        [site.id for site in settings.sites],
        settings.signals_path,
        settings.cycle_interval_s,
        settings.login_retry_s,
        settings.token_wait_s,
        settings.inverter_batch_size,
        settings.meter_batch_size,
        settings.jitter_min_ms,
        settings.jitter_max_ms,
        settings.chunk_timeout_s,
        settings.spool_path,
        settings.health_path,
        settings.headless,
        settings.emit_string_records,
        masked_token(settings.portal_password),
    )


# ---------------------------------------------------------------------------
# Cycle report
# ---------------------------------------------------------------------------


@dataclass
class CycleReport:
    """Summary of one harvest cycle."""

    records: list[NormalizedRecord] = field(default_factory=list)
    records_emitted: int = 0
    sites_failed: list[str] = field(default_factory=list)
    devices_failed: list[str] = field(default_factory=list)
    chunks_timed_out: int = 0
    unclassified: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Harvester
# ---------------------------------------------------------------------------


@dataclass
class Harvester:
    """Wires session, browser, transport, fetcher and sinks into the cycle."""

    settings: HarvesterSettings
    session: SessionManager
    browser: PortalBrowser
    client: PortalClient
    fetcher: BatchFetcher
    tables: SignalTables
    spool: Spool | None = None
    health: HealthWriter | None = None
    recovered_tree: dict[str, Any] | None = None

    # ------------------------------------------------------------------
    # Session
    # ------------------------------------------------------------------

    async def _login(self) -> None:
        """Log in once and wait for the token.

        Raises:
            LoginFailedError: If the form login or the token capture failed.
        """
        self.session.invalidate()
        if not await self.browser.login(
            self.settings.portal_username, self.settings.portal_password
        ):
            raise LoginFailedError("login page was not left after submitting credentials")
        if not await self.browser.wait_for_token(float(self.settings.token_wait_s)):
            raise LoginFailedError("no session token captured after login")

        self.client.set_cookies(await self.browser.cookies())
        self.recovered_tree = await self.browser.recover_tree()
        if self.health is not None:
            self.health.record_login()
        logger.info("Session acquired (%s)", masked_token(self.session.get()))

    async def ensure_session(self, shutdown_event: asyncio.Event) -> bool:
        """Return once a validated token is held.

        Retries the login step every ``login_retry_s`` until it succeeds.

        Returns:
            ``True`` when a session is ready, ``False`` if shutdown was
            requested first.
        """
        if await self.session.is_valid(self.client.probe):
            return True

        logger.info("No valid session, logging in")
        while not shutdown_event.is_set():
            try:
                await self._login()
                return True
            except LoginFailedError as exc:
                logger.error(
                    "Login failed: %s; retrying in %ss", exc, self.settings.login_retry_s
                )
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(
                    shutdown_event.wait(), timeout=self.settings.login_retry_s
                )
        return False

    # ------------------------------------------------------------------
    # Phase 1: discovery
    # ------------------------------------------------------------------

    async def _station_record(self, site: SiteConfig, ts: datetime) -> NormalizedRecord | None:
        kpi = social = None
        try:
            kpi = await self.client.fetch_station_kpi(site.id)
        except HarvesterError as exc:
            logger.warning("Station KPI unavailable for %s: %s", site.name, exc)
        try:
            social = await self.client.fetch_social_contribution(site.id)
        except HarvesterError as exc:
            logger.warning("Social contribution unavailable for %s: %s", site.name, exc)
        if kpi is None and social is None:
            return None
        return normalize_station(site, ts, kpi=kpi, social=social)

    async def _gateway_records(
        self, topology: SiteTopology, ts: datetime
    ) -> list[NormalizedRecord]:
        records: list[NormalizedRecord] = []
        for gateway in topology.gateways:
            try:
                detail = await self.client.fetch_config_signals(gateway.element_dn)
            except HarvesterError as exc:
                logger.warning("Gateway detail unavailable for %s: %s", gateway.node_name, exc)
                continue
            ctx = DeviceContext(
                name=gateway.node_name,
                dn=gateway.element_dn,
                site_name=topology.site.name,
                site_dn=topology.site.id,
            )
            records.append(
                normalize_gateway(
                    detail,
                    ctx,
                    self.tables,
                    ts,
                    children=topology.children_by_gateway.get(gateway.element_dn),
                )
            )
        return records

    # ------------------------------------------------------------------
    # Phase 2: fetch + normalize
    # ------------------------------------------------------------------

    async def _harvest_inverters(
        self, devices: list[ClassifiedDevice], ts: datetime, report: CycleReport
    ) -> list[NormalizedRecord]:
        if not devices:
            return []
        ids = [d.dn for d in devices]
        realtime = await self.fetcher.fetch_batch(
            ids, DeviceCategory.INVERTER, FetchMode.REALTIME_DISPLAY
        )
        report.chunks_timed_out += len(realtime.timed_out_chunks)
        realtime_payloads = realtime.payloads()

        strings = await self.fetcher.fetch_batch(
            [dn for dn in ids if dn in realtime_payloads],
            DeviceCategory.INVERTER,
            FetchMode.STRING_KPI,
        )
        report.chunks_timed_out += len(strings.timed_out_chunks)
        string_payloads = strings.payloads()

        records: list[NormalizedRecord] = []
        for device in devices:
            payload = realtime_payloads.get(device.dn)
            if payload is None:
                report.devices_failed.append(device.dn)
                continue
            string_kpi = string_payloads.get(device.dn)
            records.append(
                normalize(
                    payload,
                    device.context(),
                    DeviceCategory.INVERTER,
                    self.tables,
                    ts,
                    string_kpi=string_kpi,
                )
            )
            if self.settings.emit_string_records and string_kpi is not None:
                records.append(normalize_string_data(string_kpi, device.context(), ts))
        return records

    async def _harvest_category(
        self,
        devices: list[ClassifiedDevice],
        category: DeviceCategory,
        ts: datetime,
        report: CycleReport,
    ) -> list[NormalizedRecord]:
        if not devices:
            return []
        result = await self.fetcher.fetch_batch([d.dn for d in devices], category)
        report.chunks_timed_out += len(result.timed_out_chunks)
        payloads = result.payloads()

        records: list[NormalizedRecord] = []
        for device in devices:
            payload = payloads.get(device.dn)
            if payload is None:
                report.devices_failed.append(device.dn)
                continue
            records.append(normalize(payload, device.context(), category, self.tables, ts))
        return records

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    async def run_cycle(self) -> CycleReport:
        """Run one discover-all then fetch-all harvest cycle.

        Returns:
            The :class:`CycleReport`; its records have also been spooled.
        """
        report = CycleReport()
        ts = datetime.now(tz=UTC)

        topologies: list[SiteTopology] = []
        for site in self.settings.sites:
            station = await self._station_record(site, ts)
            if station is not None:
                report.records.append(station)
            try:
                topology = await discover_topology(
                    self.client, site, fallback_tree=self.recovered_tree
                )
            except DiscoveryFailedError as exc:
                logger.warning("%s; skipping site this cycle", exc)
                report.sites_failed.append(site.id)
                continue
            topologies.append(topology)
            report.records.extend(await self._gateway_records(topology, ts))

        by_dn: dict[str, ClassifiedDevice] = {}
        for topology in topologies:
            for device in topology.devices():
                by_dn.setdefault(device.dn, device)
        devices = list(by_dn.values())

        for device in devices:
            if device.category is DeviceCategory.UNCLASSIFIED:
                report.unclassified.append(device.name)
                logger.info(
                    "Unclassified device %r (%s, typeId=%d) at %s not fetched",
                    device.name,
                    device.dn,
                    device.node.type_id,
                    device.site.name,
                )

        def of(category: DeviceCategory) -> list[ClassifiedDevice]:
            return [d for d in devices if d.category is category]

        report.records.extend(
            await self._harvest_inverters(of(DeviceCategory.INVERTER), ts, report)
        )
        for category in (DeviceCategory.METER, DeviceCategory.SENSOR):
            report.records.extend(
                await self._harvest_category(of(category), category, ts, report)
            )

        if self.spool is not None:
            report.records_emitted = await self.spool.enqueue_many(report.records)
        else:
            report.records_emitted = len(report.records)

        logger.info(
            "Cycle complete: records=%d, sites_failed=%d, devices_failed=%d, "
            "chunks_timed_out=%d, unclassified=%d",
            report.records_emitted,
            len(report.sites_failed),
            len(report.devices_failed),
            report.chunks_timed_out,
            len(report.unclassified),
        )
        return report

    async def _after_cycle(self, report: CycleReport) -> None:
        if self.health is None:
            return
        try:
            spool_count = await self.spool.count() if self.spool is not None else 0
            self.health.record_cycle(report.records_emitted, spool_count)
        except Exception:
            logger.warning("Failed to write health file", exc_info=True)

    async def run_forever(self, shutdown_event: asyncio.Event) -> None:
        """Repeat the harvest cycle until *shutdown_event* is set."""
        logger.info("Harvest loop started (interval=%ss)", self.settings.cycle_interval_s)
        while not shutdown_event.is_set():
            try:
                if not await self.ensure_session(shutdown_event):
                    break
                report = await self.run_cycle()
                await self._after_cycle(report)
            except Exception:
                logger.error("Harvest cycle error", exc_info=True)
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(
                    shutdown_event.wait(), timeout=self.settings.cycle_interval_s
                )
        logger.info("Harvest loop stopped")


# ---------------------------------------------------------------------------
# Entrypoint
# ---------------------------------------------------------------------------


async def async_main() -> None:
    """Async entrypoint: load config, build components, run the loop.

    Sets up SIGTERM/SIGINT handlers to trigger graceful shutdown.
    """
    configure_logging()

    from harvester.src.browser import PortalBrowser
    from harvester.src.config import HarvesterSettings
    from harvester.src.health import HealthWriter
    from harvester.src.signals import load_signal_tables
    from harvester.src.spool import Spool
    from harvester.src.transport import PortalClient

    settings = HarvesterSettings()
    log_config_summary(settings)
    tables = load_signal_tables(settings.signals_path)

    shutdown_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda: _handle_signal(shutdown_event))

    session = SessionManager()
    client = PortalClient(
        settings.portal_base_url,
        session,
        timeout_s=settings.request_timeout_s,
        timezone_offset_min=settings.timezone_offset_min,
    )
    fetcher = BatchFetcher(
        client.fetch_device,
        batch_sizes={
            DeviceCategory.INVERTER: settings.inverter_batch_size,
            DeviceCategory.METER: settings.meter_batch_size,
            DeviceCategory.SENSOR: settings.meter_batch_size,
        },
        jitter_ms=(settings.jitter_min_ms, settings.jitter_max_ms),
        chunk_timeout_s=settings.chunk_timeout_s,
    )
    health = HealthWriter(settings.health_path)

    async with (
        PortalBrowser(
            session, login_url=settings.portal_login_url, headless=settings.headless
        ) as browser,
        client,
        Spool(settings.spool_path) as spool,
    ):
        harvester = Harvester(
            settings=settings,
            session=session,
            browser=browser,
            client=client,
            fetcher=fetcher,
            tables=tables,
            spool=spool,
            health=health,
        )
        await harvester.run_forever(shutdown_event)
    logger.info("Shutdown complete")


def _handle_signal(shutdown_event: asyncio.Event) -> None:
    """Handle SIGTERM/SIGINT by setting the shutdown event."""
    logger.info("Received shutdown signal, initiating graceful shutdown")
    shutdown_event.set()


def main() -> None:
    """Synchronous entrypoint for the harvester daemon."""
    asyncio.run(async_main())


if __name__ == "__main__":
    main()
