"""
Chunked concurrent retrieval of per-device payloads.

Device ids are split into fixed-size chunks (15 for inverters, 20 for
meters and sensors by default). Chunks run strictly one after another;
inside a chunk every device request is started at once as its own task
and the chunk waits for all of them with a single bounded
``asyncio.wait``. Requests still running when the window closes are
cancelled and their devices count as failed for this cycle.

A randomized jitter sleep precedes every chunk to pace bursts. Nothing
is retried within a cycle: the next cycle simply asks again.

Failure levels:
- one device: a failed :class:`~harvester.src.models.BatchOutcome`,
  siblings unaffected.
- one chunk with no completed request at all: logged as a
  :class:`~harvester.src.errors.BatchTimeoutError`, recorded in
  :attr:`BatchResult.timed_out_chunks`, and the next chunk proceeds.

CHANGELOG:
- 2026-03-07: Replace completion polling with a single bounded asyncio.wait
- 2026-03-03: Initial creation (STORY-108)

TODO:
- None
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable, Iterator, Sequence
from dataclasses import dataclass, field
from typing import Any

from harvester.src.errors import (
    BatchTimeoutError,
    DeviceFetchFailedError,
    HarvesterError,
    PortalResponseError,
)
from harvester.src.models import BatchOutcome, DeviceCategory, FetchMode

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZES: dict[DeviceCategory, int] = {
    DeviceCategory.INVERTER: 15,
    DeviceCategory.METER: 20,
    DeviceCategory.SENSOR: 20,
}

DEFAULT_FETCH_MODES: dict[DeviceCategory, FetchMode] = {
    DeviceCategory.INVERTER: FetchMode.REALTIME_DISPLAY,
    DeviceCategory.METER: FetchMode.REALTIME,
    DeviceCategory.SENSOR: FetchMode.REALTIME,
}

DeviceFetch = Callable[[str, FetchMode], Awaitable[dict[str, Any]]]


def partition(ids: Sequence[str], size: int) -> Iterator[list[str]]:
    """Yield consecutive chunks of *ids* of at most *size* elements.

    ``N`` ids yield ``ceil(N / size)`` chunks; every chunk but the last
    holds exactly *size* ids.

    Raises:
        ValueError: If *size* is less than 1.
    """
    if size < 1:
        raise ValueError(f"Chunk size must be >= 1, got {size}")
    for start in range(0, len(ids), size):
        yield list(ids[start : start + size])


@dataclass
class BatchResult:
    """Per-device outcomes of one batch plus the chunks that timed out.

    Devices missing from :attr:`outcomes` are failed for this cycle.
    """

    outcomes: list[BatchOutcome] = field(default_factory=list)
    timed_out_chunks: list[list[str]] = field(default_factory=list)

    def payloads(self) -> dict[str, dict[str, Any]]:
        """Return ``{device_id: payload}`` for successful outcomes only."""
        return {
            o.device_id: o.payload
            for o in self.outcomes
            if o.success and o.payload is not None
        }

    def failed_ids(self, requested: Sequence[str]) -> list[str]:
        """Return the requested ids without a successful outcome."""
        ok = self.payloads()
        return [device_id for device_id in dict.fromkeys(requested) if device_id not in ok]


class BatchFetcher:
    """Fetch raw per-device payloads in paced, bounded concurrent chunks.

    Args:
        fetch_device: Async callable ``(device_id, mode) -> payload``;
            normally :meth:`PortalClient.fetch_device`.
        batch_sizes: Chunk size per device category.
        jitter_ms: ``(min, max)`` pause before each chunk, in milliseconds.
        chunk_timeout_s: Bounded wait for the requests of one chunk.
        rng: Random source for the jitter (injectable for tests).

    Raises:
        ValueError: On a non-positive chunk size or timeout, or min > max jitter.
    """

    def __init__(
        self,
        fetch_device: DeviceFetch,
        *,
        batch_sizes: dict[DeviceCategory, int] | None = None,
        jitter_ms: tuple[int, int] = (200, 500),
        chunk_timeout_s: float = 20.0,
        rng: random.Random | None = None,
    ) -> None:
        sizes = dict(DEFAULT_BATCH_SIZES)
        sizes.update(batch_sizes or {})
        if any(size < 1 for size in sizes.values()):
            raise ValueError(f"Batch sizes must be >= 1, got {sizes}")
        jitter_min, jitter_max = jitter_ms
        if jitter_min < 0 or jitter_min > jitter_max:
            raise ValueError(f"Invalid jitter range {jitter_ms}")
        if chunk_timeout_s <= 0:
            raise ValueError(f"chunk_timeout_s must be > 0, got {chunk_timeout_s}")

        self._fetch_device = fetch_device
        self._sizes = sizes
        self._jitter_ms = (jitter_min, jitter_max)
        self._chunk_timeout_s = chunk_timeout_s
        self._rng = rng or random.Random()

    def batch_size(self, category: DeviceCategory) -> int:
        """Return the chunk size used for *category*."""
        try:
            return self._sizes[category]
        except KeyError:
            raise ValueError(f"No batch size configured for category {category!r}") from None

    async def fetch_batch(
        self,
        device_ids: Sequence[str],
        category: DeviceCategory,
        mode: FetchMode | None = None,
    ) -> BatchResult:
        """Fetch every device of *device_ids*, one chunk at a time.

        Duplicate and empty ids are dropped, so each id appears at most
        once in the result.

        Args:
            device_ids: Device DNs to fetch.
            category: Category selecting the chunk size (and default mode).
            mode: Endpoint selector; defaults per category.
        """
        ids = list(dict.fromkeys(d for d in device_ids if d))
        mode = mode or DEFAULT_FETCH_MODES.get(category, FetchMode.REALTIME)
        size = self.batch_size(category)
        result = BatchResult()

        for index, chunk in enumerate(partition(ids, size), start=1):
            await self._pause()
            try:
                result.outcomes.extend(await self.fetch_chunk(chunk, mode))
            except BatchTimeoutError as exc:
                logger.warning("%s chunk %d (%s): %s", category.value, index, mode.value, exc)
                result.timed_out_chunks.append(exc.device_ids)

        ok = sum(1 for o in result.outcomes if o.success)
        logger.info(
            "Fetched %s batch (%s): %d/%d ok, %d chunks timed out",
            category.value,
            mode.value,
            ok,
            len(ids),
            len(result.timed_out_chunks),
        )
        return result

    async def fetch_chunk(self, chunk: list[str], mode: FetchMode) -> list[BatchOutcome]:
        """Run all requests of *chunk* concurrently under one bounded wait.

        Returns:
            Outcomes in chunk order. Requests cancelled at the deadline
            yield failed outcomes.

        Raises:
            BatchTimeoutError: If no request finished within the window.
        """
        if not chunk:
            return []
        tasks = {
            device_id: asyncio.create_task(self._fetch_one(device_id, mode))
            for device_id in chunk
        }
        done, pending = await asyncio.wait(tasks.values(), timeout=self._chunk_timeout_s)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        if not done:
            raise BatchTimeoutError(chunk, self._chunk_timeout_s)

        outcomes: list[BatchOutcome] = []
        for device_id, task in tasks.items():
            if task not in done:
                outcomes.append(_failed(device_id, "Timed out"))
            elif task.exception() is not None:
                outcomes.append(_failed(device_id, repr(task.exception())))
            else:
                outcomes.append(task.result())
        if pending:
            logger.warning(
                "%d/%d requests still running after %.1fs were cancelled",
                len(pending),
                len(chunk),
                self._chunk_timeout_s,
            )
        return outcomes

    async def _fetch_one(self, device_id: str, mode: FetchMode) -> BatchOutcome:
        try:
            payload = await self._fetch_device(device_id, mode)
            if not isinstance(payload, dict):
                raise DeviceFetchFailedError(device_id, "Parse error")
        except DeviceFetchFailedError as exc:
            return _failed(device_id, exc.reason)
        except PortalResponseError as exc:
            reason = f"Http {exc.status}" if exc.status and exc.status != 200 else str(exc)
            return _failed(device_id, reason)
        except HarvesterError as exc:
            return _failed(device_id, str(exc))
        return BatchOutcome(device_id=device_id, success=True, payload=payload)

    async def _pause(self) -> None:
        jitter_min, jitter_max = self._jitter_ms
        if jitter_max <= 0:
            return
        await asyncio.sleep(self._rng.uniform(jitter_min, jitter_max) / 1000.0)


def _failed(device_id: str, reason: str) -> BatchOutcome:
    logger.debug("Device %s failed: %s", device_id, reason)
    return BatchOutcome(device_id=device_id, success=False, error=reason)
