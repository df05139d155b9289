"""
Exception taxonomy for the harvester pipeline.

Failures below the cycle level (one device, one chunk, one site) are
raised at the transport / discovery / fetch seams and caught by the cycle
orchestrator, which logs them and continues. Only a failed login makes
the orchestrator retry instead of proceeding.

CHANGELOG:
- 2026-03-02: Initial creation (STORY-102)

TODO:
- None
"""

from __future__ import annotations


class HarvesterError(Exception):
    """Base class for all harvester errors."""


class SessionInvalidError(HarvesterError):
    """Raised when no token is held or the portal rejected it (401/403, HTML)."""


class LoginFailedError(HarvesterError):
    """Raised when the browser login collaborator could not sign in."""


class PortalResponseError(HarvesterError):
    """Raised when the portal answers with something that is not a JSON object.

    Args:
        message: Human-readable description.
        status: HTTP status code of the reply, if one was received.
    """

    def __init__(self, message: str, status: int | None = None) -> None:
        self.status = status
        super().__init__(message)


class DiscoveryFailedError(HarvesterError):
    """Raised when the topology of one site could not be retrieved or parsed."""

    def __init__(self, site_id: str, reason: str) -> None:
        self.site_id = site_id
        self.reason = reason
        super().__init__(f"Discovery failed for site {site_id}: {reason}")


class BatchTimeoutError(HarvesterError):
    """Raised when a chunk produced no usable result within its wait window."""

    def __init__(self, device_ids: list[str], timeout_s: float) -> None:
        self.device_ids = list(device_ids)
        self.timeout_s = timeout_s
        super().__init__(
            f"Chunk of {len(device_ids)} devices produced no result within {timeout_s:.1f}s"
        )


class DeviceFetchFailedError(HarvesterError):
    """Raised for a single device whose request failed inside a chunk."""

    def __init__(self, device_id: str, reason: str) -> None:
        self.device_id = device_id
        self.reason = reason
        super().__init__(f"{device_id}: {reason}")
