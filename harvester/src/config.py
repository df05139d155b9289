"""
Harvester daemon configuration loaded from environment variables.

Uses Pydantic BaseSettings for automatic env var loading and validation.
All configuration values come from environment variables or .env files;
no credentials, station DNs or URLs are hard-coded.

``SITES`` is a JSON list, e.g.::

    SITES='[{"id": "NE=50987774", "name": "Shundao 1"}]'

CHANGELOG:
- 2026-03-09: Add optional per-string records
- 2026-03-07: Add chunk timeout and jitter bounds (STORY-108)
- 2026-03-02: Initial creation (STORY-101)

TODO:
- None
"""

from __future__ import annotations

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from harvester.src.models import SiteConfig

DEFAULT_PORTAL_URL = "https://intl.fusionsolar.huawei.com"


class HarvesterSettings(BaseSettings):
    """Harvester configuration for the FusionSolar portal pipeline.

    Attributes:
        portal_base_url: Portal base URL for API calls (must be HTTPS).
        portal_login_url: Page the browser opens to log in. Defaults to
            ``portal_base_url``.
        portal_username: Portal account name.
        portal_password: Portal account password.
        sites: Sites to harvest (at least one).
        signals_path: Optional JSON file overriding the field-mapping tables.
        cycle_interval_s: Seconds between harvest cycles (min 60).
        login_retry_s: Seconds to wait after a failed login before retrying.
        token_wait_s: Seconds to wait for a token after login.
        inverter_batch_size: Inverters fetched concurrently per chunk.
        meter_batch_size: Meters / sensors fetched concurrently per chunk.
        jitter_min_ms: Lower bound of the pause before each chunk.
        jitter_max_ms: Upper bound of the pause before each chunk.
        chunk_timeout_s: Bounded wait for all requests of one chunk.
        request_timeout_s: Per-request HTTP timeout.
        timezone_offset_min: ``X-Timezone-Offset`` header value.
        spool_path: SQLite spool file path for normalized records.
        health_path: JSON health file rewritten after each cycle.
        headless: Run the browser without a window.
        emit_string_records: Also emit the per-string view of each inverter
            (measurement ``string``).
    """

    portal_base_url: str = DEFAULT_PORTAL_URL
    portal_login_url: str = ""
    portal_username: str
    portal_password: str
    sites: list[SiteConfig]
    signals_path: str | None = None
    cycle_interval_s: int = 300
    login_retry_s: int = 60
    token_wait_s: int = 60
    inverter_batch_size: int = Field(default=15, ge=1, le=100)
    meter_batch_size: int = Field(default=20, ge=1, le=100)
    jitter_min_ms: int = Field(default=200, ge=0)
    jitter_max_ms: int = Field(default=500, ge=0)
    chunk_timeout_s: float = Field(default=20.0, gt=0)
    request_timeout_s: float = Field(default=15.0, gt=0)
    timezone_offset_min: int = 420
    spool_path: str = "/data/spool.db"
    health_path: str = "/data/health.json"
    headless: bool = True
    emit_string_records: bool = False

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    @field_validator("portal_base_url", "portal_login_url")
    @classmethod
    def portal_url_must_be_https(cls, v: str) -> str:
        """Validate that portal URLs use HTTPS.

        The session token travels in a request header, so plain HTTP is
        rejected at startup.
        """
        if v and not v.startswith("https://"):
            raise ValueError(f"Portal URLs must use HTTPS (got: '{v[:30]}...')")
        return v.rstrip("/")

    @field_validator("sites")
    @classmethod
    def sites_must_not_be_empty(cls, v: list[SiteConfig]) -> list[SiteConfig]:
        """Validate that at least one site is configured."""
        if not v:
            raise ValueError("SITES must list at least one site")
        return v

    @field_validator("cycle_interval_s")
    @classmethod
    def cycle_interval_must_respect_portal(cls, v: int) -> int:
        """Validate the cycle interval is not aggressive against the portal."""
        if v < 60:
            raise ValueError("CYCLE_INTERVAL_S must be >= 60")
        return v

    @field_validator("login_retry_s", "token_wait_s")
    @classmethod
    def waits_must_be_positive(cls, v: int) -> int:
        """Validate login back-off and token wait are positive."""
        if v < 1:
            raise ValueError("LOGIN_RETRY_S and TOKEN_WAIT_S must be >= 1")
        return v

    @model_validator(mode="after")
    def _check_jitter_and_login_url(self) -> HarvesterSettings:
        """Default the login URL and require jitter_min_ms <= jitter_max_ms."""
        if self.jitter_min_ms > self.jitter_max_ms:
            raise ValueError("JITTER_MIN_MS must be <= JITTER_MAX_MS")
        if not self.portal_login_url:
            self.portal_login_url = self.portal_base_url
        return self
