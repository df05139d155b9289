"""
Pydantic models shared by the harvester pipeline.

Covers the configured sites, the transient topology snapshot built by
discovery (nodes, classified devices, gateway children), per-device batch
outcomes, station KPI payloads, and the NormalizedRecord handed to sinks.

NormalizedRecord serializes its field map in a fixed presentation order:
non-string keys first, alphabetically; then PV string keys grouped by
string index, each group ordered status, voltage, current, then any other
suffix alphabetically.

CHANGELOG:
- 2026-03-10: ChildDevice tolerates null fields
- 2026-03-06: Add StationKPI / SocialContribution payload models (STORY-110)
- 2026-03-02: Initial creation (STORY-104)

TODO:
- None
"""

from __future__ import annotations

import re
import uuid
from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator

# ---------------------------------------------------------------------------
# Sites and identity
# ---------------------------------------------------------------------------


class SiteConfig(BaseModel):
    """A target site to harvest.

    Attributes:
        id: Portal-assigned station DN (e.g. ``"NE=50987774"``).
        name: Display name of the site.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    name: str = Field(min_length=1)


def stable_id(dn: str) -> str:
    """Return a deterministic UUIDv5 (DNS namespace) for a portal DN.

    Empty input yields an empty string so records without a DN keep an
    empty identifier rather than a UUID of the empty string.
    """
    if not dn:
        return ""
    return str(uuid.uuid5(uuid.NAMESPACE_DNS, dn))


# ---------------------------------------------------------------------------
# Topology
# ---------------------------------------------------------------------------


class DeviceCategory(StrEnum):
    """Category assigned to a discovered leaf device."""

    INVERTER = "inverter"
    METER = "meter"
    SENSOR = "sensor"
    UNCLASSIFIED = "unclassified"


class DeviceNode(BaseModel):
    """One node of the portal's organization tree.

    Parent linkage is implicit in the tree; the walker records the DN of
    the enclosing node in ``parent_dn``. Child nodes are not retained once
    the tree has been flattened.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    element_dn: str = Field(default="", alias="elementDn")
    node_name: str = Field(default="", alias="nodeName")
    status: str = ""
    type_id: int = Field(default=0, alias="typeId")
    moc_id: int = Field(default=0, alias="mocId")
    is_parent: bool = Field(default=False, alias="isParent")
    parent_dn: str = Field(default="", alias="parentDn")

    @field_validator("element_dn", "node_name", "status", "parent_dn", mode="before")
    @classmethod
    def _none_to_empty(cls, v: Any) -> Any:
        return "" if v is None else v

    @field_validator("type_id", "moc_id", mode="before")
    @classmethod
    def _coerce_code(cls, v: Any) -> Any:
        if v is None or v == "":
            return 0
        return v


class ChildDevice(BaseModel):
    """Secondary device reported by a gateway's children-list endpoint."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    dn: str = ""
    name: str = ""
    parent_name: str = Field(default="", alias="parentName")
    moc_type_name: str = Field(default="", alias="mocTypeName")
    status: str = ""
    param_values: dict[str, Any] = Field(default_factory=dict, alias="paramValues")

    @field_validator("dn", "name", "parent_name", "moc_type_name", "status", mode="before")
    @classmethod
    def _none_to_empty(cls, v: Any) -> Any:
        return "" if v is None else v

    @field_validator("param_values", mode="before")
    @classmethod
    def _none_to_dict(cls, v: Any) -> Any:
        return {} if v is None else v

    def param(self, key: str) -> str:
        """Return a string parameter value, or ``""`` when absent or non-string."""
        value = self.param_values.get(key)
        return value if isinstance(value, str) else ""


class ClassifiedDevice(BaseModel):
    """A leaf device tagged with exactly one category plus its context."""

    model_config = ConfigDict(frozen=True)

    node: DeviceNode
    category: DeviceCategory
    site: SiteConfig
    gateway_dn: str = ""
    gateway_name: str = ""
    model: str = ""
    serial: str = ""

    @property
    def dn(self) -> str:
        return self.node.element_dn

    @property
    def name(self) -> str:
        return self.node.node_name

    def context(self) -> DeviceContext:
        """Return the identity block the normalizer needs for this device."""
        return DeviceContext(
            name=self.node.node_name,
            dn=self.node.element_dn,
            model=self.model,
            serial=self.serial,
            site_name=self.site.name,
            site_dn=self.site.id,
        )


class SiteTopology(BaseModel):
    """Topology snapshot of one site from a single discovery pass."""

    site: SiteConfig
    gateways: list[DeviceNode] = Field(default_factory=list)
    devices_by_gateway: dict[str, list[ClassifiedDevice]] = Field(default_factory=dict)
    children_by_gateway: dict[str, list[ChildDevice]] = Field(default_factory=dict)

    def devices(self) -> list[ClassifiedDevice]:
        """Return every discovered device, in gateway order."""
        return [d for devices in self.devices_by_gateway.values() for d in devices]

    def by_category(self, category: DeviceCategory) -> list[ClassifiedDevice]:
        """Return the devices tagged with *category*."""
        return [d for d in self.devices() if d.category == category]


# ---------------------------------------------------------------------------
# Batch fetch
# ---------------------------------------------------------------------------


class FetchMode(StrEnum):
    """Which per-device endpoint a batch targets."""

    REALTIME = "realtime"
    REALTIME_DISPLAY = "realtime_display"
    STRING_KPI = "string_kpi"


class BatchOutcome(BaseModel):
    """Result of fetching one device inside a chunk."""

    model_config = ConfigDict(frozen=True)

    device_id: str
    success: bool
    payload: dict[str, Any] | None = None
    error: str | None = None


# ---------------------------------------------------------------------------
# Station payloads
# ---------------------------------------------------------------------------

_BLANK_NUMBERS = {"", "--", "Unidentified"}


class _NumericPayload(BaseModel):
    """Base for portal payloads that send numbers as strings."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    @field_validator("*", mode="before")
    @classmethod
    def _blank_to_zero(cls, v: Any) -> Any:
        if v is None or (isinstance(v, str) and v.strip() in _BLANK_NUMBERS):
            return 0
        return v


class StationKPI(_NumericPayload):
    """``kpiData`` block of the station-kpi-data endpoint."""

    daily_energy: float = Field(default=0.0, alias="dailyEnergy")
    cumulative_energy: float = Field(default=0.0, alias="cumulativeEnergy")
    inverter_power: float = Field(default=0.0, alias="inverterPower")
    daily_income: float = Field(default=0.0, alias="dailyIncome")
    total_charge_energy: float = Field(default=0.0, alias="totalChargeEnergy")
    total_discharge_energy: float = Field(default=0.0, alias="totalDischargeEnergy")
    daily_charge_energy: float = Field(default=0.0, alias="dailyChargeEnergy")
    daily_ongrid_energy: float = Field(default=0.0, alias="dailyOnGridEnergy")
    daily_charge_capacity: float = Field(default=0.0, alias="dailyChargeCapacity")
    daily_discharge_capacity: float = Field(default=0.0, alias="dailyDischargeCapacity")
    cumulative_charge_capacity: float = Field(default=0.0, alias="cumulativeChargeCapacity")
    cumulative_discharge_capacity: float = Field(
        default=0.0, alias="cumulativeDisChargeCapacity"
    )
    rechargeable_energy: float = Field(default=0.0, alias="rechargeableEnergy")
    redischargeable_energy: float = Field(default=0.0, alias="reDischargeableEnergy")
    battery_capacity: float = Field(default=0.0, alias="batteryCapacity")
    currency: int = 0
    is_price_configured: bool = Field(default=False, alias="isPriceConfigured")


class SocialContribution(_NumericPayload):
    """``data`` block of the social-contribution endpoint."""

    co2_reduction: float = Field(default=0.0, alias="co2Reduction")
    co2_reduction_by_year: float = Field(default=0.0, alias="co2ReductionByYear")
    equivalent_tree_planting: float = Field(default=0.0, alias="equivalentTreePlanting")
    equivalent_tree_planting_by_year: float = Field(
        default=0.0, alias="equivalentTreePlantingByYear"
    )
    standard_coal_savings: float = Field(default=0.0, alias="standardCoalSavings")
    standard_coal_savings_by_year: float = Field(
        default=0.0, alias="standardCoalSavingsByYear"
    )
    component_flag: int = Field(default=0, alias="componentFlag")


# ---------------------------------------------------------------------------
# Normalized output
# ---------------------------------------------------------------------------


class DeviceContext(BaseModel):
    """Identity of the device (and its site) a raw payload belongs to."""

    model_config = ConfigDict(frozen=True)

    name: str
    dn: str
    model: str = ""
    serial: str = ""
    site_name: str = ""
    site_dn: str = ""


_STRING_KEY = re.compile(r"^pv(\d+)_(.+)$")

_STRING_SUFFIX_WEIGHT: dict[str, int] = {
    "status": 1,
    "voltage": 2,
    "volt_v": 2,
    "current": 3,
    "amp_a": 3,
}


def field_sort_key(key: str) -> tuple[int, int, int, str]:
    """Sort key implementing the record field presentation order."""
    match = _STRING_KEY.match(key)
    if match is None:
        return (0, 0, 0, key)
    index, suffix = int(match.group(1)), match.group(2)
    return (1, index, _STRING_SUFFIX_WEIGHT.get(suffix, 4), suffix)


def ordered_fields(fields: dict[str, Any]) -> dict[str, Any]:
    """Return a copy of *fields* with keys in presentation order."""
    return {key: fields[key] for key in sorted(fields, key=field_sort_key)}


class NormalizedRecord(BaseModel):
    """Canonical per-device (or per-plant) record produced by the normalizer.

    Attributes:
        ts: Capture timestamp (injected by the caller).
        site_name: Display name of the site.
        site_id: Stable UUID of the site DN.
        name: Device display name (empty for plant records).
        id: Stable UUID of the device DN (empty for plant records).
        model: Device model from static info, if known.
        sn: Device serial number from static info, if known.
        measurement: ``inverter``, ``meter``, ``sensor``, ``gateway``,
            ``string`` or ``plant``.
        fields: Canonical field map.
    """

    model_config = ConfigDict(frozen=True)

    ts: datetime
    site_name: str = ""
    site_id: str = ""
    name: str = ""
    id: str = ""
    model: str = ""
    sn: str = ""
    measurement: str
    fields: dict[str, Any] = Field(default_factory=dict)

    @field_serializer("fields")
    def _serialize_fields(self, fields: dict[str, Any]) -> dict[str, Any]:
        return ordered_fields(fields)
