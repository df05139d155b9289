"""
Pure normalizer that converts raw portal signal payloads into NormalizedRecords.

The portal returns per-device signals in several JSON shapes depending on
the endpoint. The shape of a payload is decided once, from its ``data``
key, by :func:`detect_shape`; :func:`extract_signals` then flattens it
into a ``{signal_id: signal_object}`` map. When list-shaped sources are
merged, the first occurrence of an id wins.

Signal values are read with :func:`get_signal_value`: the sentinels
``"Unidentified"``, ``""`` and ``"--"`` mean absent; numeric strings become
floats; other strings are kept (status text, firmware versions).

Canonical field names come from the :class:`~harvester.src.signals.SignalTables`
loaded at startup. Every category fills its expected fields with a
default when the signal is missing, so records of one measurement always
share the same schema.

This module is pure: no I/O, no clock. The capture timestamp is injected.

CHANGELOG:
- 2026-03-10: Seed meter and sensor defaults from the loaded tables
- 2026-03-09: Emit non-zero string readings that lack a status on inverters
- 2026-03-08: Sensor records fall back to snake_case for unmapped names
- 2026-03-06: Add plant records from station KPI + social contribution (STORY-110)
- 2026-03-05: Extend unified inverter strings to 48 inputs
- 2026-03-04: Initial creation (STORY-109)

TODO:
- None
"""

from __future__ import annotations

import html
import logging
import re
from datetime import datetime
from enum import StrEnum
from typing import Any

from harvester.src.models import (
    ChildDevice,
    DeviceCategory,
    DeviceContext,
    NormalizedRecord,
    SiteConfig,
    SocialContribution,
    StationKPI,
    stable_id,
)
from harvester.src.signals import (
    ALL_STRINGS,
    PARAM_MODEL,
    PARAM_SERIAL,
    PARAM_VERSION,
    SignalTables,
)

logger = logging.getLogger(__name__)

SignalSet = dict[str, Any]
"""Signal id (as string) -> raw signal object (at least ``{"value": ...}``)."""

_ABSENT_VALUES = frozenset({"Unidentified", "", "--"})

SENSOR_CUSTOM_DEFAULT = 3276.7
"""Placeholder the field devices report for an unconnected custom input."""

_SENSOR_FIELD_DEFAULTS: dict[str, float] = {
    "custom1": SENSOR_CUSTOM_DEFAULT,
    "custom2": SENSOR_CUSTOM_DEFAULT,
}

# ---------------------------------------------------------------------------
# Payload shape detection
# ---------------------------------------------------------------------------


class PayloadShape(StrEnum):
    """Layout of the ``data`` key of a raw signal payload."""

    NESTED_LIST = "nested_list"
    """``data: [{"signals": [...]}, ...]`` (realtime endpoints)."""
    FLAT_LIST = "flat_list"
    """``data: [{"id": ..., "value": ...}, ...]`` (gateway config endpoint)."""
    SIGNAL_MAP = "signal_map"
    """``data: {"signals": {"11001": {...}}}`` (real-kpi endpoint)."""
    SIGNAL_LIST = "signal_list"
    """``data: {"signals": [...]}``."""
    LEGACY_NESTED = "legacy_nested"
    """``data: {"data": [{"signals": [...]}]}``."""
    UNKNOWN = "unknown"


def detect_shape(raw: Any) -> PayloadShape:
    """Classify *raw* by inspecting its ``data`` key once."""
    if not isinstance(raw, dict):
        return PayloadShape.UNKNOWN
    data = raw.get("data")

    if isinstance(data, list):
        nested = any(isinstance(item, dict) and "signals" in item for item in data)
        return PayloadShape.NESTED_LIST if nested else PayloadShape.FLAT_LIST

    if isinstance(data, dict):
        signals = data.get("signals")
        if isinstance(signals, dict):
            return PayloadShape.SIGNAL_MAP
        if isinstance(signals, list):
            return PayloadShape.SIGNAL_LIST
        if isinstance(data.get("data"), list):
            return PayloadShape.LEGACY_NESTED

    return PayloadShape.UNKNOWN


def _signal_id(item: dict[str, Any]) -> str:
    value = item.get("id")
    if isinstance(value, bool):
        return ""
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        return f"{value:.0f}"
    if isinstance(value, str):
        return value.strip()
    return ""


def merge_signals(target: SignalSet, items: list[Any]) -> None:
    """Add list-shaped signals to *target*, keyed by their ``id``.

    Items without a usable id are dropped. An id already present in
    *target* is kept; later duplicates are discarded.
    """
    dropped = 0
    for item in items:
        if not isinstance(item, dict):
            dropped += 1
            continue
        signal_id = _signal_id(item)
        if not signal_id:
            dropped += 1
            continue
        target.setdefault(signal_id, item)
    if dropped:
        logger.debug("Dropped %d signal entries without a usable id", dropped)


def _merge_nested(target: SignalSet, wrappers: list[Any]) -> None:
    for wrapper in wrappers:
        if isinstance(wrapper, dict) and isinstance(wrapper.get("signals"), list):
            merge_signals(target, wrapper["signals"])


def extract_signals(raw: Any) -> SignalSet:
    """Flatten any known payload shape into a ``{signal_id: signal}`` map.

    Returns an empty map when the shape is not recognised.
    """
    shape = detect_shape(raw)
    signals: SignalSet = {}

    if shape is PayloadShape.NESTED_LIST:
        _merge_nested(signals, raw["data"])
    elif shape is PayloadShape.FLAT_LIST:
        merge_signals(signals, raw["data"])
    elif shape is PayloadShape.SIGNAL_MAP:
        signals = {str(k): v for k, v in raw["data"]["signals"].items()}
    elif shape is PayloadShape.SIGNAL_LIST:
        merge_signals(signals, raw["data"]["signals"])
    elif shape is PayloadShape.LEGACY_NESTED:
        _merge_nested(signals, raw["data"]["data"])
    return signals


# ---------------------------------------------------------------------------
# Value access
# ---------------------------------------------------------------------------


def _to_float(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int | float):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return None
    return None


def get_signal_value(signals: SignalSet, signal_id: str) -> Any:
    """Return the parsed value of *signal_id*, or ``None`` when absent.

    Numeric strings are returned as floats, other strings unchanged.
    """
    item = signals.get(signal_id)
    if not isinstance(item, dict) or "value" not in item:
        return None
    value = item["value"]
    if value is None:
        return None
    if isinstance(value, str):
        if value in _ABSENT_VALUES:
            return None
        parsed = _to_float(value)
        return value if parsed is None else parsed
    if isinstance(value, int) and not isinstance(value, bool):
        return float(value)
    return value


def _named_values(signals: SignalSet) -> list[tuple[str, str, Any]]:
    """Return ``(signal_id, display name or id, value)`` for present signals."""
    entries: list[tuple[str, str, Any]] = []
    for signal_id, item in signals.items():
        if not isinstance(item, dict):
            continue
        value = get_signal_value(signals, signal_id)
        if value is None:
            continue
        name = item.get("name")
        key = name.strip() if isinstance(name, str) and name.strip() else signal_id
        entries.append((signal_id, key, value))
    return entries


def key_values(signals: SignalSet) -> dict[str, Any]:
    """Return present values keyed by display name (or id when unnamed)."""
    values: dict[str, Any] = {}
    for _, key, value in _named_values(signals):
        values.setdefault(key, value)
    return values


def snake_case_key(name: str) -> str:
    """Transliterate a portal display name into a snake_case field name.

    ``"Irradiance (%)"`` -> ``"irradiance"``, ``"PV Module Temp"`` ->
    ``"pv_module_temp"``.
    """
    key = name.lower().replace("(°)", "").replace("(%)", "").strip()
    return re.sub(r"\s+", "_", key)


def _is_non_zero(value: Any) -> bool:
    number = _to_float(value)
    return number is not None and number != 0


def _pv_key(index: int, suffix: str) -> str:
    return f"pv{index:02d}_{suffix}"


def _lookup(table: dict[str, str], signal_id: str, name: str) -> str | None:
    return table.get(name) or table.get(signal_id)


# ---------------------------------------------------------------------------
# Record construction
# ---------------------------------------------------------------------------


def _device_record(
    ctx: DeviceContext,
    measurement: str,
    fields: dict[str, Any],
    ts: datetime,
) -> NormalizedRecord:
    return NormalizedRecord(
        ts=ts,
        site_name=html.unescape(ctx.site_name),
        site_id=stable_id(ctx.site_dn),
        name=html.unescape(ctx.name),
        id=stable_id(ctx.dn),
        model=ctx.model,
        sn=ctx.serial,
        measurement=measurement,
        fields=fields,
    )


def normalize_inverter(
    realtime: dict[str, Any] | None,
    string_kpi: dict[str, Any] | None,
    ctx: DeviceContext,
    tables: SignalTables,
    ts: datetime,
) -> NormalizedRecord:
    """Build the unified inverter record from realtime and string payloads.

    For every PV string whose status signal is present, ``pvNN_volt_v`` and
    ``pvNN_amp_a`` are emitted (0 when missing) and ``V * A / 1000`` is
    added to ``dc_power_kw``. A string without status but with a non-zero
    voltage or current only emits the values it has and does not count
    towards ``dc_power_kw``. Every field of the inverter table is emitted,
    0 when its signal is missing.
    """
    fields: dict[str, Any] = {}

    string_signals = extract_signals(string_kpi) if string_kpi else {}
    dc_power_kw = 0.0
    for string in ALL_STRINGS:
        volts = get_signal_value(string_signals, string.voltage)
        amps = get_signal_value(string_signals, string.current)
        if get_signal_value(string_signals, string.status) is None:
            if _is_non_zero(volts) or _is_non_zero(amps):
                if volts is not None:
                    fields[_pv_key(string.index, "volt_v")] = volts
                if amps is not None:
                    fields[_pv_key(string.index, "amp_a")] = amps
            continue
        fields[_pv_key(string.index, "volt_v")] = 0 if volts is None else volts
        fields[_pv_key(string.index, "amp_a")] = 0 if amps is None else amps
        v, a = _to_float(volts), _to_float(amps)
        if v is not None and a is not None:
            dc_power_kw += v * a / 1000.0
    fields["dc_power_kw"] = dc_power_kw

    realtime_signals = extract_signals(realtime) if realtime else {}
    for signal_id, key in tables.inverter.items():
        value = get_signal_value(realtime_signals, signal_id)
        fields[key] = 0 if value is None else value
    fields.setdefault("p_peak_today_kw", 0)

    return _device_record(ctx, "inverter", fields, ts)


def normalize_meter(
    raw: dict[str, Any] | None,
    ctx: DeviceContext,
    tables: SignalTables,
    ts: datetime,
) -> NormalizedRecord:
    """Build a meter record; ``_kw`` / ``_kvar`` fields are converted from W / var."""
    signals = extract_signals(raw) if raw else {}
    fields: dict[str, Any] = {}
    for signal_id, key in tables.meter.items():
        value = get_signal_value(signals, signal_id)
        if value is None:
            continue
        if key.endswith(("_kw", "_kvar")):
            number = _to_float(value)
            if number is not None:
                value = number / 1000.0
        fields[key] = value

    for key in tables.meter.values():
        fields.setdefault(key, 0.0)
    return _device_record(ctx, "meter", fields, ts)


def normalize_sensor(
    raw: dict[str, Any] | None,
    ctx: DeviceContext,
    tables: SignalTables,
    ts: datetime,
) -> NormalizedRecord:
    """Build an environmental sensor (EMI) record.

    Signals are matched by display name (or id) through the sensor table;
    unmapped names are kept under their snake_case transliteration. Missing
    expected fields default to 0.0, ``custom1``/``custom2`` to 3276.7.
    """
    signals = extract_signals(raw) if raw else {}
    mapped: dict[str, Any] = {}
    fallback: dict[str, Any] = {}
    for signal_id, name, value in _named_values(signals):
        key = _lookup(tables.sensor, signal_id, name)
        if key is not None:
            mapped.setdefault(key, value)
        else:
            fallback.setdefault(snake_case_key(name), value)

    fields = {**fallback, **mapped}
    for key in tables.sensor.values():
        fields.setdefault(key, _SENSOR_FIELD_DEFAULTS.get(key, 0.0))
    return _device_record(ctx, "sensor", fields, ts)


def _child_summary(child: ChildDevice) -> dict[str, str]:
    return {
        "name": html.unescape(child.name),
        "status": child.status,
        "type": child.moc_type_name,
        "model": child.param(PARAM_MODEL),
        "version": child.param(PARAM_VERSION),
        "serial_number": child.param(PARAM_SERIAL),
    }


def normalize_gateway(
    raw: dict[str, Any] | None,
    ctx: DeviceContext,
    tables: SignalTables,
    ts: datetime,
    children: list[ChildDevice] | None = None,
) -> NormalizedRecord:
    """Build a SmartLogger record from its config signals and children-list.

    Names go through the smart_logger table, then the sensor table, then
    snake_case. ``child_devices`` lists the devices behind the gateway.
    """
    signals = extract_signals(raw) if raw else {}
    fields: dict[str, Any] = {}
    for signal_id, name, value in _named_values(signals):
        key = (
            _lookup(tables.smart_logger, signal_id, name)
            or _lookup(tables.sensor, signal_id, name)
            or snake_case_key(name)
        )
        fields.setdefault(key, value)

    if children:
        fields["child_devices"] = [_child_summary(child) for child in children]
    return _device_record(ctx, "gateway", fields, ts)


def normalize_string_data(
    raw: dict[str, Any] | None,
    ctx: DeviceContext,
    ts: datetime,
) -> NormalizedRecord:
    """Build the per-string view (``pvNN_status`` / ``_voltage`` / ``_current``).

    A string is included when its status is present, or when its voltage
    or current is present and non-zero. Only present values are emitted.
    """
    signals = extract_signals(raw) if raw else {}
    fields: dict[str, Any] = {}
    for string in ALL_STRINGS:
        volts = get_signal_value(signals, string.voltage)
        amps = get_signal_value(signals, string.current)
        status = get_signal_value(signals, string.status)
        if status is None and not _is_non_zero(volts) and not _is_non_zero(amps):
            continue
        if volts is not None:
            fields[_pv_key(string.index, "voltage")] = volts
        if amps is not None:
            fields[_pv_key(string.index, "current")] = amps
        if status is not None:
            fields[_pv_key(string.index, "status")] = status
    return _device_record(ctx, "string", fields, ts)


def normalize_station(
    site: SiteConfig,
    ts: datetime,
    kpi: StationKPI | None = None,
    social: SocialContribution | None = None,
) -> NormalizedRecord:
    """Build the plant-level record of one site."""
    fields: dict[str, Any] = {}
    if kpi is not None:
        fields.update(
            {
                "daily_energy": kpi.daily_energy,
                "cumulative_energy": kpi.cumulative_energy,
                "daily_income": kpi.daily_income,
                "daily_charge_capacity": kpi.daily_charge_capacity,
                "daily_discharge_capacity": kpi.daily_discharge_capacity,
                "total_charge_energy": kpi.total_charge_energy,
                "total_discharge_energy": kpi.total_discharge_energy,
                "cumulative_charge_capacity": kpi.cumulative_charge_capacity,
                "cumulative_discharge_capacity": kpi.cumulative_discharge_capacity,
                "inverter_power": kpi.inverter_power,
                "battery_capacity": kpi.battery_capacity,
                "currency": kpi.currency,
                "is_price_configured": kpi.is_price_configured,
                "daily_charge_energy": kpi.daily_charge_energy,
                "daily_ongrid_energy": kpi.daily_ongrid_energy,
                "rechargeable_energy": kpi.rechargeable_energy,
                "redischargeable_energy": kpi.redischargeable_energy,
            }
        )
    if social is not None:
        fields.update(
            {
                "co2_reduction": social.co2_reduction,
                "co2_reduction_by_year": social.co2_reduction_by_year,
                "equivalent_trees": social.equivalent_tree_planting,
                "equivalent_trees_by_year": social.equivalent_tree_planting_by_year,
                "standard_coal_savings": social.standard_coal_savings,
                "standard_coal_savings_by_year": social.standard_coal_savings_by_year,
            }
        )
    return NormalizedRecord(
        ts=ts,
        site_name=html.unescape(site.name),
        site_id=stable_id(site.id),
        measurement="plant",
        fields=fields,
    )


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------


def normalize(
    raw: dict[str, Any] | None,
    ctx: DeviceContext,
    category: DeviceCategory,
    tables: SignalTables,
    ts: datetime,
    *,
    string_kpi: dict[str, Any] | None = None,
) -> NormalizedRecord:
    """Normalize one device payload according to its category.

    Raises:
        ValueError: For ``UNCLASSIFIED`` devices, which have no schema.
    """
    if category is DeviceCategory.INVERTER:
        return normalize_inverter(raw, string_kpi, ctx, tables, ts)
    if category is DeviceCategory.METER:
        return normalize_meter(raw, ctx, tables, ts)
    if category is DeviceCategory.SENSOR:
        return normalize_sensor(raw, ctx, tables, ts)
    raise ValueError(f"Cannot normalize a device of category {category.value!r}")
