"""
FusionSolar portal signal map -- single source of truth.

Defines the vendor constants the harvester relies on (inverter type code,
PV string signal numbering, signal id lists requested from the KPI and
config endpoints, static-info parameter ids) and the field-mapping tables
that translate raw signal ids or display names into canonical field names.

The mapping tables ship with built-in defaults and can be overridden at
startup from a JSON file with the same top-level keys::

    {
        "inverter": {"10008": "p_out_kw", ...},
        "meter": {"2101": "phase_a_voltage_v", ...},
        "sensor": {"Wind speed": "wind_speed_ms", ...},
        "smart_logger": {"IP address": "ip_address", ...}
    }

``inverter`` and ``meter`` are keyed by numeric signal id (as string).
``sensor`` and ``smart_logger`` are keyed by the display name the portal
returns with each signal; a numeric id is accepted there as well.

CHANGELOG:
- 2026-03-04: Merge legacy and unified inverter tables into one table
- 2026-03-02: Initial creation (STORY-103)

TODO:
- None
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Device classification
# ---------------------------------------------------------------------------

INVERTER_TYPE_ID: int = 23022
"""Portal type code of string inverters. Takes precedence over name heuristics."""

ORG_TREE_TYPE_IDS: tuple[int, ...] = (23089, 23091)
"""``typeIdInclude`` filter sent with organization tree requests."""

CHILD_DEVICE_MOC_TYPES: tuple[int, ...] = (
    20822, 20810, 20825, 20826, 20823, 20824, 20816,
    20838, 20836, 20835, 20844, 20847, 20865,
)
"""MOC types requested from the gateway children-list endpoint."""

# ---------------------------------------------------------------------------
# Static info parameter ids (children-list ``paramValues``)
# ---------------------------------------------------------------------------

PARAM_MODEL = "50009"
PARAM_VERSION = "50010"
PARAM_SERIAL = "50012"

# ---------------------------------------------------------------------------
# PV string signal numbering
# ---------------------------------------------------------------------------

STRING_COUNT: int = 48
"""Maximum number of PV string inputs per inverter."""

_LOW_RANGE_LAST = 24
_LOW_VOLTAGE_BASE = 11001
_LOW_STRIDE = 3
_HIGH_VOLTAGE_BASE = 11070
_HIGH_STRIDE = 2
_STATUS_BASE = 14000


@dataclass(frozen=True, slots=True)
class StringSignalIds:
    """Signal ids carrying the readings of one PV string.

    Attributes:
        index: 1-based string index.
        voltage: Signal id of the string voltage (V).
        current: Signal id of the string current (A).
        status: Signal id of the string status.
    """

    index: int
    voltage: str
    current: str
    status: str


def string_signal_ids(index: int) -> StringSignalIds:
    """Return the voltage/current/status signal ids of PV string *index*.

    Strings 1-24 use a stride-3 scheme starting at 11001 (voltage) and
    11002 (current). Strings 25-48 use a stride-2 scheme starting at 11070
    and 11071. Status ids are always ``14000 + index``.

    Raises:
        ValueError: If *index* is outside ``1..STRING_COUNT``.
    """
    if not 1 <= index <= STRING_COUNT:
        raise ValueError(f"PV string index must be in 1..{STRING_COUNT}, got {index}")
    if index <= _LOW_RANGE_LAST:
        voltage = _LOW_VOLTAGE_BASE + (index - 1) * _LOW_STRIDE
    else:
        voltage = _HIGH_VOLTAGE_BASE + (index - _LOW_RANGE_LAST - 1) * _HIGH_STRIDE
    return StringSignalIds(
        index=index,
        voltage=str(voltage),
        current=str(voltage + 1),
        status=str(_STATUS_BASE + index),
    )


ALL_STRINGS: tuple[StringSignalIds, ...] = tuple(
    string_signal_ids(i) for i in range(1, STRING_COUNT + 1)
)

# ---------------------------------------------------------------------------
# Signal id lists requested from the portal
# ---------------------------------------------------------------------------

_DEVICE_INFO_SIGNAL_IDS: tuple[int, ...] = (
    10032, 10025, 10029, 10019, 10022, 10006, 10020, 10021, 10027, 10028, 21029, 10018,
    10008, 10009, 10010, 10012, 10013, 10011, 10014, 10015, 10016, 10113, 10114, 10115,
    10023, 10024, 10047, 10051,
)

STRING_KPI_SIGNAL_IDS: tuple[int, ...] = tuple(
    dict.fromkeys(
        (
            *_DEVICE_INFO_SIGNAL_IDS,
            *(
                int(signal_id)
                for s in ALL_STRINGS[:_LOW_RANGE_LAST]
                for signal_id in (s.voltage, s.current)
            ),
            *range(_HIGH_VOLTAGE_BASE, 11120),
            *(int(s.status) for s in ALL_STRINGS),
        )
    )
)
"""Signal ids requested from ``device-real-kpi`` (device info, strings, status).

String 24 of the low scheme and string 25 of the high scheme share ids
11070/11071; each id is requested once.
"""

GATEWAY_DETAIL_SIGNAL_IDS: tuple[int, ...] = (
    10051, 21029, 24001, 50001, 50009, 50010, 50012,
    50018, 33595393, 50020, 50022, 14054, 11248,
)
"""Signal ids requested from ``query-moc-config-signal`` for gateways."""

# ---------------------------------------------------------------------------
# Default field-mapping tables
# ---------------------------------------------------------------------------

DEFAULT_INVERTER_MAP: dict[str, str] = {
    "10008": "p_out_kw",
    "10009": "q_out_kvar",
    "10010": "power_factor",
    "10011": "v_ab_v",
    "10012": "v_bc_v",
    "10013": "v_ca_v",
    "10014": "i_a_a",
    "10015": "i_b_a",
    "10016": "i_c_a",
    "10018": "f_grid_hz",
    "10019": "efficiency_pct",
    "10020": "temp_internal_c",
    "10021": "insulation_mohm",
    "10022": "e_daily_kwh",
    "10023": "e_total_kwh",
    "10025": "status",
    "10027": "p_peak_today_kw",
}

DEFAULT_METER_MAP: dict[str, str] = {
    "2101": "phase_a_voltage_v",
    "2102": "phase_b_voltage_v",
    "2103": "phase_c_voltage_v",
    "2104": "line_ab_voltage_v",
    "2105": "line_bc_voltage_v",
    "2106": "line_ca_voltage_v",
    "2107": "phase_a_current_a",
    "2108": "phase_b_current_a",
    "2109": "phase_c_current_a",
    "2110": "phase_a_active_power_kw",
    "2111": "phase_b_active_power_kw",
    "2112": "phase_c_active_power_kw",
    "2113": "active_power_kw",
    "2114": "reactive_power_kvar",
    "2115": "power_factor",
    "2116": "total_active_energy_kwh",
    "2117": "total_reactive_energy_kvarh",
    "2118": "total_positive_active_energy_kwh",
    "2119": "total_positive_reactive_energy_kvarh",
    "2120": "total_negative_active_energy_kwh",
    "2121": "total_negative_reactive_energy_kvarh",
}

DEFAULT_SENSOR_MAP: dict[str, str] = {
    "Wind speed": "wind_speed_ms",
    "Wind direction": "wind_direction_deg",
    "PV module temperature": "pv_module_temperature_c",
    "Ambient temperature": "ambient_temperature_c",
    "Total irradiance": "total_irradiance_wm2",
    "Daily irradiation": "daily_irradiation1_mjm2",
    "Total irradiance 2": "total_irradiance2_wm2",
    "Daily irradiation 2": "daily_irradiation2_mjm2",
    "Custom 1": "custom1",
    "Custom 2": "custom2",
    "Daily irradiation (kWh)": "daily_irradiation1_kwhm2",
    "Daily irradiation 2 (kWh)": "daily_irradiation2_kwhm2",
}

DEFAULT_SMART_LOGGER_MAP: dict[str, str] = {
    "IP address": "ip_address",
    "SN": "serial_number",
    "Software version": "software_version",
    "Model": "model",
    "Device name": "device_name",
    "Running status": "running_status",
}


class SignalTables(BaseModel):
    """Field-mapping tables per device category, loaded once at startup."""

    inverter: dict[str, str] = Field(default_factory=lambda: dict(DEFAULT_INVERTER_MAP))
    meter: dict[str, str] = Field(default_factory=lambda: dict(DEFAULT_METER_MAP))
    sensor: dict[str, str] = Field(default_factory=lambda: dict(DEFAULT_SENSOR_MAP))
    smart_logger: dict[str, str] = Field(
        default_factory=lambda: dict(DEFAULT_SMART_LOGGER_MAP)
    )


def load_signal_tables(path: str | Path | None = None) -> SignalTables:
    """Load the field-mapping tables, merging a JSON override over the defaults.

    Entries in the override file replace or extend the default entries of
    the same table; tables missing from the file keep their defaults.

    Args:
        path: JSON file with ``inverter``/``meter``/``sensor``/``smart_logger``
            objects, or ``None`` to use the defaults only.

    Returns:
        The merged :class:`SignalTables`.

    Raises:
        FileNotFoundError: If *path* is given but does not exist.
        ValueError: If the file is not a JSON object of string maps.
    """
    tables = SignalTables()
    if path is None:
        return tables

    raw = json.loads(Path(path).read_text(encoding="utf-8"))
    if not isinstance(raw, dict):
        raise ValueError(f"Signal table file {path} must contain a JSON object")

    override = SignalTables.model_validate(
        {key: value for key, value in raw.items() if key in SignalTables.model_fields}
    )
    for name in SignalTables.model_fields:
        if name in raw:
            getattr(tables, name).update(getattr(override, name))

    unknown = sorted(set(raw) - set(SignalTables.model_fields))
    if unknown:
        logger.warning("Ignoring unknown signal tables in %s: %s", path, unknown)

    logger.info(
        "Loaded signal tables from %s (inverter=%d, meter=%d, sensor=%d, smart_logger=%d)",
        path,
        len(tables.inverter),
        len(tables.meter),
        len(tables.sensor),
        len(tables.smart_logger),
    )
    return tables
