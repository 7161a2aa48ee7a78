"""
converters.py — lifestream External Record Converters

A converter turns one raw record, as returned by a provider API, into an
Event Record ready for the merge layer. Fetching is not done here.
Provider timestamps with or without an offset are stored in the local
offset, like every other record.

Built-in converters:
    strava.activity   → exercise.completed   (dedup key: strava_id)
    fitbit.weight     → health.weight        (dedup key: fitbit_id)
    fitbit.sleep      → health.sleep         (dedup key: fitbit_id)

Plugin Discovery:
    Third-party converters are discovered via entry points:

    [project.entry-points."lifestream.converters"]
    garmin_activity = "my_package:GarminActivityConverter"

Usage:
    from lifestream.converters import registry
    from lifestream.sync import merge_raw

    result = merge_raw(layout, registry.get("strava.activity"), activities)
"""

from __future__ import annotations
import importlib.metadata
import logging
import math
import warnings
from typing import Any, Dict, List, Optional, Protocol

from jsonschema import Draft7Validator
from jsonschema.exceptions import best_match

from .errors import ExternalRecordInvalidError, UnknownConverterError
from .record import EventRecord
from .sync import create_synced_record

logger = logging.getLogger(__name__)

ENTRY_POINT_GROUP = "lifestream.converters"


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------

class ConverterPlugin(Protocol):
    """Converts raw provider records of one shape into Event Records.

    Attributes:
        name: Registry name, ``<service>.<record shape>``.
        service: Service directory and ``source`` tag of produced records.
        external_id_field: Payload field holding the provider id.
        schema: JSON Schema of the raw provider record.
    """
    name: str
    service: str
    external_id_field: str
    schema: dict[str, Any]

    def convert(self, raw: dict[str, Any]) -> EventRecord:
        ...


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _compact(payload: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in payload.items() if v is not None}


class SchemaConverter:
    """Base class: validates the raw record against ``schema`` before converting."""
    name = ""
    service = ""
    external_id_field = ""
    schema: Dict[str, Any] = {"type": "object"}

    def __init__(self) -> None:
        self._validator = Draft7Validator(self.schema)

    def validate(self, raw: Any) -> None:
        error = best_match(self._validator.iter_errors(raw))
        if error is not None:
            where = ".".join(str(p) for p in error.path) or "<record>"
            raise ExternalRecordInvalidError(f"{self.name}: {where}: {error.message}")

    def convert(self, raw: Any) -> EventRecord:
        self.validate(raw)
        return self._convert(raw)

    def _convert(self, raw: Dict[str, Any]) -> EventRecord:
        raise NotImplementedError


# ---------------------------------------------------------------------------
# Strava
# ---------------------------------------------------------------------------

STRAVA_ACTIVITY_TYPES = {
    "Run": "run",
    "Ride": "cycle",
    "Swim": "swim",
    "Walk": "walk",
    "Hike": "walk",
    "WeightTraining": "strength",
    "Workout": "strength",
    "NordicSki": "ski",
    "AlpineSki": "ski",
    "BackcountrySki": "ski",
}


def map_strava_activity_type(strava_type: str) -> str:
    return STRAVA_ACTIVITY_TYPES.get(strava_type, "other")


class StravaActivityConverter(SchemaConverter):
    name = "strava.activity"
    service = "strava"
    external_id_field = "strava_id"
    schema = {
        "type": "object",
        "required": ["id", "type", "start_date", "moving_time", "distance"],
        "properties": {
            "id": {"type": ["integer", "string"]},
            "name": {"type": "string"},
            "type": {"type": "string"},
            "start_date": {"type": "string"},
            "moving_time": {"type": "number"},
            "distance": {"type": "number"},
            "average_heartrate": {"type": ["number", "null"]},
        },
    }

    def _convert(self, raw: Dict[str, Any]) -> EventRecord:
        hr = raw.get("average_heartrate")
        payload = _compact({
            "activity": map_strava_activity_type(raw["type"]),
            "duration_min": _round_half_up(raw["moving_time"] / 60),
            "distance_km": round(raw["distance"] / 1000, 2),
            "avg_hr": _round_half_up(hr) if hr else None,
            "notes": raw.get("name"),
            "strava_id": str(raw["id"]),
        })
        return create_synced_record("exercise.completed", payload, raw["start_date"], self.service)


# ---------------------------------------------------------------------------
# Fitbit
# ---------------------------------------------------------------------------

class FitbitWeightConverter(SchemaConverter):
    name = "fitbit.weight"
    service = "fitbit"
    external_id_field = "fitbit_id"
    schema = {
        "type": "object",
        "required": ["logId", "date", "time", "weight"],
        "properties": {
            "logId": {"type": ["integer", "string"]},
            "date": {"type": "string"},
            "time": {"type": "string"},
            "weight": {"type": "number"},
        },
    }

    def _convert(self, raw: Dict[str, Any]) -> EventRecord:
        payload = {
            "value": raw["weight"],
            "unit": "kg",
            "fitbit_id": str(raw["logId"]),
        }
        return create_synced_record(
            "health.weight", payload, f"{raw['date']}T{raw['time']}", self.service
        )


class FitbitSleepConverter(SchemaConverter):
    name = "fitbit.sleep"
    service = "fitbit"
    external_id_field = "fitbit_id"
    schema = {
        "type": "object",
        "required": ["logId", "startTime", "duration"],
        "properties": {
            "logId": {"type": ["integer", "string"]},
            "startTime": {"type": "string"},
            "duration": {"type": "number"},
            "efficiency": {"type": "number"},
            "levels": {"type": "object"},
        },
    }

    def _convert(self, raw: Dict[str, Any]) -> EventRecord:
        summary = (raw.get("levels") or {}).get("summary") or {}
        payload = _compact({
            "duration_min": _round_half_up(raw["duration"] / 1000 / 60),
            "quality": raw.get("efficiency"),
            "deep_min": (summary.get("deep") or {}).get("minutes"),
            "rem_min": (summary.get("rem") or {}).get("minutes"),
            "fitbit_id": str(raw["logId"]),
        })
        return create_synced_record("health.sleep", payload, raw["startTime"], self.service)


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

class ConverterRegistry:
    """Central registry of converters, keyed by name."""

    def __init__(self) -> None:
        self._converters: Dict[str, ConverterPlugin] = {}
        self._plugin_sources: Dict[str, str] = {}  # name -> module:class
        self._discovered: bool = False

    def register(self, converter: ConverterPlugin) -> None:
        """Register a converter.

        Raises:
            ValueError: If the name is already taken.
        """
        if converter.name in self._converters:
            existing = self._converters[converter.name]
            raise ValueError(
                f"Converter name collision for '{converter.name}'. "
                f"Existing: {existing.__class__.__module__}.{existing.__class__.__name__}. "
                f"New: {converter.__class__.__module__}.{converter.__class__.__name__}."
            )
        self._converters[converter.name] = converter
        self._plugin_sources[converter.name] = (
            f"{converter.__class__.__module__}:{converter.__class__.__name__}"
        )

    def get(self, name: str) -> ConverterPlugin:
        """Look up a converter.

        Raises:
            UnknownConverterError: If nothing is registered under ``name``.
        """
        converter = self._converters.get(name)
        if converter is None:
            raise UnknownConverterError(
                f"name={name!r} available={sorted(self._converters)}"
            )
        return converter

    def list_converters(self) -> List[ConverterPlugin]:
        return [self._converters[k] for k in sorted(self._converters)]

    def source_of(self, name: str) -> Optional[str]:
        return self._plugin_sources.get(name)

    def discover_plugins(self) -> None:
        """Load converters registered under the ``lifestream.converters`` entry-point group.

        Idempotent. A plugin that fails to load emits a warning; the others
        are still loaded.
        """
        if self._discovered:
            return

        for ep in importlib.metadata.entry_points(group=ENTRY_POINT_GROUP):
            try:
                plugin = ep.load()
                instance = plugin() if isinstance(plugin, type) else plugin
                self.register(instance)
                self._plugin_sources[instance.name] = f"{ep.module}:{ep.attr}"
                logger.info("Loaded converter %s from %s", instance.name, ep.value)
            except Exception as e:
                # One bad plugin must not break the others
                warnings.warn(f"Failed to load converter plugin '{ep.name}': {e}")

        self._discovered = True


def default_registry() -> ConverterRegistry:
    reg = ConverterRegistry()
    reg.register(StravaActivityConverter())
    reg.register(FitbitWeightConverter())
    reg.register(FitbitSleepConverter())
    return reg


# ---------------------------------------------------------------------------
# Global Registry Instance
# ---------------------------------------------------------------------------

registry = default_registry()
