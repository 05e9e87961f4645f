"""Data layer definitions for the metabolic state engine."""

from __future__ import annotations

from dataclasses import dataclass, field, fields, is_dataclass
from datetime import datetime, timedelta
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union
import logging


__all__ = [
    "AlcoholType",
    "BSLMetadata",
    "BSLReading",
    "BSLUnit",
    "DEFAULT_USER_PARAMETERS",
    "EventType",
    "EventWindow",
    "ExerciseIntensity",
    "ExerciseMetadata",
    "InsulinMetadata",
    "InsulinType",
    "MealMetadata",
    "MGDL_PER_MMOL",
    "PhysiologicalEvent",
    "RiskLevel",
    "UserModelParameters",
    "parse_events",
    "serialize",
]

logger = logging.getLogger(__name__)

# mg/dL = mmol/L * 18.0182
MGDL_PER_MMOL = 18.0182

INSULIN_LOOKBACK = timedelta(hours=24)
MEAL_LOOKBACK = timedelta(hours=6)
BSL_LOOKBACK = timedelta(hours=12)
# Alcohol sensitivity effects outlast the meal lookback (spirits: 16h).
ALCOHOL_LOOKBACK = timedelta(hours=24)


class EventType(str, Enum):
    """Kinds of records written by the event log."""

    INSULIN = "insulin"
    MEAL = "meal"
    BSL = "bsl"
    EXERCISE = "exercise"


class InsulinType(str, Enum):
    """Fast-acting bolus or long-acting basal insulin."""

    BOLUS = "bolus"
    BASAL = "basal"


class AlcoholType(str, Enum):
    """Drink categories with distinct absorption kinetics."""

    BEER = "beer"
    WINE = "wine"
    SPIRIT = "spirit"
    MIXED = "mixed"


class BSLUnit(str, Enum):
    MMOL_L = "mmol/L"
    MG_DL = "mg/dL"


class ExerciseIntensity(str, Enum):
    LOW = "low"
    MODERATE = "moderate"
    HIGH = "high"


class RiskLevel(str, Enum):
    """Three-step risk grading shared by stacking and alcohol checks."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


# =============================================================================
# JSON serialization
# =============================================================================


def serialize(value: Any) -> Any:
    """Convert value objects into JSON-compatible primitives."""
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if is_dataclass(value) and not isinstance(value, type):
        return {f.name: serialize(getattr(value, f.name)) for f in fields(value)}
    if isinstance(value, Mapping):
        return {
            (k.value if isinstance(k, Enum) else k): serialize(v)
            for k, v in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [serialize(v) for v in value]
    return value


class SerializableMixin:
    """Adds ``to_dict`` to frozen result dataclasses."""

    def to_dict(self) -> Dict[str, Any]:
        return serialize(self)


# =============================================================================
# Event metadata (tagged by EventType)
# =============================================================================


@dataclass(frozen=True)
class InsulinMetadata(SerializableMixin):
    insulin_type: InsulinType = InsulinType.BOLUS


@dataclass(frozen=True)
class MealMetadata(SerializableMixin):
    """Meal payload; drinks are logged as meals carrying alcohol units."""

    carbs: Optional[float] = None
    description: Optional[str] = None
    alcohol_units: Optional[float] = None
    alcohol_type: Optional[AlcoholType] = None


@dataclass(frozen=True)
class BSLMetadata(SerializableMixin):
    unit: BSLUnit = BSLUnit.MMOL_L
    source: str = "manual"


@dataclass(frozen=True)
class ExerciseMetadata(SerializableMixin):
    intensity: ExerciseIntensity = ExerciseIntensity.MODERATE
    exercise_type: Optional[str] = None


EventMetadata = Union[InsulinMetadata, MealMetadata, BSLMetadata, ExerciseMetadata]

_METADATA_BY_TYPE = {
    EventType.INSULIN: InsulinMetadata,
    EventType.MEAL: MealMetadata,
    EventType.BSL: BSLMetadata,
    EventType.EXERCISE: ExerciseMetadata,
}


@dataclass(frozen=True)
class PhysiologicalEvent(SerializableMixin):
    """Immutable fact read from the event log.

    ``value`` means units for insulin, grams of carbs for meals, the reading
    for BSL events (in ``metadata.unit``) and minutes for exercise.
    """

    id: str
    timestamp: datetime
    event_type: EventType
    value: float
    metadata: Optional[EventMetadata] = None

    def __post_init__(self):
        object.__setattr__(self, "event_type", EventType(self.event_type))
        expected = _METADATA_BY_TYPE[self.event_type]
        if self.metadata is None:
            object.__setattr__(self, "metadata", expected())
        elif not isinstance(self.metadata, expected):
            raise ValueError(
                f"{self.event_type} event {self.id!r} carries "
                f"{type(self.metadata).__name__}, expected {expected.__name__}"
            )

    @property
    def insulin_type(self) -> InsulinType:
        if isinstance(self.metadata, InsulinMetadata):
            return self.metadata.insulin_type
        return InsulinType.BOLUS

    @property
    def carbs(self) -> float:
        """Meal carbs, falling back to the event value."""
        if isinstance(self.metadata, MealMetadata) and self.metadata.carbs is not None:
            return float(self.metadata.carbs)
        return float(self.value)

    @property
    def alcohol_units(self) -> float:
        if isinstance(self.metadata, MealMetadata) and self.metadata.alcohol_units:
            return float(self.metadata.alcohol_units)
        return 0.0

    @property
    def alcohol_type(self) -> AlcoholType:
        if isinstance(self.metadata, MealMetadata) and self.metadata.alcohol_type:
            return self.metadata.alcohol_type
        return AlcoholType.MIXED

    @property
    def bsl_mmol(self) -> float:
        """BSL reading normalised to mmol/L."""
        if isinstance(self.metadata, BSLMetadata) and self.metadata.unit == BSLUnit.MG_DL:
            return float(self.value) / MGDL_PER_MMOL
        return float(self.value)

    @property
    def source(self) -> str:
        if isinstance(self.metadata, BSLMetadata):
            return self.metadata.source
        return "manual"

    @classmethod
    def from_dict(cls, record: Mapping[str, Any]) -> PhysiologicalEvent:
        """Build a typed event from a raw event-log record.

        Accepts the camelCase keys used by the logging layer
        (``eventType``, ``alcoholUnits``...) as well as snake_case.
        """
        event_type = EventType(_pick(record, "event_type", "eventType"))
        timestamp = record["timestamp"]
        if isinstance(timestamp, str):
            timestamp = datetime.fromisoformat(timestamp.replace("Z", "+00:00"))
        if not isinstance(timestamp, datetime):
            raise ValueError(f"Unsupported timestamp {timestamp!r}")

        raw_meta = record.get("metadata") or {}
        if event_type == EventType.INSULIN:
            metadata = InsulinMetadata(
                insulin_type=InsulinType(
                    _pick(raw_meta, "insulin_type", "type", default="bolus")
                ),
            )
        elif event_type == EventType.MEAL:
            alcohol_type = _pick(raw_meta, "alcohol_type", "alcoholType")
            metadata = MealMetadata(
                carbs=_optional_float(raw_meta.get("carbs")),
                description=raw_meta.get("description"),
                alcohol_units=_optional_float(
                    _pick(raw_meta, "alcohol_units", "alcoholUnits")
                ),
                alcohol_type=AlcoholType(alcohol_type) if alcohol_type else None,
            )
        elif event_type == EventType.BSL:
            metadata = BSLMetadata(
                unit=BSLUnit(raw_meta.get("unit", BSLUnit.MMOL_L.value)),
                source=raw_meta.get("source") or "manual",
            )
        else:
            metadata = ExerciseMetadata(
                intensity=ExerciseIntensity(raw_meta.get("intensity", "moderate")),
                exercise_type=_pick(raw_meta, "exercise_type", "exerciseType"),
            )

        return cls(
            id=str(record["id"]),
            timestamp=timestamp,
            event_type=event_type,
            value=float(record["value"]),
            metadata=metadata,
        )


def _pick(mapping: Mapping[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        if mapping.get(key) is not None:
            return mapping[key]
    return default


def _optional_float(value: Any) -> Optional[float]:
    return None if value is None else float(value)


def parse_events(records: Iterable[Mapping[str, Any]]) -> List[PhysiologicalEvent]:
    """Parse raw records, dropping any that do not form a valid event."""
    events: List[PhysiologicalEvent] = []
    for record in records:
        if not isinstance(record, Mapping):
            logger.debug(f"Skipping non-mapping event record {record!r}")
            continue
        try:
            events.append(PhysiologicalEvent.from_dict(record))
        except (AttributeError, KeyError, TypeError, ValueError) as exc:
            logger.debug(f"Skipping malformed event record {record.get('id')!r}: {exc}")
    return events


@dataclass(frozen=True)
class BSLReading(SerializableMixin):
    """A bare (timestamp, mmol/L) sample used by pattern analysis."""

    timestamp: datetime
    value: float

    @classmethod
    def from_event(cls, event: PhysiologicalEvent) -> BSLReading:
        return cls(timestamp=event.timestamp, value=event.bsl_mmol)


# =============================================================================
# Event window
# =============================================================================


def _sorted_between(
    events: Iterable[PhysiologicalEvent],
    event_type: EventType,
    start: datetime,
    end: datetime,
) -> Tuple[PhysiologicalEvent, ...]:
    selected = [
        e for e in events if e.event_type == event_type and start <= e.timestamp <= end
    ]
    return tuple(sorted(selected, key=lambda e: e.timestamp))


@dataclass(frozen=True)
class EventWindow(SerializableMixin):
    """Read-only, time-bounded view over the event log."""

    insulin_events: Tuple[PhysiologicalEvent, ...]
    meal_events: Tuple[PhysiologicalEvent, ...]
    bsl_events: Tuple[PhysiologicalEvent, ...]
    start_time: datetime
    end_time: datetime
    alcohol_events: Tuple[PhysiologicalEvent, ...] = ()

    @classmethod
    def build(
        cls,
        events: Iterable[PhysiologicalEvent],
        start_time: datetime,
        end_time: Optional[datetime] = None,
    ) -> EventWindow:
        """Categorise events with per-type lookbacks from ``start_time``."""
        end_time = end_time or start_time
        if end_time < start_time:
            raise ValueError("end_time must not precede start_time")
        events = list(events)
        meals_with_alcohol = [
            e for e in events if e.event_type == EventType.MEAL and e.alcohol_units > 0
        ]
        return cls(
            insulin_events=_sorted_between(
                events, EventType.INSULIN, start_time - INSULIN_LOOKBACK, end_time
            ),
            meal_events=_sorted_between(
                events, EventType.MEAL, start_time - MEAL_LOOKBACK, end_time
            ),
            bsl_events=_sorted_between(
                events, EventType.BSL, start_time - BSL_LOOKBACK, end_time
            ),
            start_time=start_time,
            end_time=end_time,
            alcohol_events=_sorted_between(
                meals_with_alcohol, EventType.MEAL, start_time - ALCOHOL_LOOKBACK, end_time
            ),
        )

    @classmethod
    def empty(cls, at_time: datetime) -> EventWindow:
        return cls((), (), (), at_time, at_time)

    @property
    def drink_events(self) -> Tuple[PhysiologicalEvent, ...]:
        """Alcohol-bearing meals; falls back to the meal list for hand-built windows."""
        if self.alcohol_events:
            return self.alcohol_events
        return tuple(e for e in self.meal_events if e.alcohol_units > 0)


# =============================================================================
# User parameters
# =============================================================================

_CAMEL_TO_SNAKE = {
    "insulinToCarbRatio": "insulin_to_carb_ratio",
    "correctionFactor": "correction_factor",
    "targetBSL": "target_bsl",
    "bodyWeightKg": "body_weight_kg",
    "circadianAdjustments": "circadian_adjustments",
}


@dataclass(frozen=True)
class UserModelParameters(SerializableMixin):
    """Fully populated, validated per-user configuration.

    Defaults are conservative population values:
    ICR 10 g/U, CF 2.0 mmol/L per unit, target 6.0 mmol/L, 70 kg.
    """

    insulin_to_carb_ratio: float = 10.0
    correction_factor: float = 2.0
    target_bsl: float = 6.0
    body_weight_kg: float = 70.0
    circadian_adjustments: Mapping[int, float] = field(default_factory=dict, hash=False)

    def __post_init__(self):
        for name in ("insulin_to_carb_ratio", "correction_factor", "target_bsl", "body_weight_kg"):
            value = getattr(self, name)
            if value is None or not value > 0:
                raise ValueError(f"{name} must be positive, got {value!r}")
        adjustments = {}
        for hour, multiplier in dict(self.circadian_adjustments or {}).items():
            hour = int(hour)
            if not 0 <= hour <= 23:
                raise ValueError(f"circadian adjustment hour out of range: {hour}")
            if not multiplier > 0:
                raise ValueError(f"circadian multiplier must be positive, got {multiplier!r}")
            adjustments[hour] = float(multiplier)
        object.__setattr__(self, "circadian_adjustments", MappingProxyType(adjustments))

    def __reduce__(self):
        return (
            self.__class__,
            (
                self.insulin_to_carb_ratio,
                self.correction_factor,
                self.target_bsl,
                self.body_weight_kg,
                dict(self.circadian_adjustments),
            ),
        )

    @classmethod
    def with_overrides(
        cls, overrides: Optional[Mapping[str, Any]] = None
    ) -> UserModelParameters:
        """Merge a partial mapping over the defaults."""
        values: Dict[str, Any] = {}
        for key, value in (overrides or {}).items():
            if value is None:
                continue
            name = _CAMEL_TO_SNAKE.get(key, key)
            if name not in {f.name for f in fields(cls)}:
                raise ValueError(f"Unknown user parameter {key!r}")
            values[name] = value
        return cls(**values)


DEFAULT_USER_PARAMETERS = UserModelParameters()
