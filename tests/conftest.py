"""Shared fixtures and event factories."""

import itertools
from datetime import datetime, timedelta, timezone

import pytest

from metabolic_twin.config import EngineConfig
from metabolic_twin.data_models import (
    AlcoholType,
    BSLMetadata,
    EventType,
    InsulinMetadata,
    InsulinType,
    MealMetadata,
    PhysiologicalEvent,
)
from metabolic_twin.prediction_engine import BSLPredictionModel

# 10am: sensitivity 1.0 and no dawn effect through to 11am
BASE_TIME = datetime(2024, 6, 1, 10, 0, tzinfo=timezone.utc)

_ids = itertools.count(1)


def at(minutes: float) -> datetime:
    """Timestamp ``minutes`` after BASE_TIME (negative for before)."""
    return BASE_TIME + timedelta(minutes=minutes)


def insulin(units, minutes=0.0, insulin_type=InsulinType.BOLUS):
    return PhysiologicalEvent(
        id=f"ins-{next(_ids)}",
        timestamp=at(minutes),
        event_type=EventType.INSULIN,
        value=units,
        metadata=InsulinMetadata(insulin_type=insulin_type),
    )


def meal(carbs, minutes=0.0, description=None):
    return PhysiologicalEvent(
        id=f"meal-{next(_ids)}",
        timestamp=at(minutes),
        event_type=EventType.MEAL,
        value=carbs,
        metadata=MealMetadata(carbs=carbs, description=description),
    )


def drink(units, minutes=0.0, alcohol_type=AlcoholType.BEER, carbs=0.0):
    return PhysiologicalEvent(
        id=f"drink-{next(_ids)}",
        timestamp=at(minutes),
        event_type=EventType.MEAL,
        value=carbs,
        metadata=MealMetadata(carbs=carbs, alcohol_units=units, alcohol_type=alcohol_type),
    )


def bsl(value, minutes=0.0, **metadata):
    return PhysiologicalEvent(
        id=f"bsl-{next(_ids)}",
        timestamp=at(minutes),
        event_type=EventType.BSL,
        value=value,
        metadata=BSLMetadata(**metadata),
    )


@pytest.fixture
def base_time():
    return BASE_TIME


@pytest.fixture
def sequential_config():
    return EngineConfig(
        resolution_minutes=5,
        parallel_time_series=False,
        max_workers=None,
        parallel_min_points=288,
        log_level="WARNING",
    )


@pytest.fixture
def model(sequential_config):
    return BSLPredictionModel(config=sequential_config)
