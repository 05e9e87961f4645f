"""Tests for event parsing, event windows and user parameters."""

import pickle
from datetime import timedelta

import pytest

from conftest import BASE_TIME, at, bsl, drink, insulin, meal
from metabolic_twin.data_models import (
    AlcoholType,
    BSLMetadata,
    BSLUnit,
    EventType,
    EventWindow,
    InsulinMetadata,
    InsulinType,
    MGDL_PER_MMOL,
    PhysiologicalEvent,
    UserModelParameters,
    parse_events,
)


class TestPhysiologicalEvent:
    """Typed events and their derived properties."""

    def test_metadata_defaults_by_type(self):
        event = PhysiologicalEvent("e1", BASE_TIME, "insulin", 4.0)
        assert event.event_type == EventType.INSULIN
        assert event.insulin_type == InsulinType.BOLUS

    def test_mismatched_metadata_rejected(self):
        with pytest.raises(ValueError):
            PhysiologicalEvent("e1", BASE_TIME, EventType.MEAL, 40, InsulinMetadata())

    def test_meal_carbs_fall_back_to_value(self):
        event = PhysiologicalEvent("e1", BASE_TIME, EventType.MEAL, 35)
        assert event.carbs == 35.0
        assert event.alcohol_units == 0.0

    def test_drink_defaults_to_mixed(self):
        event = drink(2, alcohol_type=None)
        assert event.alcohol_type == AlcoholType.MIXED

    def test_mgdl_reading_converted(self):
        event = bsl(180.0, unit=BSLUnit.MG_DL)
        assert event.bsl_mmol == pytest.approx(180.0 / MGDL_PER_MMOL)
        assert event.bsl_mmol == pytest.approx(9.99, abs=0.01)

    def test_to_dict_is_json_friendly(self):
        data = meal(45, description="pasta").to_dict()
        assert data["event_type"] == "meal"
        assert data["timestamp"] == BASE_TIME.isoformat()
        assert data["metadata"]["description"] == "pasta"


class TestFromDict:
    """Raw event-log records."""

    def test_camel_case_record(self):
        event = PhysiologicalEvent.from_dict({
            "id": "abc",
            "timestamp": "2024-06-01T09:00:00Z",
            "eventType": "meal",
            "value": 0,
            "metadata": {"alcoholUnits": 2, "alcoholType": "wine"},
        })
        assert event.timestamp == at(-60)
        assert event.alcohol_units == 2.0
        assert event.alcohol_type == AlcoholType.WINE

    def test_insulin_type_key(self):
        event = PhysiologicalEvent.from_dict({
            "id": 7,
            "timestamp": BASE_TIME,
            "event_type": "insulin",
            "value": "18",
            "metadata": {"type": "basal"},
        })
        assert event.id == "7"
        assert event.value == 18.0
        assert event.insulin_type == InsulinType.BASAL

    def test_bsl_source_defaults_to_manual(self):
        event = PhysiologicalEvent.from_dict({
            "id": "r1",
            "timestamp": BASE_TIME.isoformat(),
            "eventType": "bsl",
            "value": 5.5,
        })
        assert event.source == "manual"
        assert isinstance(event.metadata, BSLMetadata)

    def test_parse_events_skips_malformed(self):
        records = [
            {"id": "ok", "timestamp": BASE_TIME, "eventType": "bsl", "value": 6.1},
            {"id": "bad-type", "timestamp": BASE_TIME, "eventType": "sleep", "value": 1},
            {"id": "no-value", "timestamp": BASE_TIME, "eventType": "meal"},
            {"id": "bad-time", "timestamp": "yesterday", "eventType": "meal", "value": 3},
        ]
        events = parse_events(records)
        assert [e.id for e in events] == ["ok"]

    def test_parse_events_skips_non_mappings(self):
        records = [
            None,
            "insulin 4u",
            {"id": "meta", "timestamp": BASE_TIME, "eventType": "meal", "value": 30, "metadata": "x"},
            {"id": "ok", "timestamp": BASE_TIME, "eventType": "insulin", "value": 4},
        ]
        assert [e.id for e in parse_events(records)] == ["ok"]


class TestEventWindow:
    """Per-type lookbacks when building a window."""

    def test_lookbacks_applied(self):
        events = [
            insulin(5, minutes=-23 * 60),
            insulin(5, minutes=-25 * 60),
            meal(40, minutes=-5 * 60),
            meal(40, minutes=-7 * 60),
            bsl(6.0, minutes=-11 * 60),
            bsl(6.0, minutes=-13 * 60),
            meal(40, minutes=30),
        ]
        window = EventWindow.build(events, BASE_TIME)
        assert len(window.insulin_events) == 1
        assert len(window.meal_events) == 1
        assert len(window.bsl_events) == 1

    def test_events_sorted_by_time(self):
        late, early = meal(20, minutes=-10), meal(30, minutes=-120)
        window = EventWindow.build([late, early], BASE_TIME)
        assert window.meal_events == (early, late)

    def test_drinks_use_longer_lookback(self):
        old_drink = drink(4, minutes=-10 * 60)
        window = EventWindow.build([old_drink], BASE_TIME)
        assert window.meal_events == ()
        assert window.drink_events == (old_drink,)

    def test_drink_events_fall_back_to_meals(self):
        beer = drink(2, minutes=-30)
        window = EventWindow((), (beer, meal(20)), (), BASE_TIME, BASE_TIME)
        assert window.drink_events == (beer,)

    def test_end_before_start_rejected(self):
        with pytest.raises(ValueError):
            EventWindow.build([], BASE_TIME, BASE_TIME - timedelta(minutes=1))


class TestUserModelParameters:
    """Validation and overrides."""

    def test_defaults(self):
        params = UserModelParameters()
        assert params.insulin_to_carb_ratio == 10.0
        assert params.correction_factor == 2.0
        assert params.target_bsl == 6.0
        assert params.body_weight_kg == 70.0
        assert dict(params.circadian_adjustments) == {}

    @pytest.mark.parametrize("field_name", [
        "insulin_to_carb_ratio", "correction_factor", "target_bsl", "body_weight_kg",
    ])
    def test_non_positive_rejected(self, field_name):
        with pytest.raises(ValueError):
            UserModelParameters(**{field_name: 0})

    def test_adjustment_hour_out_of_range(self):
        with pytest.raises(ValueError):
            UserModelParameters(circadian_adjustments={24: 1.1})

    def test_adjustments_are_read_only(self):
        params = UserModelParameters(circadian_adjustments={"7": 1.2})
        assert params.circadian_adjustments[7] == 1.2
        with pytest.raises(TypeError):
            params.circadian_adjustments[8] = 1.1

    def test_with_overrides_accepts_camel_case(self):
        params = UserModelParameters.with_overrides(
            {"insulinToCarbRatio": 12, "targetBSL": 5.5, "correctionFactor": None}
        )
        assert params.insulin_to_carb_ratio == 12
        assert params.target_bsl == 5.5
        assert params.correction_factor == 2.0

    def test_with_overrides_rejects_unknown(self):
        with pytest.raises(ValueError):
            UserModelParameters.with_overrides({"carbRatio": 12})

    def test_pickle_round_trip(self):
        params = UserModelParameters(body_weight_kg=82, circadian_adjustments={6: 1.3})
        restored = pickle.loads(pickle.dumps(params))
        assert restored.body_weight_kg == 82
        assert dict(restored.circadian_adjustments) == {6: 1.3}
