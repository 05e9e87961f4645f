"""Tests for blood alcohol and its insulin sensitivity effect."""

import math
from datetime import timedelta

import pytest

from conftest import BASE_TIME, at, drink, meal
from metabolic_twin.data_models import AlcoholType, RiskLevel
from metabolic_twin.metabolism.alcohol_metabolism import (
    AlcoholMetabolismModel,
    adjust_elimination_rate,
)


@pytest.fixture
def alcohol():
    return AlcoholMetabolismModel()


class TestElimination:

    def test_reference_weight_unchanged(self):
        assert adjust_elimination_rate(8, 70) == pytest.approx(8)

    def test_heavier_body_clears_faster(self):
        assert adjust_elimination_rate(8, 112) == pytest.approx(8 * 1.6 ** 0.25)
        assert adjust_elimination_rate(8, 50) < 8

    def test_time_until_sober(self, alcohol):
        assert alcohol.estimate_time_until_sober(40, 70) == pytest.approx(300)


class TestBloodAlcoholLevel:

    def test_zero_at_drink_time(self, alcohol):
        assert alcohol.calculate_bal(20, 70, 0, AlcoholType.SPIRIT) == 0

    def test_widmark_during_absorption(self, alcohol):
        absorbed = 20 * (1 - math.exp(-30 / 15))
        expected = (absorbed - 4) / (70 * 0.6) * 10
        assert alcohol.calculate_bal(20, 70, 30, AlcoholType.SPIRIT) == pytest.approx(expected)

    def test_cleared_after_elimination(self, alcohol):
        assert alcohol.calculate_bal(10, 70, 300, AlcoholType.BEER) == 0


class TestAlcoholState:

    def test_three_beers_peak_effect_at_one_hour(self, alcohol):
        state = alcohol.alcohol_state(60, 3, AlcoholType.BEER)
        assert state.sensitivity_modifier == pytest.approx(0.85)
        assert state.in_system > 0
        assert state.absorbing + state.in_system + state.eliminated == pytest.approx(30)

    def test_ramp_up(self, alcohol):
        state = alcohol.alcohol_state(30, 3, AlcoholType.BEER)
        assert state.sensitivity_modifier == pytest.approx(0.925)

    def test_effect_outlasts_alcohol(self, alcohol):
        state = alcohol.alcohol_state(6 * 60, 3, AlcoholType.BEER)
        assert state.in_system == 0
        assert 0.85 < state.sensitivity_modifier < 1.0

    def test_effect_over_at_duration(self, alcohol):
        assert alcohol.alcohol_state(12 * 60, 3, AlcoholType.BEER).sensitivity_modifier == 1.0


class TestBloodAlcohol:

    def test_three_beers(self, alcohol):
        result = alcohol.blood_alcohol([drink(3, minutes=-60)], BASE_TIME)
        assert result.insulin_sensitivity_modifier == pytest.approx(0.85)
        assert result.has_alcohol
        assert result.blood_alcohol_level > 0
        assert result.estimated_sober_time == at(11 * 60)

    def test_effect_gone_after_twelve_hours(self, alcohol):
        result = alcohol.blood_alcohol([drink(3, minutes=-12 * 60)], BASE_TIME)
        assert result.insulin_sensitivity_modifier == 1.0
        assert result.drink_contributions == ()
        assert result.estimated_sober_time is None

    def test_modifiers_multiply(self, alcohol):
        events = [
            drink(1, minutes=-60, alcohol_type=AlcoholType.WINE),
            drink(1, minutes=-60, alcohol_type=AlcoholType.WINE),
        ]
        result = alcohol.blood_alcohol(events, BASE_TIME)
        assert result.insulin_sensitivity_modifier == pytest.approx(0.64)
        assert len(result.drink_contributions) == 2

    def test_ignores_plain_meals_and_future_drinks(self, alcohol):
        result = alcohol.blood_alcohol([meal(50, minutes=-30), drink(2, minutes=10)], BASE_TIME)
        assert result.alcohol_in_system == 0
        assert result.insulin_sensitivity_modifier == 1.0

    def test_untyped_drink_is_mixed(self, alcohol):
        result = alcohol.blood_alcohol([drink(2, minutes=-30, alcohol_type=None)], BASE_TIME)
        assert result.drink_contributions[0].drink_type == AlcoholType.MIXED
        assert result.insulin_sensitivity_modifier == pytest.approx(0.9)

    def test_heavier_drinker_lower_bal(self, alcohol):
        events = [drink(4, minutes=-45)]
        light = alcohol.blood_alcohol(events, BASE_TIME, body_weight_kg=55)
        heavy = alcohol.blood_alcohol(events, BASE_TIME, body_weight_kg=100)
        assert heavy.blood_alcohol_level < light.blood_alcohol_level

    def test_project(self, alcohol):
        points = alcohol.project([drink(3)], BASE_TIME, at(120), resolution_minutes=60)
        assert [p.timestamp for p in points] == [BASE_TIME, at(60), at(120)]
        assert points[0].bal == 0
        assert points[1].sensitivity_modifier == pytest.approx(0.85)


class TestHypoglycemiaRiskWindow:

    @pytest.mark.parametrize("units,severity", [
        (1, RiskLevel.LOW),
        (2, RiskLevel.LOW),
        (3, RiskLevel.MEDIUM),
        (4, RiskLevel.MEDIUM),
        (6, RiskLevel.HIGH),
    ])
    def test_severity(self, alcohol, units, severity):
        assert alcohol.hypoglycemia_risk_window(BASE_TIME, units).severity == severity

    def test_window_six_to_twelve_hours(self, alcohol):
        window = alcohol.hypoglycemia_risk_window(BASE_TIME, 3)
        assert window.risk_start_time == BASE_TIME + timedelta(hours=6)
        assert window.risk_end_time == BASE_TIME + timedelta(hours=12)
        assert window.recommendation.startswith("Check BSL more frequently")
