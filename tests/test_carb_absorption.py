"""Tests for GI-driven carbohydrate absorption."""

import pytest

from conftest import BASE_TIME, at, insulin, meal
from metabolic_twin.metabolism.carb_absorption import (
    CarbAbsorptionModel,
    estimate_carb_bsl_effect,
    get_absorption_params,
)


@pytest.fixture
def carbs():
    return CarbAbsorptionModel()


class TestGlycemicIndex:

    @pytest.mark.parametrize("description,expected", [
        ("White bread toast", 75),
        ("Brown rice bowl", 73),
        ("lentils", 28),
        ("white fish", 70),
        ("wholegrain crackers", 50),
        ("high fibre muesli", 45),
        ("steak", 60),
        (None, 60),
        ("", 60),
    ])
    def test_estimate(self, carbs, description, expected):
        assert carbs.estimate_glycemic_index(description) == expected

    def test_params_at_extremes(self):
        fast = get_absorption_params(100)
        assert fast.peak_minutes == pytest.approx(30)
        assert fast.duration_minutes == pytest.approx(120)
        slow = get_absorption_params(0)
        assert slow.peak_minutes == pytest.approx(120)
        assert slow.duration_minutes == pytest.approx(300)
        assert slow.half_life_minutes == pytest.approx(100)


class TestAbsorption:
    """Single-meal curve."""

    def test_before_meal(self, carbs):
        point = carbs.absorption(-5, 60, 75)
        assert point.carbs_on_board == 60
        assert point.absorption_rate == 0

    def test_at_peak_forty_percent_absorbed(self, carbs):
        peak = get_absorption_params(75).peak_minutes
        point = carbs.absorption(peak, 60, 75)
        assert point.carbs_absorbed == pytest.approx(24.0)
        assert point.carbs_on_board == pytest.approx(36.0)
        # 2 * 60 g over 165 min
        assert point.absorption_rate == pytest.approx(120 / 2.75)

    def test_before_peak_partial(self, carbs):
        point = carbs.absorption(20, 60, 75)
        assert 0 < point.carbs_absorbed < 24.0
        assert point.absorption_rate > 0

    def test_complete_after_duration(self, carbs):
        point = carbs.absorption(165, 60, 75)
        assert point.carbs_on_board == 0
        assert point.carbs_absorbed == 60

    def test_cob_and_absorbed_sum_to_total(self, carbs):
        for point in carbs.absorption_curve(45, 55):
            assert point.carbs_on_board + point.carbs_absorbed == pytest.approx(45)
            assert 0 <= point.carbs_on_board <= 45

    def test_curve_covers_duration(self, carbs):
        curve = carbs.absorption_curve(30, 100, resolution_minutes=10)
        assert curve[0].minutes_from_meal == 0
        assert curve[-1].minutes_from_meal == 120
        assert len(curve) == 13


class TestActiveCarbs:

    def test_uses_description_gi(self, carbs):
        result = carbs.active_carbs([meal(50, minutes=-30, description="pasta")], BASE_TIME)
        contribution = result.meal_contributions[0]
        assert contribution.glycemic_index == 55
        assert result.total_cob == pytest.approx(
            carbs.absorption(30, 50, 55).carbs_on_board
        )

    def test_sums_meals(self, carbs):
        events = [meal(40, minutes=-20), meal(20, minutes=-60)]
        result = carbs.active_carbs(events, BASE_TIME)
        expected = (
            carbs.absorption(20, 40).carbs_on_board + carbs.absorption(60, 20).carbs_on_board
        )
        assert result.total_cob == pytest.approx(expected)
        assert len(result.meal_contributions) == 2

    def test_skips_irrelevant_events(self, carbs):
        events = [
            meal(0, minutes=-10),
            meal(40, minutes=15),
            meal(40, minutes=-400),
            insulin(5, minutes=-10),
        ]
        result = carbs.active_carbs(events, BASE_TIME)
        assert result.total_cob == 0
        assert result.meal_contributions == ()
        assert result.estimated_absorption_complete == BASE_TIME

    def test_absorption_complete_time(self, carbs):
        # default GI 60 lasts 192 minutes
        result = carbs.active_carbs([meal(30, minutes=-12)], BASE_TIME)
        assert result.estimated_absorption_complete == at(180)

    def test_bsl_effect(self):
        assert estimate_carb_bsl_effect(30, 10, 2.0) == pytest.approx(6.0)

    def test_project(self, carbs):
        points = carbs.project([meal(60)], BASE_TIME, at(240), resolution_minutes=30)
        assert len(points) == 9
        assert points[0].cob == pytest.approx(60)
        assert points[-1].cob == 0
