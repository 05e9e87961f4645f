"""Carbohydrate absorption driven by glycemic index.

High GI foods peak in 30-45 min and clear in 2-3 h; low GI foods peak at
60-90 min and take 4-5 h. The absorption rate rises as a power function up
to the peak and decays exponentially afterwards.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Optional, Tuple
import logging

import numpy as np

from metabolic_twin.data_models import EventType, PhysiologicalEvent, SerializableMixin
from metabolic_twin.timeutils import iter_time_steps, minutes_between


logger = logging.getLogger(__name__)

DEFAULT_GLYCEMIC_INDEX = 60.0  # medium if unknown

# Fraction of the meal considered absorbed when the rate peaks
ABSORBED_AT_PEAK = 0.4

GI_ESTIMATES: Mapping[str, float] = MappingProxyType({
    # High GI (70+)
    "bread": 75,
    "rice": 73,
    "potato": 78,
    "sugar": 100,
    "glucose": 100,
    "candy": 85,
    "soda": 90,
    "juice": 80,
    "cereal": 75,
    # Medium GI (56-69)
    "pasta": 55,
    "oatmeal": 58,
    "fruit": 55,
    "banana": 62,
    "pizza": 60,
    # Low GI (<55)
    "beans": 30,
    "lentils": 28,
    "nuts": 20,
    "vegetables": 15,
    "dairy": 35,
    "apple": 38,
    # Mixed meals tend to be lower GI
    "mixed": 55,
})

# Checked only when no food keyword matched
GI_MODIFIERS: Tuple[Tuple[Tuple[str, ...], float], ...] = (
    (("whole grain", "wholegrain"), 50),
    (("white",), 70),
    (("fiber", "fibre"), 45),
)


@dataclass(frozen=True)
class CarbAbsorptionParams(SerializableMixin):
    glycemic_index: float
    peak_minutes: float
    duration_minutes: float
    half_life_minutes: float


@dataclass(frozen=True)
class CarbAbsorptionPoint(SerializableMixin):
    minutes_from_meal: float
    absorption_rate: float  # g/hour
    carbs_on_board: float
    carbs_absorbed: float


@dataclass(frozen=True)
class MealContribution(SerializableMixin):
    meal_id: str
    timestamp: datetime
    original_carbs: float
    remaining_cob: float
    absorption_rate: float
    minutes_since_meal: float
    glycemic_index: float


@dataclass(frozen=True)
class ActiveCarbsResult(SerializableMixin):
    total_cob: float  # grams
    absorption_rate: float  # g/hour
    meal_contributions: Tuple[MealContribution, ...]
    estimated_absorption_complete: datetime


@dataclass(frozen=True)
class CarbProjectionPoint(SerializableMixin):
    timestamp: datetime
    cob: float
    absorption_rate: float


def get_absorption_params(glycemic_index: float) -> CarbAbsorptionParams:
    """
    Map GI onto absorption timings.

    GI 100 -> peak 30 min, duration 120 min
    GI 0   -> peak 120 min, duration 300 min
    """
    gi = float(np.clip(glycemic_index, 0.0, 100.0))
    peak_minutes = 120.0 - (gi / 100.0) * 90.0
    duration_minutes = 120.0 + ((100.0 - gi) / 100.0) * 180.0
    return CarbAbsorptionParams(
        glycemic_index=gi,
        peak_minutes=peak_minutes,
        duration_minutes=duration_minutes,
        half_life_minutes=duration_minutes / 3.0,
    )


def estimate_carb_bsl_effect(
    cob: float,
    insulin_to_carb_ratio: float,
    correction_factor: float,
) -> float:
    """Expected BSL rise (mmol/L) once the remaining carbs are absorbed."""
    units_needed = cob / insulin_to_carb_ratio
    return units_needed * correction_factor


class CarbAbsorptionModel:
    """Carbs-on-board across meals using GI-shaped absorption curves."""

    def __init__(
        self,
        gi_estimates: Mapping[str, float] = GI_ESTIMATES,
        default_glycemic_index: float = DEFAULT_GLYCEMIC_INDEX,
    ):
        self._gi_estimates: Dict[str, float] = dict(gi_estimates)
        self.default_glycemic_index = default_glycemic_index

    def estimate_glycemic_index(self, description: Optional[str]) -> float:
        """Keyword-match a free-text meal description against the GI table."""
        if not description:
            return self.default_glycemic_index

        lowered = description.lower()
        for keyword, gi in self._gi_estimates.items():
            if keyword in lowered:
                return float(gi)

        for keywords, gi in GI_MODIFIERS:
            if any(keyword in lowered for keyword in keywords):
                return float(gi)

        return self.default_glycemic_index

    def absorption(
        self,
        minutes_from_meal: float,
        total_carbs: float,
        glycemic_index: Optional[float] = None,
    ) -> CarbAbsorptionPoint:
        """
        Absorption state of one meal at a time offset.

        The cumulative amount is a piecewise approximation (power-function
        integral before the peak, 40% at peak plus exponential approach to
        the total afterwards) rather than the exact integral of the rate.

        Args:
            minutes_from_meal: Minutes since the meal was eaten
            total_carbs: Total carbs in grams
            glycemic_index: GI of the meal (default 60)

        Returns:
            CarbAbsorptionPoint where carbs_on_board + carbs_absorbed == total_carbs
        """
        if glycemic_index is None:
            glycemic_index = self.default_glycemic_index
        params = get_absorption_params(glycemic_index)
        t = float(minutes_from_meal)

        if t < 0:
            return CarbAbsorptionPoint(t, 0.0, float(total_carbs), 0.0)
        if t >= params.duration_minutes:
            return CarbAbsorptionPoint(t, 0.0, 0.0, float(total_carbs))

        t_peak = params.peak_minutes
        tau = params.half_life_minutes
        k = t_peak / tau

        if t < t_peak:
            shape = (t / t_peak) ** k
            absorbed = (
                total_carbs * (t / t_peak) ** (k + 1) * t_peak
                / ((k + 1) * params.duration_minutes)
            )
        else:
            decay = np.exp(-(t - t_peak) / tau)
            shape = decay
            absorbed_at_peak = total_carbs * ABSORBED_AT_PEAK
            absorbed = absorbed_at_peak + (total_carbs - absorbed_at_peak) * (1.0 - decay)

        # Peak rate sized to absorb the meal within its duration
        peak_rate = (total_carbs * 2.0) / (params.duration_minutes / 60.0)
        absorbed = float(np.clip(absorbed, 0.0, total_carbs))

        return CarbAbsorptionPoint(
            minutes_from_meal=t,
            absorption_rate=max(0.0, float(shape * peak_rate)),
            carbs_on_board=max(0.0, float(total_carbs) - absorbed),
            carbs_absorbed=absorbed,
        )

    def absorption_curve(
        self,
        total_carbs: float,
        glycemic_index: Optional[float] = None,
        resolution_minutes: float = 5,
    ) -> List[CarbAbsorptionPoint]:
        if glycemic_index is None:
            glycemic_index = self.default_glycemic_index
        duration = get_absorption_params(glycemic_index).duration_minutes
        minutes = np.arange(0.0, duration + resolution_minutes / 2.0, resolution_minutes)
        return [
            self.absorption(float(t), total_carbs, glycemic_index)
            for t in minutes
            if t <= duration
        ]

    def active_carbs(
        self, meal_events: Iterable[PhysiologicalEvent], at_time: datetime
    ) -> ActiveCarbsResult:
        """Total COB and absorption rate from meals still absorbing at ``at_time``."""
        contributions: List[MealContribution] = []
        total_cob = 0.0
        total_rate = 0.0
        latest_complete = at_time

        for event in meal_events:
            if event.event_type != EventType.MEAL:
                continue
            carbs = event.carbs
            if carbs <= 0:
                continue
            minutes_since = minutes_between(event.timestamp, at_time)
            if minutes_since < 0:
                continue

            description = getattr(event.metadata, "description", None)
            glycemic_index = self.estimate_glycemic_index(description)
            params = get_absorption_params(glycemic_index)
            if minutes_since >= params.duration_minutes:
                continue

            point = self.absorption(minutes_since, carbs, glycemic_index)
            total_cob += point.carbs_on_board
            total_rate += point.absorption_rate

            complete = at_time + timedelta(minutes=params.duration_minutes - minutes_since)
            if complete > latest_complete:
                latest_complete = complete

            contributions.append(
                MealContribution(
                    meal_id=event.id,
                    timestamp=event.timestamp,
                    original_carbs=carbs,
                    remaining_cob=point.carbs_on_board,
                    absorption_rate=point.absorption_rate,
                    minutes_since_meal=minutes_since,
                    glycemic_index=glycemic_index,
                )
            )

        return ActiveCarbsResult(
            total_cob=total_cob,
            absorption_rate=total_rate,
            meal_contributions=tuple(contributions),
            estimated_absorption_complete=latest_complete,
        )

    def project(
        self,
        meal_events: Iterable[PhysiologicalEvent],
        start_time: datetime,
        end_time: datetime,
        resolution_minutes: float = 5,
    ) -> List[CarbProjectionPoint]:
        events = list(meal_events)
        projections: List[CarbProjectionPoint] = []
        for at_time in iter_time_steps(start_time, end_time, resolution_minutes):
            result = self.active_carbs(events, at_time)
            projections.append(
                CarbProjectionPoint(at_time, result.total_cob, result.absorption_rate)
            )
        return projections
