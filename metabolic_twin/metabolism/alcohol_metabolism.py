"""Alcohol absorption, elimination and its effect on insulin sensitivity.

One standard drink is 10 g of pure alcohol. Absorption is first order,
elimination is roughly linear (~8 g/h for a 70 kg adult) and blood alcohol
follows a simplified Widmark formula. Alcohol suppresses hepatic glucose
output, so insulin works harder for many hours after the drink has cleared
and delayed hypoglycemia is most likely 6-12 hours later.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Optional, Tuple
import logging

import numpy as np

from metabolic_twin.data_models import (
    AlcoholType,
    EventType,
    PhysiologicalEvent,
    RiskLevel,
    SerializableMixin,
)
from metabolic_twin.timeutils import iter_time_steps, minutes_between


logger = logging.getLogger(__name__)

STANDARD_DRINK_GRAMS = 10.0
# Widmark r: 0.68 men, 0.55 women
BODY_DISTRIBUTION_FACTOR = 0.6
REFERENCE_WEIGHT_KG = 70.0
BASE_ELIMINATION_RATE = 8.0  # g/hour

# Sensitivity effect is strongest one hour after drinking
SENSITIVITY_PEAK_MINUTES = 60.0

HYPO_RISK_START = timedelta(hours=6)
HYPO_RISK_END = timedelta(hours=12)

HYPO_RISK_RECOMMENDATIONS: Mapping[RiskLevel, str] = MappingProxyType({
    RiskLevel.LOW: "Monitor BSL before bed. Have a snack if below 7 mmol/L.",
    RiskLevel.MEDIUM: (
        "Check BSL more frequently. Reduce overnight basal if possible. "
        "Have carbs available."
    ),
    RiskLevel.HIGH: (
        "High hypo risk. Reduce insulin doses. Check BSL every 2-3 hours. "
        "Do not skip meals."
    ),
})


@dataclass(frozen=True)
class AlcoholMetabolismParams(SerializableMixin):
    drink_type: AlcoholType
    absorption_half_life_minutes: float
    elimination_rate_grams_per_hour: float
    peak_time_minutes: float
    insulin_sensitivity_modifier: float  # <1 means insulin is more effective
    sensitivity_effect_duration_hours: float

    @property
    def sensitivity_effect_minutes(self) -> float:
        return self.sensitivity_effect_duration_hours * 60.0


ALCOHOL_PARAMS: Mapping[AlcoholType, AlcoholMetabolismParams] = MappingProxyType({
    # Carbonation speeds absorption
    AlcoholType.BEER: AlcoholMetabolismParams(AlcoholType.BEER, 20, 8, 45, 0.85, 12),
    AlcoholType.WINE: AlcoholMetabolismParams(AlcoholType.WINE, 25, 8, 50, 0.80, 14),
    # Fast if neat
    AlcoholType.SPIRIT: AlcoholMetabolismParams(AlcoholType.SPIRIT, 15, 8, 30, 0.75, 16),
    # Mixers dilute and slow it down
    AlcoholType.MIXED: AlcoholMetabolismParams(AlcoholType.MIXED, 25, 8, 60, 0.80, 12),
})


@dataclass(frozen=True)
class AlcoholState(SerializableMixin):
    absorbing: float  # grams still in the gut
    in_system: float  # grams in circulation
    eliminated: float
    bal: float  # g/L
    sensitivity_modifier: float


@dataclass(frozen=True)
class DrinkContribution(SerializableMixin):
    event_id: str
    timestamp: datetime
    alcohol_units: float
    alcohol_grams: float
    drink_type: AlcoholType
    remaining_grams: float
    minutes_since_drink: float


@dataclass(frozen=True)
class BloodAlcoholResult(SerializableMixin):
    blood_alcohol_level: float
    alcohol_absorbing: float
    alcohol_in_system: float
    insulin_sensitivity_modifier: float
    estimated_sober_time: Optional[datetime]
    drink_contributions: Tuple[DrinkContribution, ...]

    @property
    def has_alcohol(self) -> bool:
        return self.alcohol_in_system > 0


@dataclass(frozen=True)
class HypoglycemiaRiskWindow(SerializableMixin):
    risk_start_time: datetime
    risk_end_time: datetime
    severity: RiskLevel
    recommendation: str


@dataclass(frozen=True)
class AlcoholProjectionPoint(SerializableMixin):
    timestamp: datetime
    bal: float
    sensitivity_modifier: float
    in_system: float


def adjust_elimination_rate(base_rate: float, body_weight_kg: float) -> float:
    """Scale elimination weakly with body weight (more liver mass)."""
    return base_rate * (body_weight_kg / REFERENCE_WEIGHT_KG) ** 0.25


def _grams_to_bal(grams: float, body_weight_kg: float) -> float:
    return max(0.0, grams / (body_weight_kg * BODY_DISTRIBUTION_FACTOR) * 10.0)


class AlcoholMetabolismModel:
    """Blood alcohol and sensitivity modifiers from drinks logged on meals."""

    def __init__(
        self,
        params: Mapping[AlcoholType, AlcoholMetabolismParams] = ALCOHOL_PARAMS,
        standard_drink_grams: float = STANDARD_DRINK_GRAMS,
    ):
        self._params: Dict[AlcoholType, AlcoholMetabolismParams] = dict(params)
        self.standard_drink_grams = standard_drink_grams

    def params(self, drink_type: AlcoholType) -> AlcoholMetabolismParams:
        return self._params[AlcoholType(drink_type)]

    def _absorbed_and_eliminated(
        self,
        grams: float,
        minutes: float,
        drink_type: AlcoholType,
        body_weight_kg: float,
    ) -> Tuple[float, float]:
        params = self.params(drink_type)
        elimination_rate = adjust_elimination_rate(
            params.elimination_rate_grams_per_hour, body_weight_kg
        )
        absorbed = grams * (1.0 - np.exp(-minutes / params.absorption_half_life_minutes))
        eliminated = min(absorbed, elimination_rate * minutes / 60.0)
        return float(absorbed), float(eliminated)

    def calculate_bal(
        self,
        alcohol_grams: float,
        body_weight_kg: float,
        minutes_since_drink: float,
        drink_type: AlcoholType,
    ) -> float:
        """Blood alcohol level (g/L) for a single drink."""
        absorbed, eliminated = self._absorbed_and_eliminated(
            alcohol_grams, minutes_since_drink, drink_type, body_weight_kg
        )
        return _grams_to_bal(absorbed - eliminated, body_weight_kg)

    def sensitivity_modifier(self, minutes_since_drink: float, drink_type: AlcoholType) -> float:
        """
        Insulin sensitivity multiplier for one drink.

        Ramps linearly from 1.0 to the drink's modifier over the first hour,
        then returns linearly to 1.0 by the end of the effect duration.
        """
        params = self.params(drink_type)
        duration = params.sensitivity_effect_minutes
        if minutes_since_drink < 0 or minutes_since_drink >= duration:
            return 1.0

        depth = 1.0 - params.insulin_sensitivity_modifier
        if minutes_since_drink < SENSITIVITY_PEAK_MINUTES:
            return 1.0 - depth * (minutes_since_drink / SENSITIVITY_PEAK_MINUTES)

        decay_fraction = (minutes_since_drink - SENSITIVITY_PEAK_MINUTES) / (
            duration - SENSITIVITY_PEAK_MINUTES
        )
        return params.insulin_sensitivity_modifier + depth * decay_fraction

    def alcohol_state(
        self,
        minutes_since_drink: float,
        alcohol_units: float,
        drink_type: AlcoholType,
        body_weight_kg: float = REFERENCE_WEIGHT_KG,
    ) -> AlcoholState:
        """
        Alcohol state for one drink.

        Args:
            minutes_since_drink: Minutes since the drink was consumed
            alcohol_units: Number of standard drinks
            drink_type: Beer, wine, spirit or mixed
            body_weight_kg: Body weight in kg

        Returns:
            AlcoholState with grams absorbing/in system, BAL and sensitivity modifier
        """
        grams = alcohol_units * self.standard_drink_grams
        absorbed, eliminated = self._absorbed_and_eliminated(
            grams, minutes_since_drink, drink_type, body_weight_kg
        )
        in_system = max(0.0, absorbed - eliminated)
        return AlcoholState(
            absorbing=max(0.0, grams - absorbed),
            in_system=in_system,
            eliminated=eliminated,
            bal=_grams_to_bal(in_system, body_weight_kg),
            sensitivity_modifier=self.sensitivity_modifier(minutes_since_drink, drink_type),
        )

    def blood_alcohol(
        self,
        meal_events: Iterable[PhysiologicalEvent],
        at_time: datetime,
        body_weight_kg: float = REFERENCE_WEIGHT_KG,
    ) -> BloodAlcoholResult:
        """Combine every drink still in the body or still affecting sensitivity."""
        contributions: List[DrinkContribution] = []
        total_absorbing = 0.0
        total_in_system = 0.0
        combined_modifier = 1.0
        latest_sober: Optional[datetime] = None

        for event in meal_events:
            if event.event_type != EventType.MEAL:
                continue
            units = event.alcohol_units
            if units <= 0:
                continue
            minutes_since = minutes_between(event.timestamp, at_time)
            if minutes_since < 0:
                continue

            drink_type = event.alcohol_type
            params = self.params(drink_type)
            grams = units * self.standard_drink_grams
            elimination_rate = adjust_elimination_rate(
                params.elimination_rate_grams_per_hour, body_weight_kg
            )
            time_to_sober = grams / elimination_rate * 60.0
            effect_minutes = max(time_to_sober, params.sensitivity_effect_minutes)
            if minutes_since >= effect_minutes:
                continue

            state = self.alcohol_state(minutes_since, units, drink_type, body_weight_kg)
            total_absorbing += state.absorbing
            total_in_system += state.in_system
            combined_modifier *= state.sensitivity_modifier

            sober_time = at_time + timedelta(minutes=effect_minutes - minutes_since)
            if latest_sober is None or sober_time > latest_sober:
                latest_sober = sober_time

            contributions.append(
                DrinkContribution(
                    event_id=event.id,
                    timestamp=event.timestamp,
                    alcohol_units=units,
                    alcohol_grams=grams,
                    drink_type=drink_type,
                    remaining_grams=state.in_system,
                    minutes_since_drink=minutes_since,
                )
            )

        return BloodAlcoholResult(
            blood_alcohol_level=_grams_to_bal(total_in_system, body_weight_kg),
            alcohol_absorbing=total_absorbing,
            alcohol_in_system=total_in_system,
            insulin_sensitivity_modifier=combined_modifier,
            estimated_sober_time=latest_sober,
            drink_contributions=tuple(contributions),
        )

    def estimate_time_until_sober(self, total_alcohol_grams: float, body_weight_kg: float) -> float:
        """Minutes to eliminate the given grams at the average rate."""
        rate = adjust_elimination_rate(BASE_ELIMINATION_RATE, body_weight_kg)
        return total_alcohol_grams / rate * 60.0

    def hypoglycemia_risk_window(
        self, drink_time: datetime, alcohol_units: float
    ) -> HypoglycemiaRiskWindow:
        """Delayed hypo window 6-12 hours after drinking, graded by units."""
        if alcohol_units <= 2:
            severity = RiskLevel.LOW
        elif alcohol_units <= 4:
            severity = RiskLevel.MEDIUM
        else:
            severity = RiskLevel.HIGH

        return HypoglycemiaRiskWindow(
            risk_start_time=drink_time + HYPO_RISK_START,
            risk_end_time=drink_time + HYPO_RISK_END,
            severity=severity,
            recommendation=HYPO_RISK_RECOMMENDATIONS[severity],
        )

    def project(
        self,
        meal_events: Iterable[PhysiologicalEvent],
        start_time: datetime,
        end_time: datetime,
        body_weight_kg: float = REFERENCE_WEIGHT_KG,
        resolution_minutes: float = 5,
    ) -> List[AlcoholProjectionPoint]:
        events = list(meal_events)
        projections: List[AlcoholProjectionPoint] = []
        for at_time in iter_time_steps(start_time, end_time, resolution_minutes):
            result = self.blood_alcohol(events, at_time, body_weight_kg)
            projections.append(
                AlcoholProjectionPoint(
                    timestamp=at_time,
                    bal=result.blood_alcohol_level,
                    sensitivity_modifier=result.insulin_sensitivity_modifier,
                    in_system=result.alcohol_in_system,
                )
            )
        return projections
