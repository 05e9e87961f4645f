"""Insulin pharmacokinetics for bolus and basal doses.

Activity follows a biexponential curve A * (e^(-t/tau1) - e^(-t/tau2)) that
rises from zero, peaks, then decays. Insulin on board is the normalized area
remaining under that curve:

- Rapid-acting (bolus): onset 15 min, peak ~75 min, duration 4 h
- Long-acting (basal): onset 90 min, peak ~6 h, duration 24 h
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Optional, Tuple
import logging

import numpy as np

from metabolic_twin.data_models import (
    EventType,
    InsulinType,
    PhysiologicalEvent,
    RiskLevel,
    SerializableMixin,
)
from metabolic_twin.timeutils import iter_time_steps, minutes_between


logger = logging.getLogger(__name__)

# Estimated BSL drop thresholds (mmol/L) for stacking risk
STACKING_HIGH_DROP = 8.0
STACKING_MEDIUM_DROP = 5.0


@dataclass(frozen=True)
class InsulinKinetics(SerializableMixin):
    """Pharmacokinetic timings (minutes) for one insulin type."""

    onset_minutes: float
    peak_minutes: float
    duration_minutes: float
    half_life_minutes: float

    @property
    def tau_decay(self) -> float:
        return self.half_life_minutes * 1.4

    @property
    def tau_onset(self) -> float:
        return self.onset_minutes * 0.7

    @property
    def curve_peak_minutes(self) -> float:
        """Time at which the biexponential activity curve is maximal."""
        t1, t2 = self.tau_decay, self.tau_onset
        return float(t1 * t2 * np.log(t1 / t2) / (t1 - t2))


INSULIN_KINETICS: Mapping[InsulinType, InsulinKinetics] = MappingProxyType({
    InsulinType.BOLUS: InsulinKinetics(
        onset_minutes=15,
        peak_minutes=75,  # 1-2 hours, using 1.25h as midpoint
        duration_minutes=240,
        half_life_minutes=55,  # ~95% absorbed by 4 hours
    ),
    InsulinType.BASAL: InsulinKinetics(
        onset_minutes=90,
        peak_minutes=360,  # relatively flat profile
        duration_minutes=1440,
        half_life_minutes=300,  # extended tail
    ),
})


@dataclass(frozen=True)
class InsulinActivityPoint(SerializableMixin):
    minutes_from_dose: float
    activity_level: float  # 0-1, 1 at curve peak
    insulin_on_board: float  # fraction of dose remaining, 0-1


@dataclass(frozen=True)
class DoseContribution(SerializableMixin):
    dose_id: str
    timestamp: datetime
    original_units: float
    insulin_type: InsulinType
    remaining_iob: float
    activity_level: float
    minutes_since_dose: float


@dataclass(frozen=True)
class ActiveInsulinResult(SerializableMixin):
    total_iob: float  # units
    activity_rate: float  # units/hour currently being absorbed
    dose_contributions: Tuple[DoseContribution, ...]
    estimated_clear_time: datetime


@dataclass(frozen=True)
class InsulinProjectionPoint(SerializableMixin):
    timestamp: datetime
    iob: float
    activity_rate: float


@dataclass(frozen=True)
class StackingAssessment(SerializableMixin):
    total_iob: float
    estimated_bsl_drop: float
    risk_level: RiskLevel
    warning: Optional[str] = None


def estimate_insulin_bsl_effect(iob: float, correction_factor: float) -> float:
    """Expected BSL drop (mmol/L) from insulin still on board."""
    return iob * correction_factor


def assess_insulin_stacking(
    current_iob: float,
    proposed_dose: float,
    correction_factor: float,
) -> StackingAssessment:
    """
    Grade the risk of adding a dose on top of active insulin.

    Args:
        current_iob: Insulin on board (units)
        proposed_dose: New dose being considered (units)
        correction_factor: BSL drop per unit (mmol/L)

    Returns:
        StackingAssessment with a warning string for medium/high risk
    """
    total_iob = current_iob + proposed_dose
    estimated_drop = total_iob * correction_factor

    if estimated_drop > STACKING_HIGH_DROP:
        return StackingAssessment(
            total_iob=total_iob,
            estimated_bsl_drop=estimated_drop,
            risk_level=RiskLevel.HIGH,
            warning=(
                f"High IOB stacking: {total_iob:.1f}u could drop BSL by "
                f"{estimated_drop:.1f} mmol/L"
            ),
        )
    if estimated_drop > STACKING_MEDIUM_DROP:
        return StackingAssessment(
            total_iob=total_iob,
            estimated_bsl_drop=estimated_drop,
            risk_level=RiskLevel.MEDIUM,
            warning=(
                f"Moderate IOB: {total_iob:.1f}u active, expected "
                f"{estimated_drop:.1f} mmol/L drop"
            ),
        )
    return StackingAssessment(
        total_iob=total_iob,
        estimated_bsl_drop=estimated_drop,
        risk_level=RiskLevel.LOW,
    )


class InsulinDecayModel:
    """Insulin activity and IOB across one or more doses."""

    def __init__(self, kinetics: Mapping[InsulinType, InsulinKinetics] = INSULIN_KINETICS):
        self._kinetics: Dict[InsulinType, InsulinKinetics] = dict(kinetics)

    def kinetics(self, insulin_type: InsulinType) -> InsulinKinetics:
        return self._kinetics[InsulinType(insulin_type)]

    def activity_levels(
        self, minutes: np.ndarray, insulin_type: InsulinType
    ) -> Tuple[np.ndarray, np.ndarray]:
        """Vectorized (activity, IOB fraction) for an array of elapsed minutes."""
        kinetics = self.kinetics(insulin_type)
        t = np.asarray(minutes, dtype=float)
        tau1, tau2 = kinetics.tau_decay, kinetics.tau_onset
        # Clip to keep the exponentials finite; those entries are masked below.
        t_eval = np.clip(t, 0.0, kinetics.duration_minutes)
        exp1 = np.exp(-t_eval / tau1)
        exp2 = np.exp(-t_eval / tau2)

        t_peak = kinetics.curve_peak_minutes
        peak_activity = np.exp(-t_peak / tau1) - np.exp(-t_peak / tau2)

        activity = np.clip((exp1 - exp2) / peak_activity, 0.0, 1.0)
        iob = np.clip((tau1 * exp1 - tau2 * exp2) / (tau1 - tau2), 0.0, 1.0)

        before_dose = t < 0
        expired = t >= kinetics.duration_minutes
        activity = np.where(before_dose | expired, 0.0, activity)
        iob = np.where(before_dose, 1.0, np.where(expired, 0.0, iob))
        return activity, iob

    def activity(self, minutes_from_dose: float, insulin_type: InsulinType) -> InsulinActivityPoint:
        """
        Activity level and remaining fraction for a single dose.

        Args:
            minutes_from_dose: Minutes since the insulin was administered
            insulin_type: Bolus or basal

        Returns:
            InsulinActivityPoint with activity in [0, 1] and IOB fraction in [0, 1]
        """
        activity, iob = self.activity_levels(np.array([minutes_from_dose]), insulin_type)
        return InsulinActivityPoint(
            minutes_from_dose=float(minutes_from_dose),
            activity_level=float(activity[0]),
            insulin_on_board=float(iob[0]),
        )

    def activity_curve(
        self, insulin_type: InsulinType, resolution_minutes: float = 5
    ) -> List[InsulinActivityPoint]:
        """Full activity curve from injection to end of duration."""
        duration = self.kinetics(insulin_type).duration_minutes
        minutes = np.arange(0.0, duration + resolution_minutes / 2.0, resolution_minutes)
        minutes = minutes[minutes <= duration]
        activity, iob = self.activity_levels(minutes, insulin_type)
        return [
            InsulinActivityPoint(float(t), float(a), float(i))
            for t, a, i in zip(minutes, activity, iob)
        ]

    def active_insulin(
        self, insulin_events: Iterable[PhysiologicalEvent], at_time: datetime
    ) -> ActiveInsulinResult:
        """Total IOB and absorption rate from every dose still acting at ``at_time``."""
        contributions: List[DoseContribution] = []
        total_iob = 0.0
        total_rate = 0.0
        latest_clear = at_time

        for event in insulin_events:
            if event.event_type != EventType.INSULIN or event.value <= 0:
                continue
            minutes_since = minutes_between(event.timestamp, at_time)
            if minutes_since < 0:
                continue

            insulin_type = event.insulin_type
            kinetics = self.kinetics(insulin_type)
            if minutes_since >= kinetics.duration_minutes:
                continue

            point = self.activity(minutes_since, insulin_type)
            units = float(event.value)
            remaining = units * point.insulin_on_board

            # At peak roughly twice the mean absorption rate is being used.
            mean_rate = units / (kinetics.duration_minutes / 60.0)
            rate = point.activity_level * mean_rate * 2.0

            total_iob += remaining
            total_rate += rate

            clear_time = at_time + timedelta(
                minutes=kinetics.duration_minutes - minutes_since
            )
            if clear_time > latest_clear:
                latest_clear = clear_time

            contributions.append(
                DoseContribution(
                    dose_id=event.id,
                    timestamp=event.timestamp,
                    original_units=units,
                    insulin_type=insulin_type,
                    remaining_iob=remaining,
                    activity_level=point.activity_level,
                    minutes_since_dose=minutes_since,
                )
            )

        return ActiveInsulinResult(
            total_iob=total_iob,
            activity_rate=total_rate,
            dose_contributions=tuple(contributions),
            estimated_clear_time=latest_clear,
        )

    def project(
        self,
        insulin_events: Iterable[PhysiologicalEvent],
        start_time: datetime,
        end_time: datetime,
        resolution_minutes: float = 5,
    ) -> List[InsulinProjectionPoint]:
        """IOB and activity rate sampled across a window for charting."""
        events = list(insulin_events)
        projections: List[InsulinProjectionPoint] = []
        for at_time in iter_time_steps(start_time, end_time, resolution_minutes):
            result = self.active_insulin(events, at_time)
            projections.append(
                InsulinProjectionPoint(at_time, result.total_iob, result.activity_rate)
            )
        return projections
