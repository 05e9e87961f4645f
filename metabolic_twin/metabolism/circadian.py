"""Time-of-day insulin sensitivity and the dawn phenomenon.

Sensitivity values below 1.0 mean less insulin is needed at that hour;
values above 1.0 mean more. The dawn pattern models the cortisol and growth
hormone driven rise between roughly 3am and 9am on top of that.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple
import logging

import numpy as np

from metabolic_twin.data_models import BSLReading, SerializableMixin


logger = logging.getLogger(__name__)

DEFAULT_CIRCADIAN_PATTERN: Tuple[float, ...] = (
    0.95,  # midnight
    0.9,
    0.85,  # deepest sleep, most sensitive
    0.85,
    0.9,   # dawn starting
    1.0,
    1.15,
    1.2,   # morning resistance peak
    1.15,
    1.1,
    1.0,
    1.0,
    1.05,  # lunch
    1.0,
    0.95,  # afternoon dip
    0.95,
    1.0,
    1.05,
    1.1,   # dinner
    1.05,
    1.0,
    0.95,
    0.9,
    0.95,
)

DAWN_PHENOMENON_PATTERN: Tuple[float, ...] = (
    0, 0, 0,
    0.2,  # begins
    0.5,
    0.8,
    1.0,  # peak
    0.8,
    0.4,
    0.1,
    0, 0, 0, 0, 0, 0, 0, 0, 0, 0, 0, 0, 0, 0,
)

# Share of dawn intensity added to the combined dose factor
DAWN_DOSE_WEIGHT = 0.1
# Full dawn intensity raises BSL about 1.5 mmol/L per hour
DAWN_DRIFT_PER_HOUR = 1.5
DRIFT_SAMPLES = 12

DAWN_RISE_THRESHOLD = 1.5  # mmol/L
FULL_INTENSITY_RISE = 3.0
# Per-hour basal increase at full dawn intensity
DAWN_BASAL_INCREASE: Mapping[int, float] = {4: 0.15, 5: 0.2, 6: 0.25, 7: 0.2, 8: 0.1}


@dataclass(frozen=True)
class CircadianFactors(SerializableMixin):
    hour: int
    insulin_sensitivity: float
    dawn_effect: float
    combined_factor: float


@dataclass(frozen=True)
class DoseTimeAdjustment(SerializableMixin):
    adjusted_dose: float
    adjustment: float
    reason: str


@dataclass(frozen=True)
class OvernightPatternAnalysis(SerializableMixin):
    dawn_phenomenon_detected: bool
    analysis: str
    suggested_adjustments: Dict[int, float] = field(default_factory=dict)


class CircadianModel:
    """Hourly sensitivity tables with interpolation and overnight analysis."""

    def __init__(
        self,
        sensitivity_pattern: Sequence[float] = DEFAULT_CIRCADIAN_PATTERN,
        dawn_pattern: Sequence[float] = DAWN_PHENOMENON_PATTERN,
    ):
        if len(sensitivity_pattern) != 24 or len(dawn_pattern) != 24:
            raise ValueError("circadian patterns need exactly 24 hourly values")
        self._sensitivity: Tuple[float, ...] = tuple(float(v) for v in sensitivity_pattern)
        self._dawn: Tuple[float, ...] = tuple(float(v) for v in dawn_pattern)

    def hourly_factors(
        self, hour: int, user_adjustments: Optional[Mapping[int, float]] = None
    ) -> CircadianFactors:
        """Factors at the top of an hour, with an optional user multiplier."""
        hour = int(hour) % 24
        sensitivity = self._sensitivity[hour]
        if user_adjustments and hour in user_adjustments:
            sensitivity *= user_adjustments[hour]
        dawn = self._dawn[hour]
        return CircadianFactors(
            hour=hour,
            insulin_sensitivity=sensitivity,
            dawn_effect=dawn,
            combined_factor=sensitivity + dawn * DAWN_DOSE_WEIGHT,
        )

    def factors(
        self, at_time: datetime, user_adjustments: Optional[Mapping[int, float]] = None
    ) -> CircadianFactors:
        """Factors linearly interpolated between this hour and the next."""
        current = self.hourly_factors(at_time.hour, user_adjustments)
        following = self.hourly_factors((at_time.hour + 1) % 24, user_adjustments)
        fraction = at_time.minute / 60.0

        def lerp(a: float, b: float) -> float:
            return a + (b - a) * fraction

        return CircadianFactors(
            hour=current.hour,
            insulin_sensitivity=lerp(current.insulin_sensitivity, following.insulin_sensitivity),
            dawn_effect=lerp(current.dawn_effect, following.dawn_effect),
            combined_factor=lerp(current.combined_factor, following.combined_factor),
        )

    def adjust_dose_for_time_of_day(
        self,
        base_dose: float,
        at_time: datetime,
        user_adjustments: Optional[Mapping[int, float]] = None,
    ) -> DoseTimeAdjustment:
        factors = self.factors(at_time, user_adjustments)
        adjusted = base_dose * factors.combined_factor

        if factors.dawn_effect > 0.5:
            reason = "Dawn phenomenon: increased morning insulin resistance"
        elif factors.insulin_sensitivity < 0.95:
            reason = "Higher insulin sensitivity at this time"
        elif factors.insulin_sensitivity > 1.05:
            reason = "Reduced insulin sensitivity at this time"
        else:
            reason = "Near baseline sensitivity"

        return DoseTimeAdjustment(
            adjusted_dose=adjusted,
            adjustment=adjusted - base_dose,
            reason=reason,
        )

    def estimate_bsl_drift(self, start_time: datetime, end_time: datetime) -> float:
        """
        Expected BSL change (mmol/L) from the dawn effect with no food or insulin.

        Averages the interpolated dawn intensity over evenly spaced samples of
        the interval and scales by elapsed hours.
        """
        if end_time <= start_time:
            return 0.0
        span = end_time - start_time
        mean_dawn = float(np.mean([
            self.factors(start_time + span * (i / DRIFT_SAMPLES)).dawn_effect
            for i in range(DRIFT_SAMPLES)
        ]))
        hours = span.total_seconds() / 3600.0
        return mean_dawn * DAWN_DRIFT_PER_HOUR * hours

    def curve(
        self, user_adjustments: Optional[Mapping[int, float]] = None
    ) -> List[CircadianFactors]:
        return [self.hourly_factors(hour, user_adjustments) for hour in range(24)]

    def analyze_overnight_pattern(
        self, readings: Iterable[BSLReading]
    ) -> OvernightPatternAnalysis:
        """
        Detect the dawn phenomenon from overnight readings.

        Compares the mean BSL between midnight and 3am against 3am to 7am
        (both inclusive of the boundary hour). A rise above 1.5 mmol/L
        suggests raising basal from 4am to 8am.
        """
        readings = sorted(readings, key=lambda r: r.timestamp)
        if len(readings) < 3:
            return OvernightPatternAnalysis(False, "Insufficient data for overnight analysis")

        pre_dawn = [r.value for r in readings if 0 <= r.timestamp.hour <= 3]
        dawn = [r.value for r in readings if 3 <= r.timestamp.hour <= 7]
        if not pre_dawn or not dawn:
            return OvernightPatternAnalysis(False, "No data in dawn window")

        rise = float(np.mean(dawn) - np.mean(pre_dawn))
        if rise > DAWN_RISE_THRESHOLD:
            intensity = min(rise / FULL_INTENSITY_RISE, 1.0)
            logger.debug(f"Dawn rise {rise:.2f} mmol/L, intensity {intensity:.2f}")
            return OvernightPatternAnalysis(
                dawn_phenomenon_detected=True,
                analysis=(
                    f"Dawn phenomenon detected: average rise of {rise:.1f} mmol/L. "
                    "Consider increasing basal 4-8am."
                ),
                suggested_adjustments={
                    hour: 1.0 + intensity * increase
                    for hour, increase in DAWN_BASAL_INCREASE.items()
                },
            )

        return OvernightPatternAnalysis(
            False, f"No significant dawn phenomenon. BSL change: {rise:.1f} mmol/L"
        )
