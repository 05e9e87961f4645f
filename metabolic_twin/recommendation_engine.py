"""Insulin dose recommendations with safety limits and uncertainty.

A meal dose is built from carb coverage and BSL correction, then adjusted
for insulin and carbs still on board, alcohol and time of day. Safety rules
hold or cap the dose when BSL is low or insulin would stack.

This is decision support only. Every recommendation must be checked by the
person taking the insulin.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, List, Optional, Tuple
import logging
import math

from metabolic_twin.data_models import (
    DEFAULT_USER_PARAMETERS,
    EventType,
    EventWindow,
    PhysiologicalEvent,
    RiskLevel,
    SerializableMixin,
    UserModelParameters,
)
from metabolic_twin.metabolism.insulin_decay import assess_insulin_stacking
from metabolic_twin.prediction_engine import BSLPredictionModel


logger = logging.getLogger(__name__)

SIGNIFICANT_IOB = 2.0  # units
SIGNIFICANT_COB = 20.0  # grams
COB_REDUCTION_BSL = 6.0
COB_REDUCTION_SHARE = 0.25
LARGE_MEAL_CARBS = 60.0

ICR_MIN_MEAL_CARBS = 10.0
ICR_MIN_INSULIN_UNITS = 1.0
ICR_PAIRING_WINDOW = timedelta(minutes=30)
ICR_OUTCOME_FROM = timedelta(hours=2)
ICR_OUTCOME_TO = timedelta(hours=4)
ICR_LOW_OUTCOME = 4.5
ICR_HIGH_OUTCOME = 9.0
ICR_MIN_PAIRS = 5


@dataclass(frozen=True)
class SafetyLimits(SerializableMixin):
    max_single_dose: float = 30.0
    max_total_iob: float = 40.0
    min_bsl_for_correction: float = 7.0
    hypo_risk_bsl: float = 5.0  # extra caution below this
    severe_hypo_risk: float = 4.0  # never dose below this
    max_correction_dose: float = 10.0


@dataclass(frozen=True)
class DoseConfidenceFactors(SerializableMixin):
    """Fractional dose uncertainty contributed by each source."""

    parameter_uncertainty: float = 0.15
    iob_uncertainty: float = 0.2
    alcohol_uncertainty: float = 0.3


@dataclass(frozen=True)
class DoseBreakdown(SerializableMixin):
    carb_coverage: float
    correction_dose: float
    iob_adjustment: float
    cob_adjustment: float
    alcohol_adjustment: float
    circadian_adjustment: float


@dataclass(frozen=True)
class InsulinRecommendation(SerializableMixin):
    recommended_dose: float
    confidence_interval: Tuple[float, float]
    confidence: float
    breakdown: DoseBreakdown
    warnings: Tuple[str, ...]
    timestamp: datetime


@dataclass(frozen=True)
class TimingRecommendation(SerializableMixin):
    minutes_before: int  # negative means dose after eating
    reason: str


@dataclass(frozen=True)
class ICRSuggestion(SerializableMixin):
    suggested_icr: float
    confidence: float
    analysis: str
    data_points: int


def round_to_half_unit(units: float) -> float:
    """Round half up to the nearest 0.5 unit (pen and pump increments)."""
    return math.floor(units * 2.0 + 0.5) / 2.0


class InsulinRecommendationEngine:
    """Meal and correction dose calculator on top of the BSL prediction model."""

    def __init__(
        self,
        prediction_model: Optional[BSLPredictionModel] = None,
        safety_limits: SafetyLimits = SafetyLimits(),
        confidence_factors: DoseConfidenceFactors = DoseConfidenceFactors(),
    ):
        self.prediction_model = prediction_model or BSLPredictionModel()
        self.safety_limits = safety_limits
        self.confidence_factors = confidence_factors

    def calculate_meal_dose(
        self,
        carbs_grams: float,
        current_bsl: Optional[float],
        window: EventWindow,
        params: Optional[UserModelParameters] = None,
        at_time: Optional[datetime] = None,
    ) -> InsulinRecommendation:
        """
        Recommend a dose for a meal.

        Args:
            carbs_grams: Carbs about to be eaten
            current_bsl: Current BSL in mmol/L, or None when unknown
            window: Recent insulin, meal and BSL events
            params: User parameters (defaults when omitted)
            at_time: Dosing time; defaults to the window's end

        Returns:
            InsulinRecommendation rounded to 0.5 units, with warnings ordered
            most urgent first
        """
        params = params or DEFAULT_USER_PARAMETERS
        at_time = at_time or window.end_time
        limits = self.safety_limits
        warnings: List[str] = []

        state = self.prediction_model.calculate_metabolic_state(window, at_time, params)
        iob = state.insulin.total_iob
        cob = state.carbs.total_cob
        alcohol = state.alcohol

        carb_coverage = carbs_grams / params.insulin_to_carb_ratio

        correction_dose = 0.0
        if current_bsl is not None and current_bsl > limits.min_bsl_for_correction:
            correction_dose = (current_bsl - params.target_bsl) / params.correction_factor
            correction_dose = max(0.0, min(correction_dose, limits.max_correction_dose))

        iob_adjustment = -iob
        if iob > SIGNIFICANT_IOB:
            warnings.append(f"{iob:.1f} units of insulin still active from previous doses")

        # New carbs queue behind the old ones; only trim when BSL is already low-ish.
        cob_adjustment = 0.0
        if cob > SIGNIFICANT_COB:
            warnings.append(f"{cob:.0f}g carbs still being absorbed from previous meals")
            if current_bsl is not None and current_bsl < COB_REDUCTION_BSL:
                cob_adjustment = -cob / params.insulin_to_carb_ratio * COB_REDUCTION_SHARE

        alcohol_adjustment = 0.0
        if alcohol.alcohol_in_system > 0:
            modifier = alcohol.insulin_sensitivity_modifier
            alcohol_adjustment = -(carb_coverage + correction_dose) * (1.0 - modifier)
            warnings.append(
                "Alcohol detected: increased insulin sensitivity. "
                f"Dose reduced by {round((1.0 - modifier) * 100)}%"
            )
            if alcohol.drink_contributions:
                latest = max(alcohol.drink_contributions, key=lambda d: d.timestamp)
                risk = self.prediction_model.alcohol_model.hypoglycemia_risk_window(
                    latest.timestamp, latest.alcohol_units
                )
                if risk.severity != RiskLevel.LOW:
                    warnings.append(risk.recommendation)

        base_dose = carb_coverage + correction_dose
        time_adjust = self.prediction_model.circadian_model.adjust_dose_for_time_of_day(
            base_dose, at_time, params.circadian_adjustments
        )
        circadian_adjustment = time_adjust.adjusted_dose - base_dose

        if current_bsl is None:
            warnings.append(
                "No current BSL reading, so no correction is included. Check BSL before dosing."
            )

        dose = (
            carb_coverage
            + correction_dose
            + iob_adjustment
            + cob_adjustment
            + alcohol_adjustment
            + circadian_adjustment
        )

        if current_bsl is not None and current_bsl < limits.severe_hypo_risk:
            logger.warning(f"BSL {current_bsl:.1f} below {limits.severe_hypo_risk:.1f}, holding insulin")
            dose = 0.0
            warnings.insert(0, "⚠️ BSL is critically low. Do not take insulin. Treat hypo first.")
        elif current_bsl is not None and current_bsl < limits.hypo_risk_bsl:
            dose = min(dose, carb_coverage * 0.5)
            warnings.insert(
                0, "⚠️ BSL is low. Reduced dose recommended. Consider eating before dosing."
            )

        stacking = assess_insulin_stacking(iob, dose, params.correction_factor)
        if stacking.risk_level == RiskLevel.HIGH:
            warnings.append(stacking.warning)
            if dose > carb_coverage:
                logger.warning(f"Stacking risk: capping {dose:.2f}u at carb coverage {carb_coverage:.2f}u")
            dose = min(dose, carb_coverage)
        elif stacking.risk_level == RiskLevel.MEDIUM and stacking.warning:
            warnings.append(stacking.warning)

        if iob + dose > limits.max_total_iob:
            logger.warning(f"Capping dose so total IOB stays under {limits.max_total_iob:.0f}u")
            dose = limits.max_total_iob - iob
            warnings.append(
                f"Dose limited to keep total active insulin under {limits.max_total_iob:.0f} units"
            )

        dose = round_to_half_unit(min(max(0.0, dose), limits.max_single_dose))

        lower, upper, confidence = self._dose_confidence(
            dose,
            has_alcohol=alcohol.alcohol_in_system > 0,
            no_bsl=current_bsl is None,
            carbs_grams=carbs_grams,
        )

        logger.debug(
            f"Meal dose {dose:.1f}u for {carbs_grams:.0f}g "
            f"(BSL {current_bsl}, IOB {iob:.2f}, COB {cob:.1f})"
        )
        return InsulinRecommendation(
            recommended_dose=dose,
            confidence_interval=(lower, upper),
            confidence=confidence,
            breakdown=DoseBreakdown(
                carb_coverage=carb_coverage,
                correction_dose=correction_dose,
                iob_adjustment=iob_adjustment,
                cob_adjustment=cob_adjustment,
                alcohol_adjustment=alcohol_adjustment,
                circadian_adjustment=circadian_adjustment,
            ),
            warnings=tuple(warnings),
            timestamp=at_time,
        )

    def calculate_correction_dose(
        self,
        current_bsl: float,
        window: EventWindow,
        params: Optional[UserModelParameters] = None,
        at_time: Optional[datetime] = None,
    ) -> InsulinRecommendation:
        """Correction-only dose (no carbs)."""
        return self.calculate_meal_dose(0.0, current_bsl, window, params, at_time)

    def _dose_confidence(
        self,
        dose: float,
        has_alcohol: bool,
        no_bsl: bool,
        carbs_grams: float,
    ) -> Tuple[float, float, float]:
        factors = self.confidence_factors
        uncertainty = dose * (factors.parameter_uncertainty + factors.iob_uncertainty)
        if has_alcohol:
            uncertainty += dose * factors.alcohol_uncertainty
        if no_bsl:
            uncertainty += 1.0  # flat unit without a reading
        if carbs_grams > LARGE_MEAL_CARBS:
            uncertainty += (carbs_grams - LARGE_MEAL_CARBS) / 100.0

        lower = max(0.0, round_to_half_unit(dose - uncertainty))
        upper = round_to_half_unit(dose + uncertainty)
        confidence = 1.0 - uncertainty / dose if dose > 0 else 0.5
        return lower, upper, max(0.3, min(0.95, confidence))

    def get_timing_recommendation(
        self, current_bsl: Optional[float], planned_carbs: float = 0.0
    ) -> TimingRecommendation:
        """How long before eating to inject, from current BSL."""
        if current_bsl is None:
            return TimingRecommendation(
                0, "Without knowing current BSL, inject when you start eating"
            )
        if current_bsl < 4.0:
            return TimingRecommendation(
                -15, "BSL is low. Eat first, then dose if needed after 15 minutes"
            )
        if current_bsl < 5.0:
            return TimingRecommendation(0, "BSL is on the low side. Inject as you start eating")
        if current_bsl < 7.0:
            return TimingRecommendation(
                10, "Normal BSL. Inject 10 minutes before eating for optimal timing"
            )
        if current_bsl < 10.0:
            return TimingRecommendation(15, "BSL is elevated. Inject 15 minutes before eating")
        return TimingRecommendation(20, "BSL is high. Consider injecting 20 minutes before eating")

    def suggest_icr_adjustment(
        self, events: Iterable[PhysiologicalEvent], current_icr: float
    ) -> ICRSuggestion:
        """
        Review past meals to suggest a new insulin-to-carb ratio.

        A usable meal has at least 10 g carbs, a dose of at least 1 U within
        30 minutes of it and a BSL reading 2-4 hours afterwards. Post-meal
        readings below 4.5 count as low and above 9.0 as high.
        """
        events = sorted(events, key=lambda e: e.timestamp)
        meals = [e for e in events if e.event_type == EventType.MEAL]
        doses = [e for e in events if e.event_type == EventType.INSULIN]
        readings = [e for e in events if e.event_type == EventType.BSL]

        outcomes: List[str] = []
        for meal in meals:
            if meal.carbs < ICR_MIN_MEAL_CARBS:
                continue
            dose = next(
                (d for d in doses if abs(d.timestamp - meal.timestamp) < ICR_PAIRING_WINDOW),
                None,
            )
            if dose is None or dose.value < ICR_MIN_INSULIN_UNITS:
                continue
            reading = next(
                (
                    r for r in readings
                    if ICR_OUTCOME_FROM <= r.timestamp - meal.timestamp <= ICR_OUTCOME_TO
                ),
                None,
            )
            if reading is None:
                continue

            value = reading.bsl_mmol
            if value < ICR_LOW_OUTCOME:
                outcomes.append("low")
            elif value > ICR_HIGH_OUTCOME:
                outcomes.append("high")
            else:
                outcomes.append("good")

        n = len(outcomes)
        if n < ICR_MIN_PAIRS:
            return ICRSuggestion(
                suggested_icr=current_icr,
                confidence=0.0,
                analysis=(
                    "Insufficient data for ICR analysis. Need at least 5 meal-insulin "
                    "pairs with post-meal BSL."
                ),
                data_points=n,
            )

        high, low, good = outcomes.count("high"), outcomes.count("low"), outcomes.count("good")
        suggested = current_icr
        if high > n * 0.4:
            # Frequently high: more insulin per gram, so a lower ratio
            suggested = current_icr * 0.9
            analysis = (
                f"{round(high / n * 100)}% of meals result in high BSL. "
                f"Consider lowering ICR from {current_icr:g} to {suggested:.1f}."
            )
        elif low > n * 0.2:
            suggested = current_icr * 1.15
            analysis = (
                f"{round(low / n * 100)}% of meals result in low BSL. "
                f"Consider raising ICR from {current_icr:g} to {suggested:.1f}."
            )
        elif good > n * 0.6:
            analysis = (
                f"Current ICR of {current_icr:g} is working well. "
                f"{round(good / n * 100)}% of meals in target range."
            )
        else:
            analysis = (
                f"Mixed results. High: {high}, Good: {good}, Low: {low}. "
                "May need to review meal logging accuracy."
            )

        return ICRSuggestion(
            suggested_icr=round(suggested, 1),
            confidence=min(0.9, n / 20),
            analysis=analysis,
            data_points=n,
        )

    @staticmethod
    def explain_recommendation(recommendation: InsulinRecommendation) -> str:
        """Human-readable breakdown for display."""
        breakdown = recommendation.breakdown
        lower, upper = recommendation.confidence_interval
        lines = [
            f"Recommended dose: {recommendation.recommended_dose:g} units",
            f"Confidence: {round(recommendation.confidence * 100)}% ({lower:g}-{upper:g} units)",
            "",
            "Breakdown:",
        ]

        if breakdown.carb_coverage > 0:
            lines.append(f"  Carb coverage: +{breakdown.carb_coverage:.1f} units")
        if breakdown.correction_dose > 0:
            lines.append(f"  BSL correction: +{breakdown.correction_dose:.1f} units")
        if breakdown.iob_adjustment < 0:
            lines.append(f"  Active insulin: {breakdown.iob_adjustment:.1f} units")
        if breakdown.cob_adjustment != 0:
            lines.append(f"  Active carbs adj: {breakdown.cob_adjustment:.1f} units")
        if breakdown.alcohol_adjustment != 0:
            lines.append(f"  Alcohol adj: {breakdown.alcohol_adjustment:.1f} units")
        if abs(breakdown.circadian_adjustment) > 0.1:
            lines.append(f"  Time-of-day: {breakdown.circadian_adjustment:+.1f} units")

        return "\n".join(lines)
