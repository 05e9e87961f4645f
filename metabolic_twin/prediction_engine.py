"""BSL prediction from the combined metabolic state.

Starting from the last known reading, the model adds the glucose still to
come from absorbing carbs, subtracts the drop expected from active insulin
(stronger while alcohol raises sensitivity) and adds circadian drift. The
confidence interval widens with time since the last reading, with alcohol
on board and when no reading exists at all.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import List, Optional, Sequence, Tuple
import logging
import math
import multiprocessing as mp
import threading

from metabolic_twin.config import ENGINE_CONFIG, EngineConfig
from metabolic_twin.data_models import (
    DEFAULT_USER_PARAMETERS,
    EventWindow,
    SerializableMixin,
    UserModelParameters,
)
from metabolic_twin.metabolism.alcohol_metabolism import (
    AlcoholMetabolismModel,
    BloodAlcoholResult,
)
from metabolic_twin.metabolism.carb_absorption import (
    ActiveCarbsResult,
    CarbAbsorptionModel,
    estimate_carb_bsl_effect,
)
from metabolic_twin.metabolism.circadian import CircadianFactors, CircadianModel
from metabolic_twin.metabolism.insulin_decay import (
    ActiveInsulinResult,
    InsulinDecayModel,
    estimate_insulin_bsl_effect,
)
from metabolic_twin.timeutils import iter_time_steps, minutes_between


logger = logging.getLogger(__name__)

BSL_FLOOR = 2.0  # severe hypo, predictions never go lower
# Liver output minus basal usage when almost no insulin is active
BASELINE_DRIFT = 0.1
LOW_IOB_THRESHOLD = 0.5
# Grams of alcohol in circulation to mmol/L of suppressed liver output
ALCOHOL_BSL_EFFECT_PER_GRAM = 0.05

URGENT_HYPO_BSL = 3.5
URGENT_HYPER_BSL = 15.0
ALERT_DEDUPE_WINDOW = timedelta(minutes=30)

CHUNKS_PER_WORKER = 4

TIME_TO_TARGET_STEP_MINUTES = 5
AT_TARGET_TOLERANCE = 0.5


class TimeSeriesCancelled(RuntimeError):
    """Raised when a time-series generation is cancelled by its caller."""


class AlertType(str, Enum):
    HYPO = "hypo"
    HYPER = "hyper"


class AlertSeverity(str, Enum):
    WARNING = "warning"
    ALERT = "alert"
    URGENT = "urgent"


@dataclass(frozen=True)
class ConfidenceParams(SerializableMixin):
    """Uncertainty model (mmol/L) for the prediction interval."""

    base_uncertainty: float = 0.5
    time_decay_factor: float = 0.02  # added per minute since the last reading
    max_uncertainty: float = 5.0
    alcohol_uncertainty_boost: float = 0.3
    no_recent_bsl_penalty: float = 1.0


@dataclass(frozen=True)
class LastBSL(SerializableMixin):
    value: float  # mmol/L
    timestamp: datetime
    source: str = "manual"


@dataclass(frozen=True)
class MetabolicState(SerializableMixin):
    """Snapshot of everything acting on BSL at one instant."""

    timestamp: datetime
    insulin: ActiveInsulinResult
    carbs: ActiveCarbsResult
    alcohol: BloodAlcoholResult
    circadian: CircadianFactors
    last_bsl: Optional[LastBSL] = None


@dataclass(frozen=True)
class BSLPredictionFactors(SerializableMixin):
    """Additive contributions (mmol/L) to the change from baseline."""

    insulin_effect: float
    carb_effect: float
    alcohol_effect: float
    circadian_adjustment: float
    baseline_drift: float

    @property
    def total(self) -> float:
        return (
            self.insulin_effect
            + self.carb_effect
            + self.alcohol_effect
            + self.circadian_adjustment
            + self.baseline_drift
        )


@dataclass(frozen=True)
class BSLPrediction(SerializableMixin):
    predicted_bsl: float
    current_bsl: float
    confidence_interval: Tuple[float, float]
    confidence: float
    factors: BSLPredictionFactors
    target_time: datetime


@dataclass(frozen=True)
class BSLTimeSeriesPoint(SerializableMixin):
    timestamp: datetime
    predicted_bsl: float
    lower_bound: float
    upper_bound: float
    state: MetabolicState


@dataclass(frozen=True)
class BSLTimeSeries(SerializableMixin):
    points: Tuple[BSLTimeSeriesPoint, ...]
    start_time: datetime
    end_time: datetime
    resolution_minutes: float


@dataclass(frozen=True)
class BSLAlert(SerializableMixin):
    alert_type: AlertType
    predicted_time: datetime
    predicted_bsl: float
    confidence: float
    severity: AlertSeverity


@dataclass(frozen=True)
class TimeToTarget(SerializableMixin):
    time: datetime
    predicted_bsl: float


class BSLPredictionModel:
    """Composes the insulin, carb, alcohol and circadian models into BSL forecasts."""

    def __init__(
        self,
        insulin_model: Optional[InsulinDecayModel] = None,
        carb_model: Optional[CarbAbsorptionModel] = None,
        alcohol_model: Optional[AlcoholMetabolismModel] = None,
        circadian_model: Optional[CircadianModel] = None,
        confidence_params: ConfidenceParams = ConfidenceParams(),
        config: Optional[EngineConfig] = None,
    ):
        self.insulin_model = insulin_model or InsulinDecayModel()
        self.carb_model = carb_model or CarbAbsorptionModel()
        self.alcohol_model = alcohol_model or AlcoholMetabolismModel()
        self.circadian_model = circadian_model or CircadianModel()
        self.confidence_params = confidence_params
        self.config = config or ENGINE_CONFIG

    def calculate_metabolic_state(
        self,
        window: EventWindow,
        at_time: datetime,
        params: Optional[UserModelParameters] = None,
    ) -> MetabolicState:
        params = params or DEFAULT_USER_PARAMETERS

        last_bsl = None
        readings = [e for e in window.bsl_events if e.timestamp <= at_time]
        if readings:
            latest = max(readings, key=lambda e: e.timestamp)
            last_bsl = LastBSL(
                value=latest.bsl_mmol,
                timestamp=latest.timestamp,
                source=latest.source or "manual",
            )

        return MetabolicState(
            timestamp=at_time,
            insulin=self.insulin_model.active_insulin(window.insulin_events, at_time),
            carbs=self.carb_model.active_carbs(window.meal_events, at_time),
            alcohol=self.alcohol_model.blood_alcohol(
                window.drink_events, at_time, params.body_weight_kg
            ),
            circadian=self.circadian_model.factors(at_time, params.circadian_adjustments),
            last_bsl=last_bsl,
        )

    def calculate_prediction_factors(
        self,
        state: MetabolicState,
        last_bsl_time: datetime,
        target_time: datetime,
        params: Optional[UserModelParameters] = None,
    ) -> BSLPredictionFactors:
        """
        Break the expected BSL change into its contributions.

        Args:
            state: Metabolic state at the target time
            last_bsl_time: Time the baseline value applies from
            target_time: Time being predicted
            params: User parameters (defaults when omitted)

        Returns:
            BSLPredictionFactors; negative values lower BSL
        """
        params = params or DEFAULT_USER_PARAMETERS

        insulin_drop = estimate_insulin_bsl_effect(
            state.insulin.total_iob, params.correction_factor
        )
        insulin_effect = -insulin_drop * state.alcohol.insulin_sensitivity_modifier

        carb_rise = estimate_carb_bsl_effect(
            state.carbs.total_cob, params.insulin_to_carb_ratio, params.correction_factor
        )
        carb_effect = carb_rise / state.circadian.combined_factor

        alcohol_effect = 0.0
        if state.alcohol.alcohol_in_system > 0:
            alcohol_effect = -state.alcohol.alcohol_in_system * ALCOHOL_BSL_EFFECT_PER_GRAM

        circadian_adjustment = self.circadian_model.estimate_bsl_drift(last_bsl_time, target_time)

        # Without a reading the baseline is the target itself, not a measured level.
        baseline_drift = 0.0
        if state.last_bsl is not None and state.insulin.total_iob < LOW_IOB_THRESHOLD:
            baseline_drift = BASELINE_DRIFT

        return BSLPredictionFactors(
            insulin_effect=insulin_effect,
            carb_effect=carb_effect,
            alcohol_effect=alcohol_effect,
            circadian_adjustment=circadian_adjustment,
            baseline_drift=baseline_drift,
        )

    def confidence_interval(
        self,
        minutes_since_bsl: float,
        has_alcohol: bool,
        has_bsl: bool,
        value: float,
    ) -> Tuple[float, float, float]:
        """Return ``(lower, upper, confidence)`` around ``value``."""
        cp = self.confidence_params
        uncertainty = cp.base_uncertainty + max(0.0, minutes_since_bsl) * cp.time_decay_factor
        if has_alcohol:
            uncertainty += cp.alcohol_uncertainty_boost
        if not has_bsl:
            uncertainty += cp.no_recent_bsl_penalty
        uncertainty = min(uncertainty, cp.max_uncertainty)

        confidence = max(0.2, 1.0 - uncertainty / cp.max_uncertainty)
        return value - uncertainty, value + uncertainty, confidence

    def _predict_from_state(
        self,
        state: MetabolicState,
        target_time: datetime,
        params: UserModelParameters,
    ) -> BSLPrediction:
        if state.last_bsl is not None:
            current_bsl = state.last_bsl.value
            baseline_time = state.last_bsl.timestamp
        else:
            current_bsl = params.target_bsl
            baseline_time = target_time

        factors = self.calculate_prediction_factors(state, baseline_time, target_time, params)
        predicted = max(BSL_FLOOR, current_bsl + factors.total)

        lower, upper, confidence = self.confidence_interval(
            minutes_between(baseline_time, target_time),
            has_alcohol=state.alcohol.alcohol_in_system > 0,
            has_bsl=state.last_bsl is not None,
            value=predicted,
        )
        return BSLPrediction(
            predicted_bsl=predicted,
            current_bsl=current_bsl,
            confidence_interval=(max(BSL_FLOOR, lower), upper),
            confidence=confidence,
            factors=factors,
            target_time=target_time,
        )

    def predict_bsl(
        self,
        window: EventWindow,
        target_time: datetime,
        params: Optional[UserModelParameters] = None,
    ) -> BSLPrediction:
        """Predict BSL at ``target_time`` from the events in ``window``."""
        params = params or DEFAULT_USER_PARAMETERS
        state = self.calculate_metabolic_state(window, target_time, params)
        return self._predict_from_state(state, target_time, params)

    def _time_series_point(
        self,
        window: EventWindow,
        timestamp: datetime,
        params: UserModelParameters,
    ) -> BSLTimeSeriesPoint:
        state = self.calculate_metabolic_state(window, timestamp, params)
        prediction = self._predict_from_state(state, timestamp, params)
        lower, upper = prediction.confidence_interval
        return BSLTimeSeriesPoint(
            timestamp=timestamp,
            predicted_bsl=prediction.predicted_bsl,
            lower_bound=lower,
            upper_bound=upper,
            state=state,
        )

    def generate_bsl_time_series(
        self,
        window: EventWindow,
        start_time: datetime,
        end_time: datetime,
        params: Optional[UserModelParameters] = None,
        resolution_minutes: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
        parallel: Optional[bool] = None,
    ) -> BSLTimeSeries:
        """
        Sample predictions from start to end inclusive for charting.

        Args:
            window: Event window covering the range
            start_time: First sample
            end_time: Last sample (inclusive)
            params: User parameters
            resolution_minutes: Step size; defaults to the engine config
            cancel_event: Checked between points (or chunks when parallel)
            parallel: Force the process pool on or off; defaults to the engine config

        Returns:
            BSLTimeSeries with one point per step

        Raises:
            ValueError: If end_time precedes start_time or the resolution is not positive
            TimeSeriesCancelled: If ``cancel_event`` is set during generation
        """
        params = params or DEFAULT_USER_PARAMETERS
        if end_time < start_time:
            raise ValueError("end_time must not precede start_time")
        resolution = (
            self.config.resolution_minutes if resolution_minutes is None else resolution_minutes
        )
        timestamps = list(iter_time_steps(start_time, end_time, resolution))

        use_parallel = self.config.parallel_time_series if parallel is None else parallel
        use_parallel = use_parallel and len(timestamps) >= self.config.parallel_min_points

        if use_parallel:
            logger.info(
                f"Generating {len(timestamps):,} BSL points on {self.config.worker_count} workers"
            )
            points = self._series_parallel(window, timestamps, params, cancel_event)
        else:
            logger.info(f"Generating {len(timestamps):,} BSL points sequentially")
            points = []
            for timestamp in timestamps:
                _raise_if_cancelled(cancel_event, len(points), len(timestamps))
                points.append(self._time_series_point(window, timestamp, params))

        return BSLTimeSeries(
            points=tuple(points),
            start_time=start_time,
            end_time=end_time,
            resolution_minutes=resolution,
        )

    def _series_parallel(
        self,
        window: EventWindow,
        timestamps: Sequence[datetime],
        params: UserModelParameters,
        cancel_event: Optional[threading.Event],
    ) -> List[BSLTimeSeriesPoint]:
        n_jobs = self.config.worker_count
        jobs = [
            (self, window, chunk, params) for chunk in _chunk_timestamps(timestamps, n_jobs)
        ]
        logger.debug(f"Split {len(timestamps):,} points into {len(jobs)} chunks")

        points: List[BSLTimeSeriesPoint] = []
        _raise_if_cancelled(cancel_event, 0, len(timestamps))
        with mp.Pool(processes=n_jobs) as pool:
            # imap keeps chunk order so points stay chronological
            for chunk_points in pool.imap(_time_series_chunk, jobs):
                points.extend(chunk_points)
                _raise_if_cancelled(cancel_event, len(points), len(timestamps))
        return points

    def estimate_time_to_target(
        self,
        window: EventWindow,
        target_bsl: float,
        params: Optional[UserModelParameters] = None,
        from_time: Optional[datetime] = None,
        max_hours: float = 6,
    ) -> Optional[TimeToTarget]:
        """First time the prediction reaches ``target_bsl``, or None within ``max_hours``."""
        params = params or DEFAULT_USER_PARAMETERS
        now = from_time or window.end_time
        current = self.predict_bsl(window, now, params)

        if abs(current.predicted_bsl - target_bsl) < AT_TARGET_TOLERANCE:
            return TimeToTarget(now, current.predicted_bsl)

        going_down = current.predicted_bsl > target_bsl
        step = timedelta(minutes=TIME_TO_TARGET_STEP_MINUTES)
        for at_time in iter_time_steps(now + step, now + timedelta(hours=max_hours),
                                       TIME_TO_TARGET_STEP_MINUTES):
            predicted = self.predict_bsl(window, at_time, params).predicted_bsl
            if going_down and predicted <= target_bsl:
                return TimeToTarget(at_time, predicted)
            if not going_down and predicted >= target_bsl:
                return TimeToTarget(at_time, predicted)
        return None

    def check_for_alerts(
        self,
        series: BSLTimeSeries,
        hypo_threshold: float = 4.0,
        hyper_threshold: float = 10.0,
    ) -> List[BSLAlert]:
        """
        Scan a series for predicted hypos and hypers.

        Hypos trigger on the lower bound and hypers on the upper bound, so the
        check errs towards warning. An alert that follows one of the same type
        within 30 minutes is dropped.
        """
        max_width = self.confidence_params.max_uncertainty * 2
        alerts: List[BSLAlert] = []

        for point in series.points:
            confidence = 1.0 - (point.upper_bound - point.lower_bound) / max_width

            if point.lower_bound < hypo_threshold:
                if point.predicted_bsl < URGENT_HYPO_BSL:
                    severity = AlertSeverity.URGENT
                elif point.predicted_bsl < hypo_threshold:
                    severity = AlertSeverity.ALERT
                else:
                    severity = AlertSeverity.WARNING
                alerts.append(BSLAlert(
                    AlertType.HYPO, point.timestamp, point.predicted_bsl, confidence, severity
                ))

            if point.upper_bound > hyper_threshold:
                if point.predicted_bsl > URGENT_HYPER_BSL:
                    severity = AlertSeverity.URGENT
                elif point.predicted_bsl > hyper_threshold:
                    severity = AlertSeverity.ALERT
                else:
                    severity = AlertSeverity.WARNING
                alerts.append(BSLAlert(
                    AlertType.HYPER, point.timestamp, point.predicted_bsl, confidence, severity
                ))

        deduped = [
            alert
            for previous, alert in zip([None] + alerts[:-1], alerts)
            if previous is None
            or alert.alert_type != previous.alert_type
            or alert.predicted_time - previous.predicted_time > ALERT_DEDUPE_WINDOW
        ]
        if deduped:
            logger.debug(f"{len(deduped)} alerts ({len(alerts)} before de-duplication)")
        return deduped


def _raise_if_cancelled(
    cancel_event: Optional[threading.Event], completed: int, total: int
) -> None:
    if cancel_event is not None and cancel_event.is_set():
        logger.warning(f"BSL time series cancelled after {completed}/{total} points")
        raise TimeSeriesCancelled(f"cancelled after {completed}/{total} points")


def _chunk_timestamps(
    timestamps: Sequence[datetime], n_jobs: int
) -> List[List[datetime]]:
    """Contiguous chunks, several per worker so cancellation is noticed early."""
    chunk_size = max(1, math.ceil(len(timestamps) / (n_jobs * CHUNKS_PER_WORKER)))
    return [
        list(timestamps[i:i + chunk_size]) for i in range(0, len(timestamps), chunk_size)
    ]


def _time_series_chunk(
    job: Tuple[BSLPredictionModel, EventWindow, List[datetime], UserModelParameters],
) -> List[BSLTimeSeriesPoint]:
    """Predict a chunk of timestamps.

    Defined at module level so the pool can pickle it.
    """
    model, window, timestamps, params = job
    return [model._time_series_point(window, timestamp, params) for timestamp in timestamps]
