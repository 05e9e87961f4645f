"""Metabolic state engine for type 1 diabetes decision support.

Predicts blood sugar from logged insulin, meals, drinks and BSL readings,
and recommends insulin doses with safety limits.
"""

__version__ = "1.0.0"

from metabolic_twin.data_models import (
    DEFAULT_USER_PARAMETERS,
    EventType,
    EventWindow,
    PhysiologicalEvent,
    UserModelParameters,
    parse_events,
)
from metabolic_twin.prediction_engine import (
    BSLPredictionModel,
    TimeSeriesCancelled,
)
from metabolic_twin.recommendation_engine import InsulinRecommendationEngine

__all__ = [
    "DEFAULT_USER_PARAMETERS",
    "EventType",
    "EventWindow",
    "PhysiologicalEvent",
    "UserModelParameters",
    "parse_events",
    "BSLPredictionModel",
    "TimeSeriesCancelled",
    "InsulinRecommendationEngine",
]
