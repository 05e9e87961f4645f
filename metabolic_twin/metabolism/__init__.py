"""Physiological curve models for insulin, carbs, alcohol and time of day.

Each model holds private copies of its parameter tables and exposes pure
functions of (events, time), so instances can be shared across threads or
pickled into worker processes.
"""

from metabolic_twin.metabolism.insulin_decay import (
    INSULIN_KINETICS,
    InsulinDecayModel,
    assess_insulin_stacking,
    estimate_insulin_bsl_effect,
)
from metabolic_twin.metabolism.carb_absorption import (
    GI_ESTIMATES,
    CarbAbsorptionModel,
    estimate_carb_bsl_effect,
    get_absorption_params,
)
from metabolic_twin.metabolism.alcohol_metabolism import (
    ALCOHOL_PARAMS,
    AlcoholMetabolismModel,
    adjust_elimination_rate,
)
from metabolic_twin.metabolism.circadian import (
    DAWN_PHENOMENON_PATTERN,
    DEFAULT_CIRCADIAN_PATTERN,
    CircadianModel,
)

__all__ = [
    "INSULIN_KINETICS",
    "InsulinDecayModel",
    "assess_insulin_stacking",
    "estimate_insulin_bsl_effect",
    "GI_ESTIMATES",
    "CarbAbsorptionModel",
    "estimate_carb_bsl_effect",
    "get_absorption_params",
    "ALCOHOL_PARAMS",
    "AlcoholMetabolismModel",
    "adjust_elimination_rate",
    "DAWN_PHENOMENON_PATTERN",
    "DEFAULT_CIRCADIAN_PATTERN",
    "CircadianModel",
]
