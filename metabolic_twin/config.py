"""Centralized configuration for the metabolic state engine."""

from __future__ import annotations

import logging
import multiprocessing as mp
import os
from dataclasses import dataclass, field
from typing import Optional

from dotenv import load_dotenv


# Load environment variables from a local .env file when present.
load_dotenv()


def _bool_from_env(var_name: str, default: bool = True) -> bool:
    """Interpret common truthy/falsey strings from the environment."""

    raw_value = os.getenv(var_name)
    if raw_value is None:
        return default
    return raw_value.strip().lower() in {"1", "true", "yes", "on"}


def _optional_int_from_env(var_name: str) -> Optional[int]:
    raw_value = os.getenv(var_name)
    if raw_value is None or not raw_value.strip():
        return None
    return int(raw_value)


@dataclass(frozen=True)
class EngineConfig:
    """Runtime knobs for prediction and time-series generation."""

    resolution_minutes: int = field(
        default_factory=lambda: int(os.getenv("MT_RESOLUTION_MINUTES", "5"))
    )
    parallel_time_series: bool = field(
        default_factory=lambda: _bool_from_env("MT_PARALLEL_TIME_SERIES", default=False)
    )
    max_workers: Optional[int] = field(
        default_factory=lambda: _optional_int_from_env("MT_MAX_WORKERS")
    )
    # Below this many points the process pool costs more than it saves.
    parallel_min_points: int = field(
        default_factory=lambda: int(os.getenv("MT_PARALLEL_MIN_POINTS", "288"))
    )
    log_level: str = field(
        default_factory=lambda: os.getenv("MT_LOG_LEVEL", "WARNING").upper()
    )

    def __post_init__(self):
        if self.resolution_minutes <= 0:
            raise ValueError(
                f"resolution_minutes must be positive, got {self.resolution_minutes}"
            )
        if self.max_workers is not None and self.max_workers <= 0:
            raise ValueError(f"max_workers must be positive, got {self.max_workers}")
        if self.parallel_min_points < 1:
            raise ValueError("parallel_min_points must be at least 1")
        if not isinstance(logging.getLevelName(self.log_level), int):
            raise ValueError(f"Unknown log level {self.log_level!r}")

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Re-read the environment (fields are evaluated at construction)."""
        return cls()

    @property
    def worker_count(self) -> int:
        return self.max_workers or mp.cpu_count()


def setup_logging(level: Optional[str] = None) -> None:
    """Configure root logging for host applications and scripts.

    The library itself only emits through module loggers.
    """
    logging.basicConfig(
        level=(level or ENGINE_CONFIG.log_level).upper(),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    )
    logging.getLogger(__name__).debug(
        "Logging initialized at %s (cpu cores: %d)",
        logging.getLevelName(logging.getLogger().level),
        mp.cpu_count(),
    )


ENGINE_CONFIG = EngineConfig()
