"""
Race engine package: data models, rating math, and the tick simulator.

Higher level orchestration (the phase controller and the automation
supervisor) composes these pieces against the stores.
"""

from .data_models import (  # noqa: F401
    Contestant,
    FinishRecord,
    HorseStats,
    KineticPhase,
    RacePhase,
    RaceState,
)
from .ratings import (  # noqa: F401
    RatingEngine,
    compute_fair_odds,
    expected_score,
    rating_tier,
    record_stats,
    update_ratings,
)
from .telemetry import TelemetryCollector, TelemetryFrame, TelemetryRacerFrame  # noqa: F401
from .race_loop import FinishEvent, RaceSimulator, TickReport  # noqa: F401

__all__ = [
    "Contestant",
    "FinishRecord",
    "HorseStats",
    "KineticPhase",
    "RacePhase",
    "RaceState",
    "RatingEngine",
    "compute_fair_odds",
    "expected_score",
    "rating_tier",
    "record_stats",
    "update_ratings",
    "TelemetryCollector",
    "TelemetryFrame",
    "TelemetryRacerFrame",
    "FinishEvent",
    "RaceSimulator",
    "TickReport",
]
