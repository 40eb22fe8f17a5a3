"""Spaced repetition scheduling for the flash-card application."""

from .card_state import CardPhase, CardState, Rating, ScheduledCard
from .fsrs_scheduler import (
    Scheduler,
    SchedulerConfig,
    interval_from_stability,
    load_config,
    retrievability,
    stability_update,
)

__all__ = [
    "CardPhase",
    "CardState",
    "Rating",
    "ScheduledCard",
    "Scheduler",
    "SchedulerConfig",
    "interval_from_stability",
    "load_config",
    "retrievability",
    "stability_update",
]
