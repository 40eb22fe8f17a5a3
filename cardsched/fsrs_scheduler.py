"""Spaced repetition scheduler.

This module implements the simplified FSRS variant used by the flash-card
application.  A :class:`Scheduler` turns a card's memory state, a rating
and the review time into the next memory state, and converts a state into
the instant of the next review.  It performs no I/O; callers own
persistence and must store the returned state as a whole.

The arithmetic intentionally departs from the published FSRS equations
(fixed weight count, flat multipliers for Hard and Easy).  Existing
schedules depend on these exact constants, so keep them as they are.
"""

from __future__ import annotations

import json
import logging
import math
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Union

from cardsched.card_state import (
    DEFAULT_DIFFICULTY,
    DEFAULT_STABILITY,
    CardPhase,
    CardState,
    Rating,
)

logger = logging.getLogger(__name__)

BASE_RETENTION = 0.9
MINUTE = 1.0 / 1440.0
MAX_INTERVAL_DAYS = 180.0
MS_PER_DAY = 86_400_000
MIN_STABILITY = 1.0
MIN_DIFFICULTY = 1.0
MAX_DIFFICULTY = 10.0

# First rating of a new card.
NEW_CARD_INTERVALS = {
    Rating.AGAIN: 1 * MINUTE,
    Rating.HARD: 5 * MINUTE,
    Rating.GOOD: 10 * MINUTE,
    Rating.EASY: 1.0,
}

# (stability multiplier, difficulty delta, interval growth) for review successes.
REVIEW_FACTORS = {
    Rating.HARD: (0.8, -0.5, 1.2),
    Rating.GOOD: (1.0, 0.0, 2.0),
    Rating.EASY: (1.3, -1.0, 2.5),
}


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


@dataclass(frozen=True)
class SchedulerConfig:
    """Tunable parameters of the scheduler.

    ``w0`` scales the retrievability term of the stability update and ``w1``
    its log-stability term.  ``request_retention`` is the recall probability
    the intervals aim for.
    """

    w0: float = 1.0
    w1: float = 1.0
    request_retention: float = BASE_RETENTION

    def __post_init__(self) -> None:
        if not 0.0 < self.request_retention < 1.0:
            raise ValueError("request_retention must be strictly between 0 and 1")

    def to_dict(self) -> Dict[str, float]:
        return asdict(self)


def load_config(path: Union[str, Path]) -> SchedulerConfig:
    """Load a :class:`SchedulerConfig` from the JSON file at *path*."""

    with Path(path).open("r", encoding="utf-8") as handle:
        payload = json.load(handle)
    defaults = SchedulerConfig()
    config = SchedulerConfig(
        w0=float(payload.get("w0", defaults.w0)),
        w1=float(payload.get("w1", defaults.w1)),
        request_retention=float(payload.get("request_retention", defaults.request_retention)),
    )
    logger.debug("Loaded scheduler config %s from %s", config, path)
    return config


# ---------------------------------------------------------------------------
# Core equations
# ---------------------------------------------------------------------------

def retrievability(elapsed_days: float, stability: float) -> float:
    """Probability of recall after *elapsed_days* for a card of *stability*."""

    elapsed = max(elapsed_days, 0.0)
    return math.exp(math.log(BASE_RETENTION) * elapsed / max(MIN_STABILITY, stability))


def stability_update(r: float, stability: float, config: SchedulerConfig) -> float:
    stability = max(stability, MIN_STABILITY)
    value = stability * (
        1
        + math.exp(config.w0) * (11 - r)
        + config.w1 * (math.log(stability) - math.log(1))
    )
    return _clamp(value, MIN_STABILITY, MAX_INTERVAL_DAYS)


def interval_from_stability(stability: float, config: SchedulerConfig) -> float:
    stability = max(stability, MIN_STABILITY)
    # Halves round up, not to even.
    scale = math.log(config.request_retention) / math.log(BASE_RETENTION)
    raw = math.floor(stability * scale + 0.5)
    return float(_clamp(raw, 1.0, MAX_INTERVAL_DAYS))


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------

def _utc_now() -> datetime:
    return datetime.now(tz=timezone.utc)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Scheduler:
    """Stateless scheduling engine bound to one :class:`SchedulerConfig`.

    Instances hold no per-card data and can be shared freely; reviews of the
    same card must still be applied one after the other by the caller.
    """

    def __init__(self, config: Optional[SchedulerConfig] = None) -> None:
        self.config = config or SchedulerConfig()

    def get_initial_state(self) -> CardState:
        return CardState(
            state=CardPhase.NEW,
            stability=DEFAULT_STABILITY,
            difficulty=DEFAULT_DIFFICULTY,
            elapsed_days=0.0,
            scheduled_days=0.0,
            reps=0,
            lapses=0,
        )

    def update_state(
        self,
        current: CardState,
        rating: Any,
        now: Optional[datetime] = None,
        *,
        elapsed_days: Optional[float] = None,
        last_reviewed: Optional[datetime] = None,
    ) -> CardState:
        """Apply *rating* to *current* and return the next state.

        The days elapsed since the previous review come from *elapsed_days*
        when given, otherwise from *last_reviewed* and *now*, otherwise from
        ``current.elapsed_days``.
        """

        grade = Rating.parse(rating)
        elapsed = self._resolve_elapsed(current, now, elapsed_days, last_reviewed)
        stability = max(current.stability, MIN_STABILITY)
        difficulty = _clamp(current.difficulty, MIN_DIFFICULTY, MAX_DIFFICULTY)
        base = current.replace(stability=stability, difficulty=difficulty)

        if current.state is CardPhase.NEW or current.reps == 0:
            updated = self._first_review(base, grade)
        elif current.state in (CardPhase.LEARNING, CardPhase.RELEARNING):
            updated = self._learning_step(base, grade)
        else:
            updated = self._review(base, grade, elapsed)

        logger.debug(
            "%s -> %s on %s: stability=%.3f difficulty=%.2f scheduled_days=%.4f",
            current.state.value,
            updated.state.value,
            grade.label,
            updated.stability,
            updated.difficulty,
            updated.scheduled_days,
        )
        return updated

    def get_next_review_instant(self, state: CardState, now: Optional[datetime] = None) -> datetime:
        if state.scheduled_days < 0:
            raise ValueError("scheduled_days must not be negative")
        moment = _as_utc(now) if now else _utc_now()
        return moment + timedelta(days=state.scheduled_days)

    def next_review_millis(self, state: CardState, now_ms: int) -> int:
        """Epoch-millisecond form of :meth:`get_next_review_instant`."""

        if state.scheduled_days < 0:
            raise ValueError("scheduled_days must not be negative")
        return int(round(now_ms + state.scheduled_days * MS_PER_DAY))

    # ------------------------------------------------------------------
    # Transition rules
    # ------------------------------------------------------------------
    @staticmethod
    def _resolve_elapsed(
        current: CardState,
        now: Optional[datetime],
        elapsed_days: Optional[float],
        last_reviewed: Optional[datetime],
    ) -> float:
        if elapsed_days is not None:
            return max(float(elapsed_days), 0.0)
        if last_reviewed is not None:
            moment = _as_utc(now) if now else _utc_now()
            delta = moment - _as_utc(last_reviewed)
            return max(delta.total_seconds() / 86400.0, 0.0)
        return max(current.elapsed_days, 0.0)

    @staticmethod
    def _first_review(state: CardState, grade: Rating) -> CardState:
        return state.replace(
            state=CardPhase.LEARNING if grade is Rating.AGAIN else CardPhase.REVIEW,
            stability=MIN_STABILITY,
            scheduled_days=NEW_CARD_INTERVALS[grade],
            elapsed_days=0.0,
            reps=1,
        )

    @staticmethod
    def _learning_step(state: CardState, grade: Rating) -> CardState:
        if grade is Rating.AGAIN:
            phase, interval = state.state, MINUTE
        elif grade is Rating.HARD:
            # Hard keeps the card on the learning step.
            phase, interval = state.state, 10 * MINUTE
        else:
            phase, interval = CardPhase.REVIEW, 1.0
        return state.replace(
            state=phase,
            scheduled_days=interval,
            elapsed_days=0.0,
            reps=state.reps + 1,
        )

    def _review(self, state: CardState, grade: Rating, elapsed: float) -> CardState:
        if grade is Rating.AGAIN:
            return state.replace(
                state=CardPhase.RELEARNING,
                stability=max(MIN_STABILITY, state.stability * 0.5),
                difficulty=min(MAX_DIFFICULTY, state.difficulty + 1),
                scheduled_days=MINUTE,
                elapsed_days=0.0,
                reps=state.reps + 1,
                lapses=state.lapses + 1,
            )

        stability_factor, difficulty_delta, growth = REVIEW_FACTORS[grade]
        r = retrievability(elapsed, state.stability)
        new_stability = max(
            MIN_STABILITY,
            stability_update(r, state.stability, self.config) * stability_factor,
        )
        interval = min(
            state.scheduled_days * growth,
            interval_from_stability(new_stability, self.config),
        )
        return state.replace(
            state=CardPhase.REVIEW,
            stability=new_stability,
            difficulty=_clamp(state.difficulty + difficulty_delta, MIN_DIFFICULTY, MAX_DIFFICULTY),
            scheduled_days=_clamp(interval, 1.0, MAX_INTERVAL_DAYS),
            elapsed_days=0.0,
            reps=state.reps + 1,
        )


__all__ = [
    "BASE_RETENTION",
    "MAX_INTERVAL_DAYS",
    "MINUTE",
    "MS_PER_DAY",
    "Scheduler",
    "SchedulerConfig",
    "interval_from_stability",
    "load_config",
    "retrievability",
    "stability_update",
]
