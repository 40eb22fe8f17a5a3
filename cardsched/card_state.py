"""Domain model for flashcard scheduling state.

This module defines :class:`CardState`, the memory state the scheduler
operates on, the :class:`Rating` a learner gives after each review and
:class:`ScheduledCard`, the persisted row that pairs a state with its
review timestamps.  It also provides helpers for serialising the state to
and from the JSON records that the card store writes to disk.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Any, Dict, Mapping, Optional

DEFAULT_STABILITY = 1.0
DEFAULT_DIFFICULTY = 5.0


class CardPhase(str, Enum):
    NEW = "new"
    LEARNING = "learning"
    REVIEW = "review"
    RELEARNING = "relearning"

    @classmethod
    def parse(cls, value: Any) -> "CardPhase":
        """Map a stored phase label onto the enum, defaulting to ``NEW``."""

        if isinstance(value, CardPhase):
            return value
        if isinstance(value, str):
            try:
                return cls(value.strip().lower())
            except ValueError:
                pass
        return cls.NEW


class Rating(IntEnum):
    """Learner feedback for a single review.

    The ordinal is only used for display and logging; the transition rules
    branch on the member itself.
    """

    AGAIN = 1
    HARD = 2
    GOOD = 3
    EASY = 4

    @property
    def label(self) -> str:
        return self.name.lower()

    @classmethod
    def parse(cls, value: Any) -> "Rating":
        if isinstance(value, Rating):
            return value
        if isinstance(value, str):
            key = value.strip().upper()
            if key in cls.__members__:
                return cls[key]
        elif isinstance(value, int) and not isinstance(value, bool):
            try:
                return cls(value)
            except ValueError:
                pass
        raise ValueError(f"Unsupported rating: {value!r}")


def _ensure_utc(value: datetime) -> datetime:
    """Normalise *value* to a UTC timezone aware datetime."""

    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Convert a stored timestamp into a :class:`datetime` in UTC if possible.

    Numbers are epoch milliseconds, strings are ISO-8601.
    """

    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        return _ensure_utc(value)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        try:
            return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text.endswith("Z"):
            text = text[:-1]
        try:
            return _ensure_utc(datetime.fromisoformat(text))
        except ValueError:
            return None
    return None


def to_millis(value: Optional[datetime]) -> Optional[int]:
    """Serialise a datetime as integer epoch milliseconds."""

    if value is None:
        return None
    return int(round(_ensure_utc(value).timestamp() * 1000))


def _float_or(value: Any, default: float) -> float:
    if value in (None, ""):
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _int_or(value: Any, default: int) -> int:
    if value in (None, ""):
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


@dataclass
class CardState:
    """Memory state of a single flashcard.

    Parameters
    ----------
    state:
        Current :class:`CardPhase`.
    stability:
        Memory decay time constant in days. Never below 1.
    difficulty:
        How hard the card is to retain, between 1 and 10.
    elapsed_days:
        Days since the last review, as seen by the caller. Reset to 0 by
        every update.
    scheduled_days:
        Interval until the next review. Learning steps are sub-day
        (``1 / 1440`` is one minute).
    reps / lapses:
        Number of ratings applied, and number of ``Again`` ratings received
        while in review.
    """

    state: CardPhase = CardPhase.NEW
    stability: float = DEFAULT_STABILITY
    difficulty: float = DEFAULT_DIFFICULTY
    elapsed_days: float = 0.0
    scheduled_days: float = 0.0
    reps: int = 0
    lapses: int = 0

    def __post_init__(self) -> None:
        self.state = CardPhase.parse(self.state)

    # ------------------------------------------------------------------
    # Serialisation helpers
    # ------------------------------------------------------------------
    @classmethod
    def from_storage(cls, payload: Mapping[str, Any]) -> "CardState":
        """Create a :class:`CardState` from a stored row.

        Missing or empty values fall back to the defaults of a new card.
        """

        return cls(
            state=CardPhase.parse(payload.get("state")),
            stability=_float_or(payload.get("stability"), DEFAULT_STABILITY),
            difficulty=_float_or(payload.get("difficulty"), DEFAULT_DIFFICULTY),
            elapsed_days=_float_or(payload.get("elapsedDays"), 0.0),
            scheduled_days=_float_or(payload.get("scheduledDays"), 0.0),
            reps=_int_or(payload.get("reps"), 0),
            lapses=_int_or(payload.get("lapses"), 0),
        )

    def to_storage_dict(self) -> Dict[str, Any]:
        """Serialise the state into a JSON friendly dictionary."""

        return {
            "state": self.state.value,
            "stability": self.stability,
            "difficulty": self.difficulty,
            "elapsedDays": self.elapsed_days,
            "scheduledDays": self.scheduled_days,
            "reps": self.reps,
            "lapses": self.lapses,
        }

    def replace(self, **changes: Any) -> "CardState":
        """Return a new instance with *changes* applied."""

        return replace(self, **changes)


@dataclass
class ScheduledCard:
    """A flashcard row as seen by the scheduling layer."""

    card_id: str
    state: CardState = field(default_factory=CardState)
    last_reviewed: Optional[datetime] = None
    next_review: Optional[datetime] = None
    deck_id: Optional[str] = None
    version: int = 0

    def __post_init__(self) -> None:
        if not self.card_id:
            raise ValueError("ScheduledCard requires a card_id")
        self.card_id = str(self.card_id)
        if self.last_reviewed is not None:
            self.last_reviewed = _ensure_utc(self.last_reviewed)
        if self.next_review is not None:
            self.next_review = _ensure_utc(self.next_review)

    def is_due(self, now: Optional[datetime] = None) -> bool:
        """A card is due when it was never scheduled or its time has come."""

        if self.next_review is None:
            return True
        moment = _ensure_utc(now) if now else datetime.now(tz=timezone.utc)
        return self.next_review <= moment

    @classmethod
    def from_storage(cls, payload: Mapping[str, Any]) -> "ScheduledCard":
        card_id = payload.get("cardId") or payload.get("card_id")
        if not card_id:
            raise ValueError("Stored card rows must define a cardId")
        deck_id = payload.get("deckId")
        return cls(
            card_id=str(card_id),
            state=CardState.from_storage(payload),
            last_reviewed=parse_timestamp(payload.get("lastReviewed")),
            next_review=parse_timestamp(payload.get("nextReview")),
            deck_id=str(deck_id) if deck_id not in (None, "") else None,
            version=_int_or(payload.get("version"), 0),
        )

    def to_storage_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"cardId": self.card_id}
        data.update(self.state.to_storage_dict())
        data["lastReviewed"] = to_millis(self.last_reviewed)
        data["nextReview"] = to_millis(self.next_review)
        if self.deck_id is not None:
            data["deckId"] = self.deck_id
        data["version"] = self.version
        return data

    def replace(self, **changes: Any) -> "ScheduledCard":
        return replace(self, **changes)


__all__ = [
    "CardPhase",
    "CardState",
    "DEFAULT_DIFFICULTY",
    "DEFAULT_STABILITY",
    "Rating",
    "ScheduledCard",
    "parse_timestamp",
    "to_millis",
]
