"""High level helpers that orchestrate reviews and persistence."""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from cardsched import card_store
from cardsched.card_state import CardState, Rating, ScheduledCard, to_millis
from cardsched.fsrs_scheduler import Scheduler

logger = logging.getLogger(__name__)

# An "Again" card comes back after this many other cards, plus up to four more.
REQUEUE_OFFSET = 3
REQUEUE_JITTER = 4


def _utc_now() -> datetime:
    return datetime.now(tz=timezone.utc)


def _as_utc(value: Optional[datetime]) -> datetime:
    if value is None:
        return _utc_now()
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass
class ReviewOutcome:
    before: ScheduledCard
    after: ScheduledCard
    rating: Rating
    elapsed_days: float
    log_entry: Dict[str, Any]

    @property
    def success(self) -> bool:
        return self.rating is not Rating.AGAIN


def create_card(
    card_id: str,
    *,
    scheduler: Scheduler,
    deck_id: Optional[str] = None,
    user_id: Optional[str] = None,
    path: Path = card_store.STATE_FILE,
) -> ScheduledCard:
    """Register a new flashcard with the initial scheduling state."""

    if card_store.load_card(card_id, user_id, path=path) is not None:
        raise ValueError(f"Card {card_id!r} already exists")
    card = ScheduledCard(
        card_id=card_id,
        state=scheduler.get_initial_state(),
        deck_id=deck_id,
    )
    return card_store.save_card(card, user_id=user_id, expected_version=0, path=path)


def submit_rating(
    card_id: str,
    rating: Any,
    *,
    scheduler: Scheduler,
    now: Optional[datetime] = None,
    user_id: Optional[str] = None,
    response_time_ms: Optional[int] = None,
    state_path: Path = card_store.STATE_FILE,
    log_path: Path = card_store.LOG_FILE,
) -> ReviewOutcome:
    """Record *rating* for the stored card and persist the updated state."""

    grade = Rating.parse(rating)
    event_dt = _as_utc(now)
    card = card_store.load_card(card_id, user_id, path=state_path)
    if card is None:
        raise KeyError(card_id)

    elapsed = 0.0
    if card.last_reviewed is not None:
        elapsed = max((event_dt - card.last_reviewed).total_seconds() / 86400.0, 0.0)

    new_state: CardState = scheduler.update_state(card.state, grade, event_dt, elapsed_days=elapsed)
    updated = card.replace(
        state=new_state,
        last_reviewed=event_dt,
        next_review=scheduler.get_next_review_instant(new_state, event_dt),
    )
    saved = card_store.save_card(
        updated, user_id=user_id, expected_version=card.version, path=state_path
    )

    log_entry = card_store.append_review_log(
        {
            "user_id": user_id or card_store.DEFAULT_USER_ID,
            "card_id": saved.card_id,
            "rating": int(grade),
            "stability": new_state.stability,
            "difficulty": new_state.difficulty,
            "elapsed_days": elapsed,
            "scheduled_days": new_state.scheduled_days,
            "response_time_ms": response_time_ms,
            "reviewed_at": to_millis(event_dt),
        },
        path=log_path,
    )
    logger.info(
        "Reviewed %s as %s: %s -> %s, next review %s",
        saved.card_id,
        grade.label,
        card.state.state.value,
        new_state.state.value,
        saved.next_review.isoformat() if saved.next_review else None,
    )
    return ReviewOutcome(
        before=card,
        after=saved,
        rating=grade,
        elapsed_days=elapsed,
        log_entry=log_entry,
    )


def due_cards(cards: Iterable[ScheduledCard], now: Optional[datetime] = None) -> List[ScheduledCard]:
    """Return the due cards, never-reviewed ones first, then by due time."""

    moment = _as_utc(now)
    due = [card for card in cards if card.is_due(moment)]
    return sorted(
        due,
        key=lambda card: (card.next_review is not None, card.next_review or moment),
    )


def count_due(cards: Iterable[ScheduledCard], now: Optional[datetime] = None) -> int:
    moment = _as_utc(now)
    return sum(1 for card in cards if card.is_due(moment))


class ReviewQueue:
    """Order the due cards of one practice session.

    The queue also keeps the session counters; :meth:`finish` stores them as
    a study session record.
    """

    def __init__(
        self,
        cards: Iterable[ScheduledCard],
        *,
        now: Optional[datetime] = None,
        limit: Optional[int] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.started_at = _as_utc(now)
        self.ended_at: Optional[datetime] = None
        queue = due_cards(cards, self.started_at)
        if limit is not None:
            queue = queue[: max(limit, 0)]
        self._queue: List[ScheduledCard] = queue
        self._rng = rng or random.Random()
        self.correct_count = 0
        self.incorrect_count = 0
        self.reviewed_count = 0
        self.total_response_ms = 0

    def __len__(self) -> int:
        return len(self._queue)

    @property
    def is_finished(self) -> bool:
        return not self._queue

    def current(self) -> Optional[ScheduledCard]:
        return self._queue[0] if self._queue else None

    def pending(self) -> List[ScheduledCard]:
        return list(self._queue)

    def record(
        self,
        rating: Any,
        updated: Optional[ScheduledCard] = None,
        *,
        response_time_ms: Optional[int] = None,
    ) -> None:
        """Advance the queue after the current card was rated.

        *updated* replaces the queued copy of the card, so a re-queued card
        carries its latest state.
        """

        if self.ended_at is not None:
            raise RuntimeError("record() called on a finished session")
        if not self._queue:
            raise IndexError("record() called on an empty review queue")
        grade = Rating.parse(rating)
        if response_time_ms:
            self.total_response_ms += max(int(response_time_ms), 0)
        card = self._queue.pop(0)
        if updated is not None:
            card = updated
        if grade is Rating.AGAIN:
            self.incorrect_count += 1
            position = min(
                REQUEUE_OFFSET + self._rng.randint(0, REQUEUE_JITTER),
                len(self._queue),
            )
            self._queue.insert(position, card)
        else:
            self.correct_count += 1
            self.reviewed_count += 1

    def finish(
        self,
        *,
        user_id: Optional[str] = None,
        now: Optional[datetime] = None,
        path: Path = card_store.SESSION_FILE,
    ) -> Optional[Dict[str, Any]]:
        """Close the session and store its counters.

        A session in which no card was rated is closed without a record.
        """

        if self.ended_at is not None:
            raise RuntimeError("Session already finished")
        self.ended_at = max(_as_utc(now), self.started_at)
        answered = self.correct_count + self.incorrect_count
        if answered == 0:
            return None
        session = card_store.append_study_session(
            {
                "user_id": user_id or card_store.DEFAULT_USER_ID,
                "cards_studied": self.reviewed_count,
                "correct_count": self.correct_count,
                "incorrect_count": self.incorrect_count,
                "average_time_ms": self.total_response_ms // answered,
                "start_time": to_millis(self.started_at),
                "end_time": to_millis(self.ended_at),
            },
            path=path,
        )
        logger.info(
            "Finished session: %d card(s), %d correct, %d again",
            self.reviewed_count,
            self.correct_count,
            self.incorrect_count,
        )
        return session


__all__ = [
    "ReviewOutcome",
    "ReviewQueue",
    "count_due",
    "create_card",
    "due_cards",
    "submit_rating",
]
