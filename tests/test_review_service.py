import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from cardsched import card_store, review_service
from cardsched.card_state import CardPhase, CardState, Rating, ScheduledCard
from cardsched.fsrs_scheduler import MINUTE, Scheduler

NOW = datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)


class FixedRandom:
    """Stand-in for random.Random that always returns one end of the range."""

    def __init__(self, high: bool) -> None:
        self.high = high

    def randint(self, low, high):
        return high if self.high else low


@pytest.fixture
def paths(tmp_path):
    return {
        "state_path": tmp_path / "card_state.jsonl",
        "log_path": tmp_path / "review_log.jsonl",
    }


@pytest.fixture
def scheduler():
    return Scheduler()


def test_create_card_uses_initial_state(paths, scheduler):
    card = review_service.create_card(
        "osmosis", scheduler=scheduler, deck_id="biology", path=paths["state_path"]
    )

    assert card.state == scheduler.get_initial_state()
    assert card.next_review is None
    assert card.version == 1
    assert card.deck_id == "biology"

    with pytest.raises(ValueError):
        review_service.create_card("osmosis", scheduler=scheduler, path=paths["state_path"])


def test_first_rating_schedules_short_step_and_logs(paths, scheduler):
    review_service.create_card("osmosis", scheduler=scheduler, path=paths["state_path"])

    outcome = review_service.submit_rating(
        "osmosis", "good", scheduler=scheduler, now=NOW, response_time_ms=4200, **paths
    )

    assert outcome.success
    assert outcome.rating is Rating.GOOD
    assert outcome.elapsed_days == 0.0
    assert outcome.before.state.state is CardPhase.NEW
    after = outcome.after
    assert after.state.state is CardPhase.REVIEW
    assert after.last_reviewed == NOW
    assert after.next_review == NOW + timedelta(days=10 * MINUTE)
    assert after.version == 2

    stored = card_store.load_card("osmosis", path=paths["state_path"])
    assert stored == after

    records = card_store.read_review_log(path=paths["log_path"])
    assert len(records) == 1
    assert records[0]["rating"] == 3
    assert records[0]["response_time_ms"] == 4200
    assert records[0]["scheduled_days"] == pytest.approx(10 * MINUTE)
    assert records[0]["reviewed_at"] == int(NOW.timestamp() * 1000)


def test_elapsed_days_come_from_last_review(paths, scheduler):
    card_store.save_card(
        ScheduledCard(
            card_id="mitosis",
            state=CardState(state=CardPhase.REVIEW, stability=4.0, scheduled_days=4.0, reps=3),
            last_reviewed=NOW - timedelta(days=5),
            next_review=NOW - timedelta(days=1),
        ),
        path=paths["state_path"],
    )

    outcome = review_service.submit_rating("mitosis", Rating.GOOD, scheduler=scheduler, now=NOW, **paths)

    assert outcome.elapsed_days == pytest.approx(5.0)
    expected = scheduler.update_state(outcome.before.state, Rating.GOOD, NOW, elapsed_days=5.0)
    assert outcome.after.state == expected
    assert outcome.log_entry["elapsed_days"] == pytest.approx(5.0)


def test_lapse_is_logged_as_again(paths, scheduler):
    card_store.save_card(
        ScheduledCard(
            card_id="mitosis",
            state=CardState(state=CardPhase.REVIEW, stability=10.0, scheduled_days=10.0, reps=3),
            last_reviewed=NOW - timedelta(days=10),
            next_review=NOW,
        ),
        path=paths["state_path"],
    )

    outcome = review_service.submit_rating("mitosis", 1, scheduler=scheduler, now=NOW, **paths)

    assert not outcome.success
    assert outcome.after.state.state is CardPhase.RELEARNING
    assert outcome.after.state.lapses == 1
    assert outcome.log_entry["rating"] == 1


def test_unknown_card_raises_key_error(paths, scheduler):
    with pytest.raises(KeyError):
        review_service.submit_rating("ghost", "good", scheduler=scheduler, now=NOW, **paths)


def test_invalid_rating_writes_nothing(paths, scheduler):
    review_service.create_card("osmosis", scheduler=scheduler, path=paths["state_path"])

    with pytest.raises(ValueError):
        review_service.submit_rating("osmosis", "perfect", scheduler=scheduler, now=NOW, **paths)

    assert card_store.load_card("osmosis", path=paths["state_path"]).version == 1
    assert not paths["log_path"].exists()


def test_due_cards_puts_unreviewed_first_then_oldest():
    cards = [
        ScheduledCard(card_id="later", next_review=NOW + timedelta(hours=1)),
        ScheduledCard(card_id="recent", next_review=NOW - timedelta(hours=1)),
        ScheduledCard(card_id="fresh"),
        ScheduledCard(card_id="oldest", next_review=NOW - timedelta(days=3)),
        ScheduledCard(card_id="exact", next_review=NOW),
    ]

    due = review_service.due_cards(cards, NOW)

    assert [card.card_id for card in due] == ["fresh", "oldest", "recent", "exact"]
    assert review_service.count_due(cards, NOW) == 4


def make_queue(count, **kwargs):
    cards = [
        ScheduledCard(card_id=f"card-{index}", next_review=NOW - timedelta(minutes=count - index))
        for index in range(count)
    ]
    return review_service.ReviewQueue(cards, now=NOW, **kwargs)


def test_queue_pops_cards_on_success():
    queue = make_queue(2)

    assert queue.current().card_id == "card-0"
    queue.record(Rating.GOOD)
    assert queue.current().card_id == "card-1"
    queue.record("easy")

    assert queue.is_finished
    assert queue.current() is None
    assert queue.correct_count == 2
    assert queue.reviewed_count == 2


@pytest.mark.parametrize("high, expected_position", [(False, 3), (True, 7)])
def test_queue_reinserts_forgotten_card_later(high, expected_position):
    queue = make_queue(10, rng=FixedRandom(high))
    forgotten = queue.current()
    updated = forgotten.replace(state=CardState(state=CardPhase.RELEARNING, reps=2))

    queue.record(Rating.AGAIN, updated)

    pending = queue.pending()
    assert len(pending) == 10
    assert pending.index(updated) == expected_position
    assert pending[expected_position].state.state is CardPhase.RELEARNING
    assert queue.current().card_id == "card-1"
    assert queue.incorrect_count == 1
    assert queue.correct_count == 0


def test_queue_reinsertion_is_clamped_to_end():
    queue = make_queue(2, rng=FixedRandom(True))
    queue.record(Rating.AGAIN)

    assert queue.current().card_id == "card-1"
    queue.record(Rating.GOOD)
    assert queue.current().card_id == "card-0"
    assert len(queue) == 1


def test_queue_limit_and_empty_record():
    queue = make_queue(5, limit=2)
    assert len(queue) == 2

    empty = review_service.ReviewQueue([], now=NOW)
    with pytest.raises(IndexError):
        empty.record(Rating.GOOD)


def test_finish_stores_session_counters(tmp_path):
    session_file = tmp_path / "study_sessions.jsonl"
    queue = make_queue(3, rng=FixedRandom(False))

    queue.record(Rating.GOOD, response_time_ms=2000)
    queue.record(Rating.AGAIN, response_time_ms=4000)
    queue.record(Rating.EASY, response_time_ms=3000)
    session = queue.finish(user_id="ada", now=NOW + timedelta(minutes=5), path=session_file)

    assert session["user_id"] == "ada"
    assert session["cards_studied"] == 2
    assert session["correct_count"] == 2
    assert session["incorrect_count"] == 1
    assert session["average_time_ms"] == 3000
    assert session["start_time"] == int(NOW.timestamp() * 1000)
    assert session["end_time"] == session["start_time"] + 300_000
    assert card_store.read_study_sessions("ada", path=session_file) == [session]


def test_finish_without_answers_writes_nothing(tmp_path):
    session_file = tmp_path / "study_sessions.jsonl"
    queue = make_queue(2)

    assert queue.finish(now=NOW, path=session_file) is None
    assert queue.ended_at == NOW
    assert not session_file.exists()


def test_finished_session_rejects_further_use(tmp_path):
    queue = make_queue(2)
    queue.record(Rating.GOOD)
    queue.finish(now=NOW - timedelta(hours=1), path=tmp_path / "study_sessions.jsonl")

    assert queue.ended_at == queue.started_at
    with pytest.raises(RuntimeError):
        queue.record(Rating.GOOD)
    with pytest.raises(RuntimeError):
        queue.finish(path=tmp_path / "study_sessions.jsonl")
