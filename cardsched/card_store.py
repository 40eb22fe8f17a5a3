"""JSONL-backed storage for scheduled cards, the review log and study sessions."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from cardsched.card_state import ScheduledCard, to_millis

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Paths and constants
# ---------------------------------------------------------------------------
STATE_ROOT = Path("res/state")
STATE_FILE = STATE_ROOT / "card_state.jsonl"
LOG_ROOT = Path("res/log")
LOG_FILE = LOG_ROOT / "review_log.jsonl"
SESSION_FILE = LOG_ROOT / "study_sessions.jsonl"
DEFAULT_USER_ID = "default"

REQUIRED_LOG_FIELDS = (
    "user_id",
    "card_id",
    "rating",
    "stability",
    "difficulty",
    "elapsed_days",
    "scheduled_days",
)
REQUIRED_SESSION_FIELDS = (
    "user_id",
    "cards_studied",
    "correct_count",
    "incorrect_count",
    "start_time",
    "end_time",
)


class StaleCardError(RuntimeError):
    """Raised when a card was saved by someone else since it was loaded."""

    def __init__(self, card_id: str, expected: int, actual: int) -> None:
        super().__init__(
            f"Card {card_id!r} is at version {actual}, expected {expected}"
        )
        self.card_id = card_id
        self.expected = expected
        self.actual = actual


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _utc_now() -> datetime:
    return datetime.now(tz=timezone.utc)


def _ensure_parent(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def _normalise_user_id(user_id: Optional[str]) -> str:
    return str(user_id) if user_id not in (None, "") else DEFAULT_USER_ID


def _read_jsonl(path: Path) -> List[Dict[str, Any]]:
    if not path.exists():
        return []
    records: List[Dict[str, Any]] = []
    with path.open("r", encoding="utf-8") as handle:
        for line in handle:
            line = line.strip()
            if not line:
                continue
            records.append(json.loads(line))
    return records


def _write_jsonl(path: Path, records: Iterable[Mapping[str, Any]]) -> None:
    _ensure_parent(path)
    with path.open("w", encoding="utf-8") as handle:
        for record in records:
            handle.write(json.dumps(record, ensure_ascii=False))
            handle.write("\n")


def _append_jsonl(path: Path, record: Mapping[str, Any]) -> None:
    _ensure_parent(path)
    with path.open("a", encoding="utf-8") as handle:
        handle.write(json.dumps(record, ensure_ascii=False))
        handle.write("\n")


def _record_key(record: Mapping[str, Any]) -> Tuple[str, str]:
    user_id = _normalise_user_id(record.get("user_id"))
    card_id = record.get("card_id")
    if not card_id:
        raise ValueError("State records must define a card_id")
    return user_id, str(card_id)


def _card_to_record(card: ScheduledCard, *, user_id: Optional[str] = None) -> Dict[str, Any]:
    return {
        "user_id": _normalise_user_id(user_id),
        "card_id": card.card_id,
        "card": card.to_storage_dict(),
    }


def _record_to_card(record: Mapping[str, Any]) -> ScheduledCard:
    payload = record.get("card")
    if not isinstance(payload, Mapping):
        raise ValueError(f"Invalid state record for card {record.get('card_id')!r}")
    data = dict(payload)
    data.setdefault("cardId", record.get("card_id"))
    return ScheduledCard.from_storage(data)


# ---------------------------------------------------------------------------
# Card state store
# ---------------------------------------------------------------------------

def load_cards(user_id: Optional[str] = None, *, path: Path = STATE_FILE) -> Dict[str, ScheduledCard]:
    key_user = _normalise_user_id(user_id)
    cards: Dict[str, ScheduledCard] = {}
    for record in _read_jsonl(Path(path)):
        user_key, card_key = _record_key(record)
        if user_key == key_user:
            cards[card_key] = _record_to_card(record)
    return cards


def load_card(
    card_id: str, user_id: Optional[str] = None, *, path: Path = STATE_FILE
) -> Optional[ScheduledCard]:
    return load_cards(user_id, path=path).get(str(card_id))


def save_card(
    card: ScheduledCard,
    *,
    user_id: Optional[str] = None,
    expected_version: Optional[int] = None,
    path: Path = STATE_FILE,
) -> ScheduledCard:
    """Write the full row for *card* and return it with its new version.

    When *expected_version* is given the stored row must still be at that
    version, otherwise :class:`StaleCardError` is raised and nothing is
    written.
    """

    path = Path(path)
    records = _read_jsonl(path)
    key = (_normalise_user_id(user_id), card.card_id)
    index: Optional[int] = None
    stored_version = 0
    for position, stored in enumerate(records):
        if _record_key(stored) == key:
            index = position
            stored_version = _record_to_card(stored).version
            break

    if expected_version is not None and expected_version != stored_version:
        logger.warning(
            "Rejected stale write for card %s (expected v%d, stored v%d)",
            card.card_id,
            expected_version,
            stored_version,
        )
        raise StaleCardError(card.card_id, expected_version, stored_version)

    saved = card.replace(version=stored_version + 1)
    record = _card_to_record(saved, user_id=user_id)
    if index is None:
        records.append(record)
    else:
        records[index] = record
    _write_jsonl(path, records)
    logger.debug("Saved card %s at version %d", saved.card_id, saved.version)
    return saved


def save_cards(
    cards: Iterable[ScheduledCard], *, user_id: Optional[str] = None, path: Path = STATE_FILE
) -> None:
    path = Path(path)
    records = _read_jsonl(path)
    record_map = {_record_key(record): record for record in records}
    for card in cards:
        key = (_normalise_user_id(user_id), card.card_id)
        previous = record_map.get(key)
        version = _record_to_card(previous).version if previous else 0
        record_map[key] = _card_to_record(card.replace(version=version + 1), user_id=user_id)
    _write_jsonl(path, record_map.values())


def delete_card(card_id: str, user_id: Optional[str] = None, *, path: Path = STATE_FILE) -> bool:
    path = Path(path)
    key = (_normalise_user_id(user_id), str(card_id))
    records = _read_jsonl(path)
    kept = [record for record in records if _record_key(record) != key]
    if len(kept) == len(records):
        return False
    _write_jsonl(path, kept)
    logger.debug("Deleted card %s", card_id)
    return True


# ---------------------------------------------------------------------------
# Review log
# ---------------------------------------------------------------------------

def append_review_log(log_entry: Mapping[str, Any], *, path: Path = LOG_FILE) -> Dict[str, Any]:
    if not isinstance(log_entry, Mapping):
        raise TypeError("log_entry must be a mapping containing card metadata")
    record = dict(log_entry)
    missing = [name for name in REQUIRED_LOG_FIELDS if name not in record]
    if missing:
        raise ValueError(f"log_entry is missing required fields: {', '.join(missing)}")
    record.setdefault("reviewed_at", to_millis(_utc_now()))
    _append_jsonl(Path(path), record)
    return record


def read_review_log(*, path: Path = LOG_FILE) -> List[Dict[str, Any]]:
    return _read_jsonl(Path(path))


# ---------------------------------------------------------------------------
# Study sessions
# ---------------------------------------------------------------------------

def append_study_session(session: Mapping[str, Any], *, path: Path = SESSION_FILE) -> Dict[str, Any]:
    """Record one finished practice session.

    ``start_time`` and ``end_time`` are epoch milliseconds.
    """

    if not isinstance(session, Mapping):
        raise TypeError("session must be a mapping of session counters")
    record = dict(session)
    missing = [name for name in REQUIRED_SESSION_FIELDS if name not in record]
    if missing:
        raise ValueError(f"session is missing required fields: {', '.join(missing)}")
    if int(record["end_time"]) < int(record["start_time"]):
        raise ValueError("session end_time must not precede start_time")
    record.setdefault("created_at", to_millis(_utc_now()))
    _append_jsonl(Path(path), record)
    logger.debug("Recorded study session of %s card(s)", record["cards_studied"])
    return record


def read_study_sessions(user_id: Optional[str] = None, *, path: Path = SESSION_FILE) -> List[Dict[str, Any]]:
    key_user = _normalise_user_id(user_id)
    return [
        record
        for record in _read_jsonl(Path(path))
        if _normalise_user_id(record.get("user_id")) == key_user
    ]


__all__ = [
    "DEFAULT_USER_ID",
    "LOG_FILE",
    "SESSION_FILE",
    "STATE_FILE",
    "StaleCardError",
    "append_review_log",
    "append_study_session",
    "delete_card",
    "load_card",
    "load_cards",
    "read_review_log",
    "read_study_sessions",
    "save_card",
    "save_cards",
]
