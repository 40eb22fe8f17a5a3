"""Study statistics derived from the review log and study sessions.

Pure computations over stored records; reading them is left to
:mod:`cardsched.card_store`.  When study sessions exist they are the source
of daily activity and study time, otherwise the review log stands in.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional

import pandas as pd

from cardsched.card_state import Rating

COLUMNS = ["card_id", "rating", "reviewed_at", "response_time_ms"]
SESSION_COLUMNS = ["cards_studied", "correct_count", "incorrect_count", "start_time", "end_time"]


@dataclass
class StudySummary:
    total_reviews: int
    reviews_today: int
    cards_studied_today: int
    correct_today: int
    incorrect_today: int
    accuracy_today: int
    study_time_today_minutes: int
    streak: int
    rating_counts: Dict[str, int] = field(default_factory=dict)
    last_days: List[Dict[str, Any]] = field(default_factory=list)


def _today(today: Optional[date]) -> date:
    return today or datetime.now(tz=timezone.utc).date()


def _numeric(series: pd.Series) -> pd.Series:
    return pd.to_numeric(series, errors="coerce").fillna(0)


def review_frame(records: Iterable[Mapping[str, Any]]) -> pd.DataFrame:
    """Build a normalised frame with one row per logged review.

    ``cards`` and ``study_ms`` are the per-row activity used by
    :func:`daily_counts`.
    """

    frame = pd.DataFrame(list(records))
    for column in COLUMNS:
        if column not in frame.columns:
            frame[column] = None
    frame = frame[COLUMNS].copy()
    frame["rating"] = _numeric(frame["rating"]).astype(int)
    frame["response_time_ms"] = _numeric(frame["response_time_ms"])
    frame["reviewed_at"] = pd.to_datetime(frame["reviewed_at"], unit="ms", utc=True, errors="coerce")
    frame = frame.dropna(subset=["reviewed_at"]).copy()
    frame["date"] = [stamp.date() for stamp in frame["reviewed_at"]]
    frame["cards"] = 1
    frame["study_ms"] = frame["response_time_ms"]
    return frame.reset_index(drop=True)


def session_frame(sessions: Iterable[Mapping[str, Any]]) -> pd.DataFrame:
    """Build a normalised frame with one row per study session.

    Sessions are dated by their start time; ``study_ms`` is their duration.
    """

    frame = pd.DataFrame(list(sessions))
    for column in SESSION_COLUMNS:
        if column not in frame.columns:
            frame[column] = None
    frame = frame[SESSION_COLUMNS].copy()
    for column in ("cards_studied", "correct_count", "incorrect_count"):
        frame[column] = _numeric(frame[column]).astype(int)
    start = pd.to_datetime(frame["start_time"], unit="ms", utc=True, errors="coerce")
    end = pd.to_datetime(frame["end_time"], unit="ms", utc=True, errors="coerce")
    frame["start_time"] = start
    frame["end_time"] = end
    frame = frame.dropna(subset=["start_time", "end_time"]).copy()
    frame["date"] = [stamp.date() for stamp in frame["start_time"]]
    frame["cards"] = frame["cards_studied"]
    frame["study_ms"] = [
        max((finish - begin).total_seconds() * 1000, 0.0)
        for begin, finish in zip(frame["start_time"], frame["end_time"])
    ]
    return frame.reset_index(drop=True)


def daily_counts(frame: pd.DataFrame, *, days: int = 30, today: Optional[date] = None) -> pd.DataFrame:
    """Cards and study minutes per day for the trailing *days* window."""

    end = _today(today)
    window = [end - timedelta(days=offset) for offset in range(days - 1, -1, -1)]
    if frame.empty:
        zeros = [0] * len(window)
        return pd.DataFrame({"date": window, "count": zeros, "study_time_minutes": zeros})
    grouped = frame.groupby("date").agg(
        count=("cards", "sum"),
        study_ms=("study_ms", "sum"),
    )
    daily = grouped.reindex(window, fill_value=0)
    daily.index.name = "date"
    daily["study_time_minutes"] = (daily["study_ms"] // 60_000).astype(int)
    daily["count"] = daily["count"].astype(int)
    return daily.drop(columns="study_ms").reset_index()


def streak(daily: pd.DataFrame) -> int:
    """Consecutive active days ending today.

    An empty today does not break a streak that ran until yesterday.
    """

    counts = list(daily.sort_values("date")["count"])
    if counts and counts[-1] == 0:
        counts = counts[:-1]
    total = 0
    for count in reversed(counts):
        if count <= 0:
            break
        total += 1
    return total


def summarise(
    records: Iterable[Mapping[str, Any]],
    *,
    sessions: Optional[Iterable[Mapping[str, Any]]] = None,
    today: Optional[date] = None,
    days: int = 30,
) -> StudySummary:
    frame = review_frame(records)
    current_day = _today(today)
    rating_counts = {grade.label: int((frame["rating"] == int(grade)).sum()) for grade in Rating}

    activity = session_frame(sessions) if sessions is not None else frame.iloc[0:0]
    if activity.empty:
        activity = frame
        todays = frame[frame["date"] == current_day]
        incorrect_today = int((todays["rating"] == int(Rating.AGAIN)).sum())
        correct_today = int(len(todays)) - incorrect_today
        cards_today = int(len(todays))
    else:
        todays = activity[activity["date"] == current_day]
        correct_today = int(todays["correct_count"].sum())
        incorrect_today = int(todays["incorrect_count"].sum())
        cards_today = int(todays["cards_studied"].sum())

    reviews_today = correct_today + incorrect_today
    accuracy = round(correct_today / reviews_today * 100) if reviews_today else 0
    daily = daily_counts(activity, days=days, today=current_day)
    last_days = [
        {
            "date": row["date"].isoformat(),
            "count": int(row["count"]),
            "study_time_minutes": int(row["study_time_minutes"]),
        }
        for row in daily.to_dict("records")
    ]

    return StudySummary(
        total_reviews=int(len(frame)),
        reviews_today=reviews_today,
        cards_studied_today=cards_today,
        correct_today=correct_today,
        incorrect_today=incorrect_today,
        accuracy_today=int(accuracy),
        study_time_today_minutes=int(todays["study_ms"].sum() // 60_000),
        streak=streak(daily),
        rating_counts=rating_counts,
        last_days=last_days,
    )


__all__ = [
    "StudySummary",
    "daily_counts",
    "review_frame",
    "session_frame",
    "streak",
    "summarise",
]
