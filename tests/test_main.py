import json
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import main
from cardsched import card_store
from cardsched.card_state import CardPhase


@pytest.fixture
def store_args(tmp_path):
    return [
        "--state-file",
        str(tmp_path / "card_state.jsonl"),
        "--log-file",
        str(tmp_path / "review_log.jsonl"),
        "--session-file",
        str(tmp_path / "study_sessions.jsonl"),
    ]


def test_add_review_and_show(store_args, tmp_path, capsys):
    assert main.main(store_args + ["add", "osmosis", "--deck", "biology"]) == 0
    assert main.main(store_args + ["due"]) == 0
    assert "1 card(s) due" in capsys.readouterr().out

    assert main.main(store_args + ["review", "osmosis", "easy", "--response-ms", "1500"]) == 0
    assert "osmosis: review" in capsys.readouterr().out

    assert main.main(store_args + ["show", "osmosis"]) == 0
    shown = json.loads(capsys.readouterr().out)
    assert shown["state"] == CardPhase.REVIEW.value
    assert shown["scheduledDays"] == 1.0
    assert shown["deckId"] == "biology"

    assert main.main(store_args + ["due"]) == 0
    assert "0 card(s) due" in capsys.readouterr().out

    log = card_store.read_review_log(path=tmp_path / "review_log.jsonl")
    assert [record["rating"] for record in log] == [4]


def test_stats_command(store_args, capsys):
    main.main(store_args + ["add", "osmosis"])
    main.main(store_args + ["review", "osmosis", "again"])
    capsys.readouterr()

    assert main.main(store_args + ["stats"]) == 0
    out = capsys.readouterr().out
    assert "Reviews today: 1 (0% correct)" in out
    assert "Total reviews: 1" in out


def test_config_file_is_applied(store_args, tmp_path):
    config = tmp_path / "scheduler.json"
    config.write_text(json.dumps({"request_retention": 0.8}), encoding="utf-8")

    assert main.main(store_args + ["--config", str(config), "add", "osmosis"]) == 0


def test_errors_exit_with_status_one(store_args):
    assert main.main(store_args + ["review", "ghost", "good"]) == 1
    assert main.main(store_args + ["show", "ghost"]) == 1
    main.main(store_args + ["add", "osmosis"])
    assert main.main(store_args + ["add", "osmosis"]) == 1


def feed_input(monkeypatch, answers):
    replies = iter(answers)

    def fake_input(prompt=""):
        try:
            return next(replies)
        except StopIteration:
            raise EOFError

    monkeypatch.setattr("builtins.input", fake_input)


def test_study_session_is_recorded(store_args, tmp_path, monkeypatch, capsys):
    main.main(store_args + ["add", "osmosis"])
    main.main(store_args + ["add", "mitosis"])
    capsys.readouterr()
    feed_input(monkeypatch, ["good", "meh", "again", "q"])

    assert main.main(store_args + ["study"]) == 0

    out = capsys.readouterr().out
    assert "Unknown rating 'meh'" in out
    assert "Session done: 1 card(s), 1 correct, 1 again" in out
    sessions = card_store.read_study_sessions(path=tmp_path / "study_sessions.jsonl")
    assert len(sessions) == 1
    assert sessions[0]["cards_studied"] == 1
    assert sessions[0]["correct_count"] == 1
    assert sessions[0]["incorrect_count"] == 1
    assert sessions[0]["end_time"] >= sessions[0]["start_time"]
    assert len(card_store.read_review_log(path=tmp_path / "review_log.jsonl")) == 2

    assert main.main(store_args + ["stats"]) == 0
    stats_out = capsys.readouterr().out
    assert "Cards studied today: 1" in stats_out
    assert "Reviews today: 2 (50% correct)" in stats_out


def test_study_without_answers_records_nothing(store_args, tmp_path, monkeypatch):
    main.main(store_args + ["add", "osmosis"])
    feed_input(monkeypatch, [])

    assert main.main(store_args + ["study"]) == 0
    assert card_store.read_study_sessions(path=tmp_path / "study_sessions.jsonl") == []
