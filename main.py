"""Command line entry point for reviewing cards against the local store."""

from __future__ import annotations

import argparse
import json
import logging
import sys
import time
from pathlib import Path
from typing import List, Optional

from cardsched import card_store, review_service, review_stats
from cardsched.card_state import Rating
from cardsched.fsrs_scheduler import Scheduler, load_config

logger = logging.getLogger("cardsched.cli")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Schedule flashcard reviews.")
    parser.add_argument("--state-file", type=Path, default=card_store.STATE_FILE)
    parser.add_argument("--log-file", type=Path, default=card_store.LOG_FILE)
    parser.add_argument("--session-file", type=Path, default=card_store.SESSION_FILE)
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="JSON file with w0, w1 and request_retention.",
    )
    parser.add_argument("--user", default=None, help="Learner the cards belong to.")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging.")
    commands = parser.add_subparsers(dest="command", required=True)

    add = commands.add_parser("add", help="Register a new card.")
    add.add_argument("card_id")
    add.add_argument("--deck", default=None)

    review = commands.add_parser("review", help="Rate a card.")
    review.add_argument("card_id")
    review.add_argument("rating", choices=[grade.label for grade in Rating])
    review.add_argument("--response-ms", type=int, default=None)

    commands.add_parser("due", help="List the cards due now.")

    show = commands.add_parser("show", help="Print a card's scheduling state.")
    show.add_argument("card_id")

    study = commands.add_parser("study", help="Work through the due cards interactively.")
    study.add_argument("--limit", type=int, default=None)

    commands.add_parser("stats", help="Summarise the review log.")
    return parser.parse_args(argv)


def study(args: argparse.Namespace, scheduler: Scheduler) -> None:
    """Prompt for a rating per due card until the queue is empty or the user quits."""

    cards = card_store.load_cards(args.user, path=args.state_file).values()
    queue = review_service.ReviewQueue(cards, limit=args.limit)
    labels = "/".join(grade.label for grade in Rating)
    while not queue.is_finished:
        card = queue.current()
        shown_at = time.monotonic()
        try:
            answer = input(f"{card.card_id} [{labels}, q to stop]: ").strip().lower()
        except EOFError:
            break
        if answer in ("", "q", "quit"):
            break
        try:
            rating = Rating.parse(answer)
        except ValueError:
            print(f"Unknown rating {answer!r}")
            continue
        response_ms = int((time.monotonic() - shown_at) * 1000)
        outcome = review_service.submit_rating(
            card.card_id,
            rating,
            scheduler=scheduler,
            user_id=args.user,
            response_time_ms=response_ms,
            state_path=args.state_file,
            log_path=args.log_file,
        )
        queue.record(rating, outcome.after, response_time_ms=response_ms)
    queue.finish(user_id=args.user, path=args.session_file)
    print(
        f"Session done: {queue.reviewed_count} card(s), "
        f"{queue.correct_count} correct, {queue.incorrect_count} again"
    )


def run(args: argparse.Namespace) -> int:
    config = load_config(args.config) if args.config else None
    scheduler = Scheduler(config)

    if args.command == "add":
        card = review_service.create_card(
            args.card_id,
            scheduler=scheduler,
            deck_id=args.deck,
            user_id=args.user,
            path=args.state_file,
        )
        print(f"Added {card.card_id}")
    elif args.command == "review":
        outcome = review_service.submit_rating(
            args.card_id,
            args.rating,
            scheduler=scheduler,
            user_id=args.user,
            response_time_ms=args.response_ms,
            state_path=args.state_file,
            log_path=args.log_file,
        )
        after = outcome.after
        print(
            f"{after.card_id}: {after.state.state.value}, "
            f"next review {after.next_review.isoformat() if after.next_review else 'now'}"
        )
    elif args.command == "due":
        cards = card_store.load_cards(args.user, path=args.state_file).values()
        due = review_service.due_cards(cards)
        for card in due:
            print(card.card_id)
        print(f"{len(due)} card(s) due")
    elif args.command == "show":
        card = card_store.load_card(args.card_id, args.user, path=args.state_file)
        if card is None:
            raise KeyError(args.card_id)
        print(json.dumps(card.to_storage_dict(), indent=4))
    elif args.command == "study":
        study(args, scheduler)
    elif args.command == "stats":
        summary = review_stats.summarise(
            card_store.read_review_log(path=args.log_file),
            sessions=card_store.read_study_sessions(args.user, path=args.session_file),
        )
        print(f"Cards studied today: {summary.cards_studied_today}")
        print(f"Reviews today: {summary.reviews_today} ({summary.accuracy_today}% correct)")
        print(f"Study time today: {summary.study_time_today_minutes} min")
        print(f"Streak: {summary.streak} day(s)")
        print(f"Total reviews: {summary.total_reviews}")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s:%(name)s:%(message)s",
        stream=sys.stderr,
    )
    try:
        return run(args)
    except KeyError as exc:
        logger.error("Unknown card %s", exc)
    except (ValueError, card_store.StaleCardError) as exc:
        logger.error("%s", exc)
    return 1


if __name__ == "__main__":
    sys.exit(main())
