"""CLI interface for Study SRS.

Usage:
    python -m study_srs enroll ITEM [ITEM ...]     Enroll items as new cards
    python -m study_srs due                        Show how many cards are due
    python -m study_srs review [--items FILE]      Start a review session
    python -m study_srs stats                      Show your statistics
    python -m study_srs archive                    Archive mastered cards
    python -m study_srs suspend CARD_ID            Exclude a card from reviews
    python -m study_srs restore CARD_ID            Bring a suspended card back
"""

import argparse
import asyncio
import json
import logging
import time
from pathlib import Path

from backend.config import settings, utcnow
from backend.database import async_session, engine
from backend.models import Base
from backend.srs.errors import SRSError
from backend.srs.items import InMemoryItemSource
from backend.srs.repository import CardRepository
from backend.srs.session import SessionManager, SessionState
from backend.srs.stats import StatisticsAggregator


async def ensure_db() -> None:
    """Create tables if they don't exist."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


def load_items(path: str | None) -> InMemoryItemSource | None:
    """Load an item source from a JSON file mapping item IDs to {text, answer}."""
    if not path:
        return None
    raw = json.loads(Path(path).read_text(encoding="utf-8"))
    source = InMemoryItemSource()
    for item_id, fields in raw.items():
        source.add(item_id, **fields)
    return source


async def cmd_enroll(args: argparse.Namespace) -> None:
    """Enroll items for the owner (all or nothing)."""
    await ensure_db()
    repository = CardRepository(async_session)
    cards = await repository.bulk_create(args.owner, args.item_ids)
    print(f"  Enrolled {len(cards)} cards; first review in 1 day.")


async def cmd_due(args: argparse.Namespace) -> None:
    """Show how many cards are due."""
    await ensure_db()
    stats = StatisticsAggregator(CardRepository(async_session))
    due = await stats.due_today(args.owner)
    overdue = await stats.overdue(args.owner)
    print(f"  {due} cards due, {overdue} overdue from earlier days")


async def cmd_review(args: argparse.Namespace) -> None:
    """Run an interactive review session."""
    await ensure_db()
    manager = SessionManager(
        CardRepository(async_session),
        max_cards=args.max_cards,
        item_source=load_items(args.items),
    )
    view = await manager.start_review(args.owner)

    if view.state is SessionState.COMPLETE:
        print("\nNo cards due for review. You're all caught up!")
        return

    print("\n  Review Session")
    print(f"  {view.total} cards due\n")
    print("  Quality: 0=Blackout 1-2=Incorrect 3=Hesitant 4=Correct 5=Perfect")
    print("  Type 's' to skip, 'q' to quit\n")

    while view.state is SessionState.REVIEWING and view.card is not None:
        card = view.card
        print(f"  [{view.position}/{view.total}] item {card.item_id}")
        if view.item is not None:
            print(f"  {view.item.get('text', '')}")

        start_time = time.time()
        response = input("  Press enter to reveal (or s/q): ").strip().lower()
        if response == "q":
            print("\n  Session ended early.")
            break
        if response == "s":
            view = await manager.skip(args.owner, card.id)
            print()
            continue
        if view.item is not None and "answer" in view.item:
            print(f"  Answer: {view.item['answer']}")

        quality = None
        while quality is None:
            rate_input = input("  Rate [0-5]: ").strip()
            if rate_input.isdigit() and 0 <= int(rate_input) <= 5:
                quality = int(rate_input)
        time_spent = time.time() - start_time

        result = await manager.answer(args.owner, card.id, quality, time_spent=time_spent)
        print(f"  Next review in {result.new_interval} days\n")
        view = manager.current(args.owner)

    summary = await manager.complete(args.owner, force=True)
    accuracy = summary.correct / (summary.correct + summary.incorrect) * 100 if summary.correct + summary.incorrect else 0
    print("\n  Session Complete!")
    print(
        f"  Correct: {summary.correct}  Incorrect: {summary.incorrect}  "
        f"Skipped: {summary.skipped}  Accuracy: {accuracy:.0f}%\n"
    )


async def cmd_stats(args: argparse.Namespace) -> None:
    """Show owner statistics."""
    await ensure_db()
    stats = await StatisticsAggregator(CardRepository(async_session)).summary(args.owner, now=utcnow())
    next_review = stats.next_review_at.strftime("%Y-%m-%d %H:%M") if stats.next_review_at else "-"

    print(f"\n  {settings.app_name} Statistics")
    print(f"  {'Total cards:':<20} {stats.total_cards}")
    print(f"  {'Active cards:':<20} {stats.active_cards}")
    print(f"  {'Due now:':<20} {stats.due_today}")
    print(f"  {'Overdue:':<20} {stats.overdue}")
    print(f"  {'Average ease:':<20} {stats.average_ease_factor:.2f}")
    print(f"  {'Retention (30d):':<20} {stats.retention_rate:.0%}")
    print(f"  {'Streak:':<20} {stats.streak_days} days")
    print(f"  {'Reviews today:':<20} {stats.reviews_today}")
    print(f"  {'Next review:':<20} {next_review}")
    print(
        f"  {'Mastery:':<20} {stats.mastery.learning} learning, "
        f"{stats.mastery.reviewing} reviewing, {stats.mastery.mastered} mastered"
    )
    print()


async def cmd_archive(args: argparse.Namespace) -> None:
    """Archive cards whose interval reached mastery."""
    await ensure_db()
    archived = await CardRepository(async_session).archive_mastered(args.owner, settings.mastery_interval_days)
    print(f"  Archived {archived} mastered cards")


async def cmd_suspend(args: argparse.Namespace) -> None:
    await ensure_db()
    card = await CardRepository(async_session).suspend(args.card_id)
    print(f"  Suspended card {card.id} (item {card.item_id})")


async def cmd_restore(args: argparse.Namespace) -> None:
    await ensure_db()
    card = await CardRepository(async_session).restore(args.card_id)
    print(f"  Restored card {card.id} (item {card.item_id})")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="study_srs",
        description="Spaced repetition review from the terminal",
    )
    parser.add_argument("-v", "--verbose", action="store_true")
    parser.add_argument("--owner", default=settings.default_owner_id, help="Owner whose cards to use")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # enroll
    enroll_parser = subparsers.add_parser("enroll", help="Enroll items as new cards")
    enroll_parser.add_argument("item_ids", nargs="+", help="Item IDs from your item source")

    # due
    subparsers.add_parser("due", help="Show cards due for review")

    # review
    review_parser = subparsers.add_parser("review", help="Start a review session")
    review_parser.add_argument(
        "--max-cards", type=int, default=settings.max_reviews_per_session, help="Max cards per session"
    )
    review_parser.add_argument("--items", help="JSON file mapping item IDs to {text, answer}")

    # stats
    subparsers.add_parser("stats", help="Show your statistics")

    # archive
    subparsers.add_parser("archive", help="Archive mastered cards")

    # suspend / restore
    suspend_parser = subparsers.add_parser("suspend", help="Exclude a card from reviews")
    suspend_parser.add_argument("card_id", type=int)
    restore_parser = subparsers.add_parser("restore", help="Bring a suspended card back")
    restore_parser.add_argument("card_id", type=int)

    return parser


def main() -> None:
    """Entry point for the Study SRS CLI application."""
    parser = build_parser()
    args = parser.parse_args()

    if args.verbose:
        logging.basicConfig(level=logging.DEBUG)

    if not args.command:
        parser.print_help()
        return

    cmd_map = {
        "enroll": cmd_enroll,
        "due": cmd_due,
        "review": cmd_review,
        "stats": cmd_stats,
        "archive": cmd_archive,
        "suspend": cmd_suspend,
        "restore": cmd_restore,
    }

    try:
        asyncio.run(cmd_map[args.command](args))
    except SRSError as exc:
        parser.exit(1, f"  Error: {exc.message}\n")


if __name__ == "__main__":
    main()
