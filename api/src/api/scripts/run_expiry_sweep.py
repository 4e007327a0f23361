"""Run one subscription expiry sweep (for external cron)."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from catracker.database import close_engine

from api.services.maintenance import run_expiry_reminders, run_expiry_sweep


async def run(*, with_reminders: bool) -> dict[str, int]:
    stats = {"expired": 0, "reminded": 0}
    try:
        summary = await run_expiry_sweep()
        stats["expired"] = summary["processed"]
        if with_reminders:
            reminders = await run_expiry_reminders()
            stats["reminded"] = reminders["processed"]
    finally:
        await close_engine()
    return stats


def _parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Expire subscriptions past their end date.")
    parser.add_argument(
        "--with-reminders",
        action="store_true",
        help="Also send expiry reminders for subscriptions ending soon.",
    )
    return parser


def main() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
        stream=sys.stdout,
    )
    args = _parser().parse_args()
    stats = asyncio.run(run(with_reminders=bool(args.with_reminders)))
    print(
        "subscription-expiry:",
        f"expired={stats['expired']}",
        f"reminded={stats['reminded']}",
    )


if __name__ == "__main__":
    main()
