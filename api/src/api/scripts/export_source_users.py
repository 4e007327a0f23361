"""Export user records from the source CMS to JSON files for import."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any

from catracker.services.drupal_client import DrupalClient

logger = logging.getLogger(__name__)

USERS_PATH = "/user/user"


def write_user_chunks(
    records: list[dict[str, Any]],
    included: list[dict[str, Any]],
    *,
    output_dir: Path,
    chunk_size: int,
) -> list[Path]:
    """Write ``records`` in files of ``chunk_size``; ``included`` goes with the first file."""
    output_dir.mkdir(parents=True, exist_ok=True)
    written: list[Path] = []
    for index, start in enumerate(range(0, len(records), chunk_size), start=1):
        payload = {
            "data": records[start : start + chunk_size],
            "included": included if index == 1 else [],
        }
        path = output_dir / f"users_page_{index}.json"
        path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        written.append(path)
    return written


async def export_users(
    *,
    output_dir: Path,
    page_limit: int,
    chunk_size: int,
    client: DrupalClient | None = None,
) -> dict[str, int]:
    source = client or DrupalClient.from_settings()
    try:
        records, included = await source.fetch_collection(USERS_PATH, page_limit=page_limit)
    finally:
        if client is None:
            await source.aclose()
    files = write_user_chunks(records, included, output_dir=output_dir, chunk_size=chunk_size)
    logger.info("Exported %d users into %d files under %s", len(records), len(files), output_dir)
    return {"users": len(records), "included": len(included), "files": len(files)}


def _parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Export users from the source CMS.")
    parser.add_argument("--output-dir", type=Path, default=Path("data") / "cat-users")
    parser.add_argument("--page-limit", type=int, default=50)
    parser.add_argument("--chunk-size", type=int, default=200)
    return parser


def main() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
        stream=sys.stdout,
    )
    args = _parser().parse_args()
    stats = asyncio.run(
        export_users(
            output_dir=args.output_dir,
            page_limit=max(1, int(args.page_limit)),
            chunk_size=max(1, int(args.chunk_size)),
        )
    )
    print(
        "source-user-export:",
        f"users={stats['users']}",
        f"included={stats['included']}",
        f"files={stats['files']}",
    )


if __name__ == "__main__":
    main()
