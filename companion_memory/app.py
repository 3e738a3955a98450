from __future__ import annotations

import argparse
import asyncio
import json
import logging

from .config import Settings
from .engine import CompanionMemoryEngine

logger = logging.getLogger("companion_memory")


def configure_logging() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)
    logging.getLogger("aiohttp.client").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)


def build_engine(settings: Settings) -> CompanionMemoryEngine:
    return CompanionMemoryEngine.from_settings(settings)


async def _run_maintenance(settings: Settings, *, limit_owners: int, backfill_limit: int) -> dict[str, object]:
    engine = build_engine(settings)
    await engine.start()
    try:
        report: dict[str, object] = {"curator": await engine.curator.run_curator_batch(limit_owners)}
        if backfill_limit > 0:
            report["embeddingsBackfilled"] = await engine.memory.backfill_embeddings(backfill_limit)
        return report
    finally:
        await engine.close()


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Run the memory curator over recently active owners."
    )
    parser.add_argument(
        "--limit-owners",
        type=int,
        default=25,
        help="How many owners with the newest memories to curate (default: 25)",
    )
    parser.add_argument(
        "--backfill-embeddings",
        type=int,
        default=0,
        metavar="N",
        help="Also attach embeddings to up to N memories that are missing one",
    )
    args = parser.parse_args()

    configure_logging()
    settings = Settings.from_env()
    settings.validate()
    try:
        report = asyncio.run(
            _run_maintenance(
                settings,
                limit_owners=max(1, args.limit_owners),
                backfill_limit=max(0, args.backfill_embeddings),
            )
        )
    except KeyboardInterrupt:
        logger.info("Shutdown requested, exiting.")
        return 130
    logger.info("Maintenance finished: %s", json.dumps(report, sort_keys=True))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
