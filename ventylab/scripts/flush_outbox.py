"""Script to replay a persisted progress outbox against the progress API."""

import argparse
import asyncio
import json
import logging
import sys

from ventylab.config import get_settings, setup_logging
from ventylab.progress.client import ProgressApiClient
from ventylab.progress.outbox import ProgressOutbox
from ventylab.progress.store import LocalProgressStore
from ventylab.progress.sync import SyncEngine


logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Flush queued lesson progress writes to the progress API")
    parser.add_argument("--outbox", help="Path of the outbox JSON file (defaults to OUTBOX_PATH)")
    parser.add_argument("--stats", action="store_true", help="Print outbox statistics and exit")
    return parser


async def flush_outbox(outbox: ProgressOutbox) -> int:
    """Replay every queued event, batch after batch.

    Returns
    -------
        Number of events still queued
    """
    settings = get_settings()
    async with ProgressApiClient(settings=settings) as client:
        engine = SyncEngine(LocalProgressStore(), client, outbox=outbox, settings=settings)
        while len(outbox):
            summary = await engine.reconcile_outbox()
            logger.info(
                f"Batch done: {summary['confirmed']} confirmed, {summary['dropped']} dropped, "
                f"{summary['remaining']} remaining"
            )
            # Stop once a batch makes no headway (API down or rate limited)
            if not summary["confirmed"] and not summary["dropped"]:
                break
    return len(outbox)


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    settings = get_settings()
    setup_logging(settings.LOG_LEVEL)

    path = args.outbox or settings.OUTBOX_PATH
    if not path:
        parser.error("no outbox file given: pass --outbox or set OUTBOX_PATH")

    outbox = ProgressOutbox(path)
    if args.stats:
        print(json.dumps(outbox.stats(), indent=2))
        return 0

    remaining = asyncio.run(flush_outbox(outbox))
    if remaining:
        logger.warning(f"{remaining} events are still queued in {path}")
        return 1
    logger.info("Outbox is empty")
    return 0


if __name__ == "__main__":
    sys.exit(main())
