#!/usr/bin/env python3
"""
CLI script for enriching customer feedback.

Runs sentiment analysis, optional summarization, knowledge-base matching and
reply generation for a user's feedback items, checkpointing after every item
so an interrupted run continues where it stopped. Checkpoints keep ids only,
so resuming needs the same input file again.

Usage:
    python enrich_feedback_cli.py --input items.json --user-id USER [--dry-run] [--verbose]
    python enrich_feedback_cli.py --input items.json --user-id USER --checkpoint-dir .checkpoints  # resume
    python enrich_feedback_cli.py --user-id USER --cancel
"""

import argparse
import asyncio
import json
import logging
import sys
from datetime import datetime
from pathlib import Path

# Bootstrap path
from _bootstrap import *  # noqa

from pydantic import ValidationError

from src.shared.utils.logging import setup_logging
from src.shared.utils.env import load_env
from src.functions.feedback_enrichment.core.contracts import FeedbackItem
from src.functions.feedback_enrichment.core.errors import PipelineError
from src.functions.feedback_enrichment.core.orchestration.factory import build_processor

logger = logging.getLogger(__name__)


def load_items(path: str, user_id: str):
    """Read feedback items from a JSON array or an object with an ``items`` key."""
    raw = json.loads(Path(path).read_text(encoding="utf-8"))
    if isinstance(raw, dict):
        raw = raw.get("items", [])
    if not isinstance(raw, list):
        raise ValueError(f"{path} must contain a JSON array of feedback items")
    return [FeedbackItem.model_validate({"userId": user_id, **entry}) for entry in raw]


async def run(args, items):
    processor = build_processor(
        args.user_id,
        config_overrides={"batch_size": args.batch_size} if args.batch_size else None,
        checkpoint_dir=args.checkpoint_dir,
        dry_run=args.dry_run,
    )
    try:
        if args.cancel:
            await processor.hydrate_from_checkpoint(args.user_id, items)
            await processor.cancel()
        else:
            await processor.start(args.user_id, items, resume_from_checkpoint=not args.no_resume)
        return processor.status_report()
    finally:
        await processor.aclose()


def main(argv=None):
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Enrich customer feedback with sentiment, matches and suggested replies",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    parser.add_argument(
        "--input",
        type=str,
        help="JSON file with feedback items (required unless --cancel)",
    )

    parser.add_argument(
        "--user-id",
        type=str,
        required=True,
        help="User whose feedback is processed",
    )

    parser.add_argument(
        "--no-resume",
        action="store_true",
        help="Ignore any existing checkpoint for the user",
    )

    parser.add_argument(
        "--cancel",
        action="store_true",
        help="Cancel unfinished work and delete the checkpoint",
    )

    parser.add_argument(
        "--checkpoint-dir",
        type=str,
        help="Store checkpoints as JSON files in this directory instead of Supabase",
    )

    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Run the enrichment stages without writing results to the database",
    )

    parser.add_argument(
        "--batch-size",
        type=int,
        help="Items per batch (default: FEEDBACK_BATCH_SIZE or 5)",
    )

    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable verbose logging (DEBUG level)",
    )

    args = parser.parse_args(argv)

    # Setup logging
    log_level = "DEBUG" if args.verbose else "INFO"
    setup_logging(level=log_level)

    # Load environment variables
    load_env()

    logger.info("=" * 80)
    logger.info("Feedback Enrichment")
    logger.info("=" * 80)

    if not args.input and not args.cancel:
        logger.error("--input is required to start or resume a run")
        return 2

    try:
        items = load_items(args.input, args.user_id) if args.input else []
    except (OSError, ValueError, ValidationError) as e:
        logger.error(f"Could not read feedback items: {e}")
        return 2

    if args.dry_run:
        logger.warning("DRY-RUN MODE: No analyses will be written to the database")

    logger.info(f"User:          {args.user_id}")
    logger.info(f"Items:         {len(items)}")
    logger.info(f"Checkpoints:   {args.checkpoint_dir or 'supabase'}")
    logger.info(f"Resume:        {not args.no_resume}")
    logger.info("")

    try:
        start_time = datetime.now()
        report = asyncio.run(run(args, items))
        duration = (datetime.now() - start_time).total_seconds()
    except KeyboardInterrupt:
        logger.warning("\nOperation cancelled by user")
        return 130
    except PipelineError as e:
        logger.error(f"Pipeline error: {e}")
        return 1
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        return 1

    # run_counts survives the queue reset at the end of a finished run.
    counts = report.get("run_counts") or report["counts"]
    progress = report.get("progress") or {}
    failed = max(counts.get("failed", 0), progress.get("errors", 0))

    print("\n" + "=" * 80)
    print("FEEDBACK ENRICHMENT SUMMARY")
    print("=" * 80)
    print(f"Status:                   {report['status']}")
    print(f"Completed:                {counts.get('completed', 0)}")
    print(f"Failed:                   {failed}")
    print(f"Canceled:                 {counts.get('canceled', 0)}")
    print(f"Still queued:             {report['queued']}")
    print(f"Duration:                 {duration:.2f}s")
    if report.get("stop_reason"):
        print(f"Stopped because:          {report['stop_reason']}")

    failures = progress.get("failures") or []
    if failures:
        print(f"\nErrors ({len(failures)}):")
        for i, failure in enumerate(failures[:5], 1):
            print(f"  {i}. {failure['id']}: {failure['error']}")
        if len(failures) > 5:
            print(f"  ... and {len(failures) - 5} more")

    print("=" * 80 + "\n")

    if failed > 0 or report["queued"] > 0:
        logger.warning("Completed with failed or pending items")
        return 1
    logger.info("Feedback enrichment completed successfully")
    return 0


if __name__ == "__main__":
    sys.exit(main())
