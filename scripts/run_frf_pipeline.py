#!/usr/bin/env python3
"""
Run the FRF (fact / relationship / followup) extraction pipeline.

Usage:
    # One pass, print the run summary as JSON
    uv run python scripts/run_frf_pipeline.py --once

    # Run on the FRF_CRON_INTERVAL schedule until interrupted
    uv run python scripts/run_frf_pipeline.py --daemon

    # Check the configured cron expression
    uv run python scripts/run_frf_pipeline.py --validate
"""
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

import json
import logging

from config.settings import settings
from pkb.services.frf_pipeline import run_frf_pipeline
from pkb.services.frf_scheduler import FRFScheduler, InvalidCronExpression, validate_cron_expression

logging.basicConfig(level=settings.log_level.upper(), format='%(levelname)s: %(message)s')
logger = logging.getLogger(__name__)


def main(argv=None) -> int:
    import argparse

    parser = argparse.ArgumentParser(
        description='Extract facts, relationships and followups from unprocessed communications'
    )
    mode = parser.add_mutually_exclusive_group(required=True)
    mode.add_argument('--once', action='store_true', help='Run one pass and print the summary')
    mode.add_argument('--daemon', action='store_true', help='Run on the cron schedule')
    mode.add_argument('--validate', action='store_true', help='Validate the cron expression')
    parser.add_argument(
        '--cron',
        default=None,
        help=f'Cron expression (default: FRF_CRON_INTERVAL = {settings.frf_cron_interval!r})'
    )
    args = parser.parse_args(argv)
    cron_expression = args.cron or settings.frf_cron_interval

    if args.validate:
        if validate_cron_expression(cron_expression):
            logger.info(f"Cron expression is valid: {cron_expression}")
            return 0
        logger.error(f"Invalid cron expression: {cron_expression}")
        return 1

    if args.once:
        result = run_frf_pipeline()
        print(json.dumps(result.to_dict(), indent=2))
        return 0

    scheduler = FRFScheduler(cron_expression=cron_expression)
    try:
        scheduler.start()
    except InvalidCronExpression as e:
        logger.error(str(e))
        return 1

    try:
        while scheduler.is_started:
            scheduler.join(timeout=1.0)
    except KeyboardInterrupt:
        logger.info("Interrupted, stopping scheduler")
    finally:
        scheduler.stop()
    return 0


if __name__ == '__main__':
    sys.exit(main())
