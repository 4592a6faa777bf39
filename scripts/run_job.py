#!/usr/bin/env python3
"""
Batch Job Runner

Runs one of the cache maintenance jobs outside the API process, e.g. from
a platform cron when the in-process scheduler is disabled:
1. daily-recompute      - recompute every user active in the last week
2. weekly-correlation   - refresh monthly correlations for long-time users
3. cache-cleanup        - purge expired entries and shrink oversized records

Usage:
    # Uses DATABASE_URL from the environment or .env
    python scripts/run_job.py daily-recompute

    # Recompute a single user instead of running a job:
    python scripts/run_job.py --user user_123
"""

import argparse
import json
import logging
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from dotenv import load_dotenv

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

JOB_NAMES = ["daily-recompute", "weekly-correlation", "cache-cleanup"]


def run(job_name: str = None, user_id: str = None) -> int:
    """Run a job (or a single-user recompute) and return an exit code."""
    load_dotenv()

    from thanalytica.container import build_container
    from thanalytica.jobs.batch import JobAbortedError
    from thanalytica.metrics.engine import MetricsCalculationError

    container = build_container()
    try:
        if user_id:
            try:
                result = container.metrics.calculate_and_cache_user_metrics(user_id)
            except MetricsCalculationError as e:
                logger.error(str(e))
                return 1
            print(json.dumps({
                "user_id": result.user_id,
                "computed": result.computed,
                "errors": result.errors,
                "duration_seconds": round(result.duration_seconds, 2),
            }, indent=2))
            return 0 if result.success else 1

        try:
            report = container.jobs.run_job(job_name)
        except JobAbortedError as e:
            logger.error(f"Job aborted: {e}")
            return 2

        print(json.dumps(report.to_dict(), indent=2))
        return 0 if report.failed == 0 else 1
    finally:
        container.close()


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Run a metrics cache batch job"
    )
    parser.add_argument(
        "job",
        nargs="?",
        choices=JOB_NAMES,
        help="Job to run"
    )
    parser.add_argument(
        "--user",
        default=None,
        help="Recompute all metrics for one user instead of running a job"
    )

    args = parser.parse_args()
    if not args.job and not args.user:
        parser.error("either a job name or --user is required")

    sys.exit(run(job_name=args.job, user_id=args.user))


if __name__ == "__main__":
    main()
