#!/usr/bin/env python3
"""Run the auth-log and token retention purge once.

Usage:
    # Against the configured database:
    DATABASE_URL=postgresql://... python scripts/purge_auth_logs.py

    # Override the retention windows:
    python scripts/purge_auth_logs.py --retention-days 14 --token-retention-hours 48

Environment Variables:
    DATABASE_URL: PostgreSQL connection string (uses memory store if not set)
    AUTH_LOG_RETENTION_DAYS: Days of auth logs to keep (default 7)
    USED_TOKEN_RETENTION_HOURS: Hours to keep used reset/verification tokens (default 24)
"""
from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def purge(retention_days: int | None, token_retention_hours: int | None) -> dict:
    """Run one purge pass and return the report as a dict."""
    # runtime reads the environment on first use
    from korella.service.retention import RetentionPurger
    from korella.service.runtime import get_runtime

    runtime = get_runtime()
    purger = runtime.retention
    if retention_days is not None or token_retention_hours is not None:
        purger = RetentionPurger(
            runtime.store,
            auth_log_retention_days=(
                retention_days
                if retention_days is not None
                else runtime.settings.auth_log_retention_days
            ),
            used_token_retention_hours=(
                token_retention_hours
                if token_retention_hours is not None
                else runtime.settings.used_token_retention_hours
            ),
        )
    try:
        report = await asyncio.to_thread(purger.run)
    finally:
        runtime.close()
    return report.to_dict()


def main():
    parser = argparse.ArgumentParser(
        description="Purge expired auth logs and spent tokens",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--retention-days",
        type=int,
        default=None,
        help="Auth log retention in days (or set AUTH_LOG_RETENTION_DAYS)",
    )
    parser.add_argument(
        "--token-retention-hours",
        type=int,
        default=None,
        help="Used token retention in hours (or set USED_TOKEN_RETENTION_HOURS)",
    )

    args = parser.parse_args()

    if args.retention_days is not None and args.retention_days < 1:
        print("Error: --retention-days must be at least 1")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL to purge a real database)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(purge(args.retention_days, args.token_retention_hours))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    print(json.dumps(result, indent=2))
    if not result["success"]:
        sys.exit(1)


if __name__ == "__main__":
    main()
