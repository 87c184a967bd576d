"""
Re-check stuck jobs against Replicate and store any finished results.
Run from project root with REPLICATE_API_TOKEN and DATABASE_URL in .env.

    python scripts/sync_stale_jobs.py [--owner USER_ID] [--older-than SECONDS] [--limit N]
"""
import argparse
import asyncio
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from config import get_settings
from database import get_session_factory, init_db
from services import build_runtime


def main():
    parser = argparse.ArgumentParser(description=__doc__.strip().splitlines()[0])
    parser.add_argument("--owner", help="only jobs owned by this user id")
    parser.add_argument("--older-than", type=int, default=None, help="age threshold in seconds")
    parser.add_argument("--limit", type=int, default=None, help="max jobs to check")
    args = parser.parse_args()

    settings = get_settings()
    if not settings.replicate_api_token:
        print("ERROR: Set REPLICATE_API_TOKEN in .env")
        return 1

    init_db()
    runtime = build_runtime(settings, get_session_factory())
    if args.limit:
        runtime.sync.batch_limit = args.limit

    report = asyncio.run(runtime.sync.sync_stale(owner_id=args.owner, stale_after_seconds=args.older_than))
    summary = report.to_dict()
    print(f"checked: {summary['checked']}  updated: {summary['updated']}  errors: {summary['errors']}")
    for kind, stats in summary["by_kind"].items():
        print(f"  {kind}: {stats}")
    return 1 if summary["errors"] else 0


if __name__ == "__main__":
    sys.exit(main())
