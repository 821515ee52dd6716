#!/usr/bin/env python3
"""Retire expired tokens and purge old revoked rows from the ledger.

Usage:
    # Sweep expired tokens and purge revoked rows past the retention window:
    DATABASE_URL=postgresql://... python scripts/cleanup_tokens.py

    # Only flip expired tokens to revoked, keep every row:
    python scripts/cleanup_tokens.py --skip-purge

    # Override TOKEN_RETENTION_DAYS for this run:
    python scripts/cleanup_tokens.py --retention-days 7

Environment Variables:
    DATABASE_URL: PostgreSQL connection string
    JWT_ACCESS_SECRET / JWT_REFRESH_SECRET: required when ENVIRONMENT=production
    TOKEN_RETENTION_DAYS: default retention window for the purge
"""
from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def cleanup_tokens(retention_days: int | None = None, skip_purge: bool = False) -> dict:
    """Run one maintenance pass and return the affected row counts."""
    # Import here to avoid loading config before the environment is final
    from tokenledger.service.runtime import get_runtime

    runtime = get_runtime()
    try:
        swept = await runtime.tokens.cleanup_expired_tokens()
        purged = 0
        if not skip_purge:
            purged = await runtime.tokens.purge_revoked_tokens(retention_days)
    finally:
        await runtime.close()
    return {"swept": swept, "purged": purged}


def main():
    parser = argparse.ArgumentParser(
        description="Token ledger maintenance",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--retention-days",
        type=int,
        default=None,
        help="Purge revoked rows that expired more than this many days ago",
    )
    parser.add_argument(
        "--skip-purge",
        action="store_true",
        help="Only revoke expired tokens; delete nothing",
    )
    args = parser.parse_args()

    if args.retention_days is not None and args.retention_days < 0:
        print("Error: --retention-days must not be negative")
        sys.exit(1)

    try:
        result = asyncio.run(cleanup_tokens(args.retention_days, args.skip_purge))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    print(f"Revoked {result['swept']} expired token(s)")
    if not args.skip_purge:
        print(f"Purged {result['purged']} revoked token row(s)")


if __name__ == "__main__":
    main()
