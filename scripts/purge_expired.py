#!/usr/bin/env python3
"""Delete expired tokens, sessions, counters, lockouts and CAPTCHA challenges.

Intended for cron. Every delete re-checks expiry in its own statement, so the
job can run while the engine is serving traffic.

Usage:
    DATABASE_URL=postgresql://... python scripts/purge_expired.py
    python scripts/purge_expired.py --retention-hours 48

Environment Variables:
    DATABASE_URL: PostgreSQL connection string
    FINGERPRINT_SECRET: must match the serving processes
"""
from __future__ import annotations

import argparse
import json
import sys
from datetime import timedelta
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def purge(retention_hours: int) -> dict:
    # Import here to avoid loading config before env vars are set
    from linkguard.config import get_settings
    from linkguard.service.maintenance import MaintenanceService
    from linkguard.storage.postgres import PostgresStore

    settings = get_settings()
    store = PostgresStore(settings.database_url, statement_timeout_ms=settings.store_timeout_ms)
    try:
        service = MaintenanceService(
            store, settings, retention=timedelta(hours=retention_hours)
        )
        return service.purge_expired()
    finally:
        store.close()


def main():
    parser = argparse.ArgumentParser(
        description="Purge expired LinkGuard rows",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--retention-hours",
        type=int,
        default=24,
        help="Keep consumed tokens and revoked sessions this long for forensics (default 24)",
    )
    args = parser.parse_args()

    if args.retention_hours < 0:
        print("Error: --retention-hours must not be negative")
        sys.exit(1)

    try:
        counts = purge(args.retention_hours)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)
    print(json.dumps(counts, sort_keys=True))


if __name__ == "__main__":
    main()
