#!/usr/bin/env python3
"""Explicitly lift a rate-limit lockout.

Account lockouts are not cleared by a successful login unless
LOCKOUT_AUTO_CLEAR_ON_SUCCESS is set; this script is the operator unlock.

Usage:
    python scripts/unlock_subject.py --scope email --email user@example.com
    python scripts/unlock_subject.py --scope ip --ip 203.0.113.7
    python scripts/unlock_subject.py --scope email+ip --email user@example.com --ip 203.0.113.7
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def unlock(scope: str, email: str | None, ip: str | None, actor: str) -> bool:
    from linkguard.config import get_settings
    from linkguard.service.audit import AuditLog
    from linkguard.service.rate_limit import RateLimiter, scope_key
    from linkguard.storage.postgres import PostgresStore

    settings = get_settings()
    store = PostgresStore(settings.database_url, statement_timeout_ms=settings.store_timeout_ms)
    try:
        limiter = RateLimiter(store, settings, audit=AuditLog(store))
        return limiter.clear_lockout(scope, scope_key(scope, email=email, ip=ip), actor=actor)
    finally:
        store.close()


def main():
    parser = argparse.ArgumentParser(
        description="Clear a LinkGuard lockout",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--scope", choices=["email", "ip", "email+ip"], required=True)
    parser.add_argument("--email", help="Email address for the email and email+ip scopes")
    parser.add_argument("--ip", help="Client address for the ip and email+ip scopes")
    parser.add_argument(
        "--actor",
        default=os.environ.get("USER", "operator"),
        help="Recorded in the audit trail (default: $USER)",
    )
    args = parser.parse_args()

    if "email" in args.scope and not args.email:
        print("Error: --email is required for this scope")
        sys.exit(1)
    if "ip" in args.scope and not args.ip:
        print("Error: --ip is required for this scope")
        sys.exit(1)

    try:
        cleared = unlock(args.scope, args.email, args.ip, args.actor)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)
    print("cleared" if cleared else "no active lockout")


if __name__ == "__main__":
    main()
