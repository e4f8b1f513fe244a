#!/usr/bin/env python3
"""Operational tasks for the FrameSense account store.

Usage:
    # Delete expired sessions and roll over stale daily usage (cron, once an hour):
    python scripts/maintenance.py sweep

    # Set an account's tier by hand (support / comped accounts):
    python scripts/maintenance.py set-tier --email user@example.com --tier pro --status active

Environment Variables:
    DATABASE_URL: PostgreSQL connection string
    JWT_SECRET: Signing secret; required because the runtime builds the token codec
"""
from __future__ import annotations

import argparse
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

from framesense.config import SubscriptionStatus, Tier  # noqa: E402


def sweep(runtime, dry_run: bool = False) -> dict:
    """Run one maintenance pass; returns the counts it produced."""
    if dry_run:
        print("[DRY RUN] Would delete expired sessions and reset stale daily usage")
        return {"sessions_swept": 0, "usage_reset": 0, "status": "dry_run"}
    result = runtime.run_maintenance()
    print(
        f"Deleted {result['sessions_swept']} expired sessions; "
        f"reset daily usage on {result['usage_reset']} accounts"
    )
    return {**result, "status": "completed"}


def set_tier(runtime, email: str, tier: str, status: str | None, dry_run: bool = False) -> dict:
    """Overwrite an account's tier; ends its sessions when the tier goes down."""
    account = runtime.credentials.find_by_email(email)
    if account is None:
        print(f"No account found for {email}")
        return {"account_id": None, "status": "not_found"}
    new_tier = Tier(tier)
    if dry_run:
        print(f"[DRY RUN] Would set {email} from {account.tier.value} to {new_tier.value}")
        return {"account_id": account.id, "status": "dry_run"}
    updated = runtime.credentials.update_tier(
        new_tier,
        SubscriptionStatus(status) if status else None,
        account_id=account.id,
    )
    revoked = 0
    if new_tier.rank < account.tier.rank:
        revoked = runtime.sessions.revoke_all(account.id)
    print(
        f"Set {email} to {updated.tier.value}/{updated.subscription_status.value} "
        f"(id: {account.id}, sessions ended: {revoked})"
    )
    return {
        "account_id": account.id,
        "tier": updated.tier.value,
        "subscription_status": updated.subscription_status.value,
        "sessions_revoked": revoked,
        "status": "updated",
    }


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="FrameSense account maintenance",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    commands = parser.add_subparsers(dest="command", required=True)
    commands.add_parser("sweep", help="Delete expired sessions and reset stale usage")
    tier_cmd = commands.add_parser("set-tier", help="Overwrite one account's tier")
    tier_cmd.add_argument("--email", required=True)
    tier_cmd.add_argument("--tier", required=True, choices=[t.value for t in Tier])
    tier_cmd.add_argument(
        "--status", choices=[s.value for s in SubscriptionStatus], default=None
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    # Import here so a bad environment fails with a readable message
    from framesense.service.runtime import get_runtime, shutdown_runtime

    try:
        runtime = get_runtime()
    except ValueError as exc:
        print(f"Error: {exc}")
        return 1
    try:
        if args.command == "sweep":
            sweep(runtime, args.dry_run)
        else:
            result = set_tier(runtime, args.email, args.tier, args.status, args.dry_run)
            if result["status"] == "not_found":
                return 1
    finally:
        shutdown_runtime()
    return 0


if __name__ == "__main__":
    sys.exit(main())
