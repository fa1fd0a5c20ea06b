#!/usr/bin/env python3
"""Move accounts linked with legacy tokens onto opaque device tokens.

For every identity carrying an external account reference, mint a device token
for the configured skill client unless the identity's licence is inactive or it
already holds a live device token. Runs as a preview unless --apply is given.

Usage:
    python scripts/migrate_legacy_tokens.py            # preview
    python scripts/migrate_legacy_tokens.py --apply

Environment Variables:
    DATABASE_URL: PostgreSQL connection string
    JWT_SECRET: required by the settings loader
    OAUTH_CLIENT_ID: client the new device tokens are issued to
"""
from __future__ import annotations

import argparse
import sys
from dataclasses import asdict, dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


@dataclass
class MigrationSummary:
    processed: int = 0
    migrated: int = 0
    skipped: int = 0
    errors: int = 0


def migrate_legacy_accounts(store, settings, *, apply: bool = False, now: Optional[datetime] = None) -> MigrationSummary:
    # Import here to avoid loading config before env vars are set
    from voicelink.logging import get_logger
    from voicelink.service.exchange import new_access_token_value
    from voicelink.storage.errors import ConstraintViolation
    from voicelink.storage.models import AccessToken, utcnow

    logger = get_logger("voicelink.migrate")
    if not settings.oauth_client_id:
        raise ValueError("OAUTH_CLIENT_ID must be set to issue device tokens")
    now = now or utcnow()
    summary = MigrationSummary()

    for identity in store.list_linked_identities():
        summary.processed += 1
        entitlement = (
            store.get_entitlement(identity.entitlement_key) if identity.entitlement_key else None
        )
        if entitlement is None or not entitlement.is_active:
            summary.skipped += 1
            logger.info("legacy_migration_skipped", identity_id=identity.id, reason="entitlement_inactive")
            continue
        if store.has_live_access_token(identity.id, now):
            summary.skipped += 1
            logger.info("legacy_migration_skipped", identity_id=identity.id, reason="already_migrated")
            continue
        if not apply:
            summary.migrated += 1
            print(f"[PREVIEW] Would issue a device token for {identity.id}")
            continue
        try:
            store.create_access_token(
                AccessToken.new(
                    new_access_token_value(),
                    identity.id,
                    settings.oauth_client_id,
                    settings.oauth_default_scope,
                    ttl_seconds=settings.device_token_ttl_seconds,
                    now=now,
                )
            )
        except ConstraintViolation as exc:
            summary.errors += 1
            logger.error("legacy_migration_failed", identity_id=identity.id, error=exc.message)
            continue
        summary.migrated += 1
        logger.info("legacy_migration_issued", identity_id=identity.id)

    return summary


def main(argv: Optional[list] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Migrate legacy-linked accounts to opaque device tokens",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument(
        "--preview",
        action="store_true",
        help="Report what would change without writing (default)",
    )
    mode.add_argument("--apply", action="store_true", help="Issue the device tokens")
    args = parser.parse_args(argv)

    from voicelink.service.runtime import get_runtime

    try:
        runtime = get_runtime()
        summary = migrate_legacy_accounts(runtime.store, runtime.settings, apply=args.apply)
    except Exception as e:
        print(f"Error: {e}")
        return 1

    label = "Applied" if args.apply else "Preview"
    print(f"\n{label}: " + ", ".join(f"{key}={value}" for key, value in asdict(summary).items()))
    return 1 if summary.errors else 0


if __name__ == "__main__":
    sys.exit(main())
