#!/usr/bin/env python3
"""
Remove push tokens that have not been refreshed within the configured
max age (PUSH_TOKEN_MAX_AGE_DAYS, default 90).

Meant to run from cron, e.g. daily:
    python cleanup_push_tokens.py
    python cleanup_push_tokens.py --days 30
    python cleanup_push_tokens.py --dry-run
"""

import argparse
import logging
import sys

from fieldops import models  # noqa: F401  register tables with Base
from fieldops.config import settings
from fieldops.database import SessionLocal
from fieldops.services.token_cleanup import cleanup_expired_tokens, token_statistics

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Expire stale installer push tokens")
    parser.add_argument("--days", type=int, default=None, help="Maximum token age in days")
    parser.add_argument("--dry-run", action="store_true", help="Only report what would be removed")
    args = parser.parse_args(argv)

    if args.days is not None and args.days < 1:
        parser.error("--days must be at least 1")

    db = SessionLocal()
    try:
        stats = token_statistics(db, args.days)
        print("=" * 60)
        print("PUSH TOKEN CLEANUP")
        print("=" * 60)
        print(f"  Installers:        {stats['installers']}")
        print(f"  With token:        {stats['with_token']} (expo {stats['expo_tokens']}, fcm {stats['fcm_tokens']})")
        print(f"  Older than {stats['max_age_days']} days: {stats['expired']}")

        if args.dry_run:
            print("\nDry run, no changes made.")
            return 0

        result = cleanup_expired_tokens(db, args.days)
        print(f"\n✓ Removed {result['removed']} token(s) last refreshed before {result['cutoff']:%Y-%m-%d %H:%M}")
        return 0
    except Exception as e:
        logger.error(f"Push token cleanup failed: {e}")
        return 1
    finally:
        db.close()


if __name__ == "__main__":
    sys.exit(main())
