#!/usr/bin/env python3
"""
Record today's inventory snapshot: warehouse stock and the holdings of every
active crew.

Meant to run from cron once a day, late in the evening:
    python create_inventory_snapshot.py
"""

import logging
import sys

from fieldops import models  # noqa: F401  register tables with Base
from fieldops.config import settings
from fieldops.database import SessionLocal
from fieldops.services.snapshots import create_daily_snapshot

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)


def main() -> int:
    db = SessionLocal()
    try:
        snapshot = create_daily_snapshot(db)
        print("=" * 60)
        print("DAILY INVENTORY SNAPSHOT")
        print("=" * 60)
        print(f"  Taken at:          {snapshot.snapshot_date:%Y-%m-%d %H:%M}")
        print(f"  Warehouse items:   {len(snapshot.warehouse_inventory)}")
        print(f"  Warehouse stock:   {snapshot.total_warehouse_stock}")
        print(f"  Crews tracked:     {len(snapshot.crew_inventories)}")
        print(f"  Distinct items:    {snapshot.total_items}")
        print(f"\n✓ Snapshot {snapshot.id} created")
        return 0
    except Exception as e:
        logger.error(f"Inventory snapshot failed: {e}")
        return 1
    finally:
        db.close()


if __name__ == "__main__":
    sys.exit(main())
