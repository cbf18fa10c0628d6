"""Delete expired idempotency records and stale quota counters (run from cron)."""

from __future__ import annotations

import argparse
import asyncio
import logging
from datetime import datetime, timezone

from trackcore.config import settings
from trackcore.database import AsyncSessionLocal, engine
from trackcore.log_config import configure_logging
from trackcore.services.idempotency import IdempotencyGate
from trackcore.services.quota_ledger import QuotaLedger

logger = logging.getLogger("trackcore.scripts.sweep_expired")


async def sweep(dry_run: bool = False) -> tuple[int, int]:
    now = datetime.now(timezone.utc)
    if dry_run:
        logger.info("Dry run: would sweep records expiring before %s", now.isoformat())
        return 0, 0

    gate = IdempotencyGate(AsyncSessionLocal, settings.idempotency_config())
    ledger = QuotaLedger(AsyncSessionLocal, settings.quota_config())
    records = await gate.sweep(now)
    counters = await ledger.purge_stale(now)
    await engine.dispose()
    return records, counters


def main() -> int:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--dry-run", action="store_true", help="Only log what would be swept")
    args = parser.parse_args()

    configure_logging(settings.log_level)
    records, counters = asyncio.run(sweep(dry_run=args.dry_run))
    print(f"Removed {records} idempotency records and {counters} quota counters.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
