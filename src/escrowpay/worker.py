"""Standalone auto-release worker.

Runs the auto-release scheduler outside the API process, for deployments
that set ``AUTO_RELEASE_ENABLED=false`` on the API. If both do run, the ledger
update is conditional and a release that reverts because the other process
already released is reported as a no-op; the losing process still pays gas
for the reverted transaction.
"""

import asyncio

from src.config import config, validate_config_for_service
from src.database import db
from src.escrowpay.chains import build_chain_registry
from src.escrowpay.release import AutoReleaseScheduler, ReleaseEngine
from src.logging_utils import get_logger, setup_logging

logger = get_logger(__name__)


def build_scheduler() -> AutoReleaseScheduler:
    engine = ReleaseEngine(db, build_chain_registry(config), config.operator_private_key or None)
    return AutoReleaseScheduler(engine, db, config.auto_release_poll_seconds)


async def main():
    validate_config_for_service("worker")
    setup_logging(config.log_level, config.log_format)

    await db.initialize()
    scheduler = build_scheduler()
    logger.info(f"Auto-release worker polling every {scheduler.poll_seconds}s")

    await scheduler.run_forever()


if __name__ == "__main__":
    asyncio.run(main())
