"""Database initialization script.

Run this to create the escrow ledger schema and list the chains that are
ready to take escrow payments with the current configuration.
"""

import asyncio
import sys
from pathlib import Path

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from src.config import config
from src.database import db
from src.escrowpay.chains import build_chain_registry
from src.escrowpay.tokens import build_token_registry
from src.logging_utils import get_logger, setup_logging

setup_logging(config.log_level, config.log_format)
logger = get_logger(__name__)


async def main():
    """Initialize the database."""
    logger.info("Initializing escrow ledger...")
    logger.info(f"Database path: {db.db_path}")

    # Initialize schema
    await db.initialize()

    chains = build_chain_registry(config)
    tokens = build_token_registry(config)

    ready = [chain for chain in chains.get_enabled_chains() if chains.validate_chain_contracts(chain.id)]
    if not ready:
        logger.error("No enabled chain has its escrow contracts configured.")
        sys.exit(1)

    for chain in ready:
        symbols = [token.symbol for token in chains.get_enabled_chain_tokens(chain.id, tokens)]
        logger.info(f"- {chain.name} ({chain.id}): {', '.join(symbols) or 'no enabled tokens'}")

    logger.info("Ledger initialization complete!")


if __name__ == "__main__":
    asyncio.run(main())
