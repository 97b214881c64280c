"""End-to-end escrow flow against a running escrow service.

Creates an escrow, funds it from a buyer key through the checkout session
(approve, then factory create-and-fund), prints the receipt and releases it.

    BUYER_PRIVATE_KEY=0x... python scripts/escrow_flow.py --payee 0x... --amount 1.5
"""

import argparse
import asyncio
import os
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from src.config import config, validate_config_for_service
from src.escrowpay.chains import build_chain_registry
from src.escrowpay.tokens import build_token_registry, format_token_amount, parse_token_amount
from src.escrowpay_sdk.checkout import CheckoutSession
from src.escrowpay_sdk.client import EscrowPayClient
from src.escrowpay_sdk.wallet import Web3Wallet
from src.logging_utils import get_logger, setup_logging
from src.models import ReleaseRule

setup_logging(config.log_level, config.log_format)
logger = get_logger(__name__)


async def run_flow(payee: str, amount: str, symbol: str, chain_id: int, release: bool):
    validate_config_for_service("checkout")

    buyer_key = os.environ.get("BUYER_PRIVATE_KEY")
    if not buyer_key:
        logger.error("BUYER_PRIVATE_KEY must be set")
        sys.exit(1)

    chains = build_chain_registry(config)
    tokens = build_token_registry(config)
    chain = chains.get_chain_by_id(chain_id)
    token = tokens.get_token_by_symbol(symbol, chain_id)
    if chain is None or token is None:
        logger.error(f"{symbol} on chain {chain_id} is not in the catalog")
        sys.exit(1)

    wallet = Web3Wallet(buyer_key, chain)
    logger.info(f"Buyer : {wallet.address}")
    logger.info(f"Payee : {payee}")

    async with EscrowPayClient(config.escrow_url) as client:
        # 1) Create the escrow request
        created = await client.create_escrow(
            token_addr=token.address,
            amount=parse_token_amount(amount, token),
            payee=payee,
            rule=ReleaseRule(type="delivery"),
            chain_id=chain_id,
        )
        logger.info(f"Escrow {created.id} created, checkout at {created.checkout_url}")

        # 2) Approve and fund
        session = CheckoutSession(created.id, client, wallet)
        result = await session.load_intent()
        if not result.ok:
            logger.error(f"Could not load fund intent: {result.error.message}")
            sys.exit(1)

        if session.can_approve:
            result = await session.approve()
            if not result.ok:
                logger.error(f"Approval failed: {result.error.message if result.error else result.step}")
                sys.exit(1)
            logger.info(f"Approve tx: {chains.get_block_explorer_url(chain_id, result.tx_hash)}")

        result = await session.fund()
        if not result.ok:
            logger.error(f"Funding failed: {result.error.message if result.error else result.step}")
            sys.exit(1)
        logger.info(f"Fund tx: {chains.get_block_explorer_url(chain_id, result.tx_hash)}")

        receipt = session.receipt or await client.get_receipt(created.id)
        logger.info(
            f"Receipt: {format_token_amount(receipt.amount, token)} {token.symbol} "
            f"from {receipt.payer} in block {receipt.block}"
        )

        # 3) Release to the payee
        if release:
            outcome = await client.release(created.id)
            logger.info(f"Release: released={outcome.released} status={outcome.status.value} tx={outcome.tx_hash}")


def main():
    parser = argparse.ArgumentParser(description="Create, fund and release one escrow")
    parser.add_argument("--payee", required=True, help="Payee address")
    parser.add_argument("--amount", default="1", help="Human amount, e.g. 1.5")
    parser.add_argument("--token", default="PYUSD", help="Token symbol")
    parser.add_argument("--chain-id", type=int, default=config.default_chain_id)
    parser.add_argument("--no-release", action="store_true", help="Leave the escrow funded")
    args = parser.parse_args()

    asyncio.run(run_flow(args.payee, args.amount, args.token, args.chain_id, not args.no_release))


if __name__ == "__main__":
    main()
