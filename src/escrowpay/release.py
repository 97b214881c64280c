"""Escrow release: manual payee release and the auto-release timer.

Both paths end in the same conditional ledger update, so whichever fires
first wins and the other becomes a no-op. That holds across processes too: a
release that reverts because another process released first is reported as a
no-op. Disputed escrows are only released manually, and a release the payee
sent themselves is read back from the chain before it is recorded.

Without an operator key the engine runs in simulation mode: no transaction
is sent and a placeholder hash is recorded.
"""

import asyncio
from datetime import datetime
from typing import Dict, Optional

from eth_account import Account
from web3 import AsyncHTTPProvider, AsyncWeb3, Web3

from src.database import Database
from src.escrowpay.abi import ESCROW_VAULT
from src.escrowpay.chain_reader import ChainReader
from src.escrowpay.chains import ChainRegistry
from src.escrowpay.errors import (
    EscrowNotFound,
    InvalidTransition,
    ReleaseNotVerified,
    TransactionReverted,
)
from src.logging_utils import LogContext, get_logger
from src.models import EscrowRecord, EscrowStatus, ReleaseOutcome

logger = get_logger(__name__)

SIMULATED_TX_HASH = f"0x{'1234567890abcdef' * 4}"


class ReleaseEngine:
    """Releases funded escrows to their payees."""

    def __init__(
        self,
        database: Database,
        chains: ChainRegistry,
        operator_private_key: Optional[str] = None,
        reader: Optional[ChainReader] = None,
    ):
        self.database = database
        self.chains = chains
        self.operator_private_key = operator_private_key
        self.reader = reader or ChainReader(chains)
        self._in_flight: set[str] = set()

    async def release(
        self,
        escrow_id: str,
        trigger: str = "manual",
        tx_hash: Optional[str] = None,
    ) -> ReleaseOutcome:
        """Release an escrow.

        Args:
            escrow_id: Escrow to release.
            trigger: "manual" for payee-initiated, "auto" for the timer.
            tx_hash: Release transaction the payee already sent, if any. It is
                read back from the chain before the ledger is updated.

        Returns:
            The outcome; ``released`` is False when the escrow was already
            released (or, for the timer, disputed) and nothing happened.

        Raises:
            EscrowNotFound: Unknown escrow.
            InvalidTransition: The escrow was never funded.
            ReleaseNotVerified: The payee's transaction is not a mined release
                of this escrow.
            TransactionReverted: The on-chain release reverted.
        """
        escrow = await self.database.get_escrow(escrow_id)
        if escrow is None:
            raise EscrowNotFound(f"Escrow {escrow_id} not found")

        allowed = (EscrowStatus.FUNDED,) if trigger == "auto" else (EscrowStatus.FUNDED, EscrowStatus.DISPUTED)

        if escrow.status == EscrowStatus.RELEASED or (
            trigger == "auto" and escrow.status == EscrowStatus.DISPUTED
        ):
            logger.info(f"Release of {escrow_id} skipped: already {escrow.status.value}")
            return self._noop(escrow, trigger)

        if escrow.status not in allowed:
            raise InvalidTransition(f"Escrow {escrow_id} is {escrow.status.value} and cannot be released")

        if escrow_id in self._in_flight:
            logger.info(f"Release of {escrow_id} already in flight, skipping")
            return self._noop(escrow, trigger)

        self._in_flight.add(escrow_id)
        try:
            if tx_hash is None:
                try:
                    result = await self.send_release(escrow)
                except Exception:
                    released_elsewhere = await self._released_elsewhere(escrow_id)
                    if released_elsewhere:
                        return self._noop(released_elsewhere, trigger)
                    raise

                if result["status"] != "success":
                    # A release from another process reverts ours on-chain
                    released_elsewhere = await self._released_elsewhere(escrow_id)
                    if released_elsewhere:
                        return self._noop(released_elsewhere, trigger)
                    raise TransactionReverted(
                        result.get("error", "Release transaction failed"), tx_hash=result.get("tx_hash")
                    )
                tx_hash = result["tx_hash"]
            else:
                await self.verify_release_tx(escrow, tx_hash)

            released = await self.database.mark_released(escrow_id, tx_hash, from_statuses=allowed)
        finally:
            self._in_flight.discard(escrow_id)

        current = await self.database.get_escrow(escrow_id)
        return ReleaseOutcome(
            escrow_id=escrow_id,
            released=released,
            status=current.status,
            tx_hash=tx_hash if released else current.tx_release,
            trigger=trigger,
        )

    async def verify_release_tx(self, escrow: EscrowRecord, tx_hash: str) -> None:
        """Check a payee-sent transaction is a mined ``release()`` of this escrow.

        Raises:
            ReleaseNotVerified: Not mined, or not a release call on the escrow.
            TransactionReverted: The release reverted.
        """
        if not escrow.escrow_address:
            raise ReleaseNotVerified(f"Escrow {escrow.id} has no contract address to release")

        tx = await self.reader.get_transaction(escrow.chain_id, tx_hash)
        if tx is None:
            raise ReleaseNotVerified(f"Release transaction {tx_hash} is not mined yet, retry shortly")
        if not tx.succeeded:
            raise TransactionReverted(f"Release transaction {tx_hash} reverted", tx_hash=tx_hash)
        if (tx.to or "").lower() != escrow.escrow_address.lower():
            raise ReleaseNotVerified(
                f"Transaction {tx_hash} was sent to {tx.to}, expected {escrow.escrow_address}"
            )
        if tx.input.lower() != ESCROW_VAULT.encode_call("release").lower():
            raise ReleaseNotVerified(f"Transaction {tx_hash} is not a release call")

    async def _released_elsewhere(self, escrow_id: str) -> Optional[EscrowRecord]:
        current = await self.database.get_escrow(escrow_id)
        if current is not None and current.status == EscrowStatus.RELEASED:
            logger.info(f"Escrow {escrow_id} was released elsewhere, treating as no-op")
            return current
        return None

    @staticmethod
    def _noop(escrow: EscrowRecord, trigger: str) -> ReleaseOutcome:
        return ReleaseOutcome(
            escrow_id=escrow.id,
            released=False,
            status=escrow.status,
            tx_hash=escrow.tx_release,
            trigger=trigger,
        )

    async def send_release(self, escrow: EscrowRecord) -> Dict[str, any]:
        """Send ``release()`` to the escrow contract.

        Args:
            escrow: Funded escrow with a deployed contract address.

        Returns:
            Dict with status and transaction details.
        """
        logger.info(f"Initiating release of escrow {escrow.id} at {escrow.escrow_address}")

        if not self.operator_private_key:
            logger.warning("OPERATOR_PRIVATE_KEY not configured - using simulation mode")
            logger.info(f"[SIMULATED] release tx: {SIMULATED_TX_HASH}")
            return {"status": "success", "tx_hash": SIMULATED_TX_HASH, "simulated": True}

        if not escrow.escrow_address:
            return {"status": "error", "error": f"Escrow {escrow.id} has no contract address"}

        chain = self.chains.get_chain_by_id(escrow.chain_id)
        if chain is None:
            return {"status": "error", "error": f"Unknown chain {escrow.chain_id}"}

        account = Account.from_key(self.operator_private_key)
        w3 = AsyncWeb3(AsyncHTTPProvider(chain.rpc_url))

        tx = {
            "to": Web3.to_checksum_address(escrow.escrow_address),
            "data": ESCROW_VAULT.encode_call("release"),
            "value": 0,
            "chainId": chain.id,
            "nonce": await w3.eth.get_transaction_count(account.address),
            **chain.gas_settings.transaction_fields(),
        }
        signed = account.sign_transaction(tx)
        sent = await w3.eth.send_raw_transaction(signed.raw_transaction)
        receipt = await w3.eth.wait_for_transaction_receipt(sent)

        tx_hash = Web3.to_hex(sent)
        if receipt["status"] != 1:
            logger.error(f"Release of {escrow.id} reverted: {tx_hash}")
            return {"status": "error", "tx_hash": tx_hash, "error": "Release transaction reverted"}

        logger.info(f"Released escrow {escrow.id} in {tx_hash}")
        return {"status": "success", "tx_hash": tx_hash, "block": receipt["blockNumber"]}


class AutoReleaseScheduler:
    """Background task releasing escrows whose auto-release deadline passed."""

    def __init__(self, engine: ReleaseEngine, database: Database, poll_seconds: float = 60.0):
        self.engine = engine
        self.database = database
        self.poll_seconds = poll_seconds
        self._task: Optional[asyncio.Task] = None

    async def run_once(self, now: Optional[datetime] = None) -> list[ReleaseOutcome]:
        """Release every due escrow once.

        A failure on one escrow is logged and does not stop the others.
        """
        outcomes = []
        for escrow in await self.database.get_due_auto_releases(now):
            with LogContext(escrow_id=escrow.id):
                try:
                    outcome = await self.engine.release(escrow.id, trigger="auto")
                except TransactionReverted as e:
                    logger.warning(f"Auto-release of {escrow.id} failed: {e.message}")
                    continue
                except Exception as e:
                    logger.error(f"Unexpected auto-release error for {escrow.id}: {e}", exc_info=True)
                    continue
                outcomes.append(outcome)
        if outcomes:
            logger.info(f"Auto-release pass released {sum(o.released for o in outcomes)} escrow(s)")
        return outcomes

    async def run_forever(self) -> None:
        while True:
            try:
                await self.run_once()
            except Exception as e:
                logger.error(f"Auto-release pass failed: {e}", exc_info=True)
            await asyncio.sleep(self.poll_seconds)

    def start(self) -> None:
        if self._task is None or self._task.done():
            logger.info(f"Starting auto-release scheduler (every {self.poll_seconds}s)")
            self._task = asyncio.create_task(self.run_forever())

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
            logger.info("Auto-release scheduler stopped")
