"""Funding confirmation.

After the buyer's fund transaction is mined, the checkout client reports its
hash. The verifier reads the transaction from the chain and checks it against
the intent: the target contract, the direct fund calldata, or for factory
flows the payee, token and amount of the created escrow. Funding, the receipt
and the event are then recorded in one ledger transaction.

Re-reporting the same transaction is idempotent and returns the stored
receipt.
"""

from typing import Optional

from src.database import Database
from src.escrowpay.abi import ESCROW_VAULT, EscrowCreatedNotFound, decode_escrow_created
from src.escrowpay.chain_reader import ChainReader, TransactionInfo
from src.escrowpay.chains import ChainRegistry
from src.escrowpay.errors import (
    ChainNotReady,
    EscrowNotFound,
    FundingNotVerified,
    IntentStale,
    TransactionReverted,
)
from src.escrowpay.tokens import NATIVE_TOKEN_ADDRESS
from src.logging_utils import get_logger
from src.models import EscrowEvent, EscrowRecord, EscrowStatus, Receipt

logger = get_logger(__name__)


class FundingVerifier:
    """Confirms on-chain funding for escrows."""

    def __init__(self, database: Database, chains: ChainRegistry, reader: ChainReader):
        self.database = database
        self.chains = chains
        self.reader = reader

    async def _existing_receipt(self, escrow: EscrowRecord, tx_hash: str) -> Receipt:
        if escrow.tx_funded and escrow.tx_funded.lower() == tx_hash.lower():
            receipt = await self.database.get_receipt(escrow.id)
            if receipt:
                logger.info(f"Funding {tx_hash} already recorded for {escrow.id} (idempotent)")
                return receipt
        raise IntentStale(f"Escrow {escrow.id} is already {escrow.status.value}")

    async def confirm_funding(self, escrow_id: str, tx_hash: str, payer: str) -> Receipt:
        """Verify a funding transaction and record it.

        Args:
            escrow_id: Escrow that was funded.
            tx_hash: Hash of the mined fund transaction.
            payer: Address the client reports as payer.

        Returns:
            The funding receipt.

        Raises:
            EscrowNotFound, ChainNotReady, IntentStale, TransactionReverted,
            FundingNotVerified.
        """
        escrow = await self.database.get_escrow(escrow_id)
        if escrow is None:
            raise EscrowNotFound(f"Escrow {escrow_id} not found")

        if escrow.status != EscrowStatus.CREATED:
            return await self._existing_receipt(escrow, tx_hash)

        if not self.chains.validate_chain_contracts(escrow.chain_id):
            raise ChainNotReady(
                f"{self.chains.get_chain_display_name(escrow.chain_id)} is not ready for escrow payments"
            )
        chain = self.chains.get_chain_by_id(escrow.chain_id)

        tx = await self.reader.get_transaction(escrow.chain_id, tx_hash)
        if tx is None:
            raise FundingNotVerified(f"Transaction {tx_hash} is not mined yet, retry shortly")
        if not tx.succeeded:
            raise TransactionReverted(f"Funding transaction {tx_hash} reverted", tx_hash=tx_hash)

        expected_target = escrow.escrow_address or chain.contracts.escrow_factory
        if (tx.to or "").lower() != expected_target.lower():
            raise FundingNotVerified(
                f"Transaction {tx_hash} was sent to {tx.to}, expected {expected_target}"
            )

        if payer.lower() != tx.sender.lower():
            logger.warning(f"Reported payer {payer} differs from tx sender {tx.sender}; using sender")

        escrow_address, event = self._resolve_escrow_address(escrow, tx, chain.contracts.escrow_factory)

        receipt = Receipt(
            id=escrow.id,
            payer=tx.sender,
            payee=escrow.payee,
            token=escrow.token,
            amount=escrow.amount,
            chain_id=escrow.chain_id,
            tx_hash=tx_hash,
            timestamp=tx.timestamp,
            block=tx.block_number,
        )
        if not await self.database.record_funding(receipt, escrow_address, event):
            # Another confirmation won the race
            current = await self.database.get_escrow(escrow.id)
            return await self._existing_receipt(current, tx_hash)

        logger.info(f"Escrow {escrow.id} funded at {escrow_address} in block {tx.block_number}")
        return receipt

    @staticmethod
    def _expected_direct_call(escrow: EscrowRecord) -> tuple[str, int]:
        """Calldata and native value a direct fund of a deployed escrow carries."""
        amount = int(escrow.amount)
        if escrow.token.address.lower() == NATIVE_TOKEN_ADDRESS:
            return ESCROW_VAULT.encode_call("deposit"), amount
        return ESCROW_VAULT.encode_call("fund", amount), 0

    def _resolve_escrow_address(
        self, escrow: EscrowRecord, tx: TransactionInfo, factory: Optional[str]
    ) -> tuple[str, EscrowEvent]:
        if escrow.escrow_address:
            data, value = self._expected_direct_call(escrow)
            if tx.input.lower() != data.lower() or tx.value != value:
                raise FundingNotVerified(
                    f"Transaction {tx.tx_hash} is not a fund call for {escrow.amount} on escrow {escrow.id}"
                )
            return escrow.escrow_address, EscrowEvent(
                escrow_id=escrow.id,
                escrow_address=escrow.escrow_address,
                type="Funded",
                block=tx.block_number,
                tx_hash=tx.tx_hash,
                raw={"amount": escrow.amount, "payer": tx.sender},
            )

        created = decode_escrow_created(tx.logs, factory)
        if isinstance(created, EscrowCreatedNotFound):
            logger.error(f"Malformed factory response for {tx.tx_hash}: {created.reason}")
            raise FundingNotVerified(f"Could not find the created escrow in {tx.tx_hash}")

        if created.payee.lower() != escrow.payee.lower():
            raise FundingNotVerified(f"Escrow created for payee {created.payee}, expected {escrow.payee}")
        if created.token.lower() != escrow.token.address.lower():
            raise FundingNotVerified(f"Escrow created in token {created.token}, expected {escrow.token.address}")
        if int(escrow.amount) != created.amount:
            raise FundingNotVerified(
                f"Escrow created for {created.amount} but {escrow.amount} was owed"
            )

        return created.escrow, EscrowEvent(
            escrow_id=escrow.id,
            escrow_address=created.escrow,
            type="EscrowCreated",
            block=tx.block_number,
            tx_hash=tx.tx_hash,
            raw={
                "escrow": created.escrow,
                "payee": created.payee,
                "token": created.token,
                "amount": str(created.amount),
            },
        )
