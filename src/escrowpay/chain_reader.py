"""Read-only JSON-RPC access to supported chains."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from web3 import AsyncHTTPProvider, AsyncWeb3, Web3
from web3.exceptions import TransactionNotFound

from src.escrowpay.chains import ChainRegistry
from src.logging_utils import get_logger

logger = get_logger(__name__)


@dataclass
class TransactionInfo:
    """The parts of a mined transaction the escrow service cares about."""

    tx_hash: str
    status: int
    block_number: int
    sender: str
    to: Optional[str]
    timestamp: datetime
    logs: list[Any] = field(default_factory=list)
    input: str = "0x"
    value: int = 0

    @property
    def succeeded(self) -> bool:
        return self.status == 1


class ChainReader:
    """Fetches transaction receipts, one AsyncWeb3 client per chain."""

    def __init__(self, chains: ChainRegistry):
        self.chains = chains
        self._clients: dict[int, AsyncWeb3] = {}

    def _web3(self, chain_id: int) -> AsyncWeb3:
        if chain_id not in self._clients:
            chain = self.chains.get_chain_by_id(chain_id)
            if chain is None:
                raise ValueError(f"Unknown chain {chain_id}")
            self._clients[chain_id] = AsyncWeb3(AsyncHTTPProvider(chain.rpc_url))
        return self._clients[chain_id]

    async def get_transaction(self, chain_id: int, tx_hash: str) -> Optional[TransactionInfo]:
        """Fetch a mined transaction.

        Args:
            chain_id: Chain the transaction was sent on.
            tx_hash: 0x-prefixed transaction hash.

        Returns:
            TransactionInfo, or None while the transaction is not mined yet.
        """
        w3 = self._web3(chain_id)
        try:
            receipt = await w3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            logger.info(f"Transaction {tx_hash} not mined yet on chain {chain_id}")
            return None

        tx = await w3.eth.get_transaction(tx_hash)
        block = await w3.eth.get_block(receipt["blockNumber"])
        return TransactionInfo(
            tx_hash=tx_hash,
            status=receipt["status"],
            block_number=receipt["blockNumber"],
            sender=receipt["from"],
            to=receipt.get("to"),
            timestamp=datetime.fromtimestamp(block["timestamp"], tz=timezone.utc).replace(tzinfo=None),
            logs=list(receipt["logs"]),
            input=Web3.to_hex(tx["input"]),
            value=tx["value"],
        )
