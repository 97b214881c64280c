"""Buyer wallet adapters for the checkout flow.

The checkout session only needs three things from a wallet: an address, a
way to send a prepared call, and a way to wait for it to be mined. Browser
wallets live on the other side of an RPC bridge; ``Web3Wallet`` signs locally
with a private key, which is what scripts and tests use.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from eth_account import Account
from web3 import AsyncHTTPProvider, AsyncWeb3, Web3

from src.escrowpay.abi import ERC20
from src.escrowpay.chains import ChainConfig
from src.models import ContractCall

logger = logging.getLogger(__name__)


class WalletRejected(Exception):
    """The user declined to sign in their wallet."""


@dataclass
class TxConfirmation:
    """Mined transaction outcome."""

    tx_hash: str
    status: int
    block: int

    @property
    def succeeded(self) -> bool:
        return self.status == 1


class Wallet(ABC):
    """Interface the checkout session drives."""

    @property
    @abstractmethod
    def address(self) -> str:
        ...

    @abstractmethod
    async def send_transaction(self, call: ContractCall, chain_id: int) -> str:
        """Sign and broadcast a call; returns its hash.

        Raises:
            WalletRejected: The user declined.
        """

    @abstractmethod
    async def wait_for_confirmation(self, tx_hash: str) -> TxConfirmation:
        ...

    @abstractmethod
    async def has_allowance(self, token: str, spender: str, amount: int) -> bool:
        """Whether ``spender`` may already pull ``amount`` of ``token``."""


class Web3Wallet(Wallet):
    """Private-key wallet talking to one chain over JSON-RPC."""

    def __init__(self, private_key: str, chain: ChainConfig, w3: Optional[AsyncWeb3] = None):
        self._account = Account.from_key(private_key)
        self.chain = chain
        self.w3 = w3 or AsyncWeb3(AsyncHTTPProvider(chain.rpc_url))

    @property
    def address(self) -> str:
        return self._account.address

    async def send_transaction(self, call: ContractCall, chain_id: int) -> str:
        if chain_id != self.chain.id:
            raise ValueError(f"Wallet is on chain {self.chain.id}, intent targets {chain_id}")

        tx = {
            "to": Web3.to_checksum_address(call.to),
            "data": call.data,
            "value": int(call.value),
            "chainId": chain_id,
            "nonce": await self.w3.eth.get_transaction_count(self.address, "pending"),
            **self.chain.gas_settings.transaction_fields(),
        }
        signed = self._account.sign_transaction(tx)
        tx_hash = await self.w3.eth.send_raw_transaction(signed.raw_transaction)
        logger.info(f"Sent transaction {Web3.to_hex(tx_hash)} to {call.to}")
        return Web3.to_hex(tx_hash)

    async def wait_for_confirmation(self, tx_hash: str) -> TxConfirmation:
        receipt = await self.w3.eth.wait_for_transaction_receipt(tx_hash)
        return TxConfirmation(tx_hash=tx_hash, status=receipt["status"], block=receipt["blockNumber"])

    async def has_allowance(self, token: str, spender: str, amount: int) -> bool:
        result = await self.w3.eth.call(
            {
                "to": Web3.to_checksum_address(token),
                "data": ERC20.encode_call("allowance", self.address, spender),
            }
        )
        (allowance,) = ERC20.decode_output("allowance", bytes(result))
        return allowance >= amount
