"""
Chain registry.

Static catalog of the blockchains the escrow service can settle on, with the
contract roles deployed on each. The catalog is built once from configuration
at process start and handed to consumers by reference; nothing mutates it
afterwards.

A chain is *usable* only when it is enabled AND every required contract role
(escrow factory, merchant registry, payment processor) has an address. The fee
collector is optional.

Unknown chain ids never raise: lookups return None / False / "" and callers
branch on the result.
"""

from decimal import Decimal
from types import MappingProxyType
from typing import Iterable, Literal, Mapping, Optional, Sequence, TYPE_CHECKING

from pydantic import BaseModel, Field
from web3 import Web3

from src.config import Config

if TYPE_CHECKING:
    from src.escrowpay.tokens import TokenConfig, TokenRegistry


REQUIRED_CONTRACT_ROLES = ("escrow_factory", "merchant_registry", "payment_processor")

DEFAULT_CHAIN_ID = 42161  # Arbitrum One


class NativeCurrency(BaseModel):
    """Native gas currency of a chain."""

    name: str
    symbol: str
    decimals: int = 18

    model_config = {"frozen": True}


class ChainContracts(BaseModel):
    """Deployed contract addresses by role."""

    escrow_factory: Optional[str] = Field(None, alias="escrowFactory")
    merchant_registry: Optional[str] = Field(None, alias="merchantRegistry")
    payment_processor: Optional[str] = Field(None, alias="paymentProcessor")
    fee_collector: Optional[str] = Field(None, alias="feeCollector")

    model_config = {"frozen": True, "populate_by_name": True}

    def address_for(self, role: str) -> Optional[str]:
        return getattr(self, role) or None


class GasSettings(BaseModel):
    """Gas policy; fee caps are gwei strings so no float ever touches them."""

    gas_limit: int = 500_000
    max_fee_per_gas: Optional[str] = None
    max_priority_fee_per_gas: Optional[str] = None

    model_config = {"frozen": True}

    def transaction_fields(self) -> dict:
        """EIP-1559 gas fields in wei; unset caps are left to the node."""
        fields = {"gas": self.gas_limit}
        if self.max_fee_per_gas:
            fields["maxFeePerGas"] = Web3.to_wei(Decimal(self.max_fee_per_gas), "gwei")
        if self.max_priority_fee_per_gas:
            fields["maxPriorityFeePerGas"] = Web3.to_wei(Decimal(self.max_priority_fee_per_gas), "gwei")
        return fields


class ChainConfig(BaseModel):
    """A supported network."""

    id: int
    name: str
    symbol: str
    rpc_url: str
    block_explorer: str
    native_currency: NativeCurrency
    contracts: ChainContracts = Field(default_factory=ChainContracts)
    supported_tokens: tuple[str, ...] = ()
    enabled: bool = False
    is_testnet: bool = False
    gas_settings: GasSettings = Field(default_factory=GasSettings)

    model_config = {"frozen": True}


class ChainRegistry:
    """Read-only lookups over the chain catalog."""

    def __init__(self, chains: Iterable[ChainConfig], default_chain_id: int = DEFAULT_CHAIN_ID):
        table = {}
        for chain in chains:
            if chain.id in table:
                raise ValueError(f"Duplicate chain id in catalog: {chain.id}")
            table[chain.id] = chain
        if default_chain_id not in table:
            raise ValueError(f"Default chain {default_chain_id} is not in the catalog")
        self._chains: Mapping[int, ChainConfig] = MappingProxyType(table)
        self.default_chain_id = default_chain_id

    def __iter__(self):
        return iter(self._chains.values())

    def get_chain_by_id(self, chain_id: int) -> Optional[ChainConfig]:
        return self._chains.get(chain_id)

    def get_enabled_chains(self) -> list[ChainConfig]:
        return [chain for chain in self._chains.values() if chain.enabled]

    def get_production_chains(self) -> list[ChainConfig]:
        return [
            chain for chain in self._chains.values()
            if chain.enabled and not chain.is_testnet
        ]

    def get_default_chain(self) -> ChainConfig:
        return self._chains[self.default_chain_id]

    def is_chain_supported(self, chain_id: int) -> bool:
        chain = self.get_chain_by_id(chain_id)
        return chain.enabled if chain else False

    def validate_chain_contracts(self, chain_id: int) -> bool:
        """True only for an enabled chain with every required contract deployed."""
        chain = self.get_chain_by_id(chain_id)
        if not chain or not chain.enabled:
            return False
        return all(chain.contracts.address_for(role) for role in self.required_contracts())

    @staticmethod
    def required_contracts() -> Sequence[str]:
        return REQUIRED_CONTRACT_ROLES

    def get_block_explorer_url(
        self, chain_id: int, value: str, kind: Literal["tx", "address"] = "tx"
    ) -> str:
        chain = self.get_chain_by_id(chain_id)
        if not chain:
            return ""
        return f"{chain.block_explorer}/{kind}/{value}"

    def get_chain_display_name(self, chain_id: int) -> str:
        chain = self.get_chain_by_id(chain_id)
        return chain.name if chain else f"Chain {chain_id}"

    def get_network_switch_data(self, chain_id: int) -> Optional[dict]:
        """Build the wallet ``wallet_addEthereumChain`` parameters for a chain."""
        chain = self.get_chain_by_id(chain_id)
        if not chain:
            return None

        return {
            "chainId": hex(chain_id),
            "chainName": chain.name,
            "nativeCurrency": chain.native_currency.model_dump(),
            "rpcUrls": [chain.rpc_url],
            "blockExplorerUrls": [chain.block_explorer],
        }

    def get_chain_tokens(self, chain_id: int, tokens: "TokenRegistry") -> list["TokenConfig"]:
        """Tokens bound to the chain that the chain also lists as supported."""
        chain = self.get_chain_by_id(chain_id)
        if not chain:
            return []
        return [
            token for token in tokens.all_tokens()
            if token.chain_id == chain_id and token.symbol in chain.supported_tokens
        ]

    def get_enabled_chain_tokens(self, chain_id: int, tokens: "TokenRegistry") -> list["TokenConfig"]:
        return [token for token in self.get_chain_tokens(chain_id, tokens) if token.enabled]


def build_chain_registry(settings: Config) -> ChainRegistry:
    """Construct the chain catalog from configuration.

    Args:
        settings: Loaded service configuration.

    Returns:
        Immutable chain registry.
    """
    eth = NativeCurrency(name="Ethereum", symbol="ETH", decimals=18)

    arbitrum = ChainConfig(
        id=42161,
        name="Arbitrum One",
        symbol="ARB",
        rpc_url=settings.arbitrum_rpc_url or "https://arb1.arbitrum.io/rpc",
        block_explorer="https://arbiscan.io",
        native_currency=eth,
        contracts=ChainContracts(
            escrow_factory=settings.escrow_factory_address or None,
            merchant_registry=settings.merchant_registry_address or None,
            payment_processor=settings.payment_processor_address or None,
            fee_collector=settings.fee_collector_address or None,
        ),
        supported_tokens=("PYUSD", "USDC", "USDT"),
        enabled=True,
        is_testnet=False,
        gas_settings=GasSettings(gas_limit=500_000, max_fee_per_gas="1", max_priority_fee_per_gas="0.1"),
    )

    # Polygon and Base are catalogued ahead of their deployments
    polygon = ChainConfig(
        id=137,
        name="Polygon",
        symbol="MATIC",
        rpc_url="https://polygon-rpc.com",
        block_explorer="https://polygonscan.com",
        native_currency=NativeCurrency(name="MATIC", symbol="MATIC", decimals=18),
        supported_tokens=("PYUSD", "USDC", "USDT"),
        enabled=False,
        gas_settings=GasSettings(gas_limit=500_000, max_fee_per_gas="30", max_priority_fee_per_gas="30"),
    )

    base = ChainConfig(
        id=8453,
        name="Base",
        symbol="BASE",
        rpc_url="https://mainnet.base.org",
        block_explorer="https://basescan.org",
        native_currency=eth,
        supported_tokens=("USDC",),
        enabled=False,
        gas_settings=GasSettings(gas_limit=500_000, max_fee_per_gas="1", max_priority_fee_per_gas="0.1"),
    )

    arbitrum_sepolia = ChainConfig(
        id=421614,
        name="Arbitrum Sepolia",
        symbol="ETH",
        rpc_url=settings.arbitrum_sepolia_rpc_url or "https://sepolia-rollup.arbitrum.io/rpc",
        block_explorer="https://sepolia.arbiscan.io",
        native_currency=eth,
        contracts=ChainContracts(
            escrow_factory=settings.testnet_escrow_factory or None,
            merchant_registry=settings.testnet_merchant_registry or None,
            payment_processor=settings.testnet_payment_processor or None,
            fee_collector=settings.testnet_fee_collector or None,
        ),
        supported_tokens=("PYUSD", "USDC"),
        enabled=settings.is_development,
        is_testnet=True,
        gas_settings=GasSettings(gas_limit=500_000, max_fee_per_gas="1", max_priority_fee_per_gas="0.1"),
    )

    return ChainRegistry(
        [arbitrum, polygon, base, arbitrum_sepolia],
        default_chain_id=settings.default_chain_id,
    )
