"""
Token registry and amount conversion.

Each token instance is bound to exactly one chain. Amounts travel through the
whole pipeline as base-10 integer strings in the token's smallest unit and are
only turned into human decimal strings for display. The converters below work
on the digit strings directly; no float is ever involved, so a stablecoin
amount can never lose a cent to binary rounding.
"""

import re
from types import MappingProxyType
from typing import Iterable, Literal, Optional

from pydantic import BaseModel

from src.config import Config
from src.escrowpay.errors import InvalidAmount

NATIVE_TOKEN_ADDRESS = "0x0000000000000000000000000000000000000000"

MIN_PAYMENT_AMOUNT = "1"  # one whole unit of any stablecoin

_SMALLEST_UNIT_RE = re.compile(r"^[0-9]+$")
_HUMAN_AMOUNT_RE = re.compile(r"^([0-9]*)(?:\.([0-9]*))?$")


class TokenConfig(BaseModel):
    """A fungible asset on one chain."""

    address: str
    symbol: str
    name: str
    decimals: int
    chain_id: int
    enabled: bool = False
    is_default: bool = False
    is_stablecoin: bool = False
    category: Literal["stablecoin", "crypto", "other"] = "other"

    model_config = {"frozen": True}

    @property
    def is_native(self) -> bool:
        return self.address.lower() == NATIVE_TOKEN_ADDRESS

    def descriptor(self) -> dict:
        """Compact wire form used by intents, escrows and receipts."""
        return {"address": self.address, "symbol": self.symbol, "decimals": self.decimals}


class TokenRegistry:
    """Read-only lookups over the token catalog.

    The catalog must hold at most one default token per chain and one token per
    (symbol, chain); both are checked here, once, rather than on every lookup.
    """

    def __init__(self, tokens: Iterable[TokenConfig]):
        table = {}
        defaults = {}
        for token in tokens:
            key = (token.symbol, token.chain_id)
            if key in table:
                raise ValueError(f"Duplicate token {token.symbol} on chain {token.chain_id}")
            if token.is_default:
                if token.chain_id in defaults:
                    raise ValueError(
                        f"Chain {token.chain_id} has two default tokens: "
                        f"{defaults[token.chain_id]} and {token.symbol}"
                    )
                defaults[token.chain_id] = token.symbol
            table[key] = token
        self._tokens = MappingProxyType(table)

    def all_tokens(self) -> list[TokenConfig]:
        return list(self._tokens.values())

    def get_enabled_tokens(self, chain_id: Optional[int] = None) -> list[TokenConfig]:
        return [
            token for token in self._tokens.values()
            if token.enabled and (chain_id is None or token.chain_id == chain_id)
        ]

    def get_default_token(self, chain_id: int = 42161) -> Optional[TokenConfig]:
        for token in self._tokens.values():
            if token.is_default and token.chain_id == chain_id:
                return token
        return None

    def get_token_by_symbol(self, symbol: str, chain_id: int = 42161) -> Optional[TokenConfig]:
        return self._tokens.get((symbol, chain_id))

    def get_token_by_address(self, address: str, chain_id: int) -> Optional[TokenConfig]:
        wanted = address.lower()
        for token in self._tokens.values():
            if token.chain_id == chain_id and token.address.lower() == wanted:
                return token
        return None

    def get_stablecoins(self, chain_id: Optional[int] = None) -> list[TokenConfig]:
        return [
            token for token in self._tokens.values()
            if token.is_stablecoin and (chain_id is None or token.chain_id == chain_id)
        ]


def format_token_amount(amount: str, token: TokenConfig) -> str:
    """Render a smallest-unit integer string as a human decimal string.

    ``"1000000"`` with 6 decimals gives ``"1"``, ``"2500000"`` gives ``"2.5"``,
    and ``"0"`` gives ``"0"``.

    Raises:
        InvalidAmount: If ``amount`` is not an unsigned integer string.
    """
    amount = str(amount)
    if not _SMALLEST_UNIT_RE.match(amount):
        raise InvalidAmount(f"Amount must be an unsigned integer string, got {amount!r}")

    decimals = token.decimals
    if decimals == 0:
        return amount.lstrip("0") or "0"

    padded = amount.rjust(decimals + 1, "0")
    integer_part = padded[:-decimals].lstrip("0") or "0"
    fraction_part = padded[-decimals:].rstrip("0")

    return f"{integer_part}.{fraction_part}" if fraction_part else integer_part


def parse_token_amount(amount: str, token: TokenConfig) -> str:
    """Convert a human decimal string into a smallest-unit integer string.

    Fraction digits beyond the token's precision are truncated.

    Raises:
        InvalidAmount: For empty input, signs, exponents, or anything that is
            not plain digits with at most one decimal point.
    """
    match = _HUMAN_AMOUNT_RE.match(amount.strip()) if isinstance(amount, str) else None
    if not match or not (match.group(1) or match.group(2)):
        raise InvalidAmount(f"Not a decimal amount: {amount!r}")

    integer_part = match.group(1) or "0"
    fraction_part = (match.group(2) or "").ljust(token.decimals, "0")[: token.decimals]

    return (integer_part + fraction_part).lstrip("0") or "0"


def is_valid_token_amount(amount: str, token: TokenConfig) -> bool:
    try:
        parse_token_amount(amount, token)
    except InvalidAmount:
        return False
    return True


def meets_minimum_payment(amount: str, token: TokenConfig) -> bool:
    """Whether a smallest-unit amount reaches the stablecoin payment floor."""
    if not token.is_stablecoin:
        return int(amount) > 0
    return int(amount) >= int(parse_token_amount(MIN_PAYMENT_AMOUNT, token))


def build_token_registry(settings: Config) -> TokenRegistry:
    """Construct the token catalog from configuration."""
    tokens = [
        # Arbitrum One
        TokenConfig(
            address="0x6c3ea9036406852006290770BEdFcAbA0e23A0e8",
            symbol="PYUSD",
            name="PayPal USD",
            decimals=6,
            chain_id=42161,
            enabled=True,
            is_default=True,
            is_stablecoin=True,
            category="stablecoin",
        ),
        TokenConfig(
            address="0xaf88d065e77c8cC2239327C5EDb3A432268e5831",
            symbol="USDC",
            name="USD Coin",
            decimals=6,
            chain_id=42161,
            is_stablecoin=True,
            category="stablecoin",
        ),
        TokenConfig(
            address="0xFd086bC7CD5C481DCC9C85ebE478A1C0b69FCbb9",
            symbol="USDT",
            name="Tether USD",
            decimals=6,
            chain_id=42161,
            is_stablecoin=True,
            category="stablecoin",
        ),
        TokenConfig(
            address=NATIVE_TOKEN_ADDRESS,
            symbol="ETH",
            name="Ethereum",
            decimals=18,
            chain_id=42161,
            category="crypto",
        ),
        # Polygon
        TokenConfig(
            address="0x9aA29aA6cF8ab7C1Ca015d3D6c1BB3E7fcA5EB9C",
            symbol="PYUSD",
            name="PayPal USD",
            decimals=6,
            chain_id=137,
            is_stablecoin=True,
            category="stablecoin",
        ),
        TokenConfig(
            address="0x2791Bca1f2de4661ED88A30C99A7a9449Aa84174",
            symbol="USDC",
            name="USD Coin",
            decimals=6,
            chain_id=137,
            is_stablecoin=True,
            category="stablecoin",
        ),
        TokenConfig(
            address="0xc2132D05D31c914a87C6611C10748AEb04B58e8F",
            symbol="USDT",
            name="Tether USD",
            decimals=6,
            chain_id=137,
            is_stablecoin=True,
            category="stablecoin",
        ),
        # Base
        TokenConfig(
            address="0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913",
            symbol="USDC",
            name="USD Coin",
            decimals=6,
            chain_id=8453,
            is_stablecoin=True,
            category="stablecoin",
        ),
    ]

    # Arbitrum Sepolia test tokens are deployment specific
    if settings.testnet_pyusd_address:
        tokens.append(
            TokenConfig(
                address=settings.testnet_pyusd_address,
                symbol="PYUSD",
                name="PayPal USD (test)",
                decimals=6,
                chain_id=421614,
                enabled=True,
                is_default=True,
                is_stablecoin=True,
                category="stablecoin",
            )
        )
    if settings.testnet_usdc_address:
        tokens.append(
            TokenConfig(
                address=settings.testnet_usdc_address,
                symbol="USDC",
                name="USD Coin (test)",
                decimals=6,
                chain_id=421614,
                enabled=True,
                is_default=not settings.testnet_pyusd_address,
                is_stablecoin=True,
                category="stablecoin",
            )
        )

    return TokenRegistry(tokens)
