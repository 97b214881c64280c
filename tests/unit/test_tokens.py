"""Unit tests for the token registry and amount conversion."""

import random
from collections import Counter

import pytest

from src.escrowpay.errors import InvalidAmount
from src.escrowpay.tokens import (
    NATIVE_TOKEN_ADDRESS,
    TokenConfig,
    TokenRegistry,
    format_token_amount,
    is_valid_token_amount,
    meets_minimum_payment,
    parse_token_amount,
)


def _token(symbol="TKN", decimals=6, chain_id=1, **kwargs):
    return TokenConfig(
        address=kwargs.pop("address", "0x" + "ab" * 20),
        symbol=symbol,
        name=symbol,
        decimals=decimals,
        chain_id=chain_id,
        **kwargs,
    )


@pytest.mark.unit
class TestTokenRegistry:
    def test_pyusd_is_arbitrum_default(self, tokens):
        default = tokens.get_default_token(42161)
        assert default.symbol == "PYUSD"
        assert default.decimals == 6

    def test_one_default_per_chain(self, tokens):
        defaults = Counter(token.chain_id for token in tokens.all_tokens() if token.is_default)
        assert all(count == 1 for count in defaults.values())

    def test_second_default_rejected(self):
        with pytest.raises(ValueError, match="two default tokens"):
            TokenRegistry([
                _token("A", is_default=True, address="0x" + "01" * 20),
                _token("B", is_default=True, address="0x" + "02" * 20),
            ])

    def test_duplicate_symbol_on_chain_rejected(self):
        with pytest.raises(ValueError, match="Duplicate token"):
            TokenRegistry([_token("A"), _token("A")])

    def test_same_symbol_on_two_chains(self, tokens):
        assert tokens.get_token_by_symbol("USDC", 42161).address != tokens.get_token_by_symbol("USDC", 137).address

    def test_lookup_by_address_is_case_insensitive(self, tokens):
        token = tokens.get_token_by_address("0x6C3EA9036406852006290770BEDFCABA0E23A0E8", 42161)
        assert token.symbol == "PYUSD"
        assert tokens.get_token_by_address(token.address, 137) is None

    def test_enabled_tokens_by_chain(self, tokens):
        assert [t.symbol for t in tokens.get_enabled_tokens(42161)] == ["PYUSD"]
        assert tokens.get_enabled_tokens(137) == []

    def test_stablecoins_exclude_native(self, tokens):
        symbols = {t.symbol for t in tokens.get_stablecoins(42161)}
        assert symbols == {"PYUSD", "USDC", "USDT"}

    def test_native_token(self, tokens):
        eth = tokens.get_token_by_symbol("ETH", 42161)
        assert eth.address == NATIVE_TOKEN_ADDRESS
        assert eth.is_native
        assert not tokens.get_token_by_symbol("PYUSD", 42161).is_native


@pytest.mark.unit
class TestAmountConversion:
    """Exact string conversion between smallest units and display amounts."""

    @pytest.fixture
    def pyusd(self, tokens):
        return tokens.get_token_by_symbol("PYUSD", 42161)

    def test_one_whole_pyusd(self, pyusd):
        assert format_token_amount("1000000", pyusd) == "1"

    def test_zero_formats_as_zero(self, pyusd):
        assert format_token_amount("0", pyusd) == "0"

    @pytest.mark.parametrize(
        "amount,expected",
        [
            ("2500000", "2.5"),
            ("1", "0.000001"),
            ("123456789", "123.456789"),
            ("000100", "0.0001"),
        ],
    )
    def test_format(self, pyusd, amount, expected):
        assert format_token_amount(amount, pyusd) == expected

    @pytest.mark.parametrize(
        "amount,expected",
        [
            ("1", "1000000"),
            ("2.5", "2500000"),
            ("0.000001", "1"),
            ("0.0000019", "1"),
            (".5", "500000"),
            ("5.", "5000000"),
            ("0", "0"),
            ("007.10", "7100000"),
        ],
    )
    def test_parse(self, pyusd, amount, expected):
        assert parse_token_amount(amount, pyusd) == expected

    @pytest.mark.parametrize("amount", ["", ".", "-1", "+1", "1e6", "1.2.3", "abc", "1,000"])
    def test_parse_rejects(self, pyusd, amount):
        with pytest.raises(InvalidAmount):
            parse_token_amount(amount, pyusd)
        assert not is_valid_token_amount(amount, pyusd)

    @pytest.mark.parametrize("amount", ["-1", "1.5", "", "0x10"])
    def test_format_rejects_non_integers(self, pyusd, amount):
        with pytest.raises(InvalidAmount):
            format_token_amount(amount, pyusd)

    def test_zero_decimals(self):
        token = _token(decimals=0)
        assert format_token_amount("0042", token) == "42"
        assert parse_token_amount("42.9", token) == "42"

    @pytest.mark.parametrize("decimals", [0, 6, 8, 18])
    def test_round_trip(self, decimals):
        token = _token(decimals=decimals)
        rng = random.Random(decimals)
        samples = ["0", "1", str(10**18 - 1)] + [str(rng.randrange(10**18)) for _ in range(200)]
        for amount in samples:
            assert parse_token_amount(format_token_amount(amount, token), token) == amount

    def test_minimum_payment_for_stablecoins(self, pyusd, tokens):
        assert meets_minimum_payment("1000000", pyusd)
        assert not meets_minimum_payment("999999", pyusd)

        eth = tokens.get_token_by_symbol("ETH", 42161)
        assert meets_minimum_payment("1", eth)
        assert not meets_minimum_payment("0", eth)
