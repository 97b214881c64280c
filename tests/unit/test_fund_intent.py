"""Unit tests for fund-intent generation."""

import pytest
from web3 import Web3

from src.config import Config
from src.escrowpay.abi import ABI_VERSION, ERC20, ESCROW_FACTORY, ESCROW_VAULT
from src.escrowpay.chains import build_chain_registry
from src.escrowpay.errors import (
    ChainNotReady,
    IntentStale,
    InvalidAmount,
    InvalidPayee,
    TokenNotFound,
)
from src.escrowpay.intents import FundIntentBuilder, approval_spender
from src.escrowpay.tokens import NATIVE_TOKEN_ADDRESS
from src.models import EscrowStatus, TokenRef

FACTORY = "0x1111111111111111111111111111111111111111"
PAYEE = "0x4444444444444444444444444444444444444444"
ESCROW_ADDRESS = "0x6666666666666666666666666666666666666666"
PYUSD = "0x6c3ea9036406852006290770BEdFcAbA0e23A0e8"

ETH = TokenRef(address=NATIVE_TOKEN_ADDRESS, symbol="ETH", decimals=18)


@pytest.fixture
def builder(chains, tokens):
    return FundIntentBuilder(chains, tokens)


@pytest.mark.unit
class TestFundIntentBuilder:
    def test_same_record_gives_identical_calldata(self, builder, make_escrow):
        escrow = make_escrow()
        first = builder.build_fund_intent(escrow)
        second = builder.build_fund_intent(escrow)

        assert first.approve.data == second.approve.data
        assert first.fund.data == second.fund.data
        assert first.model_dump() == second.model_dump()

    def test_undeployed_escrow_funds_through_factory(self, builder, make_escrow):
        intent = builder.build_fund_intent(make_escrow(escrow_address=None))

        assert Web3.to_checksum_address(intent.fund.to) == Web3.to_checksum_address(FACTORY)
        payee, token, amount = ESCROW_FACTORY.decode_call("createEscrowAndFund", intent.fund.data)
        assert Web3.to_checksum_address(payee) == Web3.to_checksum_address(PAYEE)
        assert Web3.to_checksum_address(token) == Web3.to_checksum_address(PYUSD)
        assert amount == 25_000_000
        assert intent.fund.value == "0"
        assert approval_spender(intent) == Web3.to_checksum_address(FACTORY)

    def test_deployed_escrow_funded_directly(self, builder, make_escrow):
        intent = builder.build_fund_intent(make_escrow(escrow_address=ESCROW_ADDRESS))

        assert intent.fund.to == ESCROW_ADDRESS
        assert ESCROW_VAULT.decode_call("fund", intent.fund.data) == (25_000_000,)
        assert approval_spender(intent) == Web3.to_checksum_address(ESCROW_ADDRESS)

    def test_erc20_needs_approval(self, builder, make_escrow):
        intent = builder.build_fund_intent(make_escrow())

        assert intent.needs_approval is True
        assert Web3.to_checksum_address(intent.approve.to) == Web3.to_checksum_address(PYUSD)
        _, amount = ERC20.decode_call("approve", intent.approve.data)
        assert amount == 25_000_000

    def test_native_never_needs_approval(self, builder, make_escrow):
        intent = builder.build_fund_intent(make_escrow(token=ETH, amount="50000000000000000"))

        assert intent.needs_approval is False
        assert intent.approve is None
        assert intent.fund.value == "50000000000000000"

    def test_native_deposit_to_deployed_escrow(self, builder, make_escrow):
        intent = builder.build_fund_intent(
            make_escrow(token=ETH, amount="1000", escrow_address=ESCROW_ADDRESS)
        )
        assert intent.fund.data == ESCROW_VAULT.encode_call("deposit")
        assert intent.fund.value == "1000"

    def test_intent_metadata(self, builder, make_escrow):
        intent = builder.build_fund_intent(make_escrow())
        assert intent.amount == "25000000"
        assert intent.token.symbol == "PYUSD"
        assert intent.token.decimals == 6
        assert intent.chain_id == 42161
        assert intent.escrow_id == "esc-1"
        assert intent.abi_version == ABI_VERSION

    def test_unknown_token(self, builder, make_escrow):
        escrow = make_escrow(token=TokenRef(address="0x" + "ab" * 20, symbol="XYZ", decimals=6))
        with pytest.raises(TokenNotFound):
            builder.build_fund_intent(escrow)

    def test_token_on_wrong_chain(self, builder, make_escrow):
        with pytest.raises(TokenNotFound):
            builder.build_fund_intent(make_escrow(chain_id=8453))

    def test_chain_without_contracts(self, tokens, make_escrow):
        settings = Config(
            app_env="test",
            escrow_factory_address="",
            merchant_registry_address="",
            payment_processor_address="",
        )
        builder = FundIntentBuilder(build_chain_registry(settings), tokens)
        with pytest.raises(ChainNotReady):
            builder.build_fund_intent(make_escrow())

    def test_invalid_amount(self, builder, make_escrow):
        escrow = make_escrow().model_copy(update={"amount": "1.5"})
        with pytest.raises(InvalidAmount):
            builder.build_fund_intent(escrow)

    @pytest.mark.parametrize("status", [EscrowStatus.FUNDED, EscrowStatus.RELEASED, EscrowStatus.DISPUTED])
    def test_not_created_is_stale(self, builder, make_escrow, status):
        with pytest.raises(IntentStale):
            builder.build_fund_intent(make_escrow(status=status, escrow_address=ESCROW_ADDRESS))

    def test_factory_flow_needs_payee_address(self, builder, make_escrow):
        with pytest.raises(InvalidPayee):
            builder.build_fund_intent(make_escrow(payee="shop.eth"))

    def test_alias_payee_fine_once_deployed(self, builder, make_escrow):
        intent = builder.build_fund_intent(make_escrow(payee="shop.eth", escrow_address=ESCROW_ADDRESS))
        assert intent.fund.to == ESCROW_ADDRESS


@pytest.mark.unit
@pytest.mark.parametrize(
    "symbol,address,expected",
    [
        ("PYUSD", PYUSD, True),
        ("USDC", "0xaf88d065e77c8cC2239327C5EDb3A432268e5831", True),
        ("ETH", NATIVE_TOKEN_ADDRESS, False),
    ],
)
def test_approval_needed_iff_not_native(tokens, make_escrow, symbol, address, expected):
    """Approval depends on the token being ERC-20, not on whether it is enabled."""
    token = tokens.get_token_by_symbol(symbol, 42161)
    settings = Config(
        app_env="test",
        escrow_factory_address=FACTORY,
        merchant_registry_address=FACTORY,
        payment_processor_address=FACTORY,
    )
    builder = FundIntentBuilder(build_chain_registry(settings), tokens)
    escrow = make_escrow(token=TokenRef(**token.descriptor()), amount="1000000")

    assert token.address.lower() == address.lower()
    assert builder.build_fund_intent(escrow).needs_approval is expected
