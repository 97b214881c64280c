"""Fund-intent generation.

Turns an escrow record into the ordered calls a buyer's wallet signs:
an optional ERC-20 ``approve`` followed by the mandatory fund call.

The builder reads only the immutable registries and its input, so calling it
twice for the same record state yields byte-identical calldata. Clients rely
on that to regenerate an intent after a refresh without double-funding.
"""

import re

from web3 import Web3

from src.escrowpay.abi import ABI_VERSION, ERC20, ESCROW_FACTORY, ESCROW_VAULT
from src.escrowpay.chains import ChainRegistry
from src.escrowpay.errors import (
    ChainNotReady,
    IntentStale,
    InvalidAmount,
    InvalidPayee,
    TokenNotFound,
)
from src.escrowpay.tokens import TokenRegistry
from src.logging_utils import get_logger
from src.models import ContractCall, EscrowRecord, EscrowStatus, FundIntent, TokenRef

logger = get_logger(__name__)

_UNSIGNED_INT_RE = re.compile(r"^[0-9]+$")


class FundIntentBuilder:
    """Builds fund intents against one pair of registries."""

    def __init__(self, chains: ChainRegistry, tokens: TokenRegistry):
        self.chains = chains
        self.tokens = tokens

    def build_fund_intent(self, escrow: EscrowRecord) -> FundIntent:
        """Build the approve/fund calls for an escrow.

        Args:
            escrow: The escrow record as currently stored.

        Returns:
            The fund intent.

        Raises:
            TokenNotFound: The escrow's token is not catalogued on its chain.
            ChainNotReady: The chain is disabled or missing required contracts.
            InvalidAmount: The amount is not an unsigned integer string.
            InvalidPayee: The escrow must be deployed but the payee is not an address.
            IntentStale: The escrow is no longer waiting for funds.
        """
        token = self.tokens.get_token_by_address(escrow.token.address, escrow.chain_id)
        if token is None:
            raise TokenNotFound(
                f"Token {escrow.token.symbol} ({escrow.token.address}) is not supported on "
                f"{self.chains.get_chain_display_name(escrow.chain_id)}"
            )

        if not self.chains.validate_chain_contracts(escrow.chain_id):
            raise ChainNotReady(
                f"{self.chains.get_chain_display_name(escrow.chain_id)} is not ready for escrow payments"
            )
        chain = self.chains.get_chain_by_id(escrow.chain_id)

        if not _UNSIGNED_INT_RE.match(escrow.amount):
            raise InvalidAmount(f"Escrow amount must be an unsigned integer string, got {escrow.amount!r}")

        if escrow.status != EscrowStatus.CREATED:
            raise IntentStale(f"Escrow {escrow.id} is already {escrow.status.value}")

        amount = int(escrow.amount)
        needs_approval = not token.is_native
        native_value = "0" if needs_approval else escrow.amount

        if escrow.escrow_address:
            # Escrow already instantiated: pay it directly
            target = escrow.escrow_address
            if needs_approval:
                fund = ContractCall(to=target, data=ESCROW_VAULT.encode_call("fund", amount))
            else:
                fund = ContractCall(to=target, data=ESCROW_VAULT.encode_call("deposit"), value=native_value)
        else:
            # Factory deploys and funds in one transaction
            if not Web3.is_address(escrow.payee):
                raise InvalidPayee(f"Payee {escrow.payee!r} must resolve to an address before funding")
            target = chain.contracts.escrow_factory
            fund = ContractCall(
                to=target,
                data=ESCROW_FACTORY.encode_call("createEscrowAndFund", escrow.payee, token.address, amount),
                value=native_value,
            )

        approve = None
        if needs_approval:
            approve = ContractCall(to=token.address, data=ERC20.encode_call("approve", target, amount))

        logger.debug(
            f"Built fund intent for escrow {escrow.id}: "
            f"approval={needs_approval}, target={target}, deployed={bool(escrow.escrow_address)}"
        )

        return FundIntent(
            needs_approval=needs_approval,
            approve=approve,
            fund=fund,
            amount=escrow.amount,
            token=TokenRef(**token.descriptor()),
            chain_id=escrow.chain_id,
            escrow_id=escrow.id,
            abi_version=ABI_VERSION,
        )


def approval_spender(intent: FundIntent) -> str:
    """Spender address encoded in an intent's approve call."""
    if intent.approve is None:
        raise ValueError("Intent has no approve call")
    spender, _ = ERC20.decode_call("approve", intent.approve.data)
    return Web3.to_checksum_address(spender)
