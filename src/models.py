"""Shared data models for the escrow checkout service.

All Pydantic models used by the API, the ledger and the checkout SDK.
Amount fields are always unsigned base-10 integer strings in the token's
smallest unit; JSON numbers are never used for amounts.
"""

from datetime import datetime
from enum import Enum
from typing import Literal, Optional

from pydantic import BaseModel, Field

AMOUNT_PATTERN = r"^[0-9]+$"
TX_HASH_PATTERN = r"^0x[0-9a-fA-F]{64}$"


class EscrowStatus(str, Enum):
    """Escrow lifecycle status."""

    CREATED = "created"  # Payment requested, nothing on-chain yet
    FUNDED = "funded"  # Buyer funds held by the escrow contract
    RELEASED = "released"  # Funds paid out to the payee
    DISPUTED = "disputed"  # Release blocked pending resolution


# created -> funded -> released, with funded -> disputed -> released as the
# only branch. Auto-release never fires from DISPUTED.
ALLOWED_TRANSITIONS = {
    EscrowStatus.CREATED: {EscrowStatus.FUNDED},
    EscrowStatus.FUNDED: {EscrowStatus.RELEASED, EscrowStatus.DISPUTED},
    EscrowStatus.DISPUTED: {EscrowStatus.RELEASED},
    EscrowStatus.RELEASED: set(),
}


class ReleaseRule(BaseModel):
    """Condition under which the payee gets paid."""

    type: Literal["delivery", "deadline"] = Field(description="Release on delivery or after a deadline")
    days: Optional[int] = Field(default=None, gt=0, description="Deadline in days")


class TokenRef(BaseModel):
    """Token descriptor carried by escrows, intents and receipts."""

    address: str
    symbol: str
    decimals: int


class EscrowRecord(BaseModel):
    """A payment under escrow."""

    id: str = Field(description="Escrow identifier")
    chain_id: int = Field(alias="chainId")
    token: TokenRef
    amount: str = Field(pattern=AMOUNT_PATTERN, description="Smallest-unit integer string")
    payee: str = Field(description="Payee address or alias")
    payer: Optional[str] = Field(default=None, description="Bound when funding is confirmed")
    escrow_address: Optional[str] = Field(default=None, alias="escrowAddress")
    status: EscrowStatus = Field(default=EscrowStatus.CREATED)
    rule: Optional[ReleaseRule] = None
    auto_release_hours: Optional[int] = Field(default=None, alias="autoReleaseHours")
    tx_funded: Optional[str] = Field(default=None, alias="txFunded")
    tx_release: Optional[str] = Field(default=None, alias="txRelease")
    created_at: datetime = Field(default_factory=datetime.utcnow, alias="createdAt")
    funded_at: Optional[datetime] = Field(default=None, alias="fundedAt")
    released_at: Optional[datetime] = Field(default=None, alias="releasedAt")

    model_config = {"populate_by_name": True}


class CreateEscrowRequest(BaseModel):
    """Body of ``POST /api/escrows``."""

    token_addr: str = Field(alias="tokenAddr", min_length=42)
    amount: str = Field(pattern=AMOUNT_PATTERN)
    payee: str = Field(min_length=1)
    payer: Optional[str] = None
    rule: ReleaseRule
    chain_id: Optional[int] = Field(default=None, alias="chainId")

    model_config = {"populate_by_name": True}


class CreateEscrowResponse(BaseModel):
    id: str
    escrow_address: Optional[str] = Field(default=None, alias="escrowAddress")
    chain_id: int = Field(alias="chainId")
    checkout_url: str = Field(alias="checkoutUrl")

    model_config = {"populate_by_name": True}


class EscrowView(BaseModel):
    """Display projection returned by ``GET /api/escrows/{id}``."""

    id: str
    chain_id: int = Field(alias="chainId")
    token: TokenRef
    amount: str
    display_amount: str = Field(alias="displayAmount")
    payee: str
    payer: Optional[str] = None
    escrow_address: Optional[str] = Field(default=None, alias="escrowAddress")
    status: EscrowStatus
    auto_release_hours: Optional[int] = Field(default=None, alias="autoReleaseHours")
    explorer_url: Optional[str] = Field(default=None, alias="explorerUrl")

    model_config = {"populate_by_name": True}


class ContractCall(BaseModel):
    """A call a wallet must sign."""

    to: str
    data: str
    value: str = Field(default="0", pattern=AMOUNT_PATTERN, description="Native value in wei")


class FundIntent(BaseModel):
    """Derived set of calls that move an escrow from created to funded."""

    needs_approval: bool = Field(alias="needsApproval")
    approve: Optional[ContractCall] = None
    fund: ContractCall
    amount: str = Field(pattern=AMOUNT_PATTERN)
    token: TokenRef
    chain_id: int = Field(alias="chainId")
    escrow_id: str = Field(alias="escrowId")
    abi_version: str = Field(alias="abiVersion")

    model_config = {"populate_by_name": True}


class ConfirmFundingRequest(BaseModel):
    """Body of ``POST /api/escrows/{id}/confirm-funding``."""

    tx_hash: str = Field(alias="txHash", pattern=TX_HASH_PATTERN)
    payer: str

    model_config = {"populate_by_name": True}


class ReleaseRequest(BaseModel):
    """Body of ``POST /api/escrows/{id}/release``; the payee's own release tx."""

    tx_hash: Optional[str] = Field(default=None, alias="txHash", pattern=TX_HASH_PATTERN)

    model_config = {"populate_by_name": True}


class DisputeRequest(BaseModel):
    reason: str = Field(min_length=1)


class PayeeSettings(BaseModel):
    """Per-payee escrow policy."""

    payee: str
    auto_release_hours: Optional[int] = Field(default=None, ge=1, le=720, alias="autoReleaseHours")

    model_config = {"populate_by_name": True}


class PayeeSettingsUpdate(BaseModel):
    """Body of ``PUT /api/payees/{payee}/settings``."""

    auto_release_hours: Optional[int] = Field(default=None, ge=1, le=720, alias="autoReleaseHours")

    model_config = {"populate_by_name": True}


class ReleaseOutcome(BaseModel):
    """Result of a release attempt; ``released`` is False when it was a no-op."""

    escrow_id: str = Field(alias="escrowId")
    released: bool
    status: EscrowStatus
    tx_hash: Optional[str] = Field(default=None, alias="txHash")
    trigger: Literal["manual", "auto"]

    model_config = {"populate_by_name": True}


class Receipt(BaseModel):
    """Finalized funding receipt."""

    id: str
    payer: str
    payee: str
    token: TokenRef
    amount: str
    chain_id: int = Field(alias="chainId")
    tx_hash: str = Field(alias="txHash")
    timestamp: datetime
    block: int

    model_config = {"populate_by_name": True}


class EscrowEvent(BaseModel):
    """Contract event observed for an escrow."""

    escrow_id: str
    escrow_address: Optional[str] = None
    type: str
    block: Optional[int] = None
    tx_hash: Optional[str] = None
    raw: dict = Field(default_factory=dict)
    seen_at: datetime = Field(default_factory=datetime.utcnow)
