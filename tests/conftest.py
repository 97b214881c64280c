import os
import tempfile
from datetime import datetime

import pytest

FACTORY = "0x1111111111111111111111111111111111111111"
MERCHANT_REGISTRY = "0x2222222222222222222222222222222222222222"
PAYMENT_PROCESSOR = "0x3333333333333333333333333333333333333333"
PAYEE = "0x4444444444444444444444444444444444444444"
PAYER = "0x5555555555555555555555555555555555555555"
ESCROW_ADDRESS = "0x6666666666666666666666666666666666666666"
PYUSD_ARBITRUM = "0x6c3ea9036406852006290770BEdFcAbA0e23A0e8"

# Set dummy environment variables for testing
# This must run before src.config is imported by any test
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("ESCROW_FACTORY_ADDRESS", FACTORY)
os.environ.setdefault("MERCHANT_REGISTRY_ADDRESS", MERCHANT_REGISTRY)
os.environ.setdefault("PAYMENT_PROCESSOR_ADDRESS", PAYMENT_PROCESSOR)
os.environ.setdefault("AUTO_RELEASE_ENABLED", "false")
os.environ.setdefault("LOG_FORMAT", "text")
os.environ.setdefault("DATABASE_PATH", os.path.join(tempfile.gettempdir(), "escrow-test.db"))

from src.config import Config  # noqa: E402
from src.escrowpay.chains import build_chain_registry  # noqa: E402
from src.escrowpay.tokens import build_token_registry  # noqa: E402
from src.models import EscrowEvent, EscrowRecord, EscrowStatus, Receipt, ReleaseRule, TokenRef  # noqa: E402


@pytest.fixture
def settings():
    """Configuration with Arbitrum One contracts deployed."""
    return Config(
        app_env="test",
        escrow_factory_address=FACTORY,
        merchant_registry_address=MERCHANT_REGISTRY,
        payment_processor_address=PAYMENT_PROCESSOR,
        operator_private_key="",
    )


@pytest.fixture
def chains(settings):
    return build_chain_registry(settings)


@pytest.fixture
def tokens(settings):
    return build_token_registry(settings)


@pytest.fixture
def make_escrow():
    """Build escrow records with sensible defaults."""

    def _make(**overrides) -> EscrowRecord:
        fields = dict(
            id="esc-1",
            chain_id=42161,
            token=TokenRef(address=PYUSD_ARBITRUM, symbol="PYUSD", decimals=6),
            amount="25000000",
            payee=PAYEE,
            status=EscrowStatus.CREATED,
            rule=ReleaseRule(type="delivery"),
            created_at=datetime(2026, 1, 1, 12, 0, 0),
        )
        fields.update(overrides)
        return EscrowRecord(**fields)

    return _make


@pytest.fixture
def fund_escrow():
    """Record funding for a stored escrow the way confirmation does."""

    async def _fund(db, escrow_id, funded_at=datetime(2026, 3, 1, 9, 0, 0), tx_hash="0x" + "aa" * 32) -> bool:
        escrow = await db.get_escrow(escrow_id)
        receipt = Receipt(
            id=escrow.id,
            payer=PAYER,
            payee=escrow.payee,
            token=escrow.token,
            amount=escrow.amount,
            chain_id=escrow.chain_id,
            tx_hash=tx_hash,
            timestamp=funded_at,
            block=1234,
        )
        event = EscrowEvent(escrow_id=escrow.id, escrow_address=ESCROW_ADDRESS, type="EscrowCreated", tx_hash=tx_hash)
        return await db.record_funding(receipt, ESCROW_ADDRESS, event)

    return _fund
