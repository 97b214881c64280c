"""Unit tests for funding confirmation."""

from datetime import datetime

import pytest
from eth_abi import encode
from web3 import Web3

import src.database
from src.database import Database
from src.escrowpay.abi import ESCROW_FACTORY, ESCROW_VAULT
from src.escrowpay.chain_reader import TransactionInfo
from src.escrowpay.errors import (
    ChainNotReady,
    EscrowNotFound,
    FundingNotVerified,
    IntentStale,
    TransactionReverted,
)
from src.escrowpay.funding import FundingVerifier
from src.models import EscrowStatus

FACTORY = "0x1111111111111111111111111111111111111111"
PAYEE = "0x4444444444444444444444444444444444444444"
PAYER = "0x5555555555555555555555555555555555555555"
ESCROW_ADDRESS = "0x6666666666666666666666666666666666666666"
PYUSD = "0x6c3ea9036406852006290770BEdFcAbA0e23A0e8"
FUND_TX = "0x" + "aa" * 32
MINED_AT = datetime(2026, 3, 1, 9, 0, 0)
OTHER = "0x7777777777777777777777777777777777777777"
DIRECT_FUND = ESCROW_VAULT.encode_call("fund", 25_000_000)


def _escrow_created_log(amount=25_000_000, emitter=FACTORY, payee=PAYEE, token=PYUSD):
    return {
        "address": emitter,
        "topics": [
            bytes.fromhex(ESCROW_FACTORY.event_topic("EscrowCreated")[2:]),
            bytes(12) + bytes.fromhex(ESCROW_ADDRESS[2:]),
            bytes(12) + bytes.fromhex(payee[2:]),
        ],
        "data": encode(["address", "uint256"], [Web3.to_checksum_address(token), amount]),
        "logIndex": 0,
    }


def _tx(status=1, to=FACTORY, logs=None, tx_hash=FUND_TX, data="0x", value=0):
    return TransactionInfo(
        tx_hash=tx_hash,
        status=status,
        block_number=4242,
        sender=PAYER,
        to=to,
        timestamp=MINED_AT,
        logs=[_escrow_created_log()] if logs is None else logs,
        input=data,
        value=value,
    )


class FakeReader:
    """Chain reader returning canned transactions."""

    def __init__(self, tx=None):
        self.tx = tx
        self.calls = []

    async def get_transaction(self, chain_id, tx_hash):
        self.calls.append((chain_id, tx_hash))
        return self.tx


@pytest.fixture
async def test_db(tmp_path):
    db = Database(str(tmp_path / "test.db"))
    await db.initialize()
    return db


@pytest.fixture
async def created(test_db, make_escrow):
    await test_db.create_escrow(make_escrow())
    return "esc-1"


@pytest.mark.unit
class TestFundingVerifier:
    @pytest.mark.asyncio
    async def test_factory_funding_recorded(self, test_db, chains, created):
        verifier = FundingVerifier(test_db, chains, FakeReader(_tx()))
        receipt = await verifier.confirm_funding(created, FUND_TX, PAYER)

        assert receipt.payer == PAYER
        assert receipt.amount == "25000000"
        assert receipt.block == 4242
        assert receipt.timestamp == MINED_AT
        assert receipt.chain_id == 42161

        escrow = await test_db.get_escrow(created)
        assert escrow.status == EscrowStatus.FUNDED
        assert escrow.escrow_address == Web3.to_checksum_address(ESCROW_ADDRESS)
        assert escrow.funded_at == MINED_AT

        events = await test_db.get_events(created)
        assert [event.type for event in events] == ["EscrowCreated"]
        assert events[0].raw["amount"] == "25000000"

    @pytest.mark.asyncio
    async def test_same_tx_is_idempotent(self, test_db, chains, created):
        reader = FakeReader(_tx())
        verifier = FundingVerifier(test_db, chains, reader)

        first = await verifier.confirm_funding(created, FUND_TX, PAYER)
        second = await verifier.confirm_funding(created, FUND_TX, PAYER)

        assert first == second
        assert len(reader.calls) == 1
        assert len(await test_db.get_events(created)) == 1

    @pytest.mark.asyncio
    async def test_other_tx_on_funded_escrow_is_stale(self, test_db, chains, created):
        verifier = FundingVerifier(test_db, chains, FakeReader(_tx()))
        await verifier.confirm_funding(created, FUND_TX, PAYER)

        with pytest.raises(IntentStale):
            await verifier.confirm_funding(created, "0x" + "bb" * 32, PAYER)

    @pytest.mark.asyncio
    async def test_deployed_escrow_funded_directly(self, test_db, chains, make_escrow):
        await test_db.create_escrow(make_escrow(id="deployed", escrow_address=ESCROW_ADDRESS))
        verifier = FundingVerifier(test_db, chains, FakeReader(_tx(to=ESCROW_ADDRESS, logs=[], data=DIRECT_FUND)))

        receipt = await verifier.confirm_funding("deployed", FUND_TX, PAYER)

        assert receipt.id == "deployed"
        assert [event.type for event in await test_db.get_events("deployed")] == ["Funded"]

    @pytest.mark.asyncio
    async def test_not_mined(self, test_db, chains, created):
        verifier = FundingVerifier(test_db, chains, FakeReader(None))
        with pytest.raises(FundingNotVerified, match="not mined"):
            await verifier.confirm_funding(created, FUND_TX, PAYER)
        assert (await test_db.get_escrow(created)).status == EscrowStatus.CREATED

    @pytest.mark.asyncio
    async def test_reverted(self, test_db, chains, created):
        verifier = FundingVerifier(test_db, chains, FakeReader(_tx(status=0)))
        with pytest.raises(TransactionReverted) as exc_info:
            await verifier.confirm_funding(created, FUND_TX, PAYER)
        assert exc_info.value.tx_hash == FUND_TX

    @pytest.mark.asyncio
    async def test_wrong_target(self, test_db, chains, created):
        verifier = FundingVerifier(
            test_db, chains, FakeReader(_tx(to="0x9999999999999999999999999999999999999999"))
        )
        with pytest.raises(FundingNotVerified, match="expected"):
            await verifier.confirm_funding(created, FUND_TX, PAYER)

    @pytest.mark.asyncio
    async def test_missing_event(self, test_db, chains, created):
        verifier = FundingVerifier(test_db, chains, FakeReader(_tx(logs=[])))
        with pytest.raises(FundingNotVerified, match="created escrow"):
            await verifier.confirm_funding(created, FUND_TX, PAYER)

    @pytest.mark.asyncio
    async def test_event_from_other_contract_ignored(self, test_db, chains, created):
        logs = [_escrow_created_log(emitter="0x9999999999999999999999999999999999999999")]
        verifier = FundingVerifier(test_db, chains, FakeReader(_tx(logs=logs)))
        with pytest.raises(FundingNotVerified):
            await verifier.confirm_funding(created, FUND_TX, PAYER)

    @pytest.mark.asyncio
    async def test_amount_mismatch(self, test_db, chains, created):
        verifier = FundingVerifier(test_db, chains, FakeReader(_tx(logs=[_escrow_created_log(amount=1)])))
        with pytest.raises(FundingNotVerified, match="owed"):
            await verifier.confirm_funding(created, FUND_TX, PAYER)

    @pytest.mark.asyncio
    async def test_payee_mismatch(self, test_db, chains, created):
        logs = [_escrow_created_log(payee=OTHER)]
        verifier = FundingVerifier(test_db, chains, FakeReader(_tx(logs=logs)))
        with pytest.raises(FundingNotVerified, match="payee"):
            await verifier.confirm_funding(created, FUND_TX, PAYER)
        assert (await test_db.get_escrow(created)).status == EscrowStatus.CREATED
        assert await test_db.get_receipt(created) is None

    @pytest.mark.asyncio
    async def test_token_mismatch(self, test_db, chains, created):
        logs = [_escrow_created_log(token="0x8888888888888888888888888888888888888888")]
        verifier = FundingVerifier(test_db, chains, FakeReader(_tx(logs=logs)))
        with pytest.raises(FundingNotVerified, match="token"):
            await verifier.confirm_funding(created, FUND_TX, PAYER)
        assert (await test_db.get_escrow(created)).status == EscrowStatus.CREATED

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "data,value",
        [
            ("0x", 0),
            (ESCROW_VAULT.encode_call("fund", 1), 0),
            (ESCROW_VAULT.encode_call("deposit"), 25_000_000),
            (DIRECT_FUND, 5),
        ],
    )
    async def test_direct_funding_must_match_intent(self, test_db, chains, make_escrow, data, value):
        await test_db.create_escrow(make_escrow(id="deployed", escrow_address=ESCROW_ADDRESS))
        reader = FakeReader(_tx(to=ESCROW_ADDRESS, logs=[], data=data, value=value))
        verifier = FundingVerifier(test_db, chains, reader)

        with pytest.raises(FundingNotVerified, match="not a fund call"):
            await verifier.confirm_funding("deployed", FUND_TX, PAYER)
        assert (await test_db.get_escrow("deployed")).status == EscrowStatus.CREATED

    @pytest.mark.asyncio
    async def test_failed_ledger_write_can_be_retried(self, test_db, chains, created, monkeypatch):
        """A write failure leaves nothing behind, so the same confirmation succeeds later."""
        real_insert_event = src.database._insert_event
        calls = []

        async def failing_once(conn, event):
            calls.append(event)
            if len(calls) == 1:
                raise RuntimeError("disk I/O error")
            await real_insert_event(conn, event)

        monkeypatch.setattr(src.database, "_insert_event", failing_once)
        verifier = FundingVerifier(test_db, chains, FakeReader(_tx()))

        with pytest.raises(RuntimeError):
            await verifier.confirm_funding(created, FUND_TX, PAYER)
        assert (await test_db.get_escrow(created)).status == EscrowStatus.CREATED
        assert await test_db.get_receipt(created) is None

        receipt = await verifier.confirm_funding(created, FUND_TX, PAYER)
        assert receipt.tx_hash == FUND_TX
        assert await test_db.get_receipt(created) == receipt
        assert (await test_db.get_escrow(created)).status == EscrowStatus.FUNDED

    @pytest.mark.asyncio
    async def test_unknown_escrow(self, test_db, chains):
        verifier = FundingVerifier(test_db, chains, FakeReader(_tx()))
        with pytest.raises(EscrowNotFound):
            await verifier.confirm_funding("missing", FUND_TX, PAYER)

    @pytest.mark.asyncio
    async def test_chain_not_ready(self, test_db, chains, make_escrow):
        await test_db.create_escrow(make_escrow(id="polygon", chain_id=137))
        verifier = FundingVerifier(test_db, chains, FakeReader(_tx()))
        with pytest.raises(ChainNotReady):
            await verifier.confirm_funding("polygon", FUND_TX, PAYER)
