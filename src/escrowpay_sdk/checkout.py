"""Interactive checkout session.

Drives a buyer's wallet through a fund intent::

    idle -> approving -> idle -> funding -> done

Only one wallet operation is in flight per session: every action is gated on
the session being ``idle``, and the step changes before the first await so a
second click while a transaction is pending is refused without touching the
wallet. Failures (rejected signature, revert, stale intent, RPC trouble)
land in ``last_error`` and return the session to ``idle``; nothing here
raises to the caller.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from src.escrowpay.errors import (
    ApprovalRejected,
    EscrowPayError,
    FundingRejected,
    IntentStale,
    TransactionReverted,
)
from src.escrowpay.intents import approval_spender
from src.models import EscrowStatus, FundIntent, Receipt

from .client import EscrowPayClient
from .wallet import TxConfirmation, Wallet, WalletRejected

logger = logging.getLogger(__name__)


class CheckoutStep(str, Enum):
    IDLE = "idle"
    APPROVING = "approving"
    FUNDING = "funding"
    DONE = "done"


@dataclass
class CheckoutResult:
    """Outcome of one session action."""

    ok: bool
    step: CheckoutStep
    error: Optional[EscrowPayError] = None
    tx_hash: Optional[str] = None


class CheckoutSession:
    """One buyer's checkout of one escrow."""

    def __init__(self, escrow_id: str, client: EscrowPayClient, wallet: Wallet):
        self.escrow_id = escrow_id
        self.client = client
        self.wallet = wallet
        self.step = CheckoutStep.IDLE
        self.intent: Optional[FundIntent] = None
        self.approved = False
        self.receipt: Optional[Receipt] = None
        self.last_error: Optional[EscrowPayError] = None
        self.pending_tx_hash: Optional[str] = None
        self.fund_tx_hash: Optional[str] = None
        self._wait_task: Optional[asyncio.Task] = None
        self._abandoned = False

    @property
    def can_approve(self) -> bool:
        return (
            self.step == CheckoutStep.IDLE
            and self.intent is not None
            and self.intent.needs_approval
            and not self.approved
        )

    @property
    def can_fund(self) -> bool:
        # A sent fund transaction must be confirmed or reverted before another
        return self.step == CheckoutStep.IDLE and self.intent is not None and self.fund_tx_hash is None

    @property
    def receipt_url(self) -> Optional[str]:
        if self.step != CheckoutStep.DONE:
            return None
        return f"{self.client.base_url}/api/receipts/{self.escrow_id}"

    def _fail(self, error: EscrowPayError, tx_hash: Optional[str] = None) -> CheckoutResult:
        logger.info(f"Checkout {self.escrow_id}: {error.code}: {error.message}")
        self.last_error = error
        self.step = CheckoutStep.IDLE
        return CheckoutResult(ok=False, step=self.step, error=error, tx_hash=tx_hash)

    def _unexpected(self, action: str, exc: Exception) -> CheckoutResult:
        logger.error(f"Unexpected error during {action} for {self.escrow_id}: {exc}", exc_info=True)
        return self._fail(EscrowPayError(f"Could not {action}, please retry"))

    def _refused(self) -> CheckoutResult:
        return CheckoutResult(ok=False, step=self.step)

    async def load_intent(self) -> CheckoutResult:
        """Fetch (or re-fetch) the fund intent and check for a standing approval."""
        if self.step != CheckoutStep.IDLE:
            return self._refused()

        try:
            intent = await self.client.get_fund_intent(self.escrow_id)
        except EscrowPayError as e:
            self.intent = None
            return self._fail(e)
        except Exception as e:
            self.intent = None
            return self._unexpected("load the payment", e)

        self.intent = intent
        self.last_error = None
        self.approved = False
        if intent.needs_approval:
            try:
                self.approved = await self.wallet.has_allowance(
                    intent.token.address, approval_spender(intent), int(intent.amount)
                )
            except Exception as e:
                # Unknown allowance just means the approve step is offered again
                logger.warning(f"Allowance check failed for {self.escrow_id}: {e}")

        return CheckoutResult(ok=True, step=self.step)

    async def _wait(self, tx_hash: str) -> TxConfirmation:
        self.pending_tx_hash = tx_hash
        if self._abandoned:
            raise asyncio.CancelledError()
        self._wait_task = asyncio.create_task(self.wallet.wait_for_confirmation(tx_hash))
        try:
            return await self._wait_task
        finally:
            self._wait_task = None

    def _abandoned_result(self, tx_hash: Optional[str]) -> CheckoutResult:
        logger.info(f"Checkout {self.escrow_id} abandoned while waiting on {tx_hash}")
        self.step = CheckoutStep.IDLE
        return CheckoutResult(ok=False, step=self.step, tx_hash=tx_hash)

    async def approve(self) -> CheckoutResult:
        """Submit the ERC-20 approval and wait for one confirmation."""
        if not self.can_approve:
            return self._refused()

        self.step = CheckoutStep.APPROVING
        self._abandoned = False
        intent = self.intent
        tx_hash = None
        try:
            tx_hash = await self.wallet.send_transaction(intent.approve, intent.chain_id)
            confirmation = await self._wait(tx_hash)
        except WalletRejected:
            return self._fail(ApprovalRejected("Approval was rejected in the wallet"))
        except asyncio.CancelledError:
            if self._abandoned:
                return self._abandoned_result(tx_hash)
            raise
        except Exception as e:
            return self._unexpected("approve the payment", e)

        if not confirmation.succeeded:
            return self._fail(TransactionReverted("Approval transaction reverted", tx_hash=tx_hash), tx_hash)

        self.approved = True
        self.last_error = None
        self.step = CheckoutStep.IDLE
        logger.info(f"Checkout {self.escrow_id}: approval confirmed in block {confirmation.block}")
        return CheckoutResult(ok=True, step=self.step, tx_hash=tx_hash)

    async def fund(self) -> CheckoutResult:
        """Submit the fund call, wait for it, then report it to the service."""
        if not self.can_fund:
            return self._refused()

        self.step = CheckoutStep.FUNDING
        self._abandoned = False
        intent = self.intent
        tx_hash = None
        try:
            escrow = await self.client.get_escrow(self.escrow_id)
            if escrow.status != EscrowStatus.CREATED:
                self.intent = None
                return self._fail(IntentStale(f"This payment is already {escrow.status.value}"))

            tx_hash = await self.wallet.send_transaction(intent.fund, intent.chain_id)
            self.fund_tx_hash = tx_hash
            confirmation = await self._wait(tx_hash)
        except WalletRejected:
            return self._fail(FundingRejected("Payment was rejected in the wallet"))
        except EscrowPayError as e:
            return self._fail(e, tx_hash)
        except asyncio.CancelledError:
            if self._abandoned:
                return self._abandoned_result(tx_hash)
            raise
        except Exception as e:
            return self._unexpected("send the payment", e)

        if not confirmation.succeeded:
            self.fund_tx_hash = None
            return self._fail(TransactionReverted("Payment transaction reverted", tx_hash=tx_hash), tx_hash)

        self.step = CheckoutStep.DONE
        self.last_error = None
        logger.info(f"Checkout {self.escrow_id}: funded in {tx_hash}")
        await self.confirm_funding()
        return CheckoutResult(ok=True, step=self.step, error=self.last_error, tx_hash=tx_hash)

    async def confirm_funding(self) -> Optional[Receipt]:
        """Report the sent fund transaction; safe to retry after a failure.

        This is also how a payment left pending by ``abandon()`` is picked up
        again: once the service has verified it, the session is done. If the
        service reports the transaction reverted, funding may be retried.
        """
        if self.step == CheckoutStep.FUNDING or not self.fund_tx_hash:
            return None
        if self.receipt is not None:
            return self.receipt

        try:
            self.receipt = await self.client.confirm_funding(
                self.escrow_id, self.fund_tx_hash, self.wallet.address
            )
            self.last_error = None
            self.step = CheckoutStep.DONE
        except TransactionReverted as e:
            logger.warning(f"Funding {self.fund_tx_hash} for {self.escrow_id} reverted: {e.message}")
            self.last_error = e
            self.fund_tx_hash = None
            self.step = CheckoutStep.IDLE
        except EscrowPayError as e:
            logger.warning(f"Funding report for {self.escrow_id} failed: {e.message}")
            self.last_error = e
        except Exception as e:
            logger.error(f"Unexpected error reporting funding for {self.escrow_id}: {e}", exc_info=True)
            self.last_error = EscrowPayError("Payment sent, receipt not available yet")
        return self.receipt

    def abandon(self) -> None:
        """Stop waiting for a pending confirmation.

        The on-chain transaction itself is left alone; it stays pending or
        mines regardless of this session. An abandoned fund transaction is
        kept in ``fund_tx_hash`` and blocks another ``fund()`` until
        ``confirm_funding()`` settles it.
        """
        self._abandoned = True
        if self._wait_task is not None and not self._wait_task.done():
            self._wait_task.cancel()
