"""Core escrow checkout client."""

import logging
from typing import Any, Optional

import httpx

from src.escrowpay.errors import EscrowPayError, error_from_payload
from src.models import (
    CreateEscrowResponse,
    EscrowView,
    FundIntent,
    Receipt,
    ReleaseOutcome,
    ReleaseRule,
)

logger = logging.getLogger(__name__)


class EscrowPayClient:
    """Async HTTP client for the escrow checkout service."""

    def __init__(self, base_url: str = "http://localhost:4030", timeout: float = 30.0):
        """Initialize the client.

        Args:
            base_url: The URL of the escrow service.
            timeout: Request timeout in seconds.
        """
        self.base_url = base_url.rstrip("/")

        # Initialize async HTTP client
        self._http = httpx.AsyncClient(base_url=self.base_url, timeout=timeout)

    async def close(self):
        """Close the underlying HTTP client."""
        await self._http.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def _request(
        self, method: str, path: str, json: Optional[dict] = None, params: Optional[dict] = None
    ) -> Any:
        response = await self._http.request(method, path, json=json, params=params)
        if response.status_code >= 400:
            try:
                payload = response.json().get("error") or {}
            except ValueError:
                payload = {}
            if not payload:
                logger.error(f"{method} {path} failed: {response.status_code} {response.text}")
                raise EscrowPayError(f"Escrow service error {response.status_code}")
            raise error_from_payload(payload)
        return response.json()

    async def create_escrow(
        self,
        token_addr: str,
        amount: str,
        payee: str,
        rule: ReleaseRule,
        payer: Optional[str] = None,
        chain_id: Optional[int] = None,
    ) -> CreateEscrowResponse:
        """Request a new escrow payment.

        Args:
            token_addr: Address of the token to pay in.
            amount: Smallest-unit integer string.
            payee: Address receiving the funds on release.
            rule: Release condition.
            payer: Intended payer, if known.
            chain_id: Chain to settle on, defaults to the service default.
        """
        body = {
            "tokenAddr": token_addr,
            "amount": amount,
            "payee": payee,
            "rule": rule.model_dump(exclude_none=True),
        }
        if payer:
            body["payer"] = payer
        if chain_id is not None:
            body["chainId"] = chain_id

        data = await self._request("POST", "/api/escrows", json=body)
        logger.info(f"Created escrow {data['id']}")
        return CreateEscrowResponse.model_validate(data)

    async def get_escrow(self, escrow_id: str) -> EscrowView:
        return EscrowView.model_validate(await self._request("GET", f"/api/escrows/{escrow_id}"))

    async def list_escrows(self, payee: Optional[str] = None) -> list[EscrowView]:
        """Escrows owed to ``payee`` (all escrows when omitted), newest first."""
        params = {"payee": payee} if payee else None
        data = await self._request("GET", "/api/escrows", params=params)
        return [EscrowView.model_validate(item) for item in data]

    async def get_fund_intent(self, escrow_id: str) -> FundIntent:
        return FundIntent.model_validate(
            await self._request("POST", f"/api/escrows/{escrow_id}/fund-intent")
        )

    async def confirm_funding(self, escrow_id: str, tx_hash: str, payer: str) -> Receipt:
        """Report a mined fund transaction and get the receipt back."""
        data = await self._request(
            "POST",
            f"/api/escrows/{escrow_id}/confirm-funding",
            json={"txHash": tx_hash, "payer": payer},
        )
        return Receipt.model_validate(data)

    async def release(self, escrow_id: str, tx_hash: Optional[str] = None) -> ReleaseOutcome:
        body = {"txHash": tx_hash} if tx_hash else {}
        data = await self._request("POST", f"/api/escrows/{escrow_id}/release", json=body)
        return ReleaseOutcome.model_validate(data)

    async def dispute(self, escrow_id: str, reason: str) -> EscrowView:
        data = await self._request("POST", f"/api/escrows/{escrow_id}/dispute", json={"reason": reason})
        return EscrowView.model_validate(data)

    async def get_receipt(self, escrow_id: str) -> Receipt:
        return Receipt.model_validate(await self._request("GET", f"/api/receipts/{escrow_id}"))
