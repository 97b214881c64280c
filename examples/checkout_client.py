"""
Simple checkout SDK example.

Looks up an escrow on a locally running escrow service and prints what the
buyer's wallet would be asked to sign. Nothing is sent on-chain.

    python examples/checkout_client.py <escrow-id>
"""
import asyncio
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from src.escrowpay.errors import EscrowPayError
from src.escrowpay_sdk.client import EscrowPayClient


async def main(escrow_id: str):
    print("🚀 Initializing escrow checkout client...")

    async with EscrowPayClient(base_url="http://localhost:4030") as client:
        try:
            escrow = await client.get_escrow(escrow_id)
        except EscrowPayError as e:
            print(f"❌ {e.code}: {e.message}")
            return

        print(f"   Escrow:  {escrow.id} ({escrow.status.value})")
        print(f"   Amount:  {escrow.display_amount} {escrow.token.symbol}")
        print(f"   Payee:   {escrow.payee}")

        try:
            intent = await client.get_fund_intent(escrow_id)
        except EscrowPayError as e:
            print(f"❌ No fund intent: {e.message}")
            return

        if intent.needs_approval:
            print(f"1. approve -> {intent.approve.to}\n   {intent.approve.data}")
        print(f"{'2' if intent.needs_approval else '1'}. fund    -> {intent.fund.to} (value {intent.fund.value})")
        print(f"   {intent.fund.data}")
        print(f"✅ Intent built with ABI {intent.abi_version}")


if __name__ == "__main__":
    if len(sys.argv) != 2:
        print("usage: checkout_client.py <escrow-id>")
        sys.exit(1)
    asyncio.run(main(sys.argv[1]))
