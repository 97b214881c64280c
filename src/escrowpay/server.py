"""Escrow checkout service.

FastAPI application exposing:
- chain and token catalogs
- escrow creation, display and per-payee listing
- fund-intent generation for the checkout flow
- funding confirmation and receipts
- manual release, disputes and per-payee auto-release policy
"""

import uuid
from typing import Optional

from fastapi import FastAPI, Query, Request
from fastapi.responses import JSONResponse

from src.config import config, validate_config_for_service
from src.database import db
from src.escrowpay.chain_reader import ChainReader
from src.escrowpay.chains import build_chain_registry
from src.escrowpay.errors import (
    ChainNotReady,
    EscrowNotFound,
    EscrowPayError,
    InvalidAmount,
    InvalidTransition,
    ReceiptNotFound,
    TokenNotFound,
)
from src.escrowpay.funding import FundingVerifier
from src.escrowpay.intents import FundIntentBuilder
from src.escrowpay.release import AutoReleaseScheduler, ReleaseEngine
from src.escrowpay.tokens import (
    MIN_PAYMENT_AMOUNT,
    build_token_registry,
    format_token_amount,
    meets_minimum_payment,
)
from src.logging_utils import LogContext, bind_escrow_id, get_logger, setup_logging
from src.models import (
    ALLOWED_TRANSITIONS,
    ConfirmFundingRequest,
    CreateEscrowRequest,
    CreateEscrowResponse,
    DisputeRequest,
    EscrowRecord,
    EscrowStatus,
    EscrowView,
    FundIntent,
    PayeeSettings,
    PayeeSettingsUpdate,
    Receipt,
    ReleaseOutcome,
    ReleaseRequest,
    TokenRef,
)

# Validate configuration
validate_config_for_service("escrow")

# Setup logging
setup_logging(config.log_level, config.log_format)
logger = get_logger(__name__)

# Registries are built once and shared read-only
chains = build_chain_registry(config)
tokens = build_token_registry(config)

chain_reader = ChainReader(chains)
intent_builder = FundIntentBuilder(chains, tokens)
funding_verifier = FundingVerifier(db, chains, chain_reader)
release_engine = ReleaseEngine(db, chains, config.operator_private_key or None, chain_reader)
scheduler = AutoReleaseScheduler(release_engine, db, config.auto_release_poll_seconds)

# Create FastAPI app
app = FastAPI(
    title="Escrow Checkout",
    description="Stablecoin escrow funding, receipts and release",
)


@app.middleware("http")
async def correlation_middleware(request: Request, call_next):
    """Scope every request's logs to its correlation ID."""
    with LogContext(request.headers.get("X-Correlation-Id")) as correlation_id:
        response = await call_next(request)
        response.headers["X-Correlation-Id"] = correlation_id
        return response


@app.exception_handler(EscrowPayError)
async def escrow_error_handler(request: Request, exc: EscrowPayError) -> JSONResponse:
    logger.info(f"{request.method} {request.url.path} -> {exc.code}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content={"error": exc.to_dict()})


def _upstream_error(action: str, exc: Exception) -> JSONResponse:
    logger.error(f"Unexpected error during {action}: {exc}", exc_info=True)
    return JSONResponse(
        status_code=502,
        content={"error": {"code": "upstream_error", "message": f"Could not complete {action}, please retry"}},
    )


@app.on_event("startup")
async def startup():
    """Initialize database and background release on startup."""
    logger.info("Initializing escrow service...")
    await db.initialize()
    if config.auto_release_enabled:
        scheduler.start()
    logger.info(
        f"Escrow service initialized: {len(chains.get_enabled_chains())} enabled chain(s), "
        f"ready: {[c.id for c in chains.get_enabled_chains() if chains.validate_chain_contracts(c.id)]}"
    )


@app.on_event("shutdown")
async def shutdown():
    await scheduler.stop()


async def _load_escrow(escrow_id: str) -> EscrowRecord:
    bind_escrow_id(escrow_id)
    escrow = await db.get_escrow(escrow_id)
    if escrow is None:
        raise EscrowNotFound(f"Escrow {escrow_id} not found")
    return escrow


def _escrow_view(escrow: EscrowRecord) -> EscrowView:
    explorer_url = None
    if escrow.escrow_address:
        explorer_url = chains.get_block_explorer_url(escrow.chain_id, escrow.escrow_address, "address")

    token = tokens.get_token_by_address(escrow.token.address, escrow.chain_id)
    display_amount = format_token_amount(escrow.amount, token) if token else escrow.amount

    return EscrowView(
        id=escrow.id,
        chain_id=escrow.chain_id,
        token=escrow.token,
        amount=escrow.amount,
        display_amount=display_amount,
        payee=escrow.payee,
        payer=escrow.payer,
        escrow_address=escrow.escrow_address,
        status=escrow.status,
        auto_release_hours=escrow.auto_release_hours,
        explorer_url=explorer_url,
    )


@app.get("/health")
async def health_check() -> dict:
    """Health check endpoint."""
    return {"status": "ok", "service": "escrow"}


@app.get("/api/chains")
async def list_chains() -> dict:
    """Enabled chains with their readiness for escrow payments."""
    return {
        "defaultChainId": chains.default_chain_id,
        "chains": [
            {
                "id": chain.id,
                "name": chain.name,
                "isTestnet": chain.is_testnet,
                "ready": chains.validate_chain_contracts(chain.id),
                "blockExplorer": chain.block_explorer,
            }
            for chain in chains.get_enabled_chains()
        ],
    }


@app.get("/api/chains/{chain_id}/network-switch")
async def network_switch(chain_id: int):
    """Wallet add/switch-network parameters for a chain."""
    data = chains.get_network_switch_data(chain_id)
    if data is None:
        raise ChainNotReady(f"Chain {chain_id} is not supported")
    return data


@app.get("/api/tokens")
async def list_tokens(chain_id: Optional[int] = Query(default=None, alias="chainId")) -> dict:
    """Enabled tokens, optionally for one chain."""
    return {
        "tokens": [
            {
                **token.descriptor(),
                "name": token.name,
                "chainId": token.chain_id,
                "isDefault": token.is_default,
                "isStablecoin": token.is_stablecoin,
            }
            for token in tokens.get_enabled_tokens(chain_id)
        ]
    }


@app.post("/api/escrows", response_model=CreateEscrowResponse)
async def create_escrow(request: CreateEscrowRequest) -> CreateEscrowResponse:
    """Create an escrow payment request.

    The escrow contract is not deployed here; the buyer's fund transaction
    deploys it through the factory.
    """
    chain_id = request.chain_id or config.default_chain_id
    if not chains.is_chain_supported(chain_id):
        raise ChainNotReady(f"{chains.get_chain_display_name(chain_id)} is not supported")

    token = tokens.get_token_by_address(request.token_addr, chain_id)
    if token is None or not token.enabled:
        raise TokenNotFound(
            f"Token {request.token_addr} is not accepted on {chains.get_chain_display_name(chain_id)}"
        )

    if not meets_minimum_payment(request.amount, token):
        raise InvalidAmount(f"Minimum payment is {MIN_PAYMENT_AMOUNT} {token.symbol}")

    auto_release_hours = None
    if request.rule.type == "deadline" and request.rule.days:
        auto_release_hours = request.rule.days * 24
    else:
        settings = await db.get_payee_settings(request.payee)
        if settings and settings.auto_release_hours:
            auto_release_hours = settings.auto_release_hours
        else:
            auto_release_hours = config.default_auto_release_hours

    escrow = EscrowRecord(
        id=str(uuid.uuid4()),
        chain_id=chain_id,
        token=TokenRef(**token.descriptor()),
        amount=request.amount,
        payee=request.payee,
        payer=request.payer,
        rule=request.rule,
        auto_release_hours=auto_release_hours,
    )
    bind_escrow_id(escrow.id)
    await db.create_escrow(escrow)

    logger.info(
        f"Escrow {escrow.id} requested: {format_token_amount(escrow.amount, token)} "
        f"{token.symbol} to {escrow.payee} on chain {chain_id}"
    )
    return CreateEscrowResponse(
        id=escrow.id,
        escrow_address=None,
        chain_id=chain_id,
        checkout_url=f"/checkout/{escrow.id}",
    )


@app.get("/api/escrows", response_model=list[EscrowView])
async def list_escrows(payee: Optional[str] = Query(default=None)) -> list[EscrowView]:
    """Escrows for the payee dashboard, newest first."""
    return [_escrow_view(escrow) for escrow in await db.list_escrows(payee)]


@app.get("/api/escrows/{escrow_id}", response_model=EscrowView)
async def get_escrow(escrow_id: str) -> EscrowView:
    """Escrow projection for display."""
    return _escrow_view(await _load_escrow(escrow_id))


@app.post("/api/escrows/{escrow_id}/fund-intent", response_model=FundIntent, response_model_exclude_none=True)
async def fund_intent(escrow_id: str) -> FundIntent:
    """Calls the buyer's wallet must sign to fund the escrow."""
    escrow = await _load_escrow(escrow_id)
    intent = intent_builder.build_fund_intent(escrow)
    logger.info(f"Fund intent for {escrow_id}: approval={intent.needs_approval}, target={intent.fund.to}")
    return intent


@app.post("/api/escrows/{escrow_id}/confirm-funding", response_model=Receipt)
async def confirm_funding(escrow_id: str, request: ConfirmFundingRequest):
    """Verify the mined fund transaction and record the receipt."""
    bind_escrow_id(escrow_id)
    try:
        return await funding_verifier.confirm_funding(escrow_id, request.tx_hash, request.payer)
    except EscrowPayError:
        raise
    except Exception as e:
        return _upstream_error("funding confirmation", e)


@app.post("/api/escrows/{escrow_id}/release", response_model=ReleaseOutcome)
async def release_escrow(escrow_id: str, request: Optional[ReleaseRequest] = None):
    """Payee-initiated release; a repeat release is a no-op."""
    bind_escrow_id(escrow_id)
    try:
        return await release_engine.release(
            escrow_id, trigger="manual", tx_hash=request.tx_hash if request else None
        )
    except EscrowPayError:
        raise
    except Exception as e:
        return _upstream_error("release", e)


@app.post("/api/escrows/{escrow_id}/dispute", response_model=EscrowView)
async def dispute_escrow(escrow_id: str, request: DisputeRequest) -> EscrowView:
    """Block auto-release of a funded escrow pending resolution."""
    escrow = await _load_escrow(escrow_id)
    if escrow.status == EscrowStatus.DISPUTED:
        return _escrow_view(escrow)
    if EscrowStatus.DISPUTED not in ALLOWED_TRANSITIONS[escrow.status]:
        raise InvalidTransition(f"Only funded escrows can be disputed, {escrow_id} is {escrow.status.value}")

    if not await db.mark_disputed(escrow_id, request.reason):
        escrow = await _load_escrow(escrow_id)
        if escrow.status != EscrowStatus.DISPUTED:
            raise InvalidTransition(f"Escrow {escrow_id} is {escrow.status.value} and cannot be disputed")
    return _escrow_view(await _load_escrow(escrow_id))


@app.put("/api/payees/{payee}/settings", response_model=PayeeSettings)
async def update_payee_settings(payee: str, settings: PayeeSettingsUpdate) -> PayeeSettings:
    """Set a payee's auto-release delay for future escrows."""
    stored = PayeeSettings(payee=payee, auto_release_hours=settings.auto_release_hours)
    await db.upsert_payee_settings(stored)
    return stored


@app.get("/api/receipts/{escrow_id}", response_model=Receipt)
async def get_receipt(escrow_id: str) -> Receipt:
    """Funding receipt for a funded escrow."""
    bind_escrow_id(escrow_id)
    receipt = await db.get_receipt(escrow_id)
    if receipt is None:
        raise ReceiptNotFound(f"No receipt for escrow {escrow_id}")
    return receipt


if __name__ == "__main__":
    import uvicorn

    logger.info(f"Starting escrow service on {config.escrow_host}:{config.escrow_port}")
    uvicorn.run(
        app,
        host=config.escrow_host,
        port=config.escrow_port,
        log_level=config.log_level.lower(),
    )
