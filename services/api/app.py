# services/api/app.py
from __future__ import annotations

import os
import pathlib
import threading
from dataclasses import dataclass
from typing import Callable, List, Optional

from fastapi import FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from services.crypto_core.commitments import NATIVE_RAIL, address_for, is_account
from services.market.admin import AdminCapability
from services.market.bootstrap import build_marketplace
from services.market.collaborators import (
    HttpRoyaltyLookup,
    InMemoryAssetRegistry,
    InMemoryBank,
    InMemoryRoyaltyRegistry,
)
from services.market.errors import MarketError, Unauthorized
from services.market.fees import DEFAULT_FEE_BPS
from services.market.listings import (
    COMMIT_REVEAL_WINDOW,
    MIN_AUCTION_DURATION,
    MIN_BID_INCREMENT_PCT,
    MIN_TIME_BETWEEN_BIDS,
    Marketplace,
)
from services.market.models import AssetRef, Listing

from . import health_checks as hc
from .eventlog import EventLog
from .logging_config import get_logger, setup_logging
from .routes_escrow import router as escrow_router
from .schemas_api import (
    ApproveAssetReq,
    BalanceRes,
    BuyReq,
    CallerReq,
    CommitReq,
    ConfigRes,
    EventRow,
    FeeRecipientReq,
    FeeUpdateReq,
    FundReq,
    ListingCreateReq,
    ListingCreateRes,
    ListingOut,
    ListingsPayload,
    MetricRow,
    MintAssetReq,
    Ok,
    ReplayRes,
    RevealReq,
    RoyaltySetReq,
    SettlementRes,
    SplitOut,
)
from .state_store import market_save, market_state

logger = get_logger("api")

# =========================
# Paths & config
# =========================

REPO_ROOT = str(pathlib.Path(__file__).resolve().parents[2])
DATA_DIR = os.getenv("DATA_DIR", os.path.join(REPO_ROOT, "data"))

EVENTS_DB_PATH = os.getenv("EVENTS_DB_PATH", os.path.join(DATA_DIR, "events.db"))
MARKET_STATE_PATH = os.getenv("MARKET_STATE_PATH", os.path.join(DATA_DIR, "market_state.json"))

# Without a token the owner capability is random and the admin surface is unreachable.
MARKET_ADMIN_TOKEN = os.getenv("MARKET_ADMIN_TOKEN", "")
MARKET_ADDRESS = os.getenv("MARKET_ADDRESS", address_for("marketplace"))
FEE_RECIPIENT = os.getenv("FEE_RECIPIENT", address_for("fee-recipient"))
MARKETPLACE_FEE_BPS = int(os.getenv("MARKETPLACE_FEE_BPS", str(DEFAULT_FEE_BPS)))
ROYALTY_REGISTRY_URL = os.getenv("ROYALTY_REGISTRY_URL", "")
SANDBOX_ENABLED = os.getenv("SANDBOX_ENABLED", "1") == "1"
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()


@dataclass
class ApiConfig:
    events_db_path: Optional[str] = EVENTS_DB_PATH
    state_path: Optional[str] = MARKET_STATE_PATH
    admin_token: str = MARKET_ADMIN_TOKEN
    address: str = MARKET_ADDRESS
    fee_recipient: str = FEE_RECIPIENT
    fee_bps: int = MARKETPLACE_FEE_BPS
    royalty_registry_url: str = ROYALTY_REGISTRY_URL
    sandbox: bool = SANDBOX_ENABLED
    log_level: str = LOG_LEVEL


def _listing_out(rec: Listing) -> ListingOut:
    d = rec.to_dict()
    d["pending_commitments"] = len(rec.commitments)
    return ListingOut.model_validate(d)


def create_app(config: Optional[ApiConfig] = None, clock: Optional[Callable[[], int]] = None) -> FastAPI:
    config = config or ApiConfig()
    setup_logging(config.log_level)

    owner = AdminCapability("owner", token=config.admin_token or None)
    custody = InMemoryAssetRegistry(custodian=config.address)
    bank = InMemoryBank()
    if config.royalty_registry_url:
        royalties = HttpRoyaltyLookup(config.royalty_registry_url)
    else:
        royalties = InMemoryRoyaltyRegistry()

    market: Marketplace = build_marketplace(
        owner=owner,
        fee_recipient=config.fee_recipient,
        address=config.address,
        custody=custody,
        rails=bank,
        royalty_lookup=royalties,
        fee_bps=config.fee_bps,
        clock=clock,
    )

    log: Optional[EventLog] = EventLog(config.events_db_path) if config.events_db_path else None
    if log is not None:
        market.events.subscribe(log.append)

    if config.state_path:
        st = market_state(pathlib.Path(config.state_path))
        if st:
            market.import_state(st)
            logger.info("restored market state from %s (event seq %d)", config.state_path, market.events.last_seq)

    persist_lock = threading.Lock()

    def persist() -> None:
        # snapshot and write under one lock: the file only ever moves forward
        if config.state_path:
            with persist_lock:
                market_save(market.export_state(), pathlib.Path(config.state_path))

    app = FastAPI(title="Sealed-Bid Marketplace API", version="0.1.0")
    app.state.config = config
    app.state.market = market
    app.state.eventlog = log
    app.state.persist = persist
    app.include_router(escrow_router)

    @app.exception_handler(MarketError)
    async def _market_error(request: Request, exc: MarketError):
        return JSONResponse(status_code=exc.http_status, content={"detail": str(exc), "error": exc.code})

    def _admin(token: Optional[str]) -> AdminCapability:
        return AdminCapability("request", token=token or None)

    def _sandbox() -> None:
        if not config.sandbox:
            raise HTTPException(status_code=404, detail="Sandbox disabled")

    # ---------- Health ----------
    @app.get("/health")
    async def health():
        return await hc.comprehensive_health_check(market, log, config.royalty_registry_url or None)

    @app.get("/health/ready")
    async def health_ready():
        ready = await hc.readiness_check(log)
        if not ready:
            raise HTTPException(status_code=503, detail="Not ready")
        return {"status": "ready"}

    @app.get("/health/live")
    async def health_live():
        return {"status": "alive" if await hc.liveness_check() else "dead"}

    @app.get("/config", response_model=ConfigRes)
    def get_config():
        return ConfigRes(
            address=market.address,
            native_rail=NATIVE_RAIL,
            fee_bps=market.fee_bps,
            fee_recipient=market.fee_recipient,
            sandbox=config.sandbox,
            min_auction_duration=MIN_AUCTION_DURATION,
            min_time_between_bids=MIN_TIME_BETWEEN_BIDS,
            commit_reveal_window=COMMIT_REVEAL_WINDOW,
            min_bid_increment_pct=MIN_BID_INCREMENT_PCT,
        )

    # ---------- Listings ----------
    @app.get("/listings", response_model=ListingsPayload)
    def list_listings(active_only: bool = False, seller: Optional[str] = None):
        return ListingsPayload(items=[_listing_out(l) for l in market.listings(active_only=active_only, seller=seller)])

    @app.get("/listings/{listing_id}", response_model=ListingOut)
    def get_listing(listing_id: int):
        return _listing_out(market.get_listing(listing_id))

    @app.get("/listings/{listing_id}/quote", response_model=SplitOut)
    def quote_listing(listing_id: int):
        return SplitOut(**market.quote(listing_id).to_dict())

    @app.post("/listings", response_model=ListingCreateRes)
    def create_listing(req: ListingCreateReq):
        listing_id = market.create_listing(
            req.caller,
            AssetRef(req.contract, req.token_id),
            req.price,
            payment_rail=req.payment_rail,
            is_auction=req.is_auction,
            auction_duration=req.auction_duration,
        )
        persist()
        return ListingCreateRes(listing=_listing_out(market.get_listing(listing_id)))

    @app.post("/listings/{listing_id}/buy", response_model=SettlementRes)
    def buy_listing(listing_id: int, req: BuyReq):
        split = market.buy_nft(req.caller, listing_id, value=req.value)
        persist()
        return SettlementRes(listing_id=listing_id, split=SplitOut(**split.to_dict()))

    @app.post("/listings/{listing_id}/bids/commit", response_model=Ok)
    def commit_bid(listing_id: int, req: CommitReq):
        market.commit_bid(req.caller, listing_id, req.commitment)
        persist()
        return Ok()

    @app.post("/listings/{listing_id}/bids/reveal", response_model=ListingOut)
    def reveal_bid(listing_id: int, req: RevealReq):
        market.reveal_bid(req.caller, listing_id, req.amount, req.nonce, value=req.value)
        persist()
        return _listing_out(market.get_listing(listing_id))

    @app.post("/listings/{listing_id}/end", response_model=SettlementRes)
    def end_auction(listing_id: int, req: CallerReq):
        split = market.end_auction(req.caller, listing_id)
        persist()
        return SettlementRes(listing_id=listing_id, split=SplitOut(**split.to_dict()))

    @app.post("/listings/{listing_id}/cancel", response_model=ListingOut)
    def cancel_listing(listing_id: int, req: CallerReq):
        market.cancel_listing(req.caller, listing_id)
        persist()
        return _listing_out(market.get_listing(listing_id))

    # ---------- Events & metrics ----------
    @app.get("/events", response_model=List[EventRow])
    def list_events(
        listing_id: Optional[int] = None,
        kind: Optional[str] = None,
        after_seq: int = Query(0, ge=0),
        limit: int = Query(100, ge=1, le=1000),
    ):
        if log is not None:
            return log.events(listing_id=listing_id, kind=kind, after_seq=after_seq, limit=limit)
        rows = [e.to_dict() for e in market.events.history if e.seq > after_seq]
        if kind:
            rows = [r for r in rows if r["kind"] == kind]
        if listing_id is not None:
            rows = [r for r in rows if r.get("listing_id") == listing_id]
        return rows[:limit]

    @app.get("/metrics", response_model=List[MetricRow])
    def metrics():
        if log is None:
            return []
        return [MetricRow(kind=r[0], count=r[1], updated_at=r[2]) for r in log.metrics_all()]

    # ---------- Admin ----------
    @app.post("/admin/fee", response_model=Ok)
    def admin_fee(req: FeeUpdateReq, x_admin_token: Optional[str] = Header(None)):
        market.update_marketplace_fee(_admin(x_admin_token), req.fee_bps)
        persist()
        return Ok()

    @app.post("/admin/fee-recipient", response_model=Ok)
    def admin_fee_recipient(req: FeeRecipientReq, x_admin_token: Optional[str] = Header(None)):
        market.update_fee_recipient(_admin(x_admin_token), req.fee_recipient)
        persist()
        return Ok()

    @app.post("/admin/replay", response_model=ReplayRes)
    def admin_replay(x_admin_token: Optional[str] = Header(None)):
        if not owner.matches(_admin(x_admin_token)):
            raise Unauthorized("admin token required")
        if log is None:
            raise HTTPException(status_code=400, detail="Event log disabled")
        return ReplayRes(replayed=log.replay())

    # ---------- Sandbox (in-memory collaborators) ----------
    @app.post("/sandbox/assets/mint", response_model=Ok)
    def sandbox_mint(req: MintAssetReq):
        _sandbox()
        if not is_account(req.contract):
            raise HTTPException(status_code=400, detail="Invalid contract address")
        market.run_exclusive(lambda: custody.mint(AssetRef(req.contract, req.token_id), req.owner))
        persist()
        return Ok()

    @app.post("/sandbox/assets/approve", response_model=Ok)
    def sandbox_approve(req: ApproveAssetReq):
        _sandbox()
        asset = AssetRef(req.contract, req.token_id)
        market.run_exclusive(lambda: custody.approve(asset, req.owner, req.operator or market.address))
        persist()
        return Ok()

    @app.post("/sandbox/fund", response_model=BalanceRes)
    def sandbox_fund(req: FundReq):
        _sandbox()
        def fund() -> int:
            bank.mint(req.payment_rail, req.account, req.amount)
            return bank.balance_of(req.payment_rail, req.account)

        balance = market.run_exclusive(fund)
        persist()
        return BalanceRes(account=req.account, payment_rail=req.payment_rail, balance=balance)

    @app.post("/sandbox/royalty", response_model=Ok)
    def sandbox_royalty(req: RoyaltySetReq):
        _sandbox()
        if not isinstance(royalties, InMemoryRoyaltyRegistry):
            raise HTTPException(status_code=400, detail="Royalties come from the remote registry")
        if not is_account(req.receiver):
            raise HTTPException(status_code=400, detail="Invalid royalty receiver")
        market.run_exclusive(lambda: royalties.set_royalty(req.contract, req.receiver, req.bps))
        persist()
        return Ok()

    @app.get("/sandbox/balances/{account}", response_model=BalanceRes)
    def sandbox_balance(account: str, payment_rail: str = NATIVE_RAIL):
        _sandbox()
        balance, assets = market.read_exclusive(
            lambda: (bank.balance_of(payment_rail, account), custody.assets_of(account))
        )
        return BalanceRes(
            account=account,
            payment_rail=payment_rail,
            balance=balance,
            assets=[a.to_dict() for a in assets],
        )

    return app


app = create_app()
