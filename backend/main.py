from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, List, Optional

from fastapi import Depends, FastAPI, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncEngine

from app_config import Settings
from asset_service import MetaplexCoreAssetCreator, load_keypair
from chain_client import ChainClient
from collection_catalog import CollectionCatalog
from db_models import create_engine_from_url, init_db, session_factory
from inventory_store import InventoryStore
from mint_errors import MintPipelineError
from mint_ledger import MintRequestStore
from mint_pipeline import MintPipeline
from mint_schemas import (
    CreateMintRequest,
    PriceView,
    ReleaseReservationRequest,
    ReservedItemView,
    StockView,
    SubmitSignatureRequest,
)
from price_oracle import PriceOracle
from reconciler import ReconciliationSweeper, start_reconciler, stop_reconciler
from retry_policy import RetryPolicy
from tx_builder import PaymentTransactionBuilder

auth_settings = Settings()

logging.basicConfig(level=auth_settings.log_level.upper())
logger = logging.getLogger("mintpad")


@dataclass
class Container:
    settings: Settings
    engine: AsyncEngine
    catalog: CollectionCatalog
    inventory: InventoryStore
    ledger: MintRequestStore
    oracle: PriceOracle
    chain: ChainClient
    builder: PaymentTransactionBuilder
    pipeline: MintPipeline
    sweeper: ReconciliationSweeper

    async def close(self) -> None:
        close_chain = getattr(self.chain, "close", None)
        if close_chain is not None:
            await close_chain()
        await self.engine.dispose()


def build_container(
    settings: Settings,
    *,
    clock: Callable[[], float] = time.time,
    chain=None,
    oracle=None,
    asset_creator=None,
) -> Container:
    """Composition root: every long-lived component is built here, once per process."""
    engine = create_engine_from_url(settings.database_url)
    sessions = session_factory(engine)
    if chain is None:
        chain = ChainClient.from_url(
            settings.rpc_url,
            retry=RetryPolicy(
                max_attempts=settings.rpc_max_attempts,
                base_delay=settings.rpc_retry_base_delay,
                backoff_multiplier=settings.rpc_retry_backoff,
            ),
            poll_seconds=settings.confirmation_poll_seconds,
        )
    if oracle is None:
        oracle = PriceOracle(
            settings.price_oracle_url,
            fallback_sol_price=settings.fallback_sol_price,
            ttl_seconds=settings.price_cache_ttl_seconds,
            timeout_seconds=settings.price_oracle_timeout_seconds,
            retry=RetryPolicy.fixed(settings.price_fetch_attempts, settings.price_retry_delay_seconds),
            clock=clock,
        )
    if asset_creator is None and settings.admin_keypair_path:
        asset_creator = MetaplexCoreAssetCreator(
            chain,
            load_keypair(settings.admin_keypair_path),
            confirmation_timeout=settings.confirmation_timeout_seconds,
        )
    catalog = CollectionCatalog(sessions, clock=clock)
    inventory = InventoryStore(sessions, expiry_seconds=settings.reservation_expiry_seconds, clock=clock)
    ledger = MintRequestStore(sessions, clock=clock)
    builder = PaymentTransactionBuilder(
        catalog,
        oracle,
        chain,
        platform_wallet=settings.platform_wallet,
        platform_fee_usd=settings.platform_fee_usd,
        creator_share_pct=settings.creator_share_pct,
        platform_share_pct=settings.platform_share_pct,
    )
    pipeline = MintPipeline(
        ledger,
        inventory,
        catalog,
        builder,
        chain,
        oracle,
        asset_creator=asset_creator,
        platform_fee_usd=settings.platform_fee_usd,
        max_quantity=settings.max_quantity_per_request,
        confirmation_timeout=settings.confirmation_timeout_seconds,
        not_found_grace_seconds=settings.reconcile_grace_seconds,
        clock=clock,
    )
    sweeper = ReconciliationSweeper(
        ledger,
        inventory,
        catalog,
        pipeline,
        oracle,
        grace_seconds=settings.reconcile_grace_seconds,
        reservation_expiry_seconds=settings.reservation_expiry_seconds,
        batch_size=settings.reconcile_batch_size,
        failed_lookback_seconds=settings.reconcile_failed_lookback_seconds,
        clock=clock,
    )
    if asset_creator is None:
        logger.info("asset_creation_disabled reason=no_admin_keypair")
    return Container(
        settings=settings,
        engine=engine,
        catalog=catalog,
        inventory=inventory,
        ledger=ledger,
        oracle=oracle,
        chain=chain,
        builder=builder,
        pipeline=pipeline,
        sweeper=sweeper,
    )


app = FastAPI(title="Mintpad API", version="0.1.0")


def get_container(request: Request) -> Container:
    return request.app.state.container


@app.on_event("startup")
async def startup_event():
    container = getattr(app.state, "container", None)
    if container is None:
        container = build_container(auth_settings)
        app.state.container = container
    await init_db(container.engine)
    if container.settings.reconcile_enabled:
        start_reconciler(container.sweeper, container.settings.reconcile_interval_seconds)
    else:
        logger.info("reconciler_disabled_via_config")


@app.on_event("shutdown")
async def shutdown_event():
    stop_reconciler()
    container = getattr(app.state, "container", None)
    if container is not None:
        await container.close()


@app.exception_handler(MintPipelineError)
async def mint_error_handler(request: Request, exc: MintPipelineError):
    content = {"success": False, "error": exc.message}
    if exc.details:
        content["details"] = exc.details
    if exc.status_code >= 500:
        logger.warning("request_failed path=%s status=%s error=%s", request.url.path, exc.status_code, exc.message)
    return JSONResponse(status_code=exc.status_code, content=content)


@app.get("/health")
def health():
    return {"status": "ok"}


@app.get("/mint/price")
async def mint_price(container: Container = Depends(get_container)):
    rate = await container.oracle.get_current_rate()
    fee_usd = container.settings.platform_fee_usd
    return PriceView(
        sol_price=rate.native_to_usd,
        usd_to_native=rate.usd_to_native,
        platform_fee_usd=fee_usd,
        platform_fee_native=fee_usd * rate.usd_to_native,
        cached=rate.cached,
    ).to_json()


@app.post("/mint/requests")
async def create_mint_request(req: CreateMintRequest, container: Container = Depends(get_container)):
    record = await container.pipeline.request_mint(
        req.idempotency_key, req.collection_address, req.buyer_wallet, req.quantity
    )
    return record.to_view()


@app.get("/mint/requests/{idempotency_key}")
async def get_mint_request(idempotency_key: str, container: Container = Depends(get_container)):
    record = await container.ledger.get(idempotency_key)
    return record.to_view()


@app.post("/mint/requests/{idempotency_key}/submit")
async def submit_mint_signature(
    idempotency_key: str, req: SubmitSignatureRequest, container: Container = Depends(get_container)
):
    record = await container.pipeline.submit_signature(idempotency_key, req.transaction_signature)
    return record.to_view()


@app.get("/collections/{collection_address}/stock")
async def collection_stock(collection_address: str, container: Container = Depends(get_container)):
    collection = await container.catalog.get_by_address(collection_address)
    counts = await container.inventory.stock(collection.id)
    return StockView(
        collection_address=collection_address,
        total_supply=counts["total"],
        available=counts["available"],
        reserved=counts["reserved"],
        minted=counts["minted"],
    ).to_json()


@app.post("/admin/reconcile")
async def admin_reconcile(container: Container = Depends(get_container)):
    summary = await container.sweeper.run_once()
    return {"ok": not summary.aborted, **summary.as_dict()}


@app.post("/admin/inventory/release_expired")
async def admin_release_expired(container: Container = Depends(get_container)):
    released = await container.inventory.release_expired_nft_reservations()
    return {"ok": True, "released_count": released}


@app.post("/admin/inventory/release")
async def admin_release_reservation(req: ReleaseReservationRequest, container: Container = Depends(get_container)):
    released = await container.inventory.release_reserved_items(req.reservation_token)
    return {"ok": True, "released_count": released}


@app.get("/admin/inventory/reserved")
async def admin_reserved_items(
    collection_address: Optional[str] = None,
    limit: int = Query(default=100, ge=1, le=1000),
    container: Container = Depends(get_container),
):
    collection_id = None
    if collection_address:
        collection_id = (await container.catalog.get_by_address(collection_address)).id
    items = await container.inventory.list_reserved(collection_id, limit)
    views: List[dict] = [ReservedItemView.model_validate(item, from_attributes=True).to_json() for item in items]
    return {"items": views, "count": len(views)}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=4000, reload=True)
