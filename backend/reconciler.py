import asyncio
import logging
import time
from dataclasses import asdict, dataclass, field
from typing import Callable, Dict, Optional

from mint_errors import MintPipelineError, TransientNetworkError
from mint_schemas import MintRequestRecord, MintStatus

logger = logging.getLogger("mintpad.reconciler")

_RECONCILER_TASK: Optional[asyncio.Task] = None


@dataclass
class SweepSummary:
    started_at: float
    finished_at: Optional[float] = None
    aborted: bool = False
    sol_price: float = 0.0
    examined: int = 0
    outcomes: Dict[str, int] = field(default_factory=dict)
    expired_released: int = 0

    def count(self, outcome: str) -> None:
        self.outcomes[outcome] = self.outcomes.get(outcome, 0) + 1

    def as_dict(self) -> dict:
        return asdict(self)


class ReconciliationSweeper:
    """Drives stale mint requests to a terminal state and recovers abandoned inventory.

    Records are handled one at a time. Whatever goes wrong with one record is
    logged and turned into a ``failed`` status; it never stops the sweep.
    """

    def __init__(
        self,
        ledger,
        inventory,
        catalog,
        pipeline,
        oracle,
        *,
        grace_seconds: float = 300,
        reservation_expiry_seconds: float = 600,
        batch_size: int = 100,
        failed_lookback_seconds: float = 86400,
        clock: Callable[[], float] = time.time,
    ):
        self.ledger = ledger
        self.inventory = inventory
        self.catalog = catalog
        self.pipeline = pipeline
        self.oracle = oracle
        self.grace_seconds = grace_seconds
        self.reservation_expiry_seconds = reservation_expiry_seconds
        self.batch_size = batch_size
        self.failed_lookback_seconds = failed_lookback_seconds
        self._clock = clock

    async def run_once(self) -> SweepSummary:
        summary = SweepSummary(started_at=self._clock())
        rate = await self.oracle.get_current_rate()
        summary.sol_price = rate.native_to_usd
        if rate.native_to_usd <= 0:
            summary.aborted = True
            summary.finished_at = self._clock()
            logger.warning("reconcile_aborted reason=invalid_rate sol_price=%s", rate.native_to_usd)
            return summary

        records = await self.ledger.find_stale_or_failed(
            summary.started_at - self.grace_seconds,
            self.batch_size,
            failed_since=summary.started_at - self.failed_lookback_seconds,
        )
        for record in records:
            summary.examined += 1
            try:
                outcome = await self._process(record, rate)
            except Exception as exc:  # noqa: BLE001
                logger.error(
                    "reconcile_record_failed key=%s status=%s error=%s",
                    record.idempotency_key,
                    record.status.value,
                    exc,
                    exc_info=True,
                )
                await self._fail_record(record, exc)
                outcome = "failed"
            summary.count(outcome)

        summary.expired_released = await self.inventory.release_expired_nft_reservations()
        summary.finished_at = self._clock()
        logger.info(
            "reconcile_done examined=%s outcomes=%s expired_released=%s",
            summary.examined,
            summary.outcomes,
            summary.expired_released,
        )
        return summary

    async def _process(self, record: MintRequestRecord, rate) -> str:
        key = record.idempotency_key
        req = record.request
        if req.transaction_signature:
            try:
                updated = await self.pipeline.settle_payment(record, rate)
            except TransientNetworkError as exc:
                logger.info("reconcile_deferred key=%s error=%s", key, exc)
                return "deferred"
            return updated.status.value

        if record.status == MintStatus.PENDING:
            collection = await self.catalog.get_by_address(req.collection_address)
            try:
                await self.pipeline.prepare_transaction(record, unit_price_override=collection.price)
            except TransientNetworkError:
                raise
            except MintPipelineError as exc:
                # Already marked failed and released by the pipeline.
                logger.warning("reconcile_prepare_failed key=%s error=%s", key, exc.message)
                return "failed"
            return "prepared"

        if record.status == MintStatus.TRANSACTION_READY:
            if self._clock() - record.updated_at < self.reservation_expiry_seconds:
                return "awaiting_signature"
            released = await self.inventory.release_reserved_items(req.reservation_token)
            await self.pipeline.fail(key, "Transaction expired before signature", f"released={released}")
            return "expired"

        logger.info("reconcile_skip key=%s status=%s reason=no_signature", key, record.status.value)
        return "skipped"

    async def _fail_record(self, record: MintRequestRecord, exc: Exception) -> None:
        message = exc.message if isinstance(exc, MintPipelineError) else str(exc)
        try:
            if record.request.reservation_token and not record.request.transaction_signature:
                await self.inventory.release_reserved_items(record.request.reservation_token)
            await self.pipeline.fail(record.idempotency_key, message or exc.__class__.__name__)
        except Exception as inner:  # noqa: BLE001
            logger.error(
                "reconcile_mark_failed_error key=%s error=%s", record.idempotency_key, inner, exc_info=True
            )


def start_reconciler(sweeper: ReconciliationSweeper, interval_seconds: float) -> Optional[asyncio.Task]:
    """Run ``run_once`` on a fixed interval inside the running event loop."""
    global _RECONCILER_TASK
    if _RECONCILER_TASK is not None and not _RECONCILER_TASK.done():
        return _RECONCILER_TASK
    interval = max(30.0, float(interval_seconds))

    async def _loop():
        while True:
            try:
                await sweeper.run_once()
            except Exception as exc:  # noqa: BLE001
                logger.warning("reconcile_tick_failed error=%s", exc, exc_info=True)
            await asyncio.sleep(interval)

    _RECONCILER_TASK = asyncio.get_running_loop().create_task(_loop())
    logger.info("reconciler_started interval=%s", interval)
    return _RECONCILER_TASK


def stop_reconciler() -> None:
    global _RECONCILER_TASK
    if _RECONCILER_TASK is not None:
        _RECONCILER_TASK.cancel()
        _RECONCILER_TASK = None
