import logging
import time
from typing import Callable, Optional

from chain_client import SignatureState, parse_signature
from mint_errors import (
    AssetCreationError,
    ConflictError,
    InsufficientInventoryError,
    InvalidRequestError,
    InvalidTransitionError,
    MintPipelineError,
    PersistenceError,
    TransientNetworkError,
)
from mint_schemas import FailedResponse, MintRequestBody, MintRequestRecord, MintStatus, TransactionReadyResponse
from price_oracle import ExchangeRate
from tx_builder import to_pubkey

logger = logging.getLogger("mintpad.pipeline")


class MintPipeline:
    """Drives one mint request through reserve, build, settle.

    Shared by the buyer-facing HTTP routes and the reconciliation sweeper so
    both paths apply the same compensation rules.
    """

    def __init__(
        self,
        ledger,
        inventory,
        catalog,
        builder,
        chain,
        oracle,
        *,
        asset_creator=None,
        platform_fee_usd: float = 1.25,
        max_quantity: int = 20,
        confirmation_timeout: float = 30.0,
        not_found_grace_seconds: float = 300,
        clock: Callable[[], float] = time.time,
    ):
        self.ledger = ledger
        self.inventory = inventory
        self.catalog = catalog
        self.builder = builder
        self.chain = chain
        self.oracle = oracle
        self.asset_creator = asset_creator
        self.platform_fee_usd = platform_fee_usd
        self.max_quantity = max_quantity
        self.confirmation_timeout = confirmation_timeout
        self.not_found_grace_seconds = not_found_grace_seconds
        self._clock = clock

    async def fail(self, idempotency_key: str, error: str, details: Optional[str] = None) -> None:
        """Record a terminal failure; a request that already confirmed is left alone."""
        try:
            await self.ledger.update_status(
                idempotency_key, MintStatus.FAILED, FailedResponse(error=error, details=details)
            )
        except InvalidTransitionError:
            logger.warning("mint_fail_ignored key=%s error=%s", idempotency_key, error)
            return
        logger.warning("mint_request_failed key=%s error=%s details=%s", idempotency_key, error, details)

    async def request_mint(
        self, idempotency_key: str, collection_address: str, buyer_wallet: str, quantity: int
    ) -> MintRequestRecord:
        if quantity > self.max_quantity:
            raise InvalidRequestError(f"Quantity exceeds the per-request limit of {self.max_quantity}")
        to_pubkey(buyer_wallet, "buyer wallet")
        body = MintRequestBody(collection_address=collection_address, buyer_wallet=buyer_wallet, quantity=quantity)
        record, created = await self.ledger.create(idempotency_key, body)
        if not created:
            # A retry observes the original attempt and never reserves again.
            return record
        return await self.prepare_transaction(record)

    async def prepare_transaction(
        self, record: MintRequestRecord, unit_price_override: Optional[float] = None
    ) -> MintRequestRecord:
        """Reserve items and build the payment transaction for a ``pending`` request.

        Any failure after the reservation releases it before the error leaves
        this method. A transient chain error leaves the request ``pending`` so
        the sweeper can build it again; every other error marks it ``failed``.
        """
        key = record.idempotency_key
        req = record.request
        try:
            collection = await self.catalog.get_by_address(req.collection_address)
        except MintPipelineError as exc:
            await self.fail(key, exc.message, exc.details)
            raise

        phase = await self.catalog.active_phase(collection, req.buyer_wallet)
        if phase is not None and phase.mint_limit:
            held = await self.inventory.count_held(collection.id, req.buyer_wallet)
            if held + req.quantity > phase.mint_limit:
                err = InvalidRequestError(
                    f"Exceeds mint limit of {phase.mint_limit} per wallet",
                    details=f"phase={phase.name} held={held} requested={req.quantity}",
                )
                await self.fail(key, err.message, err.details)
                raise err

        reservation = await self.inventory.reserve_nfts_atomic(collection.id, req.quantity, req.buyer_wallet)
        token = reservation.reservation_token
        if reservation.count < req.quantity:
            await self.inventory.release_reserved_items(token)
            err = InsufficientInventoryError(req.quantity, reservation.count)
            logger.warning(
                "mint_under_reserved key=%s requested=%s reserved=%s", key, req.quantity, reservation.count
            )
            await self.fail(key, err.message, err.details)
            raise err

        try:
            payment = await self.builder.build_payment_transaction(
                req.collection_address, req.buyer_wallet, reservation.count, unit_price_override
            )
        except TransientNetworkError:
            await self.inventory.release_reserved_items(token)
            raise
        except Exception as exc:
            await self.inventory.release_reserved_items(token)
            message = exc.message if isinstance(exc, MintPipelineError) else f"Failed to build transaction: {exc}"
            await self.fail(key, message)
            raise

        response = TransactionReadyResponse(
            transaction=payment.transaction,
            nft_ids=reservation.item_ids,
            reservation_token=token,
            total_cost=payment.expected_total,
            breakdown=payment.breakdown.to_view(),
        )
        try:
            return await self.ledger.update_status(
                key,
                MintStatus.TRANSACTION_READY,
                response,
                request_updates={
                    "nftIds": reservation.item_ids,
                    "reservationToken": token,
                    "breakdown": payment.breakdown.to_view().to_json(),
                },
            )
        except Exception as exc:
            await self.inventory.release_reserved_items(token)
            await self.fail(key, "Failed to save payment transaction", str(exc))
            if isinstance(exc, MintPipelineError):
                raise
            raise PersistenceError("Failed to save payment transaction", details=str(exc)) from exc

    async def submit_signature(self, idempotency_key: str, transaction_signature: str) -> MintRequestRecord:
        """Attach the buyer's signature and settle right away if the chain already has an answer."""
        parse_signature(transaction_signature)
        record = await self.ledger.get(idempotency_key)
        if record.status == MintStatus.CONFIRMED:
            return record
        if record.status == MintStatus.PENDING or not record.request.reservation_token:
            raise ConflictError("Payment transaction has not been prepared for this request")
        record = await self.ledger.attach_signature(idempotency_key, transaction_signature)
        # A paid reservation must not age out while the payment lands.
        await self.inventory.touch_reservation(record.request.reservation_token)
        try:
            state = await self.chain.wait_for_confirmation(transaction_signature, self.confirmation_timeout)
        except TransientNetworkError as exc:
            logger.warning("mint_confirmation_deferred key=%s error=%s", idempotency_key, exc)
            return record
        if state not in (SignatureState.CONFIRMED, SignatureState.FAILED):
            logger.info("mint_confirmation_pending key=%s state=%s", idempotency_key, state.value)
            return record
        rate = await self.oracle.get_current_rate()
        try:
            return await self.settle_payment(record, rate)
        except TransientNetworkError as exc:
            logger.warning("mint_settle_deferred key=%s error=%s", idempotency_key, exc)
            return await self.ledger.get(idempotency_key)

    async def settle_payment(self, record: MintRequestRecord, rate: ExchangeRate) -> MintRequestRecord:
        """Resolve a request whose buyer signature is known.

        Raises ``TransientNetworkError`` when the answer is not final yet; the
        caller keeps the request as it is and tries again later.
        """
        key = record.idempotency_key
        req = record.request
        sig = req.transaction_signature
        if not sig:
            raise ConflictError("No transaction signature recorded for this request")
        if record.status == MintStatus.CONFIRMED:
            return record

        state = await self.chain.get_signature_state(sig)
        if state == SignatureState.NOT_FOUND and self._clock() - record.updated_at < self.not_found_grace_seconds:
            raise TransientNetworkError(f"Transaction {sig} not visible yet")
        if state == SignatureState.PROCESSING:
            raise TransientNetworkError(f"Transaction {sig} not confirmed yet")
        if state in (SignatureState.FAILED, SignatureState.NOT_FOUND):
            released = await self.inventory.release_reserved_items(req.reservation_token)
            error = "Transaction failed on-chain" if state == SignatureState.FAILED else "Transaction not found on-chain"
            logger.warning("mint_payment_failed key=%s sig=%s state=%s released=%s", key, sig, state.value, released)
            if record.status != MintStatus.FAILED:
                await self.fail(key, error, f"sig={sig}")
            return await self.ledger.get(key)

        mismatch = await self._verify_payment(record)
        if mismatch is not None:
            released = await self.inventory.release_reserved_items(req.reservation_token)
            logger.warning("mint_payment_mismatch key=%s sig=%s reason=%s released=%s", key, sig, mismatch, released)
            if record.status != MintStatus.FAILED:
                await self.fail(key, "Payment does not match the mint request", mismatch)
            return await self.ledger.get(key)

        await self.inventory.touch_reservation(req.reservation_token)
        await self._create_assets(record)
        result = await self.inventory.confirm_mint_atomic(
            req.collection_address,
            req.nft_ids,
            req.buyer_wallet,
            sig,
            req.reservation_token,
            self.platform_fee_usd,
            rate.native_to_usd,
            key,
        )
        if not result.success:
            await self.fail(key, result.error or "Mint confirmation failed", f"sig={sig}")
        return await self.ledger.get(key)

    async def _verify_payment(self, record: MintRequestRecord) -> Optional[str]:
        req = record.request
        if req.breakdown is None:
            return "no payment breakdown recorded for this request"
        tx = await self.chain.get_transaction(req.transaction_signature)
        if tx is None:
            raise TransientNetworkError(f"Transaction {req.transaction_signature} not retrievable yet")
        return await self.builder.verify_payment(
            req.collection_address, req.buyer_wallet, req.quantity, req.breakdown, tx
        )

    async def _create_assets(self, record: MintRequestRecord) -> None:
        if self.asset_creator is None:
            return
        req = record.request
        wanted = set(req.nft_ids)
        items = [
            item
            for item in await self.inventory.reserved_items(req.reservation_token)
            if item.id in wanted and not item.minted and item.nft_address is None
        ]
        if not items:
            return
        result = await self.asset_creator.create_assets(
            req.collection_address, req.buyer_wallet, items, on_sent=self.inventory.record_asset_sent
        )
        await self.inventory.record_asset_addresses(result.addresses)
        if not result.complete:
            raise AssetCreationError(
                f"Asset creation stopped: {result.error}",
                created=len(result.addresses),
                remaining=len(result.failed_item_ids),
            )
