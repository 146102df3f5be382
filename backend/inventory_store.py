import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from sqlalchemy import and_, func, or_, update
from sqlmodel import select

from db_models import Collection, Item, MintRequest, MintTransaction
from mint_schemas import ConfirmedResponse, FailedResponse, MintedNft, MintStatus

logger = logging.getLogger("mintpad.inventory")

RESERVATION_EXPIRY_SECONDS = 600


@dataclass
class ReservationResult:
    items: List[Item]
    reservation_token: str

    @property
    def count(self) -> int:
        return len(self.items)

    @property
    def item_ids(self) -> List[str]:
        return [item.id for item in self.items]


@dataclass
class ConfirmMintResult:
    success: bool
    minted_count: int = 0
    minted_nfts: List[MintedNft] = field(default_factory=list)
    message: Optional[str] = None
    error: Optional[str] = None


def _minted_view(items: List[Item]) -> List[MintedNft]:
    return [MintedNft(id=i.id, name=i.name, image=i.image_uri, address=i.nft_address) for i in items]


def _paid_tokens():
    """Reservation tokens of requests whose payment signature is known and has not failed."""
    return select(MintRequest.reservation_token).where(
        MintRequest.reservation_token.is_not(None),
        MintRequest.transaction_signature.is_not(None),
        MintRequest.status != MintStatus.FAILED.value,
    )


def _not_awaiting_payment():
    return or_(Item.reservation_token.is_(None), Item.reservation_token.not_in(_paid_tokens()))


class InventoryStore:
    """Item reservation state machine.

    Every mutation of ``Item`` goes through one of the procedures below, each a
    single transaction, so no caller ever reads an item and then writes it.
    An item is available (``minted`` false, no owner), reserved (``minted``
    false, ``owner_wallet`` set, token set) or minted (``minted`` true).
    ``minted`` is the only flag that means minted.
    """

    def __init__(
        self,
        sessions,
        *,
        expiry_seconds: float = RESERVATION_EXPIRY_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self._sessions = sessions
        self.expiry_seconds = expiry_seconds
        self._clock = clock

    def _claimable(self, collection_id: str, cutoff: float):
        return and_(
            Item.collection_id == collection_id,
            Item.minted == False,  # noqa: E712
            Item.nft_address.is_(None),
            Item.asset_signature.is_(None),
            or_(Item.owner_wallet.is_(None), and_(Item.updated_at <= cutoff, _not_awaiting_payment())),
        )

    async def reserve_nfts_atomic(
        self, collection_id: str, quantity: int, buyer_wallet: str = "system"
    ) -> ReservationResult:
        """Reserve up to ``quantity`` items in ascending index order under one new token.

        May return fewer items than asked for; the caller decides whether that
        is a failure and releases the token if so.
        """
        if quantity < 1:
            raise ValueError("quantity must be at least 1")
        now = self._clock()
        cutoff = now - self.expiry_seconds
        token = str(uuid.uuid4())
        claimable = self._claimable(collection_id, cutoff)
        picked = (
            select(Item.id)
            .where(claimable)
            .order_by(Item.item_index)
            .limit(quantity)
            .with_for_update(skip_locked=True)
        )
        stmt = (
            update(Item)
            .where(Item.id.in_(picked), claimable)
            .values(owner_wallet=buyer_wallet, reservation_token=token, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        async with self._sessions() as session:
            await session.exec(stmt)
            rows = await session.exec(
                select(Item).where(Item.reservation_token == token).order_by(Item.item_index)
            )
            items = list(rows.all())
            await session.commit()
        logger.info(
            "inventory_reserved collection=%s requested=%s reserved=%s token=%s",
            collection_id,
            quantity,
            len(items),
            token,
        )
        return ReservationResult(items=items, reservation_token=token)

    async def release_reserved_items(self, reservation_token: str) -> int:
        """Return every unminted item under ``reservation_token`` to the pool. Safe to repeat."""
        if not reservation_token:
            return 0
        now = self._clock()
        stmt = (
            update(Item)
            .where(
                Item.reservation_token == reservation_token,
                Item.minted == False,  # noqa: E712
                Item.nft_address.is_(None),
                Item.asset_signature.is_(None),
            )
            .values(owner_wallet=None, reservation_token=None, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        async with self._sessions() as session:
            result = await session.exec(stmt)
            await session.commit()
        released = result.rowcount or 0
        logger.info("inventory_released token=%s released=%s", reservation_token, released)
        return released

    async def release_expired_nft_reservations(self) -> int:
        now = self._clock()
        cutoff = now - self.expiry_seconds
        stmt = (
            update(Item)
            .where(
                Item.minted == False,  # noqa: E712
                Item.owner_wallet.is_not(None),
                Item.nft_address.is_(None),
                Item.updated_at <= cutoff,
                Item.asset_signature.is_(None),
                _not_awaiting_payment(),
            )
            .values(owner_wallet=None, reservation_token=None, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        async with self._sessions() as session:
            result = await session.exec(stmt)
            await session.commit()
        released = result.rowcount or 0
        if released:
            logger.info("inventory_expired_released released=%s cutoff=%s", released, cutoff)
        return released

    async def confirm_mint_atomic(
        self,
        collection_address: str,
        nft_ids: List[str],
        buyer_wallet: str,
        transaction_signature: str,
        reservation_token: str,
        platform_fee_usd: float,
        sol_price: float,
        idempotency_key: str,
    ) -> ConfirmMintResult:
        """Mark reserved items minted for a confirmed payment and confirm the mint request.

        Keyed on the (idempotency key, transaction signature) pair: a second
        call with the same pair changes nothing and reports the same
        ``minted_count``. A signature already settled for another request is
        refused.
        """
        now = self._clock()
        try:
            async with self._sessions() as session:
                return await self._confirm(
                    session,
                    now,
                    collection_address,
                    nft_ids,
                    buyer_wallet,
                    transaction_signature,
                    reservation_token,
                    platform_fee_usd,
                    sol_price,
                    idempotency_key,
                )
        except Exception as exc:  # noqa: BLE001
            logger.error(
                "confirm_mint_failed key=%s sig=%s error=%s", idempotency_key, transaction_signature, exc, exc_info=True
            )
            await self._mark_request_failed(idempotency_key, f"Failed to confirm mint: {exc}", now)
            return ConfirmMintResult(success=False, error=f"Failed to confirm mint: {exc}")

    async def _confirm(
        self,
        session,
        now: float,
        collection_address: str,
        nft_ids: List[str],
        buyer_wallet: str,
        transaction_signature: str,
        reservation_token: str,
        platform_fee_usd: float,
        sol_price: float,
        idempotency_key: str,
    ) -> ConfirmMintResult:
        collection = (
            await session.exec(select(Collection).where(Collection.collection_mint_address == collection_address))
        ).first()
        if not collection:
            return ConfirmMintResult(success=False, error="Collection not found")

        minted_by_sig = select(Item).where(Item.mint_signature == transaction_signature).order_by(Item.item_index)
        processed = (
            await session.exec(
                select(MintTransaction).where(MintTransaction.transaction_signature == transaction_signature)
            )
        ).first()
        claimed_by = (
            await session.exec(
                select(MintRequest.idempotency_key).where(
                    MintRequest.transaction_signature == transaction_signature,
                    MintRequest.idempotency_key != idempotency_key,
                )
            )
        ).first()
        if claimed_by or (processed is not None and processed.idempotency_key != idempotency_key):
            await session.rollback()
            logger.warning(
                "confirm_mint_signature_reused key=%s sig=%s owner=%s",
                idempotency_key,
                transaction_signature,
                claimed_by or processed.idempotency_key,
            )
            return ConfirmMintResult(success=False, error="Signature already used by another mint request")
        minted: List[Item] = []
        message = "Already processed"
        if processed is None:
            result = await session.exec(
                update(Item)
                .where(
                    Item.id.in_(nft_ids),
                    Item.collection_id == collection.id,
                    Item.minted == False,  # noqa: E712
                    Item.reservation_token == reservation_token,
                )
                .values(minted=True, owner_wallet=buyer_wallet, mint_signature=transaction_signature, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount:
                minted = list((await session.exec(minted_by_sig)).all())
                message = "Mint confirmed successfully"
                nft_price = float(collection.price or 0) * len(minted)
                platform_fee = platform_fee_usd / sol_price if sol_price > 0 else 0.0
                session.add(
                    MintTransaction(
                        collection_id=collection.id,
                        buyer_wallet=buyer_wallet,
                        transaction_signature=transaction_signature,
                        idempotency_key=idempotency_key,
                        quantity=len(minted),
                        nft_price=nft_price,
                        platform_fee=platform_fee,
                        total_paid=nft_price + platform_fee,
                        created_at=now,
                    )
                )
                total_minted = (
                    await session.exec(
                        select(func.count())
                        .select_from(Item)
                        .where(Item.collection_id == collection.id, Item.minted == True)  # noqa: E712
                    )
                ).one()
                collection.minted_count = total_minted
                if collection.total_supply and total_minted >= collection.total_supply and collection.status == "active":
                    collection.status = "completed"
                collection.updated_at = now
                session.add(collection)
        if not minted:
            # Either a replay or a concurrent finalize already won the rows.
            minted = list((await session.exec(minted_by_sig)).all())
            if not minted:
                await session.rollback()
                return ConfirmMintResult(success=False, error="No reserved NFTs match this reservation")

        minted_nfts = _minted_view(minted)
        request = await session.get(MintRequest, idempotency_key)
        if request is not None:
            body = dict(request.request_body or {})
            body.setdefault("transactionSignature", transaction_signature)
            request.request_body = body
            request.transaction_signature = request.transaction_signature or transaction_signature
            request.status = MintStatus.CONFIRMED.value
            request.response_body = ConfirmedResponse(
                message=message,
                minted_count=len(minted),
                minted_nfts=minted_nfts,
                transaction_signature=transaction_signature,
            ).to_json()
            request.updated_at = now
            session.add(request)
        await session.commit()
        logger.info(
            "confirm_mint key=%s sig=%s minted=%s message=%s",
            idempotency_key,
            transaction_signature,
            len(minted),
            message,
        )
        return ConfirmMintResult(success=True, minted_count=len(minted), minted_nfts=minted_nfts, message=message)

    async def _mark_request_failed(self, idempotency_key: str, error: str, now: float) -> None:
        try:
            async with self._sessions() as session:
                request = await session.get(MintRequest, idempotency_key)
                if request is None or request.status == MintStatus.CONFIRMED.value:
                    return
                request.status = MintStatus.FAILED.value
                request.response_body = FailedResponse(error=error).to_json()
                request.updated_at = now
                session.add(request)
                await session.commit()
        except Exception as exc:  # noqa: BLE001
            logger.error("confirm_mint_mark_failed_error key=%s error=%s", idempotency_key, exc, exc_info=True)

    async def reserved_items(self, reservation_token: str) -> List[Item]:
        async with self._sessions() as session:
            rows = await session.exec(
                select(Item).where(Item.reservation_token == reservation_token).order_by(Item.item_index)
            )
            return list(rows.all())

    async def touch_reservation(self, reservation_token: str) -> int:
        """Restart the expiry window of a paid reservation while its assets are created."""
        if not reservation_token:
            return 0
        stmt = (
            update(Item)
            .where(
                Item.reservation_token == reservation_token,
                Item.minted == False,  # noqa: E712
                Item.owner_wallet.is_not(None),
            )
            .values(updated_at=self._clock())
            .execution_options(synchronize_session=False)
        )
        async with self._sessions() as session:
            result = await session.exec(stmt)
            await session.commit()
        return result.rowcount or 0

    async def record_asset_addresses(self, addresses: Dict[str, str]) -> None:
        if not addresses:
            return
        now = self._clock()
        async with self._sessions() as session:
            for item_id, address in addresses.items():
                await session.exec(
                    update(Item)
                    .where(Item.id == item_id, Item.nft_address.is_(None))
                    .values(nft_address=address, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
            await session.commit()

    async def record_asset_sent(self, item_id: str, address: str, signature: str, blockhash: str) -> None:
        """Journal an asset transaction before it is sent so a retry can look it up instead of minting again."""
        async with self._sessions() as session:
            await session.exec(
                update(Item)
                .where(Item.id == item_id, Item.nft_address.is_(None))
                .values(
                    asset_signature=signature,
                    asset_pending_address=address,
                    asset_blockhash=blockhash,
                    updated_at=self._clock(),
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()

    async def count_held(self, collection_id: str, wallet: str) -> int:
        """Items of a collection this wallet has minted or currently holds a live reservation on."""
        cutoff = self._clock() - self.expiry_seconds
        stmt = (
            select(func.count())
            .select_from(Item)
            .where(
                Item.collection_id == collection_id,
                Item.owner_wallet == wallet,
                or_(
                    Item.minted == True,  # noqa: E712
                    Item.updated_at > cutoff,
                    Item.nft_address.is_not(None),
                    Item.asset_signature.is_not(None),
                    Item.reservation_token.in_(_paid_tokens()),
                ),
            )
        )
        async with self._sessions() as session:
            return (await session.exec(stmt)).one()

    async def list_reserved(self, collection_id: Optional[str] = None, limit: int = 100) -> List[Item]:
        stmt = select(Item).where(Item.minted == False, Item.owner_wallet.is_not(None))  # noqa: E712
        if collection_id:
            stmt = stmt.where(Item.collection_id == collection_id)
        async with self._sessions() as session:
            rows = await session.exec(stmt.order_by(Item.updated_at).limit(limit))
            return list(rows.all())

    async def stock(self, collection_id: str) -> Dict[str, int]:
        cutoff = self._clock() - self.expiry_seconds

        def _count(*conds):
            return select(func.count()).select_from(Item).where(Item.collection_id == collection_id, *conds)

        async with self._sessions() as session:
            total = (await session.exec(_count())).one()
            minted = (await session.exec(_count(Item.minted == True))).one()  # noqa: E712
            reserved = (
                await session.exec(
                    _count(
                        Item.minted == False,  # noqa: E712
                        Item.owner_wallet.is_not(None),
                        or_(
                            Item.updated_at > cutoff,
                            Item.nft_address.is_not(None),
                            Item.asset_signature.is_not(None),
                            Item.reservation_token.in_(_paid_tokens()),
                        ),
                    )
                )
            ).one()
        return {"total": total, "minted": minted, "reserved": reserved, "available": total - minted - reserved}
