import logging
import time
from typing import Callable, Iterable, List, Optional

from sqlalchemy import func
from sqlmodel import select

from db_models import Collection, Item, MintPhase, PHASE_TYPE_LABELS
from mint_errors import ConflictError, NotFoundError

logger = logging.getLogger("mintpad.catalog")

# Allowlisted phases outrank the public phase; og first.
PHASE_PRIORITY = {"og": 0, "whitelist": 1, "custom": 2, "public": 3}


def phase_is_active(phase: MintPhase, now: float) -> bool:
    if phase.start_time > now:
        return False
    return phase.end_time is None or phase.end_time > now


def phase_allows(phase: MintPhase, buyer_wallet: str) -> bool:
    if phase.phase_type == "public":
        return True
    return buyer_wallet in (phase.allowed_wallets or [])


def pick_phase(phases: Iterable[MintPhase], buyer_wallet: str, now: float) -> Optional[MintPhase]:
    eligible = [p for p in phases if phase_is_active(p, now) and phase_allows(p, buyer_wallet)]
    if not eligible:
        return None
    eligible.sort(key=lambda p: (PHASE_PRIORITY.get(p.phase_type, len(PHASE_PRIORITY)), p.start_time))
    return eligible[0]


class CollectionCatalog:
    def __init__(self, sessions, *, clock: Callable[[], float] = time.time):
        self._sessions = sessions
        self._clock = clock

    async def create_collection(
        self,
        name: str,
        collection_mint_address: str,
        creator_wallet: str,
        price: float = 0,
        status: str = "active",
    ) -> Collection:
        now = self._clock()
        async with self._sessions() as session:
            existing = (
                await session.exec(select(Collection).where(Collection.collection_mint_address == collection_mint_address))
            ).first()
            if existing:
                raise ConflictError(f"Collection {collection_mint_address} already exists")
            collection = Collection(
                name=name,
                collection_mint_address=collection_mint_address,
                creator_wallet=creator_wallet,
                price=price,
                status=status,
                created_at=now,
                updated_at=now,
            )
            session.add(collection)
            await session.commit()
            await session.refresh(collection)
        logger.info("collection_created address=%s name=%s price=%s", collection_mint_address, name, price)
        return collection

    async def add_items(self, collection_id: str, items: List[dict]) -> int:
        """Bulk-create unminted, unreserved items; indices continue after the current highest."""
        now = self._clock()
        async with self._sessions() as session:
            collection = await session.get(Collection, collection_id)
            if not collection:
                raise NotFoundError("Collection not found")
            max_index = (
                await session.exec(select(func.max(Item.item_index)).where(Item.collection_id == collection_id))
            ).first()
            next_index = 0 if max_index is None else max_index + 1
            for offset, raw in enumerate(items):
                session.add(
                    Item(
                        collection_id=collection_id,
                        name=raw.get("name") or f"{collection.name} #{next_index + offset}",
                        image_uri=raw.get("image_uri"),
                        metadata_uri=raw.get("metadata_uri"),
                        attributes=raw.get("attributes") or [],
                        item_index=next_index + offset,
                        created_at=now,
                        updated_at=now,
                    )
                )
            collection.total_supply = (collection.total_supply or 0) + len(items)
            collection.updated_at = now
            session.add(collection)
            await session.commit()
        logger.info("collection_items_added collection=%s count=%s", collection_id, len(items))
        return len(items)

    async def add_phase(
        self,
        collection_id: str,
        name: str,
        phase_type: str,
        price: float,
        start_time: float,
        end_time: Optional[float] = None,
        allowed_wallets: Optional[List[str]] = None,
        mint_limit: Optional[int] = None,
    ) -> MintPhase:
        if phase_type not in PHASE_TYPE_LABELS:
            raise ValueError(f"Unknown phase type {phase_type}")
        phase = MintPhase(
            collection_id=collection_id,
            name=name,
            phase_type=phase_type,
            price=price,
            start_time=start_time,
            end_time=end_time,
            allowed_wallets=allowed_wallets or [],
            mint_limit=mint_limit,
        )
        async with self._sessions() as session:
            session.add(phase)
            await session.commit()
            await session.refresh(phase)
        return phase

    async def get(self, collection_id: str) -> Collection:
        async with self._sessions() as session:
            collection = await session.get(Collection, collection_id)
        if not collection:
            raise NotFoundError("Collection not found")
        return collection

    async def get_by_address(self, collection_address: str) -> Collection:
        async with self._sessions() as session:
            collection = (
                await session.exec(select(Collection).where(Collection.collection_mint_address == collection_address))
            ).first()
        if not collection:
            raise NotFoundError(f"Collection {collection_address} not found")
        return collection

    async def list_phases(self, collection_id: str) -> List[MintPhase]:
        async with self._sessions() as session:
            rows = await session.exec(
                select(MintPhase).where(MintPhase.collection_id == collection_id).order_by(MintPhase.start_time)
            )
            return list(rows.all())

    async def active_phase(self, collection: Collection, buyer_wallet: str) -> Optional[MintPhase]:
        return pick_phase(await self.list_phases(collection.id), buyer_wallet, self._clock())

    async def resolve_unit_price(self, collection: Collection, buyer_wallet: str) -> float:
        """Best active phase for the buyer, else the collection base price, else free."""
        phase = await self.active_phase(collection, buyer_wallet)
        if phase is not None:
            return float(phase.price or 0)
        return float(collection.price or 0)
