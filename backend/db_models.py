import time
import uuid
from typing import List, Optional

from sqlalchemy import JSON, Column, Index, event
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlmodel import Field, SQLModel
from sqlmodel.ext.asyncio.session import AsyncSession

COLLECTION_STATUS_LABELS = ["draft", "active", "completed", "archived"]
PHASE_TYPE_LABELS = ["og", "whitelist", "public", "custom"]
MINT_STATUS_LABELS = ["pending", "transaction_ready", "confirmed", "failed"]


def _new_id() -> str:
    return str(uuid.uuid4())


class Collection(SQLModel, table=True):
    id: str = Field(default_factory=_new_id, primary_key=True)
    name: str
    collection_mint_address: str = Field(index=True, unique=True)
    creator_wallet: str
    price: float = Field(default=0)  # native units per item
    total_supply: int = Field(default=0)
    minted_count: int = Field(default=0)
    status: str = Field(default="draft")
    created_at: float = Field(default_factory=lambda: time.time())
    updated_at: float = Field(default_factory=lambda: time.time())


class MintPhase(SQLModel, table=True):
    id: str = Field(default_factory=_new_id, primary_key=True)
    collection_id: str = Field(index=True, foreign_key="collection.id")
    name: str
    phase_type: str = Field(default="public")
    price: float = Field(default=0)
    start_time: float
    end_time: Optional[float] = None
    mint_limit: Optional[int] = None
    allowed_wallets: List[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))


class Item(SQLModel, table=True):
    __table_args__ = (Index("ix_item_collection_minted_index", "collection_id", "minted", "item_index"),)

    id: str = Field(default_factory=_new_id, primary_key=True)
    collection_id: str = Field(index=True, foreign_key="collection.id")
    name: str
    image_uri: Optional[str] = None
    metadata_uri: Optional[str] = None
    attributes: List[dict] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    item_index: int = Field(default=0)
    minted: bool = Field(default=False)
    owner_wallet: Optional[str] = None
    mint_signature: Optional[str] = Field(default=None, index=True)
    reservation_token: Optional[str] = Field(default=None, index=True)
    nft_address: Optional[str] = None
    # Set before an asset transaction is sent; nft_address is filled once it confirms.
    asset_signature: Optional[str] = None
    asset_pending_address: Optional[str] = None
    asset_blockhash: Optional[str] = None
    created_at: float = Field(default_factory=lambda: time.time())
    updated_at: float = Field(default_factory=lambda: time.time())


class MintRequest(SQLModel, table=True):
    __table_args__ = (Index("ix_mintrequest_status_created", "status", "created_at"),)

    idempotency_key: str = Field(primary_key=True)
    request_body: dict = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    status: str = Field(default="pending")
    response_body: Optional[dict] = Field(default=None, sa_column=Column(JSON, nullable=True))
    # Mirrors of request_body keys that other tables are joined on.
    reservation_token: Optional[str] = Field(default=None, index=True)
    transaction_signature: Optional[str] = Field(default=None, unique=True, index=True)
    created_at: float = Field(default_factory=lambda: time.time())
    updated_at: float = Field(default_factory=lambda: time.time())


class MintTransaction(SQLModel, table=True):
    id: str = Field(default_factory=_new_id, primary_key=True)
    collection_id: str = Field(index=True)
    buyer_wallet: str
    transaction_signature: str = Field(unique=True, index=True)
    idempotency_key: Optional[str] = None
    quantity: int = Field(default=0)
    nft_price: float = Field(default=0)
    platform_fee: float = Field(default=0)
    total_paid: float = Field(default=0)
    status: str = Field(default="completed")
    created_at: float = Field(default_factory=lambda: time.time())


def create_engine_from_url(database_url: str) -> AsyncEngine:
    engine = create_async_engine(database_url, echo=False)
    if engine.dialect.name == "sqlite":
        # SQLite has no row locks; take the write lock at BEGIN so concurrent
        # reservations serialize instead of failing with "database is locked".
        @event.listens_for(engine.sync_engine, "connect")
        def _sqlite_connect(dbapi_connection, connection_record):
            dbapi_connection.isolation_level = None

        @event.listens_for(engine.sync_engine, "begin")
        def _sqlite_begin(conn):
            conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


def session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def init_db(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
