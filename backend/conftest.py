import base64
from typing import Dict, List, Optional

import pytest
from solders.hash import Hash
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import VersionedTransaction
from sqlmodel import select

from app_config import Settings
from asset_service import AssetCreationResult
from chain_client import SignatureState, parse_signature
from db_models import Item, MintTransaction, init_db, session_factory
from main import build_container
from mint_errors import TransientNetworkError
from price_oracle import ExchangeRate

PLATFORM_WALLET = str(Pubkey.new_unique())
CREATOR_WALLET = str(Pubkey.new_unique())
START_TS = 1_700_000_000.0


class FakeClock:
    def __init__(self, start: float = START_TS):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeChain:
    def __init__(self):
        self.states: Dict[str, SignatureState] = {}
        self.blockhash = str(Hash.default())
        self.fail_blockhash = False
        self.status_calls: List[str] = []
        self.transactions: Dict[str, VersionedTransaction] = {}
        self.blockhash_valid = True
        self.send_state = SignatureState.CONFIRMED
        self.sent: List[str] = []

    def pay(self, tx_b64: str, state: SignatureState = SignatureState.CONFIRMED) -> str:
        """Land a (buyer-signed) copy of ``tx_b64`` under a fresh signature."""
        sig = new_signature()
        self.transactions[sig] = VersionedTransaction.from_bytes(base64.b64decode(tx_b64))
        self.states[sig] = state
        return sig

    async def get_latest_blockhash(self) -> str:
        if self.fail_blockhash:
            raise TransientNetworkError("Failed to fetch blockhash: connection refused")
        return self.blockhash

    async def get_signature_state(self, signature: str) -> SignatureState:
        parse_signature(signature)
        self.status_calls.append(signature)
        return self.states.get(signature, SignatureState.NOT_FOUND)

    async def wait_for_confirmation(self, signature: str, timeout_sec: float = 30) -> SignatureState:
        return await self.get_signature_state(signature)

    async def get_transaction(self, signature: str) -> Optional[VersionedTransaction]:
        parse_signature(signature)
        return self.transactions.get(signature)

    async def is_blockhash_valid(self, blockhash: str) -> bool:
        return self.blockhash_valid

    async def send_transaction(self, tx: VersionedTransaction) -> str:
        sig = str(tx.signatures[0])
        self.sent.append(sig)
        self.states[sig] = self.send_state
        return sig

    async def close(self) -> None:
        return None


class FakeOracle:
    def __init__(self, sol_price: float = 100.0):
        self.sol_price = sol_price

    async def get_current_rate(self) -> ExchangeRate:
        if self.sol_price <= 0:
            return ExchangeRate(native_to_usd=0.0, usd_to_native=0.0, fallback=True)
        return ExchangeRate.from_sol_price(self.sol_price)

    async def usd_to_native(self, usd_amount: float) -> float:
        rate = await self.get_current_rate()
        return usd_amount * rate.usd_to_native


class FakeAssetCreator:
    """Creates fake addresses; stops after ``fail_after`` assets in total when set."""

    def __init__(self, fail_after: Optional[int] = None):
        self.fail_after = fail_after
        self.created = 0
        self.calls: List[List[str]] = []

    async def create_assets(self, collection_address, buyer_wallet, items, on_sent=None) -> AssetCreationResult:
        self.calls.append([item.id for item in items])
        result = AssetCreationResult()
        for idx, item in enumerate(items):
            if self.fail_after is not None and self.created >= self.fail_after:
                result.failed_item_ids = [i.id for i in items[idx:]]
                result.error = "rpc unavailable"
                break
            self.created += 1
            result.addresses[item.id] = str(Pubkey.new_unique())
            result.signatures.append(str(Signature.new_unique()))
        return result


def new_wallet() -> str:
    return str(Pubkey.new_unique())


def new_signature() -> str:
    return str(Signature.new_unique())


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def chain():
    return FakeChain()


@pytest.fixture
def oracle():
    return FakeOracle(100.0)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'mintpad-test.db'}",
        platform_wallet=PLATFORM_WALLET,
        admin_keypair_path=None,
        reconcile_enabled=False,
    )


@pytest.fixture
async def container_factory(settings, clock, chain, oracle):
    built = []

    async def _build(**overrides):
        container = build_container(
            overrides.pop("settings", settings), clock=clock, chain=chain, oracle=oracle, **overrides
        )
        await init_db(container.engine)
        built.append(container)
        return container

    yield _build
    for container in built:
        await container.engine.dispose()


@pytest.fixture
async def container(container_factory):
    return await container_factory()


@pytest.fixture
def make_collection(container):
    async def _make(items: int = 10, price: float = 1.0, name: str = "Test Drop", target=None):
        target = target or container
        address = new_wallet()
        collection = await target.catalog.create_collection(name, address, CREATOR_WALLET, price)
        await target.catalog.add_items(
            collection.id,
            [{"name": f"{name} #{i}", "metadata_uri": f"https://example.com/{i}.json"} for i in range(items)],
        )
        return await target.catalog.get(collection.id)

    return _make


@pytest.fixture
def fetch_items(container):
    async def _fetch(collection_id: str, target=None) -> List[Item]:
        target = target or container
        async with session_factory(target.engine)() as session:
            rows = await session.exec(
                select(Item).where(Item.collection_id == collection_id).order_by(Item.item_index)
            )
            return list(rows.all())

    return _fetch


@pytest.fixture
def fetch_transactions(container):
    async def _fetch(signature: str) -> List[MintTransaction]:
        async with session_factory(container.engine)() as session:
            rows = await session.exec(
                select(MintTransaction).where(MintTransaction.transaction_signature == signature)
            )
            return list(rows.all())

    return _fetch
