import pytest
from solders.pubkey import Pubkey

from chain_client import SignatureState
from conftest import CREATOR_WALLET, new_signature, new_wallet
from mint_errors import (
    ConflictError,
    InsufficientInventoryError,
    InvalidRequestError,
    NotFoundError,
    OnChainFailureError,
    TransientNetworkError,
)
from mint_schemas import MintStatus
from tx_builder import build_memo_ix, build_system_transfer_ix, mint_memo, unsigned_tx_b64

pytestmark = pytest.mark.anyio


async def test_request_mint_reserves_and_returns_transaction(container, make_collection, fetch_items):
    collection = await make_collection(items=5, price=1.0)
    buyer = new_wallet()

    record = await container.pipeline.request_mint("order-0001", collection.collection_mint_address, buyer, 2)

    assert record.status == MintStatus.TRANSACTION_READY
    assert record.response.transaction
    assert record.response.nft_ids == record.request.nft_ids
    assert record.request.reservation_token == record.response.reservation_token
    assert record.response.total_cost == pytest.approx(2 * 0.95 + 2 * 0.05 + 0.0125)

    reserved = [item for item in await fetch_items(collection.id) if item.owner_wallet == buyer]
    assert sorted(item.id for item in reserved) == sorted(record.request.nft_ids)


async def test_replay_does_not_reserve_again(container, make_collection):
    collection = await make_collection(items=5)
    buyer = new_wallet()
    first = await container.pipeline.request_mint("order-0002", collection.collection_mint_address, buyer, 2)
    again = await container.pipeline.request_mint("order-0002", collection.collection_mint_address, buyer, 2)

    assert again.request.reservation_token == first.request.reservation_token
    assert again.response.transaction == first.response.transaction
    stock = await container.inventory.stock(collection.id)
    assert stock["reserved"] == 2


async def test_replay_with_other_quantity_conflicts(container, make_collection):
    collection = await make_collection(items=5)
    buyer = new_wallet()
    await container.pipeline.request_mint("order-0003", collection.collection_mint_address, buyer, 1)
    with pytest.raises(ConflictError):
        await container.pipeline.request_mint("order-0003", collection.collection_mint_address, buyer, 2)


async def test_quantity_over_limit_is_rejected(container, make_collection):
    collection = await make_collection(items=30)
    with pytest.raises(InvalidRequestError):
        await container.pipeline.request_mint("order-0004", collection.collection_mint_address, new_wallet(), 21)
    assert await container.ledger.find("order-0004") is None


async def test_invalid_wallet_is_rejected_before_recording(container, make_collection):
    collection = await make_collection(items=3)
    with pytest.raises(InvalidRequestError):
        await container.pipeline.request_mint("order-0005", collection.collection_mint_address, "nope", 1)
    assert await container.ledger.find("order-0005") is None


async def test_insufficient_inventory_fails_and_releases(container, make_collection, fetch_items):
    collection = await make_collection(items=1)
    with pytest.raises(InsufficientInventoryError):
        await container.pipeline.request_mint("order-0006", collection.collection_mint_address, new_wallet(), 3)

    record = await container.ledger.get("order-0006")
    assert record.status == MintStatus.FAILED
    assert record.response.error == "Not enough NFTs available"
    items = await fetch_items(collection.id)
    assert all(item.owner_wallet is None for item in items)


async def test_unknown_collection_marks_request_failed(container):
    with pytest.raises(NotFoundError):
        await container.pipeline.request_mint("order-0007", new_wallet(), new_wallet(), 1)
    record = await container.ledger.get("order-0007")
    assert record.status == MintStatus.FAILED


async def test_blockhash_outage_keeps_request_pending(container, make_collection, chain, fetch_items):
    collection = await make_collection(items=3)
    chain.fail_blockhash = True
    with pytest.raises(TransientNetworkError):
        await container.pipeline.request_mint("order-0008", collection.collection_mint_address, new_wallet(), 2)

    record = await container.ledger.get("order-0008")
    assert record.status == MintStatus.PENDING
    items = await fetch_items(collection.id)
    assert all(item.owner_wallet is None for item in items)


async def test_submit_confirmed_signature_mints(container, make_collection, chain, fetch_items):
    collection = await make_collection(items=4)
    buyer = new_wallet()
    record = await container.pipeline.request_mint("order-0009", collection.collection_mint_address, buyer, 2)
    sig = chain.pay(record.response.transaction)

    confirmed = await container.pipeline.submit_signature("order-0009", sig)

    assert confirmed.status == MintStatus.CONFIRMED
    assert confirmed.response.minted_count == 2
    assert confirmed.response.transaction_signature == sig
    minted = {item.id for item in await fetch_items(collection.id) if item.minted}
    assert minted == set(record.request.nft_ids)

    again = await container.pipeline.submit_signature("order-0009", sig)
    assert again.status == MintStatus.CONFIRMED


async def test_submit_failed_signature_releases(container, make_collection, chain, fetch_items):
    collection = await make_collection(items=2)
    await container.pipeline.request_mint("order-0010", collection.collection_mint_address, new_wallet(), 2)
    sig = new_signature()
    chain.states[sig] = SignatureState.FAILED

    record = await container.pipeline.submit_signature("order-0010", sig)

    assert record.status == MintStatus.FAILED
    assert record.response.error == "Transaction failed on-chain"
    items = await fetch_items(collection.id)
    assert all(item.owner_wallet is None and not item.minted for item in items)


async def test_submit_while_processing_waits(container, make_collection, chain):
    collection = await make_collection(items=2)
    await container.pipeline.request_mint("order-0011", collection.collection_mint_address, new_wallet(), 1)
    sig = new_signature()
    chain.states[sig] = SignatureState.PROCESSING

    record = await container.pipeline.submit_signature("order-0011", sig)
    assert record.status == MintStatus.TRANSACTION_READY
    assert record.request.transaction_signature == sig


async def test_submit_rejects_second_signature(container, make_collection):
    collection = await make_collection(items=2)
    await container.pipeline.request_mint("order-0012", collection.collection_mint_address, new_wallet(), 1)
    await container.pipeline.submit_signature("order-0012", new_signature())
    with pytest.raises(ConflictError):
        await container.pipeline.submit_signature("order-0012", new_signature())


async def test_submit_before_transaction_is_ready(container, make_collection, chain):
    collection = await make_collection(items=2)
    chain.fail_blockhash = True
    with pytest.raises(TransientNetworkError):
        await container.pipeline.request_mint("order-0013", collection.collection_mint_address, new_wallet(), 1)
    with pytest.raises(ConflictError):
        await container.pipeline.submit_signature("order-0013", new_signature())


async def test_submit_rejects_malformed_signature(container):
    with pytest.raises(OnChainFailureError):
        await container.pipeline.submit_signature("order-0014", "not-a-signature")


async def test_fail_never_overrides_confirmed(container, make_collection, chain):
    collection = await make_collection(items=1)
    record = await container.pipeline.request_mint("order-0015", collection.collection_mint_address, new_wallet(), 1)
    sig = chain.pay(record.response.transaction)
    await container.pipeline.submit_signature("order-0015", sig)

    await container.pipeline.fail("order-0015", "late failure")
    record = await container.ledger.get("order-0015")
    assert record.status == MintStatus.CONFIRMED


async def test_signature_of_another_request_is_rejected(container, make_collection, chain, fetch_items):
    collection = await make_collection(items=4)
    first = await container.pipeline.request_mint("order-0016", collection.collection_mint_address, new_wallet(), 1)
    sig = chain.pay(first.response.transaction)
    assert (await container.pipeline.submit_signature("order-0016", sig)).status == MintStatus.CONFIRMED

    second = await container.pipeline.request_mint("order-0017", collection.collection_mint_address, new_wallet(), 1)
    with pytest.raises(ConflictError, match="Signature already used by another mint request"):
        await container.pipeline.submit_signature("order-0017", sig)

    record = await container.ledger.get("order-0017")
    assert record.status == MintStatus.TRANSACTION_READY
    assert record.request.transaction_signature is None
    items = {item.id: item for item in await fetch_items(collection.id)}
    assert not any(items[item_id].minted for item_id in second.request.nft_ids)


async def test_signature_pending_on_another_request_is_rejected(container, make_collection, chain):
    collection = await make_collection(items=4)
    first = await container.pipeline.request_mint("order-0018", collection.collection_mint_address, new_wallet(), 1)
    sig = chain.pay(first.response.transaction, SignatureState.PROCESSING)
    await container.pipeline.submit_signature("order-0018", sig)

    await container.pipeline.request_mint("order-0019", collection.collection_mint_address, new_wallet(), 1)
    with pytest.raises(ConflictError):
        await container.pipeline.submit_signature("order-0019", sig)


async def test_confirmed_payment_with_wrong_amounts_fails_and_releases(container, make_collection, chain, fetch_items):
    collection = await make_collection(items=3, price=1.0)
    buyer = new_wallet()
    address = collection.collection_mint_address
    await container.pipeline.request_mint("order-0020", address, buyer, 2)

    payer = Pubkey.from_string(buyer)
    underpaid = unsigned_tx_b64(
        payer,
        chain.blockhash,
        [
            build_system_transfer_ix(payer, Pubkey.from_string(CREATOR_WALLET), 1_000),
            build_memo_ix(payer, mint_memo(2, collection.name, address)),
        ],
    )
    sig = chain.pay(underpaid)

    record = await container.pipeline.submit_signature("order-0020", sig)

    assert record.status == MintStatus.FAILED
    assert record.response.error == "Payment does not match the mint request"
    assert record.response.details.startswith("missing transfer of")
    items = await fetch_items(collection.id)
    assert all(item.owner_wallet is None and not item.minted for item in items)


async def test_payment_from_another_wallet_is_not_accepted(container, make_collection, chain, fetch_items):
    collection = await make_collection(items=3)
    address = collection.collection_mint_address
    await container.pipeline.request_mint("order-0021", address, new_wallet(), 1)
    someone_else = await container.builder.build_payment_transaction(address, new_wallet(), 1)
    sig = chain.pay(someone_else.transaction)

    record = await container.pipeline.submit_signature("order-0021", sig)

    assert record.status == MintStatus.FAILED
    assert record.response.details.startswith("fee payer")
    assert not any(item.minted for item in await fetch_items(collection.id))


async def test_confirmed_payment_not_retrievable_yet_is_deferred(container, make_collection, chain):
    collection = await make_collection(items=2)
    await container.pipeline.request_mint("order-0022", collection.collection_mint_address, new_wallet(), 1)
    sig = new_signature()
    chain.states[sig] = SignatureState.CONFIRMED

    record = await container.pipeline.submit_signature("order-0022", sig)
    assert record.status == MintStatus.TRANSACTION_READY
    assert record.request.transaction_signature == sig


async def test_phase_mint_limit_counts_held_items(container, make_collection, clock):
    collection = await make_collection(items=6)
    address = collection.collection_mint_address
    await container.catalog.add_phase(collection.id, "Public", "public", 1.0, clock.now - 10, mint_limit=2)
    buyer = new_wallet()
    await container.pipeline.request_mint("order-0023", address, buyer, 2)

    with pytest.raises(InvalidRequestError, match="Exceeds mint limit of 2 per wallet"):
        await container.pipeline.request_mint("order-0024", address, buyer, 1)
    record = await container.ledger.get("order-0024")
    assert record.status == MintStatus.FAILED
    assert record.response.error == "Exceeds mint limit of 2 per wallet"

    other = await container.pipeline.request_mint("order-0025", address, new_wallet(), 2)
    assert other.status == MintStatus.TRANSACTION_READY

    # An expired reservation no longer counts against the wallet.
    clock.advance(601)
    again = await container.pipeline.request_mint("order-0026", address, buyer, 2)
    assert again.status == MintStatus.TRANSACTION_READY


async def test_minted_items_count_against_the_mint_limit(container, make_collection, chain, clock):
    collection = await make_collection(items=6)
    address = collection.collection_mint_address
    await container.catalog.add_phase(collection.id, "Public", "public", 1.0, clock.now - 10, mint_limit=1)
    buyer = new_wallet()
    record = await container.pipeline.request_mint("order-0027", address, buyer, 1)
    await container.pipeline.submit_signature("order-0027", chain.pay(record.response.transaction))

    clock.advance(3600)
    with pytest.raises(InvalidRequestError):
        await container.pipeline.request_mint("order-0028", address, buyer, 1)
