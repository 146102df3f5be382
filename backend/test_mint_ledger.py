import pytest

from conftest import new_signature, new_wallet
from mint_errors import ConflictError, InvalidTransitionError, NotFoundError
from mint_schemas import (
    ConfirmedResponse,
    FailedResponse,
    MintRequestBody,
    MintStatus,
    PendingResponse,
    can_transition,
    parse_response_body,
)

pytestmark = pytest.mark.anyio


def _body(quantity=2, collection=None, buyer=None):
    return MintRequestBody(
        collection_address=collection or "Coll1111111111111111111111111111111111111111",
        buyer_wallet=buyer or "Buyer111111111111111111111111111111111111111",
        quantity=quantity,
    )


async def test_create_then_replay_returns_same_record(container):
    body = _body()
    record, created = await container.ledger.create("idem-0001", body)
    assert created
    assert record.status == MintStatus.PENDING

    replay, created_again = await container.ledger.create("idem-0001", _body())
    assert not created_again
    assert replay.idempotency_key == record.idempotency_key
    assert replay.created_at == record.created_at


async def test_replay_with_different_body_conflicts(container):
    await container.ledger.create("idem-0002", _body(quantity=2))
    with pytest.raises(ConflictError):
        await container.ledger.create("idem-0002", _body(quantity=3))


async def test_get_unknown_key(container):
    with pytest.raises(NotFoundError):
        await container.ledger.get("does-not-exist")
    assert await container.ledger.find("does-not-exist") is None


async def test_transitions_only_move_forward(container, clock):
    await container.ledger.create("idem-0003", _body())
    clock.advance(5)
    ready = await container.ledger.update_status("idem-0003", MintStatus.TRANSACTION_READY)
    assert ready.updated_at == clock.now

    with pytest.raises(InvalidTransitionError):
        await container.ledger.update_status("idem-0003", MintStatus.PENDING)

    await container.ledger.update_status(
        "idem-0003", MintStatus.CONFIRMED, ConfirmedResponse(minted_count=2)
    )
    with pytest.raises(InvalidTransitionError):
        await container.ledger.update_status("idem-0003", MintStatus.FAILED, FailedResponse(error="late"))
    record = await container.ledger.get("idem-0003")
    assert record.status == MintStatus.CONFIRMED


async def test_request_body_is_only_extended(container):
    await container.ledger.create("idem-0004", _body())
    await container.ledger.update_status(
        "idem-0004",
        MintStatus.TRANSACTION_READY,
        request_updates={"reservationToken": "tok-1", "nftIds": ["a", "b"]},
    )
    record = await container.ledger.update_status(
        "idem-0004",
        MintStatus.TRANSACTION_READY,
        request_updates={"reservationToken": "tok-2", "nftIds": ["c"]},
    )
    assert record.request.reservation_token == "tok-1"
    assert record.request.nft_ids == ["a", "b"]

    failed = await container.ledger.update_status("idem-0004", MintStatus.FAILED, FailedResponse(error="boom"))
    assert failed.request.reservation_token == "tok-1"
    assert failed.response.error == "boom"


async def test_attach_signature(container):
    await container.ledger.create("idem-0005", _body())
    await container.ledger.update_status("idem-0005", MintStatus.TRANSACTION_READY)
    sig = new_signature()

    record = await container.ledger.attach_signature("idem-0005", sig)
    assert record.request.transaction_signature == sig
    assert record.status == MintStatus.TRANSACTION_READY

    again = await container.ledger.attach_signature("idem-0005", sig)
    assert again.request.transaction_signature == sig
    with pytest.raises(ConflictError):
        await container.ledger.attach_signature("idem-0005", new_signature())


async def test_find_stale_or_failed(container, clock):
    await container.ledger.create("old-pending", _body())
    clock.advance(10)
    await container.ledger.create("old-failed", _body())
    await container.ledger.update_status("old-failed", MintStatus.FAILED, FailedResponse(error="x"))
    clock.advance(10)
    await container.ledger.create("old-confirmed", _body())
    await container.ledger.update_status("old-confirmed", MintStatus.CONFIRMED, ConfirmedResponse(minted_count=1))
    clock.advance(400)
    await container.ledger.create("fresh-pending", _body())

    stale = await container.ledger.find_stale_or_failed(clock.now - 300)
    assert [r.idempotency_key for r in stale] == ["old-pending", "old-failed"]

    recent_failures_only = await container.ledger.find_stale_or_failed(clock.now - 300, failed_since=clock.now - 60)
    assert [r.idempotency_key for r in recent_failures_only] == ["old-pending"]


async def test_response_body_round_trips_through_the_tagged_union(container):
    record, _ = await container.ledger.create("idem-0006", _body(buyer=new_wallet()))
    assert record.response is None
    updated = await container.ledger.update_status(
        "idem-0006", MintStatus.FAILED, FailedResponse(error="Not enough NFTs available", details="requested=2 reserved=1")
    )
    assert isinstance(updated.response, FailedResponse)
    view = updated.to_view()
    assert view["success"] is False
    assert view["error"] == "Not enough NFTs available"
    assert view["response"]["status"] == "failed"


def test_can_transition_table():
    assert can_transition(MintStatus.PENDING, MintStatus.TRANSACTION_READY)
    assert can_transition(MintStatus.PENDING, MintStatus.FAILED)
    assert can_transition(MintStatus.TRANSACTION_READY, MintStatus.CONFIRMED)
    assert can_transition(MintStatus.FAILED, MintStatus.CONFIRMED)
    assert not can_transition(MintStatus.TRANSACTION_READY, MintStatus.PENDING)
    assert not can_transition(MintStatus.FAILED, MintStatus.PENDING)
    assert not can_transition(MintStatus.FAILED, MintStatus.TRANSACTION_READY)
    assert not can_transition(MintStatus.CONFIRMED, MintStatus.FAILED)


def test_parse_response_body_picks_variant_by_status():
    assert parse_response_body(None) is None
    assert isinstance(parse_response_body(PendingResponse().to_json()), PendingResponse)
    confirmed = parse_response_body({"status": "confirmed", "success": True, "mintedCount": 3})
    assert isinstance(confirmed, ConfirmedResponse)
    assert confirmed.minted_count == 3
