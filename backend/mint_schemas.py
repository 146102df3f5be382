from __future__ import annotations

from enum import Enum
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel


class MintStatus(str, Enum):
    PENDING = "pending"
    TRANSACTION_READY = "transaction_ready"
    CONFIRMED = "confirmed"
    FAILED = "failed"

    @property
    def rank(self) -> int:
        return _STATUS_RANK[self]

    @property
    def is_terminal(self) -> bool:
        return self in (MintStatus.CONFIRMED, MintStatus.FAILED)


_STATUS_RANK = {
    MintStatus.PENDING: 0,
    MintStatus.TRANSACTION_READY: 1,
    MintStatus.CONFIRMED: 2,
    MintStatus.FAILED: 2,
}


def can_transition(current: MintStatus, target: MintStatus) -> bool:
    """Transitions only move forward; ``failed`` is reachable from anywhere.

    ``confirmed`` never changes again. A ``failed`` record may still be promoted
    to ``confirmed`` when its payment turns out to have landed on-chain.
    """
    if current == MintStatus.CONFIRMED:
        return target == MintStatus.CONFIRMED
    if target == MintStatus.FAILED:
        return True
    if current == MintStatus.FAILED:
        return target == MintStatus.CONFIRMED
    return target.rank >= current.rank


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class FeeBreakdownView(CamelModel):
    unit_price: float
    quantity: int
    nft_price: float
    creator_share: float
    platform_share: float
    platform_fee: float
    total: float


class MintRequestBody(CamelModel):
    """Persisted ``request_body``; fields are only ever added as the flow progresses."""

    collection_address: str
    buyer_wallet: str
    quantity: int = Field(ge=1)
    nft_ids: List[str] = Field(default_factory=list)
    reservation_token: Optional[str] = None
    transaction_signature: Optional[str] = None
    breakdown: Optional[FeeBreakdownView] = None  # amounts the payment transaction was built with

    def same_intent(self, other: "MintRequestBody") -> bool:
        return (
            self.collection_address == other.collection_address
            and self.buyer_wallet == other.buyer_wallet
            and self.quantity == other.quantity
        )


class MintedNft(CamelModel):
    id: str
    name: str
    image: Optional[str] = None
    address: Optional[str] = None


class PendingResponse(CamelModel):
    status: Literal["pending"] = "pending"
    success: bool = True
    message: str = "Mint request accepted"


class TransactionReadyResponse(CamelModel):
    status: Literal["transaction_ready"] = "transaction_ready"
    success: bool = True
    message: str = "Transaction ready for signing"
    transaction: str
    nft_ids: List[str]
    reservation_token: str
    total_cost: float
    breakdown: FeeBreakdownView


class ConfirmedResponse(CamelModel):
    status: Literal["confirmed"] = "confirmed"
    success: bool = True
    message: str = "Mint confirmed successfully"
    minted_count: int
    minted_nfts: List[MintedNft] = Field(default_factory=list)
    transaction_signature: Optional[str] = None


class FailedResponse(CamelModel):
    status: Literal["failed"] = "failed"
    success: bool = False
    error: str
    details: Optional[str] = None


MintResponseBody = Annotated[
    Union[PendingResponse, TransactionReadyResponse, ConfirmedResponse, FailedResponse],
    Field(discriminator="status"),
]
_RESPONSE_ADAPTER: TypeAdapter = TypeAdapter(MintResponseBody)


def parse_response_body(raw: Optional[dict]) -> Optional[MintResponseBody]:
    if not raw:
        return None
    return _RESPONSE_ADAPTER.validate_python(raw)


class MintRequestRecord(BaseModel):
    idempotency_key: str
    status: MintStatus
    request: MintRequestBody
    response: Optional[MintResponseBody] = None
    created_at: float
    updated_at: float

    def to_view(self) -> dict:
        view = {
            "success": self.status != MintStatus.FAILED,
            "idempotencyKey": self.idempotency_key,
            "status": self.status.value,
            "request": self.request.to_json(),
        }
        if self.response is not None:
            view["response"] = self.response.to_json()
            if isinstance(self.response, FailedResponse):
                view["error"] = self.response.error
        return view


# HTTP payloads


class CreateMintRequest(CamelModel):
    idempotency_key: str = Field(min_length=8, max_length=255)
    collection_address: str
    buyer_wallet: str
    quantity: int = Field(default=1, ge=1)


class SubmitSignatureRequest(CamelModel):
    transaction_signature: str


class ReleaseReservationRequest(CamelModel):
    reservation_token: str


class PriceView(CamelModel):
    sol_price: float
    usd_to_native: float
    platform_fee_usd: float
    platform_fee_native: float
    cached: bool


class StockView(CamelModel):
    collection_address: str
    total_supply: int
    available: int
    reserved: int
    minted: int


class ReservedItemView(CamelModel):
    id: str
    collection_id: str
    item_index: int
    owner_wallet: Optional[str] = None
    reservation_token: Optional[str] = None
    updated_at: float
