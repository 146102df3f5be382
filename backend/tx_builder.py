import base64
import logging
import math
from dataclasses import dataclass
from typing import List, Optional, Tuple

from solders.hash import Hash
from solders.instruction import AccountMeta, Instruction
from solders.message import MessageV0
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import VersionedTransaction

from mint_errors import InvalidRequestError, MintPipelineError
from mint_schemas import FeeBreakdownView

logger = logging.getLogger("mintpad.tx_builder")

SYS_PROGRAM_ID = Pubkey.from_string("11111111111111111111111111111111")
MEMO_PROGRAM_ID = Pubkey.from_string("MemoSq4gqABAXKb96qnH8TysNcWxMyWCqXgDLGmfcHr")
LAMPORTS_PER_SOL = 1_000_000_000


def to_pubkey(value: str, label: str = "address") -> Pubkey:
    try:
        return Pubkey.from_string(value)
    except Exception as exc:  # noqa: BLE001
        raise InvalidRequestError(f"Invalid {label}: {value}") from exc


def sol_to_lamports(amount: float) -> int:
    return int(math.floor(amount * LAMPORTS_PER_SOL + 1e-6)) if amount > 0 else 0


def build_system_transfer_ix(sender: Pubkey, recipient: Pubkey, lamports: int) -> Instruction:
    # SystemProgram transfer: instruction = 2 (u32 LE) + lamports (u64 LE)
    data = (2).to_bytes(4, "little") + lamports.to_bytes(8, "little")
    accounts = [
        AccountMeta(pubkey=sender, is_signer=True, is_writable=True),
        AccountMeta(pubkey=recipient, is_signer=False, is_writable=True),
    ]
    return Instruction(program_id=SYS_PROGRAM_ID, data=data, accounts=accounts)


def build_memo_ix(signer: Pubkey, text: str) -> Instruction:
    accounts = [AccountMeta(pubkey=signer, is_signer=True, is_writable=False)]
    return Instruction(program_id=MEMO_PROGRAM_ID, data=text.encode("utf-8"), accounts=accounts)


def mint_memo(quantity: int, collection_name: str, collection_address: str) -> str:
    noun = "NFT" if quantity == 1 else "NFTs"
    return f"Mint {quantity} {noun} from {collection_name} ({collection_address})"


@dataclass(frozen=True)
class PaymentSummary:
    fee_payer: str
    transfers: List[Tuple[str, str, int]]  # (source, recipient, lamports)
    memos: List[str]


def summarize_payment(tx: VersionedTransaction) -> PaymentSummary:
    """System transfers and memos of a landed transaction, with account indices resolved."""
    message = tx.message
    keys = [str(key) for key in message.account_keys]
    transfers: List[Tuple[str, str, int]] = []
    memos: List[str] = []
    for ix in message.instructions:
        program = keys[ix.program_id_index]
        data = bytes(ix.data)
        if program == str(SYS_PROGRAM_ID) and len(data) == 12 and int.from_bytes(data[:4], "little") == 2:
            transfers.append((keys[ix.accounts[0]], keys[ix.accounts[1]], int.from_bytes(data[4:], "little")))
        elif program == str(MEMO_PROGRAM_ID):
            memos.append(data.decode("utf-8", errors="replace"))
    return PaymentSummary(fee_payer=keys[0], transfers=transfers, memos=memos)


def unsigned_tx_b64(payer: Pubkey, blockhash: str, ixs: List[Instruction]) -> str:
    """Serialize an unsigned v0 transaction; every required signature slot is left zeroed."""
    message = MessageV0.try_compile(payer, ixs, [], Hash.from_string(blockhash))
    signatures = [Signature.default()] * message.header.num_required_signatures
    tx = VersionedTransaction.populate(message, signatures)
    return base64.b64encode(bytes(tx)).decode()


@dataclass(frozen=True)
class FeeBreakdown:
    unit_price: float
    quantity: int
    nft_price: float
    creator_share: float
    platform_share: float
    platform_fee: float

    @property
    def total(self) -> float:
        return self.creator_share + self.platform_share + self.platform_fee

    def to_view(self) -> FeeBreakdownView:
        return FeeBreakdownView(
            unit_price=self.unit_price,
            quantity=self.quantity,
            nft_price=self.nft_price,
            creator_share=self.creator_share,
            platform_share=self.platform_share,
            platform_fee=self.platform_fee,
            total=self.total,
        )


def compute_fee_breakdown(
    unit_price: float,
    quantity: int,
    platform_fee_native: float,
    creator_share_pct: float,
    platform_share_pct: float,
) -> FeeBreakdown:
    nft_price = unit_price * quantity
    return FeeBreakdown(
        unit_price=unit_price,
        quantity=quantity,
        nft_price=nft_price,
        creator_share=nft_price * creator_share_pct,
        platform_share=nft_price * platform_share_pct,
        platform_fee=platform_fee_native,
    )


@dataclass(frozen=True)
class PaymentTransaction:
    transaction: str  # base64, unsigned, buyer pays fees
    breakdown: FeeBreakdown
    blockhash: str

    @property
    def expected_total(self) -> float:
        return self.breakdown.total


class PaymentTransactionBuilder:
    """Builds the buyer's payment: creator share, platform share, flat platform fee and a memo."""

    def __init__(
        self,
        catalog,
        oracle,
        chain,
        *,
        platform_wallet: Optional[str],
        platform_fee_usd: float = 1.25,
        creator_share_pct: float = 0.95,
        platform_share_pct: float = 0.05,
    ):
        self.catalog = catalog
        self.oracle = oracle
        self.chain = chain
        self.platform_wallet = platform_wallet
        self.platform_fee_usd = platform_fee_usd
        self.creator_share_pct = creator_share_pct
        self.platform_share_pct = platform_share_pct

    async def fee_breakdown(self, unit_price: float, quantity: int) -> FeeBreakdown:
        platform_fee_native = await self.oracle.usd_to_native(self.platform_fee_usd)
        return compute_fee_breakdown(
            unit_price, quantity, platform_fee_native, self.creator_share_pct, self.platform_share_pct
        )

    @staticmethod
    def _transfer_plan(creator: Pubkey, platform: Pubkey, breakdown) -> List[Tuple[Pubkey, int]]:
        # Zero-lamport transfers are left out.
        plan = []
        for recipient, amount in (
            (creator, breakdown.creator_share),
            (platform, breakdown.platform_share),
            (platform, breakdown.platform_fee),
        ):
            lamports = sol_to_lamports(amount)
            if lamports > 0:
                plan.append((recipient, lamports))
        return plan

    async def verify_payment(
        self,
        collection_address: str,
        buyer_wallet: str,
        quantity: int,
        breakdown: FeeBreakdownView,
        tx: VersionedTransaction,
    ) -> Optional[str]:
        """Return why ``tx`` is not the payment built for this request, or None when it is.

        The buyer must pay the fees and every planned transfer must appear with
        its exact amount, along with the memo. Extra instructions added by the
        wallet (compute budget, priority fees) are allowed.
        """
        if not self.platform_wallet:
            raise MintPipelineError("PLATFORM_WALLET is not configured")
        collection = await self.catalog.get_by_address(collection_address)
        creator = to_pubkey(collection.creator_wallet, "creator wallet")
        platform = to_pubkey(self.platform_wallet, "platform wallet")
        summary = summarize_payment(tx)
        if summary.fee_payer != buyer_wallet:
            return f"fee payer {summary.fee_payer} is not the buyer"
        remaining = list(summary.transfers)
        for recipient, lamports in self._transfer_plan(creator, platform, breakdown):
            wanted = (buyer_wallet, str(recipient), lamports)
            if wanted not in remaining:
                return f"missing transfer of {lamports} lamports to {recipient}"
            remaining.remove(wanted)
        if mint_memo(quantity, collection.name, collection_address) not in summary.memos:
            return "memo does not match the mint request"
        return None

    async def build_payment_transaction(
        self,
        collection_address: str,
        buyer_wallet: str,
        quantity: int,
        unit_price_override: Optional[float] = None,
    ) -> PaymentTransaction:
        if not self.platform_wallet:
            raise MintPipelineError("PLATFORM_WALLET is not configured")
        collection = await self.catalog.get_by_address(collection_address)
        buyer = to_pubkey(buyer_wallet, "buyer wallet")
        creator = to_pubkey(collection.creator_wallet, "creator wallet")
        platform = to_pubkey(self.platform_wallet, "platform wallet")

        if unit_price_override is not None:
            unit_price = float(unit_price_override)
        else:
            unit_price = await self.catalog.resolve_unit_price(collection, buyer_wallet)
        breakdown = await self.fee_breakdown(unit_price, quantity)

        ixs: List[Instruction] = [
            build_system_transfer_ix(buyer, recipient, lamports)
            for recipient, lamports in self._transfer_plan(creator, platform, breakdown)
        ]
        ixs.append(build_memo_ix(buyer, mint_memo(quantity, collection.name, collection_address)))

        blockhash = await self.chain.get_latest_blockhash()
        tx_b64 = unsigned_tx_b64(buyer, blockhash, ixs)
        logger.info(
            "payment_tx_built collection=%s buyer=%s quantity=%s unit_price=%s total=%.9f",
            collection_address,
            buyer_wallet,
            quantity,
            unit_price,
            breakdown.total,
        )
        return PaymentTransaction(transaction=tx_b64, breakdown=breakdown, blockhash=blockhash)
