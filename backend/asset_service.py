import json
import logging
import os
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional, Protocol, Sequence

from borsh_construct import CStruct, Option, String, U8, Vec
from solders.hash import Hash
from solders.instruction import AccountMeta, Instruction
from solders.keypair import Keypair
from solders.message import MessageV0
from solders.pubkey import Pubkey
from solders.transaction import VersionedTransaction

from chain_client import SignatureState
from db_models import Item
from tx_builder import SYS_PROGRAM_ID, to_pubkey

logger = logging.getLogger("mintpad.assets")

# (item id, asset address, signature, blockhash), called before the transaction is sent.
AssetSentHook = Callable[[str, str, str, str], Awaitable[None]]

MPL_CORE_PROGRAM_ID = Pubkey.from_string("CoREENxT6tW1HoK8ypY1SxRMZTcVPm7R94rH4PZNhX7d")
CREATE_V1_DISCRIMINATOR = 0
DATA_STATE_ACCOUNT = 0

CreateV1Layout = CStruct(
    "data_state" / U8,
    "name" / String,
    "uri" / String,
    "plugins" / Option(Vec(U8)),
)


@dataclass
class AssetCreationResult:
    addresses: Dict[str, str] = field(default_factory=dict)  # item id -> asset address
    signatures: List[str] = field(default_factory=list)
    failed_item_ids: List[str] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def complete(self) -> bool:
        return not self.failed_item_ids


class AssetCreator(Protocol):
    async def create_assets(
        self,
        collection_address: str,
        buyer_wallet: str,
        items: Sequence[Item],
        on_sent: Optional[AssetSentHook] = None,
    ) -> AssetCreationResult:
        ...


def load_keypair(path: str) -> Keypair:
    if not os.path.exists(path):
        raise RuntimeError(f"Admin keypair file not found: {path}")
    with open(path, "r", encoding="utf-8") as fh:
        data = json.load(fh)
    if isinstance(data, list):
        secret_bytes = bytes(data)
    elif isinstance(data, dict) and "secretKey" in data:
        secret_bytes = bytes(data["secretKey"])
    else:
        raise RuntimeError("Unsupported admin keypair format")
    return Keypair.from_bytes(secret_bytes)


def encode_create_v1(name: str, uri: str) -> bytes:
    return bytes([CREATE_V1_DISCRIMINATOR]) + CreateV1Layout.build(
        {"data_state": DATA_STATE_ACCOUNT, "name": name, "uri": uri, "plugins": None}
    )


def build_create_v1_ix(
    asset: Pubkey,
    collection: Pubkey,
    authority: Pubkey,
    payer: Pubkey,
    owner: Pubkey,
    name: str,
    uri: str,
) -> Instruction:
    # Optional accounts left unset are filled with the program id.
    accounts = [
        AccountMeta(pubkey=asset, is_signer=True, is_writable=True),
        AccountMeta(pubkey=collection, is_signer=False, is_writable=True),
        AccountMeta(pubkey=authority, is_signer=True, is_writable=False),
        AccountMeta(pubkey=payer, is_signer=True, is_writable=True),
        AccountMeta(pubkey=owner, is_signer=False, is_writable=False),
        AccountMeta(pubkey=MPL_CORE_PROGRAM_ID, is_signer=False, is_writable=False),  # update_authority
        AccountMeta(pubkey=SYS_PROGRAM_ID, is_signer=False, is_writable=False),
        AccountMeta(pubkey=MPL_CORE_PROGRAM_ID, is_signer=False, is_writable=False),  # log_wrapper
    ]
    return Instruction(program_id=MPL_CORE_PROGRAM_ID, data=encode_create_v1(name, uri), accounts=accounts)


class MetaplexCoreAssetCreator:
    """Creates one Core asset per item, owned by the buyer, paid for and signed by the admin key."""

    def __init__(self, chain, admin: Keypair, *, confirmation_timeout: float = 30.0):
        self.chain = chain
        self.admin = admin
        self.confirmation_timeout = confirmation_timeout

    async def _resolve_sent(self, item: Item) -> Optional[tuple]:
        """Outcome of an asset transaction sent by an earlier attempt.

        Returns the recorded address when it landed and None when it can no
        longer land, so minting again is safe. Raises while it may still land.
        """
        if not item.asset_signature:
            return None
        state = await self.chain.wait_for_confirmation(item.asset_signature, self.confirmation_timeout)
        if state == SignatureState.CONFIRMED:
            logger.info("asset_recovered item=%s asset=%s sig=%s", item.id, item.asset_pending_address, item.asset_signature)
            return item.asset_pending_address, item.asset_signature
        if state == SignatureState.FAILED:
            return None
        if state == SignatureState.NOT_FOUND and not (
            item.asset_blockhash and await self.chain.is_blockhash_valid(item.asset_blockhash)
        ):
            return None
        raise RuntimeError(f"asset transaction {item.asset_signature} is still {state.value}")

    async def _create_one(
        self, collection: Pubkey, owner: Pubkey, item: Item, on_sent: Optional[AssetSentHook] = None
    ) -> tuple:
        sent = await self._resolve_sent(item)
        if sent is not None:
            return sent
        asset_kp = Keypair()
        ix = build_create_v1_ix(
            asset_kp.pubkey(),
            collection,
            self.admin.pubkey(),
            self.admin.pubkey(),
            owner,
            item.name,
            item.metadata_uri or "",
        )
        blockhash = await self.chain.get_latest_blockhash()
        message = MessageV0.try_compile(self.admin.pubkey(), [ix], [], Hash.from_string(blockhash))
        tx = VersionedTransaction(message, [self.admin, asset_kp])
        signature = str(tx.signatures[0])
        if on_sent is not None:
            await on_sent(item.id, str(asset_kp.pubkey()), signature, blockhash)
        await self.chain.send_transaction(tx)
        state = await self.chain.wait_for_confirmation(signature, self.confirmation_timeout)
        if state != SignatureState.CONFIRMED:
            raise RuntimeError(f"asset transaction {signature} ended as {state.value}")
        return str(asset_kp.pubkey()), signature

    async def create_assets(
        self,
        collection_address: str,
        buyer_wallet: str,
        items: Sequence[Item],
        on_sent: Optional[AssetSentHook] = None,
    ) -> AssetCreationResult:
        collection = to_pubkey(collection_address, "collection address")
        owner = to_pubkey(buyer_wallet, "buyer wallet")
        result = AssetCreationResult()
        for idx, item in enumerate(items):
            try:
                address, signature = await self._create_one(collection, owner, item, on_sent)
            except Exception as exc:  # noqa: BLE001
                # Assets already created stay valid; the rest is retried later.
                result.failed_item_ids = [i.id for i in items[idx:]]
                result.error = str(exc)
                logger.warning(
                    "asset_create_failed collection=%s item=%s created=%s remaining=%s error=%s",
                    collection_address,
                    item.id,
                    len(result.addresses),
                    len(result.failed_item_ids),
                    exc,
                )
                break
            result.addresses[item.id] = address
            result.signatures.append(signature)
            logger.info("asset_created collection=%s item=%s asset=%s sig=%s", collection_address, item.id, address, signature)
        return result
