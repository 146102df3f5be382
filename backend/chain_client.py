import asyncio
import logging
import time
from enum import Enum
from typing import Optional

from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Confirmed
from solana.rpc.types import TxOpts
from solders.hash import Hash
from solders.signature import Signature
from solders.transaction import VersionedTransaction
from solders.transaction_status import TransactionConfirmationStatus

from mint_errors import OnChainFailureError, TransientNetworkError
from retry_policy import RetryPolicy

logger = logging.getLogger("mintpad.chain")


class SignatureState(str, Enum):
    CONFIRMED = "confirmed"
    FAILED = "failed"
    NOT_FOUND = "not_found"
    PROCESSING = "processing"  # seen but not yet at confirmed commitment


_CONFIRMED_LEVELS = (TransactionConfirmationStatus.Confirmed, TransactionConfirmationStatus.Finalized)


def parse_signature(signature: str) -> Signature:
    try:
        return Signature.from_string(signature)
    except Exception as exc:  # noqa: BLE001
        raise OnChainFailureError(f"Invalid transaction signature: {signature}") from exc


class ChainClient:
    """Thin async wrapper over the Solana RPC with every call behind the shared retry policy."""

    def __init__(self, client: AsyncClient, *, retry: Optional[RetryPolicy] = None, poll_seconds: float = 0.8):
        self._client = client
        self.retry = retry or RetryPolicy()
        self.poll_seconds = poll_seconds

    @classmethod
    def from_url(cls, rpc_url: str, **kwargs) -> "ChainClient":
        return cls(AsyncClient(rpc_url, commitment=Confirmed), **kwargs)

    async def close(self) -> None:
        await self._client.close()

    async def _latest_blockhash_once(self) -> str:
        try:
            resp = await self._client.get_latest_blockhash(commitment=Confirmed)
        except Exception as exc:  # noqa: BLE001
            raise TransientNetworkError(f"Failed to fetch blockhash: {exc}") from exc
        return str(resp.value.blockhash)

    async def get_latest_blockhash(self) -> str:
        return await self.retry.call(self._latest_blockhash_once, op="get_latest_blockhash")

    async def _signature_state_once(self, sig: Signature) -> SignatureState:
        try:
            resp = await self._client.get_signature_statuses([sig], search_transaction_history=True)
        except Exception as exc:  # noqa: BLE001
            raise TransientNetworkError(f"Failed to fetch signature status: {exc}") from exc
        status = resp.value[0] if resp.value else None
        if status is None:
            return SignatureState.NOT_FOUND
        if status.err is not None:
            return SignatureState.FAILED
        if status.confirmation_status in _CONFIRMED_LEVELS:
            return SignatureState.CONFIRMED
        return SignatureState.PROCESSING

    async def get_signature_state(self, signature: str) -> SignatureState:
        sig = parse_signature(signature)
        return await self.retry.call(self._signature_state_once, sig, op="get_signature_statuses")

    async def wait_for_confirmation(self, signature: str, timeout_sec: float = 30) -> SignatureState:
        """Poll until the signature is confirmed or failed; returns the last state seen at timeout."""
        start = time.monotonic()
        state = SignatureState.NOT_FOUND
        while True:
            state = await self.get_signature_state(signature)
            if state in (SignatureState.CONFIRMED, SignatureState.FAILED):
                return state
            if time.monotonic() - start >= timeout_sec:
                return state
            await asyncio.sleep(self.poll_seconds)

    async def _transaction_once(self, sig: Signature) -> Optional[VersionedTransaction]:
        try:
            resp = await self._client.get_transaction(
                sig, encoding="base64", commitment=Confirmed, max_supported_transaction_version=0
            )
        except Exception as exc:  # noqa: BLE001
            raise TransientNetworkError(f"Failed to fetch transaction: {exc}") from exc
        if resp.value is None:
            return None
        tx = resp.value.transaction.transaction
        if not isinstance(tx, VersionedTransaction):
            raise TransientNetworkError(f"Unexpected transaction encoding for {sig}")
        return tx

    async def get_transaction(self, signature: str) -> Optional[VersionedTransaction]:
        """The landed transaction for ``signature``, or None when the node does not have it."""
        sig = parse_signature(signature)
        return await self.retry.call(self._transaction_once, sig, op="get_transaction")

    async def _blockhash_valid_once(self, blockhash: str) -> bool:
        try:
            resp = await self._client.is_blockhash_valid(Hash.from_string(blockhash), commitment=Confirmed)
        except Exception as exc:  # noqa: BLE001
            raise TransientNetworkError(f"Failed to check blockhash: {exc}") from exc
        return bool(resp.value)

    async def is_blockhash_valid(self, blockhash: str) -> bool:
        return await self.retry.call(self._blockhash_valid_once, blockhash, op="is_blockhash_valid")

    async def send_transaction(self, tx: VersionedTransaction) -> str:
        try:
            resp = await self._client.send_transaction(
                tx, opts=TxOpts(skip_confirmation=True, preflight_commitment=Confirmed)
            )
        except Exception as exc:  # noqa: BLE001
            raise TransientNetworkError(f"Failed to send transaction: {exc}") from exc
        signature = str(resp.value)
        logger.info("chain_transaction_sent sig=%s", signature)
        return signature
