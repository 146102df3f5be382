import logging
import time
from typing import Callable, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlmodel import select

from db_models import MintRequest, MintTransaction
from mint_errors import ConflictError, InvalidTransitionError, NotFoundError, PersistenceError
from mint_schemas import (
    MintRequestBody,
    MintRequestRecord,
    MintResponseBody,
    MintStatus,
    can_transition,
    parse_response_body,
)

logger = logging.getLogger("mintpad.ledger")

OPEN_STATUSES: Tuple[MintStatus, ...] = (
    MintStatus.PENDING,
    MintStatus.TRANSACTION_READY,
)


def to_record(row: MintRequest) -> MintRequestRecord:
    return MintRequestRecord(
        idempotency_key=row.idempotency_key,
        status=MintStatus(row.status),
        request=MintRequestBody.model_validate(row.request_body or {}),
        response=parse_response_body(row.response_body),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


class MintRequestStore:
    """Durable ledger of mint attempts keyed by idempotency key. No business logic lives here."""

    def __init__(self, sessions, *, clock: Callable[[], float] = time.time):
        self._sessions = sessions
        self._clock = clock

    async def create(self, idempotency_key: str, body: MintRequestBody) -> Tuple[MintRequestRecord, bool]:
        """Insert a ``pending`` record unless the key exists.

        Returns ``(record, created)``. Replaying a key with the same intent
        returns the existing record; a different body raises ``ConflictError``.
        """
        now = self._clock()
        row = MintRequest(
            idempotency_key=idempotency_key,
            request_body=body.to_json(),
            status=MintStatus.PENDING.value,
            created_at=now,
            updated_at=now,
        )
        try:
            async with self._sessions() as session:
                session.add(row)
                await session.commit()
        except IntegrityError:
            existing = await self.get(idempotency_key)
            if not existing.request.same_intent(body):
                raise ConflictError(
                    "Idempotency key already used for a different request",
                    details=f"key={idempotency_key}",
                )
            logger.info("mint_request_replayed key=%s status=%s", idempotency_key, existing.status.value)
            return existing, False
        logger.info(
            "mint_request_created key=%s collection=%s quantity=%s",
            idempotency_key,
            body.collection_address,
            body.quantity,
        )
        return to_record(row), True

    async def find(self, idempotency_key: str) -> Optional[MintRequestRecord]:
        async with self._sessions() as session:
            row = await session.get(MintRequest, idempotency_key)
        return to_record(row) if row else None

    async def get(self, idempotency_key: str) -> MintRequestRecord:
        record = await self.find(idempotency_key)
        if record is None:
            raise NotFoundError(f"Mint request {idempotency_key} not found")
        return record

    async def update_status(
        self,
        idempotency_key: str,
        status: MintStatus,
        response: Optional[MintResponseBody] = None,
        request_updates: Optional[dict] = None,
    ) -> MintRequestRecord:
        """Move a record forward.

        ``response`` replaces the stored response body. ``request_updates``
        only adds keys to the request body; existing values are kept.
        """
        try:
            async with self._sessions() as session:
                row = await session.get(MintRequest, idempotency_key)
                if row is None:
                    raise NotFoundError(f"Mint request {idempotency_key} not found")
                current = MintStatus(row.status)
                if not can_transition(current, status):
                    raise InvalidTransitionError(
                        f"Cannot move mint request from {current.value} to {status.value}",
                        details=f"key={idempotency_key}",
                    )
                if request_updates:
                    body = dict(row.request_body or {})
                    for key, value in request_updates.items():
                        if value is not None and body.get(key) in (None, [], ""):
                            body[key] = value
                    row.request_body = body
                    row.reservation_token = row.reservation_token or body.get("reservationToken")
                    row.transaction_signature = row.transaction_signature or body.get("transactionSignature")
                if response is not None:
                    row.response_body = response.to_json()
                row.status = status.value
                row.updated_at = self._clock()
                session.add(row)
                await session.commit()
                await session.refresh(row)
        except (NotFoundError, InvalidTransitionError):
            raise
        except Exception as exc:  # noqa: BLE001
            raise PersistenceError(f"Failed to update mint request {idempotency_key}", details=str(exc)) from exc
        logger.info("mint_request_status key=%s from=%s to=%s", idempotency_key, current.value, status.value)
        return to_record(row)

    async def attach_signature(self, idempotency_key: str, transaction_signature: str) -> MintRequestRecord:
        """Record the buyer's payment signature. One signature pays for one request only."""
        record = await self.get(idempotency_key)
        stored = record.request.transaction_signature
        if stored and stored != transaction_signature:
            raise ConflictError(
                "A different transaction signature is already recorded for this request",
                details=f"key={idempotency_key}",
            )
        if stored:
            return record
        async with self._sessions() as session:
            claimed_by = (
                await session.exec(
                    select(MintRequest.idempotency_key).where(
                        MintRequest.transaction_signature == transaction_signature,
                        MintRequest.idempotency_key != idempotency_key,
                    )
                )
            ).first()
            settled = (
                await session.exec(
                    select(MintTransaction).where(MintTransaction.transaction_signature == transaction_signature)
                )
            ).first()
        if claimed_by or (settled is not None and settled.idempotency_key != idempotency_key):
            raise ConflictError(
                "Signature already used by another mint request",
                details=f"key={idempotency_key} sig={transaction_signature}",
            )
        try:
            return await self.update_status(
                idempotency_key,
                record.status,
                request_updates={"transactionSignature": transaction_signature},
            )
        except PersistenceError as exc:
            if isinstance(exc.__cause__, IntegrityError):
                raise ConflictError(
                    "Signature already used by another mint request",
                    details=f"key={idempotency_key} sig={transaction_signature}",
                ) from exc
            raise

    async def find_stale_or_failed(
        self,
        older_than: float,
        limit: int = 100,
        failed_since: Optional[float] = None,
    ) -> List[MintRequestRecord]:
        """Non-confirmed records created before ``older_than``, oldest first.

        Open records and failed records are limited separately so a backlog of
        old failures cannot crowd out new work. ``failed_since`` drops failed
        records whose last update is older than that timestamp.
        """
        open_stmt = (
            select(MintRequest)
            .where(
                MintRequest.status.in_([s.value for s in OPEN_STATUSES]),
                MintRequest.created_at < older_than,
            )
            .order_by(MintRequest.created_at)
            .limit(limit)
        )
        failed_stmt = select(MintRequest).where(
            MintRequest.status == MintStatus.FAILED.value,
            MintRequest.created_at < older_than,
        )
        if failed_since is not None:
            failed_stmt = failed_stmt.where(MintRequest.updated_at >= failed_since)
        failed_stmt = failed_stmt.order_by(MintRequest.created_at).limit(limit)
        async with self._sessions() as session:
            rows = list((await session.exec(open_stmt)).all())
            rows.extend((await session.exec(failed_stmt)).all())
        rows.sort(key=lambda row: row.created_at)
        return [to_record(row) for row in rows]
