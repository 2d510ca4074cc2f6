"""
Payment settlement processor.

Consumes provider-neutral ``SettlementEvent`` objects and applies them to the
square ledger. Each provider transaction is a small state machine keyed by
``(provider, external_id)``:

    pending -> completed
    pending -> voided
    pending | completed -> refunded

The transaction record is the only deduplication mechanism. Webhooks are
delivered at least once and in any order, so every handler first checks the
record's status and treats an event the record already reflects as a
duplicate.

Precedence:
    - Refunded / Denied always win, including over a completed sale: the
      squares are released.
    - Expired / Voided never override a completed sale. The squares stay
      purchased and the event is reported as an anomaly for operator review.
"""
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

import structlog

from gridplay.config import Settings, get_settings
from gridplay.core.boards import BoardService
from gridplay.core.clock import Clock, SystemClock
from gridplay.core.exceptions import (
    DuplicateEvent,
    GridPlayError,
    InvalidTransition,
    SquareNotFound,
    TransactionConflict,
)
from gridplay.core.ledger import SquareLedger
from gridplay.database.store import GridStore
from gridplay.domain import (
    Board,
    PaymentProvider,
    PaymentTransaction,
    Purchased,
    Reserved,
    SettlementEvent,
    SettlementEventType,
    SettlementOutcome,
    Square,
    SquareStatus,
    TransactionEvent,
    TransactionStatus,
)
from gridplay.monitoring import metrics, settlement_context

logger = structlog.get_logger(__name__)

FINAL_STATUSES = frozenset(
    {TransactionStatus.COMPLETED, TransactionStatus.REFUNDED, TransactionStatus.VOIDED}
)
REVERSED_STATUSES = frozenset({TransactionStatus.REFUNDED, TransactionStatus.VOIDED})

# (recorded, incoming) final statuses an incoming handler may overwrite after
# losing the record race.
SUPERSEDES = frozenset(
    {
        (TransactionStatus.COMPLETED, TransactionStatus.REFUNDED),
        (TransactionStatus.VOIDED, TransactionStatus.COMPLETED),
    }
)


@dataclass
class SettlementResult:
    """What happened to one settlement event."""

    outcome: SettlementOutcome
    transaction: Optional[PaymentTransaction] = None
    squares: List[Square] = field(default_factory=list)
    error: Optional[GridPlayError] = None
    board: Optional[Board] = None

    @property
    def applied(self) -> bool:
        return self.outcome is SettlementOutcome.APPLIED

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "outcome": self.outcome.value,
            "square_ids": [square.id for square in self.squares],
        }
        if self.transaction is not None:
            result["external_id"] = self.transaction.external_id
            result["transaction_status"] = self.transaction.status.value
        if self.error is not None:
            result["error"] = self.error.to_dict()
        if self.board is not None:
            result["board_status"] = self.board.status.value
        return result


class SettlementProcessor:
    """
    Applies payment events to the square ledger, idempotently.

    Handlers never raise for duplicates or ledger disagreements; those come
    back as ``duplicate`` and ``anomaly`` results. Store errors propagate so
    the transport can retry the delivery.
    """

    def __init__(
        self,
        store: GridStore,
        ledger: Optional[SquareLedger] = None,
        boards: Optional[BoardService] = None,
        clock: Optional[Clock] = None,
        settings: Optional[Settings] = None,
    ):
        self.store = store
        self.settings = settings or get_settings()
        self.clock = clock or SystemClock()
        self.ledger = ledger or SquareLedger(store, clock=self.clock, settings=self.settings)
        self.boards = boards or BoardService(store, clock=self.clock, settings=self.settings)
        self._handlers: Dict[
            SettlementEventType,
            Callable[[SettlementEvent, Any], Awaitable[SettlementResult]],
        ] = {
            SettlementEventType.COMPLETED: self._on_completed,
            SettlementEventType.EXPIRED: self._on_released,
            SettlementEventType.VOIDED: self._on_released,
            SettlementEventType.DENIED: self._on_refunded,
            SettlementEventType.REFUNDED: self._on_refunded,
        }

    # ------------------------------------------------------------------
    # Checkout registration
    # ------------------------------------------------------------------

    async def register_checkout(
        self,
        provider: PaymentProvider,
        external_id: str,
        board_id: str,
        square_ids: Sequence[str],
        user_id: str,
        amount: Decimal,
        currency: Optional[str] = None,
    ) -> PaymentTransaction:
        """
        Record a checkout session created for reserved squares.

        Returns the existing record when the same checkout is registered
        twice.

        Raises:
            InvalidTransition: If any square is not currently reserved by
                ``user_id`` on ``board_id``
            TransactionConflict: If the id is already registered for a
                different checkout
        """
        now = self.clock.now()
        squares = await self.store.get_squares(list(square_ids))
        not_held = [
            square.id
            for square in squares
            if square.board_id != board_id
            or not isinstance(square.state, Reserved)
            or square.state.owner_id != user_id
            or square.state.is_expired(now)
        ]
        if not_held:
            raise InvalidTransition(
                f"Squares not reserved by {user_id}: {', '.join(not_held)}",
                board_id=board_id,
                square_ids=not_held,
            )

        transaction = PaymentTransaction(
            provider=provider,
            external_id=external_id,
            board_id=board_id,
            square_ids=tuple(square_ids),
            user_id=user_id,
            amount=Decimal(amount),
            currency=currency or self.settings.currency,
            status=TransactionStatus.PENDING,
            created_at=now,
            updated_at=now,
        )
        try:
            transaction = await self.store.insert_transaction(transaction)
        except TransactionConflict:
            existing = await self.store.get_transaction(provider, external_id)
            if (
                existing is not None
                and existing.user_id == user_id
                and set(existing.square_ids) == set(square_ids)
            ):
                return existing
            raise

        logger.info(
            "checkout_registered",
            provider=provider.value,
            external_id=external_id,
            board_id=board_id,
            user_id=user_id,
            square_count=len(squares),
        )
        return transaction

    # ------------------------------------------------------------------
    # Event processing
    # ------------------------------------------------------------------

    async def process_payment_event(
        self, event: SettlementEvent, correlation_id: Optional[str] = None
    ) -> SettlementResult:
        """
        Apply one normalized payment event.

        Args:
            event: Provider-neutral event
            correlation_id: Trace id carried into logs and the audit trail

        Returns:
            SettlementResult: ``applied``, ``duplicate`` or ``anomaly``
        """
        start_time = time.time()
        correlation_id = correlation_id or str(uuid.uuid4())
        event = await self._rekey(event)
        with settlement_context(event.provider.value, event.external_id, correlation_id):
            log = logger.bind(event_type=event.type.value)
            log.debug("settlement_event_received", raw_type=event.raw_type)

            try:
                result = await self._handlers[event.type](event, log)
            except DuplicateEvent as exc:
                log.info("settlement_event_duplicate", reason=exc.message)
                result = SettlementResult(
                    outcome=SettlementOutcome.DUPLICATE,
                    transaction=await self.store.get_transaction(
                        event.provider, event.external_id
                    ),
                    error=exc,
                )

            await self.store.add_transaction_event(
                TransactionEvent(
                    provider=event.provider,
                    external_id=event.external_id,
                    event_type=event.raw_type or event.type.value,
                    outcome=result.outcome.value,
                    payload=event.payload,
                    correlation_id=correlation_id,
                    created_at=self.clock.now(),
                )
            )

        metrics.record_settlement_event(
            provider=event.provider.value,
            event_type=event.type.value,
            outcome=result.outcome.value,
            duration_seconds=time.time() - start_time,
        )
        return result

    async def _on_completed(self, event: SettlementEvent, log: Any) -> SettlementResult:
        transaction = await self.store.get_transaction(event.provider, event.external_id)
        if transaction is not None and transaction.status in FINAL_STATUSES:
            raise DuplicateEvent(
                f"Transaction already {transaction.status.value}",
                status=transaction.status.value,
            )

        square_ids = list(event.square_ids or (transaction.square_ids if transaction else ()))
        if not square_ids:
            return await self._anomaly(
                event,
                transaction,
                InvalidTransition("Completed payment carries no squares"),
                reason="missing_squares",
                log=log,
            )

        try:
            owner_id = await self._resolve_owner(event, transaction, square_ids)
            squares = await self.ledger.confirm_many(
                square_ids, owner_id, payment_ref=event.external_id
            )
        except (InvalidTransition, SquareNotFound) as exc:
            # A concurrent delivery of the same event may have confirmed the
            # squares first. Its square write lands before its record write, so
            # the squares' payment ref is checked before the record.
            squares = await self._confirmed_by(event, square_ids)
            if squares is None:
                current = await self.store.get_transaction(event.provider, event.external_id)
                if current is not None and current.status in FINAL_STATUSES:
                    raise DuplicateEvent(
                        f"Transaction already {current.status.value}",
                        status=current.status.value,
                    ) from exc
                return await self._anomaly(event, current, exc, reason="ledger_desync", log=log)
            owner_id = squares[0].owner_id
            log.debug("squares_already_confirmed", square_ids=square_ids, owner_id=owner_id)

        now = self.clock.now()
        board_id = event.board_id or (transaction.board_id if transaction else None)
        board_id = board_id or squares[0].board_id
        completed = self._build_transaction(
            event,
            transaction,
            TransactionStatus.COMPLETED,
            now,
            board_id=board_id,
            square_ids=square_ids,
            user_id=owner_id,
            completed_at=now,
        )
        completed = await self._save(transaction, completed, event, log)

        board = None
        if self.settings.auto_assign_numbers:
            board = await self.boards.assign_numbers_if_needed(board_id)

        log.info(
            "payment_completed",
            board_id=board_id,
            owner_id=owner_id,
            square_ids=square_ids,
            amount=str(completed.amount),
        )
        return SettlementResult(
            outcome=SettlementOutcome.APPLIED,
            transaction=completed,
            squares=squares,
            board=board,
        )

    async def _on_released(self, event: SettlementEvent, log: Any) -> SettlementResult:
        transaction = await self.store.get_transaction(event.provider, event.external_id)
        if transaction is not None:
            if transaction.status in REVERSED_STATUSES:
                raise DuplicateEvent(
                    f"Transaction already {transaction.status.value}",
                    status=transaction.status.value,
                )
            if transaction.status is TransactionStatus.COMPLETED:
                return await self._anomaly(
                    event,
                    transaction,
                    InvalidTransition(
                        f"{event.type.value} received for a completed sale; squares stay purchased",
                        external_id=event.external_id,
                    ),
                    reason="void_after_completed",
                    log=log,
                )

        square_ids = list(event.square_ids or (transaction.square_ids if transaction else ()))
        owner_id = event.user_id or (transaction.user_id if transaction else None)
        squares = await self.ledger.release_many(square_ids, owner_id=owner_id, only_reserved=True)

        now = self.clock.now()
        voided = self._build_transaction(
            event,
            transaction,
            TransactionStatus.VOIDED,
            now,
            square_ids=square_ids,
            user_id=owner_id,
        )
        voided = await self._save(transaction, voided, event, log)

        log.info("payment_voided", square_ids=square_ids, owner_id=owner_id)
        return SettlementResult(
            outcome=SettlementOutcome.APPLIED, transaction=voided, squares=squares
        )

    async def _on_refunded(self, event: SettlementEvent, log: Any) -> SettlementResult:
        transaction = await self.store.get_transaction(event.provider, event.external_id)
        if transaction is not None and transaction.status in REVERSED_STATUSES:
            raise DuplicateEvent(
                f"Transaction already {transaction.status.value}",
                status=transaction.status.value,
            )

        square_ids = list(event.square_ids or (transaction.square_ids if transaction else ()))
        owner_id = event.user_id or (transaction.user_id if transaction else None)
        squares = await self.ledger.release_many(square_ids, owner_id=owner_id)

        now = self.clock.now()
        refunded = self._build_transaction(
            event,
            transaction,
            TransactionStatus.REFUNDED,
            now,
            square_ids=square_ids,
            user_id=owner_id,
            refunded_at=now,
            error_message="Payment denied" if event.type is SettlementEventType.DENIED else None,
        )
        refunded = await self._save(transaction, refunded, event, log)

        if transaction is not None and transaction.status is TransactionStatus.COMPLETED:
            log.warning("completed_sale_refunded", square_ids=square_ids, owner_id=owner_id)
        else:
            log.info("payment_refunded", square_ids=square_ids, owner_id=owner_id)
        return SettlementResult(
            outcome=SettlementOutcome.APPLIED, transaction=refunded, squares=squares
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _resolve_owner(
        self,
        event: SettlementEvent,
        transaction: Optional[PaymentTransaction],
        square_ids: Sequence[str],
    ) -> str:
        """Event user, else the checkout user, else the single current holder."""
        if event.user_id:
            return event.user_id
        if transaction is not None and transaction.user_id:
            return transaction.user_id

        squares = await self.store.get_squares(square_ids)
        holders = {square.owner_id for square in squares if square.status is SquareStatus.RESERVED}
        if len(holders) == 1:
            return holders.pop()
        raise InvalidTransition(
            "Cannot determine the purchasing user for these squares",
            square_ids=list(square_ids),
        )

    async def _rekey(self, event: SettlementEvent) -> SettlementEvent:
        """Point an event at the record already holding its provider payment id."""
        if not event.provider_ref:
            return event
        known = await self.store.find_transaction_by_ref(event.provider, event.provider_ref)
        if known is None or known.external_id == event.external_id:
            return event
        logger.debug(
            "settlement_event_rekeyed",
            provider=event.provider.value,
            external_id=event.external_id,
            transaction_id=known.external_id,
        )
        return event.model_copy(update={"external_id": known.external_id})

    async def _confirmed_by(
        self, event: SettlementEvent, square_ids: Sequence[str]
    ) -> Optional[List[Square]]:
        """Squares already purchased under this payment by one owner, else None."""
        try:
            squares = await self.store.get_squares(square_ids)
        except SquareNotFound:
            return None
        owners = {square.owner_id for square in squares}
        if len(owners) != 1 or (event.user_id and owners != {event.user_id}):
            return None
        if all(
            isinstance(square.state, Purchased) and square.state.payment_ref == event.external_id
            for square in squares
        ):
            return squares
        return None

    def _build_transaction(
        self,
        event: SettlementEvent,
        existing: Optional[PaymentTransaction],
        status: TransactionStatus,
        now: datetime,
        **changes: Any,
    ) -> PaymentTransaction:
        changes = {key: value for key, value in changes.items() if value is not None}
        if "square_ids" in changes:
            changes["square_ids"] = tuple(changes["square_ids"])
        if event.amount is not None and (existing is None or not existing.amount):
            changes["amount"] = event.amount
        if event.provider_ref:
            changes["provider_ref"] = event.provider_ref

        if existing is not None:
            # A successful transition clears any earlier anomaly note.
            changes.setdefault("error_message", None)
            return existing.model_copy(update={**changes, "status": status, "updated_at": now})
        return PaymentTransaction(
            provider=event.provider,
            external_id=event.external_id,
            board_id=changes.pop("board_id", event.board_id),
            currency=self.settings.currency,
            status=status,
            created_at=now,
            updated_at=now,
            **changes,
        )

    async def _save(
        self,
        previous: Optional[PaymentTransaction],
        updated: PaymentTransaction,
        event: SettlementEvent,
        log: Any,
    ) -> PaymentTransaction:
        """Insert or compare-and-swap the record; a lost race becomes a duplicate."""
        try:
            if previous is None:
                return await self.store.insert_transaction(updated)
            return await self.store.update_transaction(updated, expected_status=previous.status)
        except TransactionConflict as exc:
            current = await self.store.get_transaction(event.provider, event.external_id)
            log.warning(
                "transaction_record_conflict",
                current_status=current.status.value if current else None,
                target_status=updated.status.value,
            )
            if current is None:
                raise
            if current.status is not updated.status and (
                current.status not in FINAL_STATUSES
                or (current.status, updated.status) in SUPERSEDES
            ):
                merged = updated.model_copy(
                    update={
                        "created_at": current.created_at,
                        "completed_at": updated.completed_at or current.completed_at,
                    }
                )
                return await self.store.update_transaction(merged, expected_status=current.status)
            raise DuplicateEvent(
                f"Transaction already {current.status.value}", status=current.status.value
            ) from exc

    async def _anomaly(
        self,
        event: SettlementEvent,
        transaction: Optional[PaymentTransaction],
        error: GridPlayError,
        reason: str,
        log: Any,
    ) -> SettlementResult:
        """Report a settlement event that disagrees with the ledger, without applying it."""
        metrics.record_settlement_anomaly(event.provider.value, reason)
        log.warning(
            "settlement_anomaly",
            reason=reason,
            error=error.message,
            square_ids=list(event.square_ids),
            transaction_status=transaction.status.value if transaction else None,
        )

        now = self.clock.now()
        try:
            if transaction is None:
                transaction = await self.store.insert_transaction(
                    PaymentTransaction(
                        provider=event.provider,
                        external_id=event.external_id,
                        provider_ref=event.provider_ref,
                        board_id=event.board_id,
                        square_ids=event.square_ids,
                        user_id=event.user_id,
                        amount=event.amount or Decimal("0"),
                        currency=self.settings.currency,
                        status=TransactionStatus.PENDING,
                        error_message=error.message,
                        created_at=now,
                        updated_at=now,
                    )
                )
            else:
                transaction = await self.store.update_transaction(
                    transaction.model_copy(
                        update={"error_message": error.message, "updated_at": now}
                    ),
                    expected_status=transaction.status,
                )
        except TransactionConflict:
            log.info("anomaly_note_skipped", reason="transaction changed concurrently")
            transaction = await self.store.get_transaction(event.provider, event.external_id)

        return SettlementResult(
            outcome=SettlementOutcome.ANOMALY, transaction=transaction, error=error
        )
