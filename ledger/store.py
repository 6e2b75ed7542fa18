from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, List, Optional

from core.errors import InsufficientCredits, ReservationNotFound
from ledger.models import (
    CreditReservation,
    CreditStats,
    CreditTransaction,
    ReservationStatus,
    SettlementMetadata,
    TransactionType,
    utcnow,
)

logger = logging.getLogger(__name__)


class LedgerStore(ABC):
    """Persistence boundary for transactions and reservations.

    `reserve` and `debit` must check available balance and write in a single
    atomic step. Confirm and cancel are idempotent on settled reservations.
    """

    @abstractmethod
    def reserve(
        self,
        user_id: str,
        amount: int,
        operation_tag: str,
        expires_at: Optional[datetime] = None,
    ) -> CreditReservation:
        raise NotImplementedError

    @abstractmethod
    def confirm_reservation(
        self,
        reservation_id: str,
        metadata: Optional[SettlementMetadata] = None,
        description: Optional[str] = None,
        related_image_id: Optional[str] = None,
    ) -> CreditReservation:
        raise NotImplementedError

    @abstractmethod
    def cancel_reservation(self, reservation_id: str) -> CreditReservation:
        raise NotImplementedError

    @abstractmethod
    def append_transaction(
        self,
        user_id: str,
        amount: int,
        type: TransactionType,
        description: str,
        related_image_id: Optional[str] = None,
        related_invoice_id: Optional[str] = None,
    ) -> CreditTransaction:
        raise NotImplementedError

    @abstractmethod
    def debit(
        self,
        user_id: str,
        amount: int,
        description: str,
        related_image_id: Optional[str] = None,
        metadata: Optional[SettlementMetadata] = None,
    ) -> CreditTransaction:
        raise NotImplementedError

    @abstractmethod
    def get_stats(self, user_id: str) -> CreditStats:
        raise NotImplementedError

    @abstractmethod
    def list_transactions(self, user_id: str, limit: Optional[int] = None) -> List[CreditTransaction]:
        raise NotImplementedError

    @abstractmethod
    def get_reservation(self, reservation_id: str) -> Optional[CreditReservation]:
        raise NotImplementedError

    @abstractmethod
    def list_reservations(
        self, user_id: str, status: Optional[ReservationStatus] = None
    ) -> List[CreditReservation]:
        raise NotImplementedError

    @abstractmethod
    def expire_reservations(self, now: Optional[datetime] = None) -> List[CreditReservation]:
        raise NotImplementedError

    def get_balance(self, user_id: str) -> int:
        return self.get_stats(user_id).balance


class InMemoryLedgerStore(LedgerStore):
    def __init__(self) -> None:
        self._transactions: Dict[str, List[CreditTransaction]] = {}
        self._reservations: Dict[str, CreditReservation] = {}
        self._stats_cache: Dict[str, CreditStats] = {}
        self._lock = threading.Lock()

    def reserve(
        self,
        user_id: str,
        amount: int,
        operation_tag: str,
        expires_at: Optional[datetime] = None,
    ) -> CreditReservation:
        with self._lock:
            stats = self._stats(user_id)
            if stats.available < amount:
                raise InsufficientCredits(required=amount, available=max(stats.available, 0))
            reservation = CreditReservation(
                user_id=user_id,
                amount=amount,
                operation_tag=operation_tag,
                expires_at=expires_at,
            )
            self._reservations[reservation.id] = reservation
            self._invalidate(user_id)
            return reservation.model_copy()

    def confirm_reservation(
        self,
        reservation_id: str,
        metadata: Optional[SettlementMetadata] = None,
        description: Optional[str] = None,
        related_image_id: Optional[str] = None,
    ) -> CreditReservation:
        with self._lock:
            reservation = self._require(reservation_id)
            if reservation.status != "pending":
                return reservation.model_copy()
            txn = CreditTransaction(
                user_id=reservation.user_id,
                amount=-reservation.amount,
                type="usage",
                description=description or reservation.operation_tag,
                related_image_id=related_image_id,
                reservation_id=reservation.id,
                metadata=metadata,
            )
            self._transactions.setdefault(reservation.user_id, []).append(txn)
            settled = reservation.model_copy(
                update={"status": "confirmed", "settled_at": utcnow(), "transaction_id": txn.id}
            )
            self._reservations[reservation_id] = settled
            self._invalidate(reservation.user_id)
            return settled.model_copy()

    def cancel_reservation(self, reservation_id: str) -> CreditReservation:
        with self._lock:
            reservation = self._require(reservation_id)
            if reservation.status != "pending":
                return reservation.model_copy()
            settled = reservation.model_copy(update={"status": "cancelled", "settled_at": utcnow()})
            self._reservations[reservation_id] = settled
            self._invalidate(reservation.user_id)
            return settled.model_copy()

    def append_transaction(
        self,
        user_id: str,
        amount: int,
        type: TransactionType,
        description: str,
        related_image_id: Optional[str] = None,
        related_invoice_id: Optional[str] = None,
    ) -> CreditTransaction:
        txn = CreditTransaction(
            user_id=user_id,
            amount=amount,
            type=type,
            description=description,
            related_image_id=related_image_id,
            related_invoice_id=related_invoice_id,
        )
        with self._lock:
            self._transactions.setdefault(user_id, []).append(txn)
            self._invalidate(user_id)
        return txn

    def debit(
        self,
        user_id: str,
        amount: int,
        description: str,
        related_image_id: Optional[str] = None,
        metadata: Optional[SettlementMetadata] = None,
    ) -> CreditTransaction:
        with self._lock:
            stats = self._stats(user_id)
            if stats.available < amount:
                raise InsufficientCredits(required=amount, available=max(stats.available, 0))
            txn = CreditTransaction(
                user_id=user_id,
                amount=-amount,
                type="usage",
                description=description,
                related_image_id=related_image_id,
                metadata=metadata,
            )
            self._transactions.setdefault(user_id, []).append(txn)
            self._invalidate(user_id)
            return txn

    def get_stats(self, user_id: str) -> CreditStats:
        with self._lock:
            return self._stats(user_id).model_copy()

    def list_transactions(self, user_id: str, limit: Optional[int] = None) -> List[CreditTransaction]:
        with self._lock:
            newest_first = list(reversed(self._transactions.get(user_id, [])))
        return newest_first[:limit] if limit else newest_first

    def get_reservation(self, reservation_id: str) -> Optional[CreditReservation]:
        with self._lock:
            reservation = self._reservations.get(reservation_id)
            return reservation.model_copy() if reservation else None

    def list_reservations(
        self, user_id: str, status: Optional[ReservationStatus] = None
    ) -> List[CreditReservation]:
        with self._lock:
            return [
                r.model_copy()
                for r in self._reservations.values()
                if r.user_id == user_id and (status is None or r.status == status)
            ]

    def expire_reservations(self, now: Optional[datetime] = None) -> List[CreditReservation]:
        now = now or utcnow()
        expired: list[CreditReservation] = []
        with self._lock:
            for reservation_id, reservation in list(self._reservations.items()):
                if reservation.status != "pending" or not reservation.expires_at:
                    continue
                if reservation.expires_at > now:
                    continue
                settled = reservation.model_copy(update={"status": "cancelled", "settled_at": now})
                self._reservations[reservation_id] = settled
                self._invalidate(reservation.user_id)
                expired.append(settled.model_copy())
        if expired:
            logger.info("Expired %d stale credit reservation(s)", len(expired))
        return expired

    def _require(self, reservation_id: str) -> CreditReservation:
        reservation = self._reservations.get(reservation_id)
        if not reservation:
            raise ReservationNotFound(reservation_id)
        return reservation

    def _invalidate(self, user_id: str) -> None:
        self._stats_cache.pop(user_id, None)

    def _stats(self, user_id: str) -> CreditStats:
        cached = self._stats_cache.get(user_id)
        if cached is not None:
            return cached
        transactions = self._transactions.get(user_id, [])
        stats = CreditStats(
            total_purchased=sum(t.amount for t in transactions if t.amount > 0),
            total_used=sum(-t.amount for t in transactions if t.amount < 0),
            balance=sum(t.amount for t in transactions),
            transactions_count=len(transactions),
            pending_reserved=sum(
                r.amount for r in self._reservations.values() if r.user_id == user_id and r.status == "pending"
            ),
        )
        self._stats_cache[user_id] = stats
        return stats
