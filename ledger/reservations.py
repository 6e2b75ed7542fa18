from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional, TypeVar

from core.errors import ReservationConfirmationError, ReservationNotPending
from ledger.credits import validate_amount
from ledger.models import CreditReservation, SettlementMetadata, utcnow
from ledger.store import LedgerStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ReservationManager:
    """Reserve -> execute -> confirm | cancel around a costed operation.

    Only `reserve` touches available balance, atomically in the store. A
    reservation is billed at most once: confirm and cancel are both no-ops on
    an already settled reservation.
    """

    def __init__(self, store: LedgerStore, ttl_minutes: Optional[int] = None) -> None:
        self.store = store
        self.ttl_minutes = ttl_minutes

    def reserve(self, user_id: str, amount: int, operation_tag: str) -> CreditReservation:
        amount = validate_amount(amount)
        expires_at = utcnow() + timedelta(minutes=self.ttl_minutes) if self.ttl_minutes else None
        reservation = self.store.reserve(user_id, amount, operation_tag, expires_at=expires_at)
        logger.debug(
            "Reserved %d credits for user %s (reservation %s, %s)",
            amount,
            user_id,
            reservation.id,
            operation_tag,
        )
        return reservation

    def confirm(
        self,
        reservation_id: str,
        metadata: Optional[SettlementMetadata] = None,
        related_image_id: Optional[str] = None,
    ) -> CreditReservation:
        reservation = self.store.confirm_reservation(
            reservation_id,
            metadata=metadata,
            related_image_id=related_image_id,
        )
        if reservation.status == "confirmed":
            logger.info(
                "Reservation %s confirmed: %d credits deducted from user %s",
                reservation.id,
                reservation.amount,
                reservation.user_id,
            )
        else:
            logger.warning("Reservation %s was already %s, confirm ignored", reservation.id, reservation.status)
        return reservation

    def cancel(self, reservation_id: str) -> CreditReservation:
        reservation = self.store.cancel_reservation(reservation_id)
        logger.debug("Reservation %s now %s", reservation.id, reservation.status)
        return reservation

    def settle(
        self,
        reservation_id: str,
        success: bool,
        metadata: Optional[SettlementMetadata] = None,
        related_image_id: Optional[str] = None,
    ) -> CreditReservation:
        if not success:
            return self.cancel(reservation_id)
        return self._bill(reservation_id, metadata=metadata, related_image_id=related_image_id)

    def run(
        self,
        user_id: str,
        amount: int,
        operation_tag: str,
        operation: Callable[[CreditReservation], T],
        metadata: Optional[SettlementMetadata] = None,
    ) -> T:
        reservation = self.reserve(user_id, amount, operation_tag)
        try:
            result = operation(reservation)
        except Exception:
            self._cancel_quietly(reservation.id)
            raise
        try:
            self._bill(reservation.id, metadata=metadata)
        except ReservationConfirmationError as exc:
            exc.result = result
            raise
        return result

    def _bill(
        self,
        reservation_id: str,
        metadata: Optional[SettlementMetadata] = None,
        related_image_id: Optional[str] = None,
    ) -> CreditReservation:
        try:
            reservation = self.confirm(reservation_id, metadata=metadata, related_image_id=related_image_id)
        except Exception as exc:
            self._compensate(reservation_id, exc)
            raise ReservationConfirmationError(reservation_id, exc) from exc
        if reservation.status != "confirmed":
            # expired or cancelled before the work finished: nothing was billed
            cause = ReservationNotPending(reservation_id, reservation.status)
            logger.critical("Operation succeeded but %s", cause.message)
            raise ReservationConfirmationError(reservation_id, cause)
        return reservation

    def expire_stale(self, now: Optional[datetime] = None) -> List[CreditReservation]:
        return self.store.expire_reservations(now)

    def _cancel_quietly(self, reservation_id: str) -> None:
        try:
            self.cancel(reservation_id)
        except Exception:
            logger.exception("Failed to cancel reservation %s after operation error", reservation_id)

    def _compensate(self, reservation_id: str, cause: BaseException) -> None:
        logger.critical(
            "Operation succeeded but reservation %s could not be confirmed: %s",
            reservation_id,
            cause,
        )
        try:
            self.cancel(reservation_id)
        except Exception:
            logger.critical("Failed to cancel reservation %s after confirm error", reservation_id, exc_info=True)
