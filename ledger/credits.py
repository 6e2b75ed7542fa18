from __future__ import annotations

import logging
from typing import List, Optional

from core.errors import ValidationError
from ledger.models import CreditStats, CreditTransaction, TransactionType
from ledger.store import LedgerStore

logger = logging.getLogger(__name__)

BATCH_DISCOUNT_THRESHOLD = 10
BATCH_DISCOUNT_RATE = 0.1
LOW_BALANCE_THRESHOLD = 10
MAX_DESCRIPTION_LENGTH = 500


def validate_amount(amount: object) -> int:
    # bool is an int subclass
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise ValidationError("amount must be a positive integer", {"amount": repr(amount)})
    return amount


def validate_description(description: str) -> str:
    clean = (description or "").strip()
    if not clean or len(clean) > MAX_DESCRIPTION_LENGTH:
        raise ValidationError(
            f"description must be 1 to {MAX_DESCRIPTION_LENGTH} characters",
            {"length": len(clean)},
        )
    return clean


class CreditLedger:
    """Balance reads and direct credit movements on top of a LedgerStore."""

    def __init__(self, store: LedgerStore, cost_standard: int = 1, cost_hd: int = 2) -> None:
        self.store = store
        self.cost_standard = validate_amount(cost_standard)
        self.cost_hd = validate_amount(cost_hd)

    def get_balance(self, user_id: str) -> int:
        return self.store.get_balance(user_id)

    def get_stats(self, user_id: str) -> CreditStats:
        return self.store.get_stats(user_id)

    def list_transactions(self, user_id: str, limit: Optional[int] = None) -> List[CreditTransaction]:
        return self.store.list_transactions(user_id, limit=limit)

    def is_low_balance(self, user_id: str) -> bool:
        return self.get_stats(user_id).available < LOW_BALANCE_THRESHOLD

    def calculate_transformation_cost(self, image_count: int = 1, quality: str = "standard") -> int:
        validate_amount(image_count)
        if quality not in {"standard", "hd"}:
            raise ValidationError("quality must be standard or hd", {"quality": quality})
        per_image = self.cost_hd if quality == "hd" else self.cost_standard
        base = image_count * per_image
        if image_count >= BATCH_DISCOUNT_THRESHOLD:
            return max(1, int(base * (1 - BATCH_DISCOUNT_RATE)))
        return base

    def consume(
        self,
        user_id: str,
        amount: int,
        description: str,
        related_image_id: Optional[str] = None,
    ) -> CreditTransaction:
        amount = validate_amount(amount)
        description = validate_description(description)
        txn = self.store.debit(user_id, amount, description, related_image_id=related_image_id)
        logger.info("Consumed %d credits from user %s (%s)", amount, user_id, description)
        return txn

    def add(
        self,
        user_id: str,
        amount: int,
        type: TransactionType = "purchase",
        description: str = "Credit purchase",
        related_invoice_id: Optional[str] = None,
    ) -> CreditTransaction:
        amount = validate_amount(amount)
        description = validate_description(description)
        if type not in {"purchase", "bonus"}:
            raise ValidationError("type must be purchase or bonus", {"type": type})
        txn = self.store.append_transaction(
            user_id, amount, type, description, related_invoice_id=related_invoice_id
        )
        logger.info("Added %d %s credits to user %s", amount, type, user_id)
        return txn

    def refund(
        self,
        user_id: str,
        amount: int,
        description: str,
        related_image_id: Optional[str] = None,
    ) -> CreditTransaction:
        amount = validate_amount(amount)
        description = validate_description(description)
        txn = self.store.append_transaction(
            user_id, amount, "refund", description, related_image_id=related_image_id
        )
        logger.info("Refunded %d credits to user %s", amount, user_id)
        return txn
