from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field

TransactionType = Literal["purchase", "usage", "refund", "bonus"]
ReservationStatus = Literal["pending", "confirmed", "cancelled"]

SETTLEMENT_SCHEMA_VERSION = 1


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class SettlementMetadata(BaseModel):
    """Audit fields written with the usage transaction of a confirmed reservation."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    schema_version: Literal[1] = SETTLEMENT_SCHEMA_VERSION
    operation: str
    job_id: Optional[str] = None
    project_id: Optional[str] = None
    attempt: int = 1
    image_quality: Literal["standard", "hd"] = "standard"
    image_count: int = Field(default=1, ge=1)
    provider: Optional[str] = None
    external_task_id: Optional[str] = None
    settled_via: Literal["immediate", "poll", "webhook", "direct"] = "direct"


class CreditTransaction(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    user_id: str
    amount: int
    type: TransactionType
    description: str
    related_image_id: Optional[str] = None
    related_invoice_id: Optional[str] = None
    reservation_id: Optional[str] = None
    metadata: Optional[SettlementMetadata] = None
    created_at: datetime = Field(default_factory=utcnow)


class CreditReservation(BaseModel):
    id: str = Field(default_factory=new_id)
    user_id: str
    amount: int
    operation_tag: str
    status: ReservationStatus = "pending"
    created_at: datetime = Field(default_factory=utcnow)
    expires_at: Optional[datetime] = None
    settled_at: Optional[datetime] = None
    transaction_id: Optional[str] = None


class CreditStats(BaseModel):
    total_purchased: int = 0
    total_used: int = 0
    balance: int = 0
    transactions_count: int = 0
    pending_reserved: int = 0

    @computed_field  # type: ignore[prop-decorator]
    @property
    def available(self) -> int:
        return self.balance - self.pending_reserved
