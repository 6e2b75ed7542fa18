from __future__ import annotations

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, Field

from core.jobs import AttemptRecord, GenerationParams, TransformationJob
from ledger.models import CreditStats, CreditTransaction


class JobCreateRequest(BaseModel):
    project_id: str = Field(min_length=1)
    original_url: str = Field(min_length=1)
    params: GenerationParams


class RegenerateRequest(BaseModel):
    params: Optional[GenerationParams] = None


class JobDetailResponse(BaseModel):
    id: str
    project_id: str
    status: str
    original_url: str
    transformed_url: Optional[str] = None
    external_task_id: Optional[str] = None
    error_message: Optional[str] = None
    billing_error: Optional[str] = None
    attempt: int
    params: GenerationParams
    history: List[AttemptRecord] = Field(default_factory=list)
    created_at: datetime
    processing_started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None

    @classmethod
    def from_job(cls, job: TransformationJob) -> "JobDetailResponse":
        return cls(**job.model_dump(exclude={"user_id", "reservation_id", "updated_at"}))


class JobListResponse(BaseModel):
    items: List[JobDetailResponse]


class CreditBalanceResponse(BaseModel):
    stats: CreditStats
    low_balance: bool
    costs: dict


class TransactionListResponse(BaseModel):
    items: List[CreditTransaction]


class CreditGrantRequest(BaseModel):
    user_id: str = Field(min_length=1)
    amount: int
    type: Literal["purchase", "bonus"] = "purchase"
    description: str = "Credit purchase"
    related_invoice_id: Optional[str] = None


class WebhookAck(BaseModel):
    ok: bool = True
    job_id: str
    status: str
