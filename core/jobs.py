from __future__ import annotations

import threading
import uuid
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Literal, Optional, Union

from pydantic import BaseModel, Field

JobState = Literal["pending", "processing", "completed", "failed"]
TERMINAL_STATES = frozenset({"completed", "failed"})


def _now() -> datetime:
    return datetime.now(timezone.utc)


class GenerationParams(BaseModel):
    transformation_type: str = Field(min_length=1)
    custom_prompt: Optional[str] = Field(default=None, max_length=5000)
    with_furniture: bool = False
    room_type: Optional[str] = None
    strength: float = Field(default=0.15, ge=0.0, le=1.0)
    quality: Literal["standard", "hd"] = "standard"


class AttemptRecord(BaseModel):
    attempt: int
    status: JobState
    transformed_url: Optional[str] = None
    error_message: Optional[str] = None
    billing_error: Optional[str] = None
    external_task_id: Optional[str] = None
    reservation_id: Optional[str] = None
    processing_started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None


class TransformationJob(BaseModel):
    id: str
    project_id: str
    user_id: str
    original_url: str
    params: GenerationParams
    status: JobState = "pending"
    transformed_url: Optional[str] = None
    external_task_id: Optional[str] = None
    reservation_id: Optional[str] = None
    error_message: Optional[str] = None
    billing_error: Optional[str] = None
    attempt: int = 1
    history: List[AttemptRecord] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime
    processing_started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATES

    def archive(self) -> AttemptRecord:
        return AttemptRecord(
            attempt=self.attempt,
            status=self.status,
            transformed_url=self.transformed_url,
            error_message=self.error_message,
            billing_error=self.billing_error,
            external_task_id=self.external_task_id,
            reservation_id=self.reservation_id,
            processing_started_at=self.processing_started_at,
            completed_at=self.completed_at,
            duration_ms=self.duration_ms,
        )


class JobStore:
    """Job rows with compare-and-set status transitions.

    `transition` is the in-process form of
    ``UPDATE images SET ... WHERE id = :id AND status IN (:expected)``: when
    the row is not in an expected state nothing is written and None comes back.
    """

    def __init__(self) -> None:
        self._jobs: Dict[str, TransformationJob] = {}
        self._lock = threading.Lock()

    def create(
        self,
        user_id: str,
        project_id: str,
        original_url: str,
        params: GenerationParams,
    ) -> TransformationJob:
        now = _now()
        job = TransformationJob(
            id=str(uuid.uuid4()),
            project_id=project_id,
            user_id=user_id,
            original_url=original_url,
            params=params,
            created_at=now,
            updated_at=now,
        )
        with self._lock:
            self._jobs[job.id] = job
        return job

    def get(self, job_id: str) -> Optional[TransformationJob]:
        with self._lock:
            return self._jobs.get(job_id)

    def list_for_user(self, user_id: str, status: Optional[str] = None) -> List[TransformationJob]:
        with self._lock:
            jobs = [j for j in self._jobs.values() if j.user_id == user_id]
        if status:
            jobs = [j for j in jobs if j.status == status]
        return sorted(jobs, key=lambda j: j.created_at, reverse=True)

    def list_by_status(self, status: str) -> List[TransformationJob]:
        with self._lock:
            return [j for j in self._jobs.values() if j.status == status]

    def transition(
        self,
        job_id: str,
        expected: Union[str, Iterable[str]],
        where: Optional[Dict[str, object]] = None,
        **updates,
    ) -> Optional[TransformationJob]:
        allowed = {expected} if isinstance(expected, str) else set(expected)
        with self._lock:
            current = self._jobs.get(job_id)
            if not current or current.status not in allowed:
                return None
            if where and any(getattr(current, field) != value for field, value in where.items()):
                return None
            payload = current.model_dump()
            payload.update(updates)
            payload["updated_at"] = _now()
            new_job = TransformationJob(**payload)
            self._jobs[job_id] = new_job
            return new_job


store = JobStore()
