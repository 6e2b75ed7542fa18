from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from core.jobs import GenerationParams

ProviderState = Literal["processing", "completed", "failed"]


@dataclass
class SubmitResult:
    task_id: Optional[str] = None
    result_url: Optional[str] = None

    @property
    def is_immediate(self) -> bool:
        return bool(self.result_url)


@dataclass
class ProviderStatus:
    status: ProviderState
    result_url: Optional[str] = None
    error: Optional[str] = None
    task_id: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in {"completed", "failed"}


class WebhookPayload(BaseModel):
    """Inbound completion notice; same shape as a poll result."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    task_id: str = Field(alias="taskId", min_length=1)
    status: Literal["pending", "processing", "completed", "failed"]
    result_url: Optional[str] = Field(default=None, alias="resultUrl")
    error: Optional[str] = None

    @model_validator(mode="after")
    def _normalize(self) -> "WebhookPayload":
        if self.status == "pending":
            self.status = "processing"
        return self

    def to_status(self) -> ProviderStatus:
        return ProviderStatus(
            status=self.status,  # type: ignore[arg-type]
            result_url=self.result_url,
            error=self.error,
            task_id=self.task_id,
        )


def provider_params(params: GenerationParams) -> Dict[str, Any]:
    return params.model_dump(exclude_none=True)


class ImageProvider(ABC):
    name: str

    @abstractmethod
    def submit(self, source_url: str, params: Dict[str, Any]) -> SubmitResult:
        raise NotImplementedError

    @abstractmethod
    def poll_status(self, task_id: str) -> ProviderStatus:
        raise NotImplementedError

    @abstractmethod
    def download(self, url: str) -> bytes:
        raise NotImplementedError
