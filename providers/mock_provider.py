from __future__ import annotations

import hashlib
import threading
from dataclasses import dataclass
from typing import Any, Dict

from core.errors import ExternalProviderError
from providers.base import ImageProvider, ProviderStatus, SubmitResult

PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"


@dataclass
class MockTask:
    task_id: str
    source_url: str
    seed: int
    polls: int = 0
    status: str = "processing"
    error: str | None = None

    @property
    def result_url(self) -> str:
        return f"mock://results/{self.task_id}.png"


class MockImageProvider(ImageProvider):
    """Deterministic stand-in for the image API.

    `mode="sync"` answers submit with a result URL, `mode="async"` with a task
    id that reports completed after `complete_after` polls.
    """

    name = "mock"

    def __init__(self, mode: str = "async", complete_after: int = 1) -> None:
        if mode not in {"sync", "async"}:
            raise ValueError("mode must be sync or async")
        self.mode = mode
        self.complete_after = complete_after
        self._tasks: dict[str, MockTask] = {}
        self._counter = 0
        self._lock = threading.Lock()

    def submit(self, source_url: str, params: Dict[str, Any]) -> SubmitResult:
        if not source_url:
            raise ExternalProviderError("source image URL is missing")
        with self._lock:
            self._counter += 1
            seed = 1000 + self._counter * 17
            task = MockTask(task_id=f"mock-task-{self._counter}", source_url=source_url, seed=seed)
            self._tasks[task.task_id] = task
        if self.mode == "sync":
            task.status = "completed"
            return SubmitResult(result_url=task.result_url)
        return SubmitResult(task_id=task.task_id)

    def poll_status(self, task_id: str) -> ProviderStatus:
        with self._lock:
            task = self._tasks.get(task_id)
            if not task:
                raise ExternalProviderError(f"unknown task: {task_id}")
            task.polls += 1
            if task.status == "processing" and task.polls >= self.complete_after:
                task.status = "completed"
            if task.status == "completed":
                return ProviderStatus(status="completed", result_url=task.result_url, task_id=task_id)
            if task.status == "failed":
                return ProviderStatus(status="failed", error=task.error, task_id=task_id)
            return ProviderStatus(status="processing", task_id=task_id)

    def fail_task(self, task_id: str, error: str = "Generation failed") -> None:
        with self._lock:
            task = self._tasks[task_id]
            task.status = "failed"
            task.error = error

    def download(self, url: str) -> bytes:
        if not url.startswith("mock://results/"):
            raise ExternalProviderError(f"cannot download {url}")
        digest = hashlib.sha256(url.encode("utf-8")).digest()
        return PNG_SIGNATURE + digest
