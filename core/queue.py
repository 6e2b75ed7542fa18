from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, Dict, Optional

from core.errors import StagingError
from core.jobs import TransformationJob

logger = logging.getLogger(__name__)

CheckFn = Callable[[str, str], TransformationJob]


class StatusPoller:
    """Background status checks for jobs waiting on a provider task.

    One loop per job: fixed interval, bounded attempts. Running out of attempts
    leaves the job processing; a webhook or a later manual check settles it.
    """

    def __init__(
        self,
        check: CheckFn,
        interval_seconds: float = 5.0,
        max_attempts: int = 60,
        executor: Optional[ThreadPoolExecutor] = None,
    ) -> None:
        self.check = check
        self.interval_seconds = interval_seconds
        self.max_attempts = max_attempts
        self.executor = executor or ThreadPoolExecutor(max_workers=4, thread_name_prefix="status-poller")
        self._stops: Dict[str, threading.Event] = {}
        self._lock = threading.Lock()

    def start(self, job_id: str, task_id: str) -> Optional[Future]:
        with self._lock:
            if job_id in self._stops:
                return None
            stop = threading.Event()
            self._stops[job_id] = stop
        logger.debug("Polling job %s (task %s) every %.1fs", job_id, task_id, self.interval_seconds)
        return self.executor.submit(self._loop, job_id, task_id, stop)

    def stop(self, job_id: str) -> bool:
        with self._lock:
            stop = self._stops.pop(job_id, None)
        if stop is None:
            return False
        stop.set()
        return True

    def is_polling(self, job_id: str) -> bool:
        with self._lock:
            return job_id in self._stops

    def shutdown(self) -> None:
        with self._lock:
            stops = list(self._stops.values())
            self._stops.clear()
        for stop in stops:
            stop.set()
        self.executor.shutdown(wait=False)

    def _loop(self, job_id: str, task_id: str, stop: threading.Event) -> str:
        try:
            for attempt in range(1, self.max_attempts + 1):
                if stop.wait(self.interval_seconds):
                    logger.debug("Polling for job %s cancelled", job_id)
                    return "cancelled"
                try:
                    job = self.check(job_id, task_id)
                except StagingError as exc:
                    logger.warning("Status check %d for job %s failed: %s", attempt, job_id, exc.message)
                    continue
                except Exception:
                    logger.exception("Status check %d for job %s crashed", attempt, job_id)
                    continue
                if job.is_terminal or job.external_task_id != task_id:
                    logger.debug("Polling for job %s finished with status %s", job_id, job.status)
                    return "finished"
            logger.warning(
                "Polling for job %s stopped after %d attempts, job left processing",
                job_id,
                self.max_attempts,
            )
            return "exhausted"
        finally:
            with self._lock:
                if self._stops.get(job_id) is stop:
                    del self._stops[job_id]
