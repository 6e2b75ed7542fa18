from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import List, Optional, Union

from core.errors import InvalidJobState, JobNotFound, ReservationConfirmationError
from core.jobs import TERMINAL_STATES, GenerationParams, JobStore, TransformationJob
from core.storage import LocalArtifactStorage
from ledger.credits import CreditLedger
from ledger.models import SettlementMetadata
from ledger.reservations import ReservationManager
from providers.base import ImageProvider, ProviderStatus, WebhookPayload, provider_params

logger = logging.getLogger(__name__)

OPERATION = "generate-image"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _elapsed_ms(started: Optional[datetime], ended: datetime) -> Optional[int]:
    if not started:
        return None
    return max(int((ended - started).total_seconds() * 1000), 0)


class GenerationOrchestrator:
    """Drives a job through reservation, the image provider and settlement.

    Polling and webhooks both end in `_resolve`, which only acts while the job
    is still processing. The store's conditional transition picks a single
    winner, and only the winner settles the reservation.
    """

    def __init__(
        self,
        jobs: JobStore,
        reservations: ReservationManager,
        ledger: CreditLedger,
        provider: ImageProvider,
        storage: LocalArtifactStorage,
    ) -> None:
        self.jobs = jobs
        self.reservations = reservations
        self.ledger = ledger
        self.provider = provider
        self.storage = storage

    def generate(self, job_id: str, user_id: Optional[str] = None) -> TransformationJob:
        job = self._load(job_id, user_id)
        if job.status != "pending":
            raise InvalidJobState(job_id, job.status, "generate")

        cost = self.ledger.calculate_transformation_cost(1, job.params.quality)
        reservation = self.reservations.reserve(job.user_id, cost, f"{OPERATION}:{job.id}")

        processing = self.jobs.transition(
            job_id,
            "pending",
            status="processing",
            reservation_id=reservation.id,
            processing_started_at=_now(),
            error_message=None,
        )
        if processing is None:
            self.reservations.cancel(reservation.id)
            current = self.jobs.get(job_id)
            raise InvalidJobState(job_id, current.status if current else "missing", "generate")

        logger.info("Job %s processing (attempt %d, %d credits reserved)", job_id, processing.attempt, cost)
        try:
            submitted = self.provider.submit(processing.original_url, provider_params(processing.params))
        except Exception as exc:
            logger.exception("Provider submit failed for job %s", job_id)
            return self._fail(processing, str(exc) or type(exc).__name__)

        if submitted.is_immediate:
            return self._complete(processing, submitted.result_url, via="immediate")

        if not submitted.task_id:
            return self._fail(processing, "No image URL or task id returned by provider")
        queued = self.jobs.transition(job_id, "processing", external_task_id=submitted.task_id)
        logger.info("Job %s queued at provider as task %s", job_id, submitted.task_id)
        return queued or self.jobs.get(job_id) or processing

    def regenerate(
        self,
        job_id: str,
        params: Optional[GenerationParams] = None,
        user_id: Optional[str] = None,
    ) -> TransformationJob:
        job = self._load(job_id, user_id)
        if job.status not in TERMINAL_STATES:
            raise InvalidJobState(job_id, job.status, "regenerate")

        reset = self.jobs.transition(
            job_id,
            TERMINAL_STATES,
            status="pending",
            params=params or job.params,
            attempt=job.attempt + 1,
            history=[*job.history, job.archive()],
            transformed_url=None,
            external_task_id=None,
            reservation_id=None,
            error_message=None,
            billing_error=None,
            processing_started_at=None,
            completed_at=None,
            duration_ms=None,
        )
        if reset is None:
            current = self.jobs.get(job_id)
            raise InvalidJobState(job_id, current.status if current else "missing", "regenerate")
        logger.info("Job %s reset for attempt %d", job_id, reset.attempt)
        return self.generate(job_id, user_id)

    def check_status(
        self,
        job_id: str,
        task_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> TransformationJob:
        job = self._load(job_id, user_id)
        if job.status != "processing":
            return job
        task_id = task_id or job.external_task_id
        if not task_id:
            return job
        if task_id != job.external_task_id:
            logger.warning("Ignoring status check for job %s with stale task %s", job_id, task_id)
            return job
        status = self.provider.poll_status(task_id)
        return self._resolve(job, status, via="poll")

    def report_status(self, job_id: str, payload: Union[WebhookPayload, dict]) -> TransformationJob:
        if not isinstance(payload, WebhookPayload):
            payload = WebhookPayload.model_validate(payload)
        job = self._load(job_id)
        if payload.task_id != job.external_task_id:
            logger.warning(
                "Webhook for job %s names task %s, expected %s; ignored",
                job_id,
                payload.task_id,
                job.external_task_id,
            )
            return job
        return self._resolve(job, payload.to_status(), via="webhook")

    def fail_stale(self, max_processing_seconds: int, now: Optional[datetime] = None) -> List[TransformationJob]:
        now = now or _now()
        failed: list[TransformationJob] = []
        for job in self.jobs.list_by_status("processing"):
            started = job.processing_started_at
            if not started or (now - started).total_seconds() < max_processing_seconds:
                continue
            timed_out = self._mark_failed(job, f"Generation timed out after {max_processing_seconds}s")
            if timed_out is not None:
                failed.append(timed_out)
        return failed

    def _resolve(self, job: TransformationJob, status: ProviderStatus, via: str) -> TransformationJob:
        if job.status != "processing" or not status.is_terminal:
            return job
        if status.status == "completed":
            return self._complete(job, status.result_url, via=via)
        return self._fail(job, status.error or "Generation failed")

    def _complete(self, job: TransformationJob, result_url: Optional[str], via: str) -> TransformationJob:
        if not result_url:
            return self._fail(job, "Task completed but no image URL returned")
        try:
            artifact_url = self.storage.store(job.id, self.provider.download(result_url))
        except Exception as exc:
            current = self.jobs.get(job.id)
            if not self._is_open(current, job):
                logger.debug("Job %s already resolved, ignoring %s download error: %s", job.id, via, exc)
                return current or job
            logger.exception("Could not store result for job %s", job.id)
            return self._fail(job, str(exc) or type(exc).__name__)

        completed_at = _now()
        won = self.jobs.transition(
            job.id,
            "processing",
            where={"attempt": job.attempt},
            status="completed",
            transformed_url=artifact_url,
            completed_at=completed_at,
            duration_ms=_elapsed_ms(job.processing_started_at, completed_at),
            error_message=None,
        )
        if won is None:
            logger.debug("Job %s already resolved, %s completion ignored", job.id, via)
            self.storage.discard(artifact_url)
            return self.jobs.get(job.id) or job

        logger.info("Job %s completed via %s", job.id, via)
        if not won.reservation_id:
            return won
        metadata = SettlementMetadata(
            operation=OPERATION,
            job_id=won.id,
            project_id=won.project_id,
            attempt=won.attempt,
            image_quality=won.params.quality,
            provider=self.provider.name,
            external_task_id=won.external_task_id,
            settled_via=via,
        )
        try:
            self.reservations.settle(won.reservation_id, True, metadata=metadata, related_image_id=won.id)
        except ReservationConfirmationError as exc:
            flagged = self.jobs.transition(won.id, "completed", billing_error=str(exc.cause))
            exc.result = flagged or won
            raise
        return won

    @staticmethod
    def _is_open(current: Optional[TransformationJob], snapshot: TransformationJob) -> bool:
        return (
            current is not None
            and current.status == "processing"
            and current.attempt == snapshot.attempt
        )

    def _fail(self, job: TransformationJob, message: str) -> TransformationJob:
        return self._mark_failed(job, message) or self.jobs.get(job.id) or job

    def _mark_failed(self, job: TransformationJob, message: str) -> Optional[TransformationJob]:
        completed_at = _now()
        won = self.jobs.transition(
            job.id,
            "processing",
            where={"attempt": job.attempt},
            status="failed",
            error_message=message,
            completed_at=completed_at,
            duration_ms=_elapsed_ms(job.processing_started_at, completed_at),
        )
        if won is None:
            return None

        logger.warning("Job %s failed: %s", job.id, message)
        if won.reservation_id:
            try:
                self.reservations.cancel(won.reservation_id)
            except Exception:
                # the pending hold is reclaimed when it expires
                logger.exception("Failed to cancel reservation %s for job %s", won.reservation_id, job.id)
        return won

    def _load(self, job_id: str, user_id: Optional[str] = None) -> TransformationJob:
        job = self.jobs.get(job_id)
        if not job or (user_id is not None and job.user_id != user_id):
            raise JobNotFound(job_id)
        return job
