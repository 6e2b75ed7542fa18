from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import TypeVar

import pydantic
from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse

from core.auth import current_user_id
from core.config import Settings, settings
from core.errors import JobNotFound, ValidationError, add_error_handlers
from core.jobs import JobStore, TransformationJob
from core.jobs import store as job_store
from core.logging_config import configure_logging
from core.queue import StatusPoller
from core.security import verify_signature
from core.storage import LocalArtifactStorage
from ledger.credits import CreditLedger
from ledger.reservations import ReservationManager
from ledger.store import InMemoryLedgerStore
from models.schemas import (
    CreditBalanceResponse,
    CreditGrantRequest,
    JobCreateRequest,
    JobDetailResponse,
    JobListResponse,
    RegenerateRequest,
    TransactionListResponse,
    WebhookAck,
)
from pipeline import GenerationOrchestrator
from providers.base import ImageProvider, WebhookPayload
from providers.http_provider import HttpImageProvider
from providers.mock_provider import MockImageProvider

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=pydantic.BaseModel)


@dataclass
class Services:
    ledger: CreditLedger
    reservations: ReservationManager
    orchestrator: GenerationOrchestrator
    poller: StatusPoller
    storage: LocalArtifactStorage
    hmac_secret: str


def _parse(model: type[M], raw: bytes, what: str) -> M:
    try:
        return model.model_validate_json(raw)
    except pydantic.ValidationError as exc:
        errors = exc.errors(include_url=False, include_context=False, include_input=False)
        raise ValidationError(f"invalid {what} payload", {"errors": errors}) from exc


def build_provider(cfg: Settings) -> ImageProvider:
    if cfg.provider == "mock":
        return MockImageProvider(mode="async")
    return HttpImageProvider(
        base_url=cfg.provider_base_url,
        api_key=cfg.provider_api_key,
        timeout=cfg.provider_timeout_seconds,
        callback_url=cfg.provider_callback_url,
    )


def build_services(
    cfg: Settings,
    provider: ImageProvider | None = None,
    jobs: JobStore | None = None,
) -> Services:
    ledger_store = InMemoryLedgerStore()
    ledger = CreditLedger(ledger_store, cost_standard=cfg.credit_cost_standard, cost_hd=cfg.credit_cost_hd)
    reservations = ReservationManager(ledger_store, ttl_minutes=cfg.reservation_ttl_minutes)
    storage = LocalArtifactStorage(cfg.storage_dir, cfg.storage_public_url)
    orchestrator = GenerationOrchestrator(
        jobs=jobs if jobs is not None else job_store,
        reservations=reservations,
        ledger=ledger,
        provider=provider or build_provider(cfg),
        storage=storage,
    )
    poller = StatusPoller(
        orchestrator.check_status,
        interval_seconds=cfg.poll_interval_seconds,
        max_attempts=cfg.poll_max_attempts,
        executor=ThreadPoolExecutor(max_workers=cfg.worker_threads, thread_name_prefix="status-poller"),
    )
    return Services(
        ledger=ledger,
        reservations=reservations,
        orchestrator=orchestrator,
        poller=poller,
        storage=storage,
        hmac_secret=cfg.hmac_secret,
    )


def create_app(services: Services, cfg: Settings = settings) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        logger.info("Stopping status poller")
        services.poller.shutdown()

    app = FastAPI(title=cfg.app_name, version=cfg.app_version, lifespan=lifespan)
    app.state.services = services
    add_error_handlers(app)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(cfg.allowed_origins),
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "X-User-Id", "X-Signature"],
    )

    orchestrator = services.orchestrator
    ledger = services.ledger

    def _track(job: TransformationJob) -> TransformationJob:
        if job.status == "processing" and job.external_task_id:
            services.poller.start(job.id, job.external_task_id)
        elif job.is_terminal:
            services.poller.stop(job.id)
        return job

    @app.post("/api/jobs", response_model=JobDetailResponse)
    def create_job(payload: JobCreateRequest, user_id: str = Depends(current_user_id)) -> JobDetailResponse:
        job = orchestrator.jobs.create(
            user_id=user_id,
            project_id=payload.project_id,
            original_url=payload.original_url,
            params=payload.params,
        )
        return JobDetailResponse.from_job(job)

    @app.get("/api/jobs", response_model=JobListResponse)
    def list_jobs(
        status: str | None = Query(default=None),
        user_id: str = Depends(current_user_id),
    ) -> JobListResponse:
        jobs = orchestrator.jobs.list_for_user(user_id, status=status)
        return JobListResponse(items=[JobDetailResponse.from_job(j) for j in jobs])

    @app.get("/api/jobs/{job_id}", response_model=JobDetailResponse)
    def get_job(job_id: str, user_id: str = Depends(current_user_id)) -> JobDetailResponse:
        job = orchestrator.jobs.get(job_id)
        if not job or job.user_id != user_id:
            raise JobNotFound(job_id)
        return JobDetailResponse.from_job(job)

    @app.post("/api/jobs/{job_id}/generate", response_model=JobDetailResponse)
    def generate(job_id: str, user_id: str = Depends(current_user_id)) -> JobDetailResponse:
        return JobDetailResponse.from_job(_track(orchestrator.generate(job_id, user_id=user_id)))

    @app.post("/api/jobs/{job_id}/regenerate", response_model=JobDetailResponse)
    def regenerate(
        job_id: str,
        payload: RegenerateRequest | None = None,
        user_id: str = Depends(current_user_id),
    ) -> JobDetailResponse:
        params = payload.params if payload else None
        return JobDetailResponse.from_job(_track(orchestrator.regenerate(job_id, params=params, user_id=user_id)))

    @app.post("/api/jobs/{job_id}/check-status", response_model=JobDetailResponse)
    def check_status(job_id: str, user_id: str = Depends(current_user_id)) -> JobDetailResponse:
        return JobDetailResponse.from_job(_track(orchestrator.check_status(job_id, user_id=user_id)))

    @app.post("/api/webhooks/generation/{job_id}", response_model=WebhookAck)
    async def generation_webhook(
        job_id: str,
        request: Request,
        x_signature: str | None = Header(default=None),
    ) -> WebhookAck:
        raw = await request.body()
        verify_signature(raw, x_signature, services.hmac_secret)
        payload = _parse(WebhookPayload, raw, "webhook")
        job = await run_in_threadpool(orchestrator.report_status, job_id, payload)
        _track(job)
        return WebhookAck(job_id=job.id, status=job.status)

    @app.get("/api/credits/balance", response_model=CreditBalanceResponse)
    def credit_balance(user_id: str = Depends(current_user_id)) -> CreditBalanceResponse:
        stats = ledger.get_stats(user_id)
        return CreditBalanceResponse(
            stats=stats,
            low_balance=ledger.is_low_balance(user_id),
            costs={"standard": ledger.cost_standard, "hd": ledger.cost_hd},
        )

    @app.get("/api/credits/transactions", response_model=TransactionListResponse)
    def credit_transactions(
        limit: int = Query(default=50, ge=1, le=500),
        user_id: str = Depends(current_user_id),
    ) -> TransactionListResponse:
        return TransactionListResponse(items=ledger.list_transactions(user_id, limit=limit))

    @app.post("/api/credits/grant")
    async def grant_credits(request: Request, x_signature: str | None = Header(default=None)) -> dict:
        raw = await request.body()
        verify_signature(raw, x_signature, services.hmac_secret)
        grant = _parse(CreditGrantRequest, raw, "grant")
        txn = ledger.add(
            grant.user_id,
            grant.amount,
            type=grant.type,
            description=grant.description,
            related_invoice_id=grant.related_invoice_id,
        )
        return {"transaction_id": txn.id, "balance": ledger.get_balance(grant.user_id)}

    @app.post("/api/maintenance/sweep")
    async def sweep(request: Request, x_signature: str | None = Header(default=None)) -> dict:
        verify_signature(await request.body(), x_signature, services.hmac_secret)
        timed_out = await run_in_threadpool(orchestrator.fail_stale, cfg.max_processing_seconds)
        for job in timed_out:
            services.poller.stop(job.id)
        expired = services.reservations.expire_stale()
        logger.info("Sweep failed %d stale job(s), expired %d reservation(s)", len(timed_out), len(expired))
        return {"failed_jobs": [j.id for j in timed_out], "expired_reservations": [r.id for r in expired]}

    @app.get("/storage/{relative:path}")
    def download_artifact(relative: str) -> FileResponse:
        path = services.storage.resolve(relative)
        if path is None:
            raise HTTPException(status_code=404, detail="artifact not found")
        return FileResponse(path, media_type="image/png")

    @app.get("/api/health")
    def health() -> dict:
        return {"ok": True, "service": "homestage"}

    return app


configure_logging(settings.log_level)
app = create_app(build_services(settings))
