import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest

from core.errors import (
    ExternalProviderError,
    InsufficientCredits,
    InvalidJobState,
    JobNotFound,
    ReservationConfirmationError,
    ReservationNotPending,
)
from core.jobs import GenerationParams
from ledger.models import utcnow
from ledger.reservations import ReservationManager
from ledger.store import InMemoryLedgerStore
from pipeline import GenerationOrchestrator
from providers.base import ProviderStatus
from providers.mock_provider import MockImageProvider

USER_ID = "user-1"


class FailingSubmitProvider(MockImageProvider):
    def submit(self, source_url, params):
        raise ExternalProviderError("Failed to connect to image provider: connection reset")


class BrokenConfirmStore(InMemoryLedgerStore):
    def confirm_reservation(self, reservation_id, metadata=None, description=None, related_image_id=None):
        raise RuntimeError("ledger write failed")


def usage_transactions(ledger):
    return [t for t in ledger.list_transactions(USER_ID) if t.type == "usage"]


def test_async_generation_completes_on_poll(orchestrator, ledger, make_job, storage):
    ledger.add(USER_ID, 5)
    job = make_job()

    processing = orchestrator.generate(job.id, user_id=USER_ID)
    assert processing.status == "processing"
    assert processing.external_task_id == "mock-task-1"
    assert processing.reservation_id
    assert ledger.get_stats(USER_ID).available == 4
    assert ledger.get_balance(USER_ID) == 5

    done = orchestrator.check_status(job.id, user_id=USER_ID)

    assert done.status == "completed"
    assert done.transformed_url.startswith("/storage/jobs/")
    assert done.duration_ms is not None
    assert storage.resolve(done.transformed_url.removeprefix("/storage/")) is not None
    [usage] = usage_transactions(ledger)
    assert usage.amount == -1
    assert usage.related_image_id == job.id
    assert usage.metadata.settled_via == "poll"
    assert usage.metadata.external_task_id == "mock-task-1"
    assert ledger.get_stats(USER_ID).pending_reserved == 0


def test_sync_provider_completes_immediately(job_store, reservations, ledger, storage, make_job):
    orchestrator = GenerationOrchestrator(
        job_store, reservations, ledger, MockImageProvider(mode="sync"), storage
    )
    ledger.add(USER_ID, 5)
    job = make_job(quality="hd")

    done = orchestrator.generate(job.id)

    assert done.status == "completed"
    assert done.external_task_id is None
    [usage] = usage_transactions(ledger)
    assert usage.amount == -2
    assert usage.metadata.settled_via == "immediate"
    assert usage.metadata.image_quality == "hd"


def test_concurrent_generate_never_overspends(orchestrator, ledger, make_job):
    ledger.add(USER_ID, 5)
    jobs = [make_job() for _ in range(10)]
    barrier = threading.Barrier(10)

    def start(job):
        barrier.wait()
        try:
            return orchestrator.generate(job.id)
        except InsufficientCredits:
            return None

    with ThreadPoolExecutor(max_workers=10) as pool:
        results = list(pool.map(start, jobs))

    started = [r for r in results if r is not None]
    assert len(started) == 5
    assert all(r.status == "processing" for r in started)

    for job in started:
        assert orchestrator.check_status(job.id).status == "completed"
    assert ledger.get_balance(USER_ID) == 0
    assert len(usage_transactions(ledger)) == 5
    assert len(orchestrator.jobs.list_for_user(USER_ID, status="pending")) == 5


def test_provider_error_fails_job_and_releases_credits(job_store, reservations, ledger, storage, make_job, ledger_store):
    orchestrator = GenerationOrchestrator(job_store, reservations, ledger, FailingSubmitProvider(), storage)
    ledger.add(USER_ID, 5)
    job = make_job()

    failed = orchestrator.generate(job.id)

    assert failed.status == "failed"
    assert "connection reset" in failed.error_message
    [reservation] = ledger_store.list_reservations(USER_ID)
    assert reservation.status == "cancelled"
    assert ledger.get_balance(USER_ID) == 5
    assert ledger.get_stats(USER_ID).available == 5
    assert usage_transactions(ledger) == []


def test_repeated_completed_polls_bill_once(orchestrator, ledger, make_job):
    ledger.add(USER_ID, 5)
    job = make_job()
    orchestrator.generate(job.id)

    first = orchestrator.check_status(job.id)
    second = orchestrator.check_status(job.id)

    assert first.status == second.status == "completed"
    assert first.transformed_url == second.transformed_url
    assert len(usage_transactions(ledger)) == 1
    assert ledger.get_balance(USER_ID) == 4


def test_poll_and_webhook_race_settles_once(orchestrator, ledger, make_job):
    ledger.add(USER_ID, 5)
    job = make_job()
    task_id = orchestrator.generate(job.id).external_task_id
    payload = {"taskId": task_id, "status": "completed", "resultUrl": f"mock://results/{task_id}.png"}
    barrier = threading.Barrier(2)

    def via_poll():
        barrier.wait()
        return orchestrator.check_status(job.id)

    def via_webhook():
        barrier.wait()
        return orchestrator.report_status(job.id, payload)

    with ThreadPoolExecutor(max_workers=2) as pool:
        results = [f.result() for f in [pool.submit(via_poll), pool.submit(via_webhook)]]

    assert all(r.status == "completed" for r in results)
    assert len(usage_transactions(ledger)) == 1
    assert ledger.get_balance(USER_ID) == 4


def test_webhook_failure_cancels_reservation(orchestrator, ledger, ledger_store, make_job):
    ledger.add(USER_ID, 5)
    job = make_job()
    task_id = orchestrator.generate(job.id).external_task_id

    failed = orchestrator.report_status(job.id, {"taskId": task_id, "status": "failed", "error": "NSFW"})

    assert failed.status == "failed"
    assert failed.error_message == "NSFW"
    assert ledger_store.list_reservations(USER_ID)[0].status == "cancelled"
    assert ledger.get_stats(USER_ID).available == 5


def test_webhook_for_other_task_is_ignored(orchestrator, ledger, make_job):
    ledger.add(USER_ID, 5)
    job = make_job()
    orchestrator.generate(job.id)

    unchanged = orchestrator.report_status(
        job.id, {"taskId": "someone-elses-task", "status": "completed", "resultUrl": "mock://results/x.png"}
    )

    assert unchanged.status == "processing"
    assert usage_transactions(ledger) == []


def test_processing_webhook_keeps_job_processing(orchestrator, ledger, make_job):
    ledger.add(USER_ID, 5)
    job = make_job()
    task_id = orchestrator.generate(job.id).external_task_id

    still = orchestrator.report_status(job.id, {"taskId": task_id, "status": "pending"})

    assert still.status == "processing"


def test_provider_failure_reported_by_poll(orchestrator, provider, ledger, make_job):
    ledger.add(USER_ID, 5)
    job = make_job()
    task_id = orchestrator.generate(job.id).external_task_id
    provider.fail_task(task_id, "Generation failed")

    failed = orchestrator.check_status(job.id)

    assert failed.status == "failed"
    assert failed.error_message == "Generation failed"
    assert ledger.get_stats(USER_ID).available == 5


def test_poll_error_leaves_job_processing(orchestrator, ledger, job_store, make_job):
    ledger.add(USER_ID, 5)
    job = make_job()
    orchestrator.generate(job.id)
    job_store.transition(job.id, "processing", external_task_id="unknown-task")

    with pytest.raises(ExternalProviderError):
        orchestrator.check_status(job.id)

    assert job_store.get(job.id).status == "processing"
    assert ledger.get_stats(USER_ID).pending_reserved == 1


def test_storage_failure_fails_job_without_billing(orchestrator, ledger, storage, make_job, monkeypatch):
    ledger.add(USER_ID, 5)
    job = make_job()
    orchestrator.generate(job.id)

    def broken_store(job_id, data, suffix="png"):
        raise ExternalProviderError("Failed to upload transformed image: disk full")

    monkeypatch.setattr(storage, "store", broken_store)
    failed = orchestrator.check_status(job.id)

    assert failed.status == "failed"
    assert "disk full" in failed.error_message
    assert usage_transactions(ledger) == []
    assert ledger.get_stats(USER_ID).available == 5


def test_generate_requires_pending_job(orchestrator, ledger, make_job):
    ledger.add(USER_ID, 5)
    job = make_job()
    orchestrator.generate(job.id)

    with pytest.raises(InvalidJobState) as exc_info:
        orchestrator.generate(job.id)

    assert exc_info.value.status == "processing"
    assert ledger.get_stats(USER_ID).pending_reserved == 1


def test_generate_without_credits_leaves_job_pending(orchestrator, make_job, job_store):
    job = make_job()

    with pytest.raises(InsufficientCredits):
        orchestrator.generate(job.id)

    assert job_store.get(job.id).status == "pending"


def test_other_users_job_is_not_found(orchestrator, ledger, make_job):
    job = make_job()

    with pytest.raises(JobNotFound):
        orchestrator.generate(job.id, user_id="intruder")
    with pytest.raises(JobNotFound):
        orchestrator.check_status("missing")


def test_regenerate_archives_previous_attempt(orchestrator, ledger, make_job):
    ledger.add(USER_ID, 5)
    job = make_job()
    orchestrator.generate(job.id)
    first = orchestrator.check_status(job.id)

    retried = orchestrator.regenerate(
        job.id, params=GenerationParams(transformation_type="scandinavian", quality="hd")
    )

    assert retried.status == "processing"
    assert retried.attempt == 2
    assert retried.params.transformation_type == "scandinavian"
    assert retried.transformed_url is None
    assert retried.external_task_id == "mock-task-2"
    [previous] = retried.history
    assert previous.attempt == 1
    assert previous.status == "completed"
    assert previous.transformed_url == first.transformed_url

    done = orchestrator.check_status(job.id)
    assert done.status == "completed"
    assert ledger.get_balance(USER_ID) == 2
    assert [u.metadata.attempt for u in usage_transactions(ledger)] == [2, 1]


def test_regenerate_requires_terminal_job(orchestrator, ledger, make_job):
    ledger.add(USER_ID, 5)
    job = make_job()

    with pytest.raises(InvalidJobState):
        orchestrator.regenerate(job.id)

    orchestrator.generate(job.id)
    with pytest.raises(InvalidJobState):
        orchestrator.regenerate(job.id)


def test_stale_task_cannot_resolve_new_attempt(orchestrator, provider, ledger, make_job):
    ledger.add(USER_ID, 5)
    job = make_job()
    old_task = orchestrator.generate(job.id).external_task_id
    provider.fail_task(old_task)
    orchestrator.check_status(job.id)
    orchestrator.regenerate(job.id)

    unchanged = orchestrator.check_status(job.id, task_id=old_task)

    assert unchanged.status == "processing"
    assert unchanged.attempt == 2


def test_fail_stale_times_out_old_processing_jobs(orchestrator, ledger, make_job, job_store):
    ledger.add(USER_ID, 5)
    old = make_job()
    fresh = make_job()
    orchestrator.generate(old.id)
    orchestrator.generate(fresh.id)
    started = job_store.get(old.id).processing_started_at
    job_store.transition(old.id, "processing", processing_started_at=started - timedelta(hours=2))

    failed = orchestrator.fail_stale(3600)

    assert [j.id for j in failed] == [old.id]
    assert "timed out" in failed[0].error_message
    assert job_store.get(fresh.id).status == "processing"
    assert ledger.get_stats(USER_ID).pending_reserved == 1
    assert orchestrator.fail_stale(3600) == []


def test_billing_failure_keeps_job_completed_and_flags_it(job_store, ledger, storage, provider, make_job):
    store = BrokenConfirmStore()
    store.append_transaction(USER_ID, 5, "purchase", "Starter pack")
    reservations = ReservationManager(store)
    orchestrator = GenerationOrchestrator(job_store, reservations, ledger, provider, storage)
    job = make_job()
    orchestrator.generate(job.id)

    with pytest.raises(ReservationConfirmationError) as exc_info:
        orchestrator.check_status(job.id)

    flagged = exc_info.value.result
    assert flagged.status == "completed"
    assert flagged.transformed_url
    assert "ledger write failed" in flagged.billing_error
    assert job_store.get(job.id).billing_error == flagged.billing_error
    assert store.get_stats(USER_ID).pending_reserved == 0
    assert store.get_balance(USER_ID) == 5


def test_expired_hold_turns_completion_into_billing_error(orchestrator, reservations, ledger, make_job):
    ledger.add(USER_ID, 5)
    job = make_job()
    orchestrator.generate(job.id)
    assert len(reservations.expire_stale(utcnow() + timedelta(minutes=31))) == 1

    with pytest.raises(ReservationConfirmationError) as exc_info:
        orchestrator.check_status(job.id)

    flagged = exc_info.value.result
    assert isinstance(exc_info.value.cause, ReservationNotPending)
    assert flagged.status == "completed"
    assert "cancelled" in flagged.billing_error
    assert orchestrator.jobs.get(job.id).billing_error == flagged.billing_error
    assert usage_transactions(ledger) == []


def test_duplicate_completion_keeps_a_single_artifact(orchestrator, ledger, make_job, storage):
    ledger.add(USER_ID, 5)
    job = make_job()
    snapshot = orchestrator.generate(job.id)
    result = ProviderStatus(
        status="completed",
        result_url=f"mock://results/{snapshot.external_task_id}.png",
        task_id=snapshot.external_task_id,
    )

    first = orchestrator._resolve(snapshot, result, via="poll")
    second = orchestrator._resolve(snapshot, result, via="webhook")

    assert first.status == second.status == "completed"
    assert second.transformed_url == first.transformed_url
    files = list(storage.base_dir.rglob("*.png"))
    assert len(files) == 1
    assert storage.resolve(first.transformed_url.removeprefix("/storage/")) == files[0].resolve()
    assert len(usage_transactions(ledger)) == 1


def test_late_download_error_does_not_fail_completed_job(orchestrator, provider, ledger, make_job, monkeypatch):
    ledger.add(USER_ID, 5)
    job = make_job()
    snapshot = orchestrator.generate(job.id)
    result = ProviderStatus(
        status="completed",
        result_url=f"mock://results/{snapshot.external_task_id}.png",
        task_id=snapshot.external_task_id,
    )
    orchestrator._resolve(snapshot, result, via="poll")

    def broken_download(url):
        raise ExternalProviderError("Failed to download generated image: 503")

    monkeypatch.setattr(provider, "download", broken_download)
    late = orchestrator._resolve(snapshot, result, via="webhook")

    assert late.status == "completed"
    assert late.error_message is None
    assert len(usage_transactions(ledger)) == 1
