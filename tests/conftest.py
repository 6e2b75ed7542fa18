import pytest

from core.jobs import GenerationParams, JobStore
from core.storage import LocalArtifactStorage
from ledger.credits import CreditLedger
from ledger.reservations import ReservationManager
from ledger.store import InMemoryLedgerStore
from pipeline import GenerationOrchestrator
from providers.mock_provider import MockImageProvider

USER_ID = "user-1"
OTHER_USER_ID = "user-2"


@pytest.fixture
def ledger_store():
    return InMemoryLedgerStore()


@pytest.fixture
def ledger(ledger_store):
    return CreditLedger(ledger_store, cost_standard=1, cost_hd=2)


@pytest.fixture
def reservations(ledger_store):
    return ReservationManager(ledger_store, ttl_minutes=30)


@pytest.fixture
def job_store():
    return JobStore()


@pytest.fixture
def provider():
    return MockImageProvider(mode="async", complete_after=1)


@pytest.fixture
def storage(tmp_path):
    return LocalArtifactStorage(tmp_path / "storage", "/storage")


@pytest.fixture
def orchestrator(job_store, reservations, ledger, provider, storage):
    return GenerationOrchestrator(
        jobs=job_store,
        reservations=reservations,
        ledger=ledger,
        provider=provider,
        storage=storage,
    )


@pytest.fixture
def make_job(job_store):
    def _make(user_id=USER_ID, quality="standard", original_url="https://cdn.example.com/room.jpg"):
        params = GenerationParams(transformation_type="modern", quality=quality)
        return job_store.create(user_id=user_id, project_id="project-1", original_url=original_url, params=params)

    return _make
