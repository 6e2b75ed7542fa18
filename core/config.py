from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv


ROOT_DIR = Path(__file__).resolve().parents[1]
load_dotenv(ROOT_DIR / ".env")


def _split_origins(raw: str) -> tuple[str, ...]:
    return tuple(origin.strip() for origin in raw.split(",") if origin.strip())


@dataclass(frozen=True)
class Settings:
    app_name: str = "HomeStage Studio API"
    app_version: str = "0.1.0"
    allowed_origins: tuple[str, ...] = _split_origins(
        os.getenv(
            "HOMESTAGE_ALLOWED_ORIGIN",
            "http://localhost:3000,http://127.0.0.1:3000",
        )
    )
    log_level: str = os.getenv("HOMESTAGE_LOG_LEVEL", "INFO")
    hmac_secret: str = os.getenv("HOMESTAGE_HMAC_SECRET", "homestage-dev-secret")

    credit_cost_standard: int = int(os.getenv("HOMESTAGE_CREDIT_COST_STANDARD", "1"))
    credit_cost_hd: int = int(os.getenv("HOMESTAGE_CREDIT_COST_HD", "2"))
    reservation_ttl_minutes: int = int(os.getenv("HOMESTAGE_RESERVATION_TTL_MINUTES", "90"))

    poll_interval_seconds: float = float(os.getenv("HOMESTAGE_POLL_INTERVAL", "5"))
    poll_max_attempts: int = int(os.getenv("HOMESTAGE_POLL_MAX_ATTEMPTS", "60"))
    max_processing_seconds: int = int(os.getenv("HOMESTAGE_MAX_PROCESSING_SECONDS", "3600"))
    worker_threads: int = int(os.getenv("HOMESTAGE_WORKER_THREADS", "4"))

    provider: str = os.getenv("HOMESTAGE_PROVIDER", "mock")
    provider_base_url: str = os.getenv("HOMESTAGE_PROVIDER_URL", "https://api.nanobananaapi.ai/api/v1/nanobanana")
    provider_api_key: str = os.getenv("HOMESTAGE_PROVIDER_API_KEY", "")
    provider_timeout_seconds: float = float(os.getenv("HOMESTAGE_PROVIDER_TIMEOUT", "30"))
    provider_callback_url: str = os.getenv("HOMESTAGE_PROVIDER_CALLBACK_URL", "")

    storage_dir: str = os.getenv("HOMESTAGE_STORAGE_DIR", str(ROOT_DIR / "storage"))
    storage_public_url: str = os.getenv("HOMESTAGE_STORAGE_PUBLIC_URL", "/storage")

    def __post_init__(self) -> None:
        # a hold must outlive the job it pays for
        if self.reservation_ttl_minutes * 60 <= self.max_processing_seconds:
            raise ValueError(
                "HOMESTAGE_RESERVATION_TTL_MINUTES must exceed HOMESTAGE_MAX_PROCESSING_SECONDS "
                f"({self.reservation_ttl_minutes} min vs {self.max_processing_seconds}s)"
            )


settings = Settings()
