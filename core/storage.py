from __future__ import annotations

import logging
import time
from pathlib import Path

from core.errors import ExternalProviderError

logger = logging.getLogger(__name__)


class LocalArtifactStorage:
    """Writes generated images under `base_dir` and hands back a public URL."""

    def __init__(self, base_dir: Path | str, public_url: str = "/storage") -> None:
        self.base_dir = Path(base_dir)
        self.public_url = public_url.rstrip("/")

    def job_dir(self, job_id: str) -> Path:
        path = self.base_dir / "jobs" / job_id
        path.mkdir(parents=True, exist_ok=True)
        return path

    def store(self, job_id: str, data: bytes, suffix: str = "png") -> str:
        if not data:
            raise ExternalProviderError("Generated image is empty")
        filename = f"transformed-{time.time_ns()}.{suffix}"
        try:
            path = self.job_dir(job_id) / filename
            path.write_bytes(data)
        except OSError as exc:
            raise ExternalProviderError(f"Failed to upload transformed image: {exc}") from exc
        relative = path.relative_to(self.base_dir).as_posix()
        logger.debug("Stored artifact for job %s at %s", job_id, relative)
        return f"{self.public_url}/{relative}"

    def resolve(self, relative: str) -> Path | None:
        path = (self.base_dir / relative).resolve()
        if self.base_dir.resolve() not in path.parents or not path.is_file():
            return None
        return path

    def discard(self, url: str) -> bool:
        path = self.resolve(url.removeprefix(f"{self.public_url}/"))
        if path is None:
            return False
        path.unlink(missing_ok=True)
        logger.debug("Discarded artifact %s", url)
        return True
