from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import requests

from core.errors import ExternalProviderError
from providers.base import ImageProvider, ProviderStatus, SubmitResult

logger = logging.getLogger(__name__)

IMAGE_TO_IMAGE_TYPE = "IMAGETOIAMGE"  # sic, the API's spelling

# successFlag values from record-info
FLAG_PROCESSING = 0
FLAG_COMPLETED = 1
FLAG_FAILED = {2: "Task creation failed", 3: "Generation failed"}


def _first(*values: Any) -> Optional[Any]:
    for value in values:
        if value:
            return value
    return None


class HttpImageProvider(ImageProvider):
    name = "nanobanana"

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: float = 30.0,
        callback_url: str = "",
        session: Optional[requests.Session] = None,
    ) -> None:
        if not api_key:
            raise ValueError("provider API key is not configured")
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.callback_url = callback_url
        self.session = session or requests.Session()

    def submit(self, source_url: str, params: Dict[str, Any]) -> SubmitResult:
        body = {
            "prompt": params.get("prompt") or params.get("custom_prompt") or params.get("transformation_type"),
            "numImages": 1,
            "type": IMAGE_TO_IMAGE_TYPE,
            "imageUrls": [source_url],
            "strength": params.get("strength", 0.15),
        }
        if params.get("negative_prompt"):
            body["negative_prompt"] = params["negative_prompt"]
        if self.callback_url:
            body["callBackUrl"] = self.callback_url

        payload = self._request("POST", f"{self.base_url}/generate", json=body)
        data = payload.get("data") or {}
        result_url = _first(data.get("imageUrl"), payload.get("imageUrl"), payload.get("url"))
        task_id = _first(data.get("taskId"), payload.get("taskId"))
        if not result_url and not task_id:
            raise ExternalProviderError("No image URL or task id in provider response")
        if result_url:
            return SubmitResult(result_url=result_url)
        logger.debug("Provider task queued with id %s", task_id)
        return SubmitResult(task_id=str(task_id))

    def poll_status(self, task_id: str) -> ProviderStatus:
        payload = self._request("GET", f"{self.base_url}/record-info", params={"taskId": task_id})
        data = payload.get("data") or {}
        flag = data.get("successFlag", payload.get("successFlag"))
        response = data.get("response") or {}

        if flag == FLAG_COMPLETED:
            result_url = _first(
                response.get("resultImageUrl"),
                response.get("originImageUrl"),
                data.get("resultImageUrl"),
                data.get("imageUrl"),
            )
            if not result_url:
                return ProviderStatus(
                    status="failed", error="Task completed but no image URL returned", task_id=task_id
                )
            return ProviderStatus(status="completed", result_url=result_url, task_id=task_id)
        if flag in FLAG_FAILED:
            return ProviderStatus(
                status="failed",
                error=data.get("errorMessage") or FLAG_FAILED[flag],
                task_id=task_id,
            )
        if flag != FLAG_PROCESSING:
            logger.warning("Unknown successFlag %r for task %s, treating as processing", flag, task_id)
        return ProviderStatus(status="processing", task_id=task_id)

    def download(self, url: str) -> bytes:
        try:
            response = self.session.get(url, timeout=self.timeout)
        except requests.RequestException as exc:
            raise ExternalProviderError(f"Failed to download generated image: {exc}") from exc
        if response.status_code != 200:
            raise ExternalProviderError(f"Failed to download generated image: {response.status_code}")
        return response.content

    def _request(self, method: str, url: str, **kwargs) -> Dict[str, Any]:
        headers = {"Authorization": f"Bearer {self.api_key}"}
        try:
            response = self.session.request(method, url, headers=headers, timeout=self.timeout, **kwargs)
        except requests.Timeout as exc:
            raise ExternalProviderError(f"Request timeout after {self.timeout}s") from exc
        except requests.RequestException as exc:
            raise ExternalProviderError(f"Failed to connect to image provider: {exc}") from exc

        if response.status_code >= 400:
            raise ExternalProviderError(
                f"Image provider failed: {response.status_code} - {response.text[:500]}",
                {"status_code": response.status_code},
            )
        try:
            return response.json()
        except ValueError as exc:
            raise ExternalProviderError("Image provider returned invalid JSON") from exc
