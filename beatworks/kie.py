"""
Kie.ai provider adapter (Veo 3.1 and Runway Gen-3 video models).

    submit: POST {KIE_API_BASE}/{endpoint}/generate        → data.taskId
    poll:   GET  {KIE_API_BASE}/{status_path}?taskId=...   → data.status / data.successFlag

Kie.ai has no cancel endpoint; `cancel` always reports False.
"""

import logging
from typing import Optional

import httpx

from . import config
from .pipeline.errors import ProviderPermanentError, ProviderTransientError
from .pipeline.models import ErrorKind, GenerationSettings, TRANSIENT_ERROR_KINDS
from .pipeline.providers import (
    ProviderJobStatus,
    classify_failure_message,
    classify_http_status,
)

logger = logging.getLogger(__name__)

KIE_API_BASE = "https://api.kie.ai/api/v1"

# Map provider names to their API path segments for GENERATION
MODEL_ENDPOINTS = {
    "veo-3.1": "veo",
    "veo-3.1-fast": "veo",
    "runway-gen3": "runway",
    "runway-gen3-turbo": "runway",
}

# Map provider names to their STATUS polling path
# Veo uses record-info, Runway uses record-detail
MODEL_STATUS_PATHS = {
    "veo-3.1": "veo/record-info",
    "veo-3.1-fast": "veo/record-info",
    "runway-gen3": "runway/record-detail",
    "runway-gen3-turbo": "runway/record-detail",
}

# Map provider names to Kie.ai API model names
MODEL_API_NAMES = {
    "veo-3.1": "veo3",
    "veo-3.1-fast": "veo3_fast",
    "runway-gen3": "runway-gen3",
    "runway-gen3-turbo": "runway-gen3-turbo",
}

SUCCESS_STATUSES = ("SUCCESS", "success")
FAILED_STATUSES = ("GENERATE_FAILED", "CREATE_TASK_FAILED", "SENSITIVE_WORD_ERROR", "fail")


def _raise_for_kind(kind: ErrorKind, message: str, job_id: Optional[str] = None):
    if kind in TRANSIENT_ERROR_KINDS:
        raise ProviderTransientError(message, kind=kind.value, provider_job_id=job_id)
    raise ProviderPermanentError(message, kind=kind.value, provider_job_id=job_id)


def _extract_video_url(record: dict) -> Optional[str]:
    """Kie.ai may use a "results"/"works" array, a response.resultUrls list or direct URL fields."""
    response = record.get("response") or {}
    if isinstance(response, dict) and response.get("resultUrls"):
        return response["resultUrls"][0]

    results = record.get("results") or record.get("works") or []
    if results and isinstance(results, list) and isinstance(results[0], dict):
        first = results[0]
        url = first.get("url") or first.get("videoUrl") or first.get("video_url")
        if url:
            return url

    return record.get("videoUrl") or record.get("url") or record.get("video_url") or record.get("resultUrl")


class KieProvider:
    name = "kie"

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: str = KIE_API_BASE,
        max_in_flight: Optional[int] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key if api_key is not None else config.KIE_API_KEY
        self.base_url = base_url
        self.max_in_flight = max_in_flight or config.PROVIDER_MAX_IN_FLIGHT["kie"]
        self.timeout = timeout
        self._transport = transport
        self._job_models: dict[str, str] = {}

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json",
            },
            timeout=self.timeout,
            transport=self._transport,
        )

    async def _request(self, method: str, path: str, job_id: Optional[str] = None, **kwargs) -> dict:
        try:
            async with self._client() as client:
                response = await client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            raise ProviderTransientError(f"Kie.ai timeout on {path}: {e}", kind="timeout", provider_job_id=job_id)
        except httpx.TransportError as e:
            raise ProviderTransientError(f"Kie.ai unreachable: {e}", kind="server_error", provider_job_id=job_id)

        kind = classify_http_status(response.status_code)
        if kind is not None:
            _raise_for_kind(kind, f"Kie.ai {response.status_code} on {path}: {response.text[:200]}", job_id)

        body = response.json()
        # Kie.ai reports some errors as HTTP 200 with an error code in the body
        code = body.get("code")
        if isinstance(code, int) and code != 200:
            kind = classify_http_status(code) or ErrorKind.API_ERROR
            _raise_for_kind(kind, f"Kie.ai error {code}: {body.get('msg', '')}", job_id)
        return body

    async def submit(
        self,
        prompt: str,
        reference_image: Optional[str],
        settings: GenerationSettings,
        continuity_frame: Optional[str] = None,
    ) -> str:
        """
        Start a generation task.

        With a reference image (or a continuity frame from the previous clip)
        the request uses REFERENCE_2_VIDEO mode; the continuity frame goes first
        so it becomes the opening scene.
        """
        provider = settings.provider.value
        endpoint = MODEL_ENDPOINTS.get(provider, "veo")
        payload = {
            "prompt": prompt,
            "model": MODEL_API_NAMES.get(provider, provider),
            "aspectRatio": settings.aspect_ratio,
            "duration": settings.duration,
            "quality": settings.resolution,
        }
        image_urls = [url for url in (continuity_frame, reference_image) if url]
        if image_urls:
            payload["mode"] = "REFERENCE_2_VIDEO"
            payload["imageUrls"] = image_urls

        logger.info(
            f"Kie.ai request to /{endpoint}/generate: model={payload['model']}, "
            f"mode={payload.get('mode', 'TEXT_2_VIDEO')}"
        )
        body = await self._request("POST", f"/{endpoint}/generate", json=payload)

        data = body.get("data") or {}
        task_id = None
        if isinstance(data, dict):
            task_id = data.get("taskId") or data.get("task_id") or data.get("id")
        if not task_id:
            task_id = body.get("taskId") or body.get("task_id")
        if not task_id:
            raise ProviderPermanentError(f"Kie.ai submit returned no task id: {body}")

        self._job_models[task_id] = provider
        return task_id

    async def poll(self, provider_job_id: str) -> ProviderJobStatus:
        status_path = MODEL_STATUS_PATHS.get(self._job_models.get(provider_job_id, ""), "veo/record-info")
        body = await self._request(
            "GET", f"/{status_path}", job_id=provider_job_id, params={"taskId": provider_job_id}
        )

        record = body.get("data") if isinstance(body, dict) else None
        if not isinstance(record, dict):
            record = {}

        # data.status = "SUCCESS" / "GENERATING" / "PENDING" / "GENERATE_FAILED"
        # Veo also sets data.successFlag = 0 (generating), 1 (success), 2/3 (failed)
        raw_status = record.get("status", "")
        success_flag = record.get("successFlag")

        if raw_status in SUCCESS_STATUSES or success_flag == 1:
            self._job_models.pop(provider_job_id, None)
            return ProviderJobStatus(
                status="succeeded",
                result_url=_extract_video_url(record),
                last_frame_url=record.get("lastFrameUrl") or record.get("last_frame_url"),
            )
        if raw_status in FAILED_STATUSES or success_flag in (2, 3):
            self._job_models.pop(provider_job_id, None)
            message = record.get("errorMessage") or record.get("failReason") or record.get("msg") or "Unknown error"
            kind = (
                ErrorKind.CONTENT_REJECTED
                if raw_status == "SENSITIVE_WORD_ERROR"
                else classify_failure_message(message)
            )
            return ProviderJobStatus(status="failed", error_kind=kind, message=f"Kie.ai task failed: {message}")
        if raw_status in ("PENDING", "queuing", "waiting"):
            return ProviderJobStatus(status="queued")
        return ProviderJobStatus(status="running")

    async def cancel(self, provider_job_id: str) -> bool:
        logger.info(f"Kie.ai does not support cancelling task {provider_job_id}")
        return False
