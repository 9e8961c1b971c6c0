"""
WaveSpeed AI provider adapter (Luma Ray models).

    submit: POST {WAVESPEED_API_BASE}/{model_id}                  → data.id
    poll:   GET  {WAVESPEED_API_BASE}/predictions/{id}/result     → data.status, data.outputs
    cancel: POST {WAVESPEED_API_BASE}/predictions/{id}/cancel
"""

import logging
from typing import Optional

import httpx

from . import config
from .pipeline.errors import ProviderError, ProviderPermanentError, ProviderTransientError
from .pipeline.models import ErrorKind, GenerationSettings, TRANSIENT_ERROR_KINDS
from .pipeline.providers import (
    ProviderJobStatus,
    classify_failure_message,
    classify_http_status,
)

logger = logging.getLogger(__name__)

WAVESPEED_API_BASE = "https://api.wavespeed.ai/api/v3"

MODEL_IDS = {
    "luma": "luma/ray-2",
    "luma-flash": "luma/ray-2-flash",
}


class WaveSpeedProvider:
    name = "wavespeed"

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: str = WAVESPEED_API_BASE,
        max_in_flight: Optional[int] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key if api_key is not None else config.WAVESPEED_API_KEY
        self.base_url = base_url
        self.max_in_flight = max_in_flight or config.PROVIDER_MAX_IN_FLIGHT["wavespeed"]
        self.timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers={"Authorization": f"Bearer {self.api_key}"},
            timeout=self.timeout,
            transport=self._transport,
        )

    async def _request(self, method: str, path: str, job_id: Optional[str] = None, **kwargs) -> dict:
        try:
            async with self._client() as client:
                response = await client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            raise ProviderTransientError(f"WaveSpeed timeout on {path}: {e}", kind="timeout", provider_job_id=job_id)
        except httpx.TransportError as e:
            raise ProviderTransientError(f"WaveSpeed unreachable: {e}", kind="server_error", provider_job_id=job_id)

        kind = classify_http_status(response.status_code)
        if kind is not None:
            message = f"WaveSpeed {response.status_code} on {path}: {response.text[:200]}"
            if kind in TRANSIENT_ERROR_KINDS:
                raise ProviderTransientError(message, kind=kind.value, provider_job_id=job_id)
            raise ProviderPermanentError(message, kind=kind.value, provider_job_id=job_id)
        return response.json()

    async def submit(
        self,
        prompt: str,
        reference_image: Optional[str],
        settings: GenerationSettings,
        continuity_frame: Optional[str] = None,
    ) -> str:
        model_id = MODEL_IDS.get(settings.provider.value, MODEL_IDS["luma"])
        payload = {
            "prompt": prompt,
            "duration": settings.duration,
            "resolution": settings.resolution,
            "aspect_ratio": settings.aspect_ratio,
        }
        # Image-to-video: the previous clip's last frame wins over the character reference
        image = continuity_frame or reference_image
        if image:
            payload["image"] = image

        logger.info(f"WaveSpeed generation: model={model_id}, image={'yes' if image else 'no'}")
        body = await self._request("POST", f"/{model_id}", json=payload)

        data = body.get("data") or {}
        job_id = data.get("id") if isinstance(data, dict) else None
        if not job_id:
            raise ProviderPermanentError(f"WaveSpeed submit returned no prediction id: {body}")
        return job_id

    async def poll(self, provider_job_id: str) -> ProviderJobStatus:
        body = await self._request(
            "GET", f"/predictions/{provider_job_id}/result", job_id=provider_job_id
        )
        data = body.get("data") or {}
        status = data.get("status", "")

        if status == "completed":
            outputs = data.get("outputs") or []
            return ProviderJobStatus(
                status="succeeded",
                result_url=outputs[0] if outputs else None,
                last_frame_url=outputs[1] if len(outputs) > 1 else None,
            )
        if status == "failed":
            message = data.get("error") or "Unknown error"
            return ProviderJobStatus(
                status="failed",
                error_kind=classify_failure_message(message),
                message=f"WaveSpeed prediction failed: {message}",
            )
        if status == "created":
            return ProviderJobStatus(status="queued")
        return ProviderJobStatus(status="running")

    async def cancel(self, provider_job_id: str) -> bool:
        try:
            await self._request("POST", f"/predictions/{provider_job_id}/cancel", job_id=provider_job_id)
        except ProviderError as e:
            if e.kind == ErrorKind.API_ERROR.value:
                # 4xx: already finished or not cancellable
                return False
            raise
        return True
