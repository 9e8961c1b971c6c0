"""
Provider Adapter contract.

One adapter per third-party video generator. The orchestrator only ever talks
to this interface: submit a job, poll it until it finishes, and (best-effort)
cancel it. Adapters raise ProviderTransientError / ProviderPermanentError from
`submit` and `poll` when the HTTP call itself fails; a job that *runs* and
fails is reported through `ProviderJobStatus.error_kind` instead.
"""

from typing import Literal, Optional, Protocol, runtime_checkable

from pydantic import BaseModel

from .errors import ProviderPermanentError, ProviderTransientError
from .models import ErrorKind, GenerationSettings, TRANSIENT_ERROR_KINDS


class ProviderJobStatus(BaseModel):
    status: Literal["queued", "running", "succeeded", "failed"]
    result_url: Optional[str] = None
    last_frame_url: Optional[str] = None
    duration: Optional[float] = None
    file_size: Optional[int] = None
    error_kind: Optional[ErrorKind] = None
    message: Optional[str] = None


@runtime_checkable
class ProviderAdapter(Protocol):
    name: str
    max_in_flight: int

    async def submit(
        self,
        prompt: str,
        reference_image: Optional[str],
        settings: GenerationSettings,
        continuity_frame: Optional[str] = None,
    ) -> str:
        """Start a job. Returns the provider's job id."""
        ...

    async def poll(self, provider_job_id: str) -> ProviderJobStatus:
        ...

    async def cancel(self, provider_job_id: str) -> bool:
        """Best-effort. Returns False when the provider cannot cancel."""
        ...


def error_for_status(status: ProviderJobStatus, provider_job_id: str):
    """Exception matching a failed job's error kind (transient kinds are retryable)."""
    kind = status.error_kind or ErrorKind.UNKNOWN
    message = status.message or f"Provider job {provider_job_id} failed ({kind.value})"
    if kind in TRANSIENT_ERROR_KINDS:
        return ProviderTransientError(message, kind=kind.value, provider_job_id=provider_job_id)
    return ProviderPermanentError(message, kind=kind.value, provider_job_id=provider_job_id)


def classify_http_status(status_code: int) -> Optional[ErrorKind]:
    """Map an HTTP error status to an ErrorKind. None for success codes."""
    if status_code < 400:
        return None
    if status_code == 429:
        return ErrorKind.RATE_LIMITED
    if status_code in (408, 504):
        return ErrorKind.TIMEOUT
    if status_code >= 500:
        return ErrorKind.SERVER_ERROR
    if status_code == 402:
        return ErrorKind.CREDIT_INSUFFICIENT
    return ErrorKind.API_ERROR


# Phrases providers use when a prompt or image trips their safety filters
CONTENT_REJECTION_MARKERS = ("safety", "policy", "moderation", "nsfw", "prohibited", "content")


def classify_failure_message(message: str) -> ErrorKind:
    lowered = (message or "").lower()
    if any(marker in lowered for marker in CONTENT_REJECTION_MARKERS):
        return ErrorKind.CONTENT_REJECTED
    if "timeout" in lowered or "timed out" in lowered:
        return ErrorKind.TIMEOUT
    if "image" in lowered and ("invalid" in lowered or "download" in lowered):
        return ErrorKind.INVALID_REFERENCE
    return ErrorKind.API_ERROR
