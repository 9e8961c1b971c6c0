"""
Simulated provider for local development (BEATWORKS_ENABLE_MOCKS=true).

Jobs finish after a fixed number of polls with a placeholder video. A prompt
containing "[fail]" fails with a content rejection, "[flaky]" fails transiently
on the first attempt.
"""

import logging
from typing import Optional
from uuid import uuid4

from . import config
from .pipeline.models import ErrorKind, GenerationSettings
from .pipeline.providers import ProviderJobStatus

logger = logging.getLogger(__name__)

PLACEHOLDER_VIDEO = "https://commondatastorage.googleapis.com/gtv-videos-bucket/sample/BigBuckBunny.mp4"
PLACEHOLDER_FRAME = "https://commondatastorage.googleapis.com/gtv-videos-bucket/sample/images/BigBuckBunny.jpg"


class SimulatedProvider:
    name = "simulated"

    def __init__(self, polls_to_complete: int = 2, max_in_flight: Optional[int] = None):
        self.polls_to_complete = polls_to_complete
        self.max_in_flight = max_in_flight or config.PROVIDER_MAX_IN_FLIGHT["simulated"]
        self._jobs: dict[str, dict] = {}
        self._flaky_seen: set[str] = set()

    async def submit(
        self,
        prompt: str,
        reference_image: Optional[str],
        settings: GenerationSettings,
        continuity_frame: Optional[str] = None,
    ) -> str:
        job_id = f"sim_{uuid4().hex[:12]}"
        self._jobs[job_id] = {"prompt": prompt, "polls": 0, "duration": settings.duration, "cancelled": False}
        logger.info(f"Simulated generation {job_id}: {prompt[:80]}")
        return job_id

    async def poll(self, provider_job_id: str) -> ProviderJobStatus:
        job = self._jobs[provider_job_id]
        job["polls"] += 1

        if job["cancelled"]:
            return ProviderJobStatus(status="failed", error_kind=ErrorKind.CANCELLED, message="Cancelled")
        if job["polls"] < self.polls_to_complete:
            return ProviderJobStatus(status="running")

        prompt = job["prompt"]
        if "[fail]" in prompt:
            return ProviderJobStatus(
                status="failed", error_kind=ErrorKind.CONTENT_REJECTED, message="Simulated content rejection"
            )
        if "[flaky]" in prompt and prompt not in self._flaky_seen:
            self._flaky_seen.add(prompt)
            return ProviderJobStatus(
                status="failed", error_kind=ErrorKind.SERVER_ERROR, message="Simulated 503"
            )
        return ProviderJobStatus(
            status="succeeded",
            result_url=PLACEHOLDER_VIDEO,
            last_frame_url=PLACEHOLDER_FRAME,
            duration=job["duration"],
        )

    async def cancel(self, provider_job_id: str) -> bool:
        job = self._jobs.get(provider_job_id)
        if job is None:
            return False
        job["cancelled"] = True
        return True
