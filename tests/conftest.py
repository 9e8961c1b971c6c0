import asyncio

import fakeredis
import pytest

from beatworks import metrics
from beatworks.pipeline.errors import ProviderTransientError
from beatworks.pipeline.ledger import InMemoryCreditLedger, RedisCreditLedger
from beatworks.pipeline.models import (
    CharacterAssignment,
    CharacterProfile,
    CharacterReference,
    ClipPosition,
    ClipVisibility,
    CompositionPlan,
    CompositionTemplate,
    ErrorKind,
    GenerationSettings,
    ReferenceType,
    TemplateCategory,
    VideoProvider,
)
from beatworks.pipeline.orchestrator import ClipGenerationOrchestrator, RetryPolicy
from beatworks.pipeline.pricing import clip_base_cost
from beatworks.pipeline.providers import ProviderJobStatus
from beatworks.pipeline.references import CharacterReferenceLibrary
from beatworks.pipeline.store import ProductionStore
from beatworks.provider_limiter import ProviderLimiter

ACCOUNT = "acct_test"
STARTING_BALANCE = 1000
# Default GenerationSettings: veo-3.1-fast, 5s, 1080p
CLIP_COST = clip_base_cost(VideoProvider.VEO_31_FAST, 5, "1080p")


class FakeProvider:
    """
    Scripted provider adapter.

    A clip is keyed by the first word of its prompt ("clip-0", "clip-1" ...).
    `script(key, *outcomes)` queues one outcome per attempt; unscripted attempts
    succeed. Outcomes: "ok", "transient", "permanent", "raise-transient",
    "crash", "hang". With `last_frames=False` finished jobs carry no last frame.
    """

    name = "fake"

    def __init__(self, max_in_flight: int = 4, polls_before_done: int = 1, last_frames: bool = True):
        self.max_in_flight = max_in_flight
        self.last_frames = last_frames
        self.polls_before_done = polls_before_done
        self.scripts: dict[str, list[str]] = {}
        self.gates: dict[str, asyncio.Event] = {}
        self.submissions: list[dict] = []
        self.events: list[tuple] = []
        self.cancel_calls: list[str] = []
        self.in_flight = 0
        self.max_seen = 0
        self._jobs: dict[str, dict] = {}

    def script(self, key: str, *outcomes: str):
        self.scripts[key] = list(outcomes)

    def gate(self, key: str) -> asyncio.Event:
        """Hold every poll for `key` until the returned event is set."""
        event = self.gates[key] = asyncio.Event()
        return event

    def submitted(self, key: str) -> list[dict]:
        return [s for s in self.submissions if s["key"] == key]

    async def wait_submitted(self, key: str):
        while not self.submitted(key):
            await asyncio.sleep(0)

    async def submit(self, prompt, reference_image, settings, continuity_frame=None):
        key = prompt.split()[0]
        queued = self.scripts.get(key)
        outcome = queued.pop(0) if queued else "ok"
        job_id = f"job-{len(self.submissions)}"
        self.submissions.append({
            "key": key,
            "job_id": job_id,
            "prompt": prompt,
            "reference_image": reference_image,
            "continuity_frame": continuity_frame,
        })
        self.events.append(("submit", key))
        if outcome == "raise-transient":
            raise ProviderTransientError("503 Service Unavailable", kind="server_error")

        self.in_flight += 1
        self.max_seen = max(self.max_seen, self.in_flight)
        self._jobs[job_id] = {"key": key, "outcome": outcome, "polls": 0}
        return job_id

    async def poll(self, provider_job_id):
        job = self._jobs[provider_job_id]
        job["polls"] += 1
        gate = self.gates.get(job["key"])
        if gate is not None:
            await gate.wait()
        if job["outcome"] == "hang" or job["polls"] <= self.polls_before_done:
            return ProviderJobStatus(status="running")

        self.in_flight -= 1
        self.events.append(("done", job["key"], job["outcome"]))
        if job["outcome"] == "crash":
            raise RuntimeError("adapter bug")
        if job["outcome"] == "transient":
            return ProviderJobStatus(status="failed", error_kind=ErrorKind.SERVER_ERROR, message="502 from upstream")
        if job["outcome"] == "permanent":
            return ProviderJobStatus(
                status="failed", error_kind=ErrorKind.CONTENT_REJECTED, message="Prompt rejected by safety filter"
            )
        return ProviderJobStatus(
            status="succeeded",
            result_url=f"https://cdn.test/{provider_job_id}.mp4",
            last_frame_url=f"https://cdn.test/{provider_job_id}.jpg" if self.last_frames else None,
            duration=5,
        )

    async def cancel(self, provider_job_id):
        self.cancel_calls.append(provider_job_id)
        return False


class RecordingSleep:
    """Zero-delay stand-in for asyncio.sleep that remembers requested delays."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, seconds: float):
        self.delays.append(seconds)
        await asyncio.sleep(0)

    @property
    def backoffs(self) -> list[float]:
        return [d for d in self.delays if d > 0]


@pytest.fixture(autouse=True)
def _reset_metrics():
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
def provider():
    return FakeProvider()


def make_ledger(backend="memory"):
    if backend == "redis":
        return RedisCreditLedger(fakeredis.FakeRedis())
    return InMemoryCreditLedger()


@pytest.fixture
def ledger(request):
    """Funded ledger; parametrize indirectly with "redis" for the Redis backend."""
    ledger = make_ledger(getattr(request, "param", "memory"))
    ledger.deposit(ACCOUNT, STARTING_BALANCE)
    return ledger


@pytest.fixture
def store():
    return ProductionStore()


@pytest.fixture
def sleep():
    return RecordingSleep()


@pytest.fixture
def orchestrator(store, ledger, provider, sleep):
    return ClipGenerationOrchestrator(
        store=store,
        ledger=ledger,
        providers=lambda name: provider,
        limiter=ProviderLimiter(max_concurrent_jobs=8),
        retry_policy=RetryPolicy(),
        poll_interval=0,
        sleep=sleep,
    )


@pytest.fixture
def make_plan():
    """Build a plan of B-roll clips whose prompts start with "clip-<index>", priced at CLIP_COST each."""

    def _make(clip_count=3, chained=False, cost=CLIP_COST, beat_id="beat_1", timeout=600):
        template = CompositionTemplate(
            id=f"test-{clip_count}up",
            name="Test layout",
            category=TemplateCategory.CUSTOM,
            layout_type="custom",
            clip_count=clip_count,
            positions=[
                ClipPosition(clip_index=i, visibility=ClipVisibility.NO_CHARACTER)
                for i in range(clip_count)
            ],
        )
        return CompositionPlan(
            beat_id=beat_id,
            template=template,
            character_assignments=[
                CharacterAssignment(
                    clip_index=i,
                    visibility=ClipVisibility.NO_CHARACTER,
                    prompt=f"clip-{i} wide shot of the harbour at dusk.",
                    estimated_credits=cost,
                )
                for i in range(clip_count)
            ],
            settings=GenerationSettings(use_video_chaining=chained, timeout_seconds=timeout),
            estimated_credits=cost * clip_count,
        )

    return _make


def make_reference(ref_id, reference_type=ReferenceType.BASE, view=None, tags=()):
    return CharacterReference(
        id=ref_id,
        image_url=f"https://cdn.test/refs/{ref_id}.png",
        reference_type=reference_type,
        label=ref_id,
        view=view,
        tags=tuple(tags),
    )


@pytest.fixture
def mara():
    return CharacterProfile(
        id="char_mara",
        name="Mara",
        description="a wiry courier in a yellow raincoat",
        role="lead",
        base_reference=make_reference("ref_mara_base", view="front"),
        angle_references=[
            make_reference("ref_mara_3q_right", ReferenceType.ANGLE, view="three-quarter-right"),
            make_reference("ref_mara_back", ReferenceType.ANGLE, view="back"),
        ],
        expression_references=[
            make_reference("ref_mara_smile", ReferenceType.EXPRESSION, view="happy", tags=["smile"]),
        ],
    )


@pytest.fixture
def jun():
    return CharacterProfile(
        id="char_jun",
        name="Jun",
        role="supporting",
        style="animated",
        base_reference=make_reference("ref_jun_base", view="front"),
        angle_references=[
            make_reference("ref_jun_3q_left", ReferenceType.ANGLE, view="three-quarter-left"),
        ],
    )


@pytest.fixture
def library(mara, jun):
    return CharacterReferenceLibrary([mara, jun])
