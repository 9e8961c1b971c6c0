"""
ClipGenerationOrchestrator — drives a StoryBeatProduction from plan to clips.

  start_production:  reserve credits → create production (planning) → dispatch
  clip runner:       queued → dispatched → poll provider → succeeded
                                                          → failed-retryable → backoff → queued
                                                          → failed-permanent
  regenerate_clip:   failed-permanent → queued (new credit hold)
  cancel_production: stop dispatch, refund, best-effort provider cancel

Every "read production → ledger op → store update" step for a production runs
under that production's lock, so clip settlements never interleave with a
cancellation or a regeneration. Provider calls happen outside the lock.
"""

import asyncio
import logging
import time
import weakref
from typing import Awaitable, Callable, Optional

from .. import metrics
from ..logging_setup import log_context
from ..provider_limiter import ProviderLimiter
from .clip_state import advance_clip, reduce_production, transition_production
from .errors import (
    ClipNotFoundError,
    ClipStateError,
    InvalidTemplateError,
    ProviderError,
    ProviderPermanentError,
    ProviderTransientError,
)
from .ledger import CreditLedger
from .models import (
    ClipResult,
    ClipStatus,
    CompositionPlan,
    CreditState,
    ErrorKind,
    GeneratedClip,
    GenerationError,
    GenerationSettings,
    ProductionStatus,
    StoryBeatProduction,
    plan_violations,
)
from .pricing import effective_provider, pricing_violations
from .providers import ProviderAdapter, error_for_status
from .store import ProductionStore

logger = logging.getLogger(__name__)

ProviderFactory = Callable[[str], ProviderAdapter]
Sleep = Callable[[float], Awaitable[None]]

CONTINUITY_SUFFIX = "Continue seamlessly from the final frame of the previous clip."


class RetryPolicy:
    """Exponential backoff for transient provider failures."""

    def __init__(self, max_retries: int = 3, base_delay: float = 2.0, max_delay: float = 30.0):
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay

    def delay(self, retry_number: int) -> float:
        """Seconds to wait before retry `retry_number` (1-based): 2, 4, 8 … capped."""
        return min(self.base_delay * (2 ** (retry_number - 1)), self.max_delay)


def _error_kind(kind: str) -> ErrorKind:
    try:
        return ErrorKind(kind)
    except ValueError:
        return ErrorKind.UNKNOWN


class ClipGenerationOrchestrator:
    """
    Usage:
        orchestrator = ClipGenerationOrchestrator(store, ledger, get_provider)

        production_id = await orchestrator.start_production(plan, account_id)
        production = await orchestrator.get_production(production_id)

        # After a partial failure
        await orchestrator.regenerate_clip(production_id, clip_index=2)
    """

    def __init__(
        self,
        store: ProductionStore,
        ledger: CreditLedger,
        providers: ProviderFactory,
        limiter: Optional[ProviderLimiter] = None,
        retry_policy: Optional[RetryPolicy] = None,
        poll_interval: float = 5.0,
        sleep: Sleep = asyncio.sleep,
    ):
        self.store = store
        self.ledger = ledger
        self._providers = providers
        self.limiter = limiter or ProviderLimiter()
        self.retry_policy = retry_policy or RetryPolicy()
        self.poll_interval = poll_interval
        self._sleep = sleep

        # Entries vanish once no coroutine holds or waits on the lock
        self._production_locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()
        self._clip_locks: weakref.WeakValueDictionary[tuple[str, int], asyncio.Lock] = weakref.WeakValueDictionary()
        self._tasks: dict[str, set[asyncio.Task]] = {}

    # ── Reads ────────────────────────────────────────────────────────────

    async def get_production(self, production_id: str) -> StoryBeatProduction:
        return await self.store.get_production(production_id)

    async def list_productions_for_beat(self, beat_id: str) -> list[StoryBeatProduction]:
        return await self.store.list_productions_for_beat(beat_id)

    # ── Start ────────────────────────────────────────────────────────────

    async def start_production(self, plan: CompositionPlan, account_id: str) -> str:
        """
        Reserve the plan's credits and start generating its clips.

        Returns:
            The new production id. Clip work continues in the background.

        Raises:
            InvalidTemplateError:     the plan breaks its clip coverage invariant,
                                      or its credit estimates are not current prices.
            InsufficientCreditsError: the account cannot cover the estimate.
        """
        problems = plan_violations(plan) + pricing_violations(plan)
        if problems:
            raise InvalidTemplateError(f"Plan for beat {plan.beat_id} is invalid: {'; '.join(problems)}")

        plan = plan.model_copy(deep=True)
        plan.settings.provider = effective_provider(plan.settings)
        provider = plan.settings.provider.value
        production = StoryBeatProduction(
            beat_id=plan.beat_id,
            account_id=account_id,
            plan=plan,
            estimated_credits=plan.estimated_credits,
        )
        production.clips = [
            GeneratedClip(
                production_id=production.id,
                clip_index=a.clip_index,
                character_id=a.character_id,
                character_reference_used=a.reference_id,
                prompt=a.prompt,
                provider=provider,
                credits_estimated=a.estimated_credits,
            )
            for a in sorted(plan.character_assignments, key=lambda a: a.clip_index)
        ]

        production.reservation_id = self.ledger.reserve(
            account_id,
            plan.estimated_credits,
            production_id=production.id,
            allocations={c.clip_index: c.credits_estimated for c in production.clips},
        )

        try:
            await self.store.create(production)
        except Exception as e:
            for clip in production.clips:
                self.ledger.refund(production.reservation_id, clip.clip_index)
            logger.error(
                f"[{production.id}] Could not save production for beat {plan.beat_id}; "
                f"{plan.estimated_credits} reserved credits refunded: {e}"
            )
            raise

        metrics.inc_counter("credits.reserved", plan.estimated_credits)
        metrics.inc_counter("productions.started")
        logger.info(
            f"[{production.id}] Started production for beat {plan.beat_id}: "
            f"{len(production.clips)} clips on {provider}, {plan.estimated_credits} credits reserved"
        )

        indices = [c.clip_index for c in production.clips]
        self._spawn(production.id, self._run_clips(production.id, indices))
        await self._supersede_previous(production)
        return production.id

    async def _supersede_previous(self, production: StoryBeatProduction):
        for previous in await self.store.list_productions_for_beat(production.beat_id):
            if previous.id == production.id or previous.superseded_by is not None:
                continue
            async with self._production_lock(previous.id):
                await self.store.update(
                    previous.id, lambda p: setattr(p, "superseded_by", production.id)
                )
            logger.info(f"[{previous.id}] Superseded by {production.id}")

    # ── Background task bookkeeping ──────────────────────────────────────

    def _spawn(self, production_id: str, coro):
        task = asyncio.create_task(coro)
        tasks = self._tasks.setdefault(production_id, set())
        tasks.add(task)

        def _done(t: asyncio.Task):
            tasks.discard(t)
            if not tasks and self._tasks.get(production_id) is tasks:
                del self._tasks[production_id]
            if t.cancelled():
                return
            exc = t.exception()
            if exc is not None:
                logger.error(f"[{production_id}] Clip runner crashed: {exc}", exc_info=exc)

        task.add_done_callback(_done)
        return task

    async def wait_for_production(self, production_id: str) -> StoryBeatProduction:
        """Wait until no clip work is running for the production, then return it."""
        while True:
            pending = [t for t in self._tasks.get(production_id, ()) if not t.done()]
            if not pending:
                break
            await asyncio.gather(*pending, return_exceptions=True)
        return await self.store.get_production(production_id)

    async def shutdown(self):
        """Cancel every running clip task (app shutdown)."""
        tasks = [t for group in self._tasks.values() for t in group if not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info(f"Orchestrator shut down ({len(tasks)} clip tasks cancelled)")

    def _production_lock(self, production_id: str) -> asyncio.Lock:
        lock = self._production_locks.get(production_id)
        if lock is None:
            lock = self._production_locks[production_id] = asyncio.Lock()
        return lock

    def _clip_lock(self, production_id: str, clip_index: int) -> asyncio.Lock:
        key = (production_id, clip_index)
        lock = self._clip_locks.get(key)
        if lock is None:
            lock = self._clip_locks[key] = asyncio.Lock()
        return lock

    # ── Dispatch ─────────────────────────────────────────────────────────

    async def _run_clips(self, production_id: str, indices: list[int]):
        production = await self.store.get_production(production_id)
        if production.plan.settings.use_video_chaining:
            await self._run_chain(production_id, sorted(indices))
            return

        results = await asyncio.gather(
            *(self._run_clip(production_id, idx) for idx in indices),
            return_exceptions=True,
        )
        for idx, outcome in zip(indices, results):
            if isinstance(outcome, Exception):
                logger.error(
                    f"[{production_id}] Clip {idx} runner failed: {outcome}", exc_info=outcome
                )

    async def _run_chain(self, production_id: str, indices: list[int]):
        """Clip k+1 starts only after clip k succeeded, from clip k's last frame."""
        production = await self.store.get_production(production_id)
        continuity_frame = None
        first = indices[0]
        if first > 0:
            previous = production.clip(first - 1)
            if previous.status == ClipStatus.SUCCEEDED and previous.result:
                continuity_frame = self._continuity_frame(production_id, first - 1, previous.result)

        for position, idx in enumerate(indices):
            result = await self._run_clip(production_id, idx, continuity_frame)
            if result is None:
                await self._break_chain(production_id, idx, indices[position + 1:])
                return
            if position + 1 < len(indices):
                continuity_frame = self._continuity_frame(production_id, idx, result)

    @staticmethod
    def _continuity_frame(production_id: str, clip_index: int, result: ClipResult) -> Optional[str]:
        if not result.last_frame_url:
            logger.warning(
                f"[{production_id}] Clip {clip_index} returned no last frame; "
                f"clip {clip_index + 1} will start without a continuity frame"
            )
        return result.last_frame_url

    async def _break_chain(self, production_id: str, broken_at: int, downstream: list[int]):
        if not downstream:
            return
        async with self._production_lock(production_id):
            production = await self.store.get_production(production_id)
            stranded = [
                idx for idx in downstream
                if production.clip(idx).status == ClipStatus.QUEUED
            ]
            if not stranded:
                return
            refunded = 0
            for idx in stranded:
                refunded += self.ledger.refund(production.reservation_id, idx)

            def mutate(p: StoryBeatProduction):
                for idx in stranded:
                    clip = p.clip(idx)
                    advance_clip(clip, ClipStatus.FAILED_PERMANENT)
                    clip.credit_state = CreditState.REFUNDED
                    clip.error = GenerationError(
                        clip_index=idx,
                        error_type=ErrorKind.CHAIN_BROKEN,
                        message=f"Not generated: clip {broken_at} in the chain failed",
                    )
                reduce_production(p)

            await self.store.update(production_id, mutate)
        metrics.inc_counter("credits.refunded", refunded)
        logger.warning(
            f"[{production_id}] Chain broken at clip {broken_at}; "
            f"clips {stranded} not dispatched, {refunded} credits refunded"
        )

    async def _run_clip(
        self,
        production_id: str,
        clip_index: int,
        continuity_frame: Optional[str] = None,
    ) -> Optional[ClipResult]:
        """Run one clip through dispatch/retry until it is terminal. Returns the result on success."""
        async with self._clip_lock(production_id, clip_index):
            with log_context(production_id=production_id, clip_index=clip_index):
                while True:
                    production = await self.store.get_production(production_id)
                    clip = production.clip(clip_index)
                    if clip.status != ClipStatus.QUEUED or production.cancelled:
                        return None

                    adapter = self._providers(clip.provider)
                    self.limiter.set_limit(adapter.name, adapter.max_in_flight)
                    settings = production.plan.settings
                    assignment = production.plan.assignment_for(clip_index)

                    async with self.limiter.slot(adapter.name):
                        clip = await self._mark_dispatched(production_id, clip_index, continuity_frame)
                        if clip is None:
                            return None

                        started = time.time()
                        error: Optional[ProviderError] = None
                        result: Optional[ClipResult] = None
                        try:
                            result = await asyncio.wait_for(
                                self._execute(
                                    adapter, production_id, clip, assignment.reference_image_url,
                                    settings, continuity_frame,
                                ),
                                timeout=settings.timeout_seconds,
                            )
                        except ProviderError as e:
                            error = e
                        except asyncio.TimeoutError:
                            error = ProviderTransientError(
                                f"Provider job exceeded {settings.timeout_seconds}s", kind="timeout"
                            )
                            await self._cancel_provider_job(adapter, production_id, clip_index)
                        except Exception as e:
                            logger.error(f"[{production_id}] Clip {clip_index} crashed: {e}", exc_info=True)
                            error = ProviderPermanentError(str(e) or type(e).__name__, kind="unknown")
                        metrics.record_latency(adapter.name, (time.time() - started) * 1000)

                    if error is None:
                        await self._record_success(production_id, clip_index, result)
                        return result

                    retry_number = await self._record_failure(production_id, clip_index, error)
                    if retry_number is None:
                        return None

                    delay = self.retry_policy.delay(retry_number)
                    logger.info(
                        f"[{production_id}] Clip {clip_index} retry {retry_number}/"
                        f"{self.retry_policy.max_retries} in {delay:.0f}s ({error.kind})"
                    )
                    await self._sleep(delay)
                    if not await self._requeue(production_id, clip_index):
                        return None

    async def _execute(
        self,
        adapter: ProviderAdapter,
        production_id: str,
        clip: GeneratedClip,
        reference_image: Optional[str],
        settings: GenerationSettings,
        continuity_frame: Optional[str],
    ) -> ClipResult:
        """Submit one provider job and poll it to completion."""
        job_id = await adapter.submit(clip.prompt, reference_image, settings, continuity_frame)

        def record_job(p: StoryBeatProduction):
            p.clip(clip.clip_index).provider_job_id = job_id

        await self.store.update(production_id, record_job)
        logger.info(f"[{production_id}] Clip {clip.clip_index} submitted to {adapter.name}: job {job_id}")

        while True:
            status = await adapter.poll(job_id)
            if status.status == "succeeded":
                if not status.result_url:
                    raise ProviderPermanentError(
                        f"Job {job_id} succeeded without a result URL", provider_job_id=job_id
                    )
                return ClipResult(
                    video_url=status.result_url,
                    last_frame_url=status.last_frame_url,
                    duration=status.duration or settings.duration,
                    file_size=status.file_size or 0,
                    resolution=settings.resolution,
                )
            if status.status == "failed":
                raise error_for_status(status, job_id)
            await self._sleep(self.poll_interval)

    async def _cancel_provider_job(self, adapter: ProviderAdapter, production_id: str, clip_index: int):
        production = await self.store.get_production(production_id)
        job_id = production.clip(clip_index).provider_job_id
        if not job_id:
            return
        try:
            cancelled = await adapter.cancel(job_id)
        except ProviderError as e:
            logger.warning(f"[{production_id}] Cancel of {adapter.name} job {job_id} failed: {e}")
            return
        logger.info(f"[{production_id}] Cancel of {adapter.name} job {job_id}: {'ok' if cancelled else 'unsupported'}")

    # ── Clip transitions (each under the production lock) ───────────────

    async def _mark_dispatched(
        self,
        production_id: str,
        clip_index: int,
        continuity_frame: Optional[str],
    ) -> Optional[GeneratedClip]:
        async with self._production_lock(production_id):
            production = await self.store.get_production(production_id)
            if production.cancelled or production.clip(clip_index).status != ClipStatus.QUEUED:
                return None

            prompt = production.plan.assignment_for(clip_index).prompt
            if continuity_frame:
                prompt = f"{prompt} {CONTINUITY_SUFFIX}"

            def mutate(p: StoryBeatProduction):
                clip = p.clip(clip_index)
                advance_clip(clip, ClipStatus.DISPATCHED)
                clip.prompt = prompt
                clip.provider_job_id = None
                reduce_production(p)

            updated = await self.store.update(production_id, mutate)

        clip = updated.clip(clip_index)
        metrics.inc_counter("clips.dispatched")
        logger.info(f"[{production_id}] Clip {clip_index} dispatched (attempt {clip.attempts})")
        return clip

    async def _record_success(self, production_id: str, clip_index: int, result: ClipResult):
        async with self._production_lock(production_id):
            production = await self.store.get_production(production_id)
            clip = production.clip(clip_index)
            cost = clip.credits_estimated

            if clip.credit_state == CreditState.HELD:
                self.ledger.settle(production.reservation_id, clip_index, cost)
                credit_state = CreditState.SETTLED
                metrics.inc_counter("credits.settled", cost)
            else:
                # Refunded optimistically on cancellation; the provider billed anyway
                self.ledger.reconcile(production.reservation_id, clip_index, cost)
                credit_state = CreditState.RECONCILED
                metrics.inc_counter("credits.reconciled", cost)

            late = production.cancelled

            def mutate(p: StoryBeatProduction):
                c = p.clip(clip_index)
                advance_clip(c, ClipStatus.SUCCEEDED)
                c.result = result
                c.error = None
                c.credits_used = cost
                c.credit_state = credit_state
                c.late_result = late
                reduce_production(p)

            updated = await self.store.update(production_id, mutate)

        metrics.inc_counter("clips.succeeded")
        logger.info(
            f"[{production_id}] Clip {clip_index} succeeded{' (late, after cancel)' if late else ''}: "
            f"{result.video_url} → production {updated.status.value} {updated.progress}%"
        )

    async def _record_failure(
        self,
        production_id: str,
        clip_index: int,
        error: ProviderError,
    ) -> Optional[int]:
        """Mark the clip failed. Returns the retry number when it should be retried."""
        kind = _error_kind(error.kind)

        async with self._production_lock(production_id):
            production = await self.store.get_production(production_id)
            clip = production.clip(clip_index)
            retry = (
                error.retryable
                and clip.retries < self.retry_policy.max_retries
                and not production.cancelled
            )

            if retry:
                def mutate(p: StoryBeatProduction):
                    c = p.clip(clip_index)
                    advance_clip(c, ClipStatus.FAILED_RETRYABLE)
                    c.retries += 1
                    c.error = GenerationError(
                        clip_index=clip_index, error_type=kind, message=str(error), retryable=True,
                    )
                    reduce_production(p)

                updated = await self.store.update(production_id, mutate)
                metrics.inc_counter("clips.retries")
                return updated.clip(clip_index).retries

            refunded = 0
            if clip.credit_state == CreditState.HELD:
                refunded = self.ledger.refund(production.reservation_id, clip_index)

            def mutate(p: StoryBeatProduction):
                c = p.clip(clip_index)
                advance_clip(c, ClipStatus.FAILED_PERMANENT)
                c.credit_state = CreditState.REFUNDED
                c.late_result = production.cancelled
                c.error = GenerationError(clip_index=clip_index, error_type=kind, message=str(error))
                reduce_production(p)

            updated = await self.store.update(production_id, mutate)

        metrics.inc_counter("clips.failed")
        metrics.inc_counter("credits.refunded", refunded)
        metrics.record_error(production_id, clip_index, kind.value, str(error))
        logger.warning(
            f"[{production_id}] Clip {clip_index} failed permanently ({kind.value}): {error} "
            f"→ production {updated.status.value} {updated.progress}%"
        )
        return None

    async def _requeue(self, production_id: str, clip_index: int) -> bool:
        async with self._production_lock(production_id):
            production = await self.store.get_production(production_id)
            if production.cancelled or production.clip(clip_index).status != ClipStatus.FAILED_RETRYABLE:
                return False

            def mutate(p: StoryBeatProduction):
                advance_clip(p.clip(clip_index), ClipStatus.QUEUED)
                reduce_production(p)

            await self.store.update(production_id, mutate)
        return True

    # ── Regenerate ───────────────────────────────────────────────────────

    async def regenerate_clip(self, production_id: str, clip_index: int) -> StoryBeatProduction:
        """
        Re-enter one failed clip at `queued` without touching succeeded siblings.

        Only `failed-permanent` clips can be regenerated. A succeeded clip, or one
        that is still queued/dispatched/retrying, is rejected with ClipStateError,
        so two concurrent calls never dispatch the clip twice. In a chained plan
        the previous clip must have succeeded; the clips stranded behind this
        one are re-queued too and the chain resumes.
        """
        async with self._production_lock(production_id):
            production = await self.store.get_production(production_id)
            clip = self._find_clip(production, clip_index)

            if production.cancelled:
                raise ClipStateError(f"Production {production_id} was cancelled")
            if production.status in (ProductionStatus.IN_TIMELINE, ProductionStatus.COMPLETED):
                raise ClipStateError(
                    f"Production {production_id} is {production.status.value}; clips are locked"
                )
            if clip.status == ClipStatus.SUCCEEDED:
                raise ClipStateError(f"Clip {clip_index} already succeeded")
            if clip.status != ClipStatus.FAILED_PERMANENT:
                raise ClipStateError(f"Clip {clip_index} is {clip.status.value}; regeneration already in progress")

            chained = production.plan.settings.use_video_chaining
            if chained and clip_index > 0:
                previous = production.clip(clip_index - 1)
                if previous.status != ClipStatus.SUCCEEDED:
                    raise ClipStateError(
                        f"Clip {clip_index} continues clip {clip_index - 1}, which is "
                        f"{previous.status.value}; regenerate clip {clip_index - 1} first"
                    )

            indices = [clip_index]
            if chained:
                for c in sorted(production.clips, key=lambda c: c.clip_index):
                    if c.clip_index <= clip_index:
                        continue
                    if c.status != ClipStatus.FAILED_PERMANENT or not c.error \
                            or c.error.error_type != ErrorKind.CHAIN_BROKEN:
                        break
                    indices.append(c.clip_index)

            held = []
            try:
                for idx in indices:
                    self.ledger.hold(production.reservation_id, idx, production.clip(idx).credits_estimated)
                    held.append(idx)
            except Exception:
                for idx in held:
                    self.ledger.refund(production.reservation_id, idx)
                raise

            def mutate(p: StoryBeatProduction):
                for idx in indices:
                    c = p.clip(idx)
                    advance_clip(c, ClipStatus.QUEUED)
                    c.result = None
                    c.error = None
                    c.provider_job_id = None
                    c.retries = 0
                    c.credits_used = 0
                    c.credit_state = CreditState.HELD
                    c.needs_regeneration = False
                    c.late_result = False
                p.clip(clip_index).regeneration_count += 1
                reduce_production(p)

            updated = await self.store.update(production_id, mutate)

        metrics.inc_counter("clips.regenerated", len(indices))
        logger.info(f"[{production_id}] Regenerating clips {indices}")
        self._spawn(production_id, self._run_clips(production_id, indices))
        return updated

    # ── Cancel ───────────────────────────────────────────────────────────

    async def cancel_production(self, production_id: str) -> StoryBeatProduction:
        """
        Stop dispatching. Undispatched clips fail with `cancelled` and are
        refunded; dispatched clips are refunded optimistically and their
        provider jobs cancelled best-effort. Idempotent.
        """
        async with self._production_lock(production_id):
            production = await self.store.get_production(production_id)
            if production.cancelled:
                return production
            if production.status in (ProductionStatus.IN_TIMELINE, ProductionStatus.COMPLETED):
                raise ClipStateError(
                    f"Production {production_id} is {production.status.value}; nothing to cancel"
                )

            pending = [
                c.clip_index for c in production.clips
                if c.status in (ClipStatus.QUEUED, ClipStatus.FAILED_RETRYABLE)
            ]
            in_flight = [
                c for c in production.clips
                if c.status == ClipStatus.DISPATCHED and c.credit_state == CreditState.HELD
            ]

            refunded = 0
            for idx in pending:
                refunded += self.ledger.refund(production.reservation_id, idx)
            for c in in_flight:
                refunded += self.ledger.refund(production.reservation_id, c.clip_index)

            def mutate(p: StoryBeatProduction):
                p.cancelled = True
                for idx in pending:
                    c = p.clip(idx)
                    advance_clip(c, ClipStatus.FAILED_PERMANENT)
                    c.credit_state = CreditState.REFUNDED
                    c.error = GenerationError(
                        clip_index=idx, error_type=ErrorKind.CANCELLED,
                        message="Production cancelled before dispatch",
                    )
                for c in in_flight:
                    p.clip(c.clip_index).credit_state = CreditState.REFUNDED
                reduce_production(p)

            updated = await self.store.update(production_id, mutate)

        metrics.inc_counter("productions.cancelled")
        metrics.inc_counter("credits.refunded", refunded)
        logger.info(
            f"[{production_id}] Cancelled: {len(pending)} queued clips stopped, "
            f"{len(in_flight)} in flight, {refunded} credits refunded"
        )

        for c in in_flight:
            if c.provider_job_id:
                await self._cancel_provider_job(self._providers(c.provider), production_id, c.clip_index)
        return updated

    # ── Timeline & review ────────────────────────────────────────────────

    async def mark_in_timeline(self, production_id: str) -> StoryBeatProduction:
        """ready → in-timeline (clips placed on the editor timeline)."""
        return await self._transition(production_id, ProductionStatus.IN_TIMELINE)

    async def mark_completed(self, production_id: str) -> StoryBeatProduction:
        return await self._transition(production_id, ProductionStatus.COMPLETED)

    async def _transition(self, production_id: str, target: ProductionStatus) -> StoryBeatProduction:
        async with self._production_lock(production_id):
            updated = await self.store.update(
                production_id, lambda p: transition_production(p, target)
            )
        logger.info(f"[{production_id}] → {target.value}")
        return updated

    async def rate_clip(self, production_id: str, clip_index: int, rating: int) -> StoryBeatProduction:
        if not 1 <= rating <= 5:
            raise ValueError(f"Rating must be 1-5, got {rating}")
        return await self._update_clip(
            production_id, clip_index, lambda c: setattr(c, "user_rating", rating)
        )

    async def flag_clip_for_regeneration(self, production_id: str, clip_index: int) -> StoryBeatProduction:
        return await self._update_clip(
            production_id, clip_index, lambda c: setattr(c, "needs_regeneration", True)
        )

    async def _update_clip(self, production_id: str, clip_index: int, change) -> StoryBeatProduction:
        async with self._production_lock(production_id):
            self._find_clip(await self.store.get_production(production_id), clip_index)
            return await self.store.update(production_id, lambda p: change(p.clip(clip_index)))

    @staticmethod
    def _find_clip(production: StoryBeatProduction, clip_index: int) -> GeneratedClip:
        try:
            return production.clip(clip_index)
        except KeyError:
            raise ClipNotFoundError(production.id, clip_index) from None
