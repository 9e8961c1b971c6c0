"""
Clip state machine and production reducer.

    clip:        queued → dispatched → succeeded
                                     → failed-retryable → queued
                                     → failed-permanent
                 failed-permanent → queued          (regenerate only)

    production:  planning → generating → ready | partial-failed
                 partial-failed → ready             (after regeneration)
                 ready → in-timeline → completed

Both functions mutate the model they are given; the store hands the
orchestrator a private copy inside `ProductionStore.update`.
"""

from .errors import ClipStateError
from .models import (
    ClipStatus,
    GeneratedClip,
    ProductionStatus,
    StoryBeatProduction,
    now_iso,
)

CLIP_TRANSITIONS = {
    ClipStatus.QUEUED: {ClipStatus.DISPATCHED, ClipStatus.FAILED_PERMANENT},
    ClipStatus.DISPATCHED: {
        ClipStatus.SUCCEEDED,
        ClipStatus.FAILED_RETRYABLE,
        ClipStatus.FAILED_PERMANENT,
    },
    ClipStatus.FAILED_RETRYABLE: {ClipStatus.QUEUED, ClipStatus.FAILED_PERMANENT},
    ClipStatus.FAILED_PERMANENT: {ClipStatus.QUEUED},
    ClipStatus.SUCCEEDED: set(),
}

# Explicit, caller-driven production transitions (the rest come from the reducer)
PRODUCTION_TRANSITIONS = {
    ProductionStatus.READY: {ProductionStatus.IN_TIMELINE},
    ProductionStatus.IN_TIMELINE: {ProductionStatus.COMPLETED},
}


def advance_clip(clip: GeneratedClip, new_status: ClipStatus) -> GeneratedClip:
    if new_status not in CLIP_TRANSITIONS[clip.status]:
        raise ClipStateError(
            f"Clip {clip.clip_index}: illegal transition {clip.status.value} → {new_status.value}"
        )
    clip.status = new_status
    if new_status == ClipStatus.DISPATCHED:
        clip.attempts += 1
        clip.dispatched_at = now_iso()
    elif new_status == ClipStatus.QUEUED:
        clip.completed_at = None
    elif clip.is_terminal:
        clip.completed_at = now_iso()
    return clip


def reduce_production(production: StoryBeatProduction) -> StoryBeatProduction:
    """Recompute progress, credit totals and aggregate status from the clips."""
    clips = production.clips
    total = len(clips)
    finished = [c for c in clips if c.is_terminal]

    production.progress = (len(finished) * 100) // total if total else 100
    production.actual_credits_used = sum(c.credits_used for c in clips)

    if production.status in (ProductionStatus.IN_TIMELINE, ProductionStatus.COMPLETED):
        return production

    if production.status == ProductionStatus.PLANNING and any(c.attempts > 0 for c in clips):
        production.status = ProductionStatus.GENERATING
        production.generating_at = now_iso()

    if total and len(finished) == total:
        if all(c.status == ClipStatus.SUCCEEDED for c in clips):
            status = ProductionStatus.READY
        else:
            status = ProductionStatus.PARTIAL_FAILED
        if status != production.status:
            production.status = status
            production.completed_at = now_iso()

    return production


def transition_production(production: StoryBeatProduction, target: ProductionStatus):
    allowed = PRODUCTION_TRANSITIONS.get(production.status, set())
    if target not in allowed:
        raise ClipStateError(
            f"Production {production.id}: cannot move from "
            f"{production.status.value} to {target.value}"
        )
    production.status = target
    if target == ProductionStatus.COMPLETED:
        production.completed_at = now_iso()
