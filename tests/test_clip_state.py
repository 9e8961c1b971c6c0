import pytest

from beatworks.pipeline.clip_state import advance_clip, reduce_production, transition_production
from beatworks.pipeline.errors import ClipStateError
from beatworks.pipeline.models import (
    ClipStatus,
    GeneratedClip,
    ProductionStatus,
    StoryBeatProduction,
)


def make_production(make_plan, clip_count=3):
    plan = make_plan(clip_count)
    production = StoryBeatProduction(beat_id=plan.beat_id, account_id="acct", plan=plan)
    production.clips = [
        GeneratedClip(production_id=production.id, clip_index=i, credits_estimated=10)
        for i in range(clip_count)
    ]
    return production


def finish(clip, status, credits=0):
    advance_clip(clip, ClipStatus.DISPATCHED)
    advance_clip(clip, status)
    clip.credits_used = credits


def test_dispatch_counts_attempts():
    clip = GeneratedClip(production_id="prod_1", clip_index=0)

    advance_clip(clip, ClipStatus.DISPATCHED)
    advance_clip(clip, ClipStatus.FAILED_RETRYABLE)
    advance_clip(clip, ClipStatus.QUEUED)
    advance_clip(clip, ClipStatus.DISPATCHED)

    assert clip.attempts == 2
    assert clip.dispatched_at is not None
    assert clip.completed_at is None


def test_terminal_states_stamp_completion():
    clip = GeneratedClip(production_id="prod_1", clip_index=0)
    finish(clip, ClipStatus.FAILED_PERMANENT)
    assert clip.is_terminal
    assert clip.completed_at is not None

    advance_clip(clip, ClipStatus.QUEUED)
    assert clip.completed_at is None
    assert not clip.is_terminal


@pytest.mark.parametrize(
    "start, target",
    [
        (ClipStatus.QUEUED, ClipStatus.SUCCEEDED),
        (ClipStatus.QUEUED, ClipStatus.FAILED_RETRYABLE),
        (ClipStatus.SUCCEEDED, ClipStatus.QUEUED),
        (ClipStatus.SUCCEEDED, ClipStatus.DISPATCHED),
        (ClipStatus.FAILED_PERMANENT, ClipStatus.DISPATCHED),
        (ClipStatus.FAILED_RETRYABLE, ClipStatus.SUCCEEDED),
    ],
)
def test_illegal_transitions_are_rejected(start, target):
    clip = GeneratedClip(production_id="prod_1", clip_index=0, status=start)
    with pytest.raises(ClipStateError):
        advance_clip(clip, target)
    assert clip.status == start


def test_reducer_tracks_progress_and_credits(make_plan):
    production = make_production(make_plan)
    assert reduce_production(production).status == ProductionStatus.PLANNING

    advance_clip(production.clips[0], ClipStatus.DISPATCHED)
    reduce_production(production)
    assert production.status == ProductionStatus.GENERATING
    assert production.generating_at is not None
    assert production.progress == 0

    advance_clip(production.clips[0], ClipStatus.SUCCEEDED)
    production.clips[0].credits_used = 10
    reduce_production(production)
    assert production.progress == 33
    assert production.actual_credits_used == 10
    assert production.completed_at is None


def test_reducer_sets_ready_only_when_every_clip_succeeded(make_plan):
    production = make_production(make_plan, 2)
    finish(production.clips[0], ClipStatus.SUCCEEDED, 10)
    finish(production.clips[1], ClipStatus.SUCCEEDED, 10)

    reduce_production(production)

    assert production.status == ProductionStatus.READY
    assert production.progress == 100
    assert production.actual_credits_used == 20
    assert production.completed_at is not None


def test_reducer_sets_partial_failed_and_recovers(make_plan):
    production = make_production(make_plan, 2)
    finish(production.clips[0], ClipStatus.SUCCEEDED, 10)
    finish(production.clips[1], ClipStatus.FAILED_PERMANENT)
    reduce_production(production)
    assert production.status == ProductionStatus.PARTIAL_FAILED
    assert [f.clip_index for f in production.failed_clips] == [1]

    advance_clip(production.clips[1], ClipStatus.QUEUED)
    reduce_production(production)
    assert production.status == ProductionStatus.PARTIAL_FAILED
    assert production.progress == 50

    finish(production.clips[1], ClipStatus.SUCCEEDED, 10)
    reduce_production(production)
    assert production.status == ProductionStatus.READY


def test_timeline_statuses_are_left_alone(make_plan):
    production = make_production(make_plan, 1)
    finish(production.clips[0], ClipStatus.SUCCEEDED, 10)
    reduce_production(production)

    transition_production(production, ProductionStatus.IN_TIMELINE)
    reduce_production(production)
    assert production.status == ProductionStatus.IN_TIMELINE

    transition_production(production, ProductionStatus.COMPLETED)
    assert production.status == ProductionStatus.COMPLETED


@pytest.mark.parametrize(
    "start, target",
    [
        (ProductionStatus.GENERATING, ProductionStatus.IN_TIMELINE),
        (ProductionStatus.PARTIAL_FAILED, ProductionStatus.IN_TIMELINE),
        (ProductionStatus.READY, ProductionStatus.COMPLETED),
        (ProductionStatus.COMPLETED, ProductionStatus.IN_TIMELINE),
    ],
)
def test_illegal_production_transitions(make_plan, start, target):
    production = make_production(make_plan, 1)
    production.status = start
    with pytest.raises(ClipStateError):
        transition_production(production, target)
