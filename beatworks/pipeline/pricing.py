"""
Credit pricing for clip generation.

1 credit = $0.01. A 5s Professional (1080p) clip costs 50 credits and a 5s
Premium 4K clip 75 credits on the reference provider (Veo 3.1); other
providers scale by a multiplier.
"""

import math

from .models import CompositionPlan, GenerationSettings, VideoProvider

CREDITS_PER_SECOND = {
    "720p": 6,
    "1080p": 10,
    "4K": 15,
}

# Percent of the reference rate
PROVIDER_MULTIPLIERS = {
    VideoProvider.VEO_31: 100,
    VideoProvider.VEO_31_FAST: 60,
    VideoProvider.LUMA: 80,
    VideoProvider.LUMA_FLASH: 50,
    VideoProvider.RUNWAY_GEN3: 120,
    VideoProvider.RUNWAY_GEN3_TURBO: 70,
}

# Cheaper sibling used when GenerationSettings.use_fast_mode is set
FAST_VARIANTS = {
    VideoProvider.VEO_31: VideoProvider.VEO_31_FAST,
    VideoProvider.LUMA: VideoProvider.LUMA_FLASH,
    VideoProvider.RUNWAY_GEN3: VideoProvider.RUNWAY_GEN3_TURBO,
}

# Typical wall-clock seconds per clip, used for the plan's time estimate
GENERATION_SECONDS = {
    VideoProvider.VEO_31: 150,
    VideoProvider.VEO_31_FAST: 60,
    VideoProvider.LUMA: 120,
    VideoProvider.LUMA_FLASH: 45,
    VideoProvider.RUNWAY_GEN3: 120,
    VideoProvider.RUNWAY_GEN3_TURBO: 50,
}


def effective_provider(settings: GenerationSettings) -> VideoProvider:
    if settings.use_fast_mode:
        return FAST_VARIANTS.get(settings.provider, settings.provider)
    return settings.provider


def clip_base_cost(provider: VideoProvider, duration: int, resolution: str) -> int:
    """Credits for one clip, rounded up to a whole credit."""
    scaled = duration * CREDITS_PER_SECOND[resolution] * PROVIDER_MULTIPLIERS[provider]
    return -(-scaled // 100)


def estimate_generation_time(provider: VideoProvider, clip_count: int, chained: bool) -> str:
    """Human-readable range, e.g. "2-3 minutes". Chained clips run back to back."""
    per_clip = GENERATION_SECONDS[provider]
    seconds = per_clip * clip_count if chained else per_clip
    low = max(1, math.floor(seconds / 60))
    high = max(low + 1, math.ceil(seconds * 1.5 / 60))
    return f"{low}-{high} minutes"


def pricing_violations(plan: CompositionPlan) -> list[str]:
    """Assignments whose credit estimate differs from the server-side price."""
    provider = effective_provider(plan.settings)
    expected = clip_base_cost(provider, plan.settings.duration, plan.settings.resolution)
    return [
        f"clip {a.clip_index} priced at {a.estimated_credits} credits, "
        f"{provider.value} {plan.settings.duration}s {plan.settings.resolution} costs {expected}"
        for a in sorted(plan.character_assignments, key=lambda a: a.clip_index)
        if a.estimated_credits != expected
    ]
