"""
Composition Planner.

Turns a story beat plus a composition template into a CompositionPlan: one
CharacterAssignment per clip, a prompt per clip, and an up-front credit
estimate. Planning is pure: nothing is reserved or persisted until the caller
commits the plan through the orchestrator.
"""

import logging
from typing import Optional, Sequence

from .errors import InvalidReferenceError, InvalidTemplateError
from .models import (
    CharacterAssignment,
    CharacterProfile,
    ClipPosition,
    ClipVisibility,
    CompositionPlan,
    CompositionTemplate,
    GenerationSettings,
    ResolvedReference,
    StoryBeat,
    template_violations,
)
from .pricing import clip_base_cost, effective_provider, estimate_generation_time
from .references import CharacterReferenceLibrary

logger = logging.getLogger(__name__)

_FRAMING_BY_ANGLE = {
    "extreme-wide": "loose",
    "wide-shot": "loose",
    "medium-shot": "standard",
    "over-shoulder": "standard",
    "dutch-angle": "standard",
    "medium-close-up": "tight",
    "close-up": "tight",
    "extreme-close-up": "tight",
}


def build_clip_prompt(
    beat: StoryBeat,
    position: ClipPosition,
    settings: GenerationSettings,
    character: Optional[CharacterProfile] = None,
    resolved: Optional[ResolvedReference] = None,
) -> str:
    """Compose the text prompt sent to the video provider for one clip."""
    parts = [f"{position.camera_angle.value.replace('-', ' ')} shot."]
    if beat.description:
        parts.append(beat.description.strip().rstrip(".") + ".")
    if position.description:
        parts.append(position.description.rstrip(".") + ".")

    if character is not None:
        subject = character.name
        if character.description:
            subject += f", {character.description.rstrip('.')}"
        if resolved is None or not resolved.has_reference:
            # Attribute-only generation: describe the character in words
            subject += f", {character.style} style"
        parts.append(f"Featuring {subject}.")
        if position.suggested_view:
            parts.append(f"Seen from the {position.suggested_view.replace('-', ' ')}.")
    elif position.visibility in (ClipVisibility.NO_CHARACTER, ClipVisibility.VFX_ACTION):
        parts.append("No people in frame.")

    if settings.style_prompt:
        parts.append(f"Style: {settings.style_prompt}.")
    if settings.mood:
        parts.append(f"Mood: {settings.mood}.")
    return " ".join(parts)


class CompositionPlanner:
    """Pure planning over a reference library."""

    def __init__(self, library: CharacterReferenceLibrary):
        self.library = library

    def plan(
        self,
        beat: StoryBeat,
        template: CompositionTemplate,
        character_pool: Sequence[CharacterProfile],
        settings: Optional[GenerationSettings] = None,
    ) -> CompositionPlan:
        """
        Build a CompositionPlan for `beat` using `template`.

        Args:
            beat:           The story beat being produced.
            template:       Layout with per-clip camera/character metadata.
            character_pool: Ordered characters available to the beat; template
                            character slots index into it.
            settings:       Generation settings (provider, duration, ...).

        Returns:
            A validated CompositionPlan.

        Raises:
            InvalidTemplateError:  the template breaks its own invariant, or the
                                   pool cannot fill a clip that requires a
                                   character reference.
            InvalidReferenceError: a required character has no usable reference.
        """
        settings = (settings or GenerationSettings()).model_copy()
        problems = template_violations(template)
        if problems:
            raise InvalidTemplateError(f"Template {template.id} is invalid: {'; '.join(problems)}")

        provider = effective_provider(settings)
        settings.provider = provider
        per_clip_cost = clip_base_cost(provider, settings.duration, settings.resolution)

        assignments = []
        for position in sorted(template.positions, key=lambda p: p.clip_index):
            assignments.append(
                self._assign(beat, template, position, character_pool, settings, per_clip_cost)
            )

        estimated_credits = sum(a.estimated_credits for a in assignments)
        plan = CompositionPlan(
            beat_id=beat.id,
            template=template,
            character_assignments=assignments,
            settings=settings,
            estimated_credits=estimated_credits,
            estimated_duration=float(settings.duration * template.clip_count),
            estimated_generation_time=estimate_generation_time(
                provider, template.clip_count, settings.use_video_chaining
            ),
        )
        logger.info(
            f"Planned beat {beat.id} with template {template.id}: "
            f"{template.clip_count} clips, {estimated_credits} credits ({provider.value})"
        )
        return plan

    def _assign(
        self,
        beat: StoryBeat,
        template: CompositionTemplate,
        position: ClipPosition,
        pool: Sequence[CharacterProfile],
        settings: GenerationSettings,
        cost: int,
    ) -> CharacterAssignment:
        character = None
        if position.character_slot is not None and position.character_slot < len(pool):
            character = pool[position.character_slot]

        if character is None:
            if position.requires_character_ref:
                raise InvalidTemplateError(
                    f"Template {template.id} clip {position.clip_index} needs character "
                    f"slot {position.character_slot}, but the pool has {len(pool)} character(s)"
                )
            return CharacterAssignment(
                clip_index=position.clip_index,
                camera_angle=position.camera_angle,
                framing=_FRAMING_BY_ANGLE[position.camera_angle.value],
                visibility=position.visibility,
                prompt=build_clip_prompt(beat, position, settings),
                estimated_credits=cost,
            )

        desired_view = position.suggested_view
        if desired_view is None and template.suggested_character_views:
            desired_view = template.suggested_character_views[0]
        resolved = self.library.resolve_reference(character.id, desired_view)
        if position.requires_character_ref and not resolved.has_reference:
            raise InvalidReferenceError(
                f"Character {character.id} has no usable reference for clip {position.clip_index}"
            )

        ref = resolved.reference
        return CharacterAssignment(
            clip_index=position.clip_index,
            character_id=character.id,
            character_name=character.name,
            reference_id=ref.id if ref else None,
            reference_label=ref.label if ref else None,
            reference_image_url=ref.image_url if ref else None,
            reference_match=resolved.match,
            camera_angle=position.camera_angle,
            framing=_FRAMING_BY_ANGLE[position.camera_angle.value],
            visibility=position.visibility,
            prompt=build_clip_prompt(beat, position, settings, character, resolved),
            estimated_credits=cost,
        )
