"""
Composition Template Library — built-in layouts for a story beat.
Users pick a layout, the planner fills in characters, references and prompts.

Character slots index into the beat's ordered character pool: slot 0 is the
beat's lead, slot 1 the second character, and so on.
"""

from typing import Optional

from .pipeline.errors import InvalidTemplateError
from .pipeline.models import CompositionTemplate, TemplateCategory

_TEMPLATE_SPECS = {
    "hero-single": {
        "id": "hero-single",
        "name": "Hero Shot",
        "category": "action",
        "layout_type": "1-up",
        "clip_count": 1,
        "positions": [
            {
                "clip_index": 0,
                "camera_angle": "medium-close-up",
                "suggested_view": "front",
                "character_slot": 0,
                "requires_character_ref": True,
                "description": "Lead character, front-facing, full frame",
            },
        ],
        "suggested_camera_angles": ["medium-close-up"],
        "suggested_character_views": ["front"],
        "suggested_duration": 5,
        "description": "Single full-frame clip built around the lead character.",
        "tags": ["simple", "character"],
    },
    "dialogue-2up": {
        "id": "dialogue-2up",
        "name": "Split Dialogue",
        "category": "dialogue",
        "layout_type": "2-up-h",
        "clip_count": 2,
        "positions": [
            {
                "clip_index": 0, "x": 0, "y": 0, "width": 50, "height": 100,
                "camera_angle": "close-up",
                "suggested_view": "three-quarter-right",
                "character_slot": 0,
                "requires_character_ref": True,
                "description": "Speaker A facing screen right",
            },
            {
                "clip_index": 1, "x": 50, "y": 0, "width": 50, "height": 100,
                "camera_angle": "close-up",
                "suggested_view": "three-quarter-left",
                "character_slot": 1,
                "requires_character_ref": True,
                "description": "Speaker B facing screen left",
            },
        ],
        "suggested_camera_angles": ["close-up"],
        "suggested_character_views": ["three-quarter-right", "three-quarter-left"],
        "suggested_duration": 5,
        "description": "Two characters side by side, eyelines meeting across the split.",
        "tags": ["dialogue", "two-hander"],
    },
    "over-shoulder-3up": {
        "id": "over-shoulder-3up",
        "name": "Over-the-Shoulder Coverage",
        "category": "dialogue",
        "layout_type": "3-up",
        "clip_count": 3,
        "positions": [
            {
                "clip_index": 0, "x": 0, "y": 0, "width": 100, "height": 50,
                "camera_angle": "wide-shot",
                "character_slot": None,
                "visibility": "no-character",
                "description": "Establishing wide of the location",
            },
            {
                "clip_index": 1, "x": 0, "y": 50, "width": 50, "height": 50,
                "camera_angle": "over-shoulder",
                "suggested_view": "three-quarter-right",
                "character_slot": 0,
                "requires_character_ref": True,
                "description": "Over B's shoulder onto A",
            },
            {
                "clip_index": 2, "x": 50, "y": 50, "width": 50, "height": 50,
                "camera_angle": "over-shoulder",
                "suggested_view": "three-quarter-left",
                "character_slot": 1,
                "requires_character_ref": True,
                "description": "Over A's shoulder onto B",
            },
        ],
        "suggested_camera_angles": ["wide-shot", "over-shoulder"],
        "suggested_character_views": ["three-quarter-right", "three-quarter-left"],
        "suggested_duration": 5,
        "description": "Classic coverage: an establishing wide plus reverse over-the-shoulders.",
        "tags": ["dialogue", "coverage"],
    },
    "action-montage-4up": {
        "id": "action-montage-4up",
        "name": "Action Montage",
        "category": "montage",
        "layout_type": "4-up",
        "clip_count": 4,
        "positions": [
            {
                "clip_index": 0, "x": 0, "y": 0, "width": 50, "height": 50,
                "camera_angle": "wide-shot",
                "suggested_view": "back",
                "character_slot": 0,
                "visibility": "body-only",
                "description": "Lead running away from camera",
            },
            {
                "clip_index": 1, "x": 50, "y": 0, "width": 50, "height": 50,
                "camera_angle": "extreme-close-up",
                "character_slot": 0,
                "visibility": "hands-close-up",
                "description": "Hands gripping, tight insert",
            },
            {
                "clip_index": 2, "x": 0, "y": 50, "width": 50, "height": 50,
                "camera_angle": "extreme-wide",
                "character_slot": None,
                "visibility": "vfx-action",
                "description": "Explosion / environment VFX",
            },
            {
                "clip_index": 3, "x": 50, "y": 50, "width": 50, "height": 50,
                "camera_angle": "close-up",
                "suggested_view": "front",
                "character_slot": 0,
                "requires_character_ref": True,
                "description": "Lead reaction, face visible",
            },
        ],
        "suggested_camera_angles": ["wide-shot", "extreme-close-up", "close-up"],
        "suggested_character_views": ["back", "front"],
        "suggested_duration": 3,
        "description": "Four quick cuts mixing character inserts with pure VFX.",
        "tags": ["action", "montage", "vfx"],
    },
    "establishing-wide": {
        "id": "establishing-wide",
        "name": "Establishing Wide",
        "category": "establishing",
        "layout_type": "1-up",
        "clip_count": 1,
        "positions": [
            {
                "clip_index": 0,
                "camera_angle": "extreme-wide",
                "character_slot": None,
                "visibility": "no-character",
                "description": "Location only",
            },
        ],
        "suggested_camera_angles": ["extreme-wide"],
        "suggested_duration": 8,
        "description": "A single environment shot, no characters.",
        "tags": ["b-roll", "location"],
    },
    "pip-reaction": {
        "id": "pip-reaction",
        "name": "Picture-in-Picture Reaction",
        "category": "transition",
        "layout_type": "pip",
        "clip_count": 2,
        "positions": [
            {
                "clip_index": 0,
                "camera_angle": "wide-shot",
                "character_slot": None,
                "visibility": "no-character",
                "description": "Main event, full frame",
            },
            {
                "clip_index": 1, "x": 70, "y": 65, "width": 25, "height": 30, "z_index": 1,
                "camera_angle": "close-up",
                "suggested_view": "front",
                "character_slot": 0,
                "requires_character_ref": True,
                "description": "Lead reacting, inset",
            },
        ],
        "suggested_camera_angles": ["wide-shot", "close-up"],
        "suggested_character_views": ["front"],
        "suggested_duration": 5,
        "description": "Full-frame event with an inset reaction shot.",
        "tags": ["reaction", "inset"],
        "is_premium": True,
    },
}

TEMPLATES = {
    template_id: CompositionTemplate(**spec)
    for template_id, spec in _TEMPLATE_SPECS.items()
}


def get_template(template_id: str) -> CompositionTemplate:
    """Get a built-in template. Raises if the template is unknown."""
    template = TEMPLATES.get(template_id)
    if not template:
        raise InvalidTemplateError(
            f"Unknown template: {template_id}. Available: {list(TEMPLATES.keys())}"
        )
    return template.model_copy(deep=True)


def list_templates(category: Optional[TemplateCategory] = None) -> list[CompositionTemplate]:
    return [
        t.model_copy(deep=True)
        for t in TEMPLATES.values()
        if category is None or t.category == category
    ]
