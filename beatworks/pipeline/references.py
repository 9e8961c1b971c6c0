"""
Character Reference Library.

Owns CharacterProfile records and their reference images, and picks the
reference a clip should be generated from. The library is append-only: a new
reference never replaces or edits an existing one, so any past generation can
be reproduced from the reference id it recorded.
"""

import logging
import threading
from typing import Iterable, Optional

from .errors import InvalidReferenceError
from .models import (
    CharacterProfile,
    CharacterReference,
    ReferenceType,
    ResolvedReference,
    now_iso,
)

logger = logging.getLogger(__name__)

_COLLECTIONS = {
    ReferenceType.ANGLE: "angle_references",
    ReferenceType.EXPRESSION: "expression_references",
    ReferenceType.ACTION: "action_references",
    ReferenceType.CUSTOM: "custom_references",
}


def resolve_reference(
    profile: Optional[CharacterProfile],
    desired_view: Optional[str],
) -> ResolvedReference:
    """
    Pick the reference that best matches `desired_view`.

    Newest matching reference wins (later additions supersede earlier ones).
    Falls back to the base reference, and to an explicit "none" result when the
    character is unknown. Never raises.
    """
    if profile is None:
        return ResolvedReference(character_id="", match="none")

    if desired_view:
        for ref in reversed(profile.selectable_references()):
            if ref.matches_view(desired_view):
                return ResolvedReference(character_id=profile.id, reference=ref, match="exact")
        if profile.base_reference.matches_view(desired_view):
            return ResolvedReference(
                character_id=profile.id, reference=profile.base_reference, match="exact"
            )

    return ResolvedReference(character_id=profile.id, reference=profile.base_reference, match="base")


class CharacterReferenceLibrary:
    """Thread-safe in-memory registry of character profiles."""

    def __init__(self, profiles: Iterable[CharacterProfile] = ()):
        self._lock = threading.Lock()
        self._profiles: dict[str, CharacterProfile] = {}
        self._owner: dict[str, str] = {}  # reference id → character id
        for profile in profiles:
            self.register_profile(profile)

    # ── Profiles ─────────────────────────────────────────────────────────

    def register_profile(self, profile: CharacterProfile) -> CharacterProfile:
        with self._lock:
            if profile.id in self._profiles:
                raise ValueError(f"Character {profile.id} already registered")
            for ref in profile.all_references():
                owner = self._owner.get(ref.id)
                if owner is not None:
                    raise InvalidReferenceError(
                        f"Reference {ref.id} already belongs to character {owner}"
                    )
            stored = profile.model_copy(deep=True)
            self._profiles[profile.id] = stored
            for ref in stored.all_references():
                self._owner[ref.id] = profile.id

        logger.info(f"Registered character {profile.id} ({profile.name})")
        return stored.model_copy(deep=True)

    def get_profile(self, character_id: str) -> Optional[CharacterProfile]:
        with self._lock:
            profile = self._profiles.get(character_id)
            return profile.model_copy(deep=True) if profile else None

    def list_profiles(self) -> list[CharacterProfile]:
        with self._lock:
            return [p.model_copy(deep=True) for p in self._profiles.values()]

    # ── References ───────────────────────────────────────────────────────

    def add_reference(self, character_id: str, reference: CharacterReference) -> CharacterProfile:
        """
        Append a reference to a character.

        A `base` reference becomes the new base; the previous base moves to
        `superseded_base_references`. Nothing is ever removed.

        Raises:
            InvalidReferenceError: unknown character, or the reference id is
                already owned by a profile.
        """
        with self._lock:
            profile = self._profiles.get(character_id)
            if profile is None:
                raise InvalidReferenceError(f"Unknown character {character_id}")
            owner = self._owner.get(reference.id)
            if owner is not None:
                raise InvalidReferenceError(
                    f"Reference {reference.id} already belongs to character {owner}"
                )

            if reference.reference_type == ReferenceType.BASE:
                update = {
                    "base_reference": reference,
                    "superseded_base_references": [
                        *profile.superseded_base_references,
                        profile.base_reference,
                    ],
                }
            else:
                field = _COLLECTIONS[reference.reference_type]
                update = {field: [*getattr(profile, field), reference]}
            update["updated_at"] = now_iso()

            updated = profile.model_copy(update=update)
            self._profiles[character_id] = updated
            self._owner[reference.id] = character_id

        logger.info(
            f"Character {character_id}: added {reference.reference_type.value} "
            f"reference {reference.id} ({reference.label or reference.view or '-'})"
        )
        return updated.model_copy(deep=True)

    def find_reference(self, reference_id: str) -> Optional[CharacterReference]:
        """Look up any reference ever added, including superseded bases."""
        with self._lock:
            owner = self._owner.get(reference_id)
            if owner is None:
                return None
            for ref in self._profiles[owner].all_references():
                if ref.id == reference_id:
                    return ref
        return None

    def resolve_reference(self, character_id: str, desired_view: Optional[str]) -> ResolvedReference:
        resolved = resolve_reference(self.get_profile(character_id), desired_view)
        if resolved.match == "none":
            return ResolvedReference(character_id=character_id, match="none")
        return resolved
