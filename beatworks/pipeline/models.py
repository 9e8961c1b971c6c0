"""
Pydantic models and enums for the beat production pipeline.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Literal, Optional, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, computed_field, model_validator


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid4().hex[:16]}"


# ── Character References ─────────────────────────────────────────────────────

class ReferenceType(str, Enum):
    BASE = "base"
    ANGLE = "angle"
    EXPRESSION = "expression"
    ACTION = "action"
    CUSTOM = "custom"


class ReferenceView(str, Enum):
    """Camera-relative views a reference image can depict."""
    FRONT = "front"
    PROFILE_LEFT = "profile-left"
    PROFILE_RIGHT = "profile-right"
    THREE_QUARTER_LEFT = "three-quarter-left"
    THREE_QUARTER_RIGHT = "three-quarter-right"
    BACK = "back"
    TOP_DOWN = "top-down"
    LOW_ANGLE = "low-angle"


class UploadedSource(BaseModel):
    """Reference uploaded by the user. Carries no generation parameters."""
    model_config = ConfigDict(frozen=True)

    method: Literal["upload"] = "upload"
    original_filename: Optional[str] = None
    s3_key: Optional[str] = None


class GeneratedSource(BaseModel):
    """Reference produced by an image model."""
    model_config = ConfigDict(frozen=True)

    method: Literal[
        "nano-banana",
        "photon-1",
        "photon-flash",
        "imagen-3",
        "dall-e-3",
        "stability-ai",
        "replicate",
    ]
    prompt: str
    base_image_url: Optional[str] = None  # image-to-image input
    seed: Optional[int] = None
    model_version: Optional[str] = None


ReferenceSource = Annotated[
    Union[UploadedSource, GeneratedSource],
    Field(discriminator="method"),
]


class CharacterReference(BaseModel):
    """A single reference image. Immutable once created."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: new_id("ref"))
    image_url: str
    reference_type: ReferenceType
    label: str = ""  # "Front View", "Happy Expression"
    view: Optional[str] = None  # primary view/expression/action tag
    source: ReferenceSource = Field(default_factory=UploadedSource)
    credits_used: int = Field(default=0, ge=0)
    tags: tuple[str, ...] = ()
    quality: Optional[Literal["draft", "standard", "high", "premium"]] = None
    created_at: str = Field(default_factory=now_iso)

    @property
    def generation_method(self) -> str:
        return self.source.method

    def matches_view(self, desired_view: str) -> bool:
        return self.view == desired_view or desired_view in self.tags


class CharacterProfile(BaseModel):
    id: str = Field(default_factory=lambda: new_id("char"))
    name: str
    description: str = ""
    role: Literal["lead", "supporting", "minor"] = "supporting"
    style: Literal["photorealistic", "animated", "stylized", "illustration"] = "photorealistic"

    base_reference: CharacterReference
    angle_references: list[CharacterReference] = Field(default_factory=list)
    expression_references: list[CharacterReference] = Field(default_factory=list)
    action_references: list[CharacterReference] = Field(default_factory=list)
    custom_references: list[CharacterReference] = Field(default_factory=list)
    superseded_base_references: list[CharacterReference] = Field(default_factory=list)

    custom_tags: list[str] = Field(default_factory=list)
    created_at: str = Field(default_factory=now_iso)
    updated_at: str = Field(default_factory=now_iso)

    @model_validator(mode="after")
    def _check_references(self):
        if self.base_reference.reference_type != ReferenceType.BASE:
            raise ValueError("base_reference must have reference_type 'base'")
        ids = [ref.id for ref in self.all_references()]
        if len(ids) != len(set(ids)):
            raise ValueError(f"Duplicate reference ids in profile {self.id}")
        return self

    def selectable_references(self) -> list[CharacterReference]:
        """Non-base references, in insertion order."""
        return [
            *self.angle_references,
            *self.expression_references,
            *self.action_references,
            *self.custom_references,
        ]

    def all_references(self) -> list[CharacterReference]:
        return [
            self.base_reference,
            *self.selectable_references(),
            *self.superseded_base_references,
        ]


class ResolvedReference(BaseModel):
    """Outcome of a reference lookup. `match == "none"` means attribute-only generation."""
    character_id: str
    reference: Optional[CharacterReference] = None
    match: Literal["exact", "base", "none"] = "none"

    @property
    def has_reference(self) -> bool:
        return self.reference is not None


# ── Composition Templates ────────────────────────────────────────────────────

class CameraAngle(str, Enum):
    EXTREME_WIDE = "extreme-wide"
    WIDE_SHOT = "wide-shot"
    MEDIUM_SHOT = "medium-shot"
    MEDIUM_CLOSE_UP = "medium-close-up"
    CLOSE_UP = "close-up"
    EXTREME_CLOSE_UP = "extreme-close-up"
    OVER_SHOULDER = "over-shoulder"
    DUTCH_ANGLE = "dutch-angle"


class ClipVisibility(str, Enum):
    FACE_VISIBLE = "face-visible"      # needs a character reference
    FACE_OBSCURED = "face-obscured"
    BODY_ONLY = "body-only"
    HANDS_CLOSE_UP = "hands-close-up"
    NO_CHARACTER = "no-character"      # B-roll / environment
    VFX_ACTION = "vfx-action"


class TemplateCategory(str, Enum):
    DIALOGUE = "dialogue"
    ACTION = "action"
    MONTAGE = "montage"
    ESTABLISHING = "establishing"
    TRANSITION = "transition"
    CUSTOM = "custom"


class ClipPosition(BaseModel):
    clip_index: int = Field(..., ge=0)
    # Percentages of the canvas
    x: float = Field(default=0, ge=0, le=100)
    y: float = Field(default=0, ge=0, le=100)
    width: float = Field(default=100, gt=0, le=100)
    height: float = Field(default=100, gt=0, le=100)
    z_index: int = 0

    camera_angle: CameraAngle = CameraAngle.MEDIUM_SHOT
    suggested_view: Optional[str] = None
    character_slot: Optional[int] = Field(
        default=None, ge=0,
        description="Index into the beat's character pool; None for B-roll/VFX slots",
    )
    requires_character_ref: bool = False
    visibility: ClipVisibility = ClipVisibility.FACE_VISIBLE
    description: str = ""


class CompositionTemplate(BaseModel):
    id: str
    name: str
    category: TemplateCategory
    layout_type: Literal["1-up", "2-up-h", "2-up-v", "3-up", "4-up", "pip", "grid", "custom"] = "1-up"
    aspect_ratio: Literal["16:9", "9:16", "1:1", "4:3"] = "16:9"
    clip_count: int = Field(..., ge=1)
    positions: list[ClipPosition]

    suggested_camera_angles: list[CameraAngle] = Field(default_factory=list)
    suggested_character_views: list[str] = Field(default_factory=list)
    suggested_duration: int = 5
    description: str = ""
    tags: list[str] = Field(default_factory=list)
    is_premium: bool = False

    @model_validator(mode="after")
    def _check_layout(self):
        problems = template_violations(self)
        if problems:
            raise ValueError("; ".join(problems))
        return self


def template_violations(template: CompositionTemplate) -> list[str]:
    """Return every way `template` breaks its clip-count invariant (empty if valid)."""
    problems = []
    if template.clip_count != len(template.positions):
        problems.append(
            f"clip_count {template.clip_count} != {len(template.positions)} positions"
        )
    indices = sorted(p.clip_index for p in template.positions)
    if indices != list(range(len(template.positions))):
        problems.append(f"position indices {indices} do not cover 0..{len(template.positions) - 1} exactly once")
    for p in template.positions:
        if p.requires_character_ref and p.character_slot is None:
            problems.append(f"clip {p.clip_index} requires a character ref but has no character slot")
    return problems


# ── Plan ─────────────────────────────────────────────────────────────────────

class VideoProvider(str, Enum):
    VEO_31 = "veo-3.1"
    VEO_31_FAST = "veo-3.1-fast"
    LUMA = "luma"
    LUMA_FLASH = "luma-flash"
    RUNWAY_GEN3 = "runway-gen3"
    RUNWAY_GEN3_TURBO = "runway-gen3-turbo"


class GenerationSettings(BaseModel):
    duration: Literal[3, 5, 8, 10] = 5  # seconds per clip
    resolution: Literal["720p", "1080p", "4K"] = "1080p"
    aspect_ratio: Literal["16:9", "9:16", "1:1"] = "16:9"
    provider: VideoProvider = VideoProvider.VEO_31_FAST
    use_fast_mode: bool = False
    use_video_chaining: bool = False
    style_prompt: Optional[str] = None
    mood: Optional[str] = None
    timeout_seconds: float = Field(default=600, gt=0, description="Per provider job")


class StoryBeat(BaseModel):
    id: str
    title: str = ""
    description: str = ""
    order: int = 0


class CharacterAssignment(BaseModel):
    clip_index: int = Field(..., ge=0)
    character_id: Optional[str] = None
    character_name: Optional[str] = None

    reference_id: Optional[str] = None
    reference_label: Optional[str] = None
    reference_image_url: Optional[str] = None
    reference_match: Literal["exact", "base", "none"] = "none"

    camera_angle: CameraAngle = CameraAngle.MEDIUM_SHOT
    framing: Literal["tight", "standard", "loose"] = "standard"
    visibility: ClipVisibility = ClipVisibility.FACE_VISIBLE
    action: Optional[str] = None
    emotion: Optional[str] = None

    prompt: str
    estimated_credits: int = Field(..., ge=0)


class CompositionPlan(BaseModel):
    beat_id: str
    template: CompositionTemplate
    character_assignments: list[CharacterAssignment]
    settings: GenerationSettings = Field(default_factory=GenerationSettings)

    estimated_credits: int = Field(..., ge=0)
    estimated_duration: float = 0  # total seconds of video
    estimated_generation_time: str = ""  # "2-3 minutes"

    @model_validator(mode="after")
    def _check_assignments(self):
        problems = plan_violations(self)
        if problems:
            raise ValueError("; ".join(problems))
        return self

    def assignment_for(self, clip_index: int) -> CharacterAssignment:
        for assignment in self.character_assignments:
            if assignment.clip_index == clip_index:
                return assignment
        raise KeyError(clip_index)


def plan_violations(plan: CompositionPlan) -> list[str]:
    problems = template_violations(plan.template)
    n = plan.template.clip_count
    if len(plan.character_assignments) != n:
        problems.append(f"{len(plan.character_assignments)} assignments for {n} clips")
    indices = sorted(a.clip_index for a in plan.character_assignments)
    if indices != list(range(len(plan.character_assignments))):
        problems.append(f"assignment indices {indices} have gaps or duplicates")
    total = sum(a.estimated_credits for a in plan.character_assignments)
    if total != plan.estimated_credits:
        problems.append(f"estimated_credits {plan.estimated_credits} != per-clip sum {total}")
    return problems


# ── Production State ─────────────────────────────────────────────────────────

class ClipStatus(str, Enum):
    QUEUED = "queued"
    DISPATCHED = "dispatched"
    SUCCEEDED = "succeeded"
    FAILED_RETRYABLE = "failed-retryable"
    FAILED_PERMANENT = "failed-permanent"


TERMINAL_CLIP_STATUSES = {ClipStatus.SUCCEEDED, ClipStatus.FAILED_PERMANENT}


class ProductionStatus(str, Enum):
    PLANNING = "planning"
    GENERATING = "generating"
    READY = "ready"
    PARTIAL_FAILED = "partial-failed"
    IN_TIMELINE = "in-timeline"
    COMPLETED = "completed"


class ErrorKind(str, Enum):
    CREDIT_INSUFFICIENT = "credit_insufficient"
    API_ERROR = "api_error"
    TIMEOUT = "timeout"
    RATE_LIMITED = "rate_limited"
    SERVER_ERROR = "server_error"
    INVALID_REFERENCE = "invalid_reference"
    CONTENT_REJECTED = "content_rejected"
    CANCELLED = "cancelled"
    CHAIN_BROKEN = "chain_broken"
    UNKNOWN = "unknown"


TRANSIENT_ERROR_KINDS = {ErrorKind.TIMEOUT, ErrorKind.RATE_LIMITED, ErrorKind.SERVER_ERROR}


class CreditState(str, Enum):
    HELD = "held"
    SETTLED = "settled"
    REFUNDED = "refunded"
    RECONCILED = "reconciled"  # refunded on cancel, charged after a late success


class GenerationError(BaseModel):
    clip_index: int
    error_type: ErrorKind
    message: str
    retryable: bool = False


class ClipResult(BaseModel):
    video_url: str
    last_frame_url: Optional[str] = None
    duration: float = 0
    file_size: int = 0  # bytes
    format: str = "mp4"
    resolution: Optional[str] = None


class GeneratedClip(BaseModel):
    id: str = Field(default_factory=lambda: new_id("clip"))
    production_id: str
    clip_index: int
    status: ClipStatus = ClipStatus.QUEUED

    character_id: Optional[str] = None
    character_reference_used: Optional[str] = None
    prompt: str = ""
    provider: str = ""
    provider_job_id: Optional[str] = None

    result: Optional[ClipResult] = None
    error: Optional[GenerationError] = None

    attempts: int = 0
    retries: int = 0
    credits_estimated: int = 0
    credits_used: int = 0
    credit_state: CreditState = CreditState.HELD

    needs_regeneration: bool = False
    user_rating: Optional[int] = Field(default=None, ge=1, le=5)
    regeneration_count: int = 0
    late_result: bool = False  # arrived after the production was cancelled

    created_at: str = Field(default_factory=now_iso)
    dispatched_at: Optional[str] = None
    completed_at: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_CLIP_STATUSES


class FailedClip(BaseModel):
    clip_index: int
    error_type: ErrorKind
    reason: str


class StoryBeatProduction(BaseModel):
    id: str = Field(default_factory=lambda: new_id("prod"))
    beat_id: str
    account_id: str
    plan: CompositionPlan
    clips: list[GeneratedClip] = Field(default_factory=list)

    status: ProductionStatus = ProductionStatus.PLANNING
    progress: int = Field(default=0, ge=0, le=100)

    estimated_credits: int = 0
    actual_credits_used: int = 0
    reservation_id: Optional[str] = None

    cancelled: bool = False
    superseded_by: Optional[str] = None
    version: int = 0

    created_at: str = Field(default_factory=now_iso)
    updated_at: str = Field(default_factory=now_iso)
    generating_at: Optional[str] = None
    completed_at: Optional[str] = None

    @computed_field
    @property
    def failed_clips(self) -> list[FailedClip]:
        return [
            FailedClip(
                clip_index=clip.clip_index,
                error_type=clip.error.error_type if clip.error else ErrorKind.UNKNOWN,
                reason=clip.error.message if clip.error else "Unknown failure",
            )
            for clip in self.clips
            if clip.status == ClipStatus.FAILED_PERMANENT
        ]

    @computed_field
    @property
    def total_retries(self) -> int:
        return sum(clip.retries for clip in self.clips)

    def clip(self, clip_index: int) -> GeneratedClip:
        for clip in self.clips:
            if clip.clip_index == clip_index:
                return clip
        raise KeyError(clip_index)


# ── API Request / Response Models ────────────────────────────────────────────

class StartProductionRequest(BaseModel):
    account_id: str
    plan: CompositionPlan


class StartProductionResponse(BaseModel):
    production_id: str
    status: ProductionStatus
    estimated_credits: int


class PlanPreviewRequest(BaseModel):
    template_id: str
    character_ids: list[str] = Field(default_factory=list, description="Ordered character pool")
    settings: GenerationSettings = Field(default_factory=GenerationSettings)
    beat_title: str = ""
    beat_description: str = ""


class ClipRatingRequest(BaseModel):
    rating: int = Field(..., ge=1, le=5)


class CreditGrantRequest(BaseModel):
    amount: int = Field(..., gt=0)


class CreditBalanceResponse(BaseModel):
    account_id: str
    available: int
    held: int
    spent: int
