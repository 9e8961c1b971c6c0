"""
FastAPI routes for the beat production pipeline.

Beat Endpoints:
  POST /beats/{beat_id}/plan          — Preview a CompositionPlan (nothing reserved)
  POST /beats/{beat_id}/productions   — Commit a plan: reserve credits, start generating
  GET  /beats/{beat_id}/productions   — Production history for a beat (last is current)

Production Endpoints:
  GET  /productions/{id}                           — Snapshot (long-poll with since_version + wait)
  POST /productions/{id}/clips/{index}/regenerate  — Re-dispatch one failed clip
  POST /productions/{id}/clips/{index}/rating      — Rate a clip 1-5
  POST /productions/{id}/clips/{index}/flag        — Flag a clip for regeneration
  POST /productions/{id}/cancel                    — Stop dispatch, refund
  POST /productions/{id}/timeline                  — ready → in-timeline
  POST /productions/{id}/complete                  — in-timeline → completed

Library Endpoints:
  GET  /templates
  POST /characters, GET /characters/{id}, POST /characters/{id}/references
  GET  /characters/{id}/resolve?view=...
  GET  /accounts/{id}/credits, POST /accounts/{id}/credits
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from ..templates import get_template, list_templates
from .errors import (
    ClipNotFoundError,
    ClipStateError,
    InsufficientCreditsError,
    InvalidReferenceError,
    InvalidTemplateError,
    ProductionNotFoundError,
)
from .ledger import CreditLedger
from .models import (
    CharacterProfile,
    CharacterReference,
    ClipRatingRequest,
    CompositionPlan,
    CompositionTemplate,
    CreditBalanceResponse,
    CreditGrantRequest,
    PlanPreviewRequest,
    ResolvedReference,
    StartProductionRequest,
    StartProductionResponse,
    StoryBeat,
    StoryBeatProduction,
    TemplateCategory,
)
from .orchestrator import ClipGenerationOrchestrator
from .planner import CompositionPlanner
from .references import CharacterReferenceLibrary

logger = logging.getLogger(__name__)

MAX_LONG_POLL_SECONDS = 30.0


# ── Dependencies (wired on app.state by main.create_app) ─────────────────────

def get_orchestrator(request: Request) -> ClipGenerationOrchestrator:
    return request.app.state.orchestrator


def get_planner(request: Request) -> CompositionPlanner:
    return request.app.state.planner


def get_library(request: Request) -> CharacterReferenceLibrary:
    return request.app.state.library


def get_ledger(request: Request) -> CreditLedger:
    return request.app.state.orchestrator.ledger


def _not_found(e: Exception):
    raise HTTPException(status_code=404, detail=str(e))


# ═════════════════════════════════════════════════════════════════════════════
# Beat Router
# ═════════════════════════════════════════════════════════════════════════════

beat_router = APIRouter(prefix="/beats", tags=["beats"])


@beat_router.post("/{beat_id}/plan", response_model=CompositionPlan)
async def preview_plan(
    beat_id: str,
    request: PlanPreviewRequest,
    planner: CompositionPlanner = Depends(get_planner),
    library: CharacterReferenceLibrary = Depends(get_library),
):
    """
    Build a plan for the beat from a template id and an ordered character pool.

    Errors:
      - 422: Unknown template/character, or the pool cannot fill the template
    """
    try:
        template = get_template(request.template_id)
        pool = []
        for character_id in request.character_ids:
            profile = library.get_profile(character_id)
            if profile is None:
                raise InvalidReferenceError(f"Unknown character {character_id}")
            pool.append(profile)
        beat = StoryBeat(id=beat_id, title=request.beat_title, description=request.beat_description)
        return planner.plan(beat, template, pool, request.settings)
    except (InvalidTemplateError, InvalidReferenceError) as e:
        raise HTTPException(status_code=422, detail=str(e))


@beat_router.post("/{beat_id}/productions", response_model=StartProductionResponse, status_code=202)
async def start_production(
    beat_id: str,
    request: StartProductionRequest,
    orchestrator: ClipGenerationOrchestrator = Depends(get_orchestrator),
):
    """
    Reserve the plan's credits and start generating its clips (async).

    Errors:
      - 402: Insufficient credits
      - 422: Plan is for another beat, or breaks its invariants
    """
    if request.plan.beat_id != beat_id:
        raise HTTPException(
            status_code=422,
            detail=f"Plan is for beat {request.plan.beat_id}, not {beat_id}",
        )
    try:
        production_id = await orchestrator.start_production(request.plan, request.account_id)
    except InsufficientCreditsError as e:
        raise HTTPException(status_code=402, detail=str(e))
    except (InvalidTemplateError, InvalidReferenceError) as e:
        raise HTTPException(status_code=422, detail=str(e))
    except Exception as e:
        logger.error(f"Production start failed for beat {beat_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))

    production = await orchestrator.get_production(production_id)
    return StartProductionResponse(
        production_id=production_id,
        status=production.status,
        estimated_credits=production.estimated_credits,
    )


@beat_router.get("/{beat_id}/productions", response_model=list[StoryBeatProduction])
async def list_productions(
    beat_id: str,
    orchestrator: ClipGenerationOrchestrator = Depends(get_orchestrator),
):
    return await orchestrator.list_productions_for_beat(beat_id)


# ═════════════════════════════════════════════════════════════════════════════
# Production Router
# ═════════════════════════════════════════════════════════════════════════════

production_router = APIRouter(prefix="/productions", tags=["productions"])


@production_router.get("/{production_id}", response_model=StoryBeatProduction)
async def get_production(
    production_id: str,
    since_version: Optional[int] = Query(default=None, ge=0),
    wait: float = Query(default=0, ge=0, description="Seconds to hold the request for a newer version"),
    orchestrator: ClipGenerationOrchestrator = Depends(get_orchestrator),
):
    """Current snapshot. With `since_version` and `wait`, returns as soon as the version moves."""
    try:
        if since_version is not None and wait > 0:
            return await orchestrator.store.wait_for_change(
                production_id, since_version, min(wait, MAX_LONG_POLL_SECONDS)
            )
        return await orchestrator.get_production(production_id)
    except ProductionNotFoundError as e:
        _not_found(e)


@production_router.post(
    "/{production_id}/clips/{clip_index}/regenerate",
    response_model=StoryBeatProduction,
    status_code=202,
)
async def regenerate_clip(
    production_id: str,
    clip_index: int,
    orchestrator: ClipGenerationOrchestrator = Depends(get_orchestrator),
):
    """
    Re-dispatch one failed clip. Succeeded siblings are untouched.

    Errors:
      - 402: Insufficient credits for the new attempt
      - 404: Unknown production or clip
      - 409: Clip already succeeded or is still in flight; production cancelled/locked
    """
    try:
        return await orchestrator.regenerate_clip(production_id, clip_index)
    except (ProductionNotFoundError, ClipNotFoundError) as e:
        _not_found(e)
    except ClipStateError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except InsufficientCreditsError as e:
        raise HTTPException(status_code=402, detail=str(e))


@production_router.post("/{production_id}/clips/{clip_index}/rating", response_model=StoryBeatProduction)
async def rate_clip(
    production_id: str,
    clip_index: int,
    request: ClipRatingRequest,
    orchestrator: ClipGenerationOrchestrator = Depends(get_orchestrator),
):
    try:
        return await orchestrator.rate_clip(production_id, clip_index, request.rating)
    except (ProductionNotFoundError, ClipNotFoundError) as e:
        _not_found(e)


@production_router.post("/{production_id}/clips/{clip_index}/flag", response_model=StoryBeatProduction)
async def flag_clip(
    production_id: str,
    clip_index: int,
    orchestrator: ClipGenerationOrchestrator = Depends(get_orchestrator),
):
    try:
        return await orchestrator.flag_clip_for_regeneration(production_id, clip_index)
    except (ProductionNotFoundError, ClipNotFoundError) as e:
        _not_found(e)


@production_router.post("/{production_id}/cancel", response_model=StoryBeatProduction)
async def cancel_production(
    production_id: str,
    orchestrator: ClipGenerationOrchestrator = Depends(get_orchestrator),
):
    try:
        return await orchestrator.cancel_production(production_id)
    except ProductionNotFoundError as e:
        _not_found(e)
    except ClipStateError as e:
        raise HTTPException(status_code=409, detail=str(e))


@production_router.post("/{production_id}/timeline", response_model=StoryBeatProduction)
async def mark_in_timeline(
    production_id: str,
    orchestrator: ClipGenerationOrchestrator = Depends(get_orchestrator),
):
    try:
        return await orchestrator.mark_in_timeline(production_id)
    except ProductionNotFoundError as e:
        _not_found(e)
    except ClipStateError as e:
        raise HTTPException(status_code=409, detail=str(e))


@production_router.post("/{production_id}/complete", response_model=StoryBeatProduction)
async def mark_completed(
    production_id: str,
    orchestrator: ClipGenerationOrchestrator = Depends(get_orchestrator),
):
    try:
        return await orchestrator.mark_completed(production_id)
    except ProductionNotFoundError as e:
        _not_found(e)
    except ClipStateError as e:
        raise HTTPException(status_code=409, detail=str(e))


# ═════════════════════════════════════════════════════════════════════════════
# Library Router: templates, characters, credit balances
# ═════════════════════════════════════════════════════════════════════════════

library_router = APIRouter(tags=["library"])


@library_router.get("/templates", response_model=list[CompositionTemplate])
async def get_templates(category: Optional[TemplateCategory] = None):
    return list_templates(category)


@library_router.post("/characters", response_model=CharacterProfile, status_code=201)
async def register_character(
    profile: CharacterProfile,
    library: CharacterReferenceLibrary = Depends(get_library),
):
    try:
        return library.register_profile(profile)
    except (InvalidReferenceError, ValueError) as e:
        raise HTTPException(status_code=409, detail=str(e))


@library_router.get("/characters/{character_id}", response_model=CharacterProfile)
async def get_character(
    character_id: str,
    library: CharacterReferenceLibrary = Depends(get_library),
):
    profile = library.get_profile(character_id)
    if profile is None:
        raise HTTPException(status_code=404, detail=f"Character {character_id} not found")
    return profile


@library_router.post("/characters/{character_id}/references", response_model=CharacterProfile, status_code=201)
async def add_reference(
    character_id: str,
    reference: CharacterReference,
    library: CharacterReferenceLibrary = Depends(get_library),
):
    """Append a reference. Existing references are never edited or removed."""
    if library.get_profile(character_id) is None:
        raise HTTPException(status_code=404, detail=f"Character {character_id} not found")
    try:
        return library.add_reference(character_id, reference)
    except InvalidReferenceError as e:
        raise HTTPException(status_code=409, detail=str(e))


@library_router.get("/characters/{character_id}/resolve", response_model=ResolvedReference)
async def resolve_reference(
    character_id: str,
    view: Optional[str] = None,
    library: CharacterReferenceLibrary = Depends(get_library),
):
    return library.resolve_reference(character_id, view)


@library_router.get("/accounts/{account_id}/credits", response_model=CreditBalanceResponse)
async def get_credits(account_id: str, ledger: CreditLedger = Depends(get_ledger)):
    account = ledger.get_account(account_id)
    return CreditBalanceResponse(
        account_id=account_id,
        available=account.available,
        held=account.held,
        spent=account.spent,
    )


@library_router.post("/accounts/{account_id}/credits", response_model=CreditBalanceResponse)
async def grant_credits(
    account_id: str,
    request: CreditGrantRequest,
    ledger: CreditLedger = Depends(get_ledger),
):
    account = ledger.deposit(account_id, request.amount)
    return CreditBalanceResponse(
        account_id=account_id,
        available=account.available,
        held=account.held,
        spent=account.spent,
    )
