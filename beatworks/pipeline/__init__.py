"""
Beat Production Pipeline

Plans and generates the clips of a story beat:
  Planning   — Character references → Composition template → CompositionPlan + credit estimate
  Production — Reserve credits → dispatch clip jobs to providers → settle / refund per clip
  Review     — Regenerate failed clips, cancel, place in timeline
"""

from .errors import (
    ClipNotFoundError,
    ClipStateError,
    InsufficientCreditsError,
    InvalidReferenceError,
    InvalidTemplateError,
    LedgerError,
    PipelineError,
    ProductionNotFoundError,
    ProviderPermanentError,
    ProviderTransientError,
)
from .ledger import CreditLedger, InMemoryCreditLedger, RedisCreditLedger
from .models import ClipStatus, CompositionPlan, ProductionStatus, StoryBeatProduction
from .orchestrator import ClipGenerationOrchestrator, RetryPolicy
from .planner import CompositionPlanner
from .references import CharacterReferenceLibrary, resolve_reference
from .store import ProductionStore, SupabaseProductionStore

__all__ = [
    "ClipGenerationOrchestrator",
    "RetryPolicy",
    "CompositionPlanner",
    "CharacterReferenceLibrary",
    "resolve_reference",
    "CreditLedger",
    "InMemoryCreditLedger",
    "RedisCreditLedger",
    "ProductionStore",
    "SupabaseProductionStore",
    "ClipStatus",
    "CompositionPlan",
    "ProductionStatus",
    "StoryBeatProduction",
    "PipelineError",
    "InsufficientCreditsError",
    "InvalidTemplateError",
    "InvalidReferenceError",
    "ProviderTransientError",
    "ProviderPermanentError",
    "ProductionNotFoundError",
    "ClipNotFoundError",
    "ClipStateError",
    "LedgerError",
]
