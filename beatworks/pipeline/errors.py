"""
Exception taxonomy for the beat production pipeline.

Planning-time errors (credits, templates, references) abort before any credit
is reserved or any clip is dispatched. Provider errors are raised per clip and
never abort sibling clips.
"""

from typing import Optional


class PipelineError(Exception):
    """Base class for every error raised by the production pipeline."""


# ── Planning-time (fatal) ────────────────────────────────────────────────────

class InsufficientCreditsError(PipelineError):
    def __init__(self, account_id: str, requested: int, available: int):
        self.account_id = account_id
        self.requested = requested
        self.available = available
        super().__init__(
            f"Insufficient credits for account {account_id}: "
            f"requested {requested}, available {available}"
        )


class InvalidTemplateError(PipelineError):
    """The template (or plan) violates its clip-count / coverage invariant."""


class InvalidReferenceError(PipelineError):
    """A clip needs a character reference that cannot be resolved."""


# ── Provider runtime ─────────────────────────────────────────────────────────

class ProviderError(PipelineError):
    """Raised by provider adapters. `kind` mirrors GenerationError.error_type."""

    retryable = False

    def __init__(self, message: str, kind: str = "api_error", provider_job_id: Optional[str] = None):
        self.kind = kind
        self.provider_job_id = provider_job_id
        super().__init__(message)


class ProviderTransientError(ProviderError):
    """Timeout, provider-side rate limit or 5xx. Eligible for retry."""

    retryable = True


class ProviderPermanentError(ProviderError):
    """Content rejection, invalid reference, provider-side billing failure."""

    retryable = False


# ── Lookup / state ───────────────────────────────────────────────────────────

class ProductionNotFoundError(PipelineError):
    def __init__(self, production_id: str):
        self.production_id = production_id
        super().__init__(f"Production {production_id} not found")


class ClipNotFoundError(PipelineError):
    def __init__(self, production_id: str, clip_index: int):
        self.production_id = production_id
        self.clip_index = clip_index
        super().__init__(f"Production {production_id} has no clip {clip_index}")


class ClipStateError(PipelineError):
    """An operation was requested on a clip (or production) in the wrong state."""


class LedgerError(PipelineError):
    """Reservation bookkeeping was violated (unknown reservation, closed hold...)."""
