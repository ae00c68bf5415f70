"""
Error taxonomy for the detection & response pipeline.
Every error carries a ``tag`` so callers can report failures uniformly.
"""
from typing import List, Optional


class PipelineError(Exception):
    """Base exception for pipeline errors."""

    tag = "pipeline_error"


class NotFoundError(PipelineError):
    """Incident or alert rule lookup missed."""

    tag = "not_found"

    def __init__(self, kind: str, identifier: str):
        super().__init__(f"{kind} not found: {identifier}")
        self.kind = kind
        self.identifier = identifier


class ValidationFailureError(PipelineError):
    """Malformed ingest payload or rule definition."""

    tag = "validation_failure"

    def __init__(self, message: str, errors: Optional[List[dict]] = None):
        super().__init__(message)
        self.errors = errors or []


class InvalidTransitionError(ValidationFailureError):
    """Incident status change that moves backward in the lifecycle."""

    pass


class DownstreamDispatchError(PipelineError):
    """An outbound command or notification could not be delivered."""

    tag = "downstream_dispatch_failure"

    def __init__(self, topic: str, errors: List[BaseException]):
        details = "; ".join(f"{type(e).__name__}: {e}" for e in errors)
        super().__init__(f"Dispatch to {topic} failed: {details}")
        self.topic = topic
        self.errors = errors


class StoreUnavailableError(PipelineError):
    """Event, threat intelligence or incident store unreachable."""

    tag = "store_unavailable"
