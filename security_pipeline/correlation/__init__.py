"""Event correlation."""
from security_pipeline.correlation.correlator import (
    CorrelationGroup,
    EventCorrelator,
    generate_correlation_id,
)
from security_pipeline.correlation.scheduler import CorrelationScheduler

__all__ = [
    "CorrelationGroup",
    "CorrelationScheduler",
    "EventCorrelator",
    "generate_correlation_id",
]
