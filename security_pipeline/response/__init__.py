"""Automated response."""
from security_pipeline.response.response_executor import (
    ResponseAction,
    ResponseActionType,
    ResponseExecutor,
)

__all__ = ["ResponseAction", "ResponseActionType", "ResponseExecutor"]
