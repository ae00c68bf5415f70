"""Observability module."""
from security_pipeline.observability.logging import setup_logging, get_logger
from security_pipeline.observability import metrics

__all__ = ["setup_logging", "get_logger", "metrics"]
