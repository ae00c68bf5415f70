"""Security detection & response pipeline."""
from security_pipeline.pipeline import SecurityPipeline

__version__ = "1.0.0"

__all__ = ["SecurityPipeline"]
