"""Source engine write API client."""

from .client import EngineError, EngineWriteRequest, SourceEngineClient

__all__ = [
    "EngineError",
    "EngineWriteRequest",
    "SourceEngineClient",
]
