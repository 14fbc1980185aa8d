"""Query service client."""

from .client import QueryServiceClient, QueryServiceError, QueryServiceRequest

__all__ = [
    "QueryServiceClient",
    "QueryServiceError",
    "QueryServiceRequest",
]
