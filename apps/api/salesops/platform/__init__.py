from salesops.platform.errors import (
    AmountOutOfRange,
    ConcurrentModification,
    InvalidTransition,
    MissingEvidence,
    NotFound,
    PermissionDenied,
    QuotationCoreError,
    ValidationError,
)
from salesops.platform.security.context import ActorContext

__all__ = [
    "ActorContext",
    "QuotationCoreError",
    "InvalidTransition",
    "ValidationError",
    "AmountOutOfRange",
    "MissingEvidence",
    "PermissionDenied",
    "ConcurrentModification",
    "NotFound",
]
