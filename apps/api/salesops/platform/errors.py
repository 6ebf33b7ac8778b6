from __future__ import annotations

from typing import Any

from fastapi import status


class QuotationCoreError(Exception):
    """Base error for rejected quotation/payment operations.

    Every subclass is terminal for the call that raised it. Records are left
    unchanged and no audit entry is written.
    """

    kind = "QuotationCoreError"
    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"kind": self.kind, "detail": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class InvalidTransition(QuotationCoreError):
    kind = "InvalidTransition"
    status_code = status.HTTP_409_CONFLICT

    def __init__(self, entity: str, current: str | None, requested: str) -> None:
        self.entity = entity
        self.current = current
        self.requested = requested
        super().__init__(
            f"invalid {entity} transition {current} -> {requested}",
            current=current,
            requested=requested,
        )


class ValidationError(QuotationCoreError):
    kind = "ValidationError"
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY


class AmountOutOfRange(QuotationCoreError):
    kind = "AmountOutOfRange"
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY


class MissingEvidence(QuotationCoreError):
    kind = "MissingEvidence"
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY


class PermissionDenied(QuotationCoreError):
    kind = "PermissionDenied"
    status_code = status.HTTP_403_FORBIDDEN


class ConcurrentModification(QuotationCoreError):
    """Lost a conditional write. Safe to retry once after re-reading state."""

    kind = "ConcurrentModification"
    status_code = status.HTTP_409_CONFLICT


class NotFound(QuotationCoreError):
    kind = "NotFound"
    status_code = status.HTTP_404_NOT_FOUND
