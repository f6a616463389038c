"""Service error taxonomy mapped onto stable HTTP status codes."""

from __future__ import annotations


class ThumbnailServiceError(Exception):
    """Base class for errors surfaced to API callers."""

    status_code = 500
    code = "internal_error"

    def __init__(self, message: str = ""):
        super().__init__(message or self.code)
        self.message = message or self.code


class ValidationError(ThumbnailServiceError):
    status_code = 422
    code = "validation_error"


class InsufficientCreditsError(ThumbnailServiceError):
    status_code = 402
    code = "insufficient_credits"

    def __init__(self, required: int, available: int):
        super().__init__(
            f"Insufficient credits. Required: {required}, available: {available}. "
            "Top up credits to continue."
        )
        self.required = required
        self.available = available


class NotFoundError(ThumbnailServiceError):
    status_code = 404
    code = "not_found"


class NotOwnerError(ThumbnailServiceError):
    status_code = 403
    code = "not_owner"


class DuplicateRequestError(ThumbnailServiceError):
    status_code = 409
    code = "duplicate_request"


class LedgerConflictError(ThumbnailServiceError):
    status_code = 409
    code = "ledger_conflict"


class ReservationStateError(ThumbnailServiceError):
    status_code = 409
    code = "reservation_state"


class TransientExternalError(ThumbnailServiceError):
    """Timeout or throttling from recognition/inference; retried internally."""

    status_code = 503
    code = "external_unavailable"


class PermanentExternalError(ThumbnailServiceError):
    """Upstream rejected the request or returned an unusable response."""

    status_code = 502
    code = "external_rejected"


class GenerationInProgressError(ThumbnailServiceError):
    status_code = 409
    code = "generation_in_progress"
