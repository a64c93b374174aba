# services/batch/errors.py
from __future__ import annotations

from typing import Any, Dict, List, Optional


class MedpackError(Exception):
    """Base for every error raised by the batch pipeline."""


class ValidationError(MedpackError):
    """Malformed input or an illegal state transition. Never retried."""


class DuplicateEntryNumber(ValidationError):
    def __init__(self, batch_id: str, entry_number: int) -> None:
        super().__init__(f"entry number {entry_number} already exists in batch {batch_id}")
        self.batch_id = batch_id
        self.entry_number = entry_number


class NotReadyForAnalysis(ValidationError):
    def __init__(self, entry_id: str, reason: str) -> None:
        super().__init__(f"entry {entry_id} is not ready for analysis: {reason}")
        self.entry_id = entry_id
        self.reason = reason


class NotReviewable(ValidationError):
    def __init__(self, entry_id: str, ai_analysis_status: str) -> None:
        super().__init__(
            f"entry {entry_id} cannot be reviewed while analysis is {ai_analysis_status}"
        )
        self.entry_id = entry_id
        self.ai_analysis_status = ai_analysis_status


class InvalidTransition(ValidationError):
    def __init__(self, entry_id: str, operation: str, current: str, required: str) -> None:
        super().__init__(
            f"{operation} on entry {entry_id} requires analysis status {required}, found {current}"
        )
        self.entry_id = entry_id
        self.operation = operation
        self.current = current
        self.required = required


class NotFoundError(MedpackError):
    def __init__(self, kind: str, ident: str) -> None:
        super().__init__(f"{kind} not found: {ident}")
        self.kind = kind
        self.ident = ident


class RemoteError(MedpackError):
    """Failure of an outbound call to the vision service."""


class TransientRemoteError(RemoteError):
    """Retriable: rate limiting, 5xx, timeout or transport failure."""

    RATE_LIMITED = "rate_limited"
    SERVER_ERROR = "server_error"
    TIMEOUT = "timeout"
    TRANSPORT = "transport"

    def __init__(self, message: str, *, kind: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.kind = kind
        self.status_code = status_code


class PermanentRemoteError(RemoteError):
    """Non-retriable."""

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class MaxRetriesExceeded(PermanentRemoteError):
    def __init__(self, attempts: int, last_error: TransientRemoteError) -> None:
        super().__init__(f"gave up after {attempts} attempts: {last_error}")
        self.attempts = attempts
        self.last_error = last_error


class ImageUnavailableError(PermanentRemoteError):
    def __init__(self, storage_key: str, detail: str = "") -> None:
        msg = f"image unavailable: {storage_key}"
        if detail:
            msg = f"{msg} ({detail})"
        super().__init__(msg)
        self.storage_key = storage_key


class ParseError(MedpackError):
    """AI response could not be read as a structured object."""


class PersistenceError(MedpackError):
    def __init__(self, field_errors: Dict[str, List[str]]) -> None:
        summary = "; ".join(f"{k}: {', '.join(v)}" for k, v in sorted(field_errors.items()))
        super().__init__(summary or "record rejected")
        self.field_errors = field_errors

    def to_dict(self) -> Dict[str, Any]:
        return {"error": "validation_failed", "field_errors": self.field_errors}
