"""
Pipeline error taxonomy.

Every error raised inside the import / notification pipeline belongs to one
of three categories, and the category alone decides what a worker does:

  TransientError  → retried with the queue's backoff, up to its attempt ceiling
  DataError       → not retried; reason recorded on the FileRecord / email log
  PermanentError  → terminal immediately; status set, no further attempts

Workers catch PipelineError subclasses at the task boundary. Anything that is
not a PipelineError (driver errors, socket errors) is treated as transient.
"""

from __future__ import annotations


class PipelineError(Exception):
    """Base for all classified pipeline failures."""

    #: short machine-readable reason stored next to the human message
    reason: str = "other"

    def __init__(self, message: str, *, reason: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        if reason is not None:
            self.reason = reason


class TransientError(PipelineError):
    reason = "transient"


class DataError(PipelineError):
    reason = "validation_error"


class PermanentError(PipelineError):
    reason = "other"


# ---------------------------------------------------------------------------
# Concrete types
# ---------------------------------------------------------------------------

class BrokerUnavailable(TransientError):
    """The external broker could not be reached."""
    reason = "broker_unavailable"


class ExtractionBackendUnavailable(TransientError):
    """A configured OCR backend is not registered or not reachable."""
    reason = "backend_unavailable"


class NoMappingDefined(DataError):
    """Template has zero cell mappings; raised before any I/O."""
    reason = "parsing_error"


class EntityNotMatched(DataError):
    reason = "unallocated"


class MissingMandatoryFields(DataError):
    reason = "validation_error"

    def __init__(self, missing: list[str]) -> None:
        self.missing = missing
        super().__init__(f"Missing mandatory fields: {', '.join(missing)}")


class EmailValidationError(DataError):
    reason = "validation_error"


class UploadRejected(DataError):
    """An incoming file was refused before anything was stored."""
    reason = "validation_error"

    def __init__(self, message: str, *, code: str = "INVALID_UPLOAD") -> None:
        super().__init__(message)
        self.code = code


class MalformedWorkbook(PermanentError):
    reason = "parsing_error"


class UnsupportedDocument(PermanentError):
    reason = "parsing_error"


class EnqueueFailed(PermanentError):
    reason = "enqueue_failed"


class PermanentDeliveryError(PermanentError):
    """The email provider rejected the message in a way retries cannot fix."""
    reason = "permanent_delivery"


def is_retryable(exc: BaseException) -> bool:
    """True if a worker should hand the exception back to the broker for retry."""
    if isinstance(exc, PipelineError):
        return isinstance(exc, TransientError)
    return True
