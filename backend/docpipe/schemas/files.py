"""
Ingestion API — Pydantic Request/Response Schemas

Covers:
  - POST /api/v1/files/upload          (202 Accepted, queued flag)
  - GET  /api/v1/files/{id}            (pipeline status of one file)
  - GET  /api/v1/queues/{name}/counts
  - bulk parsing tests (create / poll / cancel)
  - the structured error envelope shared by every 4xx/5xx

All timestamps are ISO-8601 UTC.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# File pipeline state machine
# ---------------------------------------------------------------------------

class FileStatus(str, Enum):
    """
    Maps to files.status.
    Transitions: uploaded → processing → parsed | unallocated | failed
                 (duplicate is assigned at ingestion and never changes)
    """
    UPLOADED    = "uploaded"
    PROCESSING  = "processing"
    PARSED      = "parsed"
    UNALLOCATED = "unallocated"
    DUPLICATE   = "duplicate"
    FAILED      = "failed"


# ---------------------------------------------------------------------------
# Upload — 202 Accepted
# ---------------------------------------------------------------------------

class FileUploadResponse(BaseModel):
    """
    Returned as soon as the file is stored. Processing is asynchronous;
    queued=False means the broker was unavailable and the file will be
    picked up by the next transfer scan.
    """
    file_id:   UUID       = Field(..., description="Server-generated file UUID")
    status:    FileStatus = Field(FileStatus.UPLOADED)
    file_hash: str        = Field(..., description="sha256 hex digest of the uploaded bytes")
    queued:    bool       = Field(..., description="True when the import job reached the broker")
    job_id:    str | None = None
    duplicate_of: UUID | None = Field(None, description="Earlier file with the same hash, if any")


class FileStatusResponse(BaseModel):
    file_id:        UUID
    file_name:      str
    status:         FileStatus
    source:         str
    failure_reason: str | None = None
    error_message:  str | None = None
    confidence:     int | None = None
    processing_method: str | None = None
    customer_id:    UUID | None = None
    uploaded_at:    datetime
    processed_at:   datetime | None = None


# ---------------------------------------------------------------------------
# Queues
# ---------------------------------------------------------------------------

class QueueCountsResponse(BaseModel):
    queue:     str
    waiting:   int = 0
    active:    int = 0
    completed: int = 0
    failed:    int = 0
    delayed:   int = 0
    degraded:  bool = Field(False, description="True when the broker is unreachable")


# ---------------------------------------------------------------------------
# Bulk parsing tests
# ---------------------------------------------------------------------------

class BulkTestCreatedResponse(BaseModel):
    test_id: str
    total:   int
    queued:  int = Field(..., description="Files whose job reached the broker")
    parser:  str


class BulkTestResponse(BaseModel):
    test_id:     str
    parser:      str
    template_id: str | None = None
    status:      str = Field(..., description="processing | completed | cancelled")
    total:       int
    completed:   int
    created_at:  str
    results:     list[dict[str, Any]] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Structured error bodies
# ---------------------------------------------------------------------------

class ErrorDetail(BaseModel):
    field:   str | None = Field(None, description="Request field that caused the error, if applicable")
    message: str
    code:    str        = Field(..., description="Machine-readable error code for client handling")


class ErrorResponse(BaseModel):
    """
    Uniform error envelope for all 4xx/5xx responses.
    Clients should check `error_code` for programmatic handling.
    """
    error_code: str               = Field(..., description="Stable machine-readable code")
    message:    str               = Field(..., description="Human-readable summary")
    details:    list[ErrorDetail] = Field(default_factory=list)
    request_id: str | None        = Field(None, description="Trace ID for log correlation")


class ApiErrors:
    """Factories for every documented error case."""

    @staticmethod
    def upload_rejected(code: str, message: str) -> ErrorResponse:
        return ErrorResponse(
            error_code=code,
            message=message,
            details=[ErrorDetail(field="file", message=message, code=code)],
        )

    @staticmethod
    def invalid_field(field: str, message: str) -> ErrorResponse:
        return ErrorResponse(
            error_code="INVALID_REQUEST",
            message=message,
            details=[ErrorDetail(field=field, message=message, code="INVALID_REQUEST")],
        )

    @staticmethod
    def not_found(kind: str, identifier: Any) -> ErrorResponse:
        code = f"{kind.upper().replace(' ', '_')}_NOT_FOUND"
        return ErrorResponse(error_code=code, message=f"{kind.capitalize()} '{identifier}' was not found.")

    @staticmethod
    def internal_error(request_id: str | None = None) -> ErrorResponse:
        return ErrorResponse(
            error_code="INTERNAL_ERROR",
            message="An unexpected error occurred.",
            request_id=request_id,
        )


# ---------------------------------------------------------------------------
# HTTP status code → error code mapping (for OpenAPI documentation)
# ---------------------------------------------------------------------------

HTTP_ERROR_MAP: dict[int, str] = {
    400: "INVALID_REQUEST",        # missing file, unsupported type, bad form field
    404: "NOT_FOUND",              # unknown file / queue / bulk test
    413: "FILE_TOO_LARGE",         # body exceeds settings.max_upload_bytes
    422: "VALIDATION_ERROR",       # FastAPI Pydantic validation failure
    500: "INTERNAL_ERROR",         # unhandled exception
}
