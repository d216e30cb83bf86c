"""
File Ingestion API Router

POST /api/v1/files/upload   store a file and queue its import (202)
GET  /api/v1/files/{id}     pipeline status of one file

Request lifecycle (upload):
  ┌──────────────────────────────────────────────────────────┐
  │ 1. Content-Length guard (413 before reading the body)    │
  │ 2. Name / size / type validation (400 / 413)             │
  │ 3. sha256 + duplicate check (duplicate → 202, no job)    │
  │ 4. Store bytes, insert FileRecord (status=uploaded)      │
  │ 5. Enqueue import job → 202 with queued=true|false       │
  └──────────────────────────────────────────────────────────┘

A broker outage never fails the upload: the file is stored, the response
says queued=false and the transfer scan requeues it later.
"""

from __future__ import annotations

import logging
import uuid
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, File, Form, Request, UploadFile, status
from fastapi.responses import JSONResponse

from docpipe.api.dependencies import DB, Ingestion
from docpipe.core.config import settings
from docpipe.core.exceptions import UploadRejected
from docpipe.models import FileRecord
from docpipe.schemas.files import (
    ApiErrors,
    ErrorResponse,
    FileStatusResponse,
    FileUploadResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/files", tags=["File Ingestion"])

# multipart framing on top of the file itself
_FORM_OVERHEAD_BYTES = 4096


# ---------------------------------------------------------------------------
# POST /files/upload
# ---------------------------------------------------------------------------

@router.post(
    "/upload",
    response_model=FileUploadResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Upload a spreadsheet or PDF for import",
    responses={
        202: {"model": FileUploadResponse, "description": "File accepted (or recorded as duplicate)"},
        400: {"model": ErrorResponse, "description": "Missing file or unsupported type"},
        413: {"model": ErrorResponse, "description": "File exceeds the upload limit"},
        500: {"model": ErrorResponse, "description": "Internal server error"},
    },
)
async def upload_file(
    request:     Request,
    service:     Ingestion,
    file:        UploadFile    = File(..., description="Excel (.xlsx/.xlsm) or PDF file"),
    customer_id: Optional[UUID] = Form(None, description="Owning company, when already known"),
    template_id: Optional[UUID] = Form(None, description="Template to parse with; default per file type otherwise"),
) -> JSONResponse:
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())

    content_length = request.headers.get("content-length")
    if content_length and content_length.isdigit() \
            and int(content_length) > settings.max_upload_bytes + _FORM_OVERHEAD_BYTES:
        error = ApiErrors.upload_rejected(
            "FILE_TOO_LARGE",
            f"Received {int(content_length):,} bytes; limit is {settings.max_upload_bytes:,} bytes",
        )
        return JSONResponse(status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
                            content=error.model_dump(mode="json"))

    data = await file.read()
    try:
        result = await service.ingest(
            file.filename or "",
            data,
            source="upload",
            mime_type=file.content_type,
            customer_id=customer_id,
            template_id=template_id,
            metadata={"requestId": request_id},
        )
    except UploadRejected as exc:
        code = (status.HTTP_413_REQUEST_ENTITY_TOO_LARGE if exc.code == "FILE_TOO_LARGE"
                else status.HTTP_400_BAD_REQUEST)
        logger.info("Upload rejected | file=%s code=%s", file.filename, exc.code)
        return JSONResponse(status_code=code,
                            content=ApiErrors.upload_rejected(exc.code, exc.message).model_dump(mode="json"))
    except Exception:
        logger.exception("Unhandled ingestion error | file=%s request_id=%s", file.filename, request_id)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=ApiErrors.internal_error(request_id).model_dump(mode="json"),
            headers={"X-Request-ID": request_id},
        )

    body = FileUploadResponse(
        file_id=result.file_id,
        status=result.status,
        file_hash=result.file_hash,
        queued=result.queued,
        job_id=result.job_id,
        duplicate_of=result.duplicate_of,
    )
    return JSONResponse(
        status_code=status.HTTP_202_ACCEPTED,
        content=body.model_dump(mode="json"),
        headers={
            "X-Request-ID": request_id,
            "Location":     f"/api/v1/files/{result.file_id}",
        },
    )


# ---------------------------------------------------------------------------
# GET /files/{file_id}
# ---------------------------------------------------------------------------

@router.get(
    "/{file_id}",
    response_model=FileStatusResponse,
    summary="Poll the import status of a file",
    responses={404: {"model": ErrorResponse}},
)
async def get_file_status(file_id: UUID, db: DB):
    file = await db.get(FileRecord, file_id)
    if file is None or file.deleted_at is not None:
        return JSONResponse(status_code=status.HTTP_404_NOT_FOUND,
                            content=ApiErrors.not_found("file", file_id).model_dump(mode="json"))

    return FileStatusResponse(
        file_id=file.id,
        file_name=file.file_name,
        status=file.status,
        source=file.source,
        failure_reason=file.failure_reason,
        error_message=file.error_message,
        confidence=file.confidence,
        processing_method=file.processing_method,
        customer_id=file.customer_id,
        uploaded_at=file.uploaded_at,
        processed_at=file.processed_at,
    )
