"""
Integration Tests — Ingestion HTTP API
══════════════════════════════════════
These tests exercise the FULL FastAPI routing stack, including:
  - Multipart form parsing
  - Dependency injection from app.state (broker, session factory, stores)
  - Response status codes, error envelopes and headers

What is mocked vs real
──────────────────────
  ✅ Real: FastAPI routing, request parsing, Pydantic schemas,
           IngestionService, FileStore / BulkTestStore under tmp_path,
           SQLite database
  🔲 Mock: Celery broker (mock_broker fixture)

How to run
──────────
  pytest -m integration tests/integration/test_upload_api.py -v
"""

from __future__ import annotations

import uuid
from unittest.mock import AsyncMock

import pytest

from docpipe.core.config import settings
from docpipe.queue.catalogue import QueueName

XLSX_MIME = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


# ─────────────────────────────────────────────────────────────────────────────
# POST /api/v1/files/upload
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.integration
class TestUploadEndpoint:

    async def test_upload_returns_202(self, async_client, mock_broker, invoice_workbook):
        response = await async_client.post(
            "/api/v1/files/upload",
            files={"file": ("march.xlsx", invoice_workbook, XLSX_MIME)},
            headers={"X-Request-ID": "req-123"},
        )

        assert response.status_code == 202
        body = response.json()
        assert body["status"] == "uploaded"
        assert body["queued"] is True
        assert body["job_id"] == f"file-import_{body['file_id']}"
        assert len(body["file_hash"]) == 64
        assert response.headers["X-Request-ID"] == "req-123"
        assert response.headers["Location"] == f"/api/v1/files/{body['file_id']}"
        assert mock_broker.enqueue_safe.await_args.args[0] == QueueName.FILE_IMPORT

    async def test_duplicate_upload_is_accepted_without_job(self, async_client, mock_broker, invoice_workbook):
        first = await async_client.post("/api/v1/files/upload",
                                        files={"file": ("a.xlsx", invoice_workbook, XLSX_MIME)})
        mock_broker.enqueue_safe.reset_mock()

        second = await async_client.post("/api/v1/files/upload",
                                         files={"file": ("b.xlsx", invoice_workbook, XLSX_MIME)})

        assert second.status_code == 202
        assert second.json()["status"] == "duplicate"
        assert second.json()["duplicate_of"] == first.json()["file_id"]
        mock_broker.enqueue_safe.assert_not_awaited()

    async def test_broker_outage_still_accepts(self, async_client, app_with_overrides, noop_broker, invoice_workbook):
        app_with_overrides.state.broker = noop_broker

        response = await async_client.post("/api/v1/files/upload",
                                           files={"file": ("march.xlsx", invoice_workbook, XLSX_MIME)})

        assert response.status_code == 202
        assert response.json()["queued"] is False

    async def test_unsupported_type_is_400(self, async_client):
        response = await async_client.post(
            "/api/v1/files/upload",
            files={"file": ("notes.docx", b"PK\x03\x04", "application/octet-stream")},
        )

        assert response.status_code == 400
        assert response.json()["error_code"] == "UNSUPPORTED_FILE_TYPE"

    async def test_empty_file_is_400(self, async_client):
        response = await async_client.post("/api/v1/files/upload",
                                           files={"file": ("march.xlsx", b"", XLSX_MIME)})

        assert response.status_code == 400
        assert response.json()["error_code"] == "MISSING_FILE"

    async def test_oversized_file_is_413(self, async_client, monkeypatch):
        monkeypatch.setattr(settings, "max_upload_bytes", 100)

        response = await async_client.post("/api/v1/files/upload",
                                           files={"file": ("march.xlsx", b"x" * 200, XLSX_MIME)})

        assert response.status_code == 413
        assert response.json()["error_code"] == "FILE_TOO_LARGE"

    async def test_oversized_body_rejected_before_reading(self, async_client, monkeypatch):
        monkeypatch.setattr(settings, "max_upload_bytes", 100)

        response = await async_client.post("/api/v1/files/upload",
                                           files={"file": ("march.xlsx", b"x" * 10_000, XLSX_MIME)})

        assert response.status_code == 413
        assert response.json()["error_code"] == "FILE_TOO_LARGE"

    async def test_missing_file_field_is_422(self, async_client):
        response = await async_client.post("/api/v1/files/upload", data={"customer_id": str(uuid.uuid4())})

        assert response.status_code == 422
        assert response.json()["error_code"] == "VALIDATION_ERROR"


# ─────────────────────────────────────────────────────────────────────────────
# GET /api/v1/files/{id}
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.integration
class TestFileStatusEndpoint:

    async def test_status_after_upload(self, async_client, invoice_workbook):
        upload = await async_client.post("/api/v1/files/upload",
                                         files={"file": ("march.xlsx", invoice_workbook, XLSX_MIME)})
        file_id = upload.json()["file_id"]

        response = await async_client.get(f"/api/v1/files/{file_id}")

        assert response.status_code == 200
        body = response.json()
        assert body["file_id"] == file_id
        assert body["file_name"] == "march.xlsx"
        assert body["status"] == "uploaded"
        assert body["source"] == "upload"

    async def test_unknown_file_is_404(self, async_client):
        response = await async_client.get(f"/api/v1/files/{uuid.uuid4()}")

        assert response.status_code == 404
        assert response.json()["error_code"] == "FILE_NOT_FOUND"


# ─────────────────────────────────────────────────────────────────────────────
# Queues / health
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.integration
class TestQueueEndpoints:

    async def test_counts(self, async_client, mock_broker):
        mock_broker.get_counts.return_value = {
            "waiting": 3, "active": 1, "completed": 10, "failed": 2, "delayed": 1,
        }

        response = await async_client.get("/api/v1/queues/email/counts")

        assert response.status_code == 200
        assert response.json() == {
            "queue": "email", "waiting": 3, "active": 1, "completed": 10,
            "failed": 2, "delayed": 1, "degraded": False,
        }
        mock_broker.get_counts.assert_awaited_once_with(QueueName.EMAIL)

    async def test_unknown_queue_is_404(self, async_client):
        response = await async_client.get("/api/v1/queues/fax/counts")

        assert response.status_code == 404
        assert response.json()["error_code"] == "QUEUE_NOT_FOUND"

    async def test_health_reports_broker_state(self, async_client, monkeypatch):
        monkeypatch.setattr("docpipe.main.check_db_health", AsyncMock(return_value={"status": "ok"}))

        response = await async_client.get("/health")

        assert response.status_code == 200
        assert response.json()["broker"] == "ok"


# ─────────────────────────────────────────────────────────────────────────────
# Bulk parsing tests
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.integration
class TestBulkTestEndpoints:

    async def _create(self, async_client, invoice_workbook, sample_pdf_bytes, **form):
        return await async_client.post(
            "/api/v1/bulk-tests",
            files=[
                ("files", ("march.xlsx", invoice_workbook, XLSX_MIME)),
                ("files", ("scan.pdf", sample_pdf_bytes, "application/pdf")),
            ],
            data=form,
        )

    async def test_create_queues_one_job_per_file(
        self, async_client, mock_broker, invoice_workbook, sample_pdf_bytes,
    ):
        response = await self._create(async_client, invoice_workbook, sample_pdf_bytes, parser="auto")

        assert response.status_code == 202
        body = response.json()
        assert (body["total"], body["queued"], body["parser"]) == (2, 2, "auto")
        job_ids = [c.kwargs["job_id"] for c in mock_broker.enqueue_safe.await_args_list]
        assert job_ids == [f"bulk_{body['test_id']}_0", f"bulk_{body['test_id']}_1"]
        assert {c.args[0] for c in mock_broker.enqueue_safe.await_args_list} == {QueueName.BULK_PARSING_TEST}

    async def test_unknown_parser_is_400(self, async_client, invoice_workbook, sample_pdf_bytes):
        response = await self._create(async_client, invoice_workbook, sample_pdf_bytes, parser="magic")

        assert response.status_code == 400
        assert response.json()["error_code"] == "INVALID_REQUEST"

    async def test_poll_and_cancel(self, async_client, invoice_workbook, sample_pdf_bytes):
        test_id = (await self._create(async_client, invoice_workbook, sample_pdf_bytes)).json()["test_id"]

        polled = await async_client.get(f"/api/v1/bulk-tests/{test_id}")
        assert polled.status_code == 200
        assert (polled.json()["status"], polled.json()["completed"]) == ("processing", 0)

        cancelled = await async_client.post(f"/api/v1/bulk-tests/{test_id}/cancel")
        assert cancelled.status_code == 200
        assert cancelled.json()["status"] == "cancelled"

    async def test_unknown_test_is_404(self, async_client):
        response = await async_client.get(f"/api/v1/bulk-tests/{uuid.uuid4()}")

        assert response.status_code == 404
        assert response.json()["error_code"] == "BULK_TEST_NOT_FOUND"
