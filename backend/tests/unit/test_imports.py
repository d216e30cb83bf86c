"""
Unit Tests — File import pipeline
══════════════════════════════════
Runs import_file end to end against SQLite, a tmp_path file store and the
mocked broker. Formula recalculation is stubbed.

Coverage targets:
  ✅ Matched by account number  → file parsed + invoice row + notice queued
  ✅ No owning company          → unallocated with the matcher's explanation
  ✅ No cell mapping            → failed / parsing_error, file never read
  ✅ Mandatory field missing    → failed / validation_error, parsed data kept
  ✅ Redelivered job            → skipped, nothing changes
  ✅ Same file twice            → second import ends duplicate
  ✅ Other integrity errors     → failed / other, never reported as duplicate
  ✅ Supplier templates         → owner from the upload, supplier on the document
  ✅ Transient failure          → re-raised; marked failed only on the last attempt
  ✅ Notices disabled per tenant
"""

from __future__ import annotations

import uuid
from datetime import date
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from docpipe.core.exceptions import ExtractionBackendUnavailable
from docpipe.models import FileRecord, Invoice
from docpipe.queue.catalogue import QueueName
from docpipe.workers.imports import import_file
from tests.conftest import recalculated

EVALUATED = recalculated({("Invoice", "B11"): 5.52, ("Invoice", "B12"): 33.12})


@pytest.fixture
def run_import(mock_broker, session_factory, file_store):
    async def _run(file_id, **options):
        options.setdefault("recalculator", EVALUATED)
        return await import_file(
            file_id, broker=mock_broker, session_factory=session_factory, file_store=file_store, **options,
        )
    return _run


async def _file(session_factory, file_id) -> FileRecord:
    async with session_factory() as session:
        return await session.get(FileRecord, file_id)


async def _invoices(session_factory) -> list[Invoice]:
    async with session_factory() as session:
        return list((await session.execute(select(Invoice))).scalars().all())


@pytest.mark.unit
class TestImportFile:

    async def test_matched_file_becomes_document(
        self, run_import, mock_broker, session_factory, make_company, make_template, make_file,
        invoice_workbook,
    ):
        company = await make_company("Acme Ltd", account_number="ACC-001",
                                     notification_emails=["ap@acme.test"])
        await make_template(is_default=True)
        record = await make_file(invoice_workbook)

        outcome = await run_import(record.id)

        assert outcome.status == "parsed"
        assert outcome.company_id == company.id
        assert outcome.document_type == "invoice"

        stored = await _file(session_factory, record.id)
        assert stored.status == "parsed"
        assert stored.customer_id == company.id
        assert stored.parsed_data["totalAmount"] == "33.12"
        assert stored.processing_method == "excel"

        [invoice] = await _invoices(session_factory)
        assert invoice.id == outcome.document_id
        assert invoice.document_number == "INV-1001"
        assert invoice.issue_date == date(2025, 12, 5)
        assert invoice.amount == Decimal("33.12")
        assert invoice.tax_amount == Decimal("5.52")
        assert invoice.doc_metadata["matchMethod"] == "code"

        queue_name, payload = mock_broker.enqueue.await_args.args
        assert queue_name == QueueName.EMAIL
        assert payload["to"] == ["ap@acme.test"]

    async def test_unmatched_file_is_unallocated(
        self, run_import, session_factory, make_template, make_file, invoice_workbook,
    ):
        await make_template(is_default=True)
        record = await make_file(invoice_workbook)

        outcome = await run_import(record.id)

        assert outcome.status == "unallocated"
        stored = await _file(session_factory, record.id)
        assert stored.status == "unallocated"
        assert stored.error_message == 'No matching company found for code "ACC-001" or name "Acme Ltd"'
        assert stored.parsed_data["invoiceNumber"] == "INV-1001"
        assert await _invoices(session_factory) == []

    async def test_no_mapping_fails_before_reading(
        self, run_import, session_factory, file_store, make_template, make_file, invoice_workbook,
    ):
        await make_template(is_default=True, excel_cells={})
        record = await make_file(invoice_workbook)
        await file_store.delete(record.file_path)

        outcome = await run_import(record.id)

        assert (outcome.status, outcome.reason) == ("failed", "parsing_error")
        stored = await _file(session_factory, record.id)
        assert stored.status == "failed"
        assert stored.failure_reason == "parsing_error"

    async def test_no_template_at_all(self, run_import, make_file, invoice_workbook):
        record = await make_file(invoice_workbook)

        outcome = await run_import(record.id)

        assert (outcome.status, outcome.reason) == ("failed", "parsing_error")

    async def test_missing_mandatory_field(
        self, run_import, session_factory, make_company, make_template, make_file, invoice_workbook,
    ):
        await make_company("Acme Ltd", account_number="ACC-001")
        await make_template(is_default=True, mandatory_fields=["acme_invoice_no", "acme_customer_po"])
        record = await make_file(invoice_workbook)

        outcome = await run_import(record.id)

        assert (outcome.status, outcome.reason) == ("failed", "validation_error")
        stored = await _file(session_factory, record.id)
        assert "customerPO" in stored.error_message
        assert stored.parsed_data["totalAmount"] == "33.12"
        assert await _invoices(session_factory) == []

    async def test_redelivered_job_is_skipped(self, run_import, session_factory, make_file, invoice_workbook):
        record = await make_file(invoice_workbook, status="parsed")

        outcome = await run_import(record.id)

        assert (outcome.status, outcome.reason) == ("skipped", "parsed")
        assert (await _file(session_factory, record.id)).status == "parsed"

    async def test_unknown_file(self, run_import):
        assert (await run_import(uuid.uuid4())).status == "not_found"

    async def test_same_file_twice_is_duplicate(
        self, run_import, session_factory, make_company, make_template, make_file, invoice_workbook,
    ):
        await make_company("Acme Ltd", account_number="ACC-001")
        await make_template(is_default=True)
        first = await make_file(invoice_workbook)
        second = await make_file(invoice_workbook, file_name="copy.xlsx")

        assert (await run_import(first.id)).status == "parsed"
        outcome = await run_import(second.id)

        assert outcome.status == "duplicate"
        assert (await _file(session_factory, second.id)).status == "duplicate"
        assert len(await _invoices(session_factory)) == 1

    async def test_other_integrity_error_is_a_failure(
        self, run_import, session_factory, make_company, make_template, make_file, invoice_workbook,
        monkeypatch,
    ):
        await make_company("Acme Ltd", account_number="ACC-001")
        await make_template(is_default=True)
        record = await make_file(invoice_workbook)
        rejected = IntegrityError("INSERT INTO invoices", {}, Exception("NOT NULL constraint failed: invoices.doc_number"))
        monkeypatch.setattr("docpipe.workers.imports.update_file_and_create_document",
                            AsyncMock(side_effect=rejected))

        outcome = await run_import(record.id)

        assert (outcome.status, outcome.reason) == ("failed", "other")
        stored = await _file(session_factory, record.id)
        assert stored.status == "failed"
        assert stored.failure_reason == "other"
        assert "NOT NULL" in stored.error_message

    @pytest.mark.parametrize("message,duplicate", [
        ('duplicate key value violates unique constraint "uq_invoices_hash_company"', True),
        ("UNIQUE constraint failed: invoices.file_hash, invoices.company_id", True),
        ('duplicate key value violates unique constraint "invoices_pkey"', False),
        ("FOREIGN KEY constraint failed", False),
    ])
    def test_only_the_hash_constraint_means_duplicate(self, message, duplicate):
        from docpipe.workers.imports import _is_duplicate_document

        assert _is_duplicate_document(IntegrityError("INSERT", {}, Exception(message))) is duplicate

    async def test_supplier_template_keeps_upload_owner(
        self, run_import, session_factory, make_company, make_supplier, make_template, make_file,
        invoice_workbook,
    ):
        company = await make_company("Builders Merchant")
        supplier = await make_supplier("Acme Ltd", code="ACC-001")
        template = await make_template(match_target="supplier")
        record = await make_file(invoice_workbook, customer_id=company.id, template_id=template.id)

        outcome = await run_import(record.id)

        assert outcome.status == "parsed"
        [invoice] = await _invoices(session_factory)
        assert invoice.company_id == company.id
        assert invoice.doc_metadata["supplierId"] == str(supplier.id)

    async def test_supplier_template_without_owner_is_unallocated(
        self, run_import, make_supplier, make_template, make_file, invoice_workbook,
    ):
        await make_supplier("Acme Ltd", code="ACC-001")
        template = await make_template(match_target="supplier")
        record = await make_file(invoice_workbook, template_id=template.id)

        assert (await run_import(record.id)).status == "unallocated"

    async def test_transient_error_retries_then_fails(
        self, run_import, session_factory, make_template, make_file, sample_pdf_bytes,
    ):
        await make_template(code="scan", file_type="pdf", extraction_backend="documentai",
                            excel_cells={}, is_default=True)
        record = await make_file(sample_pdf_bytes, file_name="scan.pdf")

        with pytest.raises(ExtractionBackendUnavailable):
            await run_import(record.id, final_attempt=False)
        assert (await _file(session_factory, record.id)).status == "processing"

        with pytest.raises(ExtractionBackendUnavailable):
            await run_import(record.id, final_attempt=True)
        stored = await _file(session_factory, record.id)
        assert (stored.status, stored.failure_reason) == ("failed", "other")

    async def test_notices_disabled_for_tenant(
        self, run_import, mock_broker, make_company, make_template, make_file, tenant_settings,
        invoice_workbook,
    ):
        await tenant_settings(send_import_notifications=False)
        await make_company("Acme Ltd", account_number="ACC-001", notification_emails=["ap@acme.test"])
        await make_template(is_default=True)
        record = await make_file(invoice_workbook)

        assert (await run_import(record.id)).status == "parsed"
        mock_broker.enqueue.assert_not_awaited()
