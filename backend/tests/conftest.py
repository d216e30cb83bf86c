"""
Root conftest.py — Shared fixtures for ALL tests (unit + integration)

Fixture hierarchy:
  function-scoped : db_engine, session_factory, file_store, bulk_store,
                    mock_broker, noop_broker, make_company, make_supplier,
                    make_template, make_file, tenant_settings, async_client,
                    redis_server, rate_limit_store (autouse)

Environment strategy:
  - Every test gets its own SQLite database file (aiosqlite) with the full
    schema created from the ORM metadata; no PostgreSQL needed.
  - The queue broker is a MagicMock(spec=QueueBroker) whose enqueue calls
    return real JobHandle values, or the explicit no-op broker.
  - Stored files live under pytest's tmp_path.
  - Email rate-limit windows live in fakeredis.
  - Workbooks are built in memory with openpyxl; formula recalculation is
    usually replaced by a stub recalculator (recalculated()), so only the
    tests that ask for pycel run it.

How to run:
  pytest                               # all tests
  pytest -m unit                       # unit tests only (fast, no I/O beyond tmp)
  pytest -m integration                # FastAPI / Celery wiring
  pytest backend/tests/unit/test_extraction.py
"""

from __future__ import annotations

import io
import os
import tempfile
import uuid
from datetime import datetime, timezone
from typing import Any, AsyncGenerator
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from httpx import AsyncClient

# ─────────────────────────────────────────────────────────────────────────────
# Patch settings BEFORE any docpipe imports so modules read test config
# ─────────────────────────────────────────────────────────────────────────────

_TEST_ROOT = tempfile.mkdtemp(prefix="docpipe-tests-")

os.environ.setdefault("DATABASE_URL",          f"sqlite+aiosqlite:///{_TEST_ROOT}/docpipe.db")
os.environ.setdefault("CELERY_BROKER_URL",     "memory://")
os.environ.setdefault("CELERY_RESULT_BACKEND", "cache+memory://")
os.environ.setdefault("STORAGE_ROOT",          f"{_TEST_ROOT}/storage")
os.environ.setdefault("TRANSFER_DROP_DIR",     f"{_TEST_ROOT}/drop")
os.environ.setdefault("BULK_TEST_DIR",         f"{_TEST_ROOT}/bulk-tests")
os.environ.setdefault("EMAIL_PROVIDER",        "smtp")
os.environ.setdefault("APP_ENV",               "development")
os.environ.setdefault("DEBUG",                 "true")


# ─────────────────────────────────────────────────────────────────────────────
# Database
# ─────────────────────────────────────────────────────────────────────────────

@pytest_asyncio.fixture
async def db_engine(tmp_path):
    """Fresh SQLite database per test with every table created."""
    from sqlalchemy.ext.asyncio import create_async_engine

    from docpipe.models import Base

    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path}/test.db")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    return async_sessionmaker(
        bind=db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


# ─────────────────────────────────────────────────────────────────────────────
# Storage
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def file_store(tmp_path):
    from docpipe.storage.files import FileStore
    return FileStore(tmp_path / "storage")


@pytest.fixture
def bulk_store(tmp_path):
    from docpipe.ingestion import BulkTestStore
    return BulkTestStore(tmp_path / "bulk-tests")


# ─────────────────────────────────────────────────────────────────────────────
# Queue broker
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def mock_broker():
    """
    Mocked QueueBroker — records calls without touching Celery / Redis.
    enqueue / enqueue_safe return a real JobHandle for the requested queue.
    """
    from docpipe.queue.broker import JobHandle, QueueBroker
    from docpipe.queue.catalogue import get_queue_config

    def _handle(queue_name, payload, *, job_id=None, **_):
        return JobHandle(
            job_id=job_id or str(uuid.uuid4()),
            queue_name=get_queue_config(queue_name).name.value,
        )

    broker = MagicMock(spec=QueueBroker)
    broker.degraded     = False
    broker.enqueue      = AsyncMock(side_effect=_handle)
    broker.enqueue_safe = AsyncMock(side_effect=_handle)
    broker.get_counts   = AsyncMock(return_value={
        "waiting": 0, "active": 0, "completed": 0, "failed": 0, "delayed": 0,
    })
    broker.close        = AsyncMock(return_value=None)
    return broker


@pytest.fixture
def noop_broker():
    """The explicit no-op broker used when Redis is unreachable."""
    from docpipe.queue.broker import QueueBroker
    return QueueBroker.noop()


@pytest.fixture
def redis_server():
    """In-memory Redis server; every FakeRedis client built on it sees the same data."""
    from fakeredis import FakeServer
    return FakeServer()


@pytest.fixture(autouse=True)
def rate_limit_store(redis_server):
    """Email rate-limit windows live in fakeredis, never in a real Redis."""
    from fakeredis.aioredis import FakeRedis

    from docpipe.notifications.providers import set_rate_limit_store

    store = FakeRedis(server=redis_server)
    set_rate_limit_store(store)
    yield store
    set_rate_limit_store(None)


@pytest.fixture
def fake_celery():
    """Celery stand-in for CeleryQueue: send_task succeeds, close is a no-op."""
    celery = MagicMock()
    celery.send_task = MagicMock(return_value=None)
    celery.close = MagicMock(return_value=None)
    return celery


# ─────────────────────────────────────────────────────────────────────────────
# Workbooks
# ─────────────────────────────────────────────────────────────────────────────

def build_workbook(sheets: dict[str, dict[str, Any]]) -> bytes:
    """
    {"Sheet title": {"A1": "text", "B2": 27.6, "B3": "=B1+B2"}} → .xlsx bytes.
    Formulas are saved without cached values, as a generator library would.
    """
    from openpyxl import Workbook

    wb = Workbook()
    wb.remove(wb.active)
    for title, cells in sheets.items():
        ws = wb.create_sheet(title)
        for address, value in cells.items():
            ws[address] = value
    buffer = io.BytesIO()
    wb.save(buffer)
    return buffer.getvalue()


INVOICE_CELLS: dict[str, Any] = {
    "A1":  "INVOICE",
    "A3":  "Account",       "B3":  "ACC-001",
    "A4":  "Invoice No",    "B4":  "INV-1001",
    "A5":  "Date",          "B5":  "05/12/2025",
    "A6":  "Customer",      "B6":  "Acme Ltd",
    "A10": "Goods",         "B10": 27.6,
    "A11": "VAT",           "B11": "=B10*0.2",
    "A12": "Total",         "B12": "=B10+B11",
}

ACME_CELL_MAP: dict[str, dict[str, Any]] = {
    "acme_account_no":    {"column": "B", "row": 3},
    "acme_invoice_no":    {"column": "B", "row": 4},
    "acme_date":          {"column": "B", "row": 5},
    "acme_customer_name": {"column": "B", "row": 6},
    "acme_goods_amount":  {"column": "B", "row": 10},
    "acme_vat_amount":    {"column": "B", "row": 11},
    "acme_invoice_total": {"column": "B", "row": 12},
}


@pytest.fixture
def invoice_workbook() -> bytes:
    return build_workbook({"Invoice": INVOICE_CELLS})


def recalculated(values: dict[tuple[str, str], Any]):
    """Stub recalculator returning fixed values for the given (sheet, cell) keys."""
    def _recalculate(data: bytes, targets: list[tuple[str, str]]) -> dict[tuple[str, str], Any]:
        return {key: value for key, value in values.items() if key in targets}
    return _recalculate


@pytest.fixture
def sample_pdf_bytes() -> bytes:
    """Minimal valid PDF — passes the extension / MIME check."""
    return (
        b"%PDF-1.4\n"
        b"1 0 obj\n<< /Type /Catalog /Pages 2 0 R >>\nendobj\n"
        b"2 0 obj\n<< /Type /Pages /Kids [3 0 R] /Count 1 >>\nendobj\n"
        b"3 0 obj\n<< /Type /Page /Parent 2 0 R /MediaBox [0 0 612 792] >>\nendobj\n"
        b"xref\n0 4\n"
        b"0000000000 65535 f \n"
        b"0000000009 00000 n \n"
        b"0000000058 00000 n \n"
        b"0000000115 00000 n \n"
        b"trailer\n<< /Size 4 /Root 1 0 R >>\n"
        b"startxref\n195\n%%EOF"
    )


# ─────────────────────────────────────────────────────────────────────────────
# Entity factories
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def make_company(session_factory):
    """
    Factory fixture: inserts a Company and returns it.

    Usage:
        company = await make_company("Acme Ltd", account_number="ACC-001")
    """
    from docpipe.models import Company

    async def _build(name: str = "Acme Ltd", **values: Any) -> Company:
        company = Company(id=uuid.uuid4(), name=name, **values)
        async with session_factory() as session:
            async with session.begin():
                session.add(company)
        return company

    return _build


@pytest.fixture
def make_supplier(session_factory):
    from docpipe.models import Supplier

    async def _build(name: str, **values: Any) -> Supplier:
        supplier = Supplier(id=uuid.uuid4(), name=name, **values)
        async with session_factory() as session:
            async with session.begin():
                session.add(supplier)
        return supplier

    return _build


@pytest.fixture
def make_template(session_factory):
    from docpipe.models import Template

    async def _build(**values: Any) -> Template:
        values.setdefault("code", "acme")
        values.setdefault("name", "Acme invoice")
        values.setdefault("file_type", "excel")
        values.setdefault("excel_cells", dict(ACME_CELL_MAP))
        template = Template(id=uuid.uuid4(), **values)
        async with session_factory() as session:
            async with session.begin():
                session.add(template)
        return template

    return _build


@pytest.fixture
def make_file(session_factory, file_store):
    """Stores bytes through the FileStore and inserts an `uploaded` FileRecord."""
    from docpipe.models import FileRecord
    from docpipe.storage.files import sha256_hex

    async def _build(data: bytes, file_name: str = "invoice.xlsx", **values: Any) -> FileRecord:
        stored = await file_store.save(data, file_name)
        values.setdefault("file_type", "pdf" if file_name.endswith(".pdf") else "excel")
        values.setdefault("status", "uploaded")
        record = FileRecord(
            id=uuid.uuid4(),
            file_name=file_name,
            file_path=stored.path,
            file_hash=sha256_hex(data),
            file_size=len(data),
            **values,
        )
        async with session_factory() as session:
            async with session.begin():
                session.add(record)
        return record

    return _build


@pytest.fixture
def tenant_settings(session_factory):
    """Factory fixture: writes the singleton tenant_settings row."""
    from docpipe.models import TenantSettings

    async def _build(**values: Any) -> TenantSettings:
        row = TenantSettings(id=1, **values)
        async with session_factory() as session:
            async with session.begin():
                await session.merge(row)
        return row

    return _build


def utc(*args: int) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


# ─────────────────────────────────────────────────────────────────────────────
# FastAPI test client with injected collaborators
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def app_with_overrides(mock_broker, session_factory, file_store, bulk_store):
    """
    FastAPI app built by create_app() with every collaborator injected:
      - broker          → mock_broker (no Celery / Redis)
      - session_factory → per-test SQLite
      - get_db          → sessions from that same factory
      - file / bulk stores under tmp_path

    The lifespan hook is not run by ASGITransport, so no real broker
    connection or schema bootstrap happens.
    """
    from docpipe.db.session import get_db
    from docpipe.main import create_app

    app = create_app(
        broker=mock_broker,
        session_factory=session_factory,
        file_store=file_store,
        bulk_store=bulk_store,
    )

    async def _test_db():
        async with session_factory() as session:
            async with session.begin():
                yield session

    app.dependency_overrides[get_db] = _test_db
    yield app
    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def async_client(app_with_overrides) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP test client using the overridden app.

    httpx >= 0.28 removed the 'app=' shortcut; use ASGITransport explicitly.
    """
    from httpx import ASGITransport
    transport = ASGITransport(app=app_with_overrides)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
