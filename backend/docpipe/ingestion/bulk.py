"""
Bulk parsing tests.

A bulk test runs a batch of files through extraction only (no matching, no
persistence) so template authors can check a parser against real files.

State lives on disk under settings.bulk_test_dir so the API process and the
workers see the same thing:

    <root>/<test id>/meta.json          written once at creation
    <root>/<test id>/files/<n>_<name>   temporary copies of the batch
    <root>/<test id>/results/<n>.json   one per processed file
    <root>/<test id>/CANCELLED          marker

Every writer touches its own file, so no read-modify-write is needed.
Cancellation is cooperative: the marker stops files not yet started and the
temporary copies are removed; a file already being extracted finishes and
its result is discarded.
"""

from __future__ import annotations

import asyncio
import json
import logging
import shutil
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from docpipe.core.exceptions import PipelineError, TransientError
from docpipe.extraction import extract_document
from docpipe.extraction.workbook import Recalculator, pycel_recalculate
from docpipe.models import Template
from docpipe.storage.files import safe_file_name

logger = logging.getLogger(__name__)

SESSION_TTL_SECONDS = 24 * 3600

_CANCELLED = "CANCELLED"


@dataclass(frozen=True)
class BulkTestFile:
    index:     int
    file_name: str
    path:      str


@dataclass
class BulkTest:
    test_id:    str
    parser:     str
    created_at: str
    files:      list[BulkTestFile]
    template_id: Optional[str] = None
    status:     str = "processing"
    results:    list[dict[str, Any]] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.files)

    @property
    def completed(self) -> int:
        return len(self.results)

    def as_dict(self) -> dict[str, Any]:
        return {
            "test_id": self.test_id,
            "parser": self.parser,
            "template_id": self.template_id,
            "status": self.status,
            "total": self.total,
            "completed": self.completed,
            "created_at": self.created_at,
            "results": self.results,
        }


class BulkTestStore:

    def __init__(self, root: Optional[str | Path] = None) -> None:
        if root is None:
            from docpipe.core.config import settings
            root = settings.bulk_test_dir
        self.root = Path(root)

    def _dir(self, test_id: str) -> Path:
        # test ids are server-generated uuids; anything else is not ours
        return self.root / str(uuid.UUID(test_id))

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def create(
        self,
        files:  list[tuple[str, bytes]],
        *,
        parser: str = "local",
        template_id: Optional[str] = None,
    ) -> BulkTest:
        if not files:
            raise ValueError("A bulk test needs at least one file")

        test_id = str(uuid.uuid4())
        base = self._dir(test_id)
        (base / "files").mkdir(parents=True)
        (base / "results").mkdir()

        stored: list[BulkTestFile] = []
        for index, (name, data) in enumerate(files):
            path = base / "files" / f"{index}_{safe_file_name(name)}"
            path.write_bytes(data)
            stored.append(BulkTestFile(index=index, file_name=name, path=str(path)))

        test = BulkTest(
            test_id=test_id,
            parser=parser,
            template_id=template_id,
            created_at=datetime.now(timezone.utc).isoformat(),
            files=stored,
        )
        (base / "meta.json").write_text(json.dumps({
            "test_id": test_id,
            "parser": parser,
            "template_id": template_id,
            "created_at": test.created_at,
            "files": [f.__dict__ for f in stored],
        }))
        logger.info("Bulk test created | test=%s files=%d parser=%s", test_id, len(stored), parser)
        return test

    def add_result(self, test_id: str, index: int, result: dict[str, Any]) -> bool:
        """Record one file's outcome. Returns False if the test is gone or cancelled."""
        base = self._dir(test_id)
        if not base.is_dir() or self.is_cancelled(test_id):
            logger.info("Bulk result discarded | test=%s index=%d", test_id, index)
            return False
        tmp = base / "results" / f".{index}.json.tmp"
        tmp.write_text(json.dumps({"index": index, **result}, default=str))
        tmp.replace(base / "results" / f"{index}.json")
        return True

    def get(self, test_id: str) -> Optional[BulkTest]:
        try:
            base = self._dir(test_id)
        except ValueError:
            return None
        meta_path = base / "meta.json"
        if not meta_path.is_file():
            return None

        meta = json.loads(meta_path.read_text())
        results = [
            json.loads(p.read_text())
            for p in (base / "results").glob("[0-9]*.json")
        ]
        results.sort(key=lambda r: r["index"])

        test = BulkTest(
            test_id=meta["test_id"],
            parser=meta["parser"],
            template_id=meta.get("template_id"),
            created_at=meta["created_at"],
            files=[BulkTestFile(**f) for f in meta["files"]],
            results=results,
        )
        if self.is_cancelled(test_id):
            test.status = "cancelled"
        elif test.completed >= test.total:
            test.status = "completed"
        return test

    def is_cancelled(self, test_id: str) -> bool:
        return (self._dir(test_id) / _CANCELLED).exists()

    def cancel(self, test_id: str) -> bool:
        try:
            base = self._dir(test_id)
        except ValueError:
            return False
        if not base.is_dir():
            return False
        (base / _CANCELLED).touch()
        shutil.rmtree(base / "files", ignore_errors=True)
        logger.info("Bulk test cancelled | test=%s", test_id)
        return True

    def cleanup(self, *, max_age_seconds: int = SESSION_TTL_SECONDS, now: Optional[float] = None) -> int:
        """Remove test directories older than max_age_seconds."""
        if not self.root.is_dir():
            return 0
        now = now or time.time()
        removed = 0
        for base in self.root.iterdir():
            if base.is_dir() and now - base.stat().st_mtime > max_age_seconds:
                shutil.rmtree(base, ignore_errors=True)
                removed += 1
        if removed:
            logger.info("Bulk tests cleaned up | removed=%d", removed)
        return removed


# ---------------------------------------------------------------------------
# Worker side
# ---------------------------------------------------------------------------

class _ParserTemplate:
    """A template seen through the parser chosen for the test run."""

    def __init__(self, template: Any, parser: str) -> None:
        self._template = template
        self.extraction_backend = parser

    def __getattr__(self, name: str) -> Any:
        if self._template is None:
            return None
        return getattr(self._template, name)


async def run_bulk_test_file(
    store:   BulkTestStore,
    test_id: str,
    index:   int,
    *,
    session_factory: Optional[Any] = None,
    recalculator: Optional[Recalculator] = pycel_recalculate,
) -> dict[str, Any]:
    """
    Extract one file of a bulk test and record the outcome. Data and
    permanent errors become a failed result; transient errors propagate so
    the job is retried.
    """
    if store.is_cancelled(test_id):
        return {"status": "cancelled"}
    test = store.get(test_id)
    if test is None or index >= test.total:
        logger.warning("Bulk test file not found | test=%s index=%d", test_id, index)
        return {"status": "not_found"}
    entry = test.files[index]

    try:
        data = await asyncio.to_thread(Path(entry.path).read_bytes)
    except FileNotFoundError:
        # removed by a cancel between the two checks
        return {"status": "cancelled"}

    template = None
    if test.template_id:
        if session_factory is None:
            from docpipe.db.session import AsyncSessionLocal
            session_factory = AsyncSessionLocal
        async with session_factory() as session:
            template = await session.get(Template, uuid.UUID(test.template_id))

    started = time.monotonic()
    try:
        fields = await extract_document(
            data, entry.file_name, _ParserTemplate(template, test.parser),
            recalculator=recalculator,
        )
    except TransientError:
        raise
    except PipelineError as exc:
        result = {
            "file_name": entry.file_name,
            "status": "failed",
            "reason": exc.reason,
            "error": exc.message,
        }
    else:
        result = {
            "file_name": entry.file_name,
            "status": "success",
            "document_type": fields.document_type,
            "confidence": fields.confidence,
            "processing_method": fields.processing_method,
            "fields": dict(fields.fields),
            "fallback_fields": list(fields.fallback_fields),
            "warnings": list(fields.warnings),
        }
    result["duration_ms"] = int((time.monotonic() - started) * 1000)

    recorded = store.add_result(test_id, index, result)
    logger.info("Bulk test file done | test=%s index=%d status=%s recorded=%s",
                test_id, index, result["status"], recorded)
    return {**result, "recorded": recorded}
