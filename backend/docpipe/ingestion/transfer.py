"""
Transfer-drop scanner.

The file-transfer client (out of scope) lands files in
settings.transfer_drop_dir. Every scan:

  - skips files modified in the last MIN_AGE_SECONDS (still being written)
  - ingests each supported file through IngestionService
  - moves it to Processed/<yyyy-mm-dd>/ (imported or duplicate) or
    Failed/<yyyy-mm-dd>/ with a .error.txt alongside

A file that fails never stops the scan.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from docpipe.core.exceptions import PipelineError
from docpipe.extraction import PDF_EXTENSIONS, SPREADSHEET_EXTENSIONS
from docpipe.ingestion.service import IngestionService

logger = logging.getLogger(__name__)

PROCESSED_DIR = "Processed"
FAILED_DIR = "Failed"
MIN_AGE_SECONDS = 30

SUPPORTED_EXTENSIONS = SPREADSHEET_EXTENSIONS | PDF_EXTENSIONS


@dataclass
class ScanResult:
    scanned:    int = 0
    imported:   int = 0
    duplicates: int = 0
    failed:     int = 0
    skipped:    int = 0
    errors:     list[dict[str, str]] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "scanned": self.scanned,
            "imported": self.imported,
            "duplicates": self.duplicates,
            "failed": self.failed,
            "skipped": self.skipped,
            "errors": self.errors,
        }


def _dated_folder(base: Path, name: str) -> Path:
    folder = base / name / datetime.now(timezone.utc).strftime("%Y-%m-%d")
    folder.mkdir(parents=True, exist_ok=True)
    return folder


def _move(path: Path, folder: Path) -> Path:
    target = folder / path.name
    if target.exists():
        target = folder / f"{path.stem}-{int(time.time() * 1000)}{path.suffix}"
    shutil.move(str(path), str(target))
    return target


def move_to_processed(path: Path, drop_dir: Path) -> Path:
    target = _move(path, _dated_folder(drop_dir, PROCESSED_DIR))
    logger.info("Moved to processed | path=%s", target)
    return target


def move_to_failed(path: Path, drop_dir: Path, error: str) -> Path:
    target = _move(path, _dated_folder(drop_dir, FAILED_DIR))
    Path(f"{target}.error.txt").write_text(
        f"Failed at: {datetime.now(timezone.utc).isoformat()}\nError: {error}\n"
    )
    logger.warning("Moved to failed | path=%s error=%s", target, error)
    return target


def list_candidates(drop_dir: Path, *, now: Optional[float] = None) -> tuple[list[Path], int]:
    """Files ready for ingestion, plus the number skipped as too new."""
    now = now or time.time()
    ready, too_new = [], 0
    for path in sorted(drop_dir.iterdir()):
        if not path.is_file() or path.suffix.lower() not in SUPPORTED_EXTENSIONS:
            continue
        if now - path.stat().st_mtime < MIN_AGE_SECONDS:
            too_new += 1
            continue
        ready.append(path)
    return ready, too_new


async def scan_transfer_drop(
    service:  IngestionService,
    drop_dir: Optional[str | Path] = None,
) -> ScanResult:
    if drop_dir is None:
        from docpipe.core.config import settings
        drop_dir = settings.transfer_drop_dir
    drop = Path(drop_dir)
    result = ScanResult()

    if not drop.is_dir():
        logger.info("Transfer drop missing, nothing to scan | dir=%s", drop)
        return result

    candidates, result.skipped = await asyncio.to_thread(list_candidates, drop)
    result.scanned = len(candidates) + result.skipped

    for path in candidates:
        try:
            data = await asyncio.to_thread(path.read_bytes)
            ingested = await service.ingest(
                path.name, data, source="transfer", metadata={"transferSource": str(path)},
            )
        except (PipelineError, OSError) as exc:
            result.failed += 1
            result.errors.append({"file": path.name, "error": str(exc)})
            await asyncio.to_thread(move_to_failed, path, drop, str(exc))
            continue

        if ingested.status == "duplicate":
            result.duplicates += 1
        else:
            result.imported += 1
        await asyncio.to_thread(move_to_processed, path, drop)

    logger.info(
        "Transfer scan done | dir=%s imported=%d duplicates=%d failed=%d skipped=%d",
        drop, result.imported, result.duplicates, result.failed, result.skipped,
    )
    return result
