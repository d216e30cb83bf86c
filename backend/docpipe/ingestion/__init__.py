from docpipe.ingestion.bulk import BulkTest, BulkTestStore, run_bulk_test_file
from docpipe.ingestion.service import IngestionService, IngestResult, file_import_job_id
from docpipe.ingestion.transfer import ScanResult, scan_transfer_drop

__all__ = [
    "BulkTest",
    "BulkTestStore",
    "IngestResult",
    "IngestionService",
    "ScanResult",
    "file_import_job_id",
    "run_bulk_test_file",
    "scan_transfer_drop",
]
