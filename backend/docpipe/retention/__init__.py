from docpipe.retention.policy import (
    RetentionPolicy,
    calculate_document_retention_dates,
    calculate_retention_expiry_date,
    get_retention_start_date,
    should_delete_document,
)
from docpipe.retention.sweep import SweepResult, run_retention_sweep

__all__ = [
    "RetentionPolicy",
    "SweepResult",
    "calculate_document_retention_dates",
    "calculate_retention_expiry_date",
    "get_retention_start_date",
    "run_retention_sweep",
    "should_delete_document",
]
