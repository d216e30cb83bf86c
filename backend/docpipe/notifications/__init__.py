from docpipe.notifications.dispatcher import (
    EmailQueued,
    email_job_id,
    process_email_job,
    queue_batch_email,
    queue_email,
)
from docpipe.notifications.errors import SendErrorType, classify_send_error
from docpipe.notifications.providers import PROVIDERS, RateLimiter, get_provider_profile

__all__ = [
    "EmailQueued",
    "PROVIDERS",
    "RateLimiter",
    "SendErrorType",
    "classify_send_error",
    "email_job_id",
    "get_provider_profile",
    "process_email_job",
    "queue_batch_email",
    "queue_email",
]
