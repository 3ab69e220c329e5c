"""Retry/backoff policy for failed queue items."""
from datetime import datetime, timedelta, timezone
from typing import Optional

from docgen.errors import DocgenError
from docgen.queue.models import ItemStatus, StatusUpdate

# Delay before the next attempt, keyed by the attempt count after the failure
BACKOFF_SCHEDULE = {
    1: timedelta(minutes=1),
    2: timedelta(minutes=5),
    3: timedelta(minutes=15),
}


def compute_backoff(attempts: int) -> Optional[timedelta]:
    """Return the retry delay after ``attempts`` failures, or None when exhausted."""
    return BACKOFF_SCHEDULE.get(attempts)


def failure_update(
    current_attempts: int,
    error: DocgenError,
    max_attempts: int,
    now: Optional[datetime] = None,
) -> StatusUpdate:
    """Decide the status transition for a failed item.

    The attempt counter always increments. A retryable error within the
    attempt budget requeues the item with ``locked_until`` set to the retry
    time, so the normal eligibility query holds it back until then.
    Everything else is terminal.
    """
    now = now or datetime.now(timezone.utc)
    attempts = current_attempts + 1
    delay = compute_backoff(attempts)

    if error.retryable and attempts <= max_attempts and delay is not None:
        retry_at = now + delay
        return StatusUpdate(
            status=ItemStatus.QUEUED,
            attempts=attempts,
            error=error.to_record_error(attempt=attempts),
            scheduled_retry_at=retry_at,
            locked_until=retry_at,
        )

    return StatusUpdate(
        status=ItemStatus.FAILED,
        attempts=attempts,
        error=error.to_record_error(attempt=attempts, max_attempts=max_attempts, permanent_failure=True),
    )


def success_update(output_file_id: str, merged_docx_file_id: Optional[str] = None) -> StatusUpdate:
    return StatusUpdate(
        status=ItemStatus.SUCCEEDED,
        output_file_id=output_file_id,
        merged_docx_file_id=merged_docx_file_id,
    )
