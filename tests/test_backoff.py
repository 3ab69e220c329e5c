import json
from datetime import datetime, timedelta, timezone

import pytest

from docgen.errors import ConversionFailedError, TemplateNotFoundError, ValidationError
from docgen.queue.backoff import compute_backoff, failure_update, success_update
from docgen.queue.models import ItemStatus

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


@pytest.mark.parametrize("attempts,delay", [(1, 60), (2, 300), (3, 900)])
def test_compute_backoff_schedule(attempts, delay):
    assert compute_backoff(attempts) == timedelta(seconds=delay)


def test_compute_backoff_exhausted():
    assert compute_backoff(4) is None
    assert compute_backoff(0) is None


@pytest.mark.parametrize("current,delay", [(0, 60), (1, 300), (2, 900)])
def test_retryable_failure_requeues_with_delay(current, delay):
    update = failure_update(current, ConversionFailedError("exit 1"), max_attempts=3, now=NOW)

    assert update.status == ItemStatus.QUEUED
    assert update.attempts == current + 1
    assert update.scheduled_retry_at == NOW + timedelta(seconds=delay)
    # the lock holds the item back until the retry time
    assert update.locked_until == update.scheduled_retry_at


def test_retryable_failure_after_last_attempt_is_terminal():
    update = failure_update(3, ConversionFailedError("exit 1"), max_attempts=3, now=NOW)

    assert update.status == ItemStatus.FAILED
    assert update.attempts == 4
    assert update.scheduled_retry_at is None
    assert update.locked_until is None


@pytest.mark.parametrize("error", [TemplateNotFoundError("tpl-9"), ValidationError("bad payload")])
def test_non_retryable_failure_fails_immediately(error):
    update = failure_update(0, error, max_attempts=3, now=NOW)

    assert update.status == ItemStatus.FAILED
    assert update.attempts == 1
    assert update.scheduled_retry_at is None


def test_failure_writes_structured_error_text():
    update = failure_update(0, ConversionFailedError("exit 81"), max_attempts=3, now=NOW)
    body = json.loads(update.error)

    assert body["code"] == "CONVERSION_FAILED"
    assert body["retryable"] is True
    assert body["context"]["attempt"] == 1


def test_lower_max_attempts_fails_sooner():
    update = failure_update(1, ConversionFailedError("exit 1"), max_attempts=1, now=NOW)
    assert update.status == ItemStatus.FAILED


def test_success_update_clears_lock():
    update = success_update("file-1", "file-2")

    assert update.status == ItemStatus.SUCCEEDED
    assert update.output_file_id == "file-1"
    assert update.merged_docx_file_id == "file-2"
    assert update.locked_until is None
    assert update.error is None
