"""Structured errors for document generation.

Every failure that crosses a component boundary is a ``DocgenError`` with a
machine-readable ``code``, an HTTP-style ``status_code`` for the interactive
path and a ``retryable`` flag that drives the batch backoff policy.
"""
import json
import traceback
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

import psycopg2
import requests

# Record error column budget, characters
MAX_RECORD_ERROR_CHARS = 30000


class ErrorCode(str, Enum):
    TEMPLATE_NOT_FOUND = "TEMPLATE_NOT_FOUND"
    TEMPLATE_MERGE_ERROR = "TEMPLATE_MERGE_ERROR"
    TEMPLATE_INVALID_FORMAT = "TEMPLATE_INVALID_FORMAT"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    CONVERSION_TIMEOUT = "CONVERSION_TIMEOUT"
    CONVERSION_FAILED = "CONVERSION_FAILED"
    UPSTREAM_TRANSIENT = "UPSTREAM_TRANSIENT"
    UPSTREAM_PERMANENT = "UPSTREAM_PERMANENT"
    RECORD_NOT_FOUND = "RECORD_NOT_FOUND"
    UPLOAD_FAILED = "UPLOAD_FAILED"
    LINK_FAILED = "LINK_FAILED"
    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


class DocgenError(Exception):
    """Base class for all document generation errors."""

    code = ErrorCode.UNKNOWN_ERROR
    status_code = 500
    retryable = False

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = dict(context or {})
        self.timestamp = datetime.now(timezone.utc).isoformat()

    def with_context(self, **context) -> "DocgenError":
        """Merge extra context in place, keeping values already set."""
        for key, value in context.items():
            if value is not None:
                self.context.setdefault(key, value)
        return self

    def to_api_response(self, correlation_id: str) -> Dict[str, Any]:
        """Serialize for the interactive path."""
        body = {
            "error": type(self).__name__,
            "code": self.code.value,
            "message": self.message,
            "statusCode": self.status_code,
            "retryable": self.retryable,
            "correlationId": correlation_id,
            "timestamp": self.timestamp,
        }
        if self.context:
            body["context"] = self.context
        return body

    def to_record_error(self, **extra) -> str:
        """Serialize for the queued item's error column.

        The traceback is cut to 15 lines, then to 5 if the payload is still
        over the column budget.
        """
        payload = {
            "code": self.code.value,
            "message": self.message,
            "retryable": self.retryable,
            "stack": self._stack(15),
            "context": {**self.context, **extra},
            "timestamp": self.timestamp,
        }
        text = json.dumps(payload, indent=2, default=str)
        if len(text) > MAX_RECORD_ERROR_CHARS:
            payload["stack"] = (self._stack(5) or "") + "\n... truncated"
            text = json.dumps(payload, indent=2, default=str)
        if len(text) > MAX_RECORD_ERROR_CHARS:
            overflow = len(text) - MAX_RECORD_ERROR_CHARS + 100
            payload["message"] = self.message[:max(len(self.message) - overflow, 200)] + "... truncated"
            text = json.dumps(payload, indent=2, default=str)
        return text[:MAX_RECORD_ERROR_CHARS]

    def _stack(self, max_lines: int) -> Optional[str]:
        if self.__traceback__ is None:
            return None
        lines = "".join(traceback.format_exception(type(self), self, self.__traceback__)).splitlines()
        if len(lines) <= max_lines:
            return "\n".join(lines)
        return "\n".join(lines[:max_lines]) + f"\n    ... ({len(lines) - max_lines} more lines)"


# Template errors: non-retryable

class TemplateNotFoundError(DocgenError):
    code = ErrorCode.TEMPLATE_NOT_FOUND
    status_code = 404

    def __init__(self, template_id: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(f"Template not found: {template_id}", {**(context or {}), "template_id": template_id})


class TemplateMergeError(DocgenError):
    code = ErrorCode.TEMPLATE_MERGE_ERROR
    status_code = 400

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(f"Template merge failed: {message}", context)


class TemplateInvalidFormatError(DocgenError):
    code = ErrorCode.TEMPLATE_INVALID_FORMAT
    status_code = 400

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(f"Invalid template format: {message}", context)


class ValidationError(DocgenError):
    code = ErrorCode.VALIDATION_ERROR
    status_code = 400


# Conversion errors: retryable

class ConversionTimeoutError(DocgenError):
    code = ErrorCode.CONVERSION_TIMEOUT
    status_code = 502
    retryable = True

    def __init__(self, timeout: float, context: Optional[Dict[str, Any]] = None):
        super().__init__(f"Conversion timed out after {timeout:g}s", {**(context or {}), "timeout": timeout})


class ConversionFailedError(DocgenError):
    code = ErrorCode.CONVERSION_FAILED
    status_code = 502
    retryable = True

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(f"Conversion failed: {message}", context)


# Upstream collaborator errors

class UpstreamTransientError(DocgenError):
    code = ErrorCode.UPSTREAM_TRANSIENT
    status_code = 502
    retryable = True


class UpstreamPermanentError(DocgenError):
    code = ErrorCode.UPSTREAM_PERMANENT
    status_code = 502


class RecordNotFoundError(DocgenError):
    code = ErrorCode.RECORD_NOT_FOUND
    status_code = 404


class UploadError(DocgenError):
    code = ErrorCode.UPLOAD_FAILED
    status_code = 502
    retryable = True


class PartialUploadError(UploadError):
    """The output was stored but a companion file was not; retrying would store the output again."""

    retryable = False


class LinkError(DocgenError):
    """The file was stored but could not be linked to its parent records."""

    code = ErrorCode.LINK_FAILED
    status_code = 502


class ConfigurationError(DocgenError):
    code = ErrorCode.CONFIGURATION_ERROR

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(f"Configuration error: {message}", context)


class UnknownError(DocgenError):
    code = ErrorCode.UNKNOWN_ERROR


def error_for_status(status: int, message: str, context: Optional[Dict[str, Any]] = None) -> DocgenError:
    """Classify an upstream HTTP status."""
    context = {**(context or {}), "http_status": status}
    if status == 404:
        return RecordNotFoundError(message, context)
    if status == 429 or status >= 500:
        return UpstreamTransientError(message, context)
    return UpstreamPermanentError(message, context)


def wrap_error(error: BaseException, context: Optional[Dict[str, Any]] = None) -> DocgenError:
    """Return ``error`` as a DocgenError, classifying foreign exceptions."""
    if isinstance(error, DocgenError):
        return error.with_context(**(context or {}))

    message = str(error) or type(error).__name__
    if isinstance(error, (requests.ConnectionError, requests.Timeout)):
        wrapped = UpstreamTransientError(message, context)
    elif isinstance(error, requests.HTTPError) and error.response is not None:
        wrapped = error_for_status(error.response.status_code, message, context)
    elif isinstance(error, (psycopg2.OperationalError, psycopg2.InterfaceError)):
        wrapped = UpstreamTransientError(message, context)
    else:
        wrapped = UnknownError(message, context)
    wrapped.__cause__ = error
    wrapped.__traceback__ = error.__traceback__
    return wrapped
