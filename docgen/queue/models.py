"""Queue data models."""
import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from docgen.errors import ValidationError


class ItemStatus(str, Enum):
    QUEUED = "QUEUED"
    PROCESSING = "PROCESSING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"


class OutputFormat(str, Enum):
    PDF = "PDF"
    DOCX = "DOCX"


@dataclass
class DocgenOptions:
    store_merged_docx: bool = False


@dataclass
class DocgenRequest:
    """The serialized request stored on a queued item."""

    template_id: str
    output_file_name: str
    output_format: OutputFormat
    locale: str = "en-GB"
    timezone: str = "UTC"
    data: Dict[str, Any] = field(default_factory=dict)
    parents: Optional[Dict[str, Optional[str]]] = None
    request_hash: Optional[str] = None
    options: DocgenOptions = field(default_factory=DocgenOptions)

    @classmethod
    def from_payload(cls, payload: Any) -> "DocgenRequest":
        """Parse and validate a request from JSON text or a decoded dict.

        Accepts both ``templateId`` and ``template_id`` style keys.

        Raises:
            ValidationError: if the payload is not a usable request
        """
        if isinstance(payload, (str, bytes)):
            try:
                payload = json.loads(payload)
            except ValueError as e:
                raise ValidationError(f"Request payload is not valid JSON: {e}")
        if not isinstance(payload, dict):
            raise ValidationError("Request payload must be a JSON object")

        def pick(*keys, default=None):
            for key in keys:
                if key in payload:
                    return payload[key]
            return default

        template_id = pick("templateId", "template_id")
        if not template_id or not isinstance(template_id, str):
            raise ValidationError("templateId is required")

        output_file_name = pick("outputFileName", "output_file_name")
        if not output_file_name or not isinstance(output_file_name, str):
            raise ValidationError("outputFileName is required")

        raw_format = str(pick("outputFormat", "output_format", default="PDF")).upper()
        try:
            output_format = OutputFormat(raw_format)
        except ValueError:
            raise ValidationError(f"outputFormat must be PDF or DOCX, got {raw_format}")

        data = pick("data", default={})
        if not isinstance(data, dict):
            raise ValidationError("data must be an object")

        parents = pick("parents")
        if parents is not None and not isinstance(parents, dict):
            raise ValidationError("parents must be an object when provided")

        locale = pick("locale", default="en-GB")
        if not locale or not isinstance(locale, str):
            raise ValidationError("locale must be a non-empty string")

        tz_name = pick("timezone", default="UTC")
        if not tz_name or not isinstance(tz_name, str):
            raise ValidationError("timezone must be a non-empty string")

        raw_options = pick("options", default={}) or {}
        if not isinstance(raw_options, dict):
            raise ValidationError("options must be an object when provided")
        options = DocgenOptions(
            store_merged_docx=bool(raw_options.get("storeMergedDocx", raw_options.get("store_merged_docx", False)))
        )

        return cls(
            template_id=template_id,
            output_file_name=output_file_name,
            output_format=output_format,
            locale=locale,
            timezone=tz_name,
            data=data,
            parents=parents,
            request_hash=pick("requestHash", "request_hash"),
            options=options,
        )

    def to_payload(self) -> Dict[str, Any]:
        return {
            "templateId": self.template_id,
            "outputFileName": self.output_file_name,
            "outputFormat": self.output_format.value,
            "locale": self.locale,
            "timezone": self.timezone,
            "data": self.data,
            "parents": self.parents,
            "requestHash": self.request_hash,
            "options": {"storeMergedDocx": self.options.store_merged_docx},
        }


@dataclass
class QueuedItem:
    """A unit of batch work owned by the record store."""

    id: str
    status: ItemStatus
    request_json: str
    attempts: int = 0
    correlation_id: Optional[str] = None
    locked_until: Optional[datetime] = None
    error: Optional[str] = None
    scheduled_retry_at: Optional[datetime] = None
    request_hash: Optional[str] = None
    output_file_id: Optional[str] = None
    merged_docx_file_id: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "QueuedItem":
        """Build from a database row dict."""
        return cls(
            id=str(row["id"]),
            status=ItemStatus(row["status"]),
            request_json=row["request_json"],
            attempts=row.get("attempts") or 0,
            correlation_id=row.get("correlation_id"),
            locked_until=row.get("locked_until"),
            error=row.get("error"),
            scheduled_retry_at=row.get("scheduled_retry_at"),
            request_hash=row.get("request_hash"),
            output_file_id=row.get("output_file_id"),
            merged_docx_file_id=row.get("merged_docx_file_id"),
        )

    def is_eligible(self, now: datetime) -> bool:
        return self.status == ItemStatus.QUEUED and (self.locked_until is None or self.locked_until < now)


@dataclass
class StatusUpdate:
    """Fields written on a status transition.

    ``None`` values are written as NULL, so a terminal update clears the
    lock and retry schedule.
    """

    status: ItemStatus
    attempts: Optional[int] = None
    error: Optional[str] = None
    scheduled_retry_at: Optional[datetime] = None
    locked_until: Optional[datetime] = None
    output_file_id: Optional[str] = None
    merged_docx_file_id: Optional[str] = None


@dataclass(frozen=True)
class FileRef:
    """Reference to a stored output file."""

    file_id: str
    path: str
    size: int


@dataclass
class ProcessingResult:
    item_id: str
    success: bool
    output_file_id: Optional[str] = None
    error: Optional[str] = None
    retryable: bool = False
    retried: bool = False


@dataclass
class PollerStats:
    is_running: bool = False
    current_queue_depth: int = 0
    total_processed: int = 0
    total_succeeded: int = 0
    total_failed: int = 0
    total_retries: int = 0
    last_poll_time: Optional[str] = None
    uptime_seconds: int = 0
    last_error: Optional[str] = None
