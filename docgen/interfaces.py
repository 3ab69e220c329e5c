from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol

from docgen.queue.models import FileRef, QueuedItem, StatusUpdate


class RecordStore(Protocol):
    def fetch_eligible(self, limit: int) -> List[QueuedItem]:
        """Return up to ``limit`` items that are QUEUED with no live lock."""

    def claim(self, item_id: str, locked_until: datetime) -> bool:
        """Atomically move a QUEUED item to PROCESSING.

        Returns False when another worker got there first; in that case the
        item is left untouched.
        """

    def update_status(self, item_id: str, update: StatusUpdate) -> None:
        ...

    def release_expired_locks(self) -> int:
        ...

    def link_output(self, item_id: str, file_ref: FileRef, parents: Optional[Dict[str, Optional[str]]]) -> None:
        ...

    def ping(self) -> bool:
        ...


class TemplateSource(Protocol):
    def download_template(self, template_id: str) -> bytes:
        """Blocking fetch. Raises TemplateNotFoundError or UpstreamTransientError."""


class TemplateMerger(Protocol):
    def merge(self, template: bytes, data: Dict[str, Any], locale: str, timezone: str) -> bytes:
        ...


class FileStore(Protocol):
    def upload(self, content: bytes, file_name: str, correlation_id: Optional[str] = None) -> FileRef:
        ...
