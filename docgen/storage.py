"""Filesystem store for generated documents."""
import re
import uuid
from datetime import datetime
from pathlib import Path
from typing import Optional

from docgen import settings
from docgen.errors import UploadError
from docgen.logging_conf import logger
from docgen.queue.models import FileRef


class LocalFileStore:
    """Saves documents under ``<root>/YYYY-MM/{name}_{file_id}.{ext}``."""

    def __init__(self, root: Optional[str] = None):
        self.root = Path(root or settings.OUTPUT_STORAGE_PATH)
        self.root.mkdir(parents=True, exist_ok=True)

    def upload(self, content: bytes, file_name: str, correlation_id: Optional[str] = None) -> FileRef:
        file_id = str(uuid.uuid4())
        folder = self.root / datetime.now().strftime("%Y-%m")
        path = folder / self._generate_filename(file_name, file_id)
        try:
            folder.mkdir(parents=True, exist_ok=True)
            with open(path, "wb") as f:
                f.write(content)
        except OSError as e:
            raise UploadError(f"Could not store {file_name}: {e}", {"path": str(path)}) from e

        logger.info(f"Saved: {path.name} ({len(content)} bytes)", extra={"correlation_id": correlation_id})
        return FileRef(file_id=file_id, path=str(path), size=len(content))

    def _generate_filename(self, file_name: str, file_id: str) -> str:
        """
        Generate filename: {sanitized_name}_{file_id}.{ext}

        Example: Engagement-Letter_0b1f2c3d-....pdf
        """
        if "." in file_name:
            name, ext = file_name.rsplit(".", 1)
            ext = ext.lower()
        else:
            name, ext = file_name, ""

        name = self._sanitize(name)
        if ext:
            return f"{name}_{file_id}.{ext}"
        return f"{name}_{file_id}"

    def _sanitize(self, name: str) -> str:
        name = name.replace(" ", "-")
        name = re.sub(r"[^A-Za-z0-9._-]", "_", name)
        name = re.sub(r"[-_]+", "-", name)
        name = name.strip("-_")
        return name[:100] if name else "document"
