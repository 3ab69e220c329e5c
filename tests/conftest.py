"""Shared fixtures: in-memory record store, stub collaborators, fake converters."""
import asyncio
import dataclasses
import json
import os
import sys
import tempfile
import textwrap
import threading
import uuid
from datetime import datetime, timedelta, timezone

import pytest

os.environ.setdefault("LOGS_DIR", tempfile.mkdtemp(prefix="docgen-logs-"))

from docgen.errors import LinkError, TemplateNotFoundError  # noqa: E402
from docgen.queue.backoff import success_update  # noqa: E402
from docgen.queue.models import ItemStatus, QueuedItem  # noqa: E402


def make_request_json(template_id="tpl-1", output_format="PDF", **extra):
    payload = {
        "templateId": template_id,
        "outputFileName": "Engagement Letter",
        "outputFormat": output_format,
        "locale": "en-GB",
        "timezone": "UTC",
        "data": {"name": "Ada"},
    }
    payload.update(extra)
    return json.dumps(payload)


class FakeStore:
    """Record store with the same claim semantics as the Postgres one.

    ``offset`` shifts the store's clock so tests can let locks lapse.
    """

    def __init__(self):
        self.items = {}
        self.links = []
        self.offset = timedelta(0)
        self.fail_fetch = False
        self.fail_link = False
        self._lock = threading.Lock()

    def now(self):
        return datetime.now(timezone.utc) + self.offset

    def add(self, count=1, attempts=0, request_json=None):
        added = []
        with self._lock:
            for _ in range(count):
                item = QueuedItem(
                    id=str(uuid.uuid4()),
                    status=ItemStatus.QUEUED,
                    request_json=request_json or make_request_json(),
                    attempts=attempts,
                )
                self.items[item.id] = item
                added.append(item)
        return added

    def get(self, item_id):
        with self._lock:
            return dataclasses.replace(self.items[item_id])

    def with_status(self, status):
        with self._lock:
            return [i for i in self.items.values() if i.status == status]

    def fetch_eligible(self, limit):
        if self.fail_fetch:
            raise ConnectionError("record store unreachable")
        now = self.now()
        with self._lock:
            eligible = [dataclasses.replace(i) for i in self.items.values() if i.is_eligible(now)]
        return eligible[:limit]

    def claim(self, item_id, locked_until):
        with self._lock:
            item = self.items[item_id]
            if not item.is_eligible(self.now()):
                return False
            item.status = ItemStatus.PROCESSING
            item.locked_until = locked_until
            return True

    def update_status(self, item_id, update):
        with self._lock:
            item = self.items[item_id]
            item.status = update.status
            if update.attempts is not None:
                item.attempts = update.attempts
            item.error = update.error
            item.scheduled_retry_at = update.scheduled_retry_at
            item.locked_until = update.locked_until
            item.output_file_id = update.output_file_id or item.output_file_id
            item.merged_docx_file_id = update.merged_docx_file_id or item.merged_docx_file_id

    def release_expired_locks(self):
        now = self.now()
        released = 0
        with self._lock:
            for item in self.items.values():
                if item.status == ItemStatus.PROCESSING and item.locked_until and item.locked_until < now:
                    item.status = ItemStatus.QUEUED
                    item.locked_until = None
                    released += 1
        return released

    def link_output(self, item_id, file_ref, parents):
        if self.fail_link:
            raise LinkError("parent record missing", {"item_id": item_id})
        self.links.append((item_id, file_ref.file_id, dict(parents or {})))

    def ping(self):
        return True

    def ensure_schema(self):
        pass

    def close(self):
        pass


class FakeProcessor:
    """Stands in for DocumentProcessor; tracks how many items run at once."""

    def __init__(self, delay=0.0, error=None):
        self.delay = delay
        self.error = error
        self.active = 0
        self.max_active = 0
        self.processed = []

    async def process(self, item, correlation_id=None):
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(self.delay)
            if self.error is not None:
                raise self.error
            self.processed.append(item.id)
            return success_update(f"file-{item.id}")
        finally:
            self.active -= 1


class StubTemplateSource:
    def __init__(self, templates=None):
        self.templates = dict(templates or {})
        self.calls = []

    def download_template(self, template_id):
        self.calls.append(template_id)
        if template_id not in self.templates:
            raise TemplateNotFoundError(template_id)
        return self.templates[template_id]


class StubMerger:
    def merge(self, template, data, locale, timezone):
        return template + json.dumps(data, sort_keys=True).encode()


CONVERTER_SCRIPTS = {
    "ok": """
        out = outdir / (src.stem + "." + target)
        out.write_bytes(b"%PDF-fake\\n" + src.read_bytes())
    """,
    "slow": """
        time.sleep(0.3)
        out = outdir / (src.stem + "." + target)
        out.write_bytes(b"%PDF-fake\\n" + src.read_bytes())
    """,
    "hang": """
        time.sleep(30)
    """,
    "crash": """
        sys.stderr.write("source file could not be loaded")
        sys.exit(81)
    """,
    "no_output": """
        pass
    """,
}

CONVERTER_PREAMBLE = """
import pathlib
import sys
import time

args = sys.argv[1:]
outdir = pathlib.Path(args[args.index("--outdir") + 1])
target = args[args.index("--convert-to") + 1]
src = pathlib.Path(args[-1])
"""


@pytest.fixture
def converter(tmp_path):
    """Return the argv prefix of a fake soffice with the given behaviour."""

    def make(kind="ok"):
        script = tmp_path / f"fake_soffice_{kind}.py"
        script.write_text(CONVERTER_PREAMBLE + textwrap.dedent(CONVERTER_SCRIPTS[kind]))
        return [sys.executable, str(script)]

    return make


@pytest.fixture
def workdir(tmp_path):
    path = tmp_path / "work"
    path.mkdir()
    return path


@pytest.fixture
def store():
    return FakeStore()
