from datetime import datetime, timezone

import psycopg2
import pytest

from conftest import make_request_json
from docgen.db import Database
from docgen.errors import LinkError
from docgen.queue.models import DocgenRequest, FileRef, ItemStatus, StatusUpdate


class FakeCursor:
    def __init__(self, conn):
        self.conn = conn

    def execute(self, sql, params=None):
        self.conn.executed.append((" ".join(sql.split()), params))
        if self.conn.fail_with is not None:
            raise self.conn.fail_with

    def executemany(self, sql, rows):
        self.execute(sql, list(rows))

    def fetchone(self):
        return self.conn.results.pop(0) if self.conn.results else None

    def fetchall(self):
        return self.conn.results.pop(0) if self.conn.results else []

    def close(self):
        pass


class FakeConnection:
    closed = False

    def __init__(self, results=None, fail_with=None):
        self.results = list(results or [])
        self.fail_with = fail_with
        self.executed = []
        self.commits = 0
        self.rollbacks = 0

    def cursor(self, cursor_factory=None):
        return FakeCursor(self)

    def commit(self):
        self.commits += 1

    def rollback(self):
        self.rollbacks += 1


def database(**conn_kwargs):
    db = Database(dsn="postgresql://unused")
    db._conn = FakeConnection(**conn_kwargs)
    return db


def test_claim_is_a_single_conditional_update():
    db = database(results=[{"id": "a1"}])
    locked_until = datetime(2024, 1, 1, tzinfo=timezone.utc)

    assert db.claim("a1", locked_until) is True

    [(sql, params)] = db._conn.executed
    assert sql.startswith("UPDATE docgen_queue SET status = 'PROCESSING'")
    assert "status = 'QUEUED'" in sql
    assert "locked_until IS NULL OR locked_until < NOW()" in sql
    assert "RETURNING id" in sql
    assert params == (locked_until, "a1")
    assert db._conn.commits == 1


def test_lost_claim_returns_false():
    db = database(results=[None])
    assert db.claim("a1", datetime.now(timezone.utc)) is False


def test_fetch_eligible_builds_items():
    rows = [{"id": "a1", "status": "QUEUED", "request_json": "{}", "attempts": 2}]
    db = database(results=[rows])

    [item] = db.fetch_eligible(20)

    assert item.id == "a1"
    assert item.attempts == 2
    sql, params = db._conn.executed[0]
    assert "WHERE status = 'QUEUED'" in sql
    assert params == (20,)


def test_update_status_writes_all_fields():
    db = database()
    update = StatusUpdate(status=ItemStatus.FAILED, attempts=4, error="{}")

    db.update_status("a1", update)

    _, params = db._conn.executed[0]
    assert params == ("FAILED", 4, "{}", None, None, None, None, "a1")


def test_enqueue_returns_existing_id_for_duplicate_fingerprint():
    request = DocgenRequest.from_payload(make_request_json(requestHash="sha256:1"))
    db = database(results=[None, {"id": "existing"}])

    assert db.enqueue(request) == "existing"
    assert "ON CONFLICT (request_hash) DO NOTHING" in db._conn.executed[0][0]


def test_release_expired_locks_counts_rows():
    db = database(results=[[{"id": "a"}, {"id": "b"}]])
    assert db.release_expired_locks() == 2


def test_link_failure_raises_link_error_and_rolls_back():
    db = database(fail_with=psycopg2.IntegrityError("violates foreign key constraint"))
    ref = FileRef(file_id="f1", path="/tmp/f1.pdf", size=1)

    with pytest.raises(LinkError) as exc_info:
        db.link_output("a1", ref, {"account": "001"})

    assert exc_info.value.retryable is False
    assert db._conn.rollbacks == 1


def test_link_without_parents_is_a_no_op():
    db = database()
    db.link_output("a1", FileRef(file_id="f1", path="/tmp/f1.pdf", size=1), {"account": None})
    assert db._conn.executed == []
