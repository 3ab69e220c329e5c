import asyncio

import pytest
import requests

from conftest import StubTemplateSource
from docgen.errors import TemplateNotFoundError, UpstreamTransientError
from docgen.templates.cache import TemplateCache
from docgen.templates.service import TemplateService


def test_lookup_miss_then_hit():
    cache = TemplateCache(max_bytes=100)
    assert cache.lookup("a") is None

    cache.put("a", b"abc")

    assert cache.lookup("a") == b"abc"
    stats = cache.stats()
    assert stats["hits"] == 1
    assert stats["misses"] == 1
    assert stats["current_size"] == 3
    assert stats["entry_count"] == 1


def test_evicts_least_recently_used_until_under_budget():
    cache = TemplateCache(max_bytes=30)
    cache.put("a", b"x" * 10)
    cache.put("b", b"x" * 10)
    cache.put("c", b"x" * 10)
    cache.lookup("a")  # b is now the oldest

    cache.put("d", b"x" * 10)

    assert "b" not in cache
    assert all(key in cache for key in ("a", "c", "d"))
    assert cache.stats()["current_size"] == 30
    assert cache.stats()["evictions"] == 1


def test_large_insert_evicts_several_entries():
    cache = TemplateCache(max_bytes=30)
    for key in ("a", "b", "c"):
        cache.put(key, b"x" * 10)

    cache.put("big", b"x" * 25)

    assert "big" in cache
    assert cache.stats()["current_size"] <= 30
    assert cache.stats()["evictions"] == 3


def test_entry_larger_than_ceiling_is_not_stored():
    cache = TemplateCache(max_bytes=10)
    cache.put("a", b"x" * 5)

    assert cache.put("huge", b"x" * 11) is False
    assert "huge" not in cache
    assert "a" in cache


def test_existing_entry_is_never_rewritten():
    cache = TemplateCache(max_bytes=100)
    cache.put("a", b"first")

    assert cache.put("a", b"second") is False
    assert cache.lookup("a") == b"first"


def test_clear_keeps_counters():
    cache = TemplateCache(max_bytes=100)
    cache.put("a", b"abc")
    cache.lookup("a")
    cache.clear()

    assert "a" not in cache
    assert cache.stats()["current_size"] == 0
    assert cache.stats()["hits"] == 1


def test_service_second_fetch_is_a_cache_hit():
    source = StubTemplateSource({"tpl-1": b"template-bytes"})
    service = TemplateService(source, TemplateCache(max_bytes=1000))

    async def run():
        first = await service.get_template("tpl-1")
        second = await service.get_template("tpl-1")
        return first, second

    first, second = asyncio.run(run())

    assert first == second == b"template-bytes"
    assert source.calls == ["tpl-1"]


def test_service_not_found_is_not_cached():
    source = StubTemplateSource()
    cache = TemplateCache(max_bytes=1000)
    service = TemplateService(source, cache)

    for _ in range(2):
        with pytest.raises(TemplateNotFoundError) as exc_info:
            asyncio.run(service.get_template("missing"))
        assert exc_info.value.retryable is False

    assert source.calls == ["missing", "missing"]
    assert cache.stats()["entry_count"] == 0


def test_service_wraps_connection_errors_as_transient():
    class DownSource:
        def download_template(self, template_id):
            raise requests.ConnectionError("refused")

    service = TemplateService(DownSource(), TemplateCache(max_bytes=1000))

    with pytest.raises(UpstreamTransientError) as exc_info:
        asyncio.run(service.get_template("tpl-1"))
    assert exc_info.value.retryable is True
    assert exc_info.value.context["template_id"] == "tpl-1"


def test_concurrent_misses_keep_bookkeeping_consistent():
    source = StubTemplateSource({f"tpl-{i}": bytes(10) for i in range(5)})
    cache = TemplateCache(max_bytes=1000)
    service = TemplateService(source, cache)

    async def run():
        await asyncio.gather(*(service.get_template(f"tpl-{i % 5}") for i in range(20)))

    asyncio.run(run())

    stats = cache.stats()
    assert stats["entry_count"] == 5
    assert stats["current_size"] == 50
