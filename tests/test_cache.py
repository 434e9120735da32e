import sqlite3

import pytest

from novelpack import db
from novelpack.cache import UnitCache
from novelpack.errors import CacheError
from novelpack.models import CacheEntry


@pytest.fixture
def cache(database):
    return UnitCache()


def entry(unit_id: str, order: int = 0, text: str = "本文", work_id: str = "123") -> CacheEntry:
    return CacheEntry(work_id=work_id, unit_id=unit_id, title=f"第{unit_id}章",
                      markup=f"<p>{text}</p>", text=text, unit_order=order)


class TestUnitCache:

    def test_miss_returns_none(self, cache):
        assert cache.get("123", "1") is None
        assert not cache.exists("123", "1")

    def test_put_then_get(self, cache):
        cache.put(entry("1"))
        stored = cache.get("123", "1")
        assert stored.title == "第1章"
        assert stored.markup == "<p>本文</p>"
        assert stored.text == "本文"
        assert stored.updated_at is not None
        assert cache.exists("123", "1")

    def test_upsert_replaces_content(self, cache):
        cache.put(entry("1", text="舊"))
        cache.put(entry("1", text="新"))
        assert cache.get("123", "1").text == "新"
        assert cache.count_for_work("123") == 1

    def test_entries_are_shared_across_works_by_key(self, cache):
        cache.put(entry("1", work_id="123"))
        cache.put(entry("1", work_id="456"))
        assert cache.count_for_work("123") == 1
        assert cache.count_for_work("456") == 1

    def test_get_all_for_work_in_reading_order(self, cache):
        cache.put(entry("30", order=2))
        cache.put(entry("10", order=0))
        cache.put(entry("20", order=1))
        assert [e.unit_id for e in cache.get_all_for_work("123")] == ["10", "20", "30"]

    def test_delete_work(self, cache):
        cache.put(entry("1"))
        cache.put(entry("2"))
        assert cache.delete_work("123") == 2
        assert cache.count_for_work("123") == 0

    def test_storage_errors_become_cache_errors(self, cache, monkeypatch):
        def broken(*args):
            raise sqlite3.OperationalError("database is locked")

        monkeypatch.setattr(db, "get_cached_unit", broken)
        monkeypatch.setattr(db, "save_cached_unit", broken)
        with pytest.raises(CacheError):
            cache.get("123", "1")
        with pytest.raises(CacheError):
            cache.put(entry("1"))
