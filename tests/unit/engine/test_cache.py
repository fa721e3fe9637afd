"""Unit tests for the persistent build cache."""

import json
import threading

import pytest

from cbuild.engine.cache import CACHE_FORMAT_VERSION, BuildCache, BuildCacheError
from cbuild.engine.models import ComponentDescriptor

ZLIB = ComponentDescriptor(name="zlib", version="1.3.1")


@pytest.fixture
def cache_path(tmp_path):
    return tmp_path / "state" / "build_cache.json"


class TestShouldBuild:
    """Hit/miss decisions."""

    def test_empty_cache_builds(self, cache_path):
        cache = BuildCache(cache_path)
        cache.load()
        assert cache.should_build(ZLIB, "fp1")

    def test_hit_after_success(self, cache_path):
        cache = BuildCache(cache_path)
        cache.load()
        cache.record_success(ZLIB, "fp1")
        assert not cache.should_build(ZLIB, "fp1")

    def test_fingerprint_change_rebuilds(self, cache_path):
        cache = BuildCache(cache_path)
        cache.load()
        cache.record_success(ZLIB, "fp1")
        assert cache.should_build(ZLIB, "fp2")

    def test_version_change_rebuilds(self, cache_path):
        cache = BuildCache(cache_path)
        cache.load()
        cache.record_success(ZLIB, "fp1")
        assert cache.should_build(ComponentDescriptor(name="zlib", version="1.3.2"), "fp1")

    def test_in_memory_cache(self):
        """A cache without a path works for one process and never writes."""
        cache = BuildCache(None)
        cache.load()
        cache.record_success(ZLIB, "fp1")
        cache.flush()
        assert not cache.should_build(ZLIB, "fp1")


class TestPersistence:
    """load()/flush() lifecycle."""

    def test_flush_then_load(self, cache_path):
        cache = BuildCache(cache_path)
        cache.load()
        entry = cache.record_success(ZLIB, "fp1")
        cache.flush()

        reloaded = BuildCache(cache_path)
        reloaded.load()
        assert reloaded.get("zlib") == entry
        assert not reloaded.should_build(ZLIB, "fp1")

    def test_file_layout(self, cache_path):
        cache = BuildCache(cache_path)
        cache.load()
        cache.record_success(ZLIB, "fp1")
        cache.flush()

        data = json.loads(cache_path.read_text(encoding="utf-8"))
        assert data["version"] == CACHE_FORMAT_VERSION
        assert data["entries"]["zlib"]["fingerprint"] == "fp1"
        assert data["entries"]["zlib"]["version"] == "1.3.1"
        assert not cache_path.with_suffix(".json.tmp").exists()

    def test_flush_without_changes_does_not_write(self, cache_path):
        cache = BuildCache(cache_path)
        cache.load()
        cache.flush()
        assert not cache_path.exists()

    def test_missing_file_is_empty(self, cache_path):
        cache = BuildCache(cache_path)
        cache.load()
        assert cache.loaded
        assert cache.entries() == {}
        assert not cache.corrupted

    @pytest.mark.parametrize(
        "content",
        [
            "{not json",
            "[]",
            json.dumps({"version": 99, "entries": {}}),
            json.dumps({"version": CACHE_FORMAT_VERSION}),
            json.dumps({"version": CACHE_FORMAT_VERSION, "entries": {"zlib": {"name": "zlib"}}}),
            json.dumps(
                {
                    "version": CACHE_FORMAT_VERSION,
                    "entries": {"zlib": {"name": "openssl", "version": "1", "fingerprint": "f", "built_at": 0}},
                }
            ),
        ],
    )
    def test_corruption_degrades_to_empty(self, cache_path, content, caplog):
        """Corrupt files are logged and treated as an empty cache."""
        cache_path.parent.mkdir(parents=True)
        cache_path.write_text(content, encoding="utf-8")

        cache = BuildCache(cache_path)
        with caplog.at_level("WARNING", logger="cbuild.engine.cache"):
            cache.load()

        assert cache.corrupted
        assert cache.entries() == {}
        assert cache.should_build(ZLIB, "fp1")
        assert "Ignoring build cache" in caplog.text

    def test_corrupt_file_is_rewritten_on_flush(self, cache_path):
        cache_path.parent.mkdir(parents=True)
        cache_path.write_text("garbage", encoding="utf-8")

        cache = BuildCache(cache_path)
        cache.load()
        cache.flush()

        data = json.loads(cache_path.read_text(encoding="utf-8"))
        assert data == {"version": CACHE_FORMAT_VERSION, "entries": {}}

    def test_unwritable_location_raises(self, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("file, not a directory", encoding="utf-8")
        cache = BuildCache(blocker / "build_cache.json")
        cache.load()
        cache.record_success(ZLIB, "fp1")
        with pytest.raises(BuildCacheError):
            cache.flush()


class TestMaintenance:
    """invalidate() and clear()."""

    def test_invalidate(self, cache_path):
        cache = BuildCache(cache_path)
        cache.load()
        cache.record_success(ZLIB, "fp1")
        assert cache.invalidate("zlib")
        assert not cache.invalidate("zlib")
        assert cache.should_build(ZLIB, "fp1")

    def test_clear(self, cache_path):
        cache = BuildCache(cache_path)
        cache.load()
        cache.record_success(ZLIB, "fp1")
        cache.record_success(ComponentDescriptor(name="openssl"), "fp2")
        assert cache.clear() == 2
        assert cache.entries() == {}

    def test_clear_persists(self, cache_path):
        cache = BuildCache(cache_path)
        cache.load()
        cache.record_success(ZLIB, "fp1")
        cache.flush()

        cache.clear()
        cache.flush()

        reloaded = BuildCache(cache_path)
        reloaded.load()
        assert reloaded.entries() == {}


class TestThreadSafety:
    def test_concurrent_record_success(self, cache_path):
        """Concurrent updates of different keys are all kept."""
        cache = BuildCache(cache_path)
        cache.load()
        descriptors = [ComponentDescriptor(name=f"pkg-{i}") for i in range(50)]

        threads = [threading.Thread(target=cache.record_success, args=(d, f"fp-{d.name}")) for d in descriptors]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(cache.entries()) == 50
        for d in descriptors:
            assert not cache.should_build(d, f"fp-{d.name}")
