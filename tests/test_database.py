import hashlib
from unittest.mock import patch

import pytest

from tidings.constants import CONTENT_STATUS
from tidings.errors import UpstreamIOError
from tidings.types import RegionScope

FR_IDF = RegionScope("FR", "IDF")


class TestSaveContent:

    def test_writes_file_and_row(self, store):
        content = store.save_content("news", FR_IDF, "a.json", b"{}", tags=["b", " a", ""])
        assert content.file_path == "fr/regions/idf/news/a.json"
        assert content.tags == "a,b"
        assert content.language_code == "fr"
        assert store.disk_path(content.file_path).read_bytes() == b"{}"

    def test_database_failure_leaves_no_file(self, store):
        with patch.object(store, "session", side_effect=UpstreamIOError("db down")):
            with pytest.raises(UpstreamIOError):
                store.save_content("news", FR_IDF, "a.json", b"{}")
        directory = store.content_root / "fr" / "regions" / "idf" / "news"
        assert list(directory.iterdir()) == []

    def test_same_name_archives_previous_row(self, store):
        first = store.save_content("news", FR_IDF, "a.json", b"one")
        second = store.save_content("news", FR_IDF, "a.json", b"two")

        statuses = {c.id: c.status for c in store.all_content()}
        assert statuses[first.id] == CONTENT_STATUS.ARCHIVED
        assert statuses[second.id] == CONTENT_STATUS.ACTIVE
        assert store.disk_path(second.file_path).read_bytes() == b"two"
        assert len(store.find_active_content("news", "FR", "IDF")) == 1

    def test_rejects_escaping_filename(self, store):
        with pytest.raises(ValueError):
            store.save_content("news", FR_IDF, "../../../../../evil", b"x")


class TestQueries:

    def test_find_by_checksum(self, store):
        a = store.save_content("news", FR_IDF, "a.json", b"same")
        b = store.save_content("news", RegionScope("US"), "b.json", b"same")
        store.save_content("news", FR_IDF, "c.json", b"different")

        found = store.find_by_checksum(hashlib.sha256(b"same").hexdigest())

        assert sorted(c.id for c in found) == sorted([a.id, b.id])
        assert store.find_by_checksum("0" * 64) == []

    def test_national_query_includes_regions(self, store):
        store.save_content("news", FR_IDF, "a.json", b"{}")
        store.save_content("news", RegionScope("FR"), "b.json", b"{}")
        store.save_content("news", RegionScope("FR", "PAC"), "c.json", b"{}")

        assert store.count_active("news", "FR") == 3
        assert len(store.find_active_content("news", "FR", "IDF")) == 1
