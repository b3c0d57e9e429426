from datetime import UTC, datetime

import pytest

from tidings.cache import ResponseCache
from tidings.database import ContentStore
from tidings.datastore import ExpiringDatastore, ReleaseMetadata, VersionTimeline
from tidings.diff import ContentDiffResolver
from tidings.events import EventBus
from tidings.packages import PackageBuilder
from tidings.versioning import VersionClock

FIXED_NOW = datetime(2024, 3, 2, 10, 15, 30, tzinfo=UTC)


class FakeClock:
    """
    A settable clock, usable anywhere a zero-argument "now" callable is.
    """

    def __init__(self, now: datetime = FIXED_NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(tmp_path):
    return ContentStore(tmp_path / "content.sqlite3", tmp_path / "content")


@pytest.fixture
def timeline(tmp_path):
    ds = VersionTimeline(tmp_path / "versions")
    yield ds
    ds.close()


@pytest.fixture
def releases(tmp_path):
    ds = ReleaseMetadata(tmp_path / "releases")
    yield ds
    ds.close()


@pytest.fixture
def shared_cache(tmp_path):
    ds = ExpiringDatastore(tmp_path / "cache")
    yield ds
    ds.close()


@pytest.fixture
def events():
    return EventBus()


@pytest.fixture
def cache(shared_cache, events):
    return ResponseCache(shared=shared_cache, events=events)


@pytest.fixture
def version_clock(timeline, releases, clock):
    return VersionClock(timeline, releases, clock=clock)


@pytest.fixture
def resolver(store, cache):
    return ContentDiffResolver(store, cache)


@pytest.fixture
def builder(tmp_path, store, clock):
    return PackageBuilder(tmp_path / "packages", store, clock=clock)
