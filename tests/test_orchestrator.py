from datetime import UTC, datetime, timedelta
from unittest.mock import MagicMock

import pytest

from tidings.errors import BuildError, UpstreamIOError
from tidings.orchestrator import UpdateOrchestrator, summarize_changes
from tidings.types import PackageHandle, RegionScope

FR_IDF = RegionScope("FR", "IDF")
FR = RegionScope("FR")
US = RegionScope("US")
NOW = datetime(2024, 3, 2, 10, 15, 30, tzinfo=UTC)
CHANGED = ["fr/regions/idf/news/a.json", "fr/regions/idf/news/b.json", "fr/regions/idf/weather/c.json"]


@pytest.fixture
def resolver():
    resolver = MagicMock()
    resolver.changed_files.return_value = list(CHANGED)
    return resolver


@pytest.fixture
def builder(tmp_path):
    builder = MagicMock()
    builder.build.side_effect = lambda scope, from_version, to_version, changed: PackageHandle(
        path=tmp_path / "pkg.zip",
        size=1234,
        checksum="ab" * 32,
        version=to_version,
        scope=scope,
    )
    return builder


@pytest.fixture
def orchestrator(version_clock, resolver, builder, cache):
    version_clock.update_version(FR_IDF, "2024.03.02.10")
    version_clock.update_version(FR, "2024.03.02.10")
    version_clock.update_version(US, "2024.03.02.10")
    orchestrator = UpdateOrchestrator(
        version_clock, resolver, builder, cache, now=lambda: NOW
    )
    yield orchestrator
    orchestrator.shutdown()


class TestCheckUpdate:

    def test_update_available(self, orchestrator, builder):
        response = orchestrator.check_update(FR_IDF, "2024.01.15")

        assert response.has_updates
        assert response.latest_version == "2024.03.02.10"
        assert response.message == "Update available"
        assert response.changed_files == CHANGED
        assert response.changes_summary == {"news": 2, "weather": 1}
        assert response.package_size == 1234
        assert response.checksum == "ab" * 32
        assert response.download_url == (
            "/api/v1/update/download/2024.03.02.10?countryCode=FR&regionCode=IDF"
        )
        assert response.mandatory
        assert response.release_date == datetime(2024, 3, 2, 10, tzinfo=UTC)
        assert "2024.03.02.10" in response.release_notes
        assert response.next_check_time == NOW + timedelta(hours=1)
        builder.build.assert_called_once_with(FR_IDF, "2024.01.15", "2024.03.02.10", CHANGED)

    def test_national_download_url_has_no_region(self, orchestrator):
        response = orchestrator.check_update(US, "2024.03.01")
        assert response.download_url.endswith("?countryCode=US")

    def test_same_month_update_is_not_mandatory(self, orchestrator):
        assert not orchestrator.check_update(FR_IDF, "2024.03.01").mandatory

    def test_no_update(self, orchestrator, resolver, builder):
        response = orchestrator.check_update(FR_IDF, "2024.03.02.11")

        assert not response.has_updates
        assert response.latest_version == "2024.03.02.11"
        assert response.message == "No updates available"
        assert response.download_url is None
        assert response.next_check_time == NOW + timedelta(hours=6)
        resolver.changed_files.assert_not_called()
        builder.build.assert_not_called()

    def test_malformed_client_version_gets_no_update(self, orchestrator, builder):
        assert not orchestrator.check_update(FR_IDF, "1.x.0").has_updates
        builder.build.assert_not_called()


class TestCaching:

    def test_second_call_is_served_from_cache(self, orchestrator, resolver, builder):
        first = orchestrator.check_update(FR_IDF, "2024.01.15")
        second = orchestrator.check_update(FR_IDF, "2024.01.15")

        assert first == second
        assert resolver.changed_files.call_count == 1
        assert builder.build.call_count == 1

    def test_no_update_is_cached_with_short_ttl(self, orchestrator, cache):
        orchestrator.check_update(FR_IDF, "2024.03.02.11")
        entry = cache.shared.get(cache.update_key(FR_IDF, "2024.03.02.11"))
        assert entry is not None
        remaining = entry["expires"] - cache.shared_clock()
        assert 0 < remaining <= cache.ttl_for("no_update")

    def test_scopes_are_cached_separately(self, orchestrator, builder):
        orchestrator.check_update(FR_IDF, "2024.01.15")
        orchestrator.check_update(FR, "2024.01.15")
        orchestrator.check_update(US, "2024.01.15")
        orchestrator.check_update(FR_IDF, "2024.01.15")

        assert builder.build.call_count == 3
        assert [c.args[0] for c in builder.build.call_args_list] == [FR_IDF, FR, US]

    def test_build_failure_is_not_cached(self, orchestrator, builder):
        builder.build.side_effect = BuildError("disk full")
        with pytest.raises(BuildError):
            orchestrator.check_update(FR_IDF, "2024.01.15")
        with pytest.raises(BuildError):
            orchestrator.check_update(FR_IDF, "2024.01.15")
        assert builder.build.call_count == 2

    def test_resolver_failure_propagates(self, orchestrator, resolver, cache):
        resolver.changed_files.side_effect = UpstreamIOError("db down")
        with pytest.raises(UpstreamIOError):
            orchestrator.check_update(FR_IDF, "2024.01.15")
        assert cache.get_update_response(FR_IDF, "2024.01.15") is None

    def test_not_cached_when_version_moves_during_check(
        self, orchestrator, resolver, version_clock, cache, clock
    ):
        def collect_meanwhile(*args):
            clock.now = datetime(2024, 3, 2, 12, tzinfo=UTC)
            version_clock.advance(FR_IDF)
            cache.evict(cache.scope_pattern(FR_IDF))
            return list(CHANGED)

        resolver.changed_files.side_effect = collect_meanwhile

        response = orchestrator.check_update(FR_IDF, "2024.01.15")

        assert response.latest_version == "2024.03.02.10"
        assert cache.get_update_response(FR_IDF, "2024.01.15") is None
        resolver.changed_files.side_effect = None
        assert orchestrator.check_update(FR_IDF, "2024.01.15").latest_version == (
            "2024.03.02.12"
        )

    def test_new_version_after_eviction(self, orchestrator, version_clock, cache, clock):
        assert orchestrator.check_update(FR_IDF, "2024.03.02.10").has_updates is False
        clock.now = datetime(2024, 3, 2, 12, tzinfo=UTC)
        version_clock.advance(FR_IDF)
        cache.evict(cache.scope_pattern(FR_IDF))
        response = orchestrator.check_update(FR_IDF, "2024.03.02.10")
        assert response.has_updates
        assert response.latest_version == "2024.03.02.12"


class TestWorkerPool:

    def test_submit_check(self, orchestrator):
        futures = [orchestrator.submit_check(FR_IDF, "2024.01.15") for _ in range(5)]
        results = [future.result(timeout=10) for future in futures]
        assert all(result.has_updates for result in results)


class TestDownloads:

    def test_download_package_delegates_to_builder(self, orchestrator, builder):
        orchestrator.download_package("2024.03.02.10", FR_IDF)
        builder.retrieve.assert_called_once_with("2024.03.02.10", FR_IDF)

    def test_service_version(self, orchestrator):
        assert orchestrator.service_version()


def test_summarize_changes():
    assert summarize_changes(["fr/national/news/a", "fr/national/news/b", "x"]) == {
        "news": 2,
        "other": 1,
    }
