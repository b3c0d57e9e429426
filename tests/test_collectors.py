import json
from datetime import UTC, datetime

import pytest

from tidings.collectors.base import BaseCollector, CollectedItem
from tidings.collectors.inbox import InboxCollector
from tidings.collectors.sample import NewsCollector, WeatherCollector
from tidings.collectors.schedule import CronSchedule
from tidings.collectors.scheduler import CollectorScheduler
from tidings.errors import CollectorError, NotFoundError
from tidings.types import RegionScope

FR_IDF = RegionScope("FR", "IDF")
FR = RegionScope("FR")
US = RegionScope("US")


class FlakyCollector(BaseCollector):
    """Fails for the scopes it is told to."""

    type_aliases = ["flaky-test"]
    content_type = "news"

    def __init__(self, id, failing=(), **kwargs):
        super().__init__(id, **kwargs)
        self.failing = set(failing)

    def fetch(self, scope):
        if scope in self.failing:
            raise RuntimeError(f"provider down for {scope}")
        return [CollectedItem(filename=f"{self.id}.txt", data=b"hello", title="Hello")]


class TestCronSchedule:

    def test_every_fifteen_minutes_with_seconds(self):
        schedule = CronSchedule("0 */15 * * * *")
        assert schedule.next_fire(datetime(2024, 3, 2, 10, 7, 12, tzinfo=UTC)) == datetime(
            2024, 3, 2, 10, 15, tzinfo=UTC
        )

    def test_five_fields(self):
        schedule = CronSchedule("30 6 * * *")
        assert schedule.next_fire(datetime(2024, 3, 2, 10, 0, tzinfo=UTC)) == datetime(
            2024, 3, 3, 6, 30, tzinfo=UTC
        )

    def test_strictly_after(self):
        schedule = CronSchedule("0 * * * *")
        moment = datetime(2024, 3, 2, 10, 0, tzinfo=UTC)
        assert schedule.next_fire(moment) == datetime(2024, 3, 2, 11, 0, tzinfo=UTC)

    def test_weekdays_and_ranges(self):
        # 2024-03-02 is a Saturday
        schedule = CronSchedule("0 9 * * MON-FRI")
        assert schedule.next_fire(datetime(2024, 3, 2, 10, tzinfo=UTC)) == datetime(
            2024, 3, 4, 9, tzinfo=UTC
        )

    def test_month_rollover_from_long_month(self):
        schedule = CronSchedule("0 0 1 * *")
        assert schedule.next_fire(datetime(2024, 1, 31, 12, tzinfo=UTC)) == datetime(
            2024, 2, 1, tzinfo=UTC
        )

    def test_lists(self):
        schedule = CronSchedule("0 0,30 8 * * *")
        assert schedule.next_fire(datetime(2024, 3, 2, 8, 10, tzinfo=UTC)) == datetime(
            2024, 3, 2, 8, 30, tzinfo=UTC
        )

    @pytest.mark.parametrize("bad", ["* * *", "61 * * * *", "*/0 * * * *", "a b c d e"])
    def test_invalid(self, bad):
        with pytest.raises(ValueError):
            CronSchedule(bad)

    def test_never_fires(self):
        with pytest.raises(ValueError):
            CronSchedule("0 0 31 2 *").next_fire(datetime(2024, 1, 1, tzinfo=UTC))


class TestRegistry:

    def test_aliases(self):
        assert BaseCollector.implementation_get("news") is NewsCollector
        assert BaseCollector.implementation_get("weather") is WeatherCollector
        assert BaseCollector.implementation_get("inbox") is InboxCollector

    def test_unknown_alias(self):
        with pytest.raises(ValueError):
            BaseCollector.implementation_get("telepathy")

    def test_alias_required(self):
        with pytest.raises(RuntimeError):

            class Nameless(BaseCollector):
                pass


class TestCollectors:

    def test_news_collector_stores_items(self, store, clock):
        collector = NewsCollector("news", scopes=[FR_IDF, US], clock=clock)
        stats = collector.run(store)

        assert stats == {"items": 4, "scopes": ["FR:IDF", "US:national"], "failed_scopes": []}
        assert store.count_active("news", "FR") == 2
        articles = store.find_active_content("news", "FR", "IDF")
        data = json.loads(store.disk_path(articles[0].file_path).read_bytes())
        assert data["language"] == "fr"

    def test_weather_collector_uses_city(self, store, clock):
        collector = WeatherCollector(
            "weather", scopes=[FR], cities={"FR:national": "Paris"}, seed=1, clock=clock
        )
        collector.run(store)
        (report,) = store.find_active_content("weather", "FR", None)
        assert report.title == "Weather for Paris"
        data = json.loads(store.disk_path(report.file_path).read_bytes())
        assert len(data["forecast"]) == 5

    def test_content_is_cached(self, store, cache, clock):
        NewsCollector("news", scopes=[FR], clock=clock).run(store, cache)
        assert len(cache.get_content("news", FR)) == 2

    def test_inbox_collector_imports_and_removes(self, tmp_path, store):
        inbox = tmp_path / "inbox"
        (inbox / "fr" / "idf").mkdir(parents=True)
        (inbox / "fr" / "idf" / "recipe.md").write_text("# Crêpes")
        (inbox / "fr" / "idf" / ".uploading").write_text("partial")
        collector = InboxCollector(
            "inbox", path=inbox, content_type="recipes", scopes=[FR_IDF, US]
        )

        stats = collector.run(store)

        assert stats["items"] == 1
        assert stats["scopes"] == ["FR:IDF"]
        (recipe,) = store.find_active_content("recipes", "FR", "IDF")
        assert recipe.file_path == "fr/regions/idf/recipes/recipe.md"
        assert not (inbox / "fr" / "idf" / "recipe.md").exists()
        assert (inbox / "fr" / "idf" / ".uploading").exists()

    def test_failing_scope_is_isolated(self, store):
        collector = FlakyCollector("flaky", scopes=[FR, US], failing=[FR])
        stats = collector.run(store)
        assert stats["scopes"] == ["US:national"]
        assert stats["failed_scopes"] == ["FR:national"]
        assert store.count_active("news", "US") == 1

    def test_all_scopes_failing_raises(self, store):
        collector = FlakyCollector("flaky", scopes=[FR, US], failing=[FR, US])
        with pytest.raises(CollectorError):
            collector.run(store)


@pytest.fixture
def scheduler(store, version_clock, cache, events, clock):
    collectors = [
        FlakyCollector("good", scopes=[FR_IDF], schedule="0 */15 * * * *"),
        FlakyCollector("bad", scopes=[US], failing=[US], schedule="0 */15 * * * *"),
        FlakyCollector("off", scopes=[FR], enabled=False),
    ]
    scheduler = CollectorScheduler(
        collectors, store, version_clock, cache, events=events, now=clock
    )
    yield scheduler
    scheduler.stop()


class TestScheduler:

    def test_initial_statuses(self, scheduler):
        statuses = {status.id: status for status in scheduler.statuses()}
        assert statuses["good"].status == "IDLE"
        assert statuses["off"].status == "DISABLED"
        assert statuses["good"].scopes == ["FR:IDF"]

    def test_start_schedules_enabled_collectors(self, scheduler, clock):
        scheduler.start()
        assert set(scheduler.timers) == {"good", "bad"}
        assert scheduler.status("good").next_run == datetime(2024, 3, 2, 10, 30, tzinfo=UTC)

    def test_toggle(self, scheduler, events):
        received = []
        events.subscribe(lambda event, data: received.append((event, data)))
        scheduler.start()

        assert scheduler.toggle("good") is False
        assert "good" not in scheduler.timers
        assert scheduler.status("good").status == "DISABLED"

        assert scheduler.toggle("good") is True
        assert "good" in scheduler.timers
        assert scheduler.status("good").status == "IDLE"
        assert [event for event, _ in received] == ["collector_status_changed"] * 2
        assert received[-1][1]["enabled"] is True

    def test_unknown_collector(self, scheduler):
        with pytest.raises(NotFoundError):
            scheduler.toggle("nope")
        with pytest.raises(NotFoundError):
            scheduler.run_now("nope")
        with pytest.raises(NotFoundError):
            scheduler.status("nope")

    def test_run_now_success_advances_version_and_evicts(
        self, scheduler, version_clock, cache
    ):
        version_clock.update_version(FR_IDF, "2024.03.02.10")
        key = cache.update_key(FR_IDF, "2024.03.02.10")
        cache.put(key, {"stale": True}, "no_update")

        stats = scheduler.run_now("good").result(timeout=10)

        assert stats["items"] == 1
        assert version_clock.latest_version(FR_IDF) == "2024.03.02.10.001"
        assert cache.get(key) is None
        status = scheduler.status("good")
        assert status.status == "SUCCESS"
        assert status.success_count == 1
        assert status.last_run is not None
        assert status.last_error is None

    def test_run_now_failure_is_recorded(self, scheduler):
        assert scheduler.run_now("bad").result(timeout=10) is None
        status = scheduler.status("bad")
        assert status.status == "ERROR"
        assert status.error_count == 1
        assert "provider down" in status.last_error

    def test_failure_does_not_affect_others(self, scheduler):
        bad = scheduler.run_now("bad")
        good = scheduler.run_now("good")
        assert bad.result(timeout=10) is None
        assert good.result(timeout=10)["items"] == 1

    def test_status_events_are_published(self, scheduler, events):
        received = []

        def on_event(event, data):
            if event == events.COLLECTOR_STATUS_CHANGED:
                received.append(data["status"])

        events.subscribe(on_event)
        scheduler.run_now("good").result(timeout=10)
        assert received == ["RUNNING", "SUCCESS"]

    def test_regional_content_moves_country_version(self, scheduler, version_clock, cache):
        version_clock.update_version(FR_IDF, "2024.03.02.10")
        version_clock.update_version(FR, "2024.03.02.10")
        national_key = cache.update_key(FR, "2024.03.02.10")
        cache.put(national_key, {"stale": True}, "no_update")

        scheduler.run_now("good").result(timeout=10)

        assert version_clock.latest_version(FR_IDF) == "2024.03.02.10.001"
        assert version_clock.latest_version(FR) == "2024.03.02.10.001"
        assert cache.get(national_key) is None
