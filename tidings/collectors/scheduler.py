import logging
import threading
import time
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime

from tidings.cache import ResponseCache
from tidings.constants import COLLECTOR_STATE
from tidings.database import ContentStore
from tidings.errors import NotFoundError
from tidings.events import EventBus
from tidings.types import CollectorStats, CollectorStatus, RegionScope
from tidings.versioning import VersionClock, utc_now

from .base import BaseCollector
from .schedule import CronSchedule

logger = logging.getLogger(__name__)


def publish_scopes(
    scopes: list[RegionScope], version_clock: VersionClock, cache: ResponseCache
) -> dict[RegionScope, str]:
    """
    Issues new versions after content landed in the given scopes. A region's
    content is also part of its country's national updates, so the country
    moves too. Returns the new version of every scope that moved.
    """
    versions = {}
    for scope in scopes:
        for affected in scope.affected_scopes:
            if affected in versions:
                continue
            versions[affected] = version_clock.advance(affected)
            cache.evict(cache.scope_pattern(affected))
    return versions


class CollectorScheduler:
    """
    Runs collectors on their cron schedules, or on demand, and keeps their
    status.

    Each enabled collector has at most one pending timer. A run stores new
    content, then issues a new version for every scope that got content and
    drops the cached update responses of that scope (and, for a region, of
    its country) so clients see it. One collector (or one scope) failing
    never stops the others.
    """

    def __init__(
        self,
        collectors: list[BaseCollector],
        store: ContentStore,
        version_clock: VersionClock,
        cache: ResponseCache,
        events: EventBus | None = None,
        workers: int = 4,
        now: Callable[[], datetime] = utc_now,
    ):
        self.collectors = {collector.id: collector for collector in collectors}
        self.store = store
        self.version_clock = version_clock
        self.cache = cache
        self.events = events
        self.now = now
        self.workers = workers
        self.executor: ThreadPoolExecutor | None = None
        self.timers: dict[str, threading.Timer] = {}
        self.lock = threading.RLock()
        self.running = False
        self.collector_statuses = {
            collector.id: CollectorStatus(
                id=collector.id,
                name=collector.name,
                type=collector.type,
                enabled=collector.enabled,
                schedule=collector.schedule,
                status=(
                    COLLECTOR_STATE.IDLE if collector.enabled else COLLECTOR_STATE.DISABLED
                ).value,
                scopes=[scope.key for scope in collector.scopes],
            )
            for collector in collectors
        }

    def _collector(self, id: str) -> BaseCollector:
        try:
            return self.collectors[id]
        except KeyError:
            raise NotFoundError(f"Collector not found: {id}") from None

    def _publish(self, status: CollectorStatus):
        if self.events is not None:
            self.events.collector_status_changed(status.as_dict())

    ### Lifecycle ###

    def start(self):
        with self.lock:
            self.running = True
            for collector in self.collectors.values():
                if collector.enabled:
                    self._schedule(collector)
        logger.info(f"Initialized {len(self.collectors)} collectors")

    def stop(self, wait: bool = True):
        with self.lock:
            self.running = False
            for id in list(self.timers):
                self._cancel(id)
        if self.executor is not None:
            self.executor.shutdown(wait=wait)
            self.executor = None

    def _schedule(self, collector: BaseCollector):
        if not collector.schedule or not self.running:
            return
        now = self.now()
        next_run = CronSchedule(collector.schedule).next_fire(now)
        timer = threading.Timer(
            (next_run - now).total_seconds(), self._fire, args=(collector.id,)
        )
        timer.daemon = True
        with self.lock:
            self._cancel(collector.id)
            self.timers[collector.id] = timer
            self.collector_statuses[collector.id].next_run = next_run
        timer.start()
        logger.debug(f"Collector {collector.id} next runs at {next_run}")

    def _cancel(self, id: str):
        timer = self.timers.pop(id, None)
        if timer is not None:
            timer.cancel()
            logger.debug(f"Cancelled scheduled run for collector {id}")

    def _fire(self, id: str):
        collector = self.collectors[id]
        with self.lock:
            self.timers.pop(id, None)
            if not collector.enabled:
                return
        self.run_now(id)
        self._schedule(collector)

    ### Control ###

    def toggle(self, id: str) -> bool:
        """
        Enables a disabled collector or disables an enabled one; returns the
        new state.
        """
        collector = self._collector(id)
        with self.lock:
            collector.enabled = not collector.enabled
            status = self.collector_statuses[id]
            status.enabled = collector.enabled
            if collector.enabled:
                status.status = COLLECTOR_STATE.IDLE.value
            else:
                self._cancel(id)
                status.status = COLLECTOR_STATE.DISABLED.value
                status.next_run = None
        if collector.enabled:
            self._schedule(collector)
        logger.info(f"Collector {id} {'enabled' if collector.enabled else 'disabled'}")
        self._publish(status)
        return collector.enabled

    def run_now(self, id: str) -> Future[CollectorStats | None]:
        """
        Starts a run of the collector in the background, whatever its
        schedule says.
        """
        collector = self._collector(id)
        with self.lock:
            status = self.collector_statuses[id]
            status.status = COLLECTOR_STATE.RUNNING.value
            status.last_run = self.now()
            if self.executor is None:
                self.executor = ThreadPoolExecutor(
                    max_workers=self.workers, thread_name_prefix="collector"
                )
            executor = self.executor
        self._publish(status)
        return executor.submit(self.execute, collector)

    def execute(self, collector: BaseCollector) -> CollectorStats | None:
        """
        Runs a collector in this thread and records the outcome. Returns its
        stats, or None if it failed.
        """
        status = self.collector_statuses[collector.id]
        start = time.monotonic()
        try:
            stats = collector.run(self.store, self.cache)
            publish_scopes(
                [RegionScope.from_key(key) for key in stats["scopes"]],
                self.version_clock,
                self.cache,
            )
        except Exception as e:
            with self.lock:
                status.status = COLLECTOR_STATE.ERROR.value
                status.record_error(str(e))
            logger.error(f"Error executing collector {collector.id}: {e}")
            self._publish(status)
            return None
        elapsed_ms = int((time.monotonic() - start) * 1000)
        message = f"Collected {stats['items']} items for {len(stats['scopes'])} scopes"
        if stats["failed_scopes"]:
            message += f" ({len(stats['failed_scopes'])} scopes failed)"
        with self.lock:
            status.status = COLLECTOR_STATE.SUCCESS.value
            status.record_success(elapsed_ms, message)
        logger.info(f"Collector {collector.id} executed successfully in {elapsed_ms}ms")
        self._publish(status)
        return stats

    ### Status ###

    def statuses(self) -> list[CollectorStatus]:
        with self.lock:
            return list(self.collector_statuses.values())

    def status(self, id: str) -> CollectorStatus:
        self._collector(id)
        return self.collector_statuses[id]
