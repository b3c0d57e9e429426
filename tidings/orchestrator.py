import enum
import logging
from collections import Counter
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime, timedelta
from importlib import metadata
from urllib.parse import urlencode

from tidings.cache import ResponseCache
from tidings.constants import SERVICE_VERSION_FALLBACK
from tidings.database import content_type_of
from tidings.diff import ContentDiffResolver
from tidings.packages import PackageBuilder
from tidings.types import PackageHandle, RegionScope, UpdateResponse
from tidings.versioning import VersionClock, utc_now

logger = logging.getLogger(__name__)


class PipelineState(enum.Enum):
    CACHE_CHECK = "cache_check"
    VERSION_CHECK = "version_check"
    NO_UPDATE = "no_update"
    DIFF_RESOLVE = "diff_resolve"
    PACKAGE_BUILD = "package_build"
    RESPONSE_ASSEMBLE = "response_assemble"
    CACHE_WRITE = "cache_write"
    DONE = "done"


def summarize_changes(changed_files: list[str]) -> dict[str, int]:
    """
    Counts changed files per content type.
    """
    return dict(Counter(content_type_of(path) for path in changed_files))


class UpdateOrchestrator:
    """
    Answers "is there an update for me?" for a scope and client version.

    Runs cache lookup, version check, change resolution, package build and
    response assembly in that order, caching the final response. Any error
    from a step aborts the request and propagates; nothing is cached for a
    failed request.
    """

    def __init__(
        self,
        clock: VersionClock,
        resolver: ContentDiffResolver,
        builder: PackageBuilder,
        cache: ResponseCache,
        download_url: str = "/api/v1/update/download",
        next_check_update_hours: float = 1,
        next_check_idle_hours: float = 6,
        workers: int = 10,
        now: Callable[[], datetime] = utc_now,
    ):
        self.clock = clock
        self.resolver = resolver
        self.builder = builder
        self.cache = cache
        self.download_url = download_url.rstrip("/")
        self.next_check_update = timedelta(hours=next_check_update_hours)
        self.next_check_idle = timedelta(hours=next_check_idle_hours)
        self.now = now
        self.workers = workers
        self.executor: ThreadPoolExecutor | None = None

    def _enter(self, state: PipelineState, scope: RegionScope, version: str):
        logger.debug(f"[{scope} {version}] {state.value}")

    def check_update(
        self,
        scope: RegionScope,
        current_version: str,
        accept_language: str | None = None,
    ) -> UpdateResponse:
        """
        Returns the update response for a client at current_version.
        """
        self._enter(PipelineState.CACHE_CHECK, scope, current_version)
        cached = self.cache.get_update_response(scope, current_version)
        if cached is not None:
            logger.debug(f"Returning cached response for {scope} {current_version}")
            return cached

        self._enter(PipelineState.VERSION_CHECK, scope, current_version)
        latest_version = self.clock.latest_version(scope)
        if not self.clock.is_newer(latest_version, current_version):
            self._enter(PipelineState.NO_UPDATE, scope, current_version)
            response = UpdateResponse(
                has_updates=False,
                latest_version=current_version,
                message="No updates available",
                next_check_time=self.now() + self.next_check_idle,
            )
        else:
            response = self._build_update(scope, current_version, latest_version)

        self._enter(PipelineState.CACHE_WRITE, scope, current_version)
        # A new version issued meanwhile has already evicted this scope
        if self.clock.latest_version(scope) == latest_version:
            self.cache.put_update_response(scope, current_version, response)
        else:
            logger.debug(f"Version for {scope} moved during check; not caching")
        self._enter(PipelineState.DONE, scope, current_version)
        return response

    def _build_update(
        self, scope: RegionScope, current_version: str, latest_version: str
    ) -> UpdateResponse:
        self._enter(PipelineState.DIFF_RESOLVE, scope, current_version)
        changed_files = self.resolver.changed_files(
            scope, current_version, latest_version
        )

        self._enter(PipelineState.PACKAGE_BUILD, scope, current_version)
        package = self.builder.build(
            scope, current_version, latest_version, changed_files
        )

        self._enter(PipelineState.RESPONSE_ASSEMBLE, scope, current_version)
        logger.info(
            f"Update available for {scope}: {current_version} -> {latest_version} "
            f"({len(changed_files)} files)"
        )
        return UpdateResponse(
            has_updates=True,
            latest_version=latest_version,
            download_url=self.download_url_for(latest_version, scope),
            package_size=package.size,
            checksum=package.checksum,
            changed_files=changed_files,
            changes_summary=summarize_changes(changed_files),
            release_date=self.clock.release_date(latest_version),
            release_notes=self.clock.release_notes(latest_version),
            message="Update available",
            mandatory=self.clock.is_mandatory(current_version, latest_version),
            next_check_time=self.now() + self.next_check_update,
        )

    def download_url_for(self, version: str, scope: RegionScope) -> str:
        query = {"countryCode": scope.country_code}
        if not scope.is_national:
            query["regionCode"] = scope.region_code
        return f"{self.download_url}/{version}?{urlencode(query)}"

    def download_package(self, version: str, scope: RegionScope) -> PackageHandle:
        """
        Looks up an already-built package; raises NotFoundError if missing.
        """
        return self.builder.retrieve(version, scope)

    def service_version(self) -> str:
        try:
            return metadata.version("tidings")
        except metadata.PackageNotFoundError:
            return SERVICE_VERSION_FALLBACK

    ### Worker pool ###

    def submit_check(
        self,
        scope: RegionScope,
        current_version: str,
        accept_language: str | None = None,
    ) -> Future[UpdateResponse]:
        """
        Runs check_update on the bounded worker pool.
        """
        if self.executor is None:
            self.executor = ThreadPoolExecutor(
                max_workers=self.workers, thread_name_prefix="update-worker"
            )
        return self.executor.submit(
            self.check_update, scope, current_version, accept_language
        )

    def shutdown(self, wait: bool = True) -> None:
        if self.executor is not None:
            self.executor.shutdown(wait=wait)
            self.executor = None
