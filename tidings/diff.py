import logging
from datetime import UTC, datetime

from tidings.cache import ResponseCache
from tidings.database import ContentStore
from tidings.errors import VersionParseError
from tidings.types import RegionScope
from tidings.versioning import version_period

logger = logging.getLogger(__name__)

BEGINNING_OF_TIME = datetime(1970, 1, 1, tzinfo=UTC)


class ContentDiffResolver:
    """
    Works out which content files changed between two versions of a scope.

    Versions are timestamps, so "changed" here means "published in the span
    of time between the two versions"; publication times are independent of
    version issue times, so this can over- or under-report. Nothing here
    tracks actual file mutations.
    """

    def __init__(self, store: ContentStore, cache: ResponseCache):
        self.store = store
        self.cache = cache

    def date_window(
        self, from_version: str, to_version: str
    ) -> tuple[datetime, datetime]:
        """
        Returns the [from, to) publication window for two versions: from the
        start of the period the old version denotes to the end of the period
        the new one denotes.

        An old version that isn't a date (e.g. a client's "1.0.0") means the
        client has nothing yet, so the window opens at the epoch. A new
        version that isn't a date closes the window now.
        """
        try:
            from_date = version_period(from_version)[0]
        except VersionParseError:
            from_date = BEGINNING_OF_TIME
        try:
            to_date = version_period(to_version)[1]
        except VersionParseError:
            to_date = datetime.now(UTC)
        return from_date, to_date

    def changed_files(
        self,
        scope: RegionScope,
        from_version: str,
        to_version: str,
        content_type: str | None = None,
    ) -> list[str]:
        """
        Returns the content paths that changed between two versions for a
        scope. May contain duplicates; cached per (scope, from, to).
        """
        # Type-filtered lookups are rare and not worth a cache slot each
        use_cache = content_type is None
        if use_cache:
            cached = self.cache.get_changed_files(scope, from_version, to_version)
            if cached is not None:
                logger.debug(
                    f"Changed files for {scope} {from_version}->{to_version} from cache"
                )
                return cached
        from_date, to_date = self.date_window(from_version, to_version)
        changed = self.store.find_active_changed_files(
            content_type,
            scope.country_code,
            scope.region_code,
            from_date,
            to_date,
        )
        logger.debug(
            f"Resolved {len(changed)} changed files for {scope} "
            f"{from_version}->{to_version} ({from_date} to {to_date})"
        )
        if use_cache:
            self.cache.put_changed_files(scope, from_version, to_version, changed)
        return changed
