import logging
import re
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from tidings.constants import VERSION_FORMAT
from tidings.datastore import ReleaseMetadata, VersionTimeline
from tidings.errors import VersionParseError
from tidings.types import RegionScope

logger = logging.getLogger(__name__)

SEGMENT_RE = re.compile(r"[0-9]+")

DEFAULT_RELEASE_NOTES = (
    "Automatic content update - version {version}\n"
    "- Refreshed weather data\n"
    "- New news available\n"
    "- Performance improvements"
)


def utc_now() -> datetime:
    return datetime.now(UTC)


def parse_version(version: str | None) -> tuple[int, ...]:
    """
    Splits a dotted version into its integer segments.

    Raises VersionParseError if the version is empty or any segment is not a
    plain non-negative integer.
    """
    if not version:
        raise VersionParseError(f"Empty version: {version!r}")
    segments = version.split(".")
    for segment in segments:
        if not SEGMENT_RE.fullmatch(segment):
            raise VersionParseError(f"Invalid version segment {segment!r} in {version!r}")
    return tuple(int(segment) for segment in segments)


def version_period(version: str) -> tuple[datetime, datetime]:
    """
    Returns the [start, end) span of time a date-shaped version denotes.

    "2024.03.02.10" covers that hour, "2024.03.02" that day, "2024.03" that
    month and "2024" that year. Build counters after the hour are ignored.
    Raises VersionParseError if the segments do not form a valid date.
    """
    segments = parse_version(version)
    try:
        if len(segments) >= 4:
            start = datetime(*segments[:4], tzinfo=UTC)
            return start, start + timedelta(hours=1)
        if len(segments) == 3:
            start = datetime(*segments, tzinfo=UTC)
            return start, start + timedelta(days=1)
        if len(segments) == 2:
            year, month = segments
            start = datetime(year, month, 1, tzinfo=UTC)
            if month == 12:
                return start, datetime(year + 1, 1, 1, tzinfo=UTC)
            return start, datetime(year, month + 1, 1, tzinfo=UTC)
        start = datetime(segments[0], 1, 1, tzinfo=UTC)
        return start, datetime(segments[0] + 1, 1, 1, tzinfo=UTC)
    except (ValueError, OverflowError) as e:
        raise VersionParseError(f"Version {version!r} is not a date: {e}") from e


class VersionClock:
    """
    Issues and compares versions for each region scope.

    Each scope has its own timeline. The current version of a scope lives in
    a durable datastore, so restarts and sibling processes agree on it.
    """

    def __init__(
        self,
        timeline: VersionTimeline,
        releases: ReleaseMetadata,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.timeline = timeline
        self.releases = releases
        self.clock = clock

    ### Comparison ###

    def is_newer(self, version1: str | None, version2: str | None) -> bool:
        """
        Returns True if version1 is strictly newer than version2.

        Segments compare numerically, left to right; if all shared segments
        are equal, the version with more segments is newer. Anything that
        does not parse is never newer.
        """
        try:
            return parse_version(version1) > parse_version(version2)
        except VersionParseError as e:
            logger.warning(f"Error comparing versions {version1} and {version2}: {e}")
            return False

    def is_mandatory(self, current: str | None, latest: str | None) -> bool:
        """
        An update is mandatory when the latest version moves to a later year,
        or a later month in the same year.
        """
        try:
            current_parts = parse_version(current)
            latest_parts = parse_version(latest)
        except VersionParseError as e:
            logger.warning(
                f"Error determining mandatory update for {current} and {latest}: {e}"
            )
            return False
        if len(current_parts) < 2 or len(latest_parts) < 2:
            return False
        return latest_parts[:2] > current_parts[:2]

    ### Issuing ###

    def generate_version(self, now: datetime | None = None) -> str:
        return (now or self.clock()).strftime(VERSION_FORMAT)

    def generate_version_with_build(
        self, build_number: int, now: datetime | None = None
    ) -> str:
        return f"{(now or self.clock()):%Y.%m.%d}.{build_number:03d}"

    def latest_version(self, scope: RegionScope) -> str:
        """
        Returns the current version for a scope, creating it from the
        current hour if the scope has never been asked about.
        """
        version = self.timeline.set_default(scope.key, self.generate_version())
        logger.debug(f"Latest version for {scope}: {version}")
        return version

    def update_version(self, scope: RegionScope, version: str) -> None:
        """
        Sets the current version of a scope explicitly.
        """
        parse_version(version)
        old_version = self.timeline.get(scope.key)
        self.timeline[scope.key] = version
        logger.info(f"Version updated for {scope}: {old_version} -> {version}")

    def advance(self, scope: RegionScope) -> str:
        """
        Issues a new version for the scope that is guaranteed to be newer
        than its current one, and returns it.

        Normally that is the current hour; if the scope already has that
        hour (or something later), a build counter is added or incremented.
        """
        now = self.clock()
        candidate = self.generate_version(now)
        previous: list[str | None] = [None]

        def next_version(old: str | None) -> str:
            previous[0] = old
            if old is None or self.is_newer(candidate, old):
                return candidate
            segments = list(parse_version(old))
            if len(segments) >= 5:
                segments[4] += 1
                segments = segments[:5]
            else:
                segments = segments[:4] + [0] * (4 - len(segments)) + [1]
            return ".".join(
                [f"{segments[0]:04d}"]
                + [f"{s:02d}" for s in segments[1:4]]
                + [f"{segments[4]:03d}"]
            )

        version = self.timeline.update(scope.key, next_version)
        logger.info(f"Version advanced for {scope}: {previous[0]} -> {version}")
        return version

    ### Release metadata ###

    def release_date(self, version: str) -> datetime:
        """
        Returns the release date of a version: its own date segments when it
        has at least three, otherwise the first time anyone asked.
        """
        try:
            release = version_period(version)[0]
            if len(parse_version(version)) < 3:
                raise VersionParseError("Too few segments for a release date")
        except VersionParseError as e:
            logger.warning(f"Could not parse release date from version {version}: {e}")
            release = self.clock()
        stored = self.releases.set_field_default(version, "date", release.isoformat())
        return datetime.fromisoformat(stored)

    def release_notes(self, version: str) -> str:
        return self.releases.set_field_default(
            version, "notes", DEFAULT_RELEASE_NOTES.format(version=version)
        )

    def set_release_notes(self, version: str, notes: str) -> None:
        self.releases.set_field(version, "notes", notes)
        logger.info(f"Release notes set for version {version}")
