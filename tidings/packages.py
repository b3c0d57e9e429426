import hashlib
import logging
import os
import tempfile
import threading
import time
import zipfile
from collections.abc import Callable, Iterable
from datetime import UTC, datetime
from pathlib import Path

from tidings.constants import (
    CHECKSUM_SUFFIX,
    COPY_CHUNK_SIZE,
    MANIFEST_HEADER,
    MANIFEST_NAME,
    PACKAGE_SUFFIX,
)
from tidings.database import ContentStore
from tidings.errors import BuildError, NotFoundError
from tidings.types import PackageHandle, RegionScope
from tidings.versioning import utc_now

logger = logging.getLogger(__name__)

PARTIAL_SUFFIX = ".partial"


def package_filename(scope: RegionScope, version: str) -> str:
    region_part = "" if scope.is_national else f"-{scope.region_code.lower()}"
    return f"update-{scope.country_code.lower()}{region_part}-{version}{PACKAGE_SUFFIX}"


def parse_package_filename(name: str) -> tuple[RegionScope, str] | None:
    """
    Reverses package_filename; returns None for names it didn't make.
    """
    if not name.startswith("update-") or not name.endswith(PACKAGE_SUFFIX):
        return None
    parts = name[len("update-") : -len(PACKAGE_SUFFIX)].split("-")
    if len(parts) == 2:
        return RegionScope(parts[0]), parts[1]
    if len(parts) == 3:
        return RegionScope(parts[0], parts[1]), parts[2]
    return None


def format_instant(moment: datetime) -> str:
    """
    ISO-8601 UTC instant with a Z suffix, e.g. 2024-03-02T10:15:30.123Z
    """
    moment = moment.astimezone(UTC)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def build_manifest(
    scope: RegionScope,
    from_version: str,
    to_version: str,
    created: datetime,
    files: list[str],
) -> str:
    lines = [
        MANIFEST_HEADER,
        f"version={to_version}",
        f"country={scope.country_code}",
        f"region={scope.region_token}",
        f"from_version={from_version}",
        f"created={format_instant(created)}",
        f"file_count={len(files)}",
        "",
        "# Changed Files:",
    ]
    lines.extend(files)
    return "\n".join(lines) + "\n"


def read_manifest(package_path: Path) -> tuple[dict[str, str], list[str]]:
    """
    Reads MANIFEST.txt out of a package, returning its key/value header and
    its file list.
    """
    with zipfile.ZipFile(package_path) as archive:
        text = archive.read(MANIFEST_NAME).decode("utf-8")
    header_text, _, files_text = text.partition("\n# Changed Files:\n")
    header: dict[str, str] = {}
    for line in header_text.splitlines():
        key, sep, value = line.partition("=")
        if sep:
            header[key] = value
    return header, [line for line in files_text.splitlines() if line]


def sha256_file(path: Path) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as fh:
        while chunk := fh.read(COPY_CHUNK_SIZE):
            digest.update(chunk)
    return digest.hexdigest()


class PackageBuilder:
    """
    Builds and finds update packages: zip archives holding a manifest and the
    content files that changed for a scope.

    There is at most one package per (scope, target version); building one
    that already exists returns the existing file untouched. Packages are
    written to a temporary name and only moved into place once complete, so
    a failed or abandoned build never leaves a partial file under the final
    name. Within one process, builds of the same package are serialised by a
    lock; across processes, promotion refuses to overwrite an existing
    package, so the first finished build wins.
    """

    def __init__(
        self,
        package_root: Path,
        store: ContentStore,
        compression_level: int = 6,
        max_package_size: int | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.package_root = package_root
        self.store = store
        self.compression_level = compression_level
        self.max_package_size = max_package_size
        self.clock = clock
        self.build_locks: dict[str, threading.Lock] = {}
        self.build_locks_lock = threading.Lock()

    def package_path(self, scope: RegionScope, version: str) -> Path:
        return self.package_root / package_filename(scope, version)

    def _checksum_path(self, package_path: Path) -> Path:
        return package_path.with_name(package_path.name + CHECKSUM_SUFFIX)

    def _lock_for(self, identity: str) -> threading.Lock:
        with self.build_locks_lock:
            return self.build_locks.setdefault(identity, threading.Lock())

    def _handle_for(
        self, path: Path, scope: RegionScope, version: str
    ) -> PackageHandle | None:
        """
        Returns a handle for an existing package, or None if there isn't one.
        The checksum comes from the sidecar written at build time; it is only
        recomputed if the sidecar is missing.
        """
        try:
            size = path.stat().st_size
        except FileNotFoundError:
            return None
        checksum_path = self._checksum_path(path)
        try:
            checksum = checksum_path.read_text().strip()
        except FileNotFoundError:
            checksum = ""
        if len(checksum) != 64:
            checksum = sha256_file(path)
            self._write_checksum(path, checksum)
        return PackageHandle(
            path=path, size=size, checksum=checksum, version=version, scope=scope
        )

    def _write_checksum(self, package_path: Path, checksum: str) -> None:
        checksum_path = self._checksum_path(package_path)
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{checksum_path.name}.", suffix=PARTIAL_SUFFIX, dir=self.package_root
        )
        try:
            with os.fdopen(fd, "w") as fh:
                fh.write(checksum + "\n")
            os.replace(tmp_name, checksum_path)
        except OSError:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    ### Building ###

    def build(
        self,
        scope: RegionScope,
        from_version: str,
        to_version: str,
        change_set: Iterable[str],
        created: datetime | None = None,
    ) -> PackageHandle:
        """
        Builds (or reuses) the package for a scope and target version.

        The archive holds MANIFEST.txt first, then each distinct path of the
        change set in order. Paths missing from the content store are skipped
        with a warning. Raises BuildError if the archive can't be written.
        """
        path = self.package_path(scope, to_version)
        existing = self._handle_for(path, scope, to_version)
        if existing is not None:
            logger.info(f"Package already exists: {path}")
            return existing
        with self._lock_for(path.name):
            # Someone may have finished it while we waited
            existing = self._handle_for(path, scope, to_version)
            if existing is not None:
                logger.info(f"Package already exists: {path}")
                return existing
            return self._build_new(
                path, scope, from_version, to_version, change_set, created
            )

    def _build_new(
        self,
        path: Path,
        scope: RegionScope,
        from_version: str,
        to_version: str,
        change_set: Iterable[str],
        created: datetime | None,
    ) -> PackageHandle:
        files = list(dict.fromkeys(change_set))
        created = created or self.clock()
        # Every entry gets the same timestamp so identical inputs make identical bytes
        date_time = created.astimezone(UTC).timetuple()[:6]
        try:
            self.package_root.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{path.name}.", suffix=PARTIAL_SUFFIX, dir=self.package_root
            )
        except OSError as e:
            raise BuildError(f"Cannot create package in {self.package_root}: {e}") from e
        tmp_path = Path(tmp_name)
        try:
            included = 0
            with os.fdopen(fd, "wb") as fh:
                with zipfile.ZipFile(fh, "w") as archive:
                    manifest = build_manifest(
                        scope, from_version, to_version, created, files
                    )
                    self._add_entry(archive, MANIFEST_NAME, manifest.encode("utf-8"), date_time)
                    for file_path in files:
                        disk_path = self.store.disk_path(file_path)
                        if disk_path is None or not disk_path.is_file():
                            logger.warning(f"File not found, skipping: {file_path}")
                            continue
                        self._add_entry(
                            archive, file_path.lstrip("/"), disk_path.read_bytes(), date_time
                        )
                        included += 1
                        if (
                            self.max_package_size is not None
                            and fh.tell() > self.max_package_size
                        ):
                            raise BuildError(
                                f"Package {path.name} exceeds {self.max_package_size} bytes"
                            )
            size = tmp_path.stat().st_size
            checksum = sha256_file(tmp_path)
            promoted = self._promote(tmp_path, path)
        except BuildError:
            tmp_path.unlink(missing_ok=True)
            raise
        except (OSError, ValueError, zipfile.BadZipFile, zipfile.LargeZipFile) as e:
            tmp_path.unlink(missing_ok=True)
            logger.error(f"Error creating update package {path}: {e}")
            raise BuildError(f"Failed to create update package {path.name}: {e}") from e

        if not promoted:
            logger.info(f"Package {path} was built concurrently elsewhere; using that")
            existing = self._handle_for(path, scope, to_version)
            if existing is None:
                raise BuildError(f"Package {path.name} vanished after concurrent build")
            return existing
        try:
            self._write_checksum(path, checksum)
        except OSError as e:
            # The package is fine; the checksum will be recomputed on next use
            logger.warning(f"Could not write checksum for {path}: {e}")
        logger.info(
            f"Created update package: {path} with {included}/{len(files)} files"
        )
        return PackageHandle(
            path=path,
            size=size,
            checksum=checksum,
            version=to_version,
            scope=scope,
            file_count=included,
        )

    def _add_entry(
        self,
        archive: zipfile.ZipFile,
        name: str,
        data: bytes,
        date_time: tuple[int, ...],
    ) -> None:
        info = zipfile.ZipInfo(name, date_time=date_time)
        info.external_attr = 0o644 << 16
        archive.writestr(
            info,
            data,
            compress_type=zipfile.ZIP_DEFLATED,
            compresslevel=self.compression_level,
        )

    def _promote(self, tmp_path: Path, path: Path) -> bool:
        """
        Moves a finished archive to its final name without ever replacing an
        existing package. Returns False if one was already there.
        """
        try:
            os.link(tmp_path, path)
        except FileExistsError:
            tmp_path.unlink(missing_ok=True)
            return False
        except OSError:
            # Filesystem without hard links; fall back to a plain atomic rename
            if path.exists():
                tmp_path.unlink(missing_ok=True)
                return False
            os.replace(tmp_path, path)
            return True
        tmp_path.unlink(missing_ok=True)
        return True

    ### Retrieval and housekeeping ###

    def retrieve(self, version: str, scope: RegionScope) -> PackageHandle:
        """
        Finds the package for a version and scope. Raises NotFoundError if it
        is absent or unreadable.
        """
        path = self.package_path(scope, version)
        if not path.is_file() or not os.access(path, os.R_OK):
            raise NotFoundError(f"Could not read update package: {path.name}")
        try:
            handle = self._handle_for(path, scope, version)
        except OSError as e:
            raise NotFoundError(f"Could not read update package: {path.name}") from e
        if handle is None:
            raise NotFoundError(f"Could not read update package: {path.name}")
        return handle

    def list_packages(self) -> list[tuple[Path, int, float]]:
        """
        Returns (path, size, mtime) for every package on disk, newest first.
        """
        if not self.package_root.is_dir():
            return []
        result = []
        for path in self.package_root.glob(f"*{PACKAGE_SUFFIX}"):
            try:
                stat_result = path.stat()
            except OSError:
                continue
            result.append((path, stat_result.st_size, stat_result.st_mtime))
        result.sort(key=lambda entry: entry[2], reverse=True)
        return result

    def cleanup(self, max_age_days: float) -> int:
        """
        Deletes packages (and their checksum files and any abandoned partial
        builds) not modified for max_age_days. Failures on single files are
        logged and skipped. Returns how many packages were deleted.
        """
        if not self.package_root.is_dir():
            return 0
        cutoff = time.time() - max_age_days * 24 * 60 * 60
        deleted = 0
        for directory, _, filenames in self.package_root.walk():
            for filename in filenames:
                if not filename.endswith((PACKAGE_SUFFIX, PARTIAL_SUFFIX)):
                    continue
                path = directory / filename
                try:
                    if path.stat().st_mtime >= cutoff:
                        continue
                    path.unlink()
                    if filename.endswith(PACKAGE_SUFFIX):
                        self._checksum_path(path).unlink(missing_ok=True)
                        deleted += 1
                    logger.info(f"Deleted old package: {path}")
                except OSError as e:
                    logger.warning(f"Could not delete old package {path}: {e}")
        return deleted
