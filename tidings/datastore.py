import fnmatch
import time
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Generic, TypeVar, cast

import lmdb
import msgpack

from tidings.types import CacheEntry, RegionScope

T = TypeVar("T")


class DiskDatastore(Generic[T]):
    """
    A generic key-value store backed by LMDB.

    Keys are strings (encoded as UTF-8), values are serialized with msgpack.
    LMDB serializes write transactions across threads and processes, so
    several service instances can share one environment directory.
    """

    def __init__(self, path: Path, map_size: int = 1024 * 1024 * 1024):
        """
        Initialize the datastore.

        Args:
            path: Path to the LMDB environment directory.
            map_size: Maximum size of the database in bytes (default 1GB).
        """
        self.path = path
        path.mkdir(parents=True, exist_ok=True)
        self.env = lmdb.open(str(path), map_size=map_size)

    def _validate_key(self, key: str):
        pass

    def get(self, key: str, default: T | None = None) -> T | None:
        """
        Get a value by key, returning default if not found.
        """
        with self.env.begin() as txn:
            value = txn.get(key.encode("utf-8"))
            if value is None:
                return default
            return cast(T, msgpack.unpackb(value))

    def set(self, key: str, value: T) -> None:
        """
        Set a value and persist to disk.
        """
        self._validate_key(key)
        with self.env.begin(write=True) as txn:
            txn.put(key.encode("utf-8"), msgpack.packb(value))

    def set_default(self, key: str, value: T) -> T:
        """
        Stores value only if key is absent, returning whatever is stored
        afterwards. Atomic across processes.
        """
        self._validate_key(key)
        encoded_key = key.encode("utf-8")
        with self.env.begin(write=True) as txn:
            existing = txn.get(encoded_key)
            if existing is not None:
                return cast(T, msgpack.unpackb(existing))
            txn.put(encoded_key, msgpack.packb(value))
            return value

    def update(self, key: str, func: Callable[[T | None], T]) -> T:
        """
        Replaces the value at key with func(old_value) inside a single write
        transaction, so concurrent updaters never lose each other's writes.
        """
        self._validate_key(key)
        encoded_key = key.encode("utf-8")
        with self.env.begin(write=True) as txn:
            existing = txn.get(encoded_key)
            old = None if existing is None else cast(T, msgpack.unpackb(existing))
            new = func(old)
            txn.put(encoded_key, msgpack.packb(new))
            return new

    def delete(self, key: str) -> None:
        """
        Delete a key. Raises KeyError if not found.
        """
        self._validate_key(key)
        with self.env.begin(write=True) as txn:
            if not txn.delete(key.encode("utf-8")):
                raise KeyError(key)

    def __getitem__(self, key: str) -> T:
        with self.env.begin() as txn:
            value = txn.get(key.encode("utf-8"))
            if value is None:
                raise KeyError(key)
            return cast(T, msgpack.unpackb(value))

    def __setitem__(self, key: str, value: T) -> None:
        self.set(key, value)

    def items(self) -> Iterator[tuple[str, T]]:
        with self.env.begin() as txn:
            cursor = txn.cursor()
            for key, value in cursor:
                yield key.decode("utf-8"), cast(T, msgpack.unpackb(value))

    def clear(self) -> None:
        """
        Removes every key.
        """
        with self.env.begin(write=True) as txn:
            txn.drop(self.env.open_db(), delete=False)

    def __len__(self) -> int:
        with self.env.begin() as txn:
            return txn.stat()["entries"]

    def close(self) -> None:
        self.env.close()


class ExpiringDatastore(DiskDatastore[CacheEntry]):
    """
    Storage for the shared cache tier. Each value is stored alongside the
    wall-clock time it stops being valid; expired entries read as missing and
    are removed lazily.
    """

    def get_live(self, key: str, now: float | None = None) -> CacheEntry | None:
        """
        Returns the stored entry for key, or None if absent or expired.
        """
        entry = self.get(key)
        if entry is None:
            return None
        if entry["expires"] <= (now or time.time()):
            try:
                self.delete(key)
            except KeyError:
                pass
            return None
        return entry

    def put(self, key: str, value, ttl: float, now: float | None = None) -> None:
        self.set(key, {"expires": (now or time.time()) + ttl, "value": value})

    def delete_matching(self, pattern: str) -> int:
        """
        Deletes all keys matching the glob-style pattern, returning how many
        were removed.
        """
        removed = 0
        with self.env.begin(write=True) as txn:
            cursor = txn.cursor()
            doomed = [
                key
                for key, _ in cursor
                if fnmatch.fnmatchcase(key.decode("utf-8"), pattern)
            ]
            for key in doomed:
                if txn.delete(key):
                    removed += 1
        return removed

    def purge_expired(self, now: float | None = None) -> int:
        now = now or time.time()
        removed = 0
        with self.env.begin(write=True) as txn:
            cursor = txn.cursor()
            doomed = [
                key
                for key, value in cursor
                if msgpack.unpackb(value)["expires"] <= now
            ]
            for key in doomed:
                if txn.delete(key):
                    removed += 1
        return removed


class VersionTimeline(DiskDatastore[str]):
    """
    Storage of the current version per region scope, keyed by scope key
    (e.g. "FR:IDF" or "US:national").
    """

    def _validate_key(self, key: str):
        country, sep, region = key.partition(":")
        if not sep or len(country) != 2 or not region:
            raise ValueError(f"Timeline keys must be scope keys, not {key!r}")

    def scopes(self) -> Iterator[tuple[RegionScope, str]]:
        for key, version in self.items():
            yield RegionScope.from_key(key), version


class ReleaseMetadata(DiskDatastore[dict]):
    """
    Storage of per-version release metadata: {"date": iso8601, "notes": str}.

    Either field may be missing until it is first asked for or set.
    """

    def set_field(self, version: str, field: str, value: str) -> None:
        def merge(old: dict | None) -> dict:
            merged = dict(old or {})
            merged[field] = value
            return merged

        self.update(version, merge)

    def set_field_default(self, version: str, field: str, value: str) -> str:
        """
        Stores value under field unless one is already present; returns the
        stored value.
        """
        result: dict = {}

        def merge(old: dict | None) -> dict:
            merged = dict(old or {})
            merged.setdefault(field, value)
            result.update(merged)
            return merged

        self.update(version, merge)
        return result[field]
