from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, TypedDict

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from tidings.constants import NATIONAL


@dataclass(frozen=True)
class RegionScope:
    """
    A country, optionally narrowed to one of its regions. A missing region
    means national scope.
    """

    country_code: str
    region_code: str | None = None

    def __post_init__(self):
        object.__setattr__(self, "country_code", self.country_code.upper())
        region = (self.region_code or "").strip().upper() or None
        object.__setattr__(self, "region_code", region)

    def __str__(self):
        return self.key

    @property
    def is_national(self) -> bool:
        return self.region_code is None

    @property
    def region_token(self) -> str:
        return self.region_code or NATIONAL

    @property
    def affected_scopes(self) -> list["RegionScope"]:
        """
        Scopes whose content includes this one: itself, plus its country
        when it is a region.
        """
        if self.is_national:
            return [self]
        return [self, RegionScope(self.country_code)]

    @property
    def key(self) -> str:
        return f"{self.country_code}:{self.region_token}"

    @classmethod
    def from_key(cls, key: str) -> "RegionScope":
        country, _, region = key.partition(":")
        if not region or region == NATIONAL:
            return cls(country)
        return cls(country, region)


@dataclass(frozen=True)
class PackageHandle:
    """
    A built update package on disk.
    """

    path: Path
    size: int
    checksum: str
    version: str
    scope: RegionScope
    file_count: int | None = None


class UpdateResponse(BaseModel):
    """
    What a client gets back from a check-update call. Also the cached value.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    has_updates: bool
    latest_version: str
    download_url: str | None = None
    package_size: int = 0
    checksum: str | None = None
    changed_files: list[str] = Field(default_factory=list)
    changes_summary: dict[str, int] = Field(default_factory=dict)
    release_date: datetime | None = None
    release_notes: str | None = None
    mandatory: bool = False
    message: str = ""
    next_check_time: datetime | None = None

    def to_json_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class CacheEntry(TypedDict):
    expires: float
    value: Any


class CollectorStats(TypedDict):
    items: int
    scopes: list[str]
    failed_scopes: list[str]


@dataclass
class CollectorStatus:
    """
    Runtime bookkeeping for one collector.
    """

    id: str
    name: str
    type: str
    enabled: bool
    schedule: str | None
    status: str
    message: str | None = None
    last_run: datetime | None = None
    next_run: datetime | None = None
    success_count: int = 0
    error_count: int = 0
    last_execution_ms: int = 0
    average_execution_ms: float = 0.0
    last_error: str | None = None
    scopes: list[str] = field(default_factory=list)

    def record_success(self, elapsed_ms: int, message: str):
        self.success_count += 1
        self.last_execution_ms = elapsed_ms
        # Running mean over successful runs
        self.average_execution_ms += (
            elapsed_ms - self.average_execution_ms
        ) / self.success_count
        self.last_error = None
        self.message = message

    def record_error(self, error: str):
        self.error_count += 1
        self.last_error = error
        self.message = f"Collection failed: {error}"

    def as_dict(self) -> dict[str, Any]:
        result = asdict(self)
        for key, value in result.items():
            if isinstance(value, datetime):
                result[key] = value.isoformat()
        return result
