import logging
from pathlib import Path
from typing import Annotated, Any

import yaml
from pydantic import AfterValidator, BaseModel, Field, field_validator

from tidings.api import UpdateApi
from tidings.cache import DEFAULT_TTLS, ResponseCache
from tidings.collectors import inbox, sample  # noqa: F401 (registers collector types)
from tidings.collectors.base import BaseCollector
from tidings.collectors.schedule import CronSchedule
from tidings.collectors.scheduler import CollectorScheduler
from tidings.database import ContentStore
from tidings.datastore import ExpiringDatastore, ReleaseMetadata, VersionTimeline
from tidings.diff import ContentDiffResolver
from tidings.events import EventBus
from tidings.orchestrator import UpdateOrchestrator
from tidings.packages import PackageBuilder
from tidings.types import RegionScope
from tidings.versioning import VersionClock

logger = logging.getLogger(__name__)

ExpandedPath = Annotated[Path, AfterValidator(lambda v: v.expanduser())]

META_DIRECTORY = ".tidings"

DEFAULT_CONFIG = """\
paths:
  content: content
  packages: packages

update:
  compression_level: 6
  download_url: /api/v1/update/download

cache:
  enabled: true
  shared: true

cleanup:
  max_age_days: 7
  archive_after_days: 30

collectors:
  news:
    type: news
    schedule: "0 */30 * * * *"
    scopes: ["FR", "FR:IDF", "US", "GB", "DE"]
  weather:
    type: weather
    schedule: "0 */15 * * * *"
    scopes: ["FR", "FR:IDF", "US", "GB", "DE"]
    options:
      cities:
        "FR:national": Paris
        "FR:IDF": Paris
        "US:national": New York
        "GB:national": London
        "DE:national": Berlin
"""


class PathsSchema(BaseModel):

    content: ExpandedPath = Path("content")
    packages: ExpandedPath = Path("packages")


class UpdateSchema(BaseModel):

    compression_level: int = Field(default=6, ge=0, le=9)
    max_package_size: int | None = 50 * 1024 * 1024
    download_url: str = "/api/v1/update/download"
    next_check_update_hours: float = 1
    next_check_idle_hours: float = 6
    workers: int = Field(default=10, ge=1)


class CacheSchema(BaseModel):

    enabled: bool = True
    memory_max_entries: int = Field(default=1000, ge=1)
    memory_ttl: float | None = 1800
    shared: bool = True
    ttls: dict[str, int] = {}

    @field_validator("ttls")
    @classmethod
    def lowercase_kinds(cls, value: dict[str, int]) -> dict[str, int]:
        return {kind.lower(): ttl for kind, ttl in value.items()}


class CleanupSchema(BaseModel):

    max_age_days: float = 7
    interval: float = 3600
    archive_after_days: float = 30


class CollectorSchema(BaseModel):

    type: str
    name: str | None = None
    enabled: bool = True
    schedule: str | None = None
    scopes: list[str] = []
    options: dict[str, Any] = {}

    @field_validator("schedule")
    @classmethod
    def valid_cron(cls, value: str | None) -> str | None:
        if value:
            CronSchedule(value)
        return value

    @field_validator("type")
    @classmethod
    def known_type(cls, value: str) -> str:
        BaseCollector.implementation_get(value)
        return value


class ConfigSchema(BaseModel):

    paths: PathsSchema = PathsSchema()
    update: UpdateSchema = UpdateSchema()
    cache: CacheSchema = CacheSchema()
    cleanup: CleanupSchema = CleanupSchema()
    collectors: dict[str, CollectorSchema] = {}


class Config:
    """
    Config file parser, and owner of every long-lived service object.
    """

    def __init__(self, root_path: Path, config_data: ConfigSchema | None = None):
        # Calculate paths
        self.root_path = root_path.resolve()
        self.meta_path = self.root_path / META_DIRECTORY
        self.config_path = self.meta_path / "config"
        self.datastore_path = self.meta_path / "datastore"
        self.database_path = self.meta_path / "content.sqlite3"

        # Read main config in, unless we were handed one
        if config_data is None:
            with open(self.config_path) as fh:
                config_data = ConfigSchema(**(yaml.safe_load(fh.read()) or {}))
        self.config_data = config_data
        self.meta_path.mkdir(parents=True, exist_ok=True)
        self.content_path = self.root_path / config_data.paths.content
        self.packages_path = self.root_path / config_data.paths.packages

        # Set up datastores
        self.versions = VersionTimeline(self.datastore_path / "versions")
        self.releases = ReleaseMetadata(self.datastore_path / "releases")
        self.shared_cache = (
            ExpiringDatastore(self.datastore_path / "cache")
            if config_data.cache.shared
            else None
        )

        # Set up the pipeline
        self.events = EventBus()
        self.store = ContentStore(self.database_path, self.content_path)
        self.cache = ResponseCache(
            shared=self.shared_cache,
            ttls={**DEFAULT_TTLS, **config_data.cache.ttls},
            memory_max_entries=config_data.cache.memory_max_entries,
            memory_ttl=config_data.cache.memory_ttl,
            events=self.events,
            enabled=config_data.cache.enabled,
        )
        self.version_clock = VersionClock(self.versions, self.releases)
        self.resolver = ContentDiffResolver(self.store, self.cache)
        self.builder = PackageBuilder(
            self.packages_path,
            self.store,
            compression_level=config_data.update.compression_level,
            max_package_size=config_data.update.max_package_size,
        )
        self.orchestrator = UpdateOrchestrator(
            self.version_clock,
            self.resolver,
            self.builder,
            self.cache,
            download_url=config_data.update.download_url,
            next_check_update_hours=config_data.update.next_check_update_hours,
            next_check_idle_hours=config_data.update.next_check_idle_hours,
            workers=config_data.update.workers,
        )
        self.api = UpdateApi(self.orchestrator)

        # Set up collector class instances
        self.collectors = []
        for id, collector_config in config_data.collectors.items():
            collector_class = BaseCollector.implementation_get(collector_config.type)
            collector = collector_class(
                id=id,
                name=collector_config.name,
                schedule=collector_config.schedule,
                enabled=collector_config.enabled,
                scopes=[RegionScope.from_key(s) for s in collector_config.scopes],
                **collector_config.options,
            )
            if collector.enabled and not collector.validate_configuration():
                logger.warning(f"Collector {id} is misconfigured; disabling it")
                collector.enabled = False
            self.collectors.append(collector)
        self.scheduler = CollectorScheduler(
            self.collectors,
            self.store,
            self.version_clock,
            self.cache,
            events=self.events,
        )

    @classmethod
    def initialize(cls, root_path: Path) -> Path:
        """
        Writes a default config file under root_path, returning its path.
        Refuses to overwrite an existing one.
        """
        config_path = root_path.resolve() / META_DIRECTORY / "config"
        if config_path.exists():
            raise FileExistsError(f"Config already exists at {config_path}")
        config_path.parent.mkdir(parents=True, exist_ok=True)
        config_path.write_text(DEFAULT_CONFIG)
        return config_path

    @classmethod
    def find_root(cls, path: Path) -> Path:
        """
        Walks up from path until a directory holding our meta directory is
        found.
        """
        path = path.resolve()
        while not (path / META_DIRECTORY).is_dir():
            # Check if we've reached the root directory
            if path.parent == path:
                raise ValueError("No Tidings root found in directory hierarchy")
            path = path.parent
        return path

    def close(self):
        self.scheduler.stop()
        self.orchestrator.shutdown()
        self.versions.close()
        self.releases.close()
        if self.shared_cache is not None:
            self.shared_cache.close()
