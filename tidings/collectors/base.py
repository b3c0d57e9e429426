import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import ClassVar

from tidings.cache import ResponseCache
from tidings.constants import CONTENT_PRIORITY
from tidings.database import ContentStore
from tidings.errors import CollectorError
from tidings.types import CollectorStats, RegionScope


@dataclass
class CollectedItem:
    """
    One piece of content a collector fetched, not yet stored.
    """

    filename: str
    data: bytes
    title: str | None = None
    tags: list[str] = field(default_factory=list)
    priority: CONTENT_PRIORITY = CONTENT_PRIORITY.NORMAL
    published_at: datetime | None = None
    # Where it came from on disk, if anywhere
    source: Path | None = None


class BaseCollector:
    """
    Root collector class. A collector fetches fresh content for each of its
    scopes and stores it in the content store.

    Implementations register themselves under their type aliases, so config
    can refer to them by name.
    """

    type_aliases: list[str] = []
    implementation_registry: ClassVar[dict[str, type["BaseCollector"]]] = {}

    # Content type segment its files are stored under
    content_type: str
    default_schedule: str | None = None

    def __init__(
        self,
        id: str,
        name: str | None = None,
        schedule: str | None = None,
        enabled: bool = True,
        scopes: list[RegionScope] | None = None,
    ):
        self.id = id
        self.name = name or id
        self.schedule = schedule or self.default_schedule
        self.enabled = enabled
        self.scopes = scopes or []
        self.logger = logging.getLogger(f"collector.{id}")

    def __init_subclass__(cls) -> None:
        if not cls.type_aliases:
            raise RuntimeError(
                "You must define at least one type alias per collector implementation"
            )
        for alias in cls.type_aliases:
            BaseCollector.implementation_registry[alias] = cls

    @classmethod
    def implementation_get(cls, alias: str) -> type["BaseCollector"]:
        try:
            return cls.implementation_registry[alias]
        except KeyError:
            raise ValueError(f"Unknown collector type: {alias}") from None

    @property
    def type(self) -> str:
        return self.type_aliases[0]

    def validate_configuration(self) -> bool:
        return bool(self.scopes)

    def fetch(self, scope: RegionScope) -> list[CollectedItem]:
        """
        Returns the new items for a scope. Raise on failure; the caller
        isolates failures per scope.
        """
        raise NotImplementedError()

    def stored(self, scope: RegionScope, items: list[CollectedItem]) -> None:
        """
        Called once a scope's items are safely in the content store.
        """

    def run(self, store: ContentStore, cache: ResponseCache | None = None) -> CollectorStats:
        """
        Fetches and stores content for every scope. A failing scope is
        logged and skipped; if every scope fails, raises CollectorError.
        """
        stats: CollectorStats = {"items": 0, "scopes": [], "failed_scopes": []}
        errors = []
        for scope in self.scopes:
            try:
                items = self.fetch(scope)
                for item in items:
                    store.save_content(
                        self.content_type,
                        scope,
                        item.filename,
                        item.data,
                        title=item.title,
                        tags=item.tags,
                        priority=item.priority,
                        published_at=item.published_at,
                    )
                self.stored(scope, items)
            except Exception as e:
                self.logger.warning(f"Error collecting {self.content_type} for {scope}: {e}")
                stats["failed_scopes"].append(scope.key)
                errors.append(f"{scope}: {e}")
                continue
            if items:
                stats["items"] += len(items)
                stats["scopes"].append(scope.key)
                if cache is not None:
                    cache.put_content(
                        self.content_type,
                        scope,
                        [{"title": item.title, "filename": item.filename} for item in items],
                    )
                self.logger.info(f"Collected {len(items)} {self.content_type} items for {scope}")
        if self.scopes and len(errors) == len(self.scopes):
            raise CollectorError(f"All scopes failed: {'; '.join(errors)}")
        return stats
