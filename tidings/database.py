import hashlib
import logging
import os
import tempfile
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path

from sqlalchemy import Enum, Index, create_engine, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker

from tidings.constants import CONTENT_PRIORITY, CONTENT_STATUS, NATIONAL
from tidings.errors import UpstreamIOError
from tidings.types import RegionScope

logger = logging.getLogger(__name__)

COUNTRY_LANGUAGES = {
    "FR": "fr",
    "BE": "fr",
    "CH": "fr",
    "GB": "en",
    "US": "en",
    "ES": "es",
    "MX": "es",
    "AR": "es",
    "DE": "de",
    "AT": "de",
}


def language_for_country(country_code: str) -> str:
    return COUNTRY_LANGUAGES.get(country_code.upper(), "en")


def content_relative_path(content_type: str, scope: RegionScope, filename: str) -> str:
    """
    Works out where a content file lives under the content root:
    {country}/national/{type}/{name} or {country}/regions/{region}/{type}/{name}
    """
    if scope.is_national:
        prefix = f"{scope.country_code.lower()}/{NATIONAL}"
    else:
        prefix = f"{scope.country_code.lower()}/regions/{scope.region_code.lower()}"
    return f"{prefix}/{content_type}/{filename}"


def content_type_of(file_path: str) -> str:
    """
    Extracts the content type segment from a content path, or "other" if
    the path does not have one.
    """
    parts = file_path.strip("/").split("/")
    if len(parts) > 3 and parts[1] == "regions":
        return parts[3]
    if len(parts) > 2:
        return parts[2]
    return "other"


def _naive_utc(value: datetime) -> datetime:
    # SQLite stores naive datetimes; everything in the table is UTC
    if value.tzinfo is not None:
        value = value.astimezone(UTC).replace(tzinfo=None)
    return value


class Base(DeclarativeBase):
    pass


class Content(Base):
    """
    One piece of published content (an article, a forecast, a recipe...)
    and where its file lives under the content root.
    """

    __tablename__ = "contents"
    __table_args__ = (
        Index("ix_contents_scope", "country_code", "region_code", "status"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    content_type: Mapped[str]
    language_code: Mapped[str]
    country_code: Mapped[str]
    region_code: Mapped[str | None]
    file_path: Mapped[str]
    title: Mapped[str | None]
    tags: Mapped[str | None]
    # Stored as the integer value so it sorts by urgency
    priority: Mapped[int] = mapped_column(default=int(CONTENT_PRIORITY.NORMAL))
    status: Mapped[CONTENT_STATUS] = mapped_column(
        Enum(CONTENT_STATUS), default=CONTENT_STATUS.ACTIVE
    )
    created_at: Mapped[datetime] = mapped_column(
        default=lambda: _naive_utc(datetime.now(UTC))
    )
    published_at: Mapped[datetime | None]
    expires_at: Mapped[datetime | None]
    file_size: Mapped[int | None]
    checksum: Mapped[str | None] = mapped_column(index=True)

    def __repr__(self):
        return f"<Content {self.id} {self.file_path} {self.status.value}>"


class ContentStore:
    """
    The content database plus the directory tree holding the content files.

    All queries return plain values or detached rows; database failures are
    raised as UpstreamIOError.
    """

    def __init__(self, db_path: Path, content_root: Path):
        self.db_path = db_path
        self.content_root = content_root.expanduser().resolve()
        self.content_root.mkdir(parents=True, exist_ok=True)

        # Create engine and session
        self.engine = create_engine(f"sqlite:///{self.db_path}")
        self.session_factory = sessionmaker(bind=self.engine, expire_on_commit=False)

        # Make sure all tables are good
        self.check_schema()

    def check_schema(self):
        # Create all tables defined in Base
        Base.metadata.create_all(self.engine)

    @contextmanager
    def session(self) -> Iterator[Session]:
        """
        Yields a session that is committed on success and rolled back on
        error. Database errors come out as UpstreamIOError.
        """
        session = self.session_factory()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            raise UpstreamIOError(f"Content store error: {e}") from e
        except BaseException:
            session.rollback()
            raise
        finally:
            session.close()

    ### Files ###

    def disk_path(self, file_path: str) -> Path | None:
        """
        Returns the on-disk location of a content path, or None if the path
        would escape the content root.
        """
        candidate = (self.content_root / file_path.lstrip("/")).resolve()
        if not candidate.is_relative_to(self.content_root):
            return None
        return candidate

    def save_content(
        self,
        content_type: str,
        scope: RegionScope,
        filename: str,
        data: bytes,
        title: str | None = None,
        tags: Sequence[str] = (),
        priority: CONTENT_PRIORITY = CONTENT_PRIORITY.NORMAL,
        published_at: datetime | None = None,
        expires_at: datetime | None = None,
    ) -> Content:
        """
        Writes a content file into its place under the content root and
        records it as ACTIVE.

        The file only replaces what is on disk once its row is committed. An
        ACTIVE row already pointing at the same path is archived, since its
        checksum no longer describes the file.
        """
        file_path = content_relative_path(content_type, scope, filename)
        target = self.disk_path(file_path)
        if target is None:
            raise ValueError(f"Content filename escapes the content root: {filename}")
        target.parent.mkdir(parents=True, exist_ok=True)
        content = Content(
            content_type=content_type,
            language_code=language_for_country(scope.country_code),
            country_code=scope.country_code,
            region_code=scope.region_code,
            file_path=file_path,
            title=title,
            tags=",".join(sorted({tag.strip() for tag in tags if tag.strip()})) or None,
            priority=int(priority),
            status=CONTENT_STATUS.ACTIVE,
            published_at=_naive_utc(published_at or datetime.now(UTC)),
            expires_at=_naive_utc(expires_at) if expires_at else None,
            file_size=len(data),
            checksum=hashlib.sha256(data).hexdigest(),
        )
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{target.name}.", suffix=".partial", dir=target.parent
        )
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(data)
            with self.session() as session:
                superseded = session.execute(
                    update(Content)
                    .where(Content.file_path == file_path)
                    .where(Content.status == CONTENT_STATUS.ACTIVE)
                    .values(status=CONTENT_STATUS.ARCHIVED)
                ).rowcount
                session.add(content)
            os.replace(tmp_name, target)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        if superseded:
            logger.info(f"Content replaced: {file_path} ({superseded} older rows archived)")
        else:
            logger.debug(f"Content saved: {file_path}")
        return content

    ### Queries ###

    def find_active_changed_files(
        self,
        content_type: str | None,
        country_code: str,
        region_code: str | None,
        from_date: datetime,
        to_date: datetime,
    ) -> list[str]:
        """
        Returns the paths of ACTIVE content for the country (and region, if
        given) published in [from_date, to_date), oldest first.

        A missing region matches content for any region of the country.
        """
        query = select(Content.file_path).where(
            Content.country_code == country_code,
            Content.status == CONTENT_STATUS.ACTIVE,
            Content.published_at >= _naive_utc(from_date),
            Content.published_at < _naive_utc(to_date),
        )
        if region_code is not None:
            query = query.where(Content.region_code == region_code)
        if content_type is not None:
            query = query.where(Content.content_type == content_type)
        query = query.order_by(Content.published_at, Content.id)
        with self.session() as session:
            return list(session.execute(query).scalars().all())

    def find_active_content(
        self, content_type: str, country_code: str, region_code: str | None
    ) -> Sequence[Content]:
        query = select(Content).where(
            Content.content_type == content_type,
            Content.country_code == country_code,
            Content.status == CONTENT_STATUS.ACTIVE,
        )
        if region_code is not None:
            query = query.where(Content.region_code == region_code)
        query = query.order_by(Content.priority.desc(), Content.published_at.desc())
        with self.session() as session:
            return session.execute(query).scalars().all()

    def find_by_checksum(self, checksum: str) -> Sequence[Content]:
        with self.session() as session:
            return (
                session.execute(select(Content).where(Content.checksum == checksum))
                .scalars()
                .all()
            )

    def count_active(self, content_type: str, country_code: str) -> int:
        with self.session() as session:
            return session.execute(
                select(func.count(Content.id)).where(
                    Content.content_type == content_type,
                    Content.country_code == country_code,
                    Content.status == CONTENT_STATUS.ACTIVE,
                )
            ).scalar_one()

    def all_content(self, limit: int = 500) -> Sequence[Content]:
        with self.session() as session:
            return (
                session.execute(
                    select(Content).order_by(Content.published_at.desc()).limit(limit)
                )
                .scalars()
                .all()
            )

    ### Lifecycle ###

    def update_status(self, content_id: int, status: CONTENT_STATUS) -> bool:
        """
        Sets the status of one content row; returns False if there is no
        such row.
        """
        with self.session() as session:
            content = session.get(Content, content_id)
            if content is None:
                return False
            content.status = status
        logger.info(f"Content {content_id} status updated to {status.value}")
        return True

    def archive_older_than(self, cutoff: datetime) -> int:
        """
        Archives ACTIVE content published before the cutoff, returning how
        many rows changed.
        """
        with self.session() as session:
            result = session.execute(
                update(Content)
                .where(
                    Content.published_at < _naive_utc(cutoff),
                    Content.status == CONTENT_STATUS.ACTIVE,
                )
                .values(status=CONTENT_STATUS.ARCHIVED)
            )
            return result.rowcount or 0
