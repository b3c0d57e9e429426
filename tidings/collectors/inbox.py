from pathlib import Path

from tidings.types import RegionScope

from .base import BaseCollector, CollectedItem


class InboxCollector(BaseCollector):
    """
    Imports files dropped into an inbox directory, laid out as
    {inbox}/{country}/{region or "national"}/{name}. Imported files are
    removed from the inbox once stored.
    """

    type_aliases = ["inbox"]
    default_schedule = "0 * * * * *"

    def __init__(
        self,
        id: str,
        path: str | Path,
        content_type: str = "stories",
        keep_files: bool = False,
        **kwargs,
    ):
        super().__init__(id, **kwargs)
        self.path = Path(path).expanduser()
        self.content_type = content_type
        self.keep_files = keep_files

    def validate_configuration(self) -> bool:
        return super().validate_configuration() and self.path.is_dir()

    def scope_directory(self, scope: RegionScope) -> Path:
        return self.path / scope.country_code.lower() / scope.region_token.lower()

    def fetch(self, scope: RegionScope) -> list[CollectedItem]:
        directory = self.scope_directory(scope)
        if not directory.is_dir():
            return []
        items = []
        for dirpath, subdirs, filenames in directory.walk():
            # Hidden files are uploads still in progress
            subdirs[:] = sorted(d for d in subdirs if not d.startswith("."))
            for filename in sorted(filenames):
                if filename.startswith("."):
                    continue
                file_path = dirpath / filename
                relative = file_path.relative_to(directory)
                items.append(
                    CollectedItem(
                        filename="-".join(relative.parts),
                        data=file_path.read_bytes(),
                        title=file_path.stem,
                        source=file_path,
                    )
                )
        self.logger.debug(f"{len(items)} files found in {directory}")
        return items

    def stored(self, scope: RegionScope, items: list[CollectedItem]) -> None:
        if self.keep_files:
            return
        for item in items:
            if item.source is not None:
                item.source.unlink(missing_ok=True)
