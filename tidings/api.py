import logging
from collections.abc import Iterator
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from tidings.constants import COPY_CHUNK_SIZE
from tidings.errors import ValidationError
from tidings.orchestrator import UpdateOrchestrator
from tidings.types import RegionScope, UpdateResponse

logger = logging.getLogger(__name__)


class CheckUpdateRequest(BaseModel):
    """
    Body of a check-update call, in the client's camelCase.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    country_code: str = Field(pattern=r"^[A-Z]{2}$")
    region_code: str | None = Field(default=None, pattern=r"^[A-Z]{2,3}$")
    current_version: str = Field(pattern=r"^\d+\.\d+\.\d+$")
    language_code: str | None = None
    client_id: str | None = None

    @property
    def scope(self) -> RegionScope:
        return RegionScope(self.country_code, self.region_code)


class DownloadRequest(BaseModel):

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    version: str = Field(pattern=r"^\d+(\.\d+)*$")
    country_code: str = Field(pattern=r"^[A-Z]{2}$")
    region_code: str | None = Field(default=None, pattern=r"^[A-Z]{2,3}$")

    @property
    def scope(self) -> RegionScope:
        return RegionScope(self.country_code, self.region_code)


class PackageDownload:
    """
    A package ready to stream back to a client.
    """

    content_type = "application/octet-stream"

    def __init__(self, version: str, path: Path, size: int, checksum: str):
        self.version = version
        self.path = path
        self.size = size
        self.checksum = checksum

    @property
    def filename(self) -> str:
        return f"update-{self.version}.zip"

    def chunks(self, chunk_size: int = COPY_CHUNK_SIZE) -> Iterator[bytes]:
        with open(self.path, "rb") as fh:
            while chunk := fh.read(chunk_size):
                yield chunk


def validation_error_from(error: PydanticValidationError) -> ValidationError:
    """
    Turns a pydantic error into our own, keyed by the client's field names.
    """
    fields = {}
    for detail in error.errors():
        name = ".".join(str(part) for part in detail["loc"]) or "__root__"
        fields[name] = detail["msg"]
    summary = ", ".join(f"{name}: {msg}" for name, msg in fields.items())
    return ValidationError(f"Invalid request ({summary})", fields)


class UpdateApi:
    """
    What the HTTP layer calls. Validates inputs, then hands over to the
    orchestrator; routing and transport are someone else's problem.
    """

    def __init__(self, orchestrator: UpdateOrchestrator):
        self.orchestrator = orchestrator

    def check_update(
        self, payload: dict[str, Any], accept_language: str | None = None
    ) -> dict[str, Any]:
        """
        Returns the camelCase JSON body for a check-update call.
        """
        try:
            request = CheckUpdateRequest.model_validate(payload)
        except PydanticValidationError as e:
            raise validation_error_from(e) from e
        logger.info(
            f"Update check request: country={request.country_code}, "
            f"region={request.region_code}, version={request.current_version}"
        )
        response: UpdateResponse = self.orchestrator.check_update(
            request.scope, request.current_version, accept_language
        )
        return response.to_json_dict()

    def download_package(
        self, version: str, country_code: str, region_code: str | None = None
    ) -> PackageDownload:
        """
        Finds the package for a download; raises NotFoundError if there
        isn't one.
        """
        try:
            request = DownloadRequest(
                version=version, country_code=country_code, region_code=region_code
            )
        except PydanticValidationError as e:
            raise validation_error_from(e) from e
        logger.info(f"Download request: version={version}, scope={request.scope}")
        handle = self.orchestrator.download_package(request.version, request.scope)
        return PackageDownload(
            version=request.version,
            path=handle.path,
            size=handle.size,
            checksum=handle.checksum,
        )

    def current_service_version(self) -> str:
        return self.orchestrator.service_version()
