import enum

NATIONAL = "national"

MANIFEST_NAME = "MANIFEST.txt"
# First line of every manifest; existing clients expect it verbatim
MANIFEST_HEADER = "# Angel Update Package Manifest"
PACKAGE_SUFFIX = ".zip"
CHECKSUM_SUFFIX = ".sha256"

COPY_CHUNK_SIZE = 1024 * 1024  # 1MB

VERSION_FORMAT = "%Y.%m.%d.%H"
SERVICE_VERSION_FALLBACK = "1.0.0"


class CONTENT_STATUS(enum.Enum):
    DRAFT = "DRAFT"
    ACTIVE = "ACTIVE"
    ARCHIVED = "ARCHIVED"
    DELETED = "DELETED"


class CONTENT_PRIORITY(enum.IntEnum):
    LOW = 1
    NORMAL = 2
    HIGH = 3
    URGENT = 4


class COLLECTOR_STATE(enum.Enum):
    IDLE = "IDLE"
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    ERROR = "ERROR"
    DISABLED = "DISABLED"
