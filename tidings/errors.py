class TidingsError(Exception):
    """
    Root of all errors raised deliberately by this package.
    """


class ValidationError(TidingsError):
    """
    A request parameter was malformed; raised before any pipeline work.
    """

    def __init__(self, message: str, fields: dict[str, str] | None = None):
        super().__init__(message)
        self.fields = fields or {}


class NotFoundError(TidingsError):
    """
    A requested package, version or collector does not exist.
    """


class UpstreamIOError(TidingsError):
    """
    The content store or a cache tier could not be reached.
    """


class BuildError(TidingsError):
    """
    An update package could not be assembled.
    """


class VersionParseError(TidingsError, ValueError):
    """
    A version token is not a dot-separated list of integers.
    """


class CollectorError(TidingsError):
    """
    A collector run failed.
    """
