"""
Service exceptions

Typed errors raised by the script, playlist and resolution layers.
Routers translate them into HTTP responses; scheduled jobs log them.
"""


class CatalogServiceError(Exception):
    """Base class for all catalog service errors."""
    pass


class AcquisitionError(CatalogServiceError):
    """Raised when a script artifact cannot be downloaded or stored."""

    def __init__(self, url: str, reason: str):
        self.url = url
        self.reason = reason
        super().__init__(f"Failed to download script from {url}: {reason}")


class ScriptNotFoundError(CatalogServiceError):
    """Raised when an operation needs an artifact that was never downloaded."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"{name} script not downloaded")


class AlreadyRunningError(CatalogServiceError):
    """Raised when work is requested while identical work is in progress."""
    pass


class ExecutionError(CatalogServiceError):
    """Raised when a script process fails, exits non-zero or times out."""
    pass


class RebuildError(CatalogServiceError):
    """Raised when the playlist could not be rebuilt after all attempts."""

    def __init__(self, source_key: str, attempts: int, reason: str):
        self.source_key = source_key
        self.attempts = attempts
        self.reason = reason
        super().__init__(
            f"Playlist rebuild failed after {attempts} attempt(s): {reason}"
        )


class ResolutionError(CatalogServiceError):
    """Raised when the resolver could not produce a URL for a stream."""

    def __init__(self, stream_id: str, reason: str):
        self.stream_id = stream_id
        self.reason = reason
        super().__init__(f"Could not resolve stream '{stream_id}': {reason}")
