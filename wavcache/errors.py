"""Exception hierarchy shared by the cache, parser and renderer."""

from __future__ import annotations


class WavCacheError(Exception):
    """Base class for failures surfaced to the request boundary."""


class SourceNotFoundError(WavCacheError):
    """Raised when the source recording for a request does not exist."""


class SourceReadError(WavCacheError):
    """Raised when a source recording or directory exists but cannot be read."""


class ContainerError(WavCacheError):
    """Raised when a RIFF container cannot be decoded."""


class MalformedContainerError(ContainerError):
    """Raised when the outer RIFF header is missing or unrecognised."""


class NotInfoListError(ContainerError):
    """Raised when the first top-level chunk is not a LIST chunk."""


class MalformedChunkError(ContainerError):
    """Raised when a chunk header or payload is truncated or inconsistent."""


class SpectrogramError(WavCacheError):
    """Raised when the external spectrogram renderer fails."""


class LaunchError(SpectrogramError):
    """Raised when the renderer process cannot be started."""


class TransformError(SpectrogramError):
    """Raised when the renderer process exits unsuccessfully."""

    def __init__(self, message: str, *, returncode: int | None = None, stderr: str = "") -> None:
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr


class CacheReadError(WavCacheError):
    """Raised when a cache entry exists but cannot be read."""


class CachePersistError(WavCacheError):
    """Raised when a derived artifact cannot be written to the cache."""
