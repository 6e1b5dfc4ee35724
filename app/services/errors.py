"""Typed failures raised by the identification pipeline."""

from __future__ import annotations


class AssetPipelineError(Exception):
    """Base class for pipeline failures."""


class UnreadableFile(AssetPipelineError):
    """The file could not be opened or stat'ed."""


class UnknownProvider(AssetPipelineError, ValueError):
    """A requested registry is not configured."""


class MalformedContainer(AssetPipelineError, ValueError):
    """A binary container violates its format. Never escapes a parser."""


class RegistryError(AssetPipelineError):
    """Base class for remote registry failures."""

    def __init__(self, platform: str, message: str) -> None:
        super().__init__(message)
        self.platform = platform


class NotFound(RegistryError):
    """The registry reported no match."""


class ProviderError(RegistryError):
    """The registry answered with an unexpected status or payload."""

    def __init__(self, platform: str, message: str, status_code: int | None = None) -> None:
        super().__init__(platform, message)
        self.status_code = status_code


class TransportError(RegistryError):
    """The request never completed."""


class NoPreviewAvailable(RegistryError):
    """A match was confirmed but carries no usable image."""


class FingerprintUnusable(RegistryError):
    """The provider needs a full digest and none is available."""


class PreviewFetchError(RegistryError):
    """Downloading the preview bytes failed; the match itself stands."""
