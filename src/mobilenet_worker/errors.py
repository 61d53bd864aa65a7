"""Exceptions raised by the inference worker."""

from __future__ import annotations


class WorkerError(Exception):
    """Base class for inference worker errors."""


class WorkerNotReadyError(WorkerError):
    """Raised when a prediction is requested before a successful load."""


class AssetError(WorkerError):
    """Raised when a label or model asset cannot be loaded."""

    def __init__(self, source: str, reason: str) -> None:
        super().__init__(f"{source}: {reason}")
        self.source = source
        self.reason = reason


class AssetFetchError(AssetError):
    """The asset could not be retrieved (missing file, HTTP or network error)."""


class AssetParseError(AssetError):
    """The asset was retrieved but its contents are malformed."""
