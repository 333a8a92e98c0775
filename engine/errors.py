"""Conversion error taxonomy.

Each error carries the stable, client-facing message that ends up in the
terminal ``error`` event. Internal detail (stderr, paths) belongs in the
exception chain and the logs, never in ``message``.
"""

from __future__ import annotations


class ConversionError(Exception):
    """Base class for failures that terminate a conversion job."""

    default_message = "conversion failed"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class InputError(ConversionError):
    """Missing or invalid request fields."""

    default_message = "missing required query params"


class SourceError(ConversionError):
    """Duration probe failed or the source was rejected by policy."""

    default_message = "error getting video duration"


class ArtifactError(ConversionError):
    """Audio or cover artifact could not be produced."""


class EmbedError(ConversionError):
    """Metadata embedding failed."""

    default_message = "error embedding mp3 file"


class ResourceError(ConversionError):
    """Working storage could not be acquired or released."""

    default_message = "failed to create temp directory"


class TransportError(ConversionError):
    """The client stopped listening mid-stream."""

    default_message = "client disconnected"


class CancelledError(Exception):
    """Raised by blocking collaborators when the job's cancel signal fires."""
