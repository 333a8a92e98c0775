from .errors import (
    ArtifactError,
    ConversionError,
    EmbedError,
    InputError,
    ResourceError,
    SourceError,
    TransportError,
)
from .progress import ProgressEvent, ProgressStream
from .runtime import get_runtime_info
from .workdir import JobContext, WorkDirectory

__all__ = [
    "ArtifactError",
    "ConversionError",
    "EmbedError",
    "InputError",
    "JobContext",
    "ProgressEvent",
    "ProgressStream",
    "ResourceError",
    "SourceError",
    "TransportError",
    "WorkDirectory",
    "get_runtime_info",
]
