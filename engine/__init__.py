from .errors import AggregateError, AudiograbError, TranscodeError
from .extract import ExtractionAdapter
from .job_store import JobRegistry
from .paths import EnginePaths, build_engine_paths
from .retry import RetryOrchestrator
from .runtime import get_runtime_info
from .transcode import TranscodeAdapter, TrimRange

__all__ = [
    "AggregateError",
    "AudiograbError",
    "EnginePaths",
    "ExtractionAdapter",
    "JobRegistry",
    "RetryOrchestrator",
    "TranscodeAdapter",
    "TranscodeError",
    "TrimRange",
    "build_engine_paths",
    "get_runtime_info",
]
