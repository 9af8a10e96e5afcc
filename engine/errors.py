"""Error taxonomy shared by the adapters, the orchestrator and the job layer."""

from __future__ import annotations


class AudiograbError(Exception):
    """Base class for every error raised by the download core."""


class InvalidSourceError(AudiograbError):
    """No video identifier could be derived from the source URL."""


class InvalidRangeError(AudiograbError):
    """Trim bounds are malformed (negative start or ``end <= start``)."""


class ExtractError(AudiograbError):
    """One extraction attempt failed. Subclasses are retried by the orchestrator."""

    def __init__(self, message, *, url=None, diagnostics=None):
        super().__init__(message)
        self.url = url
        self.diagnostics = diagnostics or ""


class ExtractTimeoutError(ExtractError):
    """The extractor exceeded its wall-clock budget and was killed."""


class EmptyArtifactError(ExtractError):
    """The extractor exited cleanly but produced nothing."""


class ProcessExitError(ExtractError):
    """The extractor exited with a non-zero status or could not be started."""

    def __init__(self, message, *, returncode=None, url=None, diagnostics=None):
        super().__init__(message, url=url, diagnostics=diagnostics)
        self.returncode = returncode


RETRYABLE_ERRORS = (ExtractTimeoutError, EmptyArtifactError, ProcessExitError)


class AggregateError(AudiograbError):
    """Every candidate exhausted its attempt budget."""

    def __init__(self, last_error, attempted_urls, attempts=()):
        self.last_error = last_error
        self.attempted_urls = list(attempted_urls)
        self.attempts = list(attempts)
        urls = ", ".join(self.attempted_urls) or "<none>"
        super().__init__(f"all candidates failed (tried: {urls}); last error: {last_error}")


class TranscodeError(AudiograbError):
    """The transcoder failed. Never retried."""

    def __init__(self, message, *, returncode=None, diagnostics=None):
        super().__init__(message)
        self.returncode = returncode
        self.diagnostics = diagnostics or ""


class NotFoundError(AudiograbError):
    """Unknown (or already delivered) job id."""


class StillProcessingError(AudiograbError):
    """The job has not reached a terminal state yet."""


class JobFailedError(AudiograbError):
    """The job ended in the failed state; ``reason`` carries its stored error."""

    def __init__(self, reason):
        super().__init__(reason)
        self.reason = reason
