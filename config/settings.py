"""Application settings constants."""

from __future__ import annotations

import os


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


# External executables. Values are split on whitespace so a wrapper such as
# "python -m yt_dlp" can be configured.
EXTRACTOR_COMMAND = os.environ.get("AUDIOGRAB_EXTRACTOR", "yt-dlp")
TRANSCODER_COMMAND = os.environ.get("AUDIOGRAB_TRANSCODER", "ffmpeg")

# Format selector handed to the extractor.
EXTRACTOR_FORMAT = os.environ.get("AUDIOGRAB_EXTRACTOR_FORMAT", "bestaudio/best")
# Used in streaming mode where the extractor cannot post-process its output.
EXTRACTOR_STREAM_FORMAT = os.environ.get(
    "AUDIOGRAB_EXTRACTOR_STREAM_FORMAT", "bestaudio[ext=mp3]/bestaudio/best"
)

# Optional extractor session settings.
COOKIES_FILE = os.environ.get("AUDIOGRAB_COOKIES_FILE") or None
PROXY = os.environ.get("AUDIOGRAB_PROXY") or None

# Wall-clock limits per process invocation, in seconds.
EXTRACT_TIMEOUT_SECONDS = _env_float("AUDIOGRAB_EXTRACT_TIMEOUT", 600.0)
TRANSCODE_TIMEOUT_SECONDS = _env_float("AUDIOGRAB_TRANSCODE_TIMEOUT", 300.0)
STREAM_TIMEOUT_SECONDS = _env_float("AUDIOGRAB_STREAM_TIMEOUT", 3600.0)

# Retry policy.
ATTEMPTS_PER_CANDIDATE = _env_int("AUDIOGRAB_ATTEMPTS_PER_CANDIDATE", 2)
RETRY_DELAY_SECONDS = _env_float("AUDIOGRAB_RETRY_DELAY", 2.0)

# Job lifecycle.
JOB_MAX_AGE_SECONDS = _env_int("AUDIOGRAB_JOB_MAX_AGE", 60 * 60)
SWEEP_INTERVAL_SECONDS = _env_int("AUDIOGRAB_SWEEP_INTERVAL", 60)

# Upper bound on captured stderr per process; older output is dropped first.
DIAGNOSTIC_OUTPUT_LIMIT = _env_int("AUDIOGRAB_DIAGNOSTIC_LIMIT", 64 * 1024)

# Output encoding.
OUTPUT_EXTENSION = "mp3"
OUTPUT_MEDIA_TYPE = "audio/mpeg"
AUDIO_BITRATE = os.environ.get("AUDIOGRAB_AUDIO_BITRATE", "192k")

STREAM_CHUNK_SIZE = _env_int("AUDIOGRAB_STREAM_CHUNK_SIZE", 64 * 1024)

# Route untrimmed streams through a pass-through transcode so the payload is
# always MP3.
STREAM_ALWAYS_TRANSCODE = _env_bool("AUDIOGRAB_STREAM_ALWAYS_TRANSCODE", False)
