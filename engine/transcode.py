"""Transcode adapter: re-encodes and optionally trims audio with ffmpeg."""

from __future__ import annotations

import io
import logging
import os
import subprocess
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from config.settings import (
    AUDIO_BITRATE,
    DIAGNOSTIC_OUTPUT_LIMIT,
    OUTPUT_EXTENSION,
    STREAM_CHUNK_SIZE,
    STREAM_TIMEOUT_SECONDS,
    TRANSCODE_TIMEOUT_SECONDS,
    TRANSCODER_COMMAND,
)
from engine.errors import InvalidRangeError, TranscodeError
from engine.paths import safe_unlink
from engine.process import ProcessHandle, split_command

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TrimRange:
    start: float
    end: Optional[float] = None

    @property
    def duration(self) -> Optional[float]:
        if self.end is None:
            return None
        return self.end - self.start


@dataclass(frozen=True)
class TranscodedAudio:
    size: int
    path: Optional[Path] = None


def validate_trim_range(start, end) -> Optional[TrimRange]:
    """Build a ``TrimRange`` from optional bounds in seconds.

    Both bounds absent means full-length output. A missing start defaults to
    0 and a missing end keeps everything after ``start``.

    Raises:
        InvalidRangeError: when a bound is not a number, ``start`` is
            negative, or ``end <= start``.
    """
    if start is None and end is None:
        return None
    try:
        start_value = float(start) if start is not None else 0.0
        end_value = float(end) if end is not None else None
    except (TypeError, ValueError) as exc:
        raise InvalidRangeError(f"trim bounds must be numbers: start={start!r} end={end!r}") from exc
    if start_value < 0:
        raise InvalidRangeError(f"start must be non-negative, got {start_value:g}")
    if end_value is not None and end_value <= start_value:
        raise InvalidRangeError(f"end ({end_value:g}) must be greater than start ({start_value:g})")
    return TrimRange(start=start_value, end=end_value)


def coerce_trim_range(value) -> Optional[TrimRange]:
    if value is None:
        return None
    if isinstance(value, TrimRange):
        return validate_trim_range(value.start, value.end)
    start, end = value
    return validate_trim_range(start, end)


def default_output_path(source: Path) -> Path:
    return source.with_name(f"{source.with_suffix('').name}.trimmed.{OUTPUT_EXTENSION}")


def _seconds(value: float) -> str:
    return f"{value:.3f}".rstrip("0").rstrip(".") or "0"


def build_output_filename(video_id: str, trim: Optional[TrimRange] = None) -> str:
    """Suggested download name, e.g. ``12345.mp3`` or ``12345_10-25.mp3``."""
    if trim is None:
        return f"{video_id}.{OUTPUT_EXTENSION}"
    end = _seconds(trim.end) if trim.end is not None else "end"
    return f"{video_id}_{_seconds(trim.start)}-{end}.{OUTPUT_EXTENSION}"


def _has_fileno(stream) -> bool:
    try:
        stream.fileno()
    except (AttributeError, OSError, io.UnsupportedOperation):
        return False
    return True


class TranscodeAdapter:
    """Invoke the transcoder against a file or a readable stream."""

    def __init__(
        self,
        command=TRANSCODER_COMMAND,
        *,
        timeout: float = TRANSCODE_TIMEOUT_SECONDS,
        stream_timeout: float = STREAM_TIMEOUT_SECONDS,
        diagnostic_limit: int = DIAGNOSTIC_OUTPUT_LIMIT,
        bitrate: str = AUDIO_BITRATE,
        chunk_size: int = STREAM_CHUNK_SIZE,
    ) -> None:
        self.command = split_command(command)
        self.timeout = timeout
        self.stream_timeout = stream_timeout
        self.diagnostic_limit = diagnostic_limit
        self.bitrate = bitrate
        self.chunk_size = chunk_size

    def build_args(self, input_spec: str, trim: Optional[TrimRange], output_spec: str, *, seek_input: bool) -> list[str]:
        args = list(self.command) + ["-hide_banner", "-loglevel", "error", "-y"]
        # Input-side seeking is only possible on a seekable file.
        if trim is not None and trim.start > 0 and seek_input:
            args.extend(["-ss", _seconds(trim.start)])
        args.extend(["-i", input_spec])
        if trim is not None and trim.start > 0 and not seek_input:
            args.extend(["-ss", _seconds(trim.start)])
        if trim is not None and trim.duration is not None:
            args.extend(["-t", _seconds(trim.duration)])
        args.extend(["-vn", "-acodec", "libmp3lame", "-b:a", self.bitrate, "-f", "mp3", output_spec])
        return args

    def _start(self, argv, *, stdin, stdout, timeout):
        try:
            return ProcessHandle(
                argv,
                stdin=stdin,
                stdout=stdout,
                timeout=timeout,
                diagnostic_limit=self.diagnostic_limit,
                name="transcoder",
            )
        except OSError as exc:
            raise TranscodeError(f"transcoder could not be started: {exc}") from exc

    def raise_for_outcome(self, handle: ProcessHandle, returncode: int, produced: int) -> None:
        if handle.timed_out:
            raise TranscodeError("transcoder timed out", diagnostics=handle.diagnostics)
        if returncode != 0:
            raise TranscodeError(
                f"transcoder exited with status {returncode}",
                returncode=returncode,
                diagnostics=handle.diagnostics,
            )
        if produced <= 0:
            raise TranscodeError("transcoder produced no audio", diagnostics=handle.diagnostics)

    def spawn(self, stdin, trim_range=None) -> ProcessHandle:
        """Start a pipe from ``stdin`` to the returned handle's stdout.

        Output is available as soon as the transcoder emits it, before the
        input has been fully read.
        """
        trim = coerce_trim_range(trim_range)
        argv = self.build_args("pipe:0", trim, "pipe:1", seek_input=False)
        return self._start(argv, stdin=stdin, stdout=subprocess.PIPE, timeout=self.stream_timeout)

    def transcode(self, source, trim_range=None, sink=None) -> TranscodedAudio:
        """Encode ``source`` to MP3, trimmed to ``trim_range`` when given.

        ``source`` is a file path or a readable binary stream; ``sink`` is a
        file path or a writable binary stream. Invalid trim bounds are rejected
        before the transcoder is started. A failed run leaves no file at a path
        sink.
        """
        trim = coerce_trim_range(trim_range)
        from_file = isinstance(source, (str, os.PathLike))
        if sink is None:
            if not from_file:
                raise ValueError("a sink is required when transcoding a stream")
            sink = default_output_path(Path(source))
        to_file = isinstance(sink, (str, os.PathLike))

        input_spec = str(source) if from_file else "pipe:0"
        output_spec = str(sink) if to_file else "pipe:1"
        argv = self.build_args(input_spec, trim, output_spec, seek_input=from_file)

        feed_source = None
        stdin = None
        if not from_file:
            if _has_fileno(source):
                stdin = source
            else:
                stdin = subprocess.PIPE
                feed_source = source
        if to_file:
            Path(sink).parent.mkdir(parents=True, exist_ok=True)
            safe_unlink(str(sink))

        handle = self._start(
            argv,
            stdin=stdin,
            stdout=subprocess.DEVNULL if to_file else subprocess.PIPE,
            timeout=self.timeout,
        )
        feeder = None
        if feed_source is not None:
            feeder = threading.Thread(
                target=self._feed,
                args=(feed_source, handle.stdin),
                name="transcoder-stdin-feeder",
                daemon=True,
            )
            feeder.start()

        produced = 0
        try:
            if not to_file:
                for chunk in iter(lambda: handle.stdout.read(self.chunk_size), b""):
                    sink.write(chunk)
                    produced += len(chunk)
                handle.stdout.close()
        except BaseException:
            handle.close()
            raise
        returncode = handle.wait()
        if feeder is not None:
            feeder.join(timeout=5)

        if to_file:
            try:
                produced = Path(sink).stat().st_size
            except OSError:
                produced = 0
        try:
            self.raise_for_outcome(handle, returncode, produced)
        except TranscodeError:
            if to_file:
                safe_unlink(str(sink))
            raise
        logger.info("Transcoded audio bytes=%d trim=%s", produced, trim)
        return TranscodedAudio(size=produced, path=Path(sink) if to_file else None)

    def _feed(self, source, stdin):
        try:
            for chunk in iter(lambda: source.read(self.chunk_size), b""):
                stdin.write(chunk)
        except BrokenPipeError:
            logger.debug("transcoder closed its input early")
        finally:
            try:
                stdin.close()
            except OSError:
                pass
