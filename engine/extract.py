"""Extraction adapter: runs the extractor (yt-dlp) against one candidate URL."""

from __future__ import annotations

import glob
import logging
import os
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Optional, Union

from config.settings import (
    COOKIES_FILE,
    DIAGNOSTIC_OUTPUT_LIMIT,
    EXTRACT_TIMEOUT_SECONDS,
    EXTRACTOR_COMMAND,
    EXTRACTOR_FORMAT,
    EXTRACTOR_STREAM_FORMAT,
    OUTPUT_EXTENSION,
    PROXY,
    STREAM_CHUNK_SIZE,
    STREAM_TIMEOUT_SECONDS,
)
from engine.errors import EmptyArtifactError, ExtractTimeoutError, ProcessExitError
from engine.paths import safe_unlink
from engine.process import ProcessHandle, split_command

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExtractedAudio:
    url: str
    size: int
    path: Optional[Path] = None


def remove_partials(sink: Path) -> int:
    """Remove ``sink`` and every sibling the extractor may have left for it."""
    removed = 0
    pattern = os.path.join(glob.escape(str(sink.parent)), glob.escape(sink.with_suffix("").name) + ".*")
    for path in glob.glob(pattern):
        if safe_unlink(path):
            removed += 1
    if safe_unlink(str(sink)):
        removed += 1
    return removed


def _file_size(path: Path) -> int:
    try:
        return path.stat().st_size
    except OSError:
        return 0


class ExtractionAdapter:
    """Invoke the extractor with a file sink (materializing) or a stream sink."""

    def __init__(
        self,
        command=EXTRACTOR_COMMAND,
        *,
        timeout: float = EXTRACT_TIMEOUT_SECONDS,
        stream_timeout: float = STREAM_TIMEOUT_SECONDS,
        diagnostic_limit: int = DIAGNOSTIC_OUTPUT_LIMIT,
        format_spec: str = EXTRACTOR_FORMAT,
        stream_format_spec: str = EXTRACTOR_STREAM_FORMAT,
        cookies_file: str | None = COOKIES_FILE,
        proxy: str | None = PROXY,
        chunk_size: int = STREAM_CHUNK_SIZE,
    ) -> None:
        self.command = split_command(command)
        self.timeout = timeout
        self.stream_timeout = stream_timeout
        self.diagnostic_limit = diagnostic_limit
        self.format_spec = format_spec
        self.stream_format_spec = stream_format_spec
        self.cookies_file = cookies_file
        self.proxy = proxy
        self.chunk_size = chunk_size

    def _base_args(self, format_spec: str) -> list[str]:
        args = list(self.command) + ["--no-playlist", "--no-progress", "-f", format_spec]
        if self.cookies_file:
            if os.path.exists(self.cookies_file):
                args.extend(["--cookies", self.cookies_file])
            else:
                logger.warning("Cookies file not found, ignoring: %s", self.cookies_file)
        if self.proxy:
            args.extend(["--proxy", self.proxy])
        return args

    def build_file_args(self, url: str, sink: Path) -> list[str]:
        template = str(sink.with_suffix("")) + ".%(ext)s"
        return self._base_args(self.format_spec) + [
            "-x",
            "--audio-format",
            OUTPUT_EXTENSION,
            "--force-overwrites",
            "-o",
            template,
            url,
        ]

    def build_stream_args(self, url: str) -> list[str]:
        return self._base_args(self.stream_format_spec) + ["-o", "-", url]

    def _start(self, argv, url, *, stdout, timeout):
        try:
            return ProcessHandle(
                argv,
                stdout=stdout,
                timeout=timeout,
                diagnostic_limit=self.diagnostic_limit,
                name="extractor",
            )
        except OSError as exc:
            raise ProcessExitError(f"extractor could not be started: {exc}", url=url) from exc

    def raise_for_outcome(self, handle: ProcessHandle, returncode: int, url: str, produced: int) -> None:
        """Apply the success rule: zero exit status and a non-empty artifact."""
        if handle.timed_out:
            raise ExtractTimeoutError(
                f"extractor timed out for {url}", url=url, diagnostics=handle.diagnostics
            )
        if returncode != 0:
            raise ProcessExitError(
                f"extractor exited with status {returncode} for {url}",
                returncode=returncode,
                url=url,
                diagnostics=handle.diagnostics,
            )
        if produced <= 0:
            raise EmptyArtifactError(
                f"extractor produced no audio for {url}", url=url, diagnostics=handle.diagnostics
            )

    def extract(self, url: str, sink: Union[str, os.PathLike, BinaryIO]) -> ExtractedAudio:
        """Run one extraction attempt of ``url`` into ``sink``.

        A path sink is materialized on disk and removed again (together with
        any partial siblings) when the attempt fails. A stream sink receives
        the raw audio bytes as they arrive.
        """
        if isinstance(sink, (str, os.PathLike)):
            return self._extract_to_file(url, Path(sink))
        return self._extract_to_stream(url, sink)

    def _extract_to_file(self, url: str, sink: Path) -> ExtractedAudio:
        sink.parent.mkdir(parents=True, exist_ok=True)
        remove_partials(sink)
        handle = self._start(
            self.build_file_args(url, sink), url, stdout=subprocess.DEVNULL, timeout=self.timeout
        )
        returncode = handle.wait()
        try:
            self.raise_for_outcome(handle, returncode, url, _file_size(sink))
        except Exception:
            remove_partials(sink)
            raise
        size = _file_size(sink)
        logger.info("Extracted audio url=%s path=%s bytes=%d", url, sink, size)
        return ExtractedAudio(url=url, size=size, path=sink)

    def spawn(self, url: str) -> ProcessHandle:
        """Start the extractor writing raw audio to its stdout pipe."""
        return self._start(
            self.build_stream_args(url), url, stdout=subprocess.PIPE, timeout=self.stream_timeout
        )

    def _extract_to_stream(self, url: str, sink: BinaryIO) -> ExtractedAudio:
        handle = self.spawn(url)
        total = 0
        try:
            for chunk in iter(lambda: handle.stdout.read(self.chunk_size), b""):
                sink.write(chunk)
                total += len(chunk)
        except BaseException:
            handle.close()
            raise
        handle.stdout.close()
        returncode = handle.wait()
        self.raise_for_outcome(handle, returncode, url, total)
        return ExtractedAudio(url=url, size=total)
