"""Streaming pipeline: extractor stdout piped (optionally through the transcoder) to the client."""

from __future__ import annotations

import logging
import subprocess
import threading
from typing import Iterator, Optional

from config.settings import OUTPUT_MEDIA_TYPE, STREAM_ALWAYS_TRANSCODE, STREAM_CHUNK_SIZE
from engine.errors import ProcessExitError, TranscodeError
from engine.events import log_event
from engine.extract import ExtractionAdapter
from engine.process import ProcessHandle
from engine.retry import RetryOrchestrator
from engine.transcode import TranscodeAdapter, TrimRange, build_output_filename, coerce_trim_range
from input.candidates import SourceRef, candidates_for

logger = logging.getLogger(__name__)


class PipeRelay:
    """Copies extractor stdout into transcoder stdin and counts what it read."""

    def __init__(self, source, sink, chunk_size: int) -> None:
        self.source = source
        self.sink = sink
        self.chunk_size = chunk_size
        self.bytes_relayed = 0
        self._thread = threading.Thread(target=self._run, name="stream-relay", daemon=True)
        self._thread.start()

    def _run(self) -> None:
        try:
            for chunk in iter(lambda: self.source.read1(self.chunk_size), b""):
                self.bytes_relayed += len(chunk)
                self.sink.write(chunk)
                self.sink.flush()
        except BrokenPipeError:
            logger.debug("transcoder closed its input early")
        except (OSError, ValueError):
            # Either pipe was closed under us by a session shutdown.
            logger.debug("stream relay interrupted")
        finally:
            try:
                self.sink.close()
            except (OSError, ValueError):
                pass

    def join(self, timeout: Optional[float] = 5) -> None:
        self._thread.join(timeout=timeout)


class StreamSession:
    """A started stream whose first chunk has already been read.

    Headers can be sent as soon as a session exists. ``iter_bytes`` yields the
    payload and always releases both processes when it finishes, fails or is
    closed early by the consumer.
    """

    def __init__(
        self,
        *,
        url: str,
        filename: str,
        media_type: str,
        extractor: ProcessHandle,
        transcoder: Optional[ProcessHandle],
        first_chunk: bytes,
        chunk_size: int,
        relay: Optional[PipeRelay] = None,
        bounded: bool = False,
    ) -> None:
        self.url = url
        self.filename = filename
        self.media_type = media_type
        self.extractor = extractor
        self.transcoder = transcoder
        self.relay = relay
        self.chunk_size = chunk_size
        # A bounded trim lets the transcoder stop reading before the extractor is done.
        self.bounded = bounded
        self._first_chunk = first_chunk
        self._closed = False
        self.bytes_sent = 0

    @property
    def _output(self):
        return (self.transcoder or self.extractor).stdout

    def iter_bytes(self) -> Iterator[bytes]:
        completed = False
        try:
            self.bytes_sent += len(self._first_chunk)
            yield self._first_chunk
            output = self._output
            for chunk in iter(lambda: output.read(self.chunk_size), b""):
                self.bytes_sent += len(chunk)
                yield chunk
            self._check_exit()
            completed = True
        finally:
            log_event(
                logging.INFO if completed else logging.WARNING,
                "stream_finished" if completed else "stream_aborted",
                url=self.url,
                bytes_sent=self.bytes_sent,
            )
            self.close()

    def _check_exit(self) -> None:
        # Bytes are already on the wire; raising here only aborts the connection.
        if self.transcoder is not None:
            returncode = self.transcoder.wait()
            if self.transcoder.timed_out or returncode != 0:
                raise TranscodeError(
                    f"transcoder failed mid-stream with status {returncode}",
                    returncode=returncode,
                    diagnostics=self.transcoder.diagnostics,
                )
            if self.bounded:
                return
            if self.relay is not None:
                self.relay.join()
        returncode = self.extractor.wait()
        if self.extractor.timed_out or returncode != 0:
            raise ProcessExitError(
                f"extractor failed mid-stream with status {returncode}",
                returncode=returncode,
                url=self.url,
                diagnostics=self.extractor.diagnostics,
            )

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self.transcoder is not None:
            self.transcoder.kill()
        self.extractor.kill()
        if self.relay is not None:
            self.relay.join()
        if self.transcoder is not None:
            self.transcoder.close()
        self.extractor.close()


class StreamingPipeline:
    """Synchronous mode: no disk buffering and no job registry.

    Candidates are tried in order through the retry orchestrator. An attempt
    counts as started once the first payload chunk is available; before that
    every failure is classified like a materializing attempt, so the caller
    can still answer with a structured error.
    """

    def __init__(
        self,
        extractor: ExtractionAdapter,
        transcoder: TranscodeAdapter,
        orchestrator: RetryOrchestrator,
        *,
        always_transcode: bool = STREAM_ALWAYS_TRANSCODE,
        media_type: str = OUTPUT_MEDIA_TYPE,
        chunk_size: int = STREAM_CHUNK_SIZE,
    ) -> None:
        self.extractor = extractor
        self.transcoder = transcoder
        self.orchestrator = orchestrator
        self.always_transcode = always_transcode
        self.media_type = media_type
        self.chunk_size = chunk_size

    def open(self, source_ref: SourceRef, trim_range=None) -> StreamSession:
        trim = coerce_trim_range(trim_range)
        filename = build_output_filename(source_ref.video_id, trim)
        return self.orchestrator.run(
            candidates_for(source_ref),
            lambda url: self._attempt(url, trim, filename),
            context={"mode": "stream", "video_id": source_ref.video_id},
        )

    def _attempt(self, url: str, trim: Optional[TrimRange], filename: str) -> StreamSession:
        extractor = self.extractor.spawn(url)
        transcoder = None
        relay = None
        try:
            if trim is not None or self.always_transcode:
                transcoder = self.transcoder.spawn(subprocess.PIPE, trim)
                relay = PipeRelay(extractor.stdout, transcoder.stdin, self.chunk_size)
                output = transcoder.stdout
            else:
                output = extractor.stdout
            first_chunk = output.read(self.chunk_size)
        except BaseException:
            if transcoder is not None:
                transcoder.close()
            extractor.close()
            if relay is not None:
                relay.join()
            raise

        session = StreamSession(
            url=url,
            filename=filename,
            media_type=self.media_type,
            extractor=extractor,
            transcoder=transcoder,
            first_chunk=first_chunk,
            chunk_size=self.chunk_size,
            relay=relay,
            bounded=trim is not None and trim.end is not None,
        )
        if first_chunk:
            log_event(logging.INFO, "stream_started", url=url, transcoded=transcoder is not None)
            return session
        try:
            self._raise_for_empty(session)
        finally:
            session.close()

    def _raise_for_empty(self, session: StreamSession) -> None:
        extractor_rc = session.extractor.wait()
        if session.transcoder is None:
            self.extractor.raise_for_outcome(session.extractor, extractor_rc, session.url, 0)
            return
        session.relay.join()
        # A clean extractor exit with nothing relayed is an empty candidate, not a transcode fault.
        self.extractor.raise_for_outcome(session.extractor, extractor_rc, session.url, session.relay.bytes_relayed)
        transcoder_rc = session.transcoder.wait()
        self.transcoder.raise_for_outcome(session.transcoder, transcoder_rc, 0)
