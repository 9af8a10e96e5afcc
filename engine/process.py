"""Subprocess handle shared by the extraction and transcode adapters."""

from __future__ import annotations

import logging
import shlex
import subprocess
import threading
import time

logger = logging.getLogger(__name__)


def split_command(command):
    """Accept ``"yt-dlp"``, ``"python -m yt_dlp"`` or an argv list."""
    if isinstance(command, (list, tuple)):
        return [str(part) for part in command]
    return shlex.split(str(command))


def terminate_process(proc, *, grace_sec=3.0):
    """Best-effort terminate a subprocess quickly and safely."""
    if proc is None:
        return
    if proc.poll() is not None:
        return
    try:
        proc.terminate()
    except OSError:
        pass
    deadline = time.monotonic() + grace_sec
    while time.monotonic() < deadline:
        if proc.poll() is not None:
            return
        time.sleep(0.05)
    try:
        proc.kill()
    except OSError:
        pass


class ProcessHandle:
    """A running external process with a bounded stderr tail and a deadline.

    stdout is left to the caller (a pipe to read from, a file, or
    ``DEVNULL``); stderr is drained on a background thread and only the last
    ``diagnostic_limit`` bytes are kept. When ``timeout`` elapses the process
    is killed and ``timed_out`` is set.
    """

    def __init__(
        self,
        argv,
        *,
        stdin=None,
        stdout=subprocess.DEVNULL,
        timeout=None,
        diagnostic_limit=64 * 1024,
        name="process",
    ):
        self.argv = list(argv)
        self.name = name
        self.timed_out = False
        self._limit = max(0, int(diagnostic_limit))
        self._stderr = bytearray()
        self._proc = subprocess.Popen(
            self.argv,
            stdin=stdin if stdin is not None else subprocess.DEVNULL,
            stdout=stdout,
            stderr=subprocess.PIPE,
        )
        self._reader = threading.Thread(
            target=self._drain_stderr,
            name=f"{name}-stderr-reader",
            daemon=True,
        )
        self._reader.start()
        self._timer = None
        if timeout is not None and timeout > 0:
            self._timer = threading.Timer(timeout, self._on_deadline)
            self._timer.daemon = True
            self._timer.start()

    @property
    def pid(self):
        return self._proc.pid

    @property
    def stdin(self):
        return self._proc.stdin

    @property
    def stdout(self):
        return self._proc.stdout

    @property
    def returncode(self):
        return self._proc.returncode

    def poll(self):
        return self._proc.poll()

    def _drain_stderr(self):
        stream = self._proc.stderr
        if stream is None:
            return
        for chunk in iter(lambda: stream.read(4096), b""):
            self._stderr.extend(chunk)
            overflow = len(self._stderr) - self._limit
            if overflow > 0:
                del self._stderr[:overflow]
        try:
            stream.close()
        except OSError:
            pass

    def _on_deadline(self):
        if self._proc.poll() is None:
            self.timed_out = True
            logger.warning("%s exceeded its deadline pid=%s; killing", self.name, self._proc.pid)
            terminate_process(self._proc, grace_sec=1.0)

    def wait(self):
        returncode = self._proc.wait()
        if self._timer is not None:
            self._timer.cancel()
        self._reader.join(timeout=5)
        return returncode

    def kill(self):
        terminate_process(self._proc, grace_sec=1.0)

    def close(self):
        """Kill the process if still running and release its pipes."""
        self.kill()
        if self._proc.stdout is not None:
            try:
                self._proc.stdout.close()
            except OSError:
                pass
        self.wait()

    @property
    def diagnostics(self):
        return bytes(self._stderr).decode("utf-8", errors="replace").strip()
