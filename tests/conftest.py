import sys
import textwrap
from pathlib import Path

import pytest


# Ensure tests can import project packages regardless of how pytest is invoked.
ROOT = Path(__file__).resolve().parents[1]
ROOT_STR = str(ROOT)
if ROOT_STR not in sys.path:
    sys.path.insert(0, ROOT_STR)


# Stand-in for yt-dlp. FAKE_EXTRACTOR_MODE (ok|fail|empty|hang|truncate) applies to URLs
# containing FAKE_EXTRACTOR_MATCH; every other URL succeeds.
_FAKE_EXTRACTOR = """
import json
import os
import sys
import time

args = sys.argv[1:]
url = args[-1]
out = args[args.index("-o") + 1]
log_path = os.environ.get("FAKE_EXTRACTOR_LOG")
if log_path:
    with open(log_path, "a") as log:
        log.write(json.dumps(args) + "\\n")
sys.stderr.write("fake extractor fetching " + url + "\\n")
match = os.environ.get("FAKE_EXTRACTOR_MATCH", "")
mode = os.environ.get("FAKE_EXTRACTOR_MODE", "ok") if match in url else "ok"
payload = b"FAKEAUDIO" * 100

if mode == "hang":
    time.sleep(30)
if mode == "empty":
    sys.exit(0)
if out == "-":
    if mode == "fail":
        sys.exit(3)
    sys.stdout.buffer.write(payload)
    sys.stdout.flush()
    sys.exit(3 if mode == "truncate" else 0)
if mode == "truncate":
    mode = "fail"
if mode == "fail":
    with open(out.replace("%(ext)s", "part"), "wb") as handle:
        handle.write(b"partial")
    with open(out.replace("%(ext)s", "mp3"), "wb") as handle:
        handle.write(payload)
    sys.stderr.write("ERROR: unable to download\\n")
    sys.exit(3)
with open(out.replace("%(ext)s", "mp3"), "wb") as handle:
    handle.write(payload)
"""

# Stand-in for ffmpeg: copies input to output behind an "MP3:" prefix.
_FAKE_TRANSCODER = """
import json
import os
import sys

args = sys.argv[1:]
src = args[args.index("-i") + 1]
dst = args[-1]
log_path = os.environ.get("FAKE_TRANSCODER_LOG")
if log_path:
    with open(log_path, "a") as log:
        log.write(json.dumps(args) + "\\n")
if src == "pipe:0":
    data = sys.stdin.buffer.read()
else:
    with open(src, "rb") as handle:
        data = handle.read()
if os.environ.get("FAKE_TRANSCODER_FAIL"):
    sys.stderr.write("Invalid data found when processing input\\n")
    sys.exit(1)
out = b"MP3:" + data if data and not os.environ.get("FAKE_TRANSCODER_EMPTY") else b""
if dst == "pipe:1":
    sys.stdout.buffer.write(out)
else:
    with open(dst, "wb") as handle:
        handle.write(out)
"""


def _write_script(directory: Path, name: str, body: str) -> list[str]:
    script = directory / name
    script.write_text(textwrap.dedent(body))
    return [sys.executable, str(script)]


@pytest.fixture()
def fake_extractor_command(tmp_path):
    return _write_script(tmp_path, "fake_extractor.py", _FAKE_EXTRACTOR)


@pytest.fixture()
def fake_transcoder_command(tmp_path):
    return _write_script(tmp_path, "fake_transcoder.py", _FAKE_TRANSCODER)
