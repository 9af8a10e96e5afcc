from __future__ import annotations

import importlib
from pathlib import Path
from types import SimpleNamespace

from fastapi.testclient import TestClient

from download.worker import JobRunner
from engine.errors import AggregateError, EmptyArtifactError, TranscodeError
from engine.extract import ExtractedAudio
from engine.job_store import JobRegistry
from engine.retry import RetryOrchestrator
from engine.transcode import TranscodedAudio

SOURCE = "https://host/video/12345?h=abcdef"


class _FakeExtractor:
    def __init__(self, fail_all=False):
        self.fail_all = fail_all
        self.urls = []

    def extract(self, url, sink):
        self.urls.append(url)
        if self.fail_all:
            raise EmptyArtifactError(f"nothing for {url}", url=url)
        Path(sink).write_bytes(b"RAWAUDIO" * 8)
        return ExtractedAudio(url=url, size=64, path=Path(sink))


class _FakeTranscoder:
    def __init__(self):
        self.calls = []

    def transcode(self, source, trim_range=None, sink=None):
        self.calls.append(trim_range)
        data = Path(source).read_bytes()
        Path(sink).write_bytes(b"TRIM:" + data)
        return TranscodedAudio(size=len(data) + 5, path=Path(sink))


class _InlineRunner(JobRunner):
    """Runs the job on submit so tests see the terminal state immediately."""

    def dispatch(self, job_id):
        self.run_job(job_id)


class _FakeSession:
    def __init__(self, chunks, filename="12345.mp3"):
        self.filename = filename
        self.media_type = "audio/mpeg"
        self._chunks = chunks

    def iter_bytes(self):
        yield from self._chunks


class _FakePipeline:
    def __init__(self, session=None, error=None):
        self.session = session
        self.error = error
        self.opened = []

    def open(self, source_ref, trim_range=None):
        self.opened.append((source_ref, trim_range))
        if self.error is not None:
            raise self.error
        return self.session


def _build_client(tmp_path, *, extractor=None, pipeline=None, runner_cls=_InlineRunner):
    module = importlib.import_module("api.main")
    module.app.router.on_startup.clear()
    module.app.router.on_shutdown.clear()

    work_dir = tmp_path / "work"
    oneshot_dir = work_dir / "oneshot"
    oneshot_dir.mkdir(parents=True)
    registry = JobRegistry()
    extractor = extractor or _FakeExtractor()
    transcoder = _FakeTranscoder()
    orchestrator = RetryOrchestrator(attempts_per_candidate=2, retry_delay=0)

    module.app.state.paths = SimpleNamespace(work_dir=str(work_dir), oneshot_dir=str(oneshot_dir), log_dir=str(tmp_path))
    module.app.state.registry = registry
    module.app.state.runner = runner_cls(registry, extractor, transcoder, orchestrator, work_dir)
    module.app.state.pipeline = pipeline or _FakePipeline()
    client = TestClient(module.app)
    return client, SimpleNamespace(registry=registry, extractor=extractor, transcoder=transcoder, work_dir=work_dir)


def test_submit_poll_and_fetch_result_once(tmp_path) -> None:
    client, ctx = _build_client(tmp_path)

    response = client.post("/jobs", json={"sourceUrl": SOURCE, "startTime": 10, "endTime": 25})
    assert response.status_code == 202
    job_id = response.json()["jobId"]
    assert response.json()["status"] == "processing"
    assert ctx.extractor.urls == ["https://player.vimeo.com/video/12345?h=abcdef"]
    assert ctx.transcoder.calls[0].start == 10.0
    assert ctx.transcoder.calls[0].duration == 15.0

    status = client.get(f"/jobs/{job_id}")
    assert status.status_code == 200
    body = status.json()
    assert body["status"] == "completed"
    assert body["fileSize"] > 0
    assert client.get(f"/jobs/{job_id}").json() == body

    result = client.get(f"/jobs/{job_id}/result")
    assert result.status_code == 200
    assert result.headers["content-type"] == "audio/mpeg"
    assert 'filename="12345_10-25.mp3"' in result.headers["content-disposition"]
    assert result.content.startswith(b"TRIM:RAWAUDIO")

    again = client.get(f"/jobs/{job_id}/result")
    assert again.status_code == 404
    assert client.get(f"/jobs/{job_id}").status_code == 404
    assert list(ctx.work_dir.glob("*.mp3")) == []


def test_failed_job_reports_every_attempted_url(tmp_path) -> None:
    client, ctx = _build_client(tmp_path, extractor=_FakeExtractor(fail_all=True))

    job_id = client.post("/jobs", json={"sourceUrl": SOURCE}).json()["jobId"]
    body = client.get(f"/jobs/{job_id}").json()
    assert body["status"] == "failed"
    assert "https://vimeo.com/12345" in body["error"]
    assert len(ctx.extractor.urls) == 8

    result = client.get(f"/jobs/{job_id}/result")
    assert result.status_code == 409
    assert result.json()["status"] == "failed"
    assert "all candidates failed" in result.json()["error"]


def test_processing_job_result_is_accepted_not_ready(tmp_path) -> None:
    class _IdleRunner(JobRunner):
        def dispatch(self, job_id):
            pass

    client, _ctx = _build_client(tmp_path, runner_cls=_IdleRunner)
    job_id = client.post("/jobs", json={"sourceUrl": SOURCE}).json()["jobId"]
    result = client.get(f"/jobs/{job_id}/result")
    assert result.status_code == 202
    assert result.json()["status"] == "processing"


def test_invalid_submissions_are_rejected(tmp_path) -> None:
    client, ctx = _build_client(tmp_path)
    assert client.post("/jobs", json={"sourceUrl": "https://example.com/about"}).status_code == 400
    assert client.post("/jobs", json={"sourceUrl": SOURCE, "startTime": 25, "endTime": 10}).status_code == 400
    assert client.post("/jobs", json={"startTime": 1}).status_code == 400
    assert len(ctx.registry) == 0


def test_unknown_job_is_not_found(tmp_path) -> None:
    client, _ctx = _build_client(tmp_path)
    assert client.get("/jobs/nope").status_code == 404
    assert client.get("/jobs/nope/result").status_code == 404


def test_stream_sends_headers_and_payload(tmp_path) -> None:
    pipeline = _FakePipeline(session=_FakeSession([b"ID3", b"frames"], filename="12345_0-5.mp3"))
    client, _ctx = _build_client(tmp_path, pipeline=pipeline)

    response = client.post("/stream", json={"sourceUrl": SOURCE, "startTime": 0, "endTime": 5})
    assert response.status_code == 200
    assert response.headers["content-type"] == "audio/mpeg"
    assert 'filename="12345_0-5.mp3"' in response.headers["content-disposition"]
    assert response.content == b"ID3frames"
    source_ref, trim = pipeline.opened[0]
    assert source_ref.video_id == "12345"
    assert trim.end == 5.0


def test_stream_errors_before_first_byte_are_json(tmp_path) -> None:
    aggregate = AggregateError(EmptyArtifactError("empty"), ["https://vimeo.com/12345"])
    client, _ctx = _build_client(tmp_path, pipeline=_FakePipeline(error=aggregate))
    response = client.post("/stream", json={"sourceUrl": SOURCE})
    assert response.status_code == 502
    assert response.json()["attemptedUrls"] == ["https://vimeo.com/12345"]

    client, _ctx = _build_client(tmp_path / "t", pipeline=_FakePipeline(error=TranscodeError("bad codec")))
    response = client.post("/stream", json={"sourceUrl": SOURCE, "startTime": 1})
    assert response.status_code == 500
    assert response.json()["detail"] == "bad codec"


def test_stream_rejects_invalid_range_without_opening(tmp_path) -> None:
    pipeline = _FakePipeline(session=_FakeSession([b"x"]))
    client, _ctx = _build_client(tmp_path, pipeline=pipeline)
    response = client.post("/stream", json={"sourceUrl": SOURCE, "startTime": -3})
    assert response.status_code == 400
    assert pipeline.opened == []


def test_one_shot_download_deletes_file_after_response(tmp_path) -> None:
    client, ctx = _build_client(tmp_path)
    response = client.get("/download", params={"url": "https://vimeo.com/12345"})
    assert response.status_code == 200
    assert response.content == b"RAWAUDIO" * 8
    assert 'filename="12345.mp3"' in response.headers["content-disposition"]
    assert list((ctx.work_dir / "oneshot").iterdir()) == []


def test_one_shot_download_failure_is_bad_gateway(tmp_path) -> None:
    client, ctx = _build_client(tmp_path, extractor=_FakeExtractor(fail_all=True))
    response = client.get("/download", params={"url": SOURCE})
    assert response.status_code == 502
    assert list((ctx.work_dir / "oneshot").iterdir()) == []


def test_version_endpoint_reports_runtime(tmp_path) -> None:
    client, _ctx = _build_client(tmp_path)
    body = client.get("/api/version").json()
    assert {"app_version", "python_version", "yt_dlp_version"} <= set(body)
