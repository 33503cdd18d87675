"""Integration tests for the lesson video backend service."""

from __future__ import annotations

import argparse
import contextlib
import json
import os
import threading
import time
from concurrent import futures
from pathlib import Path
from typing import Callable, Iterator
from urllib.error import HTTPError
from urllib.request import Request, urlopen

import pytest

import render_lesson_video
from backend import server
from domain.lesson_content import ContentRecord, ContentRequest
from domain.lesson_script import LessonPipelineError
from service.content_store import ContentStore
from service.script_provider import GeneratedContent

GENERATE_PAYLOAD = {
    "subject": "science",
    "title": "Why Is the Sky Blue?",
    "ageGroup": "6-8",
    "difficultyLevel": "beginner",
    "contentFormat": "video",
    "duration": "5",
    "aiModel": "groq",
}

SCRIPT_CONTENT = {
    "opening": "Look up!",
    "mainContent": [{"sectionTitle": "Light", "script": "Sunlight scatters."}],
    "conclusion": "Now you know.",
}


class FakeProvider:
    """Provider double returning a fixed script."""

    def __init__(self) -> None:
        self.requests: list[ContentRequest] = []

    def generate(self, request: ContentRequest) -> GeneratedContent:
        self.requests.append(request)
        return GeneratedContent(
            script_content=SCRIPT_CONTENT,
            learning_objectives=["scattering"],
            materials=["flashlight"],
            visual_references=[],
        )


class FailingProvider:
    """Provider double that always fails."""

    def generate(self, request: ContentRequest) -> GeneratedContent:
        raise LessonPipelineError("lesson_video.provider.failed", "quota exceeded")


def fake_video_generator(
    record: ContentRecord, settings: render_lesson_video.RenderSettings
) -> str:
    """Write a placeholder MP4 where the real pipeline would."""
    os.makedirs(settings.video_dir, exist_ok=True)
    video_path = os.path.join(settings.video_dir, f"lesson_{record.content_id}.mp4")
    with open(video_path, "wb") as handle:
        handle.write(b"fake-mp4")
    return video_path


def failing_video_generator(
    record: ContentRecord, settings: render_lesson_video.RenderSettings
) -> str:
    raise LessonPipelineError(
        "lesson_video.ffmpeg.process_failed", "ffmpeg failed with exit code 1."
    )


def build_config(tmp_path: Path) -> server.BackendConfig:
    """Build a backend config bound to an ephemeral local port."""
    return server.BackendConfig(
        host="127.0.0.1",
        port=0,
        public_root=str(tmp_path / "public"),
        scratch_dir=str(tmp_path / "temp"),
        fonts_dir=None,
        ffmpeg_path="ffmpeg",
        max_workers=1,
        max_body_bytes=64 * 1024,
        allowed_origins=(),
        allow_any_origin=True,
    )


@contextlib.contextmanager
def running_backend(
    tmp_path: Path,
    provider: object | None = None,
    video_generator: Callable[..., str] = fake_video_generator,
) -> Iterator[tuple[str, ContentStore, server.BackendConfig]]:
    """Run the backend in a background thread for the duration of a test."""
    config = build_config(tmp_path)
    store = ContentStore()
    executor = futures.ThreadPoolExecutor(max_workers=1)
    chosen_provider = provider if provider is not None else FakeProvider()
    http_server = server.build_server(
        config,
        store,
        executor,
        provider_factory=lambda _model: chosen_provider,
        video_generator=video_generator,
    )
    thread = threading.Thread(target=http_server.serve_forever, daemon=True)
    thread.start()
    host, port = http_server.server_address[:2]
    try:
        yield f"http://{host}:{port}", store, config
    finally:
        http_server.shutdown()
        http_server.server_close()
        executor.shutdown(wait=True)
        thread.join(timeout=3)


def request_json(
    method: str, url: str, payload: object | None = None
) -> tuple[int, object]:
    """Send a JSON request and decode the JSON response."""
    data = None if payload is None else json.dumps(payload).encode("utf-8")
    request = Request(url, data=data, method=method)
    if data is not None:
        request.add_header("Content-Type", "application/json")
    try:
        with urlopen(request, timeout=5) as response:
            body = response.read()
            status = response.status
    except HTTPError as exc:
        body = exc.read()
        status = exc.code
    if not body:
        return status, None
    return status, json.loads(body.decode("utf-8"))


def request_raw(url: str, headers: dict[str, str] | None = None) -> tuple[int, dict[str, str], bytes]:
    """Fetch raw bytes and headers."""
    request = Request(url, headers=headers or {})
    try:
        with urlopen(request, timeout=5) as response:
            return response.status, dict(response.headers), response.read()
    except HTTPError as exc:
        return exc.code, dict(exc.headers), exc.read()


def wait_for_status(
    base_url: str, content_id: int, statuses: set[str], timeout_seconds: float = 5.0
) -> dict[str, object]:
    """Poll a content record until it reaches one of the statuses."""
    start = time.monotonic()
    while True:
        status, payload = request_json("GET", f"{base_url}/api/contents/{content_id}")
        assert status == 200
        assert isinstance(payload, dict)
        if payload["status"] in statuses:
            return payload
        if time.monotonic() - start > timeout_seconds:
            raise TimeoutError(f"content {content_id} stuck in {payload['status']}")
        time.sleep(0.05)


def test_health(tmp_path: Path) -> None:
    """Health endpoint reports ok."""
    with running_backend(tmp_path) as (base_url, _store, _config):
        status, payload = request_json("GET", f"{base_url}/health")

    assert status == 200
    assert payload == {"status": "ok"}


def test_generate_content_completes(tmp_path: Path) -> None:
    """Generation answers 201 immediately and the video completes in the background."""
    provider = FakeProvider()
    with running_backend(tmp_path, provider=provider) as (base_url, _store, _config):
        status, payload = request_json("POST", f"{base_url}/api/generate-content", GENERATE_PAYLOAD)

        assert status == 201
        assert isinstance(payload, dict)
        assert payload["id"] == 1
        assert payload["status"] == "processing"
        assert payload["scriptContent"] == SCRIPT_CONTENT
        assert payload["aiModel"] == "groq"

        final = wait_for_status(base_url, 1, {"completed", "error"})

    assert final["status"] == "completed"
    assert final["videoUrl"] == "/videos/lesson_1.mp4"
    assert final["errorMessage"] is None
    assert provider.requests[0].title == "Why Is the Sky Blue?"


def test_generate_content_records_video_errors(tmp_path: Path) -> None:
    """Pipeline failures mark the record as error with the coded message."""
    with running_backend(tmp_path, video_generator=failing_video_generator) as (
        base_url,
        _store,
        _config,
    ):
        status, _payload = request_json(
            "POST", f"{base_url}/api/generate-content", GENERATE_PAYLOAD
        )
        assert status == 201

        final = wait_for_status(base_url, 1, {"completed", "error"})

    assert final["status"] == "error"
    assert final["videoUrl"] is None
    assert str(final["errorMessage"]).startswith("lesson_video.ffmpeg.process_failed:")


def test_generate_content_requires_fields(tmp_path: Path) -> None:
    """Missing request fields are rejected with 400."""
    payload = dict(GENERATE_PAYLOAD)
    del payload["ageGroup"]
    with running_backend(tmp_path) as (base_url, store, _config):
        status, body = request_json("POST", f"{base_url}/api/generate-content", payload)

        assert store.list_records() == []

    assert status == 400
    assert isinstance(body, dict)
    assert body["message"] == "Missing required fields"
    assert "lesson_video.input.invalid_request" in str(body["error"])
    assert "ageGroup" in str(body["error"])


def test_generate_content_provider_failure(tmp_path: Path) -> None:
    """Provider failures answer 500 without storing a record."""
    with running_backend(tmp_path, provider=FailingProvider()) as (base_url, store, _config):
        status, body = request_json(
            "POST", f"{base_url}/api/generate-content", GENERATE_PAYLOAD
        )

        assert store.list_records() == []

    assert status == 500
    assert isinstance(body, dict)
    assert body["message"] == "Failed to generate content"
    assert body["error"] == "lesson_video.provider.failed: quota exceeded"


def test_invalid_json_body(tmp_path: Path) -> None:
    """Malformed bodies are rejected."""
    with running_backend(tmp_path) as (base_url, _store, _config):
        request = Request(
            f"{base_url}/api/contents",
            data=b"{not json",
            method="POST",
            headers={"Content-Type": "application/json"},
        )
        with pytest.raises(HTTPError) as excinfo:
            urlopen(request, timeout=5)

    assert excinfo.value.code == 400


def test_content_crud(tmp_path: Path) -> None:
    """Contents can be created, listed, updated and deleted."""
    with running_backend(tmp_path) as (base_url, _store, _config):
        status, created = request_json(
            "POST",
            f"{base_url}/api/contents",
            {"title": "Shapes", "subject": "visual-arts", "ageGroup": "4-6"},
        )
        assert status == 201
        assert isinstance(created, dict)
        assert created["status"] == "draft"

        status, listing = request_json("GET", f"{base_url}/api/contents")
        assert status == 200
        assert isinstance(listing, list)
        assert [item["title"] for item in listing] == ["Shapes"]

        status, updated = request_json(
            "PATCH", f"{base_url}/api/contents/1", {"title": "Shapes and Lines"}
        )
        assert status == 200
        assert isinstance(updated, dict)
        assert updated["title"] == "Shapes and Lines"
        assert updated["ageGroup"] == "4-6"

        status, invalid = request_json(
            "PATCH", f"{base_url}/api/contents/1", {"status": "exploded"}
        )
        assert status == 400

        status, _ = request_json("DELETE", f"{base_url}/api/contents/1")
        assert status == 204

        status, missing = request_json("GET", f"{base_url}/api/contents/1")
        assert status == 404
        assert isinstance(missing, dict)
        assert "lesson_video_backend.content.not_found" in str(missing["error"])

        status, _ = request_json("DELETE", f"{base_url}/api/contents/1")
        assert status == 404


def test_create_content_requires_title_and_subject(tmp_path: Path) -> None:
    """Records need a title and a subject."""
    with running_backend(tmp_path) as (base_url, _store, _config):
        status, body = request_json("POST", f"{base_url}/api/contents", {"title": "Only"})

    assert status == 400
    assert isinstance(body, dict)
    assert body["message"] == "Invalid content data"


def test_regenerate_video(tmp_path: Path) -> None:
    """A stored script can be rendered again on request."""
    with running_backend(tmp_path) as (base_url, _store, _config):
        request_json(
            "POST",
            f"{base_url}/api/contents",
            {"title": "Sky", "subject": "science", "scriptContent": SCRIPT_CONTENT},
        )

        status, payload = request_json("POST", f"{base_url}/api/contents/1/generate-video")
        assert status == 202
        assert isinstance(payload, dict)
        assert payload["status"] == "processing"

        final = wait_for_status(base_url, 1, {"completed", "error"})

    assert final["status"] == "completed"
    assert final["videoUrl"] == "/videos/lesson_1.mp4"


def test_regenerate_video_without_script(tmp_path: Path) -> None:
    """Records without a script cannot be rendered."""
    with running_backend(tmp_path) as (base_url, _store, _config):
        request_json("POST", f"{base_url}/api/contents", {"title": "Sky", "subject": "science"})

        status, body = request_json("POST", f"{base_url}/api/contents/1/generate-video")
        missing_status, _ = request_json("POST", f"{base_url}/api/contents/9/generate-video")

    assert status == 400
    assert isinstance(body, dict)
    assert "lesson_video_backend.content.script_missing" in str(body["error"])
    assert missing_status == 404


def test_video_serving_supports_ranges(tmp_path: Path) -> None:
    """Videos are served whole or by byte range with caching headers."""
    with running_backend(tmp_path) as (base_url, _store, config):
        os.makedirs(config.video_dir, exist_ok=True)
        Path(config.video_dir, "clip.mp4").write_bytes(b"0123456789")

        status, headers, body = request_raw(f"{base_url}/videos/clip.mp4")
        assert status == 200
        assert body == b"0123456789"
        assert headers["Accept-Ranges"] == "bytes"
        assert headers["Content-Type"] == "video/mp4"
        assert "max-age=86400" in headers["Cache-Control"]

        status, headers, body = request_raw(
            f"{base_url}/videos/clip.mp4", {"Range": "bytes=2-5"}
        )
        assert status == 206
        assert body == b"2345"
        assert headers["Content-Range"] == "bytes 2-5/10"

        status, headers, body = request_raw(
            f"{base_url}/videos/clip.mp4", {"Range": "bytes=-3"}
        )
        assert status == 206
        assert body == b"789"

        status, headers, _body = request_raw(
            f"{base_url}/videos/clip.mp4", {"Range": "bytes=50-"}
        )
        assert status == 416
        assert headers["Content-Range"] == "bytes */10"


def test_video_serving_rejects_missing_and_traversal(tmp_path: Path) -> None:
    """Only files directly inside the video directory are served."""
    with running_backend(tmp_path) as (base_url, _store, config):
        Path(config.public_root).mkdir(parents=True, exist_ok=True)
        Path(config.public_root, "secret.mp4").write_bytes(b"secret")

        missing_status, _headers, _body = request_raw(f"{base_url}/videos/none.mp4")
        traversal_status, _headers, _body = request_raw(f"{base_url}/videos/..%2Fsecret.mp4")

    assert missing_status == 404
    assert traversal_status == 404


def test_unknown_path(tmp_path: Path) -> None:
    """Unknown routes answer 404 with a coded error."""
    with running_backend(tmp_path) as (base_url, _store, _config):
        status, body = request_json("GET", f"{base_url}/api/unknown")

    assert status == 404
    assert isinstance(body, dict)
    assert body["error"] == "lesson_video_backend.path.not_found: not found"


@pytest.mark.parametrize(
    "header,expected",
    [
        ("bytes=0-0", (0, 0)),
        ("bytes=4-", (4, 9)),
        ("bytes=-4", (6, 9)),
        ("bytes=8-100", (8, 9)),
        ("bytes=-100", (0, 9)),
    ],
)
def test_parse_byte_range(header: str, expected: tuple[int, int]) -> None:
    """Byte ranges resolve to inclusive offsets within the file."""
    assert server.parse_byte_range(header, 10) == expected


@pytest.mark.parametrize("header", ["bytes=10-", "bytes=5-2", "items=0-1", "bytes=-", "bytes=-0"])
def test_parse_byte_range_rejects_unsatisfiable(header: str) -> None:
    """Ranges outside the file are rejected."""
    with pytest.raises(server.BackendError) as excinfo:
        server.parse_byte_range(header, 10)

    assert excinfo.value.code == "lesson_video_backend.video.range_not_satisfiable"


def build_args(**overrides: object) -> argparse.Namespace:
    """Parse backend args with overrides applied."""
    args = server.parse_args([])
    for key, value in overrides.items():
        setattr(args, key, value)
    return args


def test_load_config_reads_environment() -> None:
    """Environment variables configure the backend."""
    env = {
        "LESSON_VIDEO_BACKEND_PORT": "9090",
        "LESSON_VIDEO_BACKEND_PUBLIC_ROOT": "/srv/public",
        "LESSON_VIDEO_BACKEND_FONTS_DIR": "/srv/fonts",
        "LESSON_VIDEO_BACKEND_MAX_WORKERS": "3",
        "LESSON_VIDEO_BACKEND_ALLOWED_ORIGINS": "https://a.example, https://b.example",
    }

    config = server.load_config(build_args(), env)

    assert config.port == 9090
    assert config.public_root == "/srv/public"
    assert config.video_dir == os.path.join("/srv/public", "videos")
    assert config.fonts_dir == "/srv/fonts"
    assert config.max_workers == 3
    assert config.allowed_origins == ("https://a.example", "https://b.example")
    assert config.allow_any_origin is False
    assert config.render_settings().public_root == "/srv/public"


def test_load_config_args_override_environment() -> None:
    """CLI arguments win over environment values."""
    env = {"LESSON_VIDEO_BACKEND_PORT": "9090", "LESSON_VIDEO_BACKEND_HOST": "10.0.0.1"}

    config = server.load_config(build_args(port=7070, host="127.0.0.1"), env)

    assert config.port == 7070
    assert config.host == "127.0.0.1"
    assert config.allow_any_origin is True


def test_load_config_rejects_bad_values() -> None:
    """Non-numeric or non-positive values are configuration errors."""
    with pytest.raises(ValueError):
        server.load_config(build_args(), {"LESSON_VIDEO_BACKEND_MAX_WORKERS": "zero"})
    with pytest.raises(ValueError):
        server.load_config(build_args(max_workers=0), {})


def test_process_video_job_rejects_paths_outside_public_root(tmp_path: Path) -> None:
    """Videos written outside the public root cannot be given a URL."""
    store = ContentStore()
    record = store.create(title="Sky", subject="science", script_content="Hello")
    settings = build_config(tmp_path).render_settings()

    def outside_generator(
        _record: ContentRecord, _settings: render_lesson_video.RenderSettings
    ) -> str:
        return str(tmp_path / "elsewhere.mp4")

    server.process_video_job(store, record.content_id, settings, outside_generator)

    stored = store.get(record.content_id)
    assert stored is not None
    assert stored.status.value == "error"
    assert str(stored.error_message).startswith("lesson_video.input.invalid_config:")


def test_regenerate_video_rejects_second_request_while_busy(tmp_path: Path) -> None:
    """A record already rendering answers 409 and no second job starts."""
    release = threading.Event()
    started: list[int] = []

    def blocking_generator(
        record: ContentRecord, settings: render_lesson_video.RenderSettings
    ) -> str:
        started.append(record.content_id)
        release.wait(timeout=5)
        return fake_video_generator(record, settings)

    with running_backend(tmp_path, video_generator=blocking_generator) as (
        base_url,
        _store,
        _config,
    ):
        request_json(
            "POST",
            f"{base_url}/api/contents",
            {"title": "Sky", "subject": "science", "scriptContent": SCRIPT_CONTENT},
        )
        first_status, _ = request_json("POST", f"{base_url}/api/contents/1/generate-video")
        second_status, body = request_json(
            "POST", f"{base_url}/api/contents/1/generate-video"
        )
        release.set()
        final = wait_for_status(base_url, 1, {"completed", "error"})

    assert first_status == 202
    assert second_status == 409
    assert isinstance(body, dict)
    assert "lesson_video_backend.job.in_progress" in str(body["error"])
    assert started == [1]
    assert final["status"] == "completed"


def test_videos_are_also_served_under_api_prefix(tmp_path: Path) -> None:
    """The /api/videos/ path serves the same files as /videos/."""
    with running_backend(tmp_path) as (base_url, _store, config):
        os.makedirs(config.video_dir, exist_ok=True)
        Path(config.video_dir, "clip.mp4").write_bytes(b"0123456789")

        status, headers, body = request_raw(
            f"{base_url}/api/videos/clip.mp4", {"Range": "bytes=0-3"}
        )
        missing_status, _headers, _body = request_raw(f"{base_url}/api/videos/none.mp4")

    assert status == 206
    assert body == b"0123"
    assert headers["Content-Range"] == "bytes 0-3/10"
    assert missing_status == 404
