"""HTTP backend service for lesson content and video generation."""

from __future__ import annotations

import argparse
import dataclasses
import json
import logging
import os
import re
import sys
from concurrent import futures
from http import HTTPStatus
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Callable, Mapping, Sequence
from urllib.parse import unquote, urlparse

import render_lesson_video
from domain.lesson_content import (
    ContentStatus,
    parse_content_request,
    parse_record_fields,
    resolve_video_url,
)
from domain.lesson_script import LessonPipelineError, LessonValidationError
from service.content_store import ContentStore
from service.script_provider import ScriptProvider, select_provider

LOGGER = logging.getLogger("lesson_video_backend")

DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 8080
DEFAULT_PUBLIC_ROOT = "public"
DEFAULT_SCRATCH_DIR = "temp"
DEFAULT_MAX_WORKERS = 2
DEFAULT_MAX_BODY_BYTES = 1024 * 1024
VIDEO_CACHE_SECONDS = 86400
VIDEO_CHUNK_BYTES = 64 * 1024
VIDEO_ROUTE_PREFIXES = ("/videos/", "/api/videos/")

HOST_ENV = "LESSON_VIDEO_BACKEND_HOST"
PORT_ENV = "LESSON_VIDEO_BACKEND_PORT"
PUBLIC_ROOT_ENV = "LESSON_VIDEO_BACKEND_PUBLIC_ROOT"
SCRATCH_DIR_ENV = "LESSON_VIDEO_BACKEND_SCRATCH_DIR"
FONTS_DIR_ENV = "LESSON_VIDEO_BACKEND_FONTS_DIR"
FFMPEG_PATH_ENV = "LESSON_VIDEO_BACKEND_FFMPEG_PATH"
MAX_WORKERS_ENV = "LESSON_VIDEO_BACKEND_MAX_WORKERS"
MAX_BODY_BYTES_ENV = "LESSON_VIDEO_BACKEND_MAX_BODY_BYTES"
ALLOWED_ORIGINS_ENV = "LESSON_VIDEO_BACKEND_ALLOWED_ORIGINS"
LOG_LEVEL_ENV = "LESSON_VIDEO_BACKEND_LOG_LEVEL"

BACKEND_CONFIG_CODE = "lesson_video_backend.config.invalid"
BACKEND_REQUEST_CODE = "lesson_video_backend.request.invalid"
BACKEND_CONTENT_NOT_FOUND_CODE = "lesson_video_backend.content.not_found"
BACKEND_SCRIPT_MISSING_CODE = "lesson_video_backend.content.script_missing"
BACKEND_JOB_BUSY_CODE = "lesson_video_backend.job.in_progress"
BACKEND_VIDEO_NOT_FOUND_CODE = "lesson_video_backend.video.not_found"
BACKEND_RANGE_CODE = "lesson_video_backend.video.range_not_satisfiable"
BACKEND_NOT_FOUND_CODE = "lesson_video_backend.path.not_found"
BACKEND_UNHANDLED_CODE = "lesson_video_backend.unhandled_error"

CONTENT_PATH_PATTERN = re.compile(r"^/api/contents/(\d+)(/generate-video)?/?$")
RANGE_PATTERN = re.compile(r"^bytes=(\d*)-(\d*)$")

ProviderFactory = Callable[[str], ScriptProvider]
VideoGenerator = Callable[..., str]


class BackendError(RuntimeError):
    """Backend error with a stable code."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code


@dataclasses.dataclass(frozen=True)
class BackendConfig:
    """Backend configuration."""

    host: str
    port: int
    public_root: str
    scratch_dir: str
    fonts_dir: str | None
    ffmpeg_path: str
    max_workers: int
    max_body_bytes: int
    allowed_origins: tuple[str, ...]
    allow_any_origin: bool

    def __post_init__(self) -> None:
        if not self.host.strip():
            raise ValueError("host must be non-empty")
        if self.port < 0 or self.port > 65535:
            raise ValueError("port must be between 0 and 65535")
        if not self.public_root.strip():
            raise ValueError("public-root must be non-empty")
        if not self.scratch_dir.strip():
            raise ValueError("scratch-dir must be non-empty")
        if not self.ffmpeg_path.strip():
            raise ValueError("ffmpeg-path must be non-empty")
        if self.max_workers <= 0:
            raise ValueError("max-workers must be positive")
        if self.max_body_bytes <= 0:
            raise ValueError("max-body-bytes must be positive")

    @property
    def video_dir(self) -> str:
        return os.path.join(self.public_root, render_lesson_video.VIDEO_SUBDIR)

    def render_settings(self) -> render_lesson_video.RenderSettings:
        """Render settings for video jobs started by this backend."""
        return render_lesson_video.RenderSettings(
            scratch_dir=self.scratch_dir,
            public_root=self.public_root,
            fonts_dir=self.fonts_dir,
            ffmpeg_path=self.ffmpeg_path,
        )


def parse_positive_int(raw_value: str, label: str) -> int:
    """Parse a positive integer from a string."""
    try:
        value = int(raw_value)
    except ValueError as exc:
        raise ValueError(f"{label} must be an integer") from exc
    if value <= 0:
        raise ValueError(f"{label} must be positive")
    return value


def read_env_int(env: Mapping[str, str], key: str, label: str, fallback: int) -> int:
    """Read a positive integer from the environment."""
    raw_value = env.get(key, "").strip()
    if not raw_value:
        return fallback
    return parse_positive_int(raw_value, label)


def parse_allowed_origins(raw_value: str) -> tuple[tuple[str, ...], bool]:
    """Parse allowed origins from a comma-delimited string."""
    trimmed = raw_value.strip()
    if not trimmed or trimmed == "*":
        return tuple(), True
    values = tuple(value.strip() for value in trimmed.split(",") if value.strip())
    return values, False


def parse_args(argv: Sequence[str]) -> argparse.Namespace:
    """Parse backend CLI arguments."""
    parser = argparse.ArgumentParser(prog="lesson_video_backend.py", add_help=True)
    parser.add_argument("--host", default=None)
    parser.add_argument("--port", type=int, default=None)
    parser.add_argument("--public-root", default=None)
    parser.add_argument("--scratch-dir", default=None)
    parser.add_argument("--fonts-dir", default=None)
    parser.add_argument("--ffmpeg-path", default=None)
    parser.add_argument("--max-workers", type=int, default=None)
    parser.add_argument("--max-body-bytes", type=int, default=None)
    parser.add_argument("--allowed-origins", default=None)
    return parser.parse_args(list(argv))


def configure_logging(env: Mapping[str, str]) -> None:
    """Configure logging from environment."""
    level_name = env.get(LOG_LEVEL_ENV, "INFO").strip().upper()
    level = logging.INFO
    if level_name == "DEBUG":
        level = logging.DEBUG
    elif level_name == "WARNING":
        level = logging.WARNING
    elif level_name == "ERROR":
        level = logging.ERROR
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def load_config(args: argparse.Namespace, env: Mapping[str, str]) -> BackendConfig:
    """Load backend configuration from args and environment."""
    host = env.get(HOST_ENV, DEFAULT_HOST)
    if args.host:
        host = args.host
    port = read_env_int(env, PORT_ENV, "port", DEFAULT_PORT)
    if args.port is not None:
        port = args.port
    public_root = env.get(PUBLIC_ROOT_ENV, DEFAULT_PUBLIC_ROOT)
    if args.public_root:
        public_root = args.public_root
    scratch_dir = env.get(SCRATCH_DIR_ENV, DEFAULT_SCRATCH_DIR)
    if args.scratch_dir:
        scratch_dir = args.scratch_dir
    fonts_dir = env.get(FONTS_DIR_ENV, "").strip() or None
    if args.fonts_dir:
        fonts_dir = args.fonts_dir
    ffmpeg_path = env.get(FFMPEG_PATH_ENV, "ffmpeg")
    if args.ffmpeg_path is not None:
        ffmpeg_path = args.ffmpeg_path
    max_workers = read_env_int(env, MAX_WORKERS_ENV, "max-workers", DEFAULT_MAX_WORKERS)
    if args.max_workers is not None:
        max_workers = args.max_workers
    max_body_bytes = read_env_int(
        env, MAX_BODY_BYTES_ENV, "max-body-bytes", DEFAULT_MAX_BODY_BYTES
    )
    if args.max_body_bytes is not None:
        max_body_bytes = args.max_body_bytes
    allowed_raw = env.get(ALLOWED_ORIGINS_ENV, "").strip()
    if args.allowed_origins is not None:
        allowed_raw = args.allowed_origins
    allowed_origins, allow_any = parse_allowed_origins(allowed_raw)
    return BackendConfig(
        host=str(host),
        port=int(port),
        public_root=str(public_root),
        scratch_dir=str(scratch_dir),
        fonts_dir=fonts_dir,
        ffmpeg_path=str(ffmpeg_path),
        max_workers=int(max_workers),
        max_body_bytes=int(max_body_bytes),
        allowed_origins=allowed_origins,
        allow_any_origin=allow_any,
    )


def parse_byte_range(header_value: str, file_size: int) -> tuple[int, int]:
    """Parse a single HTTP byte range into inclusive (start, end) offsets."""
    match = RANGE_PATTERN.match(header_value.strip())
    if not match:
        raise BackendError(BACKEND_RANGE_CODE, f"unsupported range: {header_value}")
    start_raw, end_raw = match.groups()
    if not start_raw and not end_raw:
        raise BackendError(BACKEND_RANGE_CODE, f"unsupported range: {header_value}")
    if not start_raw:
        suffix_length = int(end_raw)
        if suffix_length <= 0 or file_size <= 0:
            raise BackendError(BACKEND_RANGE_CODE, "empty suffix range")
        return max(0, file_size - suffix_length), file_size - 1
    start = int(start_raw)
    end = int(end_raw) if end_raw else file_size - 1
    end = min(end, file_size - 1)
    if start >= file_size or start > end:
        raise BackendError(
            BACKEND_RANGE_CODE, f"range {header_value} outside file of {file_size} bytes"
        )
    return start, end


def resolve_video_file(video_dir: str, raw_name: str) -> str | None:
    """Map a request file name onto a file inside the video directory."""
    filename = unquote(raw_name)
    if not filename or filename != os.path.basename(filename) or filename.startswith("."):
        return None
    candidate = os.path.join(video_dir, filename)
    if not os.path.isfile(candidate):
        return None
    return candidate


def process_video_job(
    store: ContentStore,
    content_id: int,
    settings: render_lesson_video.RenderSettings,
    video_generator: VideoGenerator,
) -> None:
    """Render the stored script of one record and record the outcome."""
    record = store.get(content_id)
    if record is None:
        LOGGER.warning(
            "%s: content %s vanished before rendering", BACKEND_CONTENT_NOT_FOUND_CODE, content_id
        )
        return
    try:
        video_path = video_generator(record, settings)
        video_url = resolve_video_url(video_path, settings.public_root)
        store.mark_completed(content_id, video_url)
        LOGGER.info("lesson_video_backend.job.completed: content=%s url=%s", content_id, video_url)
    except (LessonValidationError, LessonPipelineError) as exc:
        LOGGER.error("%s: content=%s %s", exc.code, content_id, str(exc).strip())
        store.mark_error(content_id, f"{exc.code}: {exc}")
    except Exception as exc:
        LOGGER.error("%s: content=%s %s", BACKEND_UNHANDLED_CODE, content_id, str(exc).strip())
        store.mark_error(content_id, f"{BACKEND_UNHANDLED_CODE}: {str(exc).strip()}")


def build_server(
    config: BackendConfig,
    store: ContentStore,
    executor: futures.Executor,
    provider_factory: ProviderFactory = select_provider,
    video_generator: VideoGenerator = render_lesson_video.generate_video,
) -> ThreadingHTTPServer:
    """Build the HTTP server bound to config.host and config.port."""
    settings = config.render_settings()

    def submit_video_job(content_id: int) -> None:
        executor.submit(process_video_job, store, content_id, settings, video_generator)

    class BackendHandler(BaseHTTPRequestHandler):
        """HTTP request handler for the backend service."""

        protocol_version = "HTTP/1.1"

        def log_message(self, format: str, *args: object) -> None:
            LOGGER.info("%s - %s", self.client_address[0], format % args)

        def send_cors_headers(self) -> None:
            origin = self.headers.get("Origin")
            if config.allow_any_origin:
                self.send_header("Access-Control-Allow-Origin", "*")
                return
            if origin and origin in config.allowed_origins:
                self.send_header("Access-Control-Allow-Origin", origin)

        def send_json(self, status: HTTPStatus, payload: object) -> None:
            body = json.dumps(payload, default=str).encode("utf-8")
            self.send_response(status)
            self.send_cors_headers()
            self.send_header("Content-Type", "application/json; charset=utf-8")
            self.send_header("Content-Length", str(len(body)))
            self.end_headers()
            self.wfile.write(body)

        def send_error_response(
            self, status: HTTPStatus, code: str, detail: str, message: str | None = None
        ) -> None:
            self.send_json(
                status,
                {"message": message or detail, "error": f"{code}: {detail}"},
            )

        def send_not_found(self) -> None:
            self.send_error_response(HTTPStatus.NOT_FOUND, BACKEND_NOT_FOUND_CODE, "not found")

        def send_content_not_found(self, content_id: int) -> None:
            self.send_error_response(
                HTTPStatus.NOT_FOUND,
                BACKEND_CONTENT_NOT_FOUND_CODE,
                f"content {content_id} not found",
                "Content not found",
            )

        def read_json_body(self) -> dict[str, Any]:
            raw_length = self.headers.get("Content-Length", "0").strip() or "0"
            try:
                content_length = int(raw_length)
            except ValueError as exc:
                raise BackendError(BACKEND_REQUEST_CODE, "invalid Content-Length") from exc
            if content_length < 0 or content_length > config.max_body_bytes:
                raise BackendError(BACKEND_REQUEST_CODE, "request body too large")
            body = self.rfile.read(content_length) if content_length else b""
            if not body.strip():
                return {}
            try:
                payload = json.loads(body.decode("utf-8"))
            except (UnicodeDecodeError, json.JSONDecodeError) as exc:
                raise BackendError(BACKEND_REQUEST_CODE, "request body is not valid JSON") from exc
            if not isinstance(payload, dict):
                raise BackendError(BACKEND_REQUEST_CODE, "request body must be a JSON object")
            return payload

        def do_OPTIONS(self) -> None:
            self.send_response(HTTPStatus.NO_CONTENT)
            self.send_cors_headers()
            self.send_header("Access-Control-Allow-Methods", "GET,POST,PATCH,DELETE,OPTIONS")
            self.send_header("Access-Control-Allow-Headers", "Content-Type, Range")
            self.send_header("Access-Control-Max-Age", "600")
            self.send_header("Content-Length", "0")
            self.end_headers()

        def do_GET(self) -> None:
            parsed = urlparse(self.path)
            if parsed.path == "/health":
                self.send_json(HTTPStatus.OK, {"status": "ok"})
                return
            if parsed.path in ("/api/contents", "/api/contents/"):
                records = store.list_records()
                self.send_json(HTTPStatus.OK, [record.to_payload() for record in records])
                return
            for prefix in VIDEO_ROUTE_PREFIXES:
                if parsed.path.startswith(prefix):
                    self.send_video(parsed.path[len(prefix):])
                    return
            match = CONTENT_PATH_PATTERN.match(parsed.path)
            if match and match.group(2) is None:
                content_id = int(match.group(1))
                record = store.get(content_id)
                if record is None:
                    self.send_content_not_found(content_id)
                    return
                self.send_json(HTTPStatus.OK, record.to_payload())
                return
            self.send_not_found()

        def send_video(self, raw_name: str) -> None:
            video_path = resolve_video_file(config.video_dir, raw_name)
            if video_path is None:
                self.send_error_response(
                    HTTPStatus.NOT_FOUND,
                    BACKEND_VIDEO_NOT_FOUND_CODE,
                    f"video not found: {raw_name}",
                    "Video not found",
                )
                return
            file_size = os.path.getsize(video_path)
            range_header = self.headers.get("Range")
            status = HTTPStatus.OK
            start, end = 0, file_size - 1
            if range_header:
                try:
                    start, end = parse_byte_range(range_header, file_size)
                except BackendError as exc:
                    self.send_response(HTTPStatus.REQUESTED_RANGE_NOT_SATISFIABLE)
                    self.send_cors_headers()
                    self.send_header("Content-Range", f"bytes */{file_size}")
                    self.send_header("Content-Length", "0")
                    self.end_headers()
                    LOGGER.info("%s: %s", exc.code, exc)
                    return
                status = HTTPStatus.PARTIAL_CONTENT
            length = max(0, end - start + 1)
            self.send_response(status)
            self.send_cors_headers()
            self.send_header("Content-Type", "video/mp4")
            self.send_header("Accept-Ranges", "bytes")
            self.send_header("Cache-Control", f"public, max-age={VIDEO_CACHE_SECONDS}")
            self.send_header("Content-Length", str(length))
            if status == HTTPStatus.PARTIAL_CONTENT:
                self.send_header("Content-Range", f"bytes {start}-{end}/{file_size}")
            self.end_headers()
            with open(video_path, "rb") as handle:
                handle.seek(start)
                remaining = length
                while remaining > 0:
                    chunk = handle.read(min(VIDEO_CHUNK_BYTES, remaining))
                    if not chunk:
                        break
                    self.wfile.write(chunk)
                    remaining -= len(chunk)

        def do_POST(self) -> None:
            parsed = urlparse(self.path)
            try:
                payload = self.read_json_body()
            except BackendError as exc:
                self.send_error_response(HTTPStatus.BAD_REQUEST, exc.code, str(exc))
                return
            if parsed.path == "/api/generate-content":
                self.generate_content(payload)
                return
            if parsed.path in ("/api/contents", "/api/contents/"):
                self.create_content(payload)
                return
            match = CONTENT_PATH_PATTERN.match(parsed.path)
            if match and match.group(2):
                self.regenerate_video(int(match.group(1)))
                return
            self.send_not_found()

        def create_content(self, payload: dict[str, Any]) -> None:
            try:
                fields = parse_record_fields(payload)
            except LessonValidationError as exc:
                self.send_error_response(HTTPStatus.BAD_REQUEST, exc.code, str(exc), "Invalid content data")
                return
            title = str(fields.pop("title", "") or "").strip()
            subject = str(fields.pop("subject", "") or "").strip()
            if not title or not subject:
                self.send_error_response(
                    HTTPStatus.BAD_REQUEST,
                    BACKEND_REQUEST_CODE,
                    "title and subject are required",
                    "Invalid content data",
                )
                return
            record = store.create(title=title, subject=subject, **fields)
            self.send_json(HTTPStatus.CREATED, record.to_payload())

        def generate_content(self, payload: dict[str, Any]) -> None:
            try:
                request = parse_content_request(payload)
            except LessonValidationError as exc:
                self.send_error_response(
                    HTTPStatus.BAD_REQUEST, exc.code, str(exc), "Missing required fields"
                )
                return
            try:
                provider = provider_factory(request.ai_model)
                generated = provider.generate(request)
            except LessonPipelineError as exc:
                LOGGER.error("%s: %s", exc.code, str(exc).strip())
                self.send_error_response(
                    HTTPStatus.INTERNAL_SERVER_ERROR,
                    exc.code,
                    str(exc),
                    "Failed to generate content",
                )
                return
            record = store.create_from_request(
                request,
                status=ContentStatus.PROCESSING,
                script_content=generated.script_content,
                learning_objectives=generated.learning_objectives,
                materials=generated.materials,
                visual_references=generated.visual_references,
            )
            LOGGER.info(
                "lesson_video_backend.content.created: id=%s subject=%s",
                record.content_id,
                record.subject,
            )
            submit_video_job(record.content_id)
            self.send_json(HTTPStatus.CREATED, record.to_payload())

        def regenerate_video(self, content_id: int) -> None:
            record = store.get(content_id)
            if record is None:
                self.send_content_not_found(content_id)
                return
            if record.script_content is None:
                self.send_error_response(
                    HTTPStatus.BAD_REQUEST,
                    BACKEND_SCRIPT_MISSING_CODE,
                    f"content {content_id} has no script",
                    "Content has no script",
                )
                return
            updated, claimed = store.begin_processing(content_id)
            if updated is None:
                self.send_content_not_found(content_id)
                return
            if not claimed:
                self.send_error_response(
                    HTTPStatus.CONFLICT,
                    BACKEND_JOB_BUSY_CODE,
                    f"content {content_id} is already processing",
                    "Video generation already in progress",
                )
                return
            submit_video_job(content_id)
            self.send_json(HTTPStatus.ACCEPTED, updated.to_payload())

        def do_PATCH(self) -> None:
            parsed = urlparse(self.path)
            match = CONTENT_PATH_PATTERN.match(parsed.path)
            if not match or match.group(2):
                self.send_not_found()
                return
            content_id = int(match.group(1))
            try:
                fields = parse_record_fields(self.read_json_body())
            except BackendError as exc:
                self.send_error_response(HTTPStatus.BAD_REQUEST, exc.code, str(exc))
                return
            except LessonValidationError as exc:
                self.send_error_response(
                    HTTPStatus.BAD_REQUEST, exc.code, str(exc), "Invalid content data"
                )
                return
            record = store.update(content_id, **fields)
            if record is None:
                self.send_content_not_found(content_id)
                return
            self.send_json(HTTPStatus.OK, record.to_payload())

        def do_DELETE(self) -> None:
            parsed = urlparse(self.path)
            match = CONTENT_PATH_PATTERN.match(parsed.path)
            if not match or match.group(2):
                self.send_not_found()
                return
            content_id = int(match.group(1))
            if not store.delete(content_id):
                self.send_content_not_found(content_id)
                return
            self.send_response(HTTPStatus.NO_CONTENT)
            self.send_cors_headers()
            self.send_header("Content-Length", "0")
            self.end_headers()

    return ThreadingHTTPServer((config.host, config.port), BackendHandler)


def serve(config: BackendConfig) -> None:
    """Run the backend HTTP server."""
    os.makedirs(config.video_dir, exist_ok=True)
    os.makedirs(config.scratch_dir, exist_ok=True)
    store = ContentStore()
    executor = futures.ThreadPoolExecutor(max_workers=config.max_workers)
    server = build_server(config, store, executor)
    LOGGER.info(
        "lesson_video_backend.server.started address=%s:%s", config.host, config.port
    )
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        LOGGER.info("lesson_video_backend.server.shutdown: received interrupt")
    finally:
        server.server_close()
        executor.shutdown(wait=True)


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entrypoint for the backend server."""
    env = dict(os.environ)
    configure_logging(env)
    try:
        args = parse_args(list(argv) if argv is not None else sys.argv[1:])
        config = load_config(args, env)
        config.render_settings()
    except ValueError as exc:
        LOGGER.error("%s: %s", BACKEND_CONFIG_CODE, exc)
        return 1
    serve(config)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
