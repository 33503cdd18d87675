"""Content records, generation requests and output naming."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import os
import re
from typing import Any, Mapping

from domain.lesson_script import INVALID_CONFIG_CODE, INVALID_REQUEST_CODE, LessonValidationError

REQUIRED_REQUEST_FIELDS = (
    "subject",
    "title",
    "ageGroup",
    "difficultyLevel",
    "contentFormat",
    "duration",
)
DEFAULT_AI_MODEL = "gemini"
TITLE_SANITIZE_PATTERN = re.compile(r"[^a-z0-9]", re.IGNORECASE)
SUBJECT_SANITIZE_PATTERN = re.compile(r"[^a-z0-9_-]+")


class ContentStatus(str, Enum):
    """Lifecycle states for a content record."""

    DRAFT = "draft"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"


@dataclass(frozen=True)
class ContentRequest:
    """Parameters for generating one lesson script."""

    subject: str
    title: str
    age_group: str
    difficulty_level: str
    content_format: str
    duration: str
    specific_instructions: str = ""
    ai_model: str = DEFAULT_AI_MODEL

    def __post_init__(self) -> None:
        for label, value in (
            ("subject", self.subject),
            ("title", self.title),
            ("ageGroup", self.age_group),
            ("difficultyLevel", self.difficulty_level),
            ("contentFormat", self.content_format),
            ("duration", self.duration),
        ):
            if not value.strip():
                raise LessonValidationError(
                    INVALID_REQUEST_CODE, f"{label} must be non-empty"
                )


@dataclass(frozen=True)
class ContentRecord:
    """Stored lesson content and its video generation state."""

    content_id: int
    title: str
    subject: str
    age_group: str = ""
    difficulty_level: str = ""
    content_format: str = ""
    duration: str = ""
    status: ContentStatus = ContentStatus.DRAFT
    script_content: Any = None
    learning_objectives: Any = None
    materials: Any = None
    visual_references: Any = None
    specific_instructions: str = ""
    video_url: str | None = None
    error_message: str | None = None
    ai_model: str | None = None
    created_at: float = 0.0

    def to_payload(self) -> dict[str, object]:
        """Build the JSON payload for API responses."""
        return {
            "id": self.content_id,
            "title": self.title,
            "subject": self.subject,
            "ageGroup": self.age_group,
            "difficultyLevel": self.difficulty_level,
            "contentFormat": self.content_format,
            "duration": self.duration,
            "status": self.status.value,
            "scriptContent": self.script_content,
            "learningObjectives": self.learning_objectives,
            "materials": self.materials,
            "visualReferences": self.visual_references,
            "specificInstructions": self.specific_instructions,
            "videoUrl": self.video_url,
            "errorMessage": self.error_message,
            "aiModel": self.ai_model,
            "createdAt": self.created_at,
        }


PAYLOAD_FIELD_NAMES = {
    "title": "title",
    "subject": "subject",
    "ageGroup": "age_group",
    "difficultyLevel": "difficulty_level",
    "contentFormat": "content_format",
    "duration": "duration",
    "status": "status",
    "scriptContent": "script_content",
    "learningObjectives": "learning_objectives",
    "materials": "materials",
    "visualReferences": "visual_references",
    "specificInstructions": "specific_instructions",
    "videoUrl": "video_url",
    "errorMessage": "error_message",
    "aiModel": "ai_model",
}


def parse_status(value: object) -> ContentStatus:
    """Parse a status string into a ContentStatus."""
    normalized = str(value).strip().lower()
    try:
        return ContentStatus(normalized)
    except ValueError as exc:
        raise LessonValidationError(
            INVALID_REQUEST_CODE, f"invalid status: {value!r}"
        ) from exc


def parse_record_fields(payload: Mapping[str, Any]) -> dict[str, Any]:
    """Map a camelCase API payload onto ContentRecord field names.

    Unknown keys are ignored; ``status`` is parsed into ContentStatus.
    """
    fields: dict[str, Any] = {}
    for key, value in payload.items():
        field_name = PAYLOAD_FIELD_NAMES.get(key)
        if field_name is None:
            continue
        if field_name == "status":
            value = parse_status(value)
        fields[field_name] = value
    return fields


def form_text(payload: Mapping[str, Any], key: str, default: str = "") -> str:
    """Read a request field as text."""
    value = payload.get(key)
    if value is None:
        return default
    return str(value).strip()


def parse_content_request(payload: Mapping[str, Any]) -> ContentRequest:
    """Parse a generate-content request body."""
    missing = [key for key in REQUIRED_REQUEST_FIELDS if not form_text(payload, key)]
    if missing:
        raise LessonValidationError(
            INVALID_REQUEST_CODE, f"missing required fields: {', '.join(missing)}"
        )
    return ContentRequest(
        subject=form_text(payload, "subject"),
        title=form_text(payload, "title"),
        age_group=form_text(payload, "ageGroup"),
        difficulty_level=form_text(payload, "difficultyLevel"),
        content_format=form_text(payload, "contentFormat"),
        duration=form_text(payload, "duration"),
        specific_instructions=form_text(payload, "specificInstructions"),
        ai_model=form_text(payload, "aiModel", DEFAULT_AI_MODEL).lower() or DEFAULT_AI_MODEL,
    )


def sanitize_title(title: str) -> str:
    """Replace every non-alphanumeric character with an underscore."""
    return TITLE_SANITIZE_PATTERN.sub("_", title).lower()


def build_output_filename(subject: str | None, title: str | None, timestamp_ms: int) -> str:
    """Build the MP4 file name for a finished video."""
    subject_text = str(subject or "").strip().lower()
    subject_slug = SUBJECT_SANITIZE_PATTERN.sub("-", subject_text) or "lesson"
    return f"{subject_slug}_{sanitize_title(str(title or ''))}_{timestamp_ms}.mp4"


def resolve_video_url(video_path: str, public_root: str) -> str:
    """Map an absolute video path under the public root to a web path."""
    root = os.path.abspath(public_root)
    target = os.path.abspath(video_path)
    try:
        common = os.path.commonpath([root, target])
    except ValueError as exc:
        raise LessonValidationError(
            INVALID_CONFIG_CODE, f"video path is outside public root: {video_path}"
        ) from exc
    if common != root:
        raise LessonValidationError(
            INVALID_CONFIG_CODE, f"video path is outside public root: {video_path}"
        )
    relative_path = os.path.relpath(target, root)
    return "/" + relative_path.replace(os.sep, "/")
