"""Domain types and script normalization for render_lesson_video."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import json
import re
from typing import Any, Tuple

INVALID_CONFIG_CODE = "lesson_video.input.invalid_config"
INVALID_REQUEST_CODE = "lesson_video.input.invalid_request"
SCRIPT_FILE_CODE = "lesson_video.input.script_file"
FONT_DIR_CODE = "lesson_video.input.fonts_missing"
FONT_LOAD_CODE = "lesson_video.input.fonts_unloadable"
INVALID_BLOCK_CODE = "lesson_video.internal.invalid_block"

STRUCTURED_KEYS = ("opening", "mainContent", "conclusion")
SECTION_KEYS = ("sectionTitle", "script")
FALLBACK_TEMPLATE = "No script content available for: {title}"
INTERACTIVE_HEADING = "Interactive Element:"

PARAGRAPH_SPLIT_PATTERN = re.compile(r"\n\s*\n|\\n\\n")
HEADING_PATTERN = re.compile(r"^\s*<strong>(.*?)</strong>(.*)$", re.IGNORECASE | re.DOTALL)
LINE_BREAK_PATTERN = re.compile(r"<br\s*/?>", re.IGNORECASE)
TAG_PATTERN = re.compile(r"</?[A-Za-z][^<>]*>")
WHITESPACE_PATTERN = re.compile(r"\s+")


class LessonValidationError(ValueError):
    """Validation error with a stable error code."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code


class LessonPipelineError(RuntimeError):
    """Runtime error with a stable error code."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code


class BlockKind(str, Enum):
    """Semantic role of a script block."""

    OPENING = "opening"
    SECTION = "section"
    INTERACTIVE = "interactive"
    SIMPLE = "simple"
    CONTENT = "content"
    CONCLUSION = "conclusion"
    RAW = "raw"


@dataclass(frozen=True)
class TextBlock:
    """One unit of script text in playback order."""

    kind: BlockKind
    display_text: str
    order: int
    source_index: int | None = None
    serialized: bool = False

    def __post_init__(self) -> None:
        if not isinstance(self.kind, BlockKind):
            raise LessonValidationError(INVALID_BLOCK_CODE, "block kind is invalid")
        if self.order < 0:
            raise LessonValidationError(
                INVALID_BLOCK_CODE, "block order must be non-negative"
            )

    @property
    def heading(self) -> str | None:
        heading, _ = split_heading(self.display_text)
        return heading

    @property
    def body(self) -> str:
        _, body = split_heading(self.display_text)
        return body

    @property
    def plain_text(self) -> str:
        """Heading and body joined as readable text."""
        heading, body = split_heading(self.display_text)
        if heading and body:
            return f"{heading}: {body}" if not heading.endswith(":") else f"{heading} {body}"
        return heading or body


def split_heading(display_text: str) -> Tuple[str | None, str]:
    """Split a leading <strong> heading from markup-free body text."""
    match = HEADING_PATTERN.match(display_text)
    heading = None
    content = display_text
    if match:
        heading = strip_markup(match.group(1)) or None
        content = match.group(2)
    return heading, strip_markup(content)


def strip_markup(text_value: str) -> str:
    """Turn line breaks into spaces and drop any remaining tags."""
    without_breaks = LINE_BREAK_PATTERN.sub(" ", text_value)
    without_tags = TAG_PATTERN.sub("", without_breaks)
    return WHITESPACE_PATTERN.sub(" ", without_tags).strip()


def dump_json(value: Any) -> str:
    """Pretty-print any value as JSON, stringifying what JSON cannot hold."""
    try:
        return json.dumps(value, indent=2, ensure_ascii=False, default=str)
    except (TypeError, ValueError, RecursionError):
        # circular or pathologically deep values
        try:
            return repr(value)
        except RecursionError:
            return f"<{type(value).__name__}>"


def resolve_text(value: Any) -> str:
    """Resolve a text-like value to a plain string without raising."""
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    if isinstance(value, dict):
        for key in ("text", "script"):
            nested = value.get(key)
            if nested:
                return nested if isinstance(nested, str) else dump_json(nested)
        return dump_json(value)
    if isinstance(value, (list, tuple)):
        return dump_json(list(value))
    return str(value)


def split_paragraphs(text_value: str) -> Tuple[str, ...]:
    """Split free text on blank-line boundaries."""
    paragraphs = PARAGRAPH_SPLIT_PATTERN.split(text_value)
    return tuple(paragraph for paragraph in paragraphs if paragraph.strip())


def is_structured_payload(payload: Any) -> bool:
    """Return True when the payload exposes opening/mainContent/conclusion."""
    return isinstance(payload, dict) and any(key in payload for key in STRUCTURED_KEYS)


def is_section(value: Any) -> bool:
    """Return True when a mainContent element is a titled section object."""
    return isinstance(value, dict) and any(key in value for key in SECTION_KEYS)


def build_section_text(heading: str, body: str) -> str:
    """Compose section display text with heading markup."""
    return f"<strong>{heading}</strong><br/><br/>{body}"


def _structured_entries(payload: dict) -> list[tuple[BlockKind, str, int | None]]:
    entries: list[tuple[BlockKind, str, int | None]] = []

    opening = resolve_text(payload.get("opening"))
    if opening.strip():
        entries.append((BlockKind.OPENING, opening, None))

    main_content = payload.get("mainContent")
    if isinstance(main_content, (list, tuple)):
        for index, section in enumerate(main_content):
            if is_section(section):
                heading = resolve_text(section.get("sectionTitle")).strip()
                if not heading:
                    heading = f"Section {index + 1}"
                body = resolve_text(section.get("script"))
                if not body.strip():
                    body = resolve_text(section)
                entries.append(
                    (BlockKind.SECTION, build_section_text(heading, body), index)
                )
                interactive = resolve_text(section.get("interactiveElement"))
                if interactive.strip():
                    entries.append(
                        (
                            BlockKind.INTERACTIVE,
                            build_section_text(INTERACTIVE_HEADING, interactive),
                            index,
                        )
                    )
                continue
            simple_text = resolve_text(section)
            if simple_text.strip():
                entries.append((BlockKind.SIMPLE, simple_text, index))
    elif main_content is not None:
        content_text = resolve_text(main_content)
        if content_text.strip():
            entries.append((BlockKind.CONTENT, content_text, None))

    conclusion = resolve_text(payload.get("conclusion"))
    if conclusion.strip():
        entries.append((BlockKind.CONCLUSION, conclusion, None))

    return entries


def normalize_script(payload: Any, title: str) -> Tuple[TextBlock, ...]:
    """Normalize an arbitrary script payload into ordered text blocks.

    Accepts the structured opening/mainContent/conclusion form, a bare string,
    or any other value. Never raises on payload shape and never returns an
    empty sequence.
    """
    serialized = False
    entries: list[tuple[BlockKind, str, int | None]] = []

    if is_structured_payload(payload):
        entries = _structured_entries(payload)
    elif isinstance(payload, (dict, list, tuple)):
        serialized = True
        entries = [(BlockKind.RAW, dump_json(payload), None)]
    elif payload is not None:
        text_value = resolve_text(payload)
        entries = [(BlockKind.RAW, paragraph, None) for paragraph in split_paragraphs(text_value)]

    if not entries:
        serialized = False
        fallback_title = resolve_text(title)
        entries = [(BlockKind.RAW, FALLBACK_TEMPLATE.format(title=fallback_title), None)]

    return tuple(
        TextBlock(
            kind=kind,
            display_text=text_value,
            order=order,
            source_index=source_index,
            serialized=serialized and kind == BlockKind.RAW,
        )
        for order, (kind, text_value, source_index) in enumerate(entries)
    )
