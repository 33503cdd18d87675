#!/usr/bin/env -S uv run
# /// script
# requires-python = ">=3.11"
# dependencies = [
#   "pillow>=10.1",
#   "numpy>=1.26"
# ]
# ///
"""Render an AI-generated lesson script into a slide-style MP4."""

from __future__ import annotations

import argparse
import json
import logging
import os
import random
import shutil
import subprocess
import sys
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Sequence, Tuple

import numpy as np
from PIL import Image, ImageColor, ImageDraw, ImageFont

from domain.lesson_content import (
    ContentRecord,
    build_output_filename,
)
from domain.lesson_script import (
    FONT_DIR_CODE,
    FONT_LOAD_CODE,
    INVALID_CONFIG_CODE,
    SCRIPT_FILE_CODE,
    BlockKind,
    LessonPipelineError,
    LessonValidationError,
    TextBlock,
    normalize_script,
    split_heading,
)
from service.concat_plan import RenderedFrame, build_concat_plan, format_concat_manifest
from service.frame_timing import (
    TimedFrame,
    assign_durations,
    compute_progress,
    total_duration_seconds,
)

LOGGER = logging.getLogger("lesson_video")

FRAME_WIDTH = 1280
FRAME_HEIGHT = 720
OUTPUT_FRAME_RATE = 30
DEFAULT_SCRATCH_DIR = "temp"
DEFAULT_PUBLIC_ROOT = "public"
VIDEO_SUBDIR = "videos"

RENDER_FRAME_CODE = "lesson_video.render.frame_failed"
FFMPEG_NOT_FOUND_CODE = "lesson_video.ffmpeg.not_found"
FFMPEG_PROCESS_CODE = "lesson_video.ffmpeg.process_failed"
MANIFEST_WRITE_CODE = "lesson_video.encode.manifest_failed"
CLEANUP_CODE = "lesson_video.cleanup.failed"
UNHANDLED_CODE = "lesson_video.unhandled_error"

H264_CODEC = "libx264"
H264_PIXEL_FORMAT = "yuv420p"
H264_PRESET = "medium"
H264_CRF = "22"
VIDEO_METADATA_TITLE = "Educational Content"

TITLE_FONT_SIZE = 36
LABEL_FONT_SIZE = 32
HEADING_FONT_SIZE = 28
BODY_FONT_SIZE = 24
PILL_FONT_SIZE = 18
FOOTER_FONT_SIZE = 16
SMALL_FONT_SIZE = 14
BADGE_FONT_SIZE = 22

PANEL_BOX = (40, 110, FRAME_WIDTH - 40, FRAME_HEIGHT - 80)
TEXT_LEFT = 70
TEXT_TOP = 160
TEXT_MAX_WIDTH = FRAME_WIDTH - 160
TEXT_BOTTOM = FRAME_HEIGHT - 110
HEADING_GAP = 45
BODY_LINE_HEIGHT = 34
ELLIPSIS = "..."
FOOTER_TEXT = "Educational Content for Young Learners"

DARK_BACKGROUND = ("#1a1a2e", "#16213e", "#0f3460", "#1a1a2e")
SLATE = (15, 23, 42)
SLATE_LIGHT = (30, 41, 59)
WHITE = (255, 255, 255, 255)
DECORATION_ALPHA = 26
OPENING_DECORATION_ALPHA = 38
STRIPE_ALPHA = 51
SHADE_ALPHA = 128
PANEL_FILL = SLATE + (242,)


class JobPhase(str, Enum):
    """Lifecycle states for one script-to-video job."""

    PENDING = "pending"
    NORMALIZING = "normalizing"
    TIMING = "timing"
    RENDERING = "rendering"
    ENCODING = "encoding"
    COMPLETED = "completed"
    FAILED = "failed"


class FrameLayout(str, Enum):
    """Visual treatment selected by block kind."""

    OPENING = "opening"
    CONCLUSION = "conclusion"
    INTERACTIVE = "interactive"
    STANDARD = "standard"


@dataclass(frozen=True)
class SubjectTheme:
    """Accent colors, icon glyph and decoration style for a subject."""

    key: str
    color: str
    secondary: str
    icon: str
    pattern: str

    @property
    def color_rgb(self) -> Tuple[int, int, int]:
        return ImageColor.getrgb(self.color)[:3]

    @property
    def secondary_rgb(self) -> Tuple[int, int, int]:
        return ImageColor.getrgb(self.secondary)[:3]


SUBJECT_THEMES = {
    "visual-arts": SubjectTheme("visual-arts", "#FF5722", "#FFA000", "Art", "art"),
    "performing-arts": SubjectTheme("performing-arts", "#9C27B0", "#D500F9", "Act", "music"),
    "coding": SubjectTheme("coding", "#2196F3", "#03A9F4", "</>", "code"),
    "financial-literacy": SubjectTheme("financial-literacy", "#4CAF50", "#8BC34A", "$", "finance"),
    "science": SubjectTheme("science", "#FFC107", "#FFEB3B", "Sci", "science"),
}
DEFAULT_THEME = SubjectTheme("default", "#607D8B", "#90A4AE", "Edu", "default")

LAYOUT_BY_KIND = {
    BlockKind.OPENING: FrameLayout.OPENING,
    BlockKind.CONCLUSION: FrameLayout.CONCLUSION,
    BlockKind.INTERACTIVE: FrameLayout.INTERACTIVE,
}
LAYOUT_LABELS = {
    FrameLayout.OPENING: "Introduction",
    FrameLayout.CONCLUSION: "Conclusion",
}
INTERACTIVE_BANNER = "Interactive Activity"


@dataclass(frozen=True)
class RenderSettings:
    """Validated configuration for rendering and encoding."""

    scratch_dir: str = DEFAULT_SCRATCH_DIR
    public_root: str = DEFAULT_PUBLIC_ROOT
    output_dir: str | None = None
    fonts_dir: str | None = None
    decoration_seed: int | None = None
    ffmpeg_path: str = "ffmpeg"
    width: int = FRAME_WIDTH
    height: int = FRAME_HEIGHT
    frame_rate: int = OUTPUT_FRAME_RATE

    def __post_init__(self) -> None:
        if not self.scratch_dir.strip():
            raise LessonValidationError(
                INVALID_CONFIG_CODE, "scratch_dir must be non-empty"
            )
        if not self.public_root.strip():
            raise LessonValidationError(
                INVALID_CONFIG_CODE, "public_root must be non-empty"
            )
        if self.output_dir is not None and not self.output_dir.strip():
            raise LessonValidationError(
                INVALID_CONFIG_CODE, "output_dir must be non-empty"
            )
        if self.fonts_dir is not None and not self.fonts_dir.strip():
            raise LessonValidationError(
                INVALID_CONFIG_CODE, "fonts_dir must be non-empty"
            )
        if not self.ffmpeg_path.strip():
            raise LessonValidationError(
                INVALID_CONFIG_CODE, "ffmpeg_path must be non-empty"
            )
        if self.width <= 0 or self.height <= 0:
            raise LessonValidationError(
                INVALID_CONFIG_CODE, "width and height must be positive"
            )
        if self.width % 2 or self.height % 2:
            raise LessonValidationError(
                INVALID_CONFIG_CODE, "width and height must be even for H.264 output"
            )
        if self.frame_rate <= 0:
            raise LessonValidationError(
                INVALID_CONFIG_CODE, "frame_rate must be positive"
            )

    @property
    def video_dir(self) -> str:
        if self.output_dir is not None:
            return self.output_dir
        return os.path.join(self.public_root, VIDEO_SUBDIR)


@dataclass
class FontBook:
    """Font loader cached by size and weight."""

    regular_path: str | None = None
    bold_path: str | None = None
    cache: dict[Tuple[int, bool], ImageFont.ImageFont | ImageFont.FreeTypeFont] = field(
        default_factory=dict
    )

    def get(self, size: int, bold: bool = False) -> ImageFont.ImageFont | ImageFont.FreeTypeFont:
        cache_key = (size, bold)
        cached_font = self.cache.get(cache_key)
        if cached_font is not None:
            return cached_font
        font_path = self.bold_path if bold and self.bold_path else self.regular_path
        try:
            if font_path is None:
                font = ImageFont.load_default(size=size)
            else:
                font = ImageFont.truetype(font_path, size=size)
        except Exception as exc:
            raise LessonValidationError(
                FONT_LOAD_CODE, f"failed to load font {font_path or 'default'} at size {size}"
            ) from exc
        self.cache[cache_key] = font
        return font


PhaseCallback = Callable[[JobPhase, float, str], None]


def configure_logging() -> None:
    """Configure logging for CLI output."""
    logging.basicConfig(level=logging.INFO, format="%(message)s")


def normalize_subject_key(subject: str | None) -> str:
    """Lowercase a subject and join its words with hyphens."""
    if not subject:
        return ""
    return "-".join(str(subject).strip().lower().split())


def resolve_theme(subject: str | None) -> SubjectTheme:
    """Return the theme for a subject, falling back to the default."""
    return SUBJECT_THEMES.get(normalize_subject_key(subject), DEFAULT_THEME)


def select_layout(kind: BlockKind) -> FrameLayout:
    return LAYOUT_BY_KIND.get(kind, FrameLayout.STANDARD)


def list_font_files(fonts_dir: str) -> list[str]:
    """List font files from the fonts directory."""
    if not os.path.isdir(fonts_dir):
        raise LessonValidationError(
            FONT_DIR_CODE, f"fonts directory does not exist: {fonts_dir}"
        )

    font_files: list[str] = []
    for entry_name in sorted(os.listdir(fonts_dir)):
        lower_name = entry_name.lower()
        if lower_name.endswith(".ttf") or lower_name.endswith(".otf"):
            font_files.append(os.path.join(fonts_dir, entry_name))

    if not font_files:
        raise LessonValidationError(
            FONT_DIR_CODE,
            f"no font files found in {fonts_dir}",
        )
    return font_files


def filter_loadable_fonts(font_files: Sequence[str], sample_size: int) -> list[str]:
    """Filter font files to those loadable at the sample size."""
    loadable_fonts: list[str] = []
    for font_file_path in font_files:
        try:
            ImageFont.truetype(font_file_path, size=sample_size)
        except Exception as exc:
            LOGGER.warning(
                "%s: skipped font %s (%s)",
                FONT_LOAD_CODE,
                font_file_path,
                str(exc).strip(),
            )
            continue
        loadable_fonts.append(font_file_path)

    if not loadable_fonts:
        raise LessonValidationError(
            FONT_LOAD_CODE, "failed to load any fonts from fonts directory"
        )

    return loadable_fonts


def build_font_book(fonts_dir: str | None) -> FontBook:
    """Pick regular and bold faces from a fonts directory, or Pillow's default."""
    if fonts_dir is None:
        return FontBook()
    font_files = filter_loadable_fonts(list_font_files(fonts_dir), BODY_FONT_SIZE)
    regular = next(
        (path for path in font_files if "bold" not in os.path.basename(path).lower()),
        font_files[0],
    )
    bold = next(
        (path for path in font_files if "bold" in os.path.basename(path).lower()),
        regular,
    )
    return FontBook(regular_path=regular, bold_path=bold)


def mix_rgb(
    base: Tuple[int, int, int], overlay: Tuple[int, int, int], ratio: float
) -> Tuple[int, int, int]:
    """Blend overlay into base by ratio."""
    return tuple(
        int(round(channel_a * (1.0 - ratio) + channel_b * ratio))
        for channel_a, channel_b in zip(base, overlay)
    )


def build_gradient(
    width: int,
    height: int,
    stops: Sequence[Tuple[int, int, int]],
    noise_rng: np.random.Generator | None = None,
) -> Image.Image:
    """Diagonal multi-stop gradient from the top-left corner.

    When a noise generator is given, sub-1.0 noise is added before
    quantizing to hide banding.
    """
    yy, xx = np.mgrid[0:height, 0:width].astype(np.float32)
    denom = max((width - 1) + (height - 1), 1)
    alpha = (xx + yy) / denom

    stop_positions = np.linspace(0.0, 1.0, num=len(stops), dtype=np.float32)
    stop_colors = np.array(stops, dtype=np.float32)
    gradient_array = np.zeros((height, width, 3), dtype=np.float32)
    for channel in range(3):
        gradient_array[:, :, channel] = np.interp(
            alpha, stop_positions, stop_colors[:, channel]
        )

    if noise_rng is not None:
        gradient_array += noise_rng.random((height, width, 3), dtype=np.float32) - 0.5

    np.clip(gradient_array, 0, 255, out=gradient_array)
    return Image.fromarray(gradient_array.astype(np.uint8)).convert("RGBA")


def hex_stops(colors: Sequence[str]) -> list[Tuple[int, int, int]]:
    return [ImageColor.getrgb(color)[:3] for color in colors]


def with_alpha(color: Tuple[int, int, int], alpha: int) -> Tuple[int, int, int, int]:
    return (color[0], color[1], color[2], alpha)


def draw_dots(
    draw: ImageDraw.ImageDraw, theme: SubjectTheme, rng: random.Random, size: Tuple[int, int], alpha: int
) -> None:
    width, height = size
    for index in range(50):
        x_value = rng.random() * width
        y_value = rng.random() * height
        radius = rng.random() * 8 + 2
        color = theme.color_rgb if index % 2 == 0 else theme.secondary_rgb
        draw.ellipse(
            (x_value - radius, y_value - radius, x_value + radius, y_value + radius),
            fill=with_alpha(color, alpha),
        )


def draw_lines(
    draw: ImageDraw.ImageDraw, theme: SubjectTheme, rng: random.Random, size: Tuple[int, int], alpha: int
) -> None:
    width, height = size
    for index in range(20):
        x_start = rng.random() * width
        y_start = rng.random() * height
        x_end = x_start + (rng.random() - 0.5) * 200
        y_end = y_start + (rng.random() - 0.5) * 200
        color = theme.color_rgb if index % 2 == 0 else theme.secondary_rgb
        draw.line(
            (x_start, y_start, x_end, y_end),
            fill=with_alpha(color, alpha),
            width=int(rng.random() * 3 + 1),
        )


def draw_shapes(
    draw: ImageDraw.ImageDraw, theme: SubjectTheme, rng: random.Random, size: Tuple[int, int], alpha: int
) -> None:
    width, height = size
    for index in range(25):
        shape_size = rng.random() * 40 + 10
        x_value = rng.random() * width
        y_value = rng.random() * height
        fill = with_alpha(theme.color_rgb if index % 2 == 0 else theme.secondary_rgb, alpha)
        if index % 3 == 0:
            half = shape_size / 2
            draw.ellipse((x_value - half, y_value - half, x_value + half, y_value + half), fill=fill)
        elif index % 3 == 1:
            draw.rounded_rectangle(
                (x_value, y_value, x_value + shape_size, y_value + shape_size), radius=4, fill=fill
            )
        else:
            draw.polygon(
                [
                    (x_value, y_value),
                    (x_value + shape_size, y_value + shape_size),
                    (x_value - shape_size, y_value + shape_size),
                ],
                fill=fill,
            )


def draw_code_bars(
    draw: ImageDraw.ImageDraw, theme: SubjectTheme, rng: random.Random, size: Tuple[int, int], alpha: int
) -> None:
    _, height = size
    for y_value in range(0, height, 50):
        bar_width = rng.random() * 100 + 50
        draw.rectangle((20, y_value, 20 + bar_width, y_value + 5), fill=with_alpha(theme.color_rgb, alpha))


def draw_currency_marks(
    draw: ImageDraw.ImageDraw,
    theme: SubjectTheme,
    rng: random.Random,
    size: Tuple[int, int],
    alpha: int,
    fonts: FontBook,
) -> None:
    width, height = size
    for _ in range(10):
        x_value = rng.random() * width
        y_value = rng.random() * height
        font = fonts.get(int(rng.random() * 30 + 20))
        draw.text((x_value, y_value), "$", font=font, fill=with_alpha(theme.color_rgb, alpha))


def draw_molecules(
    draw: ImageDraw.ImageDraw, theme: SubjectTheme, rng: random.Random, size: Tuple[int, int], alpha: int
) -> None:
    width, height = size
    outline = with_alpha(theme.color_rgb, alpha)
    for index in range(20):
        x_value = rng.random() * width
        y_value = rng.random() * height
        radius = rng.random() * 15 + 5
        draw.ellipse(
            (x_value - radius, y_value - radius, x_value + radius, y_value + radius),
            outline=outline,
            width=2,
        )
        if index > 0 and index % 3 == 0:
            draw.line(
                (x_value, y_value, rng.random() * width, rng.random() * height),
                fill=outline,
                width=2,
            )


def draw_subject_pattern(
    canvas: Image.Image,
    theme: SubjectTheme,
    rng: random.Random,
    fonts: FontBook,
    noise_rng: np.random.Generator | None,
) -> Image.Image:
    """Dark gradient background with low-alpha subject decorations."""
    size = canvas.size
    background = build_gradient(size[0], size[1], hex_stops(DARK_BACKGROUND), noise_rng)
    layer = Image.new("RGBA", size, (0, 0, 0, 0))
    draw = ImageDraw.Draw(layer)

    if theme.pattern == "art":
        draw_shapes(draw, theme, rng, size, DECORATION_ALPHA)
    elif theme.pattern == "music":
        draw_dots(draw, theme, rng, size, DECORATION_ALPHA)
        draw_lines(draw, theme, rng, size, DECORATION_ALPHA)
    elif theme.pattern == "code":
        draw_code_bars(draw, theme, rng, size, DECORATION_ALPHA)
        draw_dots(draw, theme, rng, size, DECORATION_ALPHA)
    elif theme.pattern == "finance":
        draw_lines(draw, theme, rng, size, DECORATION_ALPHA)
        draw_currency_marks(draw, theme, rng, size, DECORATION_ALPHA, fonts)
    elif theme.pattern == "science":
        draw_molecules(draw, theme, rng, size, DECORATION_ALPHA)
    else:
        draw_dots(draw, theme, rng, size, DECORATION_ALPHA)
        draw_lines(draw, theme, rng, size, DECORATION_ALPHA)

    return Image.alpha_composite(background, layer)


def draw_background(
    layout: FrameLayout,
    theme: SubjectTheme,
    size: Tuple[int, int],
    rng: random.Random,
    fonts: FontBook,
    noise_rng: np.random.Generator | None,
) -> Image.Image:
    """Full-frame background for a layout."""
    width, height = size
    canvas = Image.new("RGBA", size, (0, 0, 0, 255))

    if layout == FrameLayout.OPENING:
        stops = [SLATE, SLATE_LIGHT, mix_rgb(SLATE_LIGHT, theme.color_rgb, 0.19)]
        canvas = build_gradient(width, height, stops, noise_rng)
        layer = Image.new("RGBA", size, (0, 0, 0, 0))
        draw = ImageDraw.Draw(layer)
        for index in range(15):
            radius = rng.random() * 100 + 50
            x_value = rng.random() * width
            y_value = rng.random() * height
            color = theme.color_rgb if index % 2 == 0 else theme.secondary_rgb
            draw.ellipse(
                (x_value - radius, y_value - radius, x_value + radius, y_value + radius),
                fill=with_alpha(color, OPENING_DECORATION_ALPHA),
            )
        return Image.alpha_composite(canvas, layer)

    if layout == FrameLayout.CONCLUSION:
        stops = [SLATE, mix_rgb(SLATE, theme.color_rgb, 0.125), SLATE]
        canvas = build_gradient(width, height, stops, noise_rng)
        layer = Image.new("RGBA", size, (0, 0, 0, 0))
        draw = ImageDraw.Draw(layer)
        border_width = 10
        draw.rectangle(
            (0, 0, width - 1, height - 1),
            outline=with_alpha(theme.color_rgb, 80),
            width=border_width,
        )
        return Image.alpha_composite(canvas, layer)

    canvas = draw_subject_pattern(canvas, theme, rng, fonts, noise_rng)
    if layout == FrameLayout.INTERACTIVE:
        layer = Image.new("RGBA", size, (0, 0, 0, 0))
        draw = ImageDraw.Draw(layer)
        for index in range(8):
            y_value = 100 + index * 70
            color = theme.color_rgb if index % 2 == 0 else theme.secondary_rgb
            draw.rectangle((0, y_value, width, y_value + 3), fill=with_alpha(color, STRIPE_ALPHA))
        canvas = Image.alpha_composite(canvas, layer)
    return canvas


def draw_gradient_box(
    canvas: Image.Image,
    box: Tuple[int, int, int, int],
    colors: Sequence[Tuple[int, int, int]],
    radius: int,
) -> Image.Image:
    """Composite a rounded box filled with a gradient."""
    left, top, right, bottom = box
    box_width = max(1, right - left)
    box_height = max(1, bottom - top)
    fill = build_gradient(box_width, box_height, colors)
    mask = Image.new("L", (box_width, box_height), 0)
    ImageDraw.Draw(mask).rounded_rectangle(
        (0, 0, box_width - 1, box_height - 1),
        radius=min(radius, box_width // 2, box_height // 2),
        fill=255,
    )
    canvas.paste(fill, (left, top), mask)
    return canvas


def shade(canvas: Image.Image, alpha: int) -> Image.Image:
    overlay = Image.new("RGBA", canvas.size, (0, 0, 0, alpha))
    return Image.alpha_composite(canvas, overlay)


def sanitize_drawable_text(text_value: str) -> str:
    """Replace characters that cannot be encoded (lone surrogates)."""
    return text_value.encode("utf-8", errors="replace").decode("utf-8")


def break_long_word(
    word: str, measure: Callable[[str], float], max_width: float
) -> list[str]:
    """Split a word wider than max_width into fitting pieces."""
    pieces: list[str] = []
    current = ""
    for character in word:
        candidate = current + character
        if current and measure(candidate) > max_width:
            pieces.append(current)
            current = character
        else:
            current = candidate
    if current:
        pieces.append(current)
    return pieces


def wrap_text_lines(
    text_value: str, measure: Callable[[str], float], max_width: float
) -> list[str]:
    """Greedy word wrap against a pixel width."""
    lines: list[str] = []
    current = ""
    for word in text_value.split():
        pieces = [word] if measure(word) <= max_width else break_long_word(word, measure, max_width)
        for piece in pieces:
            candidate = f"{current} {piece}" if current else piece
            if current and measure(candidate) > max_width:
                lines.append(current)
                current = piece
            else:
                current = candidate
    if current:
        lines.append(current)
    return lines


def append_ellipsis(
    text_value: str, measure: Callable[[str], float], max_width: float
) -> str:
    """Shorten text until it fits with a trailing ellipsis."""
    shortened = text_value.rstrip()
    while shortened and measure(shortened + ELLIPSIS) > max_width:
        shortened = shortened[:-1].rstrip()
    return shortened + ELLIPSIS


def truncate_to_width(
    text_value: str, measure: Callable[[str], float], max_width: float
) -> str:
    if measure(text_value) <= max_width:
        return text_value
    return append_ellipsis(text_value, measure, max_width)


def fit_lines(
    lines: Sequence[str],
    max_lines: int,
    measure: Callable[[str], float],
    max_width: float,
) -> list[str]:
    """Truncate wrapped lines to max_lines, ending with an ellipsis."""
    if max_lines <= 0:
        return []
    if len(lines) <= max_lines:
        return list(lines)
    kept = list(lines[:max_lines])
    kept[-1] = append_ellipsis(kept[-1], measure, max_width)
    return kept


def compute_max_lines(first_baseline: int, bottom_limit: int, line_height: int) -> int:
    """Number of body lines whose baselines stay within bottom_limit."""
    if first_baseline > bottom_limit:
        return 0
    return (bottom_limit - first_baseline) // line_height + 1


def draw_header(
    canvas: Image.Image,
    draw: ImageDraw.ImageDraw,
    title: str,
    subject: str,
    theme: SubjectTheme,
    fonts: FontBook,
) -> None:
    width = canvas.size[0]
    title_font = fonts.get(TITLE_FONT_SIZE, bold=True)
    title_text = sanitize_drawable_text(title)
    title_text = truncate_to_width(
        title_text,
        lambda value: float(draw.textlength(value, font=title_font)),
        width - 360,
    )
    draw.text((62, 82), title_text, font=title_font, fill=(0, 0, 0, 110), anchor="ls")
    draw.text((60, 80), title_text, font=title_font, fill=WHITE, anchor="ls")

    pill_font = fonts.get(PILL_FONT_SIZE)
    pill_text = sanitize_drawable_text(f"{theme.icon} {subject}".strip())
    pill_width = int(min(draw.textlength(pill_text, font=pill_font) + 40, 260))
    pill_box = (width - pill_width - 40, 50, width - 40, 90)
    draw_gradient_box(canvas, pill_box, [theme.color_rgb, theme.secondary_rgb], 20)
    draw.text(
        ((pill_box[0] + pill_box[2]) / 2, 77),
        pill_text,
        font=pill_font,
        fill=WHITE,
        anchor="ms",
    )


def draw_panel(canvas: Image.Image, theme: SubjectTheme) -> Image.Image:
    left, top, right, bottom = PANEL_BOX
    draw_gradient_box(canvas, PANEL_BOX, [theme.color_rgb, theme.secondary_rgb], 16)
    layer = Image.new("RGBA", canvas.size, (0, 0, 0, 0))
    ImageDraw.Draw(layer).rounded_rectangle(
        (left + 3, top + 3, right - 3, bottom - 3), radius=13, fill=PANEL_FILL
    )
    return Image.alpha_composite(canvas, layer)


def draw_badge(
    draw: ImageDraw.ImageDraw,
    center: Tuple[int, int],
    radius: int,
    theme: SubjectTheme,
    fonts: FontBook,
) -> None:
    x_value, y_value = center
    draw.ellipse(
        (x_value - radius, y_value - radius, x_value + radius, y_value + radius),
        fill=with_alpha(theme.color_rgb, 230),
        outline=with_alpha(theme.secondary_rgb, 255),
        width=3,
    )
    draw.text(center, theme.icon, font=fonts.get(BADGE_FONT_SIZE, bold=True), fill=WHITE, anchor="mm")


def draw_interactive_band(
    canvas: Image.Image, draw: ImageDraw.ImageDraw, theme: SubjectTheme, fonts: FontBook
) -> int:
    """Draw the callout band and return the next text baseline."""
    band_top = TEXT_TOP - 30
    band_box = (50, band_top, canvas.size[0] - 50, band_top + 50)
    draw_gradient_box(canvas, band_box, [theme.color_rgb, theme.secondary_rgb], 8)
    draw.polygon(
        [(85, band_top + 33), (70, band_top + 45), (70, band_top + 15)],
        fill=WHITE,
    )
    draw.text(
        (100, band_top + 36),
        INTERACTIVE_BANNER,
        font=fonts.get(LABEL_FONT_SIZE, bold=True),
        fill=WHITE,
        anchor="ls",
    )
    return TEXT_TOP + 70


def draw_layout_label(
    draw: ImageDraw.ImageDraw, layout: FrameLayout, theme: SubjectTheme, fonts: FontBook
) -> int:
    """Draw the icon badge and label for opening/conclusion frames."""
    draw_badge(draw, (TEXT_LEFT + 28, TEXT_TOP - 8), 26, theme, fonts)
    draw.text(
        (TEXT_LEFT + 70, TEXT_TOP + 4),
        LAYOUT_LABELS[layout],
        font=fonts.get(LABEL_FONT_SIZE, bold=True),
        fill=with_alpha(theme.color_rgb, 255),
        anchor="ls",
    )
    return TEXT_TOP + 60


def draw_progress_bar(
    canvas: Image.Image, draw: ImageDraw.ImageDraw, progress: float, theme: SubjectTheme
) -> None:
    width, height = canvas.size
    bar_left = width - 260
    bar_top = height - 50
    bar_width = 200
    bar_height = 6
    track = Image.new("RGBA", canvas.size, (0, 0, 0, 0))
    ImageDraw.Draw(track).rounded_rectangle(
        (bar_left, bar_top, bar_left + bar_width, bar_top + bar_height),
        radius=3,
        fill=(255, 255, 255, 51),
    )
    canvas.alpha_composite(track)
    filled = int(round(bar_width * min(1.0, max(0.0, progress))))
    if filled > 0:
        draw_gradient_box(
            canvas,
            (bar_left, bar_top, bar_left + filled, bar_top + bar_height),
            [theme.color_rgb, theme.secondary_rgb],
            3,
        )


def draw_heading(
    draw: ImageDraw.ImageDraw,
    heading: str,
    baseline: int,
    theme: SubjectTheme,
    fonts: FontBook,
) -> int:
    """Draw a one-line heading in the accent color and return the body baseline."""
    font = fonts.get(HEADING_FONT_SIZE, bold=True)
    heading_text = truncate_to_width(
        sanitize_drawable_text(heading),
        lambda value: float(draw.textlength(value, font=font)),
        TEXT_MAX_WIDTH,
    )
    draw.text(
        (TEXT_LEFT, baseline),
        heading_text,
        font=font,
        fill=with_alpha(theme.color_rgb, 255),
        anchor="ls",
    )
    return baseline + HEADING_GAP


def draw_body_text(
    draw: ImageDraw.ImageDraw,
    body: str,
    first_baseline: int,
    fonts: FontBook,
) -> int:
    """Draw wrapped body text and return the number of lines drawn."""
    font = fonts.get(BODY_FONT_SIZE)

    def measure(text_value: str) -> float:
        return float(draw.textlength(text_value, font=font))

    lines = wrap_text_lines(sanitize_drawable_text(body), measure, TEXT_MAX_WIDTH)
    max_lines = compute_max_lines(first_baseline, TEXT_BOTTOM, BODY_LINE_HEIGHT)
    visible = fit_lines(lines, max_lines, measure, TEXT_MAX_WIDTH)
    for line_index, line in enumerate(visible):
        draw.text(
            (TEXT_LEFT, first_baseline + line_index * BODY_LINE_HEIGHT),
            line,
            font=font,
            fill=WHITE,
            anchor="ls",
        )
    return len(visible)


def build_frame_path(scratch_dir: str, job_token: str, frame_index: int) -> str:
    """Frame-number-padded, job-namespaced scratch path."""
    return os.path.join(scratch_dir, f"{job_token}_frame_{frame_index:05d}.png")


def compose_frame(
    block: TextBlock,
    frame_index: int,
    title: str,
    subject: str,
    total_frames: int,
    settings: RenderSettings,
    fonts: FontBook,
    rng: random.Random,
) -> Image.Image:
    """Draw one frame in memory."""
    theme = resolve_theme(subject)
    layout = select_layout(block.kind)
    size = (settings.width, settings.height)
    noise_rng = np.random.default_rng(rng.getrandbits(32))

    canvas = draw_background(layout, theme, size, rng, fonts, noise_rng)
    canvas = shade(canvas, SHADE_ALPHA)
    canvas = draw_panel(canvas, theme)
    draw = ImageDraw.Draw(canvas)

    draw.rectangle((40, 50, 50, 90), fill=with_alpha(theme.color_rgb, 255))
    draw_header(canvas, draw, title, subject or "", theme, fonts)
    draw.text(
        (TEXT_LEFT, settings.height - 44),
        f"Frame {frame_index + 1}",
        font=fonts.get(SMALL_FONT_SIZE),
        fill=(255, 255, 255, 153),
        anchor="ls",
    )

    heading, body = split_heading(block.display_text)
    baseline = TEXT_TOP
    if layout == FrameLayout.INTERACTIVE:
        baseline = draw_interactive_band(canvas, draw, theme, fonts)
    elif layout in LAYOUT_LABELS:
        baseline = draw_layout_label(draw, layout, theme, fonts)
    if heading and layout != FrameLayout.INTERACTIVE:
        baseline = draw_heading(draw, heading, baseline, theme, fonts)

    draw_body_text(draw, body, baseline, fonts)
    draw_progress_bar(canvas, draw, compute_progress(frame_index, total_frames), theme)
    draw.text(
        (settings.width - 40, settings.height - 22),
        FOOTER_TEXT,
        font=fonts.get(FOOTER_FONT_SIZE),
        fill=(255, 255, 255, 204),
        anchor="rs",
    )
    return canvas


def render_frame(
    block: TextBlock,
    frame_index: int,
    title: str,
    subject: str,
    total_frames: int,
    settings: RenderSettings,
    job_token: str,
    fonts: FontBook | None = None,
    rng: random.Random | None = None,
) -> str:
    """Rasterize one block into a PNG in the scratch directory."""
    image_path = build_frame_path(settings.scratch_dir, job_token, frame_index)
    try:
        font_book = fonts if fonts is not None else build_font_book(settings.fonts_dir)
        decoration_rng = rng if rng is not None else random.Random(settings.decoration_seed)
        canvas = compose_frame(
            block,
            frame_index,
            title,
            subject,
            total_frames,
            settings,
            font_book,
            decoration_rng,
        )
        canvas.convert("RGB").save(image_path, format="PNG")
    except (LessonValidationError, LessonPipelineError):
        raise
    except Exception as exc:
        raise LessonPipelineError(
            RENDER_FRAME_CODE,
            f"failed to render frame {frame_index + 1}: {str(exc).strip() or type(exc).__name__}",
        ) from exc
    return image_path


def build_letterbox_filter(width: int, height: int) -> str:
    """Scale to fit and pad to the canonical canvas, centered on black."""
    return (
        f"scale={width}:{height}:force_original_aspect_ratio=decrease,"
        f"pad={width}:{height}:-1:-1:color=black"
    )


def ensure_ffmpeg_available(ffmpeg_path: str) -> str:
    """Resolve the ffmpeg executable or fail."""
    resolved = shutil.which(ffmpeg_path)
    if not resolved:
        raise LessonPipelineError(FFMPEG_NOT_FOUND_CODE, f"{ffmpeg_path} not on PATH")
    return resolved


def build_ffmpeg_command(
    ffmpeg_path: str, manifest_path: str, output_path: str, settings: RenderSettings
) -> list[str]:
    """Build the single ffmpeg invocation for a concat manifest."""
    return [
        ffmpeg_path,
        "-y",
        "-hide_banner",
        "-loglevel",
        "error",
        "-f",
        "concat",
        "-safe",
        "0",
        "-i",
        manifest_path,
        "-c:v",
        H264_CODEC,
        "-pix_fmt",
        H264_PIXEL_FORMAT,
        "-preset",
        H264_PRESET,
        "-crf",
        H264_CRF,
        "-r",
        str(settings.frame_rate),
        "-movflags",
        "+faststart",
        "-vf",
        build_letterbox_filter(settings.width, settings.height),
        "-metadata:s:v",
        f"title={VIDEO_METADATA_TITLE}",
        output_path,
    ]


def write_manifest(manifest_path: str, content: str) -> None:
    try:
        with open(manifest_path, "w", encoding="utf-8") as file_handle:
            file_handle.write(content)
    except OSError as exc:
        raise LessonPipelineError(
            MANIFEST_WRITE_CODE, f"failed to write concat manifest: {manifest_path}"
        ) from exc


def cleanup_scratch_files(paths: Sequence[str]) -> list[str]:
    """Delete scratch files, logging failures; return the paths left behind."""
    failed: list[str] = []
    for path_value in paths:
        try:
            os.remove(path_value)
        except OSError as exc:
            LOGGER.warning(
                "%s: could not delete %s (%s)", CLEANUP_CODE, path_value, str(exc).strip()
            )
            failed.append(path_value)
    return failed


def encode_video(
    frames: Sequence[RenderedFrame],
    output_path: str,
    manifest_path: str,
    settings: RenderSettings,
) -> str:
    """Concatenate rendered frames into an MP4 and clean up on success.

    On failure the frames and manifest stay in place for inspection.
    """
    plan = build_concat_plan(frames)
    write_manifest(manifest_path, format_concat_manifest(plan))
    ffmpeg_path = ensure_ffmpeg_available(settings.ffmpeg_path)
    command = build_ffmpeg_command(ffmpeg_path, manifest_path, output_path, settings)
    LOGGER.info(
        "lesson_video.encode.start: %d frames, %d concat entries -> %s",
        len(frames),
        len(plan.entries),
        output_path,
    )
    try:
        result = subprocess.run(
            command,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            check=False,
        )
    except OSError as exc:
        raise LessonPipelineError(
            FFMPEG_NOT_FOUND_CODE, f"ffmpeg could not be executed: {exc}"
        ) from exc
    if result.returncode != 0:
        stderr_text = (result.stderr or "").strip()
        raise LessonPipelineError(
            FFMPEG_PROCESS_CODE,
            f"ffmpeg failed with exit code {result.returncode}. {stderr_text}".strip(),
        )

    cleanup_scratch_files([*plan.image_paths, manifest_path])
    LOGGER.info("lesson_video.encode.done: %s", output_path)
    return output_path


def ensure_directories(settings: RenderSettings) -> None:
    os.makedirs(settings.scratch_dir, exist_ok=True)
    os.makedirs(settings.video_dir, exist_ok=True)


def build_job_token(content_id: int | None) -> str:
    """Unique scratch-file prefix for one job."""
    prefix = f"content{content_id}" if content_id is not None else "job"
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


def report_phase(
    on_phase: PhaseCallback | None, phase: JobPhase, progress: float, message: str
) -> None:
    LOGGER.info("lesson_video.job.phase: %s (%.0f%%) %s", phase.value, progress * 100, message)
    if on_phase is not None:
        on_phase(phase, progress, message)


def render_frames(
    timed_frames: Sequence[TimedFrame],
    title: str,
    subject: str,
    settings: RenderSettings,
    job_token: str,
    on_phase: PhaseCallback | None = None,
) -> list[RenderedFrame]:
    """Render every timed frame in order; any failure aborts the job."""
    fonts = build_font_book(settings.fonts_dir)
    rng = random.Random(settings.decoration_seed)
    rendered: list[RenderedFrame] = []
    for timed in timed_frames:
        report_phase(
            on_phase,
            JobPhase.RENDERING,
            0.2 + 0.6 * timed.frame_index / max(1, timed.total_frames),
            f"Rendering frame {timed.frame_index + 1} of {timed.total_frames}: {timed.block.kind.value}",
        )
        image_path = render_frame(
            timed.block,
            timed.frame_index,
            title,
            subject,
            timed.total_frames,
            settings,
            job_token,
            fonts=fonts,
            rng=rng,
        )
        rendered.append(
            RenderedFrame(
                image_path=image_path,
                frame_index=timed.frame_index,
                duration_seconds=timed.duration_seconds,
            )
        )
    return rendered


def generate_video(
    record: ContentRecord,
    settings: RenderSettings,
    on_phase: PhaseCallback | None = None,
    clock: Callable[[], float] = time.time,
) -> str:
    """Run the whole script-to-video job for one content record.

    Returns the output path. Any failure moves the job to FAILED and is
    raised as LessonPipelineError or LessonValidationError.
    """
    title = str(record.title or "")
    subject = str(record.subject or "")
    report_phase(on_phase, JobPhase.PENDING, 0.0, f"Queued video for {title!r}")
    try:
        ensure_directories(settings)
        job_token = build_job_token(record.content_id)

        report_phase(on_phase, JobPhase.NORMALIZING, 0.05, "Normalizing script")
        blocks = normalize_script(record.script_content, title)

        report_phase(on_phase, JobPhase.TIMING, 0.1, f"Timing {len(blocks)} frames")
        timed_frames = assign_durations(blocks)

        rendered = render_frames(timed_frames, title, subject, settings, job_token, on_phase)

        report_phase(
            on_phase,
            JobPhase.ENCODING,
            0.85,
            f"Encoding {total_duration_seconds(timed_frames)}s of video",
        )
        timestamp_ms = int(clock() * 1000)
        output_path = os.path.join(
            settings.video_dir, build_output_filename(subject, title, timestamp_ms)
        )
        manifest_path = os.path.join(settings.scratch_dir, f"{job_token}_concat.txt")
        encode_video(rendered, output_path, manifest_path, settings)
    except (LessonValidationError, LessonPipelineError) as exc:
        report_phase(on_phase, JobPhase.FAILED, 1.0, f"{exc.code}: {exc}")
        raise
    except Exception as exc:
        message = str(exc).strip() or type(exc).__name__
        report_phase(on_phase, JobPhase.FAILED, 1.0, f"{UNHANDLED_CODE}: {message}")
        raise LessonPipelineError(UNHANDLED_CODE, message) from exc

    report_phase(on_phase, JobPhase.COMPLETED, 1.0, output_path)
    return output_path


def read_script_file(file_path: str) -> Any:
    """Read a script file; JSON when it parses, plain text otherwise."""
    try:
        with open(file_path, "rb") as file_handle:
            file_bytes = file_handle.read()
    except FileNotFoundError as exc:
        raise LessonValidationError(
            SCRIPT_FILE_CODE, f"script file not found: {file_path}"
        ) from exc

    try:
        text_value = file_bytes.decode("utf-8", errors="strict")
    except UnicodeDecodeError as exc:
        raise LessonValidationError(
            SCRIPT_FILE_CODE,
            f"script file is not valid UTF-8 at byte offset {exc.start}",
        ) from exc

    try:
        return json.loads(text_value)
    except json.JSONDecodeError:
        return text_value


def build_timing_report(timed_frames: Sequence[TimedFrame]) -> dict[str, object]:
    """Describe the frame sequence without rendering it."""
    return {
        "total_frames": len(timed_frames),
        "total_seconds": total_duration_seconds(timed_frames),
        "frames": [
            {
                "frame_index": frame.frame_index,
                "kind": frame.block.kind.value,
                "duration_seconds": frame.duration_seconds,
                "text": frame.block.plain_text,
            }
            for frame in timed_frames
        ],
    }


def parse_args(argv: Sequence[str]) -> argparse.Namespace:
    """Parse CLI arguments."""
    parser = argparse.ArgumentParser(prog="render_lesson_video.py", add_help=True)
    parser.add_argument("--script-file", required=True)
    parser.add_argument("--title", required=True)
    parser.add_argument("--subject", default="")
    parser.add_argument("--public-root", default=DEFAULT_PUBLIC_ROOT)
    parser.add_argument("--output-dir", default=None)
    parser.add_argument("--scratch-dir", default=DEFAULT_SCRATCH_DIR)
    parser.add_argument("--fonts-dir", default=None)
    parser.add_argument("--seed", type=int, default=None)
    parser.add_argument("--ffmpeg-path", default="ffmpeg")
    parser.add_argument("--emit-plan", action="store_true")
    return parser.parse_args(list(argv))


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entrypoint."""
    configure_logging()

    try:
        args = parse_args(sys.argv[1:] if argv is None else argv)
        script_content = read_script_file(args.script_file)
        if args.emit_plan:
            timed_frames = assign_durations(normalize_script(script_content, args.title))
            sys.stdout.write(json.dumps(build_timing_report(timed_frames), ensure_ascii=True))
            return 0
        settings = RenderSettings(
            scratch_dir=args.scratch_dir,
            public_root=args.public_root,
            output_dir=args.output_dir,
            fonts_dir=args.fonts_dir,
            decoration_seed=args.seed,
            ffmpeg_path=args.ffmpeg_path,
        )
        record = ContentRecord(
            content_id=0,
            title=args.title,
            subject=args.subject,
            script_content=script_content,
        )
        output_path = generate_video(record, settings)
        LOGGER.info("lesson_video.output.video_written: %s", output_path)
        return 0
    except LessonValidationError as exc:
        LOGGER.error("%s: %s", exc.code, str(exc).strip())
        return 1
    except LessonPipelineError as exc:
        LOGGER.error("%s: %s", exc.code, str(exc).strip())
        return 1
    except Exception as exc:
        LOGGER.error("%s: %s", UNHANDLED_CODE, str(exc).strip())
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
