"""Concat manifest construction for the ffmpeg concat demuxer."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence, Tuple

from domain.lesson_script import LessonValidationError
from service.frame_timing import INVALID_FRAME_CODE, MIN_DURATION_SECONDS

EMPTY_PLAN_CODE = "lesson_video.encode.empty_plan"
UNIT_SECONDS = 1


@dataclass(frozen=True)
class RenderedFrame:
    """A rasterized frame waiting to be encoded."""

    image_path: str
    frame_index: int
    duration_seconds: int

    def __post_init__(self) -> None:
        if not self.image_path.strip():
            raise LessonValidationError(
                INVALID_FRAME_CODE, "image_path must be non-empty"
            )
        if self.frame_index < 0:
            raise LessonValidationError(
                INVALID_FRAME_CODE, "frame_index must be non-negative"
            )


@dataclass(frozen=True)
class ConcatEntry:
    """One image reference in the concat manifest."""

    image_path: str
    unit_seconds: int | None


@dataclass(frozen=True)
class ConcatPlan:
    """Ordered image references, one per second of display, plus a tail."""

    entries: Tuple[ConcatEntry, ...]

    def __post_init__(self) -> None:
        if len(self.entries) < 2:
            raise LessonValidationError(EMPTY_PLAN_CODE, "concat plan has no frames")
        if self.entries[-1].unit_seconds is not None:
            raise LessonValidationError(
                EMPTY_PLAN_CODE, "concat plan is missing its trailing reference"
            )

    @property
    def image_paths(self) -> Tuple[str, ...]:
        """Distinct image paths in playback order."""
        seen: dict[str, None] = {}
        for entry in self.entries:
            seen.setdefault(entry.image_path, None)
        return tuple(seen)


def build_concat_plan(frames: Sequence[RenderedFrame]) -> ConcatPlan:
    """Expand rendered frames into a repetition-based concat plan.

    Frames are ordered by frame_index first, so renders finished out of
    order still play in script order.
    """
    if not frames:
        raise LessonValidationError(EMPTY_PLAN_CODE, "no rendered frames")

    ordered = sorted(frames, key=lambda frame: frame.frame_index)
    indices = [frame.frame_index for frame in ordered]
    if len(set(indices)) != len(indices):
        raise LessonValidationError(INVALID_FRAME_CODE, "duplicate frame_index")

    entries: list[ConcatEntry] = []
    for frame in ordered:
        repetitions = max(MIN_DURATION_SECONDS, int(frame.duration_seconds))
        entries.extend(
            ConcatEntry(image_path=frame.image_path, unit_seconds=UNIT_SECONDS)
            for _ in range(repetitions)
        )
    entries.append(ConcatEntry(image_path=ordered[-1].image_path, unit_seconds=None))
    return ConcatPlan(entries=tuple(entries))


def quote_concat_path(path_value: str) -> str:
    """Quote a path for the concat demuxer."""
    return "'" + path_value.replace("'", "'\\''") + "'"


def format_concat_manifest(plan: ConcatPlan) -> str:
    """Render the plan in ffmpeg concat demuxer syntax."""
    lines: list[str] = []
    for entry in plan.entries:
        lines.append(f"file {quote_concat_path(entry.image_path)}")
        if entry.unit_seconds is not None:
            lines.append(f"duration {entry.unit_seconds}")
    return "\n".join(lines) + "\n"
