"""Frame timing policy for render_lesson_video."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence, Tuple

from domain.lesson_script import (
    INVALID_BLOCK_CODE,
    BlockKind,
    LessonValidationError,
    TextBlock,
)

INVALID_FRAME_CODE = "lesson_video.internal.invalid_frame"

BASE_DURATION_SECONDS = {
    BlockKind.OPENING: 6,
    BlockKind.CONCLUSION: 6,
    BlockKind.INTERACTIVE: 5,
    BlockKind.SECTION: 7,
    BlockKind.SIMPLE: 7,
    BlockKind.CONTENT: 7,
    BlockKind.RAW: 5,
}
SERIALIZED_RAW_SECONDS = 10
LENGTH_BONUS_KINDS = frozenset({BlockKind.SECTION, BlockKind.SIMPLE, BlockKind.CONTENT})
LENGTH_BONUS_CHARS = 150
LENGTH_BONUS_CAP_SECONDS = 5
MIN_DURATION_SECONDS = 1


@dataclass(frozen=True)
class TimedFrame:
    """A text block annotated with its frame index and display duration."""

    block: TextBlock
    frame_index: int
    duration_seconds: int
    total_frames: int

    def __post_init__(self) -> None:
        if self.frame_index < 0:
            raise LessonValidationError(
                INVALID_FRAME_CODE, "frame_index must be non-negative"
            )
        if self.duration_seconds < MIN_DURATION_SECONDS:
            raise LessonValidationError(
                INVALID_FRAME_CODE, "duration_seconds must be at least 1"
            )
        if self.total_frames <= self.frame_index:
            raise LessonValidationError(
                INVALID_FRAME_CODE, "frame_index exceeds total_frames"
            )


def compute_length_bonus(text_value: str) -> int:
    """Extra seconds for long content, capped."""
    return min(LENGTH_BONUS_CAP_SECONDS, len(text_value) // LENGTH_BONUS_CHARS)


def compute_block_duration(block: TextBlock) -> int:
    """Return the display duration in whole seconds for one block."""
    if block.kind == BlockKind.RAW and block.serialized:
        duration = SERIALIZED_RAW_SECONDS
    else:
        duration = BASE_DURATION_SECONDS.get(block.kind)
        if duration is None:
            raise LessonValidationError(
                INVALID_BLOCK_CODE, f"unsupported block kind: {block.kind!r}"
            )
        if block.kind in LENGTH_BONUS_KINDS:
            duration += compute_length_bonus(block.body)
    return max(MIN_DURATION_SECONDS, duration)


def assign_durations(blocks: Sequence[TextBlock]) -> Tuple[TimedFrame, ...]:
    """Annotate blocks with durations and dense frame indices in playback order."""
    total_frames = len(blocks)
    return tuple(
        TimedFrame(
            block=block,
            frame_index=frame_index,
            duration_seconds=compute_block_duration(block),
            total_frames=total_frames,
        )
        for frame_index, block in enumerate(blocks)
    )


def compute_progress(frame_index: int, total_frames: int) -> float:
    """Progress fraction shown on a frame, clamped to [0, 1]."""
    if total_frames <= 0:
        return 1.0
    return min(1.0, max(0.0, (frame_index + 1) / float(total_frames)))


def total_duration_seconds(frames: Sequence[TimedFrame]) -> int:
    """Sum of display durations."""
    return sum(frame.duration_seconds for frame in frames)
