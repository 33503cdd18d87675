"""In-memory content store keyed by incrementing integer ids."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
import threading
import time
from typing import Any, Callable

from domain.lesson_content import ContentRecord, ContentRequest, ContentStatus


@dataclass
class ContentStore:
    """Thread-safe store for lesson content records."""

    clock: Callable[[], float] = time.time
    records: dict[int, ContentRecord] = field(default_factory=dict)
    next_id: int = 1
    lock: threading.Lock = field(default_factory=threading.Lock)

    def create(
        self, title: str, subject: str, **fields: Any
    ) -> ContentRecord:
        """Create a record with the next id."""
        with self.lock:
            content_id = self.next_id
            self.next_id += 1
            record = ContentRecord(
                content_id=content_id,
                title=title,
                subject=subject,
                created_at=self.clock(),
                **fields,
            )
            self.records[content_id] = record
        return record

    def create_from_request(
        self, request: ContentRequest, **fields: Any
    ) -> ContentRecord:
        """Create a record from generation parameters."""
        return self.create(
            title=request.title,
            subject=request.subject,
            age_group=request.age_group,
            difficulty_level=request.difficulty_level,
            content_format=request.content_format,
            duration=request.duration,
            specific_instructions=request.specific_instructions,
            ai_model=request.ai_model,
            **fields,
        )

    def get(self, content_id: int) -> ContentRecord | None:
        """Fetch a record by id."""
        with self.lock:
            return self.records.get(content_id)

    def list_records(self) -> list[ContentRecord]:
        """Return all records in id order."""
        with self.lock:
            return [self.records[key] for key in sorted(self.records)]

    def update(self, content_id: int, **changes: Any) -> ContentRecord | None:
        """Merge changes into a record; None when the id is unknown."""
        with self.lock:
            current = self.records.get(content_id)
            if current is None:
                return None
            updated = replace(current, **changes)
            self.records[content_id] = updated
        return updated

    def begin_processing(self, content_id: int) -> tuple[ContentRecord | None, bool]:
        """Move a record to PROCESSING unless it already is.

        Returns the current record and whether this call claimed it.
        """
        with self.lock:
            record = self.records.get(content_id)
            if record is None or record.status == ContentStatus.PROCESSING:
                return record, False
            updated = replace(record, status=ContentStatus.PROCESSING, error_message=None)
            self.records[content_id] = updated
            return updated, True

    def mark_completed(self, content_id: int, video_url: str) -> ContentRecord | None:
        return self.update(
            content_id,
            status=ContentStatus.COMPLETED,
            video_url=video_url,
            error_message=None,
        )

    def mark_error(self, content_id: int, message: str) -> ContentRecord | None:
        return self.update(content_id, status=ContentStatus.ERROR, error_message=message)

    def delete(self, content_id: int) -> bool:
        """Delete a record; False when the id is unknown."""
        with self.lock:
            return self.records.pop(content_id, None) is not None
