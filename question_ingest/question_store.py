"""
Question store.

The shared question list is never mutated in place. Writers dispatch events;
each event folds into a new immutable snapshot, addressing items by id.
"""

import asyncio
import logging
from typing import Any, Dict, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict

from question_ingest.errors import InvalidTransitionError
from question_ingest.state import ProcessedQuestion, UploadStatus

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS = {
    UploadStatus.PENDING: {UploadStatus.UPLOADING},
    UploadStatus.UPLOADING: {UploadStatus.SUCCESS, UploadStatus.ERROR},
    UploadStatus.ERROR: {UploadStatus.UPLOADING},
    UploadStatus.SUCCESS: set(),
}


class _Event(BaseModel):
    model_config = ConfigDict(frozen=True)


class QuestionExtracted(_Event):
    question: ProcessedQuestion


class StatusChanged(_Event):
    question_id: str
    status: UploadStatus
    backend_id: Optional[str] = None
    error: Optional[str] = None


class QuestionRemoved(_Event):
    question_id: str


class QuestionUpdated(_Event):
    """Replace a question's content; its upload status is kept."""
    question: ProcessedQuestion


Event = Union[QuestionExtracted, StatusChanged, QuestionRemoved, QuestionUpdated]
Snapshot = Tuple[ProcessedQuestion, ...]


def check_transition(current: UploadStatus, target: UploadStatus) -> None:
    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidTransitionError(f"Cannot move question from {current.value} to {target.value}")


def reduce(snapshot: Snapshot, event: Event) -> Snapshot:
    """Fold one event into a snapshot. Unknown ids leave the snapshot unchanged."""
    if isinstance(event, QuestionExtracted):
        if any(q.id == event.question.id for q in snapshot):
            raise ValueError(f"Duplicate question id {event.question.id}")
        return snapshot + (event.question,)

    if isinstance(event, QuestionRemoved):
        return tuple(q for q in snapshot if q.id != event.question_id)

    if isinstance(event, QuestionUpdated):
        return tuple(
            event.question.model_copy(update={"status": q.status, "backend_id": q.backend_id, "error": q.error})
            if q.id == event.question.id else q
            for q in snapshot
        )

    if isinstance(event, StatusChanged):
        updated = []
        for q in snapshot:
            if q.id == event.question_id:
                check_transition(q.status, event.status)
                changes: Dict[str, Any] = {"status": event.status, "error": event.error}
                if event.backend_id is not None:
                    changes["backend_id"] = event.backend_id
                q = q.model_copy(update=changes)
            updated.append(q)
        return tuple(updated)

    raise TypeError(f"Unknown event {type(event).__name__}")


class QuestionStore:
    """Holds the current snapshot; dispatch is serialized with an asyncio lock."""

    def __init__(self, questions: Snapshot = ()):
        self._snapshot: Snapshot = tuple(questions)
        self._lock = asyncio.Lock()

    @property
    def snapshot(self) -> Snapshot:
        return self._snapshot

    def get(self, question_id: str) -> Optional[ProcessedQuestion]:
        return next((q for q in self._snapshot if q.id == question_id), None)

    async def dispatch(self, event: Event) -> Snapshot:
        async with self._lock:
            self._snapshot = reduce(self._snapshot, event)
            logger.debug(f"Applied {type(event).__name__}; {len(self._snapshot)} questions")
            return self._snapshot
