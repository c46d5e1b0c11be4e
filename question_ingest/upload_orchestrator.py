"""Drives per-question uploads to the backend with status tracking and retry."""

import asyncio
import logging
from typing import Dict, List, Optional, Set

from question_ingest.backend_client import QuestionAPIClient
from question_ingest.errors import InvalidTransitionError, UploadError
from question_ingest.question_assembler import QuestionAssembler
from question_ingest.question_store import QuestionStore, StatusChanged
from question_ingest.state import ProcessedQuestion, UploadStatus

logger = logging.getLogger(__name__)

UPLOADABLE = {UploadStatus.PENDING, UploadStatus.ERROR}


class UploadOrchestrator:
    """Uploads questions one at a time; a failure never stops the batch."""

    def __init__(self, store: QuestionStore, question_client: QuestionAPIClient,
                 assembler: Optional[QuestionAssembler] = None):
        self.store = store
        self.question_client = question_client
        self.assembler = assembler or QuestionAssembler()

    async def upload_all(self) -> Dict[str, int]:
        """Upload every pending or failed question, in list order."""
        return await self._upload_batch(UPLOADABLE)

    async def retry(self, question_id: str) -> ProcessedQuestion:
        """
        Upload one question again; its previous error is cleared on the way.

        Raises:
            KeyError: unknown question id.
            InvalidTransitionError: the question is uploaded or already uploading.
        """
        return await self._upload(question_id)

    async def retry_failed(self) -> Dict[str, int]:
        return await self._upload_batch({UploadStatus.ERROR})

    def summary(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in UploadStatus}
        for question in self.store.snapshot:
            counts[question.status.value] += 1
        return counts

    def failed_questions(self) -> List[ProcessedQuestion]:
        return [q for q in self.store.snapshot if q.status == UploadStatus.ERROR]

    async def _upload_batch(self, statuses: Set[UploadStatus]) -> Dict[str, int]:
        selected = [q.id for q in self.store.snapshot if q.status in statuses]
        logger.info(f"Uploading {len(selected)} questions")
        for question_id in selected:
            current = self.store.get(question_id)
            if current is None or current.status not in statuses:
                continue
            try:
                await self._upload(question_id)
            except InvalidTransitionError as e:
                # Another batch picked the question up first
                logger.info(f"Skipping question {question_id}: {e}")
        return self.summary()

    async def _upload(self, question_id: str) -> ProcessedQuestion:
        question = self.store.get(question_id)
        if question is None:
            raise KeyError(question_id)
        if question.status not in UPLOADABLE:
            raise InvalidTransitionError(f"Question {question_id} is {question.status.value}")

        await self.store.dispatch(StatusChanged(question_id=question_id, status=UploadStatus.UPLOADING))
        try:
            response = await self.question_client.create_question(self.assembler.build_payload(question))
        except UploadError as e:
            logger.error(f"Upload failed for question {question_id}: {e}")
            await self._mark_failed(question_id, str(e))
        except asyncio.CancelledError:
            await self._mark_failed(question_id, "Upload cancelled")
            raise
        except Exception as e:
            logger.error(f"Unexpected error uploading question {question_id}: {e}", exc_info=True)
            await self._mark_failed(question_id, str(e) or type(e).__name__)
        else:
            backend_id = response.get("id") if isinstance(response, dict) else None
            logger.info(f"Uploaded question {question_id} as {backend_id}")
            await self.store.dispatch(StatusChanged(
                question_id=question_id, status=UploadStatus.SUCCESS, backend_id=backend_id))
        return self.store.get(question_id)

    async def _mark_failed(self, question_id: str, error: str) -> None:
        await self.store.dispatch(StatusChanged(question_id=question_id, status=UploadStatus.ERROR, error=error))
