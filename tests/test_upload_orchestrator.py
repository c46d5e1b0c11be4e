import asyncio
import json

import httpx
import pytest

from conftest import mock_client
from question_ingest.backend_client import QuestionAPIClient
from question_ingest.errors import InvalidTransitionError
from question_ingest.question_store import (
    QuestionExtracted,
    QuestionRemoved,
    QuestionStore,
    QuestionUpdated,
    StatusChanged,
    reduce,
)
from question_ingest.state import ProcessedQuestion, UploadStatus
from question_ingest.upload_orchestrator import UploadOrchestrator


def _question(question_id, text=None, **extra):
    return ProcessedQuestion(id=question_id, question_text=text or f"Question {question_id}",
                             question_type="INTEGER", correct_answer="1", **extra)


class FakeBackend:
    """Question endpoint that rejects payloads whose text mentions any of `failing`."""

    def __init__(self, failing=()):
        self.failing = set(failing)
        self.created = []

    def __call__(self, request):
        payload = json.loads(request.content)
        text = payload["content"]["question"]["raw"]
        if any(marker in text for marker in self.failing):
            return httpx.Response(400, json={"error_description": "Invalid chapter", "error_code": "BAD_CHAPTER"})
        self.created.append(text)
        return httpx.Response(201, json={"id": f"backend-{len(self.created)}"})


def _orchestrator(questions, backend):
    store = QuestionStore(tuple(questions))
    client = QuestionAPIClient("http://backend.test/admin", token="t", client=mock_client(backend))
    return store, UploadOrchestrator(store, client)


def test_one_failure_does_not_stop_the_batch():
    backend = FakeBackend(failing=["q2"])
    store, orchestrator = _orchestrator([_question("q1"), _question("q2"), _question("q3")], backend)

    summary = asyncio.run(orchestrator.upload_all())

    assert summary == {"pending": 0, "uploading": 0, "success": 2, "error": 1}
    statuses = {q.id: q.status for q in store.snapshot}
    assert statuses == {"q1": UploadStatus.SUCCESS, "q2": UploadStatus.ERROR, "q3": UploadStatus.SUCCESS}
    failed = orchestrator.failed_questions()
    assert [q.id for q in failed] == ["q2"]
    assert failed[0].error == "Invalid chapter"
    assert store.get("q1").backend_id == "backend-1"


def test_retry_clears_error_and_records_backend_id():
    backend = FakeBackend(failing=["q1"])
    store, orchestrator = _orchestrator([_question("q1")], backend)
    asyncio.run(orchestrator.upload_all())
    assert store.get("q1").error == "Invalid chapter"

    backend.failing.clear()
    question = asyncio.run(orchestrator.retry("q1"))

    assert question.status == UploadStatus.SUCCESS
    assert question.error is None
    assert question.backend_id == "backend-1"


def test_retry_of_uploaded_question_is_rejected():
    store, orchestrator = _orchestrator([_question("q1")], FakeBackend())
    asyncio.run(orchestrator.upload_all())

    with pytest.raises(InvalidTransitionError):
        asyncio.run(orchestrator.retry("q1"))
    with pytest.raises(KeyError):
        asyncio.run(orchestrator.retry("missing"))


def test_upload_all_skips_uploaded_and_retry_failed_only_touches_errors():
    backend = FakeBackend(failing=["q2"])
    store, orchestrator = _orchestrator([_question("q1"), _question("q2")], backend)
    asyncio.run(orchestrator.upload_all())

    backend.failing.clear()
    summary = asyncio.run(orchestrator.retry_failed())

    assert summary["success"] == 2
    assert backend.created == ["Question q1", "Question q2"]

    asyncio.run(orchestrator.upload_all())
    assert len(backend.created) == 2


def test_transport_error_marks_question_failed():
    def unreachable(request):
        raise httpx.ConnectError("refused", request=request)

    store, orchestrator = _orchestrator([_question("q1")], unreachable)

    asyncio.run(orchestrator.upload_all())

    assert store.get("q1").status == UploadStatus.ERROR
    assert "refused" in store.get("q1").error


def test_retry_clears_error_before_the_outcome_is_known():
    store, orchestrator = _orchestrator([_question("q1")], FakeBackend(failing=["q1"]))
    asyncio.run(orchestrator.upload_all())
    observed = []

    def observing_backend(request):
        current = store.get("q1")
        observed.append((current.status, current.error))
        return httpx.Response(400, json={"error": "Still invalid"})

    orchestrator.question_client = QuestionAPIClient("http://backend.test/admin",
                                                     client=mock_client(observing_backend))
    question = asyncio.run(orchestrator.retry("q1"))

    assert observed == [(UploadStatus.UPLOADING, None)]
    assert (question.status, question.error) == (UploadStatus.ERROR, "Still invalid")


def test_garbled_json_reply_fails_only_that_question():
    def backend(request):
        if b"Question q1" in request.content:
            return httpx.Response(502, headers={"content-type": "application/json"},
                                  content=b"<html>Bad gateway</html>")
        return httpx.Response(201, json={"id": "backend-q2"})

    store, orchestrator = _orchestrator([_question("q1"), _question("q2")], backend)

    summary = asyncio.run(orchestrator.upload_all())

    assert summary == {"pending": 0, "uploading": 0, "success": 1, "error": 1}
    assert store.get("q1").status == UploadStatus.ERROR
    assert "HTTP 502" in store.get("q1").error
    assert store.get("q2").backend_id == "backend-q2"


class CrashingClient:
    async def create_question(self, payload):
        raise RuntimeError("serializer crashed")


def test_unexpected_error_still_ends_in_error_state():
    store = QuestionStore((_question("q1"), _question("q2")))
    orchestrator = UploadOrchestrator(store, CrashingClient())

    summary = asyncio.run(orchestrator.upload_all())

    assert summary["error"] == 2
    assert store.get("q1").error == "serializer crashed"

    asyncio.run(orchestrator.retry("q1"))
    assert store.get("q1").status == UploadStatus.ERROR


def test_overlapping_batches_upload_each_question_once():
    created = []

    async def slow_backend(request):
        await asyncio.sleep(0.01)
        created.append(json.loads(request.content)["content"]["question"]["raw"])
        return httpx.Response(201, json={"id": f"backend-{len(created)}"})

    store, orchestrator = _orchestrator([_question("q1"), _question("q2")], slow_backend)

    async def overlapping():
        return await asyncio.gather(orchestrator.upload_all(), orchestrator.upload_all(), orchestrator.retry_failed())

    asyncio.run(overlapping())

    assert sorted(created) == ["Question q1", "Question q2"]
    assert {q.status for q in store.snapshot} == {UploadStatus.SUCCESS}


class TestReducer:
    def test_status_machine_rejects_skipping_uploading(self):
        with pytest.raises(InvalidTransitionError):
            reduce((_question("q1"),), StatusChanged(question_id="q1", status=UploadStatus.SUCCESS))

    def test_success_is_terminal(self):
        uploaded = _question("q1", status=UploadStatus.SUCCESS)
        with pytest.raises(InvalidTransitionError):
            reduce((uploaded,), StatusChanged(question_id="q1", status=UploadStatus.UPLOADING))

    def test_duplicate_ids_rejected(self):
        with pytest.raises(ValueError):
            reduce((_question("q1"),), QuestionExtracted(question=_question("q1")))

    def test_snapshots_are_new_tuples(self):
        before = (_question("q1"), _question("q2"))

        after = reduce(before, StatusChanged(question_id="q2", status=UploadStatus.UPLOADING))

        assert before[1].status == UploadStatus.PENDING
        assert after[1].status == UploadStatus.UPLOADING
        assert after[0] is before[0]

    def test_update_keeps_upload_status(self):
        before = (_question("q1", status=UploadStatus.ERROR, error="boom"),)

        after = reduce(before, QuestionUpdated(question=_question("q1", text="Edited")))

        assert after[0].question_text == "Edited"
        assert (after[0].status, after[0].error) == (UploadStatus.ERROR, "boom")

    def test_remove_and_unknown_ids(self):
        before = (_question("q1"), _question("q2"))

        assert [q.id for q in reduce(before, QuestionRemoved(question_id="q1"))] == ["q2"]
        assert reduce(before, QuestionRemoved(question_id="nope")) == before


def test_store_dispatch_serializes_concurrent_events():
    store = QuestionStore()

    async def add_many():
        await asyncio.gather(*(store.dispatch(QuestionExtracted(question=_question(f"q{i}"))) for i in range(20)))

    asyncio.run(add_many())

    assert sorted(q.id for q in store.snapshot) == sorted(f"q{i}" for i in range(20))
