import asyncio
import json

import httpx
import pytest

from conftest import mock_client
from question_ingest.backend_client import HierarchyAPIClient, QuestionAPIClient
from question_ingest.errors import BackendAPIError, UploadError

BASE_URL = "http://backend.test/admin/"


def test_question_endpoints_and_auth_header():
    seen = []

    def handler(request):
        seen.append((request.method, request.url.path, request.headers.get("authorization"),
                     json.loads(request.content) if request.content else None))
        return httpx.Response(200, json={"id": "b1"})

    client = QuestionAPIClient(BASE_URL, token="tok", client=mock_client(handler))

    async def calls():
        await client.create_question({"a": 1})
        await client.update_question("b1", {"a": 2})
        await client.get_question("b1")
        await client.search_questions({"chapter_id": "c1"})
        await client.delete_question("b1")

    asyncio.run(calls())

    assert seen == [
        ("POST", "/admin/questions", "Bearer tok", {"a": 1}),
        ("PUT", "/admin/questions/b1", "Bearer tok", {"a": 2}),
        ("GET", "/admin/questions/b1", "Bearer tok", None),
        ("POST", "/admin/questions/search", "Bearer tok", {"chapter_id": "c1"}),
        ("DELETE", "/admin/questions/b1", "Bearer tok", None),
    ]


@pytest.mark.parametrize("body, message", [
    ({"error_description": "desc", "error": "err", "message": "msg"}, "desc"),
    ({"error": "err", "message": "msg"}, "err"),
    ({"message": "msg", "error_code": "E42"}, "msg"),
    ({"error_code": "E42"}, "E42"),
    ({}, "HTTP 400: Bad Request"),
])
def test_error_message_precedence(body, message):
    client = QuestionAPIClient(BASE_URL, client=mock_client(lambda request: httpx.Response(400, json=body)))

    with pytest.raises(BackendAPIError) as excinfo:
        asyncio.run(client.create_question({}))

    assert str(excinfo.value) == message
    assert excinfo.value.status_code == 400
    assert isinstance(excinfo.value, UploadError)


def test_non_json_responses():
    ok = QuestionAPIClient(BASE_URL, client=mock_client(lambda request: httpx.Response(204)))
    assert asyncio.run(ok.get_question("x")) == {"message": "Success"}

    broken = QuestionAPIClient(BASE_URL, client=mock_client(
        lambda request: httpx.Response(502, text="<html>bad gateway</html>")))
    with pytest.raises(BackendAPIError, match="HTTP 502"):
        asyncio.run(broken.get_question("x"))


def test_hierarchy_nodes_unwrap_data_envelope():
    client = HierarchyAPIClient(BASE_URL, client=mock_client(lambda request: httpx.Response(
        200, json={"data": [{"id": "s1", "name": "Physics", "code": "PHY"}]})))

    subjects = asyncio.run(client.get_subjects())

    assert [(s.id, s.name, s.code) for s in subjects] == [("s1", "Physics", "PHY")]


@pytest.mark.parametrize("status", [200, 502])
def test_json_labelled_garbage_is_backend_error(status):
    client = QuestionAPIClient(BASE_URL, client=mock_client(lambda request: httpx.Response(
        status, headers={"content-type": "application/json"}, content=b"<html>Bad gateway</html>")))

    with pytest.raises(BackendAPIError, match="invalid JSON body") as excinfo:
        asyncio.run(client.create_question({}))

    assert excinfo.value.status_code == status


def test_numeric_hierarchy_ids_become_strings():
    client = HierarchyAPIClient(BASE_URL, client=mock_client(lambda request: httpx.Response(
        200, json=[{"id": 12, "name": "Optics", "parent_id": 3}])))

    chapters = asyncio.run(client.get_chapters("3"))

    assert (chapters[0].id, chapters[0].parent_id) == ("12", "3")
