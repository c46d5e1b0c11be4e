"""Async clients for the backend question and hierarchy REST APIs."""

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx
from pydantic import BaseModel, field_validator

from question_ingest.config import Config
from question_ingest.errors import BackendAPIError

logger = logging.getLogger(__name__)


class HierarchyNode(BaseModel):
    id: str
    name: str
    type: Optional[str] = None
    code: Optional[str] = None
    parent_id: Optional[str] = None
    description: Optional[str] = None

    @field_validator("id", "parent_id", mode="before")
    @classmethod
    def _numeric_ids_as_str(cls, value: Any) -> Any:
        return str(value) if isinstance(value, int) and not isinstance(value, bool) else value


class BackendClient:
    """JSON-over-HTTP plumbing shared by the API clients."""

    def __init__(self, base_url: Optional[str] = None, token: Optional[str] = None,
                 client: Optional[httpx.AsyncClient] = None, timeout: Optional[float] = None):
        self.base_url = (base_url or Config.BACKEND_API_URL).rstrip("/")
        self.token = token if token is not None else Config.BACKEND_API_TOKEN
        self.timeout = timeout or Config.REQUEST_TIMEOUT_SECONDS
        self._client = client

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._client is not None:
            yield self._client
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                yield client

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def request(self, method: str, endpoint: str, body: Optional[Dict[str, Any]] = None) -> Any:
        """
        Raises:
            BackendAPIError: transport failure or non-2xx status.
        """
        url = f"{self.base_url}{endpoint}"
        logger.debug(f"{method} {url}")
        try:
            async with self._session() as client:
                response = await client.request(method, url, json=body, headers=self._headers())
        except httpx.HTTPError as e:
            raise BackendAPIError(f"Request to {endpoint} failed: {e}") from e

        fallback = f"HTTP {response.status_code}: {response.reason_phrase}"
        if "application/json" not in response.headers.get("content-type", ""):
            if response.is_success:
                return {"message": "Success"}
            raise BackendAPIError(fallback, status_code=response.status_code)

        try:
            data = response.json()
        except ValueError:
            raise BackendAPIError(f"{fallback} (invalid JSON body)", status_code=response.status_code)
        if not response.is_success:
            error_code = data.get("error_code") if isinstance(data, dict) else None
            message = fallback
            if isinstance(data, dict):
                message = (data.get("error_description") or data.get("error")
                           or data.get("message") or error_code or fallback)
            raise BackendAPIError(message, status_code=response.status_code, error_code=error_code)
        return data


class QuestionAPIClient(BackendClient):
    BASE_PATH = "/questions"

    async def create_question(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return await self.request("POST", self.BASE_PATH, payload)

    async def update_question(self, question_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        return await self.request("PUT", f"{self.BASE_PATH}/{question_id}", payload)

    async def get_question(self, question_id: str) -> Dict[str, Any]:
        return await self.request("GET", f"{self.BASE_PATH}/{question_id}")

    async def search_questions(self, filters: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return await self.request("POST", f"{self.BASE_PATH}/search", filters or {})

    async def delete_question(self, question_id: str) -> None:
        await self.request("DELETE", f"{self.BASE_PATH}/{question_id}")


class HierarchyAPIClient(BackendClient):
    BASE_PATH = "/hierarchy"

    async def get_subjects(self) -> List[HierarchyNode]:
        return self._nodes(await self.request("GET", f"{self.BASE_PATH}/subjects"))

    async def get_chapters(self, subject_id: str) -> List[HierarchyNode]:
        return self._nodes(await self.request("GET", f"{self.BASE_PATH}/subjects/{subject_id}/chapters"))

    async def get_topics(self, chapter_id: str) -> List[HierarchyNode]:
        return self._nodes(await self.request("GET", f"{self.BASE_PATH}/chapters/{chapter_id}/topics"))

    @staticmethod
    def _nodes(data: Any) -> List[HierarchyNode]:
        # Some deployments wrap lists as {"data": [...]}
        if isinstance(data, dict):
            data = data.get("data") or []
        if not isinstance(data, list):
            raise BackendAPIError(f"Expected a list of hierarchy nodes, got {type(data).__name__}")
        return [HierarchyNode.model_validate(item) for item in data]
