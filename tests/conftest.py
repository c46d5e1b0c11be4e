import io
import json
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

import fitz  # PyMuPDF
import httpx
import pytest
from PIL import Image

from question_ingest.llm_service import LLMService
from question_ingest.state import PageImage

Response = Union[str, Dict[str, Any], Exception]


class FakeProvider:
    """
    Scripted LLMProvider. Either pops canned responses in order or asks a
    responder callable for each prompt.
    """

    name = "fake"

    def __init__(self, responses: Optional[Sequence[Response]] = None,
                 responder: Optional[Callable[[str], Response]] = None):
        self.responses = list(responses or [])
        self.responder = responder
        self.calls: List[Dict[str, Any]] = []

    async def generate(self, prompt, images=(), json_mode=False):
        self.calls.append({"prompt": prompt, "images": list(images), "json_mode": json_mode})
        response = self.responder(prompt) if self.responder else self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response if isinstance(response, str) else json.dumps(response)


def make_png(width: int = 100, height: int = 80, color=(255, 255, 255)) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (width, height), color).save(buffer, format="PNG")
    return buffer.getvalue()


def make_pdf(page_texts: Sequence[str], width: float = 200, height: float = 300) -> bytes:
    doc = fitz.open()
    for text in page_texts:
        page = doc.new_page(width=width, height=height)
        page.insert_text((20, 40), text)
    data = doc.tobytes()
    doc.close()
    return data


def make_page(page_number: int = 1, width: int = 100, height: int = 80) -> PageImage:
    return PageImage(page_number=page_number, image_bytes=make_png(width, height), width=width, height=height)


def mock_client(handler: Callable[[httpx.Request], httpx.Response]) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://testserver")


@pytest.fixture
def fake_llm():
    """Factory: fake_llm(responses=[...]) or fake_llm(responder=fn) -> (LLMService, FakeProvider)."""
    def build(responses=None, responder=None):
        provider = FakeProvider(responses=responses, responder=responder)
        return LLMService(provider), provider
    return build


@pytest.fixture
def page():
    return make_page()
