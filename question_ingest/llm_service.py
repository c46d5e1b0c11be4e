"""LLM Vision Service: pluggable providers plus JSON recovery from free-form responses."""

import json
import logging
import re
from typing import Any, Dict, List, Optional, Protocol, Sequence

import openai
from google import genai
from google.genai import types

from question_ingest.config import Config
from question_ingest.errors import ConfigurationError, ExtractionParseError
from question_ingest.state import PageImage

logger = logging.getLogger(__name__)

CONTROL_CHARS_RE = re.compile(r'[\u0000-\u0008\u000B-\u000C\u000E-\u001F\u007F-\u009F]')
ALL_CONTROL_CHARS_RE = re.compile(r'[\u0000-\u001F\u007F-\u009F]')
# LaTeX commands whose first letter is also a JSON escape (\f, \b, \n, \r, \t)
LATEX_ESCAPE_COLLISION_RE = re.compile(
    r'(?<!\\)\\(?=(?:frac|forall|beta|bar|binom|big|bigg|boldsymbol|bmatrix|begin|bot|bullet'
    r'|right|rightarrow|rho|rangle|rm|text|textbf|textrm|theta|times|tau|tan|tanh|to|top|tilde'
    r'|triangle|therefore|nabla|neq|nu|not|ne|ni|newline)\b)'
)
INVALID_ESCAPE_RE = re.compile(r'(?<!\\)\\(?![\\"/bfnrt]|u[0-9a-fA-F]{4})')


class LLMProvider(Protocol):
    """A vision-capable model: one prompt plus zero or more images in, free text out."""

    name: str

    async def generate(self, prompt: str, images: Sequence[PageImage] = (), json_mode: bool = False) -> str:
        ...


class OpenAIVisionProvider:
    """OpenAI chat-completions vision provider"""

    name = "openai"

    def __init__(self, api_key: str, model: Optional[str] = None, base_url: Optional[str] = None,
                 max_tokens: int = 16000, temperature: float = 0.1):
        self.model = model or Config.DEFAULT_MODELS["openai"]
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.client = openai.AsyncOpenAI(api_key=api_key, base_url=base_url)
        logger.info(f"OpenAI provider initialized with model {self.model}")

    async def generate(self, prompt: str, images: Sequence[PageImage] = (), json_mode: bool = False) -> str:
        content: List[Dict[str, Any]] = [{"type": "text", "text": prompt}]
        for image in images:
            content.append({"type": "image_url", "image_url": {"url": image.data_url()}})

        kwargs: Dict[str, Any] = {}
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}

        response = await self.client.chat.completions.create(
            model=self.model,
            messages=[{"role": "user", "content": content}],
            max_tokens=self.max_tokens,
            temperature=self.temperature,
            **kwargs,
        )
        return response.choices[0].message.content or ""


class GeminiVisionProvider:
    """Google Gemini vision provider"""

    name = "gemini"

    def __init__(self, api_key: str, model: Optional[str] = None, temperature: float = 0.1):
        self.model = model or Config.DEFAULT_MODELS["gemini"]
        self.temperature = temperature
        self.client = genai.Client(api_key=api_key)
        logger.info(f"Gemini provider initialized with model {self.model}")

    async def generate(self, prompt: str, images: Sequence[PageImage] = (), json_mode: bool = False) -> str:
        contents: List[Any] = [prompt]
        for image in images:
            contents.append(types.Part.from_bytes(data=image.image_bytes, mime_type=image.mime_type))

        config = types.GenerateContentConfig(
            temperature=self.temperature,
            response_mime_type="application/json" if json_mode else None,
        )
        response = await self.client.aio.models.generate_content(
            model=self.model,
            contents=contents,
            config=config,
        )
        return response.text or ""


def create_provider(provider: Optional[str] = None, model: Optional[str] = None,
                    api_key: Optional[str] = None) -> LLMProvider:
    """
    Build a provider from explicit arguments, falling back to Config for anything omitted.

    Raises:
        ConfigurationError: unknown provider or missing API key.
    """
    provider = (provider or Config.LLM_PROVIDER or "").lower()
    if provider not in ("openai", "gemini"):
        raise ConfigurationError(f"Unknown LLM provider: {provider!r}")

    api_key = api_key or Config.api_key_for(provider)
    if not api_key:
        raise ConfigurationError(f"{provider.upper()}_API_KEY not found in environment variables")

    model = model or Config.model_for(provider)
    if provider == "openai":
        return OpenAIVisionProvider(api_key=api_key, model=model, base_url=Config.OPENAI_BASE_URL)
    return GeminiVisionProvider(api_key=api_key, model=model)


def extract_json_object(text: str) -> Optional[str]:
    """
    Return the first balanced {...} substring of a model response.

    Braces inside JSON string literals are ignored, so prose, markdown fences and
    LaTeX such as "\\frac{a}{b}" inside values do not confuse the scan.
    """
    if not text:
        return None

    start = text.find('{')
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for index in range(start, len(text)):
            char = text[index]
            if in_string:
                if escaped:
                    escaped = False
                elif char == '\\':
                    escaped = True
                elif char == '"':
                    in_string = False
                continue
            if char == '"':
                in_string = True
            elif char == '{':
                depth += 1
            elif char == '}':
                depth -= 1
                if depth == 0:
                    return text[start:index + 1]
        # Unbalanced from this brace; try the next one
        start = text.find('{', start + 1)
    return None


def _repair_escapes(json_text: str) -> str:
    json_text = LATEX_ESCAPE_COLLISION_RE.sub(r'\\\\', json_text)
    return INVALID_ESCAPE_RE.sub(r'\\\\', json_text)


def parse_json_response(text: str, page_number: Optional[int] = None) -> Dict[str, Any]:
    """
    Locate and decode the JSON object in a model response.

    Raises:
        ExtractionParseError: no JSON object could be recovered.
    """
    json_text = extract_json_object(text)
    if json_text is None:
        raise ExtractionParseError("No JSON found in response", page_number=page_number, raw_response=text)

    cleaned = _repair_escapes(CONTROL_CHARS_RE.sub('', json_text))
    try:
        parsed = json.loads(cleaned)
    except json.JSONDecodeError as first_error:
        logger.error(f"JSON parse error: {first_error}")
        logger.debug(f"Response text (first 1000 chars): {text[:1000]}")
        # Aggressive cleaning: raw newlines and tabs inside strings break json.loads
        aggressive = json_text.replace('\n', ' ').replace('\t', ' ').replace('\r', '')
        aggressive = _repair_escapes(ALL_CONTROL_CHARS_RE.sub('', aggressive))
        try:
            parsed = json.loads(aggressive)
            logger.info("Successfully parsed with aggressive cleaning")
        except json.JSONDecodeError:
            raise ExtractionParseError(
                f"Failed to parse AI response: {first_error}", page_number=page_number, raw_response=text
            ) from first_error

    if not isinstance(parsed, dict):
        raise ExtractionParseError("Response JSON is not an object", page_number=page_number, raw_response=text)
    return parsed


class LLMService:
    """Thin facade over a provider that returns decoded JSON objects."""

    def __init__(self, provider: LLMProvider):
        self.provider = provider
        logger.info(f"LLM service initialized with provider {getattr(provider, 'name', type(provider).__name__)}")

    async def generate_text(self, prompt: str, images: Sequence[PageImage] = ()) -> str:
        return (await self.provider.generate(prompt, images)).strip()

    async def generate_json(self, prompt: str, images: Sequence[PageImage] = (),
                            page_number: Optional[int] = None) -> Dict[str, Any]:
        raw_response = await self.provider.generate(prompt, images, json_mode=True)
        return parse_json_response(raw_response, page_number=page_number)
