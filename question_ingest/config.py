"""Configuration module for the bulk question ingestion service."""

import os
import logging
from dotenv import load_dotenv

from question_ingest.errors import ConfigurationError

# Load environment variables
load_dotenv()


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


class Config:
    """Configuration settings for the ingestion service."""

    # LLM Configuration
    LLM_PROVIDER: str = os.getenv("LLM_PROVIDER", "gemini")
    # LLM_MODEL applies to LLM_PROVIDER only; OPENAI_MODEL and GEMINI_MODEL pin each provider
    LLM_MODEL: str = os.getenv("LLM_MODEL")
    OPENAI_MODEL: str = os.getenv("OPENAI_MODEL")
    GEMINI_MODEL: str = os.getenv("GEMINI_MODEL")
    OPENAI_API_KEY: str = os.getenv("OPENAI_API_KEY")
    OPENAI_BASE_URL: str = os.getenv("OPENAI_BASE_URL")
    GEMINI_API_KEY: str = os.getenv("GEMINI_API_KEY")

    DEFAULT_MODELS = {
        "gemini": "gemini-2.5-flash",
        "openai": "gpt-4o-mini",
    }

    # Backend / storage collaborators
    BACKEND_API_URL: str = os.getenv("BACKEND_API_URL", "http://localhost:8080/api/backend/v1/admin")
    BACKEND_API_TOKEN: str = os.getenv("BACKEND_API_TOKEN")
    STORAGE_UPLOAD_URL: str = os.getenv("STORAGE_UPLOAD_URL", "http://localhost:3000/api/upload")
    REQUEST_TIMEOUT_SECONDS: float = float(os.getenv("REQUEST_TIMEOUT_SECONDS", "60"))

    # Pipeline Configuration
    ENABLE_IMAGE_EXTRACTION: bool = _env_bool("ENABLE_IMAGE_EXTRACTION")
    RASTER_SCALE: float = float(os.getenv("RASTER_SCALE", "3.0"))
    DIAGRAM_FOLDER: str = os.getenv("DIAGRAM_FOLDER", "questions/diagrams")

    # Logging Configuration
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
    LOG_FORMAT: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    @classmethod
    def api_key_for(cls, provider: str):
        if provider == "openai":
            return cls.OPENAI_API_KEY
        if provider == "gemini":
            return cls.GEMINI_API_KEY
        raise ConfigurationError(f"Unknown LLM provider: {provider}")

    @classmethod
    def model_for(cls, provider: str) -> str:
        pinned = {"openai": cls.OPENAI_MODEL, "gemini": cls.GEMINI_MODEL}.get(provider)
        if pinned:
            return pinned
        if provider == (cls.LLM_PROVIDER or "").lower() and cls.LLM_MODEL:
            return cls.LLM_MODEL
        return cls.DEFAULT_MODELS.get(provider)

    @classmethod
    def validate(cls, provider: str = None) -> bool:
        """Validate configuration settings."""
        provider = provider or cls.LLM_PROVIDER
        if not cls.api_key_for(provider):
            raise ConfigurationError(f"{provider.upper()}_API_KEY is required for provider '{provider}'")
        return True


def setup_logging() -> logging.Logger:
    """Set up logging configuration."""
    # Use absolute path for log file so it's always in the project root
    project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
    log_file_path = os.path.join(project_root, "ingestion_debug.log")

    logging.basicConfig(
        level=getattr(logging, Config.LOG_LEVEL.upper()),
        format=Config.LOG_FORMAT,
        handlers=[
            logging.StreamHandler(),
            logging.FileHandler(log_file_path, mode='a')
        ],
        force=True  # Force reconfiguration to override any existing setup
    )
    return logging.getLogger(__name__)
