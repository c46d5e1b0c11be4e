"""Error taxonomy for the ingestion pipeline."""

from typing import Optional


class IngestionError(Exception):
    """Base class for all pipeline errors."""


class ConfigurationError(IngestionError):
    """The model client cannot be configured (e.g. missing credentials). Aborts the run."""


class DecodeError(IngestionError):
    """The uploaded file could not be decoded into pages. Aborts the run."""


class ExtractionParseError(IngestionError):
    """A single page's model response did not contain a parseable JSON object."""

    def __init__(self, message: str, page_number: Optional[int] = None, raw_response: str = ""):
        super().__init__(message)
        self.page_number = page_number
        self.raw_response = raw_response


class RegionInvalidWarning(UserWarning):
    """An image region lies outside its page; the cropper substitutes the full page."""


class UploadError(IngestionError):
    """Network or storage failure while uploading an image or a question."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class HierarchyResolutionError(IngestionError):
    """Subject/chapter/topic could not be resolved for a question."""


class InvalidTransitionError(IngestionError):
    """An upload status transition that the state machine does not allow."""


class BackendAPIError(UploadError):
    """The backend REST API answered with an error or could not be reached."""

    def __init__(self, message: str, status_code: Optional[int] = None, error_code: Optional[str] = None):
        super().__init__(message, status_code=status_code)
        self.error_code = error_code
