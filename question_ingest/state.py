import base64
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from question_ingest.rich_content import RichContent


class QuestionType(str, Enum):
    SINGLE_CHOICE = "SINGLE_CHOICE"
    MULTIPLE_CHOICE = "MULTIPLE_CHOICE"
    INTEGER = "INTEGER"
    NUMERICAL = "NUMERICAL"
    PARAGRAPH = "PARAGRAPH"

    @property
    def is_numeric(self) -> bool:
        return self in (QuestionType.INTEGER, QuestionType.NUMERICAL)


class ImagePurpose(str, Enum):
    QUESTION = "question"
    HINT = "hint"
    SOLUTION = "solution"
    OPTION = "option"


class UploadStatus(str, Enum):
    PENDING = "pending"
    UPLOADING = "uploading"
    SUCCESS = "success"
    ERROR = "error"


class PageImage(BaseModel):
    """
    One rendered page of the uploaded document, as PNG bytes plus its pixel size.
    """
    model_config = ConfigDict(frozen=True)

    page_number: int = Field(ge=1)
    image_bytes: bytes
    width: int
    height: int
    source: str = "question"
    mime_type: str = "image/png"

    def data_url(self) -> str:
        encoded = base64.b64encode(self.image_bytes).decode("utf-8")
        return f"data:{self.mime_type};base64,{encoded}"


class MarkingScheme(BaseModel):
    """
    Positive/negative marks and per-question duration. Any field may be unset (None),
    in which case a lower-precedence scheme supplies it.
    """
    positive_marks: Optional[float] = None
    negative_marks: Optional[float] = None
    duration_seconds: Optional[int] = None

    @classmethod
    def hardcoded(cls) -> "MarkingScheme":
        return cls(positive_marks=4, negative_marks=1, duration_seconds=120)

    @classmethod
    def resolve(cls, *layers: Optional["MarkingScheme"]) -> "MarkingScheme":
        """Pick each field from the first layer that sets it, ending with the hardcoded defaults."""
        resolved = {}
        for field in ("positive_marks", "negative_marks", "duration_seconds"):
            for layer in list(layers) + [cls.hardcoded()]:
                value = getattr(layer, field, None) if layer is not None else None
                if value is not None:
                    resolved[field] = value
                    break
        return cls(**resolved)


class QuestionOption(BaseModel):
    id: Optional[str] = None
    label: str = ""
    text: str = ""
    is_correct: bool = False


class ImageReference(BaseModel):
    """Raw image reference reported by the extraction model."""
    location: ImagePurpose = ImagePurpose.QUESTION
    base64: Optional[str] = None
    option_label: Optional[str] = None
    url: Optional[str] = None


class IncompleteQuestionFragment(BaseModel):
    """A question cut off at the bottom of a page, carried into the next page's extraction."""
    question_text: str
    options: List[QuestionOption] = Field(default_factory=list)
    page_number: int
    # Position after the complete questions on its page, as image regions count it
    question_index: Optional[int] = None


class ExtractedQuestion(BaseModel):
    question_text: str
    options: List[QuestionOption] = Field(default_factory=list)
    correct_answer: Optional[str] = None
    question_type: QuestionType = QuestionType.SINGLE_CHOICE
    difficulty: int = 5
    positive_marks: Optional[float] = None
    negative_marks: Optional[float] = None
    duration_seconds: Optional[int] = None
    hint: Optional[str] = None
    solution: Optional[str] = None
    images: List[ImageReference] = Field(default_factory=list)
    raw_latex: List[str] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
    subject_name: Optional[str] = None
    chapter_name: Optional[str] = None
    topic_name: Optional[str] = None
    source_page: Optional[int] = None
    continued_from_page: Optional[int] = None
    continued_from_index: Optional[int] = None
    # Position in the model's question list for its page; image regions use the same numbering
    source_index: Optional[int] = None
    needs_review: bool = False

    def correct_option_ids(self) -> List[str]:
        return [opt.id for opt in self.options if opt.is_correct]


class PageExtractionResult(BaseModel):
    page_number: int
    questions: List[ExtractedQuestion] = Field(default_factory=list)
    incomplete_question: Optional[IncompleteQuestionFragment] = None
    section_instructions: MarkingScheme = Field(default_factory=MarkingScheme)


class DocumentExtractionResult(BaseModel):
    questions: List[ExtractedQuestion] = Field(default_factory=list)
    page_results: List[PageExtractionResult] = Field(default_factory=list)
    failed_pages: List[int] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    unresolved_fragment: Optional[IncompleteQuestionFragment] = None


class ExtractionOptions(BaseModel):
    include_hints: bool = True
    include_solutions: bool = True
    solution_page: Optional[PageImage] = None
    previous_fragment: Optional[IncompleteQuestionFragment] = None
    default_marking: MarkingScheme = Field(default_factory=MarkingScheme)


class BoundingBox(BaseModel):
    x: float
    y: float
    width: float
    height: float

    def fits_within(self, image_width: int, image_height: int) -> bool:
        return (
            self.x >= 0 and self.y >= 0
            and self.width > 0 and self.height > 0
            and self.x < image_width and self.y < image_height
            and self.x + self.width <= image_width
            and self.y + self.height <= image_height
        )


class ImageRegion(BaseModel):
    page_number: int
    bounding_box: BoundingBox
    purpose: ImagePurpose = ImagePurpose.QUESTION
    suggested_width: Optional[str] = None
    suggested_height: Optional[str] = None
    position: Optional[str] = None
    alt_text: Optional[str] = None
    option_label: Optional[str] = None
    question_index: int = 0


class CropCandidate(BaseModel):
    image_bytes: bytes
    region: ImageRegion
    file_name: str
    crop_box: BoundingBox
    fallback_reason: Optional[str] = None


class UploadResult(BaseModel):
    url: str
    key: str
    file_name: Optional[str] = None
    size: Optional[int] = None
    content_type: Optional[str] = None


class ProcessedImage(BaseModel):
    url: str
    key: str
    region: ImageRegion
    markdown: str
    file_name: str


class ResolvedHierarchy(BaseModel):
    subject_id: Optional[str] = None
    chapter_id: Optional[str] = None
    topic_id: Optional[str] = None


class ProcessedQuestion(ExtractedQuestion):
    """
    An assembled question ready for the backend. Snapshots are immutable; the
    question store replaces them by id through model_copy.
    """
    model_config = ConfigDict(frozen=True)

    id: str
    status: UploadStatus = UploadStatus.PENDING
    backend_id: Optional[str] = None
    error: Optional[str] = None
    subject_id: Optional[str] = None
    chapter_id: Optional[str] = None
    topic_id: Optional[str] = None
    images_by_purpose: Dict[str, List[ProcessedImage]] = Field(default_factory=dict)


class UploadContext(BaseModel):
    """Run-level values stamped onto every backend payload."""
    exam_id: Optional[str] = None
    paper_id: Optional[str] = None
    is_previous_year_question: bool = True
    no_duration: bool = False
    default_marking: MarkingScheme = Field(default_factory=MarkingScheme)


class RunOptions(BaseModel):
    """Per-run settings. These never mutate the process-wide Config."""
    provider: Optional[str] = None
    model: Optional[str] = None
    include_hints: bool = True
    include_solutions: bool = True
    default_marking: MarkingScheme = Field(default_factory=MarkingScheme)
    no_duration: bool = False
    enable_image_extraction: Optional[bool] = None
    raster_scale: Optional[float] = None
    exam_id: Optional[str] = None
    paper_id: Optional[str] = None
    is_previous_year_question: bool = True

    def upload_context(self) -> UploadContext:
        return UploadContext(
            exam_id=self.exam_id,
            paper_id=self.paper_id,
            is_previous_year_question=self.is_previous_year_question,
            no_duration=self.no_duration,
            default_marking=self.default_marking,
        )

    def extraction_options(self) -> ExtractionOptions:
        return ExtractionOptions(
            include_hints=self.include_hints,
            include_solutions=self.include_solutions,
            default_marking=self.default_marking,
        )


__all__ = [
    "BoundingBox", "CropCandidate", "DocumentExtractionResult", "ExtractedQuestion",
    "ExtractionOptions", "ImagePurpose", "ImageReference", "ImageRegion",
    "IncompleteQuestionFragment", "MarkingScheme", "PageExtractionResult", "PageImage",
    "ProcessedImage", "ProcessedQuestion", "QuestionOption", "QuestionType",
    "ResolvedHierarchy", "RichContent", "RunOptions", "UploadContext", "UploadResult",
    "UploadStatus",
]
