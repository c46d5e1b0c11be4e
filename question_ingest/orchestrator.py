"""Ingestion Pipeline Orchestrator."""

import inspect
import logging
from typing import Awaitable, Callable, Dict, List, Optional, Tuple, Union

from pydantic import BaseModel, Field

from question_ingest.backend_client import HierarchyAPIClient
from question_ingest.config import Config
from question_ingest.errors import HierarchyResolutionError
from question_ingest.extraction_pipeline.question_extractor import VisionExtractionClient
from question_ingest.hierarchy_resolver import HierarchyResolver
from question_ingest.image_pipeline.image_orchestrator import (
    ImageOrchestrator,
    group_images_by_question,
    images_by_purpose,
)
from question_ingest.image_pipeline.region_identifier import RegionIdentifier
from question_ingest.image_pipeline.storage_uploader import StorageUploader
from question_ingest.llm_service import LLMService
from question_ingest.page_rasterizer import rasterize
from question_ingest.question_assembler import QuestionAssembler
from question_ingest.question_store import QuestionExtracted, QuestionStore
from question_ingest.state import (
    ExtractedQuestion,
    IncompleteQuestionFragment,
    PageImage,
    ProcessedImage,
    ProcessedQuestion,
    RunOptions,
)

logger = logging.getLogger(__name__)


class RunProgress(BaseModel):
    stage: str
    current_page: int = 0
    total_pages: int = 0
    message: str = ""


class RunResult(BaseModel):
    questions: List[ProcessedQuestion] = Field(default_factory=list)
    images: List[ProcessedImage] = Field(default_factory=list)
    page_count: int = 0
    failed_pages: List[int] = Field(default_factory=list)
    skipped_questions: int = 0
    warnings: List[str] = Field(default_factory=list)
    unresolved_fragment: Optional[IncompleteQuestionFragment] = None


ProgressCallback = Callable[[RunProgress], Union[None, Awaitable[None]]]


class IngestionPipeline:
    """
    One ingestion run: rasterize, extract diagrams, extract questions page by
    page, resolve hierarchy and assemble each question into the store.

    DecodeError and ConfigurationError abort the run; per-page, per-image and
    per-question failures are logged, recorded as warnings, and skipped.
    """

    def __init__(self, llm_service: LLMService, hierarchy_client: HierarchyAPIClient,
                 storage_uploader: Optional[StorageUploader] = None,
                 store: Optional[QuestionStore] = None, options: Optional[RunOptions] = None):
        self.options = options or RunOptions()
        self.store = store or QuestionStore()
        self.extractor = VisionExtractionClient(llm_service)
        self.resolver = HierarchyResolver(hierarchy_client, llm_service)
        self.assembler = QuestionAssembler(self.options.upload_context())
        self.image_orchestrator = ImageOrchestrator(
            RegionIdentifier(llm_service),
            storage_uploader or StorageUploader(),
            enabled=self.options.enable_image_extraction,
        )
        logger.info("Ingestion pipeline initialized")

    async def run(self, file_data: Union[bytes, str], solution_data: Union[bytes, str, None] = None,
                  on_progress: Optional[ProgressCallback] = None) -> RunResult:
        scale = self.options.raster_scale or Config.RASTER_SCALE
        await self._report(on_progress, RunProgress(stage="converting", message="Rendering pages"))
        pages = rasterize(file_data, scale)
        solution_pages = rasterize(solution_data, scale) if solution_data else []
        return await self.run_pages(pages, solution_pages, on_progress)

    async def run_pages(self, pages: List[PageImage], solution_pages: Optional[List[PageImage]] = None,
                        on_progress: Optional[ProgressCallback] = None) -> RunResult:
        solution_pages = solution_pages or []
        result = RunResult(page_count=len(pages))
        logger.info(f"Starting run over {len(pages)} pages ({len(solution_pages)} solution pages)")

        image_result = await self.image_orchestrator.process(pages, solution_pages)
        result.images = image_result.processed_images
        grouped_images = group_images_by_question(image_result.processed_images,
                                                  image_result.solution_page_offset)

        async def on_page(page_number: int, questions: List[ExtractedQuestion]) -> None:
            await self._report(on_progress, RunProgress(
                stage="extracting", current_page=page_number, total_pages=len(pages),
                message=f"Page {page_number}: {len(questions)} questions"))
            for index, question in enumerate(questions):
                processed = await self._process_question(question, page_number, index, grouped_images, result)
                if processed is not None:
                    await self.store.dispatch(QuestionExtracted(question=processed))

        extraction = await self.extractor.extract_document(
            pages,
            self.options.extraction_options(),
            solution_pages=solution_pages,
            on_page=on_page,
        )
        result.failed_pages = extraction.failed_pages
        result.warnings = extraction.warnings + result.warnings
        result.unresolved_fragment = extraction.unresolved_fragment
        result.questions = list(self.store.snapshot)

        await self._report(on_progress, RunProgress(
            stage="complete", current_page=len(pages), total_pages=len(pages),
            message=f"Extracted {len(result.questions)} questions"))
        logger.info(f"Run complete: {len(result.questions)} questions, {result.skipped_questions} skipped, "
                    f"{len(result.failed_pages)} failed pages")
        return result

    async def _process_question(self, question: ExtractedQuestion, page_number: int, index: int,
                                grouped_images: Dict[Tuple[int, int], List[ProcessedImage]],
                                result: RunResult) -> Optional[ProcessedQuestion]:
        question_id = f"q_{page_number}_{index}"
        try:
            hierarchy = await self.resolver.resolve(
                question.question_text,
                question.subject_name,
                question.chapter_name,
                question.topic_name,
            )
        except HierarchyResolutionError as e:
            message = f"Question {question_id} left out: {e}"
            logger.error(message)
            result.warnings.append(message)
            result.skipped_questions += 1
            return None

        images = question_images(question, page_number, index, grouped_images)
        return self.assembler.assemble(question, hierarchy, images_by_purpose(images), question_id=question_id)

    @staticmethod
    async def _report(callback: Optional[ProgressCallback], progress: RunProgress) -> None:
        if callback is None:
            return
        outcome = callback(progress)
        if inspect.isawaitable(outcome):
            await outcome


def question_images(question: ExtractedQuestion, page_number: int, index: int,
                    grouped_images: Dict[Tuple[int, int], List[ProcessedImage]]) -> List[ProcessedImage]:
    """
    Images for one question, keyed by the model's own numbering of its page.

    Entries dropped during extraction do not shift the key. A question continued
    from an earlier page also takes the diagrams found beside its opening part.
    """
    source_index = index if question.source_index is None else question.source_index
    images = list(grouped_images.get((page_number, source_index), []))
    if question.continued_from_page is not None and question.continued_from_index is not None:
        images.extend(grouped_images.get((question.continued_from_page, question.continued_from_index), []))
    return images
