"""
Image Processing Orchestrator

Coordinates diagram extraction: identify regions on question and solution
pages, crop them, then upload the crops to object storage concurrently.
"""

import asyncio
import inspect
import logging
import time
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Tuple, Union

from pydantic import BaseModel, Field

from question_ingest.config import Config
from question_ingest.errors import UploadError
from question_ingest.image_pipeline.image_cropper import ImageCropper, generate_markdown
from question_ingest.image_pipeline.region_identifier import RegionIdentifier
from question_ingest.image_pipeline.storage_uploader import (
    DIAGRAM_MAX_SIZE,
    DIAGRAM_QUALITY,
    StorageUploader,
    optimize_image,
)
from question_ingest.page_rasterizer import with_source
from question_ingest.state import CropCandidate, ImagePurpose, PageImage, ProcessedImage

logger = logging.getLogger(__name__)


class ImageProcessingProgress(BaseModel):
    stage: str
    current_step: int
    total_steps: int
    message: str
    percentage: float


class ImageProcessingResult(BaseModel):
    processed_images: List[ProcessedImage] = Field(default_factory=list)
    total_images: int = 0
    processing_time: float = 0.0
    # Solution pages are numbered after the question pages
    solution_page_offset: int = 0


ProgressCallback = Callable[[ImageProcessingProgress], Union[None, Awaitable[None]]]

TOTAL_STEPS = 3


class ImageOrchestrator:
    """Runs region identification, cropping and upload for one document."""

    def __init__(self, region_identifier: RegionIdentifier, uploader: StorageUploader,
                 cropper: Optional[ImageCropper] = None, enabled: Optional[bool] = None,
                 folder: Optional[str] = None):
        self.region_identifier = region_identifier
        self.uploader = uploader
        self.cropper = cropper or ImageCropper()
        self.enabled = Config.ENABLE_IMAGE_EXTRACTION if enabled is None else enabled
        self.folder = folder or Config.DIAGRAM_FOLDER

    async def process(self, question_pages: Sequence[PageImage],
                      solution_pages: Optional[Sequence[PageImage]] = None,
                      on_progress: Optional[ProgressCallback] = None) -> ImageProcessingResult:
        start_time = time.monotonic()
        solution_pages = solution_pages or []
        offset = len(question_pages) if solution_pages else 0

        if not self.enabled:
            logger.info("Image extraction is disabled via ENABLE_IMAGE_EXTRACTION; "
                        "images can be added manually as markdown")
            return ImageProcessingResult(solution_page_offset=offset)

        all_pages = with_source(list(question_pages), "question") + with_source(
            list(solution_pages), "solution", page_offset=offset)

        await self._report(on_progress, "analyzing", 1, "Analyzing pages to identify diagrams and images...")
        regions = await self.region_identifier.identify_regions(all_pages)
        if not regions:
            logger.info("No images identified in the document")
            return ImageProcessingResult(processing_time=time.monotonic() - start_time,
                                         solution_page_offset=offset)
        logger.info(f"Identified {len(regions)} image regions")

        await self._report(on_progress, "cropping", 2, f"Cropping {len(regions)} images...")
        candidates = self.cropper.crop(all_pages, regions)

        await self._report(on_progress, "uploading", 3, f"Uploading {len(candidates)} images...")
        uploaded = await asyncio.gather(*(self._upload_candidate(candidate) for candidate in candidates),
                                        return_exceptions=True)
        processed = []
        for candidate, outcome in zip(candidates, uploaded):
            if isinstance(outcome, BaseException):
                logger.error(f"Failed to process {candidate.file_name}: {outcome!r}")
            elif outcome is not None:
                processed.append(outcome)

        await self._report(on_progress, "complete", TOTAL_STEPS,
                           f"Successfully processed {len(processed)} images")
        elapsed = time.monotonic() - start_time
        logger.info(f"Image processing complete in {elapsed:.2f}s: "
                    f"{len(processed)}/{len(candidates)} images uploaded")
        return ImageProcessingResult(
            processed_images=processed,
            total_images=len(processed),
            processing_time=elapsed,
            solution_page_offset=offset,
        )

    async def _upload_candidate(self, candidate: CropCandidate) -> Optional[ProcessedImage]:
        blob = optimize_image(candidate.image_bytes, DIAGRAM_MAX_SIZE, DIAGRAM_MAX_SIZE, DIAGRAM_QUALITY)
        try:
            result = await self.uploader.upload(blob, self.folder, candidate.file_name)
        except UploadError as e:
            logger.error(f"Failed to upload {candidate.file_name}: {e}")
            return None

        logger.info(f"Uploaded: {candidate.file_name} -> {result.url}")
        return ProcessedImage(
            url=result.url,
            key=result.key,
            region=candidate.region,
            markdown=generate_markdown(result.url, candidate.region),
            file_name=candidate.file_name,
        )

    @staticmethod
    async def _report(callback: Optional[ProgressCallback], stage: str, step: int, message: str) -> None:
        if callback is None:
            return
        outcome = callback(ImageProcessingProgress(
            stage=stage,
            current_step=step,
            total_steps=TOTAL_STEPS,
            message=message,
            percentage=step / TOTAL_STEPS * 100,
        ))
        if inspect.isawaitable(outcome):
            await outcome


def group_images_by_question(images: Sequence[ProcessedImage],
                             solution_page_offset: int = 0) -> Dict[Tuple[int, int], List[ProcessedImage]]:
    """
    Group images by (question page, question index on that page).

    Solution-page images are folded back onto the question page they pair with.
    """
    grouped: Dict[Tuple[int, int], List[ProcessedImage]] = {}
    for image in images:
        page = image.region.page_number
        if solution_page_offset and page > solution_page_offset:
            page -= solution_page_offset
        grouped.setdefault((page, image.region.question_index), []).append(image)
    return grouped


def images_by_purpose(images: Sequence[ProcessedImage]) -> Dict[str, List[ProcessedImage]]:
    grouped: Dict[str, List[ProcessedImage]] = {}
    for image in images:
        grouped.setdefault(image.region.purpose.value, []).append(image)
    return grouped


def insert_images_into_text(text: Optional[str], images: Sequence[ProcessedImage],
                            purpose: ImagePurpose, option_label: Optional[str] = None) -> Optional[str]:
    """Append the markdown of every image with the given purpose to text."""
    relevant = [image for image in images if image.region.purpose == purpose]
    if option_label is not None:
        relevant = [image for image in relevant if same_option_label(image.region.option_label, option_label)]
    if not relevant:
        return text

    markdown = "\n\n".join(image.markdown for image in relevant)
    return f"{text}\n\n{markdown}" if text else markdown


def same_option_label(left: Optional[str], right: Optional[str]) -> bool:
    """Compare option labels ignoring punctuation and case, so "(A)" matches "a"."""
    def clean(label: Optional[str]) -> str:
        return ''.join(ch for ch in (label or '') if ch.isalnum()).upper()
    return bool(clean(left)) and clean(left) == clean(right)
