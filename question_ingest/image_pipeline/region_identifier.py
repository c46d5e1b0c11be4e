"""
Region Identifier

Asks the vision model where the diagrams on each page are. One call per page;
a page whose answer cannot be parsed contributes no regions.
"""

import logging
from typing import Any, Dict, List, Sequence

from question_ingest.errors import ExtractionParseError
from question_ingest.llm_service import LLMService
from question_ingest.state import BoundingBox, ImagePurpose, ImageRegion, PageImage

logger = logging.getLogger(__name__)

REGION_PROMPT = """Analyze this exam page image ({width}x{height} pixels) and locate every diagram, graph,
figure, circuit, structure or table drawn as an image. Ignore plain text and equations.

For each image return its bounding box in PIXELS of this image (origin at the top-left corner),
which question it belongs to (0-based index of the question on this page, in reading order; a question
cut off at the bottom of the page comes last), and where it is used:
"question" (in the question stem), "option" (inside an answer option; give optionLabel),
"hint" or "solution".

OUTPUT FORMAT (JSON):
{{
  "regions": [
    {{
      "boundingBox": {{"x": 120, "y": 340, "width": 600, "height": 280}},
      "purpose": "question",
      "questionIndex": 0,
      "optionLabel": null,
      "altText": "Circuit with two resistors in series",
      "suggestedWidth": "450px",
      "suggestedHeight": null,
      "position": "center"
    }}
  ]
}}

If there are no images, return {{"regions": []}}.
Return ONLY valid JSON with no markdown code blocks, no additional text."""


class RegionIdentifier:
    """Locates embedded diagrams on page rasters through a vision LLM."""

    def __init__(self, llm_service: LLMService):
        self.llm_service = llm_service

    async def identify_regions(self, pages: Sequence[PageImage]) -> List[ImageRegion]:
        regions: List[ImageRegion] = []
        for page in pages:
            prompt = REGION_PROMPT.format(width=page.width, height=page.height)
            try:
                parsed = await self.llm_service.generate_json(prompt, [page], page_number=page.page_number)
            except ExtractionParseError as e:
                logger.error(f"Region identification failed for page {page.page_number}: {e}")
                continue

            page_regions = self._parse_regions(parsed, page.page_number)
            logger.info(f"Page {page.page_number}: identified {len(page_regions)} image regions")
            regions.extend(page_regions)
        return regions

    @staticmethod
    def _parse_regions(parsed: Dict[str, Any], page_number: int) -> List[ImageRegion]:
        regions = []
        for raw in parsed.get("regions") or []:
            if not isinstance(raw, dict):
                continue
            box = raw.get("boundingBox") or {}
            try:
                bounding_box = BoundingBox(
                    x=float(box.get("x", 0)),
                    y=float(box.get("y", 0)),
                    width=float(box.get("width", 0)),
                    height=float(box.get("height", 0)),
                )
            except (TypeError, ValueError):
                logger.warning(f"Page {page_number}: skipping region with malformed bounding box {box}")
                continue

            try:
                purpose = ImagePurpose(str(raw.get("purpose") or "question").lower())
            except ValueError:
                purpose = ImagePurpose.QUESTION

            try:
                question_index = int(raw.get("questionIndex") or 0)
            except (TypeError, ValueError):
                question_index = 0

            regions.append(ImageRegion(
                page_number=page_number,
                bounding_box=bounding_box,
                purpose=purpose,
                suggested_width=raw.get("suggestedWidth") or None,
                suggested_height=raw.get("suggestedHeight") or None,
                position=raw.get("position") or None,
                alt_text=raw.get("altText") or None,
                option_label=raw.get("optionLabel") or None,
                question_index=question_index,
            ))
        return regions
