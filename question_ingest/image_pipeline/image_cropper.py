"""
Image Cropper

Crops identified regions out of page rasters as lossless PNG. A region whose
box does not fit its page is replaced by the whole page so a person can crop
it by hand later.
"""

import io
import logging
import secrets
import string
import time
import warnings
from typing import Dict, List, Optional, Sequence

from PIL import Image

from question_ingest.errors import RegionInvalidWarning
from question_ingest.state import BoundingBox, CropCandidate, ImageRegion, PageImage

logger = logging.getLogger(__name__)

CROP_PADDING = 3
DEFAULT_MARKDOWN_WIDTH = "450px"
_RANDOM_ALPHABET = string.ascii_lowercase + string.digits


def invalid_region_reason(box: BoundingBox, width: int, height: int) -> Optional[str]:
    """Why a box cannot be cropped from a width x height page, or None if it can."""
    if box.fits_within(width, height):
        return None
    if box.y >= height:
        return f"y coordinate ({box.y:g}) exceeds image height ({height})"
    if box.x >= width:
        return f"x coordinate ({box.x:g}) exceeds image width ({width})"
    if box.width <= 0 or box.height <= 0:
        return "Bounding box has no area"
    return "Bounding box extends beyond image boundaries"


def padded_box(box: BoundingBox, width: int, height: int, padding: int = CROP_PADDING) -> BoundingBox:
    """Grow a valid box by `padding` pixels on every side, clamped to the page."""
    left = max(0.0, box.x - padding)
    top = max(0.0, box.y - padding)
    right = min(float(width), box.x + box.width + padding)
    bottom = min(float(height), box.y + box.height + padding)
    return BoundingBox(x=left, y=top, width=right - left, height=bottom - top)


def make_file_name(region: ImageRegion) -> str:
    timestamp = int(time.time() * 1000)
    random_part = ''.join(secrets.choice(_RANDOM_ALPHABET) for _ in range(6))
    return f"img_p{region.page_number}_q{region.question_index}_{region.purpose.value}_{timestamp}_{random_part}.png"


def generate_markdown(url: str, region: ImageRegion) -> str:
    """Markdown image tag with the layout hints the dashboard renderer understands."""
    alt_text = region.alt_text or f"{region.purpose.value} image"
    attributes = [f"width={region.suggested_width or DEFAULT_MARKDOWN_WIDTH}"]
    if region.suggested_height:
        attributes.append(f"height={region.suggested_height}")
    if region.position:
        attributes.append(f"position={region.position}")
    return f"![{alt_text}]({url}){{{' '.join(attributes)}}}"


class ImageCropper:
    """Crops image regions out of rendered pages."""

    def crop(self, pages: Sequence[PageImage], regions: Sequence[ImageRegion]) -> List[CropCandidate]:
        pages_by_number: Dict[int, PageImage] = {page.page_number: page for page in pages}
        candidates = []
        for region in regions:
            page = pages_by_number.get(region.page_number)
            if page is None:
                logger.warning(f"Page {region.page_number} not found for region")
                continue
            try:
                candidates.append(self.crop_region(page, region))
            except (OSError, ValueError) as e:
                logger.error(f"Failed to crop region on page {region.page_number}: {e}")
        logger.info(f"Cropped {len(candidates)} of {len(regions)} regions")
        return candidates

    def crop_region(self, page: PageImage, region: ImageRegion) -> CropCandidate:
        with Image.open(io.BytesIO(page.image_bytes)) as img:
            img.load()
            width, height = img.size
            logger.debug(f"Cropping page {region.page_number} ({width}x{height}) "
                         f"box={region.bounding_box.model_dump()} question={region.question_index}")

            reason = invalid_region_reason(region.bounding_box, width, height)
            if reason:
                message = f"Invalid region on page {region.page_number}, using full page: {reason}"
                logger.warning(message)
                warnings.warn(message, RegionInvalidWarning, stacklevel=2)
                box = BoundingBox(x=0, y=0, width=width, height=height)
            else:
                box = padded_box(region.bounding_box, width, height)

            cropped = img.crop((
                int(box.x),
                int(box.y),
                int(round(box.x + box.width)),
                int(round(box.y + box.height)),
            ))
            buffer = io.BytesIO()
            cropped.save(buffer, format="PNG")

        return CropCandidate(
            image_bytes=buffer.getvalue(),
            region=region,
            file_name=make_file_name(region),
            crop_box=box,
            fallback_reason=reason,
        )
