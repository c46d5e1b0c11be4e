"""
Object storage upload for cropped diagrams.

The storage endpoint takes a multipart form (`file`, `folder`) and answers with
`{url, key, fileName, size, contentType}`.
"""

import io
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional, Tuple

import httpx
from PIL import Image

from question_ingest.config import Config
from question_ingest.errors import UploadError
from question_ingest.image_pipeline.image_cropper import ImageCropper, generate_markdown
from question_ingest.state import BoundingBox, PageImage, ProcessedImage, ProcessedQuestion, UploadResult

logger = logging.getLogger(__name__)

DIAGRAM_MAX_SIZE = 2400
DIAGRAM_QUALITY = 95


def optimize_image(blob: bytes, max_width: int = 1200, max_height: int = 1200,
                   quality: int = 85, lossless: bool = True) -> bytes:
    """
    Shrink an image to fit max_width x max_height, keeping its aspect ratio.

    Lossless output stays PNG; otherwise the image is re-encoded as JPEG at
    `quality`. On any decoding problem the original bytes are returned.
    """
    try:
        with Image.open(io.BytesIO(blob)) as img:
            img.load()
            width, height = img.size
            if width > max_width or height > max_height:
                ratio = min(max_width / width, max_height / height)
                new_size = (max(1, int(width * ratio)), max(1, int(height * ratio)))
                img = img.resize(new_size, Image.LANCZOS)
            elif lossless:
                return blob

            buffer = io.BytesIO()
            if lossless:
                img.save(buffer, format="PNG", optimize=True)
            else:
                img.convert("RGB").save(buffer, format="JPEG", quality=quality)
            return buffer.getvalue()
    except OSError as e:
        logger.error(f"Image optimization error: {e}")
        return blob


def _error_message(response: httpx.Response) -> str:
    message = f"HTTP {response.status_code}: {response.reason_phrase}"
    try:
        data = response.json()
    except ValueError:
        return message
    if isinstance(data, dict):
        return data.get("error") or data.get("message") or message
    return message


class StorageUploader:
    """Uploads blobs to the object storage endpoint."""

    def __init__(self, upload_url: Optional[str] = None, delete_url: Optional[str] = None,
                 client: Optional[httpx.AsyncClient] = None, timeout: Optional[float] = None):
        self.upload_url = upload_url or Config.STORAGE_UPLOAD_URL
        self.delete_url = delete_url or f"{self.upload_url.rstrip('/')}/delete"
        self.timeout = timeout or Config.REQUEST_TIMEOUT_SECONDS
        self._client = client

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._client is not None:
            yield self._client
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                yield client

    async def upload(self, blob: bytes, folder: str, file_name: str,
                     content_type: str = "image/png") -> UploadResult:
        """
        Raises:
            UploadError: transport failure or a non-2xx answer; never retried.
        """
        try:
            async with self._session() as client:
                response = await client.post(
                    self.upload_url,
                    files={"file": (file_name, blob, content_type)},
                    data={"folder": folder},
                )
        except httpx.HTTPError as e:
            raise UploadError(f"Upload failed: {e}") from e

        if not response.is_success:
            raise UploadError(f"Upload failed: {_error_message(response)}", status_code=response.status_code)

        try:
            data = response.json()
        except ValueError:
            data = None
        if not isinstance(data, dict):
            raise UploadError("Upload failed: storage response is not a JSON object", status_code=response.status_code)
        if not data.get("url"):
            raise UploadError("Upload failed: storage response has no url", status_code=response.status_code)
        logger.debug(f"Uploaded {file_name} to {data['url']}")
        return UploadResult(
            url=data["url"],
            key=data.get("key") or f"{folder}/{file_name}",
            file_name=data.get("fileName") or file_name,
            size=data.get("size"),
            content_type=data.get("contentType") or content_type,
        )

    async def delete(self, key: str) -> None:
        try:
            async with self._session() as client:
                response = await client.request("DELETE", self.delete_url, json={"key": key})
        except httpx.HTTPError as e:
            raise UploadError(f"Delete failed: {e}") from e
        if not response.is_success:
            raise UploadError(f"Delete failed: {_error_message(response)}", status_code=response.status_code)
        logger.info(f"Deleted {key} from storage")


def replace_image_url(question: ProcessedQuestion, old_url: str, new_url: str) -> ProcessedQuestion:
    """Swap every occurrence of old_url for new_url across the question in one new snapshot."""
    def swap(text: Optional[str]) -> Optional[str]:
        return text.replace(old_url, new_url) if text else text

    options = [opt.model_copy(update={"text": swap(opt.text)}) for opt in question.options]
    images = [
        ref.model_copy(update={"url": new_url}) if ref.url == old_url else ref
        for ref in question.images
    ]
    images_by_purpose = {
        purpose: [
            img.model_copy(update={"url": swap(img.url), "markdown": swap(img.markdown)})
            for img in group
        ]
        for purpose, group in question.images_by_purpose.items()
    }
    return question.model_copy(update={
        "question_text": swap(question.question_text),
        "hint": swap(question.hint),
        "solution": swap(question.solution),
        "options": options,
        "images": images,
        "images_by_purpose": images_by_purpose,
    })


class ImageRecropper:
    """Re-crops an uploaded diagram with a corrected box and swaps its URL everywhere."""

    def __init__(self, uploader: StorageUploader, cropper: Optional[ImageCropper] = None,
                 folder: Optional[str] = None):
        self.uploader = uploader
        self.cropper = cropper or ImageCropper()
        self.folder = folder or Config.DIAGRAM_FOLDER

    async def recrop(self, question: ProcessedQuestion, image: ProcessedImage, page: PageImage,
                     bounding_box: BoundingBox) -> Tuple[ProcessedQuestion, ProcessedImage]:
        region = image.region.model_copy(update={"bounding_box": bounding_box})
        candidate = self.cropper.crop_region(page, region)
        blob = optimize_image(candidate.image_bytes, DIAGRAM_MAX_SIZE, DIAGRAM_MAX_SIZE, DIAGRAM_QUALITY)

        # Same file name so the stored object is replaced rather than duplicated
        result = await self.uploader.upload(blob, self.folder, image.file_name)
        replacement = ProcessedImage(
            url=result.url,
            key=result.key,
            region=region,
            markdown=generate_markdown(result.url, region),
            file_name=image.file_name,
        )
        updated = replace_image_url(question, image.url, result.url)
        updated = updated.model_copy(update={"images_by_purpose": {
            purpose: [replacement if img.file_name == image.file_name else img for img in group]
            for purpose, group in updated.images_by_purpose.items()
        }})
        if result.key != image.key:
            await self._discard(image.key)
        logger.info(f"Re-cropped {image.file_name} for question {question.id}")
        return updated, replacement

    async def _discard(self, key: str) -> None:
        # The new image is already in place; a stale object is only logged
        try:
            await self.uploader.delete(key)
        except UploadError as e:
            logger.warning(f"Could not delete replaced image {key}: {e}")


def find_image(question: ProcessedQuestion, file_name: str) -> Optional[ProcessedImage]:
    for group in question.images_by_purpose.values():
        for image in group:
            if image.file_name == file_name:
                return image
    return None
