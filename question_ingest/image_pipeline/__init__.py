"""
Image Pipeline - Diagram extraction

Locates diagrams on page rasters with a vision LLM, crops them, and uploads
the crops to object storage as markdown-ready URLs.
"""

from question_ingest.image_pipeline.region_identifier import RegionIdentifier
from question_ingest.image_pipeline.image_cropper import ImageCropper, generate_markdown
from question_ingest.image_pipeline.storage_uploader import (
    ImageRecropper,
    StorageUploader,
    optimize_image,
    replace_image_url,
)
from question_ingest.image_pipeline.image_orchestrator import (
    ImageOrchestrator,
    group_images_by_question,
    insert_images_into_text,
)

__all__ = [
    'RegionIdentifier',
    'ImageCropper',
    'generate_markdown',
    'ImageRecropper',
    'StorageUploader',
    'optimize_image',
    'replace_image_url',
    'ImageOrchestrator',
    'group_images_by_question',
    'insert_images_into_text'
]
