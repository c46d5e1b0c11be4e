"""
Extraction Pipeline - Vision-based question extraction

Sends page rasters to a vision LLM one page at a time, carrying cut-off
questions across page boundaries, and normalizes inline LaTeX in the result.
"""

from question_ingest.extraction_pipeline.question_extractor import (
    VisionExtractionClient,
    build_extraction_prompt,
    enforce_answer_representation,
)
from question_ingest.extraction_pipeline.latex_normalizer import normalize, unicode_to_latex

__all__ = [
    'VisionExtractionClient',
    'build_extraction_prompt',
    'enforce_answer_representation',
    'normalize',
    'unicode_to_latex'
]
