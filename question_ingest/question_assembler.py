"""
Question Assembler

Combines an extracted question, its resolved hierarchy and its uploaded images
into a ProcessedQuestion, and turns ProcessedQuestions into backend payloads.
"""

import logging
import re
import uuid
from typing import Any, Dict, List, Optional

from question_ingest.image_pipeline.image_orchestrator import insert_images_into_text, same_option_label
from question_ingest.rich_content import RichContent
from question_ingest.state import (
    ExtractedQuestion,
    ImagePurpose,
    MarkingScheme,
    ProcessedImage,
    ProcessedQuestion,
    QuestionType,
    ResolvedHierarchy,
    UploadContext,
)

logger = logging.getLogger(__name__)

NUMERIC_ANSWER_RE = re.compile(r'^\s*\$?\s*(-?\d+(?:\.\d+)?)\s*\$?\s*(.*?)\s*$')


def parse_numeric_answer(answer: Optional[str]) -> Dict[str, Any]:
    """Split "9.8 m/s" into value and unit; an unparseable answer is kept verbatim."""
    if answer is None:
        return {"correct_value": None, "tolerance": 0, "unit": None}
    match = NUMERIC_ANSWER_RE.match(answer)
    if not match:
        return {"correct_value": answer, "tolerance": 0, "unit": None}
    number = float(match.group(1))
    value = int(number) if number.is_integer() and '.' not in match.group(1) else number
    return {"correct_value": value, "tolerance": 0, "unit": match.group(2) or None}


class QuestionAssembler:
    """Builds ProcessedQuestions and their backend payloads for one run."""

    def __init__(self, context: Optional[UploadContext] = None):
        self.context = context or UploadContext()

    def assemble(self, extracted: ExtractedQuestion, hierarchy: Optional[ResolvedHierarchy] = None,
                 images_by_purpose: Optional[Dict[str, List[ProcessedImage]]] = None,
                 question_id: Optional[str] = None) -> ProcessedQuestion:
        images_by_purpose = images_by_purpose or {}
        hierarchy = hierarchy or ResolvedHierarchy()
        all_images = [image for group in images_by_purpose.values() for image in group]

        options = []
        for option in extracted.options:
            text = insert_images_into_text(option.text, all_images, ImagePurpose.OPTION, option_label=option.label)
            options.append(option.model_copy(update={"id": option.id or str(uuid.uuid4()), "text": text or ""}))

        for image in images_by_purpose.get(ImagePurpose.OPTION.value, []):
            if not any(same_option_label(image.region.option_label, opt.label) for opt in extracted.options):
                logger.warning(f"Option image {image.file_name} has no matching option label "
                               f"({image.region.option_label!r}); left unplaced")

        marking = MarkingScheme.resolve(
            MarkingScheme(
                positive_marks=extracted.positive_marks,
                negative_marks=extracted.negative_marks,
                duration_seconds=extracted.duration_seconds,
            ),
            self.context.default_marking,
        )

        fields = extracted.model_dump(exclude={"options"})
        fields.update(
            id=question_id or str(uuid.uuid4()),
            options=options,
            question_text=insert_images_into_text(extracted.question_text, all_images, ImagePurpose.QUESTION),
            hint=insert_images_into_text(extracted.hint, all_images, ImagePurpose.HINT),
            solution=insert_images_into_text(extracted.solution, all_images, ImagePurpose.SOLUTION),
            positive_marks=marking.positive_marks,
            negative_marks=marking.negative_marks,
            duration_seconds=marking.duration_seconds,
            subject_id=hierarchy.subject_id,
            chapter_id=hierarchy.chapter_id,
            topic_id=hierarchy.topic_id,
            images_by_purpose=images_by_purpose,
        )
        return ProcessedQuestion(**fields)

    def build_payload(self, question: ProcessedQuestion) -> Dict[str, Any]:
        """Backend create-question payload for one processed question."""
        context = self.context
        marking = MarkingScheme.resolve(
            MarkingScheme(
                positive_marks=question.positive_marks,
                negative_marks=question.negative_marks,
                duration_seconds=question.duration_seconds,
            ),
            context.default_marking,
        )

        pool = None
        if question.options:
            pool = {
                "options": [
                    {"id": opt.id, "label": opt.label, "content": RichContent.from_raw(opt.text).model_dump()}
                    for opt in question.options
                ]
            }

        hints = RichContent.from_raw(question.hint).model_dump() if question.hint else None
        solution = None
        if question.solution:
            solution = {"explanation": RichContent.from_raw(question.solution, is_solution=True).model_dump()}

        return {
            "answer_type": QuestionType.NUMERICAL.value if question.question_type.is_numeric
            else question.question_type.value,
            "subject_id": question.subject_id,
            "chapter_id": question.chapter_id,
            "topic_id": question.topic_id,
            "exam_id": context.exam_id,
            "paper_id": context.paper_id,
            "content": {
                "question": RichContent.from_raw(question.question_text).model_dump(),
                "hints": hints,
            },
            "answer": {
                "pool": pool,
                "key": self._answer_key(question),
                "solution": solution,
            },
            "positive_marks": marking.positive_marks,
            "negative_marks": marking.negative_marks,
            "difficulty": question.difficulty,
            "duration_seconds": None if context.no_duration else marking.duration_seconds,
            "tags": list(question.tags),
            "is_previous_year_question": context.is_previous_year_question,
        }

    @staticmethod
    def _answer_key(question: ProcessedQuestion) -> Dict[str, Any]:
        correct_ids = question.correct_option_ids()
        if question.question_type.is_numeric:
            return parse_numeric_answer(question.correct_answer)
        if question.question_type == QuestionType.MULTIPLE_CHOICE:
            return {"correct_option_ids": correct_ids}
        if question.question_type == QuestionType.SINGLE_CHOICE or correct_ids:
            return {"correct_option_id": correct_ids[0] if correct_ids else None}
        return {}
