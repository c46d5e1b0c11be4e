"""Vision-based question extraction, one page at a time, with cross-page fragment carry-over."""

import inspect
import logging
import re
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Union

from question_ingest.errors import ExtractionParseError
from question_ingest.extraction_pipeline.latex_normalizer import normalize
from question_ingest.llm_service import LLMService
from question_ingest.state import (
    DocumentExtractionResult,
    ExtractedQuestion,
    ExtractionOptions,
    ImagePurpose,
    ImageReference,
    IncompleteQuestionFragment,
    MarkingScheme,
    PageExtractionResult,
    PageImage,
    QuestionOption,
    QuestionType,
)

logger = logging.getLogger(__name__)

PageCallback = Callable[[int, List[ExtractedQuestion]], Union[None, Awaitable[None]]]

QUESTION_TYPE_ALIASES = {
    "MCQ": QuestionType.SINGLE_CHOICE,
    "SINGLE": QuestionType.SINGLE_CHOICE,
    "SINGLE_CORRECT": QuestionType.SINGLE_CHOICE,
    "MULTIPLE": QuestionType.MULTIPLE_CHOICE,
    "MULTIPLE_CORRECT": QuestionType.MULTIPLE_CHOICE,
    "MSQ": QuestionType.MULTIPLE_CHOICE,
    "NUMERIC": QuestionType.NUMERICAL,
    "INTEGER_TYPE": QuestionType.INTEGER,
}


def build_extraction_prompt(options: ExtractionOptions) -> str:
    """Prompt for one page. The wording is configuration; the JSON shape below is the contract."""
    lines = [
        "You are an expert question extraction AI for competitive exams. Analyze the provided page image "
        "and extract ALL questions with complete metadata.",
        "",
        "CRITICAL INSTRUCTIONS:",
        "1. Extract ALL English-language questions from the page - these are PREVIOUS YEAR QUESTIONS. Skip any "
        "question not written in English.",
        "2. Identify question type: SINGLE_CHOICE, MULTIPLE_CHOICE, INTEGER, or PARAGRAPH",
        "3. Extract all options with unique IDs (opt1, opt2, etc.) and labels exactly as printed",
        "4. Mark correct answer(s) ONLY from an answer key or solution visible on the page(s). "
        "If no answer is given, leave every isCorrect false and correctAnswer null. NEVER guess.",
        "5. Convert ALL equations to LaTeX wrapped in $...$: $x^2$, $\\frac{a}{b}$, $\\sqrt{x}$",
        "6. Read section instructions for: positive marks, negative marks, duration per question",
        "7. Estimate difficulty 1-10 based on concept complexity",
        "8. Extract subject/chapter/topic from question content or headers",
        "9. If the LAST question on the page is visibly cut off (text or options continue on the next page), "
        "put it in \"incompleteQuestion\" and NOT in \"questions\".",
    ]
    if options.include_hints:
        lines.append("10. Generate SHORT, CONCISE hints (1 sentence max, key concept only)")
    else:
        lines.append("10. DO NOT include \"hint\" field - leave it empty or omit it")
    if options.include_solutions:
        lines.append("11. Generate BRIEF solutions (2-3 sentences max, essential steps only)")
    else:
        lines.append("11. DO NOT include \"solution\" field - leave it empty or omit it")
    if options.solution_page is not None:
        lines.append("12. The second image is the matching solution page; take answers and solutions from it "
                     "(questions may be in a different order)")

    fragment = options.previous_fragment
    if fragment is not None:
        lines += [
            "",
            f"PREVIOUS PAGE FRAGMENT (cut off at the bottom of page {fragment.page_number}):",
            f"Question text so far: {fragment.question_text}",
        ]
        if fragment.options:
            lines.append("Options so far: " + "; ".join(f"{o.label} {o.text}" for o in fragment.options))
        lines.append(
            "If this page begins with the continuation of that fragment, output the merged, complete question "
            "FIRST in \"questions\" with \"continuesPreviousPage\": true. If it does not, ignore the fragment."
        )

    lines += [
        "",
        "OUTPUT FORMAT (JSON):",
        """{
  "sectionInstructions": {"positiveMarks": 4, "negativeMarks": 1, "durationPerQuestion": 120},
  "questions": [
    {
      "questionText": "What is $x^2$ when $x = 3$?",
      "options": [
        {"id": "opt1", "label": "A", "text": "6", "isCorrect": false},
        {"id": "opt2", "label": "B", "text": "9", "isCorrect": true}
      ],
      "correctAnswer": null,
      "questionType": "SINGLE_CHOICE",
      "language": "en",
      "continuesPreviousPage": false,
      "difficulty": 3,
      "positiveMarks": 4,
      "negativeMarks": 1,
      "durationSeconds": 120,
      "tags": ["algebra"],
      "subjectName": "Mathematics",
      "chapterName": "Algebra",
      "topicName": "Exponents",
      "hint": "Square means multiply by itself",
      "solution": "Step 1: $3 \\\\times 3 = 9$",
      "images": [{"location": "question"}],
      "rawLatex": ["x^2"]
    }
  ],
  "incompleteQuestion": {"questionText": "Which of the following...", "options": []}
}""",
        "",
        "Use proper JSON escaping for LaTeX backslashes (use \\\\ for \\).",
        "Return ONLY valid JSON with no markdown code blocks, no additional text.",
    ]
    return "\n".join(lines)


def _number(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        match = re.search(r'-?\d+(?:\.\d+)?', str(value))
        return float(match.group()) if match else None


def _integer(value: Any) -> Optional[int]:
    number = _number(value)
    return int(number) if number is not None else None


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _marking_from(data: Dict[str, Any], duration_key: str) -> MarkingScheme:
    return MarkingScheme(
        positive_marks=_number(data.get("positiveMarks")),
        negative_marks=_number(data.get("negativeMarks")),
        duration_seconds=_integer(data.get(duration_key)),
    )


def _classify_question_type(raw_type: Any, options: List[QuestionOption]) -> QuestionType:
    """Map the model's question type onto QuestionType, inferring from options when unknown."""
    key = re.sub(r'[\s-]+', '_', str(raw_type or '').strip().upper())
    if key in QuestionType.__members__:
        return QuestionType[key]
    if key in QUESTION_TYPE_ALIASES:
        return QUESTION_TYPE_ALIASES[key]
    return QuestionType.SINGLE_CHOICE if options else QuestionType.INTEGER


def _label_key(label: str) -> str:
    return re.sub(r'[\s().\[\]]', '', str(label)).upper()


def _find_option(options: List[QuestionOption], answer: str) -> Optional[QuestionOption]:
    key = _label_key(answer)
    if not key:
        return None
    for option in options:
        if _label_key(option.label) == key or (option.id and option.id.upper() == key):
            return option
    # "2" against options labelled A-D
    if key.isdigit() and 1 <= int(key) <= len(options):
        labels = [_label_key(o.label) for o in options]
        if not any(label.isdigit() for label in labels):
            return options[int(key) - 1]
    return None


def enforce_answer_representation(question: ExtractedQuestion) -> ExtractedQuestion:
    """
    Keep exactly one authoritative correct-answer representation for the question type.

    Option flags win for choice questions, the scalar wins for numeric ones. A
    correctAnswer that names an option label is applied to that option. Nothing
    is ever guessed: with no usable answer the question is flagged for review.
    """
    options = [opt.model_copy() for opt in question.options]
    correct_answer = question.correct_answer
    needs_review = question.needs_review

    if question.question_type.is_numeric:
        for opt in options:
            opt.is_correct = False
        if correct_answer is None:
            needs_review = True

    elif options or question.question_type in (QuestionType.SINGLE_CHOICE, QuestionType.MULTIPLE_CHOICE):
        flagged = [opt for opt in options if opt.is_correct]
        if not flagged and correct_answer:
            parts = re.split(r'\s*(?:,|;|/|&|\band\b)\s*', correct_answer)
            for part in parts:
                match = _find_option(options, part)
                if match is not None:
                    match.is_correct = True
            flagged = [opt for opt in options if opt.is_correct]

        if question.question_type != QuestionType.MULTIPLE_CHOICE and len(flagged) > 1:
            logger.warning(f"Single-answer question has {len(flagged)} options marked correct; clearing for review")
            for opt in options:
                opt.is_correct = False
            flagged = []
        if not flagged:
            needs_review = True
        correct_answer = None

    return question.model_copy(update={
        "options": options,
        "correct_answer": correct_answer,
        "needs_review": needs_review,
    })


class VisionExtractionClient:
    """Extracts structured questions from page images through a vision LLM."""

    def __init__(self, llm_service: LLMService):
        self.llm_service = llm_service

    async def extract_page(self, page_image: PageImage, page_number: int,
                           options: Optional[ExtractionOptions] = None) -> PageExtractionResult:
        """
        Extract questions from a single page.

        Raises:
            ExtractionParseError: the model response held no parseable JSON object.
        """
        options = options or ExtractionOptions()
        prompt = build_extraction_prompt(options)
        images = [page_image]
        if options.solution_page is not None:
            images.append(options.solution_page)

        logger.info(f"Extracting questions from page {page_number}")
        parsed = await self.llm_service.generate_json(prompt, images, page_number=page_number)

        section = _marking_from(parsed.get("sectionInstructions") or {}, "durationPerQuestion")
        raw_questions = parsed.get("questions") or []
        questions = []
        for index, raw in enumerate(raw_questions):
            if not isinstance(raw, dict):
                logger.warning(f"Page {page_number}: skipping non-object question entry {index}")
                continue
            question = self._create_question_object(raw, page_number, section, options.default_marking,
                                                    source_index=index)
            if question is not None:
                questions.append(question)

        questions = self._apply_fragment(questions, options.previous_fragment, page_number)
        incomplete = self._parse_fragment(parsed.get("incompleteQuestion"), page_number,
                                          question_index=len(raw_questions))

        logger.info(f"Page {page_number}: {len(questions)} questions, "
                    f"incomplete fragment: {'yes' if incomplete else 'no'}")
        return PageExtractionResult(
            page_number=page_number,
            questions=questions,
            incomplete_question=incomplete,
            section_instructions=section,
        )

    async def extract_document(self, pages: Sequence[PageImage], options: Optional[ExtractionOptions] = None,
                               solution_pages: Optional[Sequence[PageImage]] = None,
                               on_page: Optional[PageCallback] = None) -> DocumentExtractionResult:
        """
        Extract every page strictly in order, threading each page's incomplete
        fragment into the next page's request.

        A page whose response cannot be parsed is recorded and skipped.
        """
        options = options or ExtractionOptions()
        solution_by_number = {page.page_number: page for page in solution_pages or []}
        result = DocumentExtractionResult()
        fragment: Optional[IncompleteQuestionFragment] = None

        for page in sorted(pages, key=lambda p: p.page_number):
            page_options = options.model_copy(update={
                "previous_fragment": fragment,
                "solution_page": solution_by_number.get(page.page_number),
            })
            try:
                page_result = await self.extract_page(page, page.page_number, page_options)
            except ExtractionParseError as e:
                logger.error(f"Page {page.page_number} extraction failed, continuing: {e}")
                result.failed_pages.append(page.page_number)
                result.warnings.append(f"Page {page.page_number}: {e}")
                if fragment is not None:
                    result.warnings.append(self._discard_message(fragment, page.page_number))
                    fragment = None
                continue

            if fragment is not None and not any(
                    q.continued_from_page == fragment.page_number for q in page_result.questions):
                message = self._discard_message(fragment, page.page_number)
                logger.warning(message)
                result.warnings.append(message)

            result.page_results.append(page_result)
            result.questions.extend(page_result.questions)
            fragment = page_result.incomplete_question

            if on_page is not None:
                outcome = on_page(page.page_number, page_result.questions)
                if inspect.isawaitable(outcome):
                    await outcome

        if fragment is not None:
            message = (f"Question cut off at the end of page {fragment.page_number} has no continuation; "
                       f"needs manual review")
            logger.warning(message)
            result.warnings.append(message)
            result.unresolved_fragment = fragment

        logger.info(f"Extracted {len(result.questions)} questions from {len(pages)} pages "
                    f"({len(result.failed_pages)} failed)")
        return result

    @staticmethod
    def _discard_message(fragment: IncompleteQuestionFragment, page_number: int) -> str:
        return (f"Incomplete question from page {fragment.page_number} was not continued on page "
                f"{page_number}; discarded, needs manual review")

    def _create_question_object(self, raw: Dict[str, Any], page_number: int, section: MarkingScheme,
                                defaults: MarkingScheme,
                                source_index: Optional[int] = None) -> Optional[ExtractedQuestion]:
        """Create an ExtractedQuestion from one JSON entry, or None if it is unusable."""
        question_text = _text(raw.get("questionText"))
        if not question_text:
            logger.warning(f"Page {page_number}: dropping question without text")
            return None

        language = _text(raw.get("language"))
        if language and not language.lower().startswith("en"):
            logger.info(f"Page {page_number}: skipping non-English question ({language})")
            return None

        options = self._extract_options(raw.get("options") or [])
        marking = MarkingScheme.resolve(_marking_from(raw, "durationSeconds"), section, defaults)
        difficulty = _integer(raw.get("difficulty")) or 5

        question = ExtractedQuestion(
            question_text=normalize(question_text),
            options=options,
            correct_answer=_text(raw.get("correctAnswer")),
            question_type=_classify_question_type(raw.get("questionType"), options),
            difficulty=min(10, max(1, difficulty)),
            positive_marks=marking.positive_marks,
            negative_marks=marking.negative_marks,
            duration_seconds=marking.duration_seconds,
            hint=normalize(_text(raw.get("hint"))),
            solution=normalize(_text(raw.get("solution"))),
            images=self._extract_images(raw.get("images") or []),
            raw_latex=[str(item) for item in raw.get("rawLatex") or []],
            tags=[str(tag) for tag in raw.get("tags") or []],
            subject_name=_text(raw.get("subjectName")),
            chapter_name=_text(raw.get("chapterName")),
            topic_name=_text(raw.get("topicName")),
            source_page=page_number,
            continued_from_page=-1 if raw.get("continuesPreviousPage") is True else None,
            source_index=source_index,
        )
        return enforce_answer_representation(question)

    @staticmethod
    def _extract_options(raw_options: List[Any]) -> List[QuestionOption]:
        options = []
        for index, raw in enumerate(raw_options):
            if not isinstance(raw, dict):
                raw = {"text": raw}
            options.append(QuestionOption(
                id=_text(raw.get("id")) or f"opt{index + 1}",
                label=_text(raw.get("label")) or chr(ord('A') + index),
                text=normalize(_text(raw.get("text")) or ""),
                is_correct=raw.get("isCorrect") is True,
            ))
        return options

    @staticmethod
    def _extract_images(raw_images: List[Any]) -> List[ImageReference]:
        images = []
        for raw in raw_images:
            if not isinstance(raw, dict):
                continue
            try:
                location = ImagePurpose(str(raw.get("location", "question")).lower())
            except ValueError:
                location = ImagePurpose.QUESTION
            images.append(ImageReference(
                location=location,
                base64=_text(raw.get("base64")),
                option_label=_text(raw.get("optionLabel")),
            ))
        return images

    def _apply_fragment(self, questions: List[ExtractedQuestion],
                        fragment: Optional[IncompleteQuestionFragment],
                        page_number: int) -> List[ExtractedQuestion]:
        """
        Resolve continuation markers. Only the first question claiming to continue
        the fragment gets it; without a fragment the claim is dropped.
        """
        merged = False
        resolved = []
        for question in questions:
            if question.continued_from_page is None:
                resolved.append(question)
                continue
            if fragment is None or merged:
                resolved.append(question.model_copy(update={"continued_from_page": None}))
                continue

            merged = True
            update: Dict[str, Any] = {
                "continued_from_page": fragment.page_number,
                "continued_from_index": fragment.question_index,
            }
            opening = re.sub(r'\s+', ' ', fragment.question_text).strip()[:30].lower()
            if opening and opening not in re.sub(r'\s+', ' ', question.question_text).lower():
                update["question_text"] = f"{fragment.question_text.rstrip()} {question.question_text.lstrip()}"
            if not question.options and fragment.options:
                update["options"] = fragment.options
                if question.question_type.is_numeric:
                    # inferred from the missing options
                    update["question_type"] = QuestionType.SINGLE_CHOICE
            merged_question = question.model_copy(update=update)
            if "options" in update:
                merged_question = enforce_answer_representation(merged_question)
            logger.info(f"Page {page_number}: merged question continued from page {fragment.page_number}")
            resolved.append(merged_question)

        if fragment is not None and not merged:
            logger.warning(f"Page {page_number} does not continue the fragment from page {fragment.page_number}")
        return resolved

    @staticmethod
    def _parse_fragment(raw: Any, page_number: int,
                        question_index: Optional[int] = None) -> Optional[IncompleteQuestionFragment]:
        if not isinstance(raw, dict):
            return None
        text = _text(raw.get("questionText"))
        if not text:
            return None
        return IncompleteQuestionFragment(
            question_text=normalize(text),
            options=VisionExtractionClient._extract_options(raw.get("options") or []),
            page_number=page_number,
            question_index=question_index,
        )
