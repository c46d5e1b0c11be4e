import asyncio

from conftest import make_page
from question_ingest.extraction_pipeline.question_extractor import (
    VisionExtractionClient,
    build_extraction_prompt,
    enforce_answer_representation,
)
from question_ingest.state import (
    ExtractedQuestion,
    ExtractionOptions,
    IncompleteQuestionFragment,
    MarkingScheme,
    QuestionOption,
    QuestionType,
)


def _options(correct=None):
    return [
        {"id": f"opt{i + 1}", "label": label, "text": text, "isCorrect": label == correct}
        for i, (label, text) in enumerate([("A", "3"), ("B", "4"), ("C", "5"), ("D", "6")])
    ]


def _page_response(questions, incomplete=None, section=None):
    return {
        "sectionInstructions": section or {},
        "questions": questions,
        "incompleteQuestion": incomplete,
    }


def test_single_page_single_question(fake_llm):
    service, provider = fake_llm(responses=[_page_response(
        [{
            "questionText": "What is 2+2?",
            "options": _options(correct="B"),
            "questionType": "SINGLE_CHOICE",
            "difficulty": 2,
            "subjectName": "Mathematics",
        }],
        section={"positiveMarks": 4, "negativeMarks": 1, "durationPerQuestion": 120},
    )])
    client = VisionExtractionClient(service)

    result = asyncio.run(client.extract_page(make_page(1), 1, ExtractionOptions()))

    assert len(result.questions) == 1
    question = result.questions[0]
    assert question.question_text == "What is 2+2?"
    assert question.correct_option_ids() == ["opt2"]
    assert (question.positive_marks, question.negative_marks, question.duration_seconds) == (4, 1, 120)
    assert question.needs_review is False
    assert question.source_page == 1
    assert result.incomplete_question is None
    assert provider.calls[0]["json_mode"] is True


def test_fragment_is_carried_into_next_page(fake_llm):
    fragment_text = "Which of the following is a noble gas"
    service, provider = fake_llm(responses=[
        _page_response([], incomplete={
            "questionText": fragment_text,
            "options": [{"label": "A", "text": "Neon"}],
        }),
        _page_response([
            {
                "questionText": fragment_text + "?",
                "options": [
                    {"label": "A", "text": "Neon"},
                    {"label": "B", "text": "Iron"},
                ],
                "correctAnswer": "A",
                "continuesPreviousPage": True,
            },
            {"questionText": "Second question", "options": _options(correct="C")},
        ]),
    ])
    client = VisionExtractionClient(service)

    result = asyncio.run(client.extract_document([make_page(1), make_page(2)], ExtractionOptions()))

    assert len(result.questions) == 2
    merged = result.questions[0]
    assert merged.continued_from_page == 1
    assert merged.question_text == fragment_text + "?"
    assert [o.is_correct for o in merged.options] == [True, False]
    assert result.questions[1].continued_from_page is None
    assert result.unresolved_fragment is None
    assert "PREVIOUS PAGE FRAGMENT" not in provider.calls[0]["prompt"]
    assert "PREVIOUS PAGE FRAGMENT (cut off at the bottom of page 1)" in provider.calls[1]["prompt"]
    assert fragment_text in provider.calls[1]["prompt"]


def test_source_indices_survive_dropped_entries(fake_llm):
    service, _ = fake_llm(responses=[
        _page_response(
            [
                {"questionText": "Quelle est la vitesse ?", "language": "fr"},
                {"questionText": "What is the speed?", "options": _options(correct="A")},
            ],
            incomplete={"questionText": "A block slides down"},
        ),
        _page_response([{"questionText": "A block slides down a ramp. Find a.", "continuesPreviousPage": True}]),
    ])
    client = VisionExtractionClient(service)

    result = asyncio.run(client.extract_document([make_page(1), make_page(2)]))

    first, continued = result.questions
    assert first.source_index == 1
    assert (continued.source_index, continued.continued_from_page, continued.continued_from_index) == (0, 1, 2)


def test_fragment_text_prepended_and_options_inherited(fake_llm):
    service, _ = fake_llm(responses=[
        _page_response([], incomplete={
            "questionText": "Which gas is inert",
            "options": [{"label": "A", "text": "Argon"}, {"label": "B", "text": "Oxygen"}],
        }),
        _page_response([{"questionText": "and colourless?", "continuesPreviousPage": True}]),
    ])
    client = VisionExtractionClient(service)

    result = asyncio.run(client.extract_document([make_page(1), make_page(2)]))

    question = result.questions[0]
    assert question.question_text == "Which gas is inert and colourless?"
    assert [o.text for o in question.options] == ["Argon", "Oxygen"]
    assert question.question_type == QuestionType.SINGLE_CHOICE
    assert question.needs_review is True


def test_fragment_not_continued_is_discarded_with_warning(fake_llm):
    service, _ = fake_llm(responses=[
        _page_response([], incomplete={"questionText": "A cut off question"}),
        _page_response([{"questionText": "Unrelated question", "options": _options(correct="A")}]),
    ])
    client = VisionExtractionClient(service)

    result = asyncio.run(client.extract_document([make_page(1), make_page(2)]))

    assert len(result.questions) == 1
    assert result.questions[0].question_text == "Unrelated question"
    assert result.questions[0].continued_from_page is None
    assert any("page 1" in w and "manual review" in w for w in result.warnings)
    assert result.unresolved_fragment is None


def test_continuation_claim_without_fragment_is_ignored(fake_llm):
    service, _ = fake_llm(responses=[
        _page_response([{"questionText": "Stand-alone", "continuesPreviousPage": True,
                         "options": _options(correct="D")}]),
    ])
    client = VisionExtractionClient(service)

    result = asyncio.run(client.extract_page(make_page(1), 1))

    assert result.questions[0].continued_from_page is None
    assert result.questions[0].question_text == "Stand-alone"


def test_trailing_fragment_reported_once(fake_llm):
    service, _ = fake_llm(responses=[
        _page_response([{"questionText": "Complete one", "options": _options(correct="A")}],
                       incomplete={"questionText": "Cut off at the very end"}),
    ])
    client = VisionExtractionClient(service)

    result = asyncio.run(client.extract_document([make_page(1)]))

    assert len(result.questions) == 1
    assert result.unresolved_fragment.question_text == "Cut off at the very end"
    assert result.unresolved_fragment.page_number == 1
    assert sum("no continuation" in w for w in result.warnings) == 1


def test_parse_failure_on_one_page_does_not_stop_document(fake_llm):
    service, _ = fake_llm(responses=[
        "Sorry, I cannot help with that page.",
        _page_response([{"questionText": "Page two question", "options": _options(correct="B")}]),
    ])
    client = VisionExtractionClient(service)
    seen_pages = []

    result = asyncio.run(client.extract_document(
        [make_page(1), make_page(2)],
        on_page=lambda number, questions: seen_pages.append((number, len(questions))),
    ))

    assert result.failed_pages == [1]
    assert [q.question_text for q in result.questions] == ["Page two question"]
    assert any(w.startswith("Page 1:") for w in result.warnings)
    assert seen_pages == [(2, 1)]


def test_solution_page_is_sent_with_matching_question_page(fake_llm):
    service, provider = fake_llm(responses=[_page_response([]), _page_response([])])
    client = VisionExtractionClient(service)
    solution = make_page(2, width=50, height=50)

    asyncio.run(client.extract_document([make_page(1), make_page(2)], solution_pages=[solution]))

    assert len(provider.calls[0]["images"]) == 1
    assert provider.calls[1]["images"][1] == solution
    assert "matching solution page" in provider.calls[1]["prompt"]


def test_marking_precedence(fake_llm):
    service, _ = fake_llm(responses=[_page_response(
        [
            {"questionText": "Own marks", "positiveMarks": 3, "negativeMarks": 0, "options": _options("A")},
            {"questionText": "Section marks", "options": _options("A")},
        ],
        section={"positiveMarks": 2, "negativeMarks": 0.5},
    )])
    client = VisionExtractionClient(service)
    options = ExtractionOptions(default_marking=MarkingScheme(duration_seconds=90))

    result = asyncio.run(client.extract_page(make_page(1), 1, options))

    own, section = result.questions
    assert (own.positive_marks, own.negative_marks, own.duration_seconds) == (3, 0, 90)
    assert (section.positive_marks, section.negative_marks, section.duration_seconds) == (2, 0.5, 90)


def test_hardcoded_marking_defaults(fake_llm):
    service, _ = fake_llm(responses=[_page_response([{"questionText": "Bare", "options": _options("A")}])])
    client = VisionExtractionClient(service)

    question = asyncio.run(client.extract_page(make_page(1), 1)).questions[0]

    assert (question.positive_marks, question.negative_marks, question.duration_seconds) == (4, 1, 120)
    assert question.difficulty == 5


def test_non_english_and_textless_questions_dropped(fake_llm):
    service, _ = fake_llm(responses=[_page_response([
        {"questionText": "Keep me", "language": "en", "options": _options("A")},
        {"questionText": "प्रश्न", "language": "hi"},
        {"questionText": "   "},
        "not an object",
    ])])
    client = VisionExtractionClient(service)

    result = asyncio.run(client.extract_page(make_page(1), 1))

    assert [q.question_text for q in result.questions] == ["Keep me"]


def test_latex_normalized_in_all_text_fields(fake_llm):
    service, _ = fake_llm(responses=[_page_response([{
        "questionText": "Balance CO2 formation",
        "options": [{"label": "A", "text": "H2O", "isCorrect": True}],
        "hint": "Count O atoms in CO2",
        "solution": "Use \\frac{1}{2} of it",
    }])])
    client = VisionExtractionClient(service)

    question = asyncio.run(client.extract_page(make_page(1), 1)).questions[0]

    assert question.question_text == r"Balance $\text{CO}_{2}$ formation"
    assert question.options[0].text == r"$\text{H}_{2}\text{O}$"
    assert question.hint == r"Count O atoms in $\text{CO}_{2}$"
    assert question.solution == r"Use $\frac{1}{2}$ of it"


def test_numeric_question_keeps_scalar_answer(fake_llm):
    service, _ = fake_llm(responses=[_page_response([
        {"questionText": "g in m/s^2?", "questionType": "NUMERICAL", "correctAnswer": "9.8"},
        {"questionText": "Roots count?", "questionType": "integer"},
    ])])
    client = VisionExtractionClient(service)

    numeric, missing = asyncio.run(client.extract_page(make_page(1), 1)).questions

    assert numeric.question_type == QuestionType.NUMERICAL
    assert numeric.correct_answer == "9.8"
    assert numeric.needs_review is False
    assert missing.question_type == QuestionType.INTEGER
    assert missing.needs_review is True


def test_answer_never_fabricated_without_key():
    question = ExtractedQuestion(
        question_text="Q",
        options=[QuestionOption(id="opt1", label="A", text="x"), QuestionOption(id="opt2", label="B", text="y")],
        question_type=QuestionType.SINGLE_CHOICE,
    )

    normalized = enforce_answer_representation(question)

    assert normalized.correct_option_ids() == []
    assert normalized.needs_review is True


def test_multiple_correct_flags_on_single_choice_flagged_for_review():
    question = ExtractedQuestion(
        question_text="Q",
        options=[QuestionOption(id="opt1", label="A", is_correct=True),
                 QuestionOption(id="opt2", label="B", is_correct=True)],
        question_type=QuestionType.SINGLE_CHOICE,
    )

    normalized = enforce_answer_representation(question)

    assert normalized.correct_option_ids() == []
    assert normalized.needs_review is True


def test_multiple_choice_answer_labels_applied():
    question = ExtractedQuestion(
        question_text="Q",
        options=[QuestionOption(id=f"opt{i}", label=f"({label})") for i, label in enumerate("ABCD", 1)],
        correct_answer="A, C",
        question_type=QuestionType.MULTIPLE_CHOICE,
    )

    normalized = enforce_answer_representation(question)

    assert normalized.correct_option_ids() == ["opt1", "opt3"]
    assert normalized.correct_answer is None
    assert normalized.needs_review is False


def test_prompt_respects_hint_and_solution_flags():
    prompt = build_extraction_prompt(ExtractionOptions(include_hints=False, include_solutions=True))
    assert 'DO NOT include "hint"' in prompt
    assert "Generate BRIEF solutions" in prompt

    fragment = IncompleteQuestionFragment(question_text="Half a question", page_number=4)
    prompt = build_extraction_prompt(ExtractionOptions(previous_fragment=fragment))
    assert "page 4" in prompt and "Half a question" in prompt
