import pytest

from conftest import (
    FLASHCARD_PAYLOAD,
    QUIZ_PAYLOAD,
    SUBJECTIVE_PAYLOAD,
    FakeResponse,
    json_response,
    run,
)
from study_core import (
    AnswerAnalysis,
    BackendUnavailableError,
    FlashcardItem,
    GenerationClient,
    MalformedResponseError,
    NoUsableContentError,
    QuizGen,
    QuizKind,
    normalize_quiz_item,
    parse_flashcard_line,
    parse_flashcard_lines,
)


# --- quiz ---

def test_generate_quiz_validates_and_normalizes(generator, genai_client):
    genai_client.models.queue(json_response(QUIZ_PAYLOAD))
    items = run(generator.generate_quiz("Plants make food from light."))

    assert [i.kind for i in items] == [QuizKind.MULTIPLE_CHOICE, QuizKind.TRUE_FALSE, QuizKind.MULTIPLE_CHOICE]
    assert items[0].correct_answer == "Carbon dioxide"
    assert items[1].options == ["True", "False"]
    assert items[1].correct_answer == "True"
    call = genai_client.models.calls[0]
    assert "10 questions" in call["contents"]
    assert "Plants make food from light." in call["contents"]
    assert call["config"].response_mime_type == "application/json"


def test_generate_quiz_prefers_sdk_parsed_payload(generator, genai_client):
    parsed = QuizGen.model_validate(QUIZ_PAYLOAD)
    genai_client.models.queue(FakeResponse(text="not json", parsed=parsed))
    assert len(run(generator.generate_quiz("doc"))) == 3


@pytest.mark.parametrize("raw", [
    {"question": "Q?", "type": "mcq", "options": ["A", "B", "C"], "answer": "D"},
    {"question": "Q?", "type": "mcq", "options": ["A", "a", "C"], "answer": "A"},
    {"question": "Q?", "type": "mcq", "options": ["A"], "answer": "A"},
    {"question": "Q?", "type": "mcq", "options": ["A", "  "], "answer": "A"},
    {"question": "Q?", "type": "mcq", "answer": "A"},
    {"question": "", "type": "mcq", "options": ["A", "B"], "answer": "A"},
    {"question": "Q?", "type": "essay", "options": ["A", "B"], "answer": "A"},
    {"question": "Q?", "type": "tf", "answer": "Maybe"},
    {"question": "Q?", "type": "mcq", "options": ["A", "B"], "answer": ""},
    "just a string",
])
def test_invalid_quiz_items_are_dropped(raw):
    assert normalize_quiz_item(raw) is None


def test_every_kept_quiz_answer_matches_exactly_one_option(generator, genai_client):
    payload = {"questions": QUIZ_PAYLOAD["questions"] + [
        {"question": "Bad", "type": "mcq", "options": ["X", "Y"], "answer": "Z"},
        {"question": "Dup", "type": "mcq", "options": ["Yes", "YES"], "answer": "yes"},
    ]}
    genai_client.models.queue(json_response(payload))
    items = run(generator.generate_quiz("doc"))

    assert len(items) == 3
    for item in items:
        assert sum(item.matches(o) for o in item.options) == 1


def test_quiz_kind_aliases_are_recognised():
    item = normalize_quiz_item({"question": "Sky is blue", "type": "True_False", "answer": "FALSE"})
    assert item.kind is QuizKind.TRUE_FALSE
    assert item.correct_answer == "False"


def test_quiz_is_capped_at_target_count(generator, genai_client):
    many = [{"question": f"Q{i}", "type": "tf", "answer": "True"} for i in range(14)]
    genai_client.models.queue(json_response({"questions": many}))
    assert len(run(generator.generate_quiz("doc"))) == 10


def test_quiz_with_no_usable_items(generator, genai_client):
    genai_client.models.queue(json_response({"questions": [
        {"question": "Q?", "type": "mcq", "options": ["A", "B"], "answer": "C"},
    ]}))
    with pytest.raises(NoUsableContentError):
        run(generator.generate_quiz("doc"))


def test_quiz_malformed_json(generator, genai_client):
    genai_client.models.queue(FakeResponse(text='{"questions": [ {"question": '))
    with pytest.raises(MalformedResponseError):
        run(generator.generate_quiz("doc"))


def test_quiz_wrong_shape_is_malformed(generator, genai_client):
    genai_client.models.queue(json_response({"questions": "none"}))
    with pytest.raises(MalformedResponseError):
        run(generator.generate_quiz("doc"))


def test_backend_exception_is_unavailable(generator, genai_client):
    genai_client.models.queue(ConnectionError("network down"))
    with pytest.raises(BackendUnavailableError):
        run(generator.generate_quiz("doc"))


# --- subjective ---

def test_generate_subjective_questions(generator, genai_client):
    genai_client.models.queue(json_response(SUBJECTIVE_PAYLOAD))
    items = run(generator.generate_subjective_questions("doc"))
    assert [i.prompt for i in items] == [q["question"] for q in SUBJECTIVE_PAYLOAD["questions"]]
    assert all(i.grade is None and i.user_answer is None for i in items)
    assert "5 open-ended" in genai_client.models.calls[0]["contents"]


def test_subjective_blank_questions_give_no_usable_content(generator, genai_client):
    genai_client.models.queue(json_response({"questions": [{"question": "  "}]}))
    with pytest.raises(NoUsableContentError):
        run(generator.generate_subjective_questions("doc"))


# --- flashcards ---

def test_flashcard_line_with_single_colon():
    card = parse_flashcard_line("Photosynthesis: The process by which plants convert light into energy")
    assert card == FlashcardItem("Photosynthesis", "The process by which plants convert light into energy")


def test_flashcard_line_without_colon_is_discarded():
    assert parse_flashcard_line("NoColonHere") is None


def test_flashcard_line_splits_on_first_colon():
    assert parse_flashcard_line("A: B: C") == FlashcardItem("A", "B: C")


@pytest.mark.parametrize("line", [": definition only", "Term only:", "   :   ", ""])
def test_flashcard_line_with_empty_side_is_discarded(line):
    assert parse_flashcard_line(line) is None


def test_flashcard_lines_strip_list_markers():
    cards = parse_flashcard_lines("1. Osmosis: Movement of water\n- Diffusion: Spread of particles\nnoise")
    assert [c.term for c in cards] == ["Osmosis", "Diffusion"]


def test_generate_flashcards_structured(generator, genai_client):
    genai_client.models.queue(json_response(FLASHCARD_PAYLOAD))
    cards = run(generator.generate_flashcards("doc"))
    assert [c.term for c in cards] == ["Photosynthesis", "Chlorophyll"]
    assert not any(c.revealed for c in cards)


def test_generate_flashcards_accepts_bare_list(generator, genai_client):
    genai_client.models.queue(json_response(FLASHCARD_PAYLOAD["flashcards"]))
    assert len(run(generator.generate_flashcards("doc"))) == 2


def test_generate_flashcards_lines_format(genai_client):
    generator = GenerationClient(genai_client, model="test-model", flashcard_output="lines")
    genai_client.models.queue(FakeResponse(text="Mitosis: Cell division\nIgnored line\nMeiosis: Division: makes gametes"))

    cards = run(generator.generate_flashcards("doc"))

    assert cards == [FlashcardItem("Mitosis", "Cell division"), FlashcardItem("Meiosis", "Division: makes gametes")]
    call = genai_client.models.calls[0]
    assert call["config"] is None
    assert "'Term: Definition'" in call["contents"]


FENCED_FLASHCARDS = '```json\n{"flashcards": [\n  {"term": "Osmosis", "definition": "Water movement"}\n]}\n```'


@pytest.mark.parametrize("output", ["structured", "lines"])
def test_fenced_json_flashcards_are_read_as_records(genai_client, output):
    generator = GenerationClient(genai_client, model="test-model", flashcard_output=output)
    genai_client.models.queue(FakeResponse(text=FENCED_FLASHCARDS))
    assert run(generator.generate_flashcards("doc")) == [FlashcardItem("Osmosis", "Water movement")]


def test_fenced_quiz_json_is_decoded(generator, genai_client):
    genai_client.models.queue(FakeResponse(text="```\n" + json_response(QUIZ_PAYLOAD).text + "\n```"))
    assert len(run(generator.generate_quiz("doc"))) == 3


@pytest.mark.parametrize("text", [
    '{"flashcards": [{"term": "Osmosis", "definition": "Water',
    '```json\n[{"term": "Osmosis", "definition": \n```',
])
def test_truncated_json_flashcards_are_not_split_into_lines(genai_client, text):
    generator = GenerationClient(genai_client, model="test-model", flashcard_output="lines")
    genai_client.models.queue(FakeResponse(text=text))
    with pytest.raises(MalformedResponseError):
        run(generator.generate_flashcards("doc"))


def test_structured_flashcards_with_no_valid_records(generator, genai_client):
    genai_client.models.queue(json_response({"flashcards": [{"term": "", "definition": "x"}]}))
    with pytest.raises(NoUsableContentError):
        run(generator.generate_flashcards("doc"))


def test_flashcards_in_neither_format_are_malformed(generator, genai_client):
    genai_client.models.queue(FakeResponse(text="I could not find any terms in this document"))
    with pytest.raises(MalformedResponseError):
        run(generator.generate_flashcards("doc"))


def test_flashcards_json_in_wrong_shape_is_malformed(generator, genai_client):
    genai_client.models.queue(json_response({"cards": [{"term": "A", "definition": "B"}]}))
    with pytest.raises(MalformedResponseError):
        run(generator.generate_flashcards("doc"))


def test_unknown_flashcard_output_rejected(genai_client):
    with pytest.raises(ValueError):
        GenerationClient(genai_client, flashcard_output="xml")


# --- grading ---

def test_grade_answer(generator, genai_client):
    genai_client.models.queue(json_response({"score": 4, "feedback": " Good use of evidence. "}))
    grade = run(generator.grade_answer("Why?", "Because."))
    assert grade.score == 4
    assert grade.feedback == "Good use of evidence."
    assert '"Because."' in genai_client.models.calls[0]["contents"]


@pytest.mark.parametrize("raw, expected", [(9, 5), (-2, 0), (3.6, 4), ("2", 2), (5.0, 5)])
def test_grade_score_is_clamped_and_coerced(generator, genai_client, raw, expected):
    genai_client.models.queue(json_response({"score": raw, "feedback": "ok"}))
    assert run(generator.grade_answer("Q", "A")).score == expected


def test_grade_prefers_parsed(generator, genai_client):
    genai_client.models.queue(FakeResponse(parsed=AnswerAnalysis(score=3, feedback="fine")))
    assert run(generator.grade_answer("Q", "A")).score == 3


@pytest.mark.parametrize("payload", [
    {"score": "excellent", "feedback": "ok"},
    {"score": True, "feedback": "ok"},
    {"score": 3},
    [3, "ok"],
])
def test_grade_malformed_payloads(generator, genai_client, payload):
    genai_client.models.queue(json_response(payload))
    with pytest.raises(MalformedResponseError):
        run(generator.grade_answer("Q", "A"))


def test_grade_backend_failure(generator, genai_client):
    genai_client.models.queue(TimeoutError("read timed out"))
    with pytest.raises(BackendUnavailableError):
        run(generator.grade_answer("Q", "A"))
