from __future__ import annotations

import asyncio
import json
import logging
import mimetypes
import os
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, List, Literal, Optional, Sequence

import fitz  # PyMuPDF
from pydantic import BaseModel, Field

from google import genai
from google.genai import types as gx

logger = logging.getLogger(__name__)

# -----------------------------------------------------------------------------
# 1. CONFIGURATION
# -----------------------------------------------------------------------------

MODEL_ID = os.getenv("GEMINI_MODEL", "gemini-2.5-flash")
FLASHCARD_OUTPUT = os.getenv("FLASHCARD_OUTPUT", "structured")  # structured | lines

QUIZ_TARGET_COUNT = 10
QUIZ_MIN_COUNT = 8
QUIZ_TRICKY_PERCENT = 20
SUBJECTIVE_COUNT = 5
GRADE_MIN, GRADE_MAX = 0, 5

PAGE_SEPARATOR = "\n\n"
PDF_MIME = "application/pdf"
SINGLE_UPLOAD_TYPES = ["pdf", "jpg", "jpeg", "png"]
MULTI_UPLOAD_TYPES = ["pdf"]

TRUE_FALSE_OPTIONS = ["True", "False"]

OCR_INSTRUCTION = "Extract all text from this image. Preserve the structure and paragraphs if possible."

QUIZ_PROMPT = (
    "Based on the following document content, generate a quiz with {count} questions. "
    "Include a mix of multiple-choice (with 4 options) and true/false questions. "
    "Ensure about {tricky}% of the questions are tricky, requiring careful thought and inference "
    "beyond looking up a sentence in the text. The answer must be copied exactly from one of the options. "
    "Add a one-sentence explanation for each answer.\n\nDOCUMENT:\n{document}"
)

SUBJECTIVE_PROMPT = (
    "Based on the following document, generate {count} open-ended, subjective questions "
    "that require critical thinking to answer.\n\nDOCUMENT:\n{document}"
)

FLASHCARD_PROMPT = (
    "Extract key terms and their concise definitions from the following document to create flashcards."
    "{format_hint}\n\nDOCUMENT:\n{document}"
)
FLASHCARD_LINES_HINT = (
    " Return one flashcard per line in the form 'Term: Definition'. "
    "Do not number the lines and do not add any other text."
)

GRADE_PROMPT = (
    'The user was given a document and asked the following question: "{question}". '
    'Their answer is: "{answer}". Analyze their answer and provide a score out of {top} '
    "(a whole number from {bottom} to {top}) and brief feedback based on the likely content of the original document."
)

# -----------------------------------------------------------------------------
# 2. DOMAIN RECORDS
# -----------------------------------------------------------------------------

class QuizKind(str, Enum):
    MULTIPLE_CHOICE = "mcq"
    TRUE_FALSE = "tf"


_KIND_ALIASES = {
    "mcq": QuizKind.MULTIPLE_CHOICE,
    "multiple_choice": QuizKind.MULTIPLE_CHOICE,
    "multiple-choice": QuizKind.MULTIPLE_CHOICE,
    "tf": QuizKind.TRUE_FALSE,
    "true_false": QuizKind.TRUE_FALSE,
    "true-false": QuizKind.TRUE_FALSE,
    "truefalse": QuizKind.TRUE_FALSE,
}


@dataclass
class UploadedDocument:
    """Raw bytes of a user-selected file plus its declared MIME type."""
    data: bytes
    mime_type: str
    name: str = ""

    def __post_init__(self):
        if not self.mime_type and self.name:
            guessed, _ = mimetypes.guess_type(self.name)
            self.mime_type = guessed or ""

    @classmethod
    def from_upload(cls, uploaded_file) -> "UploadedDocument":
        """Wrap a Streamlit ``UploadedFile``."""
        return cls(
            data=uploaded_file.getvalue(),
            mime_type=getattr(uploaded_file, "type", "") or "",
            name=getattr(uploaded_file, "name", "") or "",
        )

    @property
    def is_pdf(self) -> bool:
        return self.mime_type == PDF_MIME

    @property
    def is_image(self) -> bool:
        return self.mime_type.startswith("image/")


@dataclass
class QuizItem:
    prompt: str
    kind: QuizKind
    options: List[str]
    correct_answer: str
    explanation: str = ""

    def matches(self, option: str) -> bool:
        return option.strip().lower() == self.correct_answer.strip().lower()


@dataclass(frozen=True)
class Grade:
    score: int
    feedback: str


@dataclass
class SubjectiveItem:
    prompt: str
    user_answer: Optional[str] = None
    grade: Optional[Grade] = None

    def attach_grade(self, answer: str, grade: Grade) -> None:
        if self.grade is not None:
            raise ValueError("This question has already been graded.")
        self.user_answer = answer
        self.grade = grade


@dataclass
class FlashcardItem:
    term: str
    definition: str
    revealed: bool = field(default=False, compare=False)

    def flip(self) -> bool:
        self.revealed = not self.revealed
        return self.revealed

# -----------------------------------------------------------------------------
# 3. RESPONSE SCHEMAS (structured output)
# -----------------------------------------------------------------------------

class QuizQuestionGen(BaseModel):
    question: str
    type: Literal["mcq", "tf"]
    options: List[str] = []
    answer: str
    explanation: str = ""


class QuizGen(BaseModel):
    questions: List[QuizQuestionGen]


class SubjectiveQuestionGen(BaseModel):
    question: str


class SubjectiveGen(BaseModel):
    questions: List[SubjectiveQuestionGen]


class FlashcardGen(BaseModel):
    term: str = Field(description="Key term, as short as possible.")
    definition: str = Field(description="Concise definition taken from the document.")


class FlashcardsGen(BaseModel):
    flashcards: List[FlashcardGen]


class AnswerAnalysis(BaseModel):
    score: int = Field(description=f"Whole number from {GRADE_MIN} to {GRADE_MAX}.")
    feedback: str

# -----------------------------------------------------------------------------
# 4. ERRORS
# -----------------------------------------------------------------------------

class ExtractionError(Exception):
    """Text could not be pulled out of an upload. ``str()`` is shown to the user."""


class UnsupportedTypeError(ExtractionError):
    pass


class EmptyResultError(ExtractionError):
    pass


class ExtractionBackendError(ExtractionError):
    pass


class GenerationError(Exception):
    """A generation request did not yield usable items. ``str()`` is shown to the user."""


class NoUsableContentError(GenerationError):
    pass


class MalformedResponseError(GenerationError):
    pass


class BackendUnavailableError(GenerationError):
    pass

# -----------------------------------------------------------------------------
# 5. CONTENT EXTRACTOR
# -----------------------------------------------------------------------------

def extract_text_from_pdf(file_bytes: bytes) -> str:
    """Return the text of every page, in page order, separated by a blank line.

    Any failure (unreadable document or a single bad page) aborts the whole
    extraction.
    """
    pages: List[str] = []
    try:
        with fitz.open(stream=file_bytes, filetype="pdf") as doc:
            for page_num in range(len(doc)):
                pages.append(doc.load_page(page_num).get_text().strip())
    except Exception as e:
        raise ExtractionBackendError(f"Error processing PDF: {e}") from e
    return PAGE_SEPARATOR.join(pages)


class ContentExtractor:
    """Turns uploads into plain text using PyMuPDF or Gemini vision."""

    def __init__(self, client: genai.Client, model: str = MODEL_ID):
        self.client = client
        self.model = model

    async def extract(self, upload: UploadedDocument) -> str:
        logger.info(f"Extracting text from {upload.name or 'upload'} ({upload.mime_type or 'unknown type'})")
        if upload.is_pdf:
            text = await asyncio.to_thread(extract_text_from_pdf, upload.data)
        elif upload.is_image:
            text = await self._extract_text_from_image(upload)
        else:
            raise UnsupportedTypeError("Unsupported file type. Please upload a PDF, JPG, or JPEG.")

        if not text.strip():
            raise EmptyResultError("Could not extract any text from the document. It might be empty or unreadable.")
        logger.info(f"Extracted {len(text)} chars from {upload.name or 'upload'}")
        return text

    async def extract_many(self, uploads: Sequence[UploadedDocument]) -> str:
        """Extract several PDFs concurrently and join them in input order.

        Files that fail are skipped; the batch fails only when nothing usable is left.
        """
        for upload in uploads:
            if not upload.is_pdf:
                raise UnsupportedTypeError(f"Unsupported file type for '{upload.name}'. Only PDF files can be combined.")

        results = await asyncio.gather(*(self.extract(u) for u in uploads), return_exceptions=True)
        texts = []
        for upload, result in zip(uploads, results):
            if isinstance(result, ExtractionError):
                logger.warning(f"Skipping {upload.name}: {result}")
                continue
            if isinstance(result, Exception):
                logger.error(f"Skipping {upload.name}: unexpected extraction failure: {result}", exc_info=result)
                continue
            texts.append(result)

        combined = PAGE_SEPARATOR.join(texts)
        if not combined.strip():
            raise EmptyResultError("Could not extract any text from the selected documents.")
        logger.info(f"Combined {len(texts)}/{len(uploads)} documents into {len(combined)} chars")
        return combined

    async def _extract_text_from_image(self, upload: UploadedDocument) -> str:
        try:
            resp = await self.client.aio.models.generate_content(
                model=self.model,
                contents=[OCR_INSTRUCTION, gx.Part.from_bytes(data=upload.data, mime_type=upload.mime_type)],
            )
        except Exception as e:
            logger.error(f"Image extraction failed for {upload.name}: {e}", exc_info=True)
            raise ExtractionBackendError("AI failed to process the image.") from e

        # A blocked image comes back with no candidates, so there is no text at all.
        feedback = getattr(resp, "prompt_feedback", None)
        block_reason = getattr(feedback, "block_reason", None)
        if block_reason or resp.text is None:
            logger.error(f"Image extraction rejected for {upload.name}: block_reason={block_reason}")
            raise ExtractionBackendError("AI failed to process the image.")
        return resp.text

# -----------------------------------------------------------------------------
# 6. RESPONSE PARSING
# -----------------------------------------------------------------------------

_LIST_MARKER_RE = re.compile(r"^\s*(?:[-*•]|\d+[.)])\s*")
_CODE_FENCE_RE = re.compile(r"^```[\w-]*\s*\n?(.*?)\n?```$", re.DOTALL)


def _response_text(resp) -> str:
    """Response text with surrounding whitespace and any Markdown code fence removed."""
    text = (getattr(resp, "text", None) or "").strip()
    m = _CODE_FENCE_RE.match(text)
    return m.group(1).strip() if m else text


def _payload(resp) -> Any:
    """Prefer the SDK-parsed object; fall back to decoding the JSON text."""
    parsed = getattr(resp, "parsed", None)
    if isinstance(parsed, BaseModel):
        return parsed.model_dump()
    if isinstance(parsed, (dict, list)):
        return parsed
    text = _response_text(resp)
    if not text:
        raise MalformedResponseError("The AI returned an empty response.")
    try:
        return json.loads(text)
    except json.JSONDecodeError as e:
        raise MalformedResponseError("The AI returned a response that could not be read.") from e


def _records(payload: Any, key: str) -> list:
    if isinstance(payload, dict):
        payload = payload.get(key)
    if not isinstance(payload, list):
        raise MalformedResponseError("The AI returned a response in an unexpected shape.")
    return payload


def _clean(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def normalize_quiz_item(raw: Any) -> Optional[QuizItem]:
    """Validate one generated question; ``None`` means it must be dropped."""
    if not isinstance(raw, dict):
        return None
    prompt = _clean(raw.get("question"))
    kind = _KIND_ALIASES.get(_clean(raw.get("type")).lower())
    answer = _clean(raw.get("answer"))
    if not prompt or kind is None or not answer:
        return None

    if kind is QuizKind.TRUE_FALSE:
        options = list(TRUE_FALSE_OPTIONS)
    else:
        opts = raw.get("options")
        if not isinstance(opts, list):
            return None
        options = [o for o in (_clean(x) for x in opts) if o]
        if len(options) < 2:
            return None

    hits = [o for o in options if o.lower() == answer.lower()]
    if len(hits) != 1:
        return None
    return QuizItem(
        prompt=prompt,
        kind=kind,
        options=options,
        correct_answer=hits[0],
        explanation=_clean(raw.get("explanation")),
    )


def parse_quiz(payload: Any) -> List[QuizItem]:
    raw_items = _records(payload, "questions")
    items = []
    for raw in raw_items:
        item = normalize_quiz_item(raw)
        if item is None:
            logger.warning(f"Dropping invalid quiz item: {raw!r}")
            continue
        items.append(item)
    items = items[:QUIZ_TARGET_COUNT]
    if not items:
        raise NoUsableContentError("The AI couldn't generate a quiz from this document. Please try a different one.")
    if len(items) < QUIZ_MIN_COUNT:
        logger.info(f"Quiz has {len(items)} usable questions (target {QUIZ_TARGET_COUNT})")
    return items


def parse_subjective(payload: Any) -> List[SubjectiveItem]:
    raw_items = _records(payload, "questions")
    prompts = []
    for raw in raw_items:
        prompt = _clean(raw.get("question")) if isinstance(raw, dict) else _clean(raw)
        if prompt:
            prompts.append(prompt)
    if not prompts:
        raise NoUsableContentError("Could not generate questions from this document.")
    return [SubjectiveItem(prompt=p) for p in prompts[:SUBJECTIVE_COUNT]]


def parse_flashcard_line(line: str) -> Optional[FlashcardItem]:
    """Parse ``Term: Definition``; the first colon splits, the rest is definition."""
    term, sep, definition = line.partition(":")
    if not sep:
        return None
    term = _LIST_MARKER_RE.sub("", term).strip().strip("*").strip()
    definition = definition.strip()
    if not term or not definition:
        return None
    return FlashcardItem(term=term, definition=definition)


def parse_flashcard_lines(text: str) -> List[FlashcardItem]:
    return [card for card in (parse_flashcard_line(ln) for ln in text.splitlines()) if card]


def parse_flashcards(resp) -> List[FlashcardItem]:
    """Structured records first, then ``Term: Definition`` lines."""
    try:
        payload = _payload(resp)
    except MalformedResponseError:
        payload = None
    if payload is not None:
        records = _records(payload, "flashcards")
        cards = []
        for raw in records:
            if not isinstance(raw, dict):
                continue
            term, definition = _clean(raw.get("term")), _clean(raw.get("definition"))
            if term and definition:
                cards.append(FlashcardItem(term=term, definition=definition))
        if not cards:
            raise NoUsableContentError("Could not generate flashcards from this document.")
        return cards

    text = _response_text(resp)
    if text.startswith(("{", "[")):
        raise MalformedResponseError("The AI returned flashcards that could not be read.")
    cards = parse_flashcard_lines(text)
    if cards:
        return cards
    if ":" in text:
        raise NoUsableContentError("Could not generate flashcards from this document.")
    raise MalformedResponseError("The AI returned flashcards in an unrecognised format.")


def normalize_grade(payload: Any) -> Grade:
    """Coerce the score to a whole number in [GRADE_MIN, GRADE_MAX]."""
    if not isinstance(payload, dict):
        raise MalformedResponseError("The AI returned an analysis in an unexpected shape.")
    raw_score, feedback = payload.get("score"), payload.get("feedback")
    if not isinstance(feedback, str):
        raise MalformedResponseError("The AI analysis did not include feedback.")
    if isinstance(raw_score, bool):
        raise MalformedResponseError("The AI analysis did not include a numeric score.")
    try:
        score = round(float(raw_score))
    except (TypeError, ValueError, OverflowError) as e:
        raise MalformedResponseError("The AI analysis did not include a numeric score.") from e

    clamped = max(GRADE_MIN, min(GRADE_MAX, score))
    if clamped != raw_score:
        logger.info(f"Normalised grade score {raw_score!r} -> {clamped}")
    return Grade(score=clamped, feedback=feedback.strip())

# -----------------------------------------------------------------------------
# 7. GENERATION CLIENT
# -----------------------------------------------------------------------------

class GenerationClient:
    """Typed requests against Gemini for quizzes, questions, flashcards and grading."""

    def __init__(self, client: genai.Client, model: str = MODEL_ID, flashcard_output: str = FLASHCARD_OUTPUT):
        if flashcard_output not in ("structured", "lines"):
            raise ValueError(f"Unknown flashcard output format: {flashcard_output}")
        self.client = client
        self.model = model
        self.flashcard_output = flashcard_output

    async def _request(self, prompt: str, schema: Optional[type] = None):
        cfg = None
        if schema is not None:
            cfg = gx.GenerateContentConfig(
                response_mime_type="application/json",
                response_schema=schema,
            )
        try:
            return await self.client.aio.models.generate_content(
                model=self.model,
                contents=prompt,
                config=cfg,
            )
        except Exception as e:
            logger.error(f"Gemini request failed: {e}", exc_info=True)
            raise BackendUnavailableError("The AI service is unavailable right now. Please try again.") from e

    async def generate_quiz(self, text: str) -> List[QuizItem]:
        prompt = QUIZ_PROMPT.format(count=QUIZ_TARGET_COUNT, tricky=QUIZ_TRICKY_PERCENT, document=text)
        resp = await self._request(prompt, QuizGen)
        items = parse_quiz(_payload(resp))
        logger.info(f"Generated {len(items)} quiz questions")
        return items

    async def generate_subjective_questions(self, text: str) -> List[SubjectiveItem]:
        prompt = SUBJECTIVE_PROMPT.format(count=SUBJECTIVE_COUNT, document=text)
        resp = await self._request(prompt, SubjectiveGen)
        items = parse_subjective(_payload(resp))
        logger.info(f"Generated {len(items)} subjective questions")
        return items

    async def generate_flashcards(self, text: str) -> List[FlashcardItem]:
        if self.flashcard_output == "lines":
            prompt = FLASHCARD_PROMPT.format(format_hint=FLASHCARD_LINES_HINT, document=text)
            resp = await self._request(prompt)
        else:
            prompt = FLASHCARD_PROMPT.format(format_hint="", document=text)
            resp = await self._request(prompt, FlashcardsGen)
        cards = parse_flashcards(resp)
        logger.info(f"Generated {len(cards)} flashcards")
        return cards

    async def grade_answer(self, question: str, answer: str) -> Grade:
        prompt = GRADE_PROMPT.format(question=question, answer=answer, bottom=GRADE_MIN, top=GRADE_MAX)
        resp = await self._request(prompt, AnswerAnalysis)
        return normalize_grade(_payload(resp))
