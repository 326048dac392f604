from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Sequence

from study_core import (
    ContentExtractor,
    ExtractionError,
    FlashcardItem,
    GenerationClient,
    GenerationError,
    Grade,
    QuizItem,
    SubjectiveItem,
    UploadedDocument,
)

logger = logging.getLogger(__name__)

# -----------------------------------------------------------------------------
# 1. SESSION STATE
# -----------------------------------------------------------------------------

class View(str, Enum):
    UPLOAD = "upload"
    MODE_SELECT = "mode_select"
    QUIZ = "quiz"
    SUBJECTIVE = "subjective"
    FLASHCARD = "flashcard"


MODE_VIEWS = (View.QUIZ, View.SUBJECTIVE, View.FLASHCARD)


@dataclass(frozen=True)
class RequestTicket:
    """Issued for one in-flight extraction/generation call."""
    request_id: int
    epoch: int


class Session:
    """The single mutable record shared by the navigator and the controllers.

    ``epoch`` changes whenever the user moves on (back, new document); a result
    carrying a ticket from an older epoch must be dropped.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self.document = ""
        self.mode: Optional[View] = None
        self.items: list = []
        self.current_index = 0
        self.score = 0
        self.busy = False
        self.epoch = 0
        self._inflight: Optional[int] = None
        self._next_request_id = 0

    # --- request token ---
    def begin_request(self) -> Optional[RequestTicket]:
        with self._lock:
            if self.busy:
                return None
            self._next_request_id += 1
            self._inflight = self._next_request_id
            self.busy = True
            return RequestTicket(request_id=self._inflight, epoch=self.epoch)

    def finish_request(self, ticket: RequestTicket) -> None:
        with self._lock:
            if self._inflight == ticket.request_id:
                self._inflight = None
                self.busy = False

    def is_current(self, ticket: RequestTicket) -> bool:
        with self._lock:
            return ticket.epoch == self.epoch

    def invalidate(self) -> None:
        """Orphan any in-flight request and release the busy flag."""
        with self._lock:
            self.epoch += 1
            self._inflight = None
            self.busy = False

    # --- content ---
    def set_document(self, text: str) -> None:
        if not text or not text.strip():
            raise ValueError("Document text must not be empty.")
        with self._lock:
            self.document = text
            self._clear_items()

    def replace_items(self, mode: View, items: list) -> None:
        if mode not in MODE_VIEWS:
            raise ValueError(f"{mode} has no item set")
        if not items:
            raise ValueError("Item set must not be empty.")
        with self._lock:
            self.mode = mode
            self.items = list(items)
            self.current_index = 0
            self.score = 0

    def clear_items(self) -> None:
        with self._lock:
            self._clear_items()

    def _clear_items(self) -> None:
        self.mode = None
        self.items = []
        self.current_index = 0
        self.score = 0

    def advance(self) -> int:
        with self._lock:
            self.current_index = min(self.current_index + 1, len(self.items))
            return self.current_index

    def add_point(self) -> None:
        with self._lock:
            if self.mode is View.QUIZ:
                self.score += 1

    def reset(self) -> None:
        with self._lock:
            self.document = ""
            self._clear_items()

    @property
    def has_document(self) -> bool:
        return bool(self.document.strip())

    @property
    def current_item(self):
        if 0 <= self.current_index < len(self.items):
            return self.items[self.current_index]
        return None

    @property
    def is_last_item(self) -> bool:
        return self.current_index >= len(self.items) - 1

# -----------------------------------------------------------------------------
# 2. QUIZ CONTROLLER
# -----------------------------------------------------------------------------

class QuizState(str, Enum):
    AWAITING_ANSWER = "awaiting_answer"
    ANSWERED = "answered"
    COMPLETE = "complete"


class OptionMark(str, Enum):
    CORRECT = "correct"
    WRONG = "wrong"


@dataclass
class AnswerOutcome:
    selected: str
    is_correct: bool
    correct_answer: str
    marks: Dict[str, OptionMark]

    @property
    def feedback(self) -> str:
        if self.is_correct:
            return "Correct!"
        return f"Wrong! The correct answer is: {self.correct_answer}"


class QuizController:
    mode = View.QUIZ
    loading_message = "Creating your quiz..."
    failure_message = "Failed to create the quiz. Please try again."

    def __init__(self, session: Session, generator: GenerationClient):
        self.session = session
        self.generator = generator
        self.outcome: Optional[AnswerOutcome] = None

    async def generate(self, text: str) -> List[QuizItem]:
        return await self.generator.generate_quiz(text)

    def reset(self) -> None:
        self.outcome = None

    @property
    def state(self) -> QuizState:
        if self.session.mode is not View.QUIZ or self.session.current_item is None:
            return QuizState.COMPLETE
        if self.outcome is not None:
            return QuizState.ANSWERED
        return QuizState.AWAITING_ANSWER

    @property
    def current(self) -> Optional[QuizItem]:
        return self.session.current_item if self.session.mode is View.QUIZ else None

    def select(self, option: str) -> Optional[AnswerOutcome]:
        """Record the first selection for the current question; later calls are no-ops."""
        if self.state is not QuizState.AWAITING_ANSWER:
            return None
        item: QuizItem = self.current
        if option not in item.options:
            raise ValueError(f"'{option}' is not an option for this question")

        is_correct = item.matches(option)
        if is_correct:
            self.session.add_point()
        marks = {option: OptionMark.CORRECT if is_correct else OptionMark.WRONG}
        if not is_correct:
            for opt in item.options:
                if item.matches(opt):
                    marks[opt] = OptionMark.CORRECT
        self.outcome = AnswerOutcome(
            selected=option,
            is_correct=is_correct,
            correct_answer=item.correct_answer,
            marks=marks,
        )
        return self.outcome

    def next(self) -> QuizState:
        if self.state is QuizState.ANSWERED:
            self.outcome = None
            self.session.advance()
        return self.state

    @property
    def total(self) -> int:
        return len(self.session.items) if self.session.mode is View.QUIZ else 0

    @property
    def progress_label(self) -> str:
        if self.state is QuizState.COMPLETE:
            return "Quiz Complete!"
        return f"Question {self.session.current_index + 1} of {self.total}"

    @property
    def score_label(self) -> str:
        return f"Your Score: {self.session.score} out of {self.total}"

# -----------------------------------------------------------------------------
# 3. SUBJECTIVE CONTROLLER
# -----------------------------------------------------------------------------

class SubjectiveState(str, Enum):
    UNANSWERED = "unanswered"
    PENDING = "pending"
    GRADED = "graded"
    COMPLETE = "complete"


class SubjectiveController:
    mode = View.SUBJECTIVE
    loading_message = "Generating questions..."
    failure_message = "Failed to generate subjective questions."

    def __init__(self, session: Session, generator: GenerationClient):
        self.session = session
        self.generator = generator
        self.pending = False
        self.message = ""

    async def generate(self, text: str) -> List[SubjectiveItem]:
        return await self.generator.generate_subjective_questions(text)

    def reset(self) -> None:
        self.pending = False
        self.message = ""

    @property
    def current(self) -> Optional[SubjectiveItem]:
        return self.session.current_item if self.session.mode is View.SUBJECTIVE else None

    @property
    def state(self) -> SubjectiveState:
        item = self.current
        if item is None:
            return SubjectiveState.COMPLETE
        if self.pending:
            return SubjectiveState.PENDING
        if item.grade is not None:
            return SubjectiveState.GRADED
        return SubjectiveState.UNANSWERED

    async def submit(self, answer: str) -> Optional[Grade]:
        if self.state is not SubjectiveState.UNANSWERED:
            return None
        if not answer or not answer.strip():
            self.message = "Please provide an answer."
            return None

        ticket = self.session.begin_request()
        if ticket is None:
            return None
        item = self.current
        self.pending = True
        self.message = ""
        try:
            grade = await self.generator.grade_answer(item.prompt, answer)
        except GenerationError as e:
            if self.session.is_current(ticket):
                logger.warning(f"Grading failed: {e}")
                self.message = "Sorry, unable to analyze the answer."
                self.pending = False
            return None
        finally:
            self.session.finish_request(ticket)

        if not self.session.is_current(ticket):
            logger.info("Discarding grade for a question the user has left")
            return None
        self.pending = False
        item.attach_grade(answer, grade)
        return grade

    def next(self) -> SubjectiveState:
        if self.state is SubjectiveState.GRADED:
            self.message = ""
            self.session.advance()
        return self.state

    @property
    def total(self) -> int:
        return len(self.session.items) if self.session.mode is View.SUBJECTIVE else 0

    @property
    def progress_label(self) -> str:
        return f"Question {self.session.current_index + 1} of {self.total}"

    @property
    def next_label(self) -> str:
        if self.current is not None and self.session.is_last_item:
            return "Finish"
        return "Next Question"

# -----------------------------------------------------------------------------
# 4. FLASHCARD CONTROLLER
# -----------------------------------------------------------------------------

class FlashcardController:
    mode = View.FLASHCARD
    loading_message = "Creating flashcards..."
    failure_message = "Failed to create flashcards."

    def __init__(self, session: Session, generator: GenerationClient):
        self.session = session
        self.generator = generator

    async def generate(self, text: str) -> List[FlashcardItem]:
        return await self.generator.generate_flashcards(text)

    def reset(self) -> None:
        for card in self.cards:
            card.revealed = False

    @property
    def cards(self) -> List[FlashcardItem]:
        return self.session.items if self.session.mode is View.FLASHCARD else []

    def toggle(self, index: int) -> bool:
        return self.cards[index].flip()

# -----------------------------------------------------------------------------
# 5. VIEW NAVIGATOR
# -----------------------------------------------------------------------------

class ViewNavigator:
    """Upload -> ModeSelect -> {Quiz, Subjective, Flashcard} -> ModeSelect."""

    def __init__(self, session: Session, extractor: ContentExtractor, generator: GenerationClient):
        self.session = session
        self.extractor = extractor
        self.view = View.UPLOAD
        self.error = ""
        self.notice = ""
        self.retain_selection = False
        self.quiz = QuizController(session, generator)
        self.subjective = SubjectiveController(session, generator)
        self.flashcards = FlashcardController(session, generator)
        self.controllers = {c.mode: c for c in (self.quiz, self.subjective, self.flashcards)}

    @property
    def busy(self) -> bool:
        return self.session.busy

    @property
    def can_go_back(self) -> bool:
        return self.view is not View.UPLOAD

    def _reset_controllers(self) -> None:
        for controller in self.controllers.values():
            controller.reset()

    async def upload(self, files: Sequence[UploadedDocument]) -> bool:
        if self.view is not View.UPLOAD or not files:
            return False
        ticket = self.session.begin_request()
        if ticket is None:
            return False
        self.error = ""
        self.notice = ""
        self.retain_selection = len(files) > 1
        try:
            if len(files) == 1:
                text = await self.extractor.extract(files[0])
            else:
                text = await self.extractor.extract_many(files)
        except ExtractionError as e:
            if self.session.is_current(ticket):
                logger.warning(f"Extraction failed: {e}")
                self.error = str(e)
                self.view = View.UPLOAD
            return False
        finally:
            self.session.finish_request(ticket)

        if not self.session.is_current(ticket):
            logger.info("Discarding extraction result from an abandoned upload")
            return False
        self.session.set_document(text)
        self._reset_controllers()
        self.view = View.MODE_SELECT
        return True

    async def select_mode(self, mode: View) -> bool:
        if mode not in self.controllers:
            raise ValueError(f"{mode} is not a study mode")
        if not self.session.has_document:
            self.error = "Please upload a document first."
            return False
        ticket = self.session.begin_request()
        if ticket is None:
            return False
        controller = self.controllers[mode]
        self.error = ""
        self.notice = ""
        try:
            items = await controller.generate(self.session.document)
        except GenerationError as e:
            if self.session.is_current(ticket):
                logger.warning(f"{mode.value} generation failed: {e}")
                self.session.clear_items()
                self._reset_controllers()
                self.error = f"{controller.failure_message} {e}"
                self.view = View.MODE_SELECT
            return False
        finally:
            self.session.finish_request(ticket)

        if not self.session.is_current(ticket):
            logger.info(f"Discarding {mode.value} items generated for an abandoned view")
            return False
        self.session.replace_items(mode, items)
        self._reset_controllers()
        self.view = mode
        return True

    async def restart_quiz(self) -> bool:
        return await self.select_mode(View.QUIZ)

    async def submit_answer(self, answer: str) -> Optional[Grade]:
        if self.view is not View.SUBJECTIVE:
            return None
        return await self.subjective.submit(answer)

    def next_subjective(self) -> SubjectiveState:
        state = self.subjective.next()
        if state is SubjectiveState.COMPLETE:
            self.back()
            self.notice = "You have completed all the questions!"
        return state

    def back(self) -> None:
        if self.view is View.UPLOAD:
            return
        self.session.invalidate()
        self.session.clear_items()
        self._reset_controllers()
        self.error = ""
        self.notice = ""
        self.view = View.MODE_SELECT

    def new_document(self) -> None:
        self.session.invalidate()
        self.session.reset()
        self._reset_controllers()
        self.error = ""
        self.notice = ""
        self.retain_selection = False
        self.view = View.UPLOAD
