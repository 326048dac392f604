from __future__ import annotations

import asyncio
import logging
import os
import threading

import streamlit as st
from dotenv import load_dotenv
from google import genai

# study_core reads GEMINI_MODEL and FLASHCARD_OUTPUT at import time.
load_dotenv()

from study_core import (  # noqa: E402
    FLASHCARD_OUTPUT,
    GRADE_MAX,
    MODEL_ID,
    SINGLE_UPLOAD_TYPES,
    ContentExtractor,
    GenerationClient,
    UploadedDocument,
)
from study_flow import OptionMark, QuizState, Session, SubjectiveState, View, ViewNavigator  # noqa: E402

# -----------------------------------------------------------------------------
# 1. APP CONFIGURATION & ENVIRONMENT
# -----------------------------------------------------------------------------
API_KEY = os.getenv("GOOGLE_API_KEY")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

APP_TITLE = "AI Study Buddy"
FLASHCARD_COLUMNS = 3

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

st.set_page_config(page_title=APP_TITLE, layout="centered")
st.markdown("""
<style>
    div.block-container {padding-top: 1.5rem !important;}
    div.stButton > button {min-height: 2.75rem;}
</style>
""", unsafe_allow_html=True)

# Early validation of API key
if not API_KEY:
    st.error("GOOGLE_API_KEY not set")
    st.stop()

# -----------------------------------------------------------------------------
# 2. ASYNC BRIDGE
# -----------------------------------------------------------------------------

@st.cache_resource
def _event_loop() -> asyncio.AbstractEventLoop:
    # One loop for the whole server process so the async Gemini client keeps a stable loop.
    loop = asyncio.new_event_loop()
    threading.Thread(target=loop.run_forever, name="study-buddy-loop", daemon=True).start()
    return loop


@st.cache_resource
def _genai_client(api_key: str) -> genai.Client:
    return genai.Client(api_key=api_key)


def run_async(coro):
    """Run a coroutine on the shared loop and wait for its result."""
    return asyncio.run_coroutine_threadsafe(coro, _event_loop()).result()

# -----------------------------------------------------------------------------
# 3. SESSION STATE INITIALIZATION
# -----------------------------------------------------------------------------

if "navigator" not in st.session_state:
    client = _genai_client(API_KEY)
    st.session_state.navigator = ViewNavigator(
        Session(),
        ContentExtractor(client, model=MODEL_ID),
        GenerationClient(client, model=MODEL_ID, flashcard_output=FLASHCARD_OUTPUT),
    )
    logger.info(f"{APP_TITLE} session started (model={MODEL_ID}, flashcards={FLASHCARD_OUTPUT})")
if "uploader_key" not in st.session_state:
    st.session_state.uploader_key = 0

nav: ViewNavigator = st.session_state.navigator

# -----------------------------------------------------------------------------
# 4. VIEWS
# -----------------------------------------------------------------------------

def start_mode(mode: View):
    controller = nav.controllers[mode]
    with st.spinner(controller.loading_message):
        run_async(nav.select_mode(mode))
    st.rerun()


def render_upload():
    st.header("Upload Your Study Material")
    uploaded = st.file_uploader(
        "Upload a PDF, JPG, or JPEG (several PDFs can be combined)",
        type=SINGLE_UPLOAD_TYPES,
        accept_multiple_files=True,
        key=f"uploader_{st.session_state.uploader_key}",
        disabled=nav.busy,
    )
    if uploaded and st.button("Process Document", type="primary", disabled=nav.busy):
        files = [UploadedDocument.from_upload(u) for u in uploaded]
        with st.spinner("Processing your document..."):
            ok = run_async(nav.upload(files))
        if not ok and not nav.retain_selection:
            st.session_state.uploader_key += 1
        st.rerun()


def render_mode_select():
    st.header("Choose a Study Mode")
    st.caption(f"Document loaded: {len(nav.session.document):,} characters")
    col_quiz, col_subj, col_flash = st.columns(3)
    with col_quiz:
        if st.button("Quiz", type="primary", disabled=nav.busy, use_container_width=True):
            start_mode(View.QUIZ)
    with col_subj:
        if st.button("Subjective Questions", type="primary", disabled=nav.busy, use_container_width=True):
            start_mode(View.SUBJECTIVE)
    with col_flash:
        if st.button("Flashcards", type="primary", disabled=nav.busy, use_container_width=True):
            start_mode(View.FLASHCARD)


def render_quiz():
    quiz = nav.quiz
    st.markdown(f"**{quiz.progress_label}**")

    if quiz.state is QuizState.COMPLETE:
        st.subheader(quiz.score_label)
        total = quiz.total
        st.progress(nav.session.score / total if total else 0)
        if st.button("Restart Quiz", type="primary", disabled=nav.busy):
            with st.spinner(quiz.loading_message):
                run_async(nav.restart_quiz())
            st.rerun()
        return

    item = quiz.current
    idx = nav.session.current_index
    st.progress(idx / quiz.total)
    st.subheader(item.prompt)

    outcome = quiz.outcome
    for i, opt in enumerate(item.options):
        label = opt
        if outcome is not None:
            mark = outcome.marks.get(opt)
            if mark is OptionMark.CORRECT:
                label = f"✅ {opt}"
            elif mark is OptionMark.WRONG:
                label = f"❌ {opt}"
        if st.button(label, key=f"quiz_opt_{idx}_{i}", disabled=outcome is not None, use_container_width=True):
            quiz.select(opt)
            st.rerun()

    if outcome is not None:
        if outcome.is_correct:
            st.success(outcome.feedback)
        else:
            st.error(outcome.feedback)
        if item.explanation:
            st.info(item.explanation)
        if st.button("Next Question", type="primary"):
            quiz.next()
            st.rerun()


def render_subjective():
    sub = nav.subjective
    item = sub.current
    if item is None:
        return
    idx = nav.session.current_index

    st.subheader(sub.progress_label)
    st.markdown(item.prompt)

    graded = sub.state is SubjectiveState.GRADED
    answer = st.text_area(
        "Your answer",
        key=f"subjective_answer_{nav.session.epoch}_{idx}",
        placeholder="Type your answer here...",
        height=160,
        disabled=graded,
    )
    if st.button("Analyze My Answer", disabled=graded or nav.busy):
        with st.spinner("Analyzing your answer..."):
            run_async(nav.submit_answer(answer))
        st.rerun()

    if sub.message:
        st.warning(sub.message)

    if graded:
        st.markdown(f"**Score: {item.grade.score}/{GRADE_MAX}**")
        st.write(item.grade.feedback)
        if st.button(sub.next_label, type="primary"):
            nav.next_subjective()
            st.rerun()


def render_flashcards():
    cards = nav.flashcards.cards
    st.header("Flashcards")
    st.caption(f"{len(cards)} cards. Flip a card to see its definition.")
    cols = st.columns(FLASHCARD_COLUMNS)
    for i, card in enumerate(cards):
        with cols[i % FLASHCARD_COLUMNS]:
            with st.container(border=True):
                if card.revealed:
                    st.write(card.definition)
                else:
                    st.markdown(f"**{card.term}**")
                if st.button("Show term" if card.revealed else "Show definition", key=f"flip_{i}", use_container_width=True):
                    nav.flashcards.toggle(i)
                    st.rerun()


VIEW_RENDERERS = {
    View.UPLOAD: render_upload,
    View.MODE_SELECT: render_mode_select,
    View.QUIZ: render_quiz,
    View.SUBJECTIVE: render_subjective,
    View.FLASHCARD: render_flashcards,
}

# -----------------------------------------------------------------------------
# 5. STREAMLIT UI
# -----------------------------------------------------------------------------

st.title(APP_TITLE)

with st.sidebar:
    st.header("Session")
    if nav.session.has_document:
        st.info(f"**Document:** {len(nav.session.document):,} characters extracted")
    if st.button("Start with a New Document", disabled=nav.view is View.UPLOAD):
        nav.new_document()
        st.session_state.uploader_key += 1
        st.rerun()

if nav.can_go_back:
    if st.button("← Back to modes", key="back_button"):
        nav.back()
        st.rerun()

if nav.error:
    st.error(nav.error)
if nav.notice:
    st.success(nav.notice)

VIEW_RENDERERS[nav.view]()
