import asyncio
import json
from types import SimpleNamespace

import fitz  # PyMuPDF
import pytest

from study_core import ContentExtractor, GenerationClient
from study_flow import Session, ViewNavigator


class FakeResponse:
    def __init__(self, text=None, parsed=None):
        self.text = text
        self.parsed = parsed


def json_response(payload) -> FakeResponse:
    return FakeResponse(text=json.dumps(payload))


class FakeModels:
    """Stands in for ``client.aio.models``; replies are consumed in order.

    A reply may be a ``FakeResponse``, an exception to raise, or an
    ``asyncio.Event`` paired with a response as ``(event, response)`` to hold
    the call open until the test releases it.
    """

    def __init__(self, replies=None):
        self.replies = list(replies or [])
        self.calls = []

    def queue(self, *replies):
        self.replies.extend(replies)

    async def generate_content(self, *, model, contents, config=None):
        self.calls.append({"model": model, "contents": contents, "config": config})
        if not self.replies:
            raise AssertionError("unexpected generate_content call")
        reply = self.replies.pop(0)
        if isinstance(reply, tuple):
            gate, reply = reply
            await gate.wait()
        if isinstance(reply, BaseException):
            raise reply
        return reply


class FakeGenAI:
    def __init__(self, replies=None):
        self.models = FakeModels(replies)
        self.aio = SimpleNamespace(models=self.models)


def make_pdf(*pages: str) -> bytes:
    doc = fitz.open()
    for text in pages:
        page = doc.new_page()
        page.insert_text((72, 72), text)
    data = doc.tobytes()
    doc.close()
    return data


def run(coro):
    return asyncio.run(coro)


QUIZ_PAYLOAD = {
    "questions": [
        {"question": "What gas do plants absorb?", "type": "mcq",
         "options": ["Oxygen", "Carbon dioxide", "Nitrogen", "Helium"], "answer": "carbon dioxide"},
        {"question": "Chlorophyll is green.", "type": "tf", "options": [], "answer": "true"},
        {"question": "Where does photosynthesis happen?", "type": "mcq",
         "options": ["Mitochondria", "Chloroplast", "Nucleus", "Ribosome"], "answer": "Chloroplast"},
    ]
}

SUBJECTIVE_PAYLOAD = {
    "questions": [
        {"question": "Why do leaves change colour in autumn?"},
        {"question": "How would reduced sunlight affect a forest ecosystem?"},
    ]
}

FLASHCARD_PAYLOAD = {
    "flashcards": [
        {"term": "Photosynthesis", "definition": "Conversion of light into chemical energy"},
        {"term": "Chlorophyll", "definition": "Green pigment that absorbs light"},
    ]
}


@pytest.fixture
def genai_client():
    return FakeGenAI()


@pytest.fixture
def generator(genai_client):
    return GenerationClient(genai_client, model="test-model")


@pytest.fixture
def extractor(genai_client):
    return ContentExtractor(genai_client, model="test-model")


@pytest.fixture
def session():
    return Session()


@pytest.fixture
def navigator(session, extractor, generator):
    return ViewNavigator(session, extractor, generator)
