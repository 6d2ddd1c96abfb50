import asyncio
import json
import time

import fakeredis
import httpx
import mongomock
import pytest
from fastapi.testclient import TestClient

import ai_services
import cache
import database
import main
from auth import create_session
from database import create_document, utcnow
from schemas import User

CONTRACT_PAGES = [
    "EMPLOYMENT AGREEMENT between Acme Corp and Jane Doe.",
    "The Employer may terminate this agreement at any time without cause.",
]
CONTRACT_TEXT = "".join(p + "\n" for p in CONTRACT_PAGES)
PDF_BYTES = b"%PDF-1.4\n% stub contract body\n%%EOF\n"

STUB_ANALYSIS = {
    "overallScore": 72,
    "summary": "Standard employment agreement with a broad termination right.",
    "risks": [
        {"risk": "Termination without cause", "explanation": "Employer can end the contract at any time.", "severity": "high"},
        {"risk": "No severance", "explanation": "No payment on termination.", "severity": "medium"},
    ],
    "opportunities": [
        {"opportunity": "Negotiate notice period", "explanation": "Ask for 30 days notice.", "impact": "medium"},
    ],
}


class FakePage:
    def __init__(self, text):
        self.text = text

    def extract_text(self):
        return self.text


class FakePdfReader:
    seen = []

    def __init__(self, stream):
        FakePdfReader.seen.append(stream.read())
        self.pages = [FakePage(t) for t in CONTRACT_PAGES]


class BrokenPdfReader:
    def __init__(self, stream):
        raise ValueError("EOF marker not found")


@pytest.fixture
def mongo(monkeypatch):
    db = mongomock.MongoClient()["contractiq_test"]
    monkeypatch.setattr(database, "db", db)
    return db


@pytest.fixture
def redis_store(monkeypatch):
    r = fakeredis.FakeRedis(server=fakeredis.FakeServer())
    monkeypatch.setattr(cache, "redis_client", r)
    return r


@pytest.fixture
def client(mongo, redis_store):
    return TestClient(main.app)


@pytest.fixture
def make_user(mongo):
    def _make(google_id="google-1", email="jane@example.com", is_premium=False):
        user_id = create_document("user", User(
            google_id=google_id,
            email=email,
            display_name=email.split("@")[0],
            is_premium=is_premium,
            created_at=utcnow(),
        ))
        token = create_session(user_id)
        return user_id, {"Authorization": f"Bearer {token}"}
    return _make


@pytest.fixture
def stub_pdf(monkeypatch):
    FakePdfReader.seen = []
    monkeypatch.setattr(ai_services, "PdfReader", FakePdfReader)
    return FakePdfReader


@pytest.fixture
def broken_pdf(monkeypatch):
    monkeypatch.setattr(ai_services, "PdfReader", BrokenPdfReader)


@pytest.fixture
def stub_ai(monkeypatch):
    calls = []

    def fake_chat(messages, temperature=0.2):
        calls.append(messages)
        if messages[0]["content"] == ai_services.DETECT_TYPE_PROMPT:
            return "Employment Agreement"
        if messages[0]["content"].startswith("You are a contract co-pilot"):
            return "The employer can terminate at any time."
        return "Here is the analysis:\n" + json.dumps(STUB_ANALYSIS)

    monkeypatch.setattr(ai_services, "ai_chat", fake_chat)
    return calls


def pdf_upload(content=PDF_BYTES, name="contract.pdf", content_type="application/pdf"):
    return {"contract": (name, content, content_type)}


def request_alongside(send, delay=0.1):
    """Start ``send(client)`` and time a ``GET /`` issued while it is in flight.

    Runs both over one event loop so a handler that blocks the loop shows up
    as latency on the second request.
    """
    async def scenario():
        transport = httpx.ASGITransport(app=main.app)
        async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as ac:
            slow = asyncio.create_task(send(ac))
            await asyncio.sleep(delay)
            started = time.monotonic()
            resp = await ac.get("/")
            latency = time.monotonic() - started
            assert resp.status_code == 200
            return await slow, latency

    return asyncio.run(scenario())
