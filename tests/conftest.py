import os
import tempfile

os.environ.setdefault("UPLOADS_DIR", tempfile.mkdtemp(prefix="uploads-"))
os.environ.pop("DATABASE_URL", None)
os.environ.pop("SMTP_HOST", None)

import mongomock
import pytest
from faker import Faker
from httpx import ASGITransport, AsyncClient

from chatbot import TempTaskStore, get_temp_store
from database import get_db
from gemini import GeminiError, get_llm
from main import app

fake = Faker()


class FakeLLM:
    """Scripted stand-in for GeminiClient.generate."""

    def __init__(self):
        self.intent = "chat"
        self.reply = "Happy to help!"
        self.details = (
            "Category: Development\n"
            "Description: Generated description\n"
            "Priority: high\n"
            "Due Date: tomorrow"
        )
        self.fail = False
        self.prompts = []

    async def generate(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if self.fail:
            raise GeminiError("Gemini API error 500: boom")
        if prompt.startswith("Analyze the following message"):
            return self.intent
        if prompt.startswith("Generate appropriate task details"):
            return self.details
        return self.reply


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def mongo():
    return mongomock.MongoClient()["task-management-test"]


@pytest.fixture
def llm():
    return FakeLLM()


@pytest.fixture
def store():
    return TempTaskStore()


@pytest.fixture
async def client(mongo, llm, store):
    app.dependency_overrides[get_db] = lambda: mongo
    app.dependency_overrides[get_llm] = lambda: llm
    app.dependency_overrides[get_temp_store] = lambda: store
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()


def user_payload(**overrides):
    payload = {
        "fullName": fake.name(),
        "job": fake.job(),
        "email": fake.unique.email(),
        "password": fake.password(length=12),
        "location": fake.city(),
    }
    payload.update(overrides)
    return payload


async def signup(client, **overrides):
    """Register and log in a fresh user; returns (auth headers, user dict, payload)."""
    payload = user_payload(**overrides)
    res = await client.post("/api/users/register", json=payload)
    assert res.json()["state"] is True
    res = await client.post("/api/users/login", json={"email": payload["email"], "password": payload["password"]})
    data = res.json()
    assert data["state"] is True
    return {"Authorization": f"Bearer {data['token']}"}, data["user"], payload


@pytest.fixture
async def auth(client):
    headers, _, _ = await signup(client)
    return headers
