# tests/conftest.py
"""
Shared fixtures: a disposable SQLite DB per test, a scripted LLM client and a
recording scheduler. Async code is driven with asyncio.run.
"""
import os

# Keep the import-time default DB out of the working tree's real DB
os.environ.setdefault("DATABASE_URL", "sqlite:///./test_castgate_import.db")
os.environ.setdefault("MOCK_AUTH", "true")

import pytest

from castgate import db as dbmod
from castgate.llm_wrapper import LlmResponse
from castgate.usage import Usage


class FakeLlmClient:
    """Returns scripted responses in order. An Exception instance is raised instead."""

    def __init__(self, responses=None):
        self.responses = list(responses or [])
        self.prompts = []

    def queue(self, text, prompt_tokens=10, completion_tokens=5):
        self.responses.append(LlmResponse(
            text=text,
            usage=Usage(prompt_tokens, completion_tokens, prompt_tokens + completion_tokens),
        ))

    async def send_request(self, prompt, model, max_tokens):
        self.prompts.append(prompt)
        if not self.responses:
            raise RuntimeError("FakeLlmClient has no scripted response left")
        nxt = self.responses.pop(0)
        if isinstance(nxt, Exception):
            raise nxt
        return nxt


class RecordingScheduler:
    def __init__(self):
        self.jobs = []

    async def schedule(self, job_name, payload, max_attempts=1):
        self.jobs.append((job_name, payload, max_attempts))


@pytest.fixture
def temp_db(tmp_path):
    url = f"sqlite:///{tmp_path / 'castgate_test.db'}"
    dbmod.reconfigure(url)
    dbmod.init_db()
    yield url


@pytest.fixture
def fake_llm():
    return FakeLlmClient()


@pytest.fixture
def scheduler():
    return RecordingScheduler()
