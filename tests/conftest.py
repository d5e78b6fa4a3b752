import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from db.database import SQLiteDatabase
from db.models import Models

T0 = datetime(2025, 3, 10, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakeClaude:
    """Stands in for ClaudeClient.complete.

    Each queued response is returned in order; an exception instance is raised,
    and the string "hang" sleeps long enough to trip any test timeout."""

    def __init__(self, *responses) -> None:
        self.responses = list(responses)
        self.calls: list[tuple[str, str]] = []
        self.default = None

    async def complete(self, system_prompt: str, transcript: str, max_tokens: int = 500, temperature: float = 0.3) -> str:
        self.calls.append((system_prompt, transcript))
        response = self.responses.pop(0) if self.responses else self.default
        if isinstance(response, BaseException):
            raise response
        if response == "hang":
            await asyncio.sleep(5)
        if response is None:
            raise RuntimeError("no response queued")
        return response


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def db(tmp_path):
    database = SQLiteDatabase(str(tmp_path / "klio.db"))
    asyncio.run(database.init())
    yield database
    asyncio.run(database.close())


@pytest.fixture
def models(db) -> Models:
    return Models(db)
