import asyncio
import datetime as dt
import uuid
from typing import Dict, List, Optional, Tuple

import pytest

from habit_progress.errors import FetchError, HabitNotFound, WriteError
from habit_progress.models import Frequency, Habit, LogEntry
from habit_progress.schemas import HabitCreate
from habit_progress.store import HabitRepository, RecordStore, create_db_and_tables, make_engine


@pytest.fixture
def anyio_backend():
    return "asyncio"


class FakeRepository:
    """In-memory ProgressRepository with switchable failures and write latency."""

    def __init__(self):
        self.habits: List[Habit] = []
        self.entries: Dict[Tuple[uuid.UUID, uuid.UUID, dt.date], int] = {}
        self.writes: List[Tuple[uuid.UUID, dt.date, int]] = []
        self.write_delays: List[float] = []
        self.fetch_delays: List[float] = []
        self.failing_writes = 0
        self.failing_fetches = False

    def add_habit(self, user_id, name="Read", frequency=Frequency.DAILY, goal=1, priority=1) -> Habit:
        habit = Habit(user_id=user_id, name=name, frequency=frequency, goal=goal, priority=priority)
        self.habits.append(habit)
        return habit

    def add_entry(self, habit: Habit, day: dt.date, completions: int) -> None:
        self.entries[(habit.id, habit.user_id, day)] = completions

    def stored(self, habit: Habit, day: dt.date) -> Optional[int]:
        return self.entries.get((habit.id, habit.user_id, day))

    async def fetch_habits(self, user_id):
        if self.failing_fetches:
            raise FetchError("Error fetching habits: offline")
        return [h for h in self.habits if h.user_id == user_id and not h.is_archived]

    async def fetch_log_entries(self, user_id, start=None, end=None):
        if self.fetch_delays:
            await asyncio.sleep(self.fetch_delays.pop(0))
        if self.failing_fetches:
            raise FetchError("Error fetching log entries: offline")
        rows = []
        for (habit_id, owner, day), completions in self.entries.items():
            if owner != user_id:
                continue
            if start is not None and day < start:
                continue
            if end is not None and day > end:
                continue
            rows.append(LogEntry(habit_id=habit_id, user_id=owner, date=day, completions=completions))
        return rows

    async def upsert_log_entry(self, habit_id, user_id, day, completions):
        delay = self.write_delays.pop(0) if self.write_delays else 0
        await asyncio.sleep(delay)
        if self.failing_writes:
            self.failing_writes -= 1
            raise WriteError("Error updating log entry: offline")
        self.entries[(habit_id, user_id, day)] = completions
        self.writes.append((habit_id, day, completions))
        return LogEntry(habit_id=habit_id, user_id=user_id, date=day, completions=completions)

    async def insert_habit(self, user_id, habit_in: HabitCreate):
        return self.add_habit(
            user_id,
            name=habit_in.name,
            frequency=habit_in.frequency,
            goal=habit_in.goal,
            priority=habit_in.priority,
        )

    async def archive_habit(self, user_id, habit_id):
        for habit in self.habits:
            if habit.id == habit_id and habit.user_id == user_id and not habit.is_archived:
                habit.is_archived = True
                return
        raise HabitNotFound(habit_id)


@pytest.fixture
def user_id():
    return uuid.uuid4()


@pytest.fixture
def fake_repo():
    return FakeRepository()


@pytest.fixture
def database_url(tmp_path):
    return f"sqlite:///{tmp_path / 'habits.db'}"


@pytest.fixture
def engine(database_url):
    engine = make_engine(database_url)
    create_db_and_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def record_store(engine):
    return RecordStore(engine)


@pytest.fixture
def repository(record_store):
    return HabitRepository(record_store)
