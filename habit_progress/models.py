import datetime as dt
import uuid
from enum import Enum
from typing import Optional

from sqlalchemy import Column, UniqueConstraint
from sqlalchemy import Enum as SAEnum
from sqlmodel import Field, SQLModel


class Frequency(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"


class Habit(SQLModel, table=True):
    __tablename__ = "habits"

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    user_id: uuid.UUID = Field(index=True)
    name: str
    frequency: Frequency = Field(
        default=Frequency.DAILY,
        sa_column=Column(
            SAEnum(Frequency, name="frequency", values_callable=lambda e: [m.value for m in e]),
            nullable=False,
        ),
    )
    goal: int = Field(default=1)
    priority: Optional[int] = None  # 1..3, display only
    is_archived: bool = Field(default=False, index=True)
    created_at: dt.datetime = Field(default_factory=lambda: dt.datetime.now(dt.timezone.utc))
    archived_at: Optional[dt.datetime] = None


class LogEntry(SQLModel, table=True):
    """Completions of one habit on one calendar day."""

    __tablename__ = "log_entries"
    __table_args__ = (
        UniqueConstraint("habit_id", "user_id", "date", name="uq_log_entries_habit_user_date"),
    )

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    habit_id: uuid.UUID = Field(foreign_key="habits.id", index=True)
    user_id: uuid.UUID = Field(index=True)
    date: dt.date = Field(index=True)
    completions: int = Field(default=0)


# upsert conflict key for log entries
LOG_ENTRY_KEY = ("habit_id", "user_id", "date")
