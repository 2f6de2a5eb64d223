import datetime as dt
import uuid
from typing import List, Optional

from pydantic import BaseModel, Field, computed_field, field_validator

from .models import Frequency


class HabitCreate(BaseModel):
    name: str
    frequency: Frequency = Frequency.DAILY
    goal: int = Field(default=1, ge=1)
    priority: Optional[int] = Field(default=1, ge=1, le=3)

    @field_validator("name")
    @classmethod
    def name_not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Habit name must not be empty")
        return value


class HabitRead(BaseModel):
    id: uuid.UUID
    name: str
    frequency: Frequency
    goal: int
    priority: Optional[int]
    created_at: dt.datetime


class AdjustRequest(BaseModel):
    delta: int
    date: Optional[dt.date] = None

    @field_validator("delta")
    @classmethod
    def unit_step(cls, value: int) -> int:
        if value not in (1, -1):
            raise ValueError("delta must be +1 or -1")
        return value


class AdjustResult(BaseModel):
    habit_id: uuid.UUID
    date: dt.date
    daily: int
    applied: bool


class DayWeekCounts(BaseModel):
    daily: int = 0
    weekly: int = 0


class HabitProgress(BaseModel):
    habit_id: uuid.UUID
    name: str
    frequency: Frequency
    goal: int
    priority: Optional[int] = None
    daily: int = 0
    weekly: int = 0
    total: int = 0

    @computed_field
    @property
    def display(self) -> int:
        if self.frequency is Frequency.DAILY:
            return self.daily
        if self.frequency is Frequency.WEEKLY:
            return self.weekly
        raise ValueError(f"Unknown frequency: {self.frequency}")

    @computed_field
    @property
    def goal_met(self) -> bool:
        return self.display >= self.goal


class ProgressView(BaseModel):
    date: dt.date
    week_start: dt.date
    week_end: dt.date
    state: str
    error_message: Optional[str] = None
    last_write_error: Optional[str] = None
    habits: List[HabitProgress]
