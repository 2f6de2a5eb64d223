import datetime as dt
import logging
import uuid
from enum import Enum
from typing import Dict, List, Optional, Tuple

from .errors import AuthRequired, CountersNotLoaded, FetchError, HabitNotFound, HabitProgressError, WriteError
from .models import Habit
from .schemas import DayWeekCounts, HabitCreate, HabitProgress, ProgressView
from .store import ProgressRepository
from .weeks import in_week, week_bounds
from .writer import KeyedWriteQueue, WriteKey

logger = logging.getLogger(__name__)


class AggregatorState(str, Enum):
    UNINITIALIZED = "uninitialized"
    LOADING = "loading"
    READY = "ready"
    ERROR = "error"


class HabitProgressAggregator:
    """Per-user habit counters for a navigable date cursor.

    Counters are derived from log entries on every load. ``adjust`` changes
    them optimistically and hands the new absolute daily count to a per-key
    write queue; the caller never waits for the store.
    """

    def __init__(
        self,
        repository: ProgressRepository,
        user_id: Optional[uuid.UUID],
        selected_date: Optional[dt.date] = None,
        reconcile_on_write_failure: bool = True,
    ):
        self.repository = repository
        self.user_id = user_id
        self.selected_date = selected_date or dt.date.today()
        # date the daily/weekly counters were loaded for; None until the first week load
        self.loaded_date: Optional[dt.date] = None
        self.reconcile_on_write_failure = reconcile_on_write_failure

        self.state = AggregatorState.UNINITIALIZED
        self.error_message: Optional[str] = None
        self.last_write_error: Optional[str] = None

        self.habits: Dict[uuid.UUID, Habit] = {}
        self.progress: Dict[uuid.UUID, int] = {}
        self.weekly_progress: Dict[uuid.UUID, int] = {}
        self.total_progress: Dict[uuid.UUID, int] = {}

        self.writer = KeyedWriteQueue(self._write_entry, self._on_write_failure)

    # ----- Loading -----
    def _require_user(self) -> uuid.UUID:
        if self.user_id is None:
            raise AuthRequired()
        return self.user_id

    def _begin_load(self) -> uuid.UUID:
        self.state = AggregatorState.LOADING
        try:
            user_id = self._require_user()
        except AuthRequired as exc:
            self._fail(exc)
            raise
        self.error_message = None
        return user_id

    def _fail(self, exc: HabitProgressError) -> None:
        self.state = AggregatorState.ERROR
        self.error_message = str(exc)
        logger.warning("Load failed for user %s: %s", self.user_id, exc)

    async def load(self) -> None:
        """Initial load: habits, all-time totals, then the selected week."""
        await self.load_habits()
        await self.load_all_time()
        await self.load_week(self.selected_date)

    async def load_habits(self) -> List[Habit]:
        user_id = self._begin_load()
        try:
            habits = await self.repository.fetch_habits(user_id)
        except FetchError as exc:
            self._fail(exc)
            raise

        self.habits = {habit.id: habit for habit in habits}
        # keep counters of habits still present, start new ones at zero
        self.progress = {hid: self.progress.get(hid, 0) for hid in self.habits}
        self.weekly_progress = {hid: self.weekly_progress.get(hid, 0) for hid in self.habits}
        self.total_progress = {hid: self.total_progress.get(hid, 0) for hid in self.habits}
        self.state = AggregatorState.READY
        return habits

    async def load_week(self, any_date: dt.date) -> Dict[uuid.UUID, DayWeekCounts]:
        """Load counters for the week of ``any_date`` and make it the selected date.

        The cursor and the counters change together, and only once the fetch
        succeeds; a failed load leaves both on the previous date.
        """
        user_id = self._begin_load()
        start, end = week_bounds(any_date)
        try:
            entries = await self.repository.fetch_log_entries(user_id, start, end)
        except FetchError as exc:
            self._fail(exc)
            raise

        completions: Dict[Tuple[uuid.UUID, dt.date], int] = {
            (entry.habit_id, entry.date): entry.completions for entry in entries
        }
        # unconfirmed local writes win over what the store returned
        for (habit_id, day), value in self.writer.pending_items():
            if in_week(day, any_date):
                completions[(habit_id, day)] = value

        counts = {habit_id: DayWeekCounts() for habit_id in self.habits}
        for (habit_id, day), value in completions.items():
            habit_counts = counts.get(habit_id)
            if habit_counts is None:
                continue
            habit_counts.weekly += value
            if day == any_date:
                habit_counts.daily = value

        self.selected_date = any_date
        self.loaded_date = any_date
        self.progress = {hid: c.daily for hid, c in counts.items()}
        self.weekly_progress = {hid: c.weekly for hid, c in counts.items()}
        self.state = AggregatorState.READY
        return counts

    async def load_all_time(self) -> Dict[uuid.UUID, int]:
        user_id = self._begin_load()
        try:
            entries = await self.repository.fetch_log_entries(user_id)
        except FetchError as exc:
            self._fail(exc)
            raise

        totals: Dict[uuid.UUID, int] = {}
        seen = set()
        for entry in entries:
            seen.add((entry.habit_id, entry.date))
            completions = self.writer.pending((entry.habit_id, entry.date))
            if completions is None:
                completions = entry.completions
            totals[entry.habit_id] = totals.get(entry.habit_id, 0) + completions
        for (habit_id, day), value in self.writer.pending_items():
            if (habit_id, day) not in seen:
                totals[habit_id] = totals.get(habit_id, 0) + value

        self.total_progress = {hid: totals.get(hid, 0) for hid in self.habits}
        self.state = AggregatorState.READY
        return totals

    async def select_date(self, new_date: dt.date) -> Dict[uuid.UUID, DayWeekCounts]:
        """Move the cursor; counters are reloaded, queued writes keep running."""
        return await self.load_week(new_date)

    async def step_date(self, days: int) -> Dict[uuid.UUID, DayWeekCounts]:
        return await self.select_date(self.selected_date + dt.timedelta(days=days))

    # ----- Progress updates -----
    def adjust(self, habit_id: uuid.UUID, delta: int, on_date: Optional[dt.date] = None) -> int:
        """Apply +1/-1 to a habit on the loaded date and queue the write.

        Returns the new daily count. Decrementing a zero count does nothing.
        Raises CountersNotLoaded unless the counters in memory were loaded for
        ``on_date`` (or for any date, when ``on_date`` is omitted).

        The weekly counter moves for every habit, not only weekly ones, so it
        stays equal to what ``load_week`` computes; daily habits never display it.
        Must be called from the running event loop.
        """
        if delta not in (1, -1):
            raise ValueError("delta must be +1 or -1")
        self._require_user()
        habit = self.habits.get(habit_id)
        if habit is None:
            raise HabitNotFound(habit_id)
        day = self.loaded_date
        if day is None:
            raise CountersNotLoaded("Counters have not been loaded yet")
        if on_date is not None and on_date != day:
            raise CountersNotLoaded(f"Counters are loaded for {day}, not {on_date}")

        current = self.progress.get(habit_id, 0)
        if delta < 0 and current <= 0:
            return current

        new_daily = current + delta
        self.progress[habit_id] = new_daily
        self.weekly_progress[habit_id] = self.weekly_progress.get(habit_id, 0) + delta
        self.total_progress[habit_id] = self.total_progress.get(habit_id, 0) + delta

        self.writer.submit((habit_id, day), new_daily)
        return new_daily

    async def _write_entry(self, key: WriteKey, completions: int) -> None:
        habit_id, day = key
        await self.repository.upsert_log_entry(habit_id, self._require_user(), day, completions)

    async def _on_write_failure(self, key: WriteKey, exc: WriteError) -> None:
        self.last_write_error = str(exc)
        if not self.reconcile_on_write_failure:
            return
        logger.info("Reconciling counters after failed write for habit %s on %s", key[0], key[1])
        try:
            await self.load_all_time()
            await self.load_week(self.selected_date)
        except HabitProgressError as reload_exc:
            logger.error("Reconciliation failed: %s", reload_exc)

    async def flush(self) -> None:
        await self.writer.flush()

    async def aclose(self) -> None:
        await self.writer.flush()
        await self.writer.aclose()

    # ----- Habits -----
    async def create_habit(self, habit_in: HabitCreate) -> Habit:
        habit = await self.repository.insert_habit(self._require_user(), habit_in)
        self.habits[habit.id] = habit
        self.progress[habit.id] = 0
        self.weekly_progress[habit.id] = 0
        self.total_progress[habit.id] = 0
        return habit

    async def archive_habit(self, habit_id: uuid.UUID) -> None:
        await self.repository.archive_habit(self._require_user(), habit_id)
        self.habits.pop(habit_id, None)
        self.progress.pop(habit_id, None)
        self.weekly_progress.pop(habit_id, None)
        self.total_progress.pop(habit_id, None)

    # ----- Views -----
    def counters(self) -> List[HabitProgress]:
        return [
            HabitProgress(
                habit_id=habit.id,
                name=habit.name,
                frequency=habit.frequency,
                goal=habit.goal,
                priority=habit.priority,
                daily=self.progress.get(habit.id, 0),
                weekly=self.weekly_progress.get(habit.id, 0),
                total=self.total_progress.get(habit.id, 0),
            )
            for habit in self.habits.values()
        ]

    def view(self) -> ProgressView:
        start, end = week_bounds(self.selected_date)
        return ProgressView(
            date=self.selected_date,
            week_start=start,
            week_end=end,
            state=self.state.value,
            error_message=self.error_message,
            last_write_error=self.last_write_error,
            habits=self.counters(),
        )
