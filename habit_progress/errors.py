class HabitProgressError(Exception):
    """Base class for every error raised by the habit progress backend."""


class AuthRequired(HabitProgressError):
    def __init__(self, message: str = "You must be logged in to see your habits."):
        super().__init__(message)


class FetchError(HabitProgressError):
    """A read from the record store failed."""


class WriteError(HabitProgressError):
    """A write to the record store failed."""


class HabitNotFound(HabitProgressError):
    def __init__(self, habit_id):
        super().__init__(f"Habit not found: {habit_id}")
        self.habit_id = habit_id


class CountersNotLoaded(HabitProgressError):
    """The in-memory counters belong to another date than the one asked for."""
