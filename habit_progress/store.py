import datetime as dt
import logging
import uuid
from typing import Any, Dict, List, Optional, Protocol, Sequence, Type, TypeVar

from fastapi.concurrency import run_in_threadpool
from sqlalchemy import delete as sa_delete
from sqlalchemy import update as sa_update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine, select

from .errors import FetchError, HabitNotFound, WriteError
from .models import LOG_ENTRY_KEY, Habit, LogEntry
from .schemas import HabitCreate

logger = logging.getLogger(__name__)

Row = TypeVar("Row", bound=SQLModel)


# ----- DB setup -----
def make_engine(database_url: str, echo: bool = False) -> Engine:
    if database_url.startswith("sqlite"):
        kwargs: Dict[str, Any] = {"connect_args": {"check_same_thread": False}}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        return create_engine(database_url, echo=echo, **kwargs)
    return create_engine(database_url, echo=echo)


def create_db_and_tables(engine: Engine) -> None:
    SQLModel.metadata.create_all(engine)


# ----- Generic record store -----
class RecordStore:
    """Table-level select/insert/upsert/update/delete over one engine."""

    def __init__(self, engine: Engine):
        self.engine = engine

    def select(self, model: Type[Row], *filters, order_by=None) -> List[Row]:
        with Session(self.engine) as session:
            statement = select(model)
            if filters:
                statement = statement.where(*filters)
            if order_by is not None:
                statement = statement.order_by(order_by)
            return list(session.exec(statement).all())

    def insert(self, row: Row) -> Row:
        with Session(self.engine) as session:
            session.add(row)
            session.commit()
            session.refresh(row)
            return row

    def upsert(self, row: Row, conflict_keys: Sequence[str]) -> Row:
        try:
            return self._upsert_once(row, conflict_keys)
        except IntegrityError:
            # another writer inserted the same key between our select and insert
            logger.debug("Upsert conflict on %s, retrying as update", type(row).__name__)
            return self._upsert_once(row, conflict_keys)

    def _upsert_once(self, row: Row, conflict_keys: Sequence[str]) -> Row:
        model = type(row)
        with Session(self.engine) as session:
            filters = [getattr(model, key) == getattr(row, key) for key in conflict_keys]
            existing = session.exec(select(model).where(*filters)).first()
            if existing is None:
                target = model(**row.model_dump())
            else:
                target = existing
                for key, value in row.model_dump(exclude={"id"}).items():
                    setattr(target, key, value)
            session.add(target)
            session.commit()
            session.refresh(target)
            return target

    def update(self, model: Type[Row], values: Dict[str, Any], *filters) -> int:
        with Session(self.engine) as session:
            result = session.execute(sa_update(model).where(*filters).values(**values))
            session.commit()
            return result.rowcount

    def delete(self, model: Type[Row], *filters) -> int:
        with Session(self.engine) as session:
            result = session.execute(sa_delete(model).where(*filters))
            session.commit()
            return result.rowcount


# ----- Habit repository -----
class ProgressRepository(Protocol):
    """What the aggregator needs from persistence."""

    async def fetch_habits(self, user_id: uuid.UUID) -> List[Habit]:
        ...

    async def fetch_log_entries(
        self,
        user_id: uuid.UUID,
        start: Optional[dt.date] = None,
        end: Optional[dt.date] = None,
    ) -> List[LogEntry]:
        ...

    async def upsert_log_entry(
        self, habit_id: uuid.UUID, user_id: uuid.UUID, day: dt.date, completions: int
    ) -> LogEntry:
        ...

    async def insert_habit(self, user_id: uuid.UUID, habit_in: HabitCreate) -> Habit:
        ...

    async def archive_habit(self, user_id: uuid.UUID, habit_id: uuid.UUID) -> None:
        ...


class HabitRepository:
    """ProgressRepository backed by a RecordStore.

    Blocking session work runs in the thread pool; SQLAlchemy errors come out
    as FetchError for reads and WriteError for writes.
    """

    def __init__(self, store: RecordStore):
        self.store = store

    async def fetch_habits(self, user_id: uuid.UUID) -> List[Habit]:
        try:
            return await run_in_threadpool(
                self.store.select,
                Habit,
                Habit.user_id == user_id,
                Habit.is_archived == False,  # noqa: E712
                order_by=Habit.created_at,
            )
        except SQLAlchemyError as exc:
            raise FetchError(f"Error fetching habits: {exc}") from exc

    async def fetch_log_entries(
        self,
        user_id: uuid.UUID,
        start: Optional[dt.date] = None,
        end: Optional[dt.date] = None,
    ) -> List[LogEntry]:
        filters = [LogEntry.user_id == user_id]
        if start is not None:
            filters.append(LogEntry.date >= start)
        if end is not None:
            filters.append(LogEntry.date <= end)
        try:
            return await run_in_threadpool(self.store.select, LogEntry, *filters, order_by=LogEntry.date)
        except SQLAlchemyError as exc:
            raise FetchError(f"Error fetching log entries: {exc}") from exc

    async def upsert_log_entry(
        self, habit_id: uuid.UUID, user_id: uuid.UUID, day: dt.date, completions: int
    ) -> LogEntry:
        if completions < 0:
            raise ValueError("completions must not be negative")
        row = LogEntry(habit_id=habit_id, user_id=user_id, date=day, completions=completions)
        try:
            return await run_in_threadpool(self.store.upsert, row, LOG_ENTRY_KEY)
        except SQLAlchemyError as exc:
            raise WriteError(f"Error updating log entry: {exc}") from exc

    async def insert_habit(self, user_id: uuid.UUID, habit_in: HabitCreate) -> Habit:
        habit = Habit(
            user_id=user_id,
            name=habit_in.name,
            frequency=habit_in.frequency,
            goal=habit_in.goal,
            priority=habit_in.priority,
        )
        try:
            return await run_in_threadpool(self.store.insert, habit)
        except SQLAlchemyError as exc:
            raise WriteError(f"Error creating habit: {exc}") from exc

    async def archive_habit(self, user_id: uuid.UUID, habit_id: uuid.UUID) -> None:
        values = {"is_archived": True, "archived_at": dt.datetime.now(dt.timezone.utc)}
        try:
            updated = await run_in_threadpool(
                self.store.update,
                Habit,
                values,
                Habit.id == habit_id,
                Habit.user_id == user_id,
                Habit.is_archived == False,  # noqa: E712
            )
        except SQLAlchemyError as exc:
            raise WriteError(f"Error archiving habit: {exc}") from exc
        if not updated:
            raise HabitNotFound(habit_id)
