import asyncio
import datetime as dt
import logging
import uuid
from typing import Dict, List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request, status
from fastapi.responses import JSONResponse

from .aggregator import AggregatorState, HabitProgressAggregator
from .config import Settings
from .errors import AuthRequired, CountersNotLoaded, FetchError, HabitNotFound, WriteError
from .logging_setup import setup_logging
from .schemas import AdjustRequest, AdjustResult, DayWeekCounts, HabitCreate, HabitRead, ProgressView
from .store import HabitRepository, ProgressRepository, RecordStore, create_db_and_tables, make_engine

logger = logging.getLogger(__name__)


class AggregatorRegistry:
    """One aggregator per signed-in user, loaded on first use."""

    def __init__(self, repository: ProgressRepository, settings: Settings):
        self.repository = repository
        self.settings = settings
        self._aggregators: Dict[uuid.UUID, HabitProgressAggregator] = {}
        self._lock = asyncio.Lock()

    async def get(self, user_id: uuid.UUID) -> HabitProgressAggregator:
        async with self._lock:
            aggregator = self._aggregators.get(user_id)
            if aggregator is None:
                aggregator = HabitProgressAggregator(
                    self.repository,
                    user_id,
                    reconcile_on_write_failure=self.settings.reconcile_on_write_failure,
                )
                self._aggregators[user_id] = aggregator
        if aggregator.state in (AggregatorState.UNINITIALIZED, AggregatorState.ERROR):
            await aggregator.load()
        return aggregator

    async def aclose(self) -> None:
        for aggregator in list(self._aggregators.values()):
            await aggregator.aclose()
        self._aggregators.clear()


def habit_read(habit) -> HabitRead:
    return HabitRead(
        id=habit.id,
        name=habit.name,
        frequency=habit.frequency,
        goal=habit.goal,
        priority=habit.priority,
        created_at=habit.created_at,
    )


# ----- Dependencies -----
def get_current_user_id(x_user_id: Optional[str] = Header(default=None)) -> uuid.UUID:
    if not x_user_id:
        raise AuthRequired()
    try:
        return uuid.UUID(x_user_id)
    except ValueError:
        raise AuthRequired("Invalid user id")


async def get_aggregator(
    request: Request, user_id: uuid.UUID = Depends(get_current_user_id)
) -> HabitProgressAggregator:
    return await request.app.state.registry.get(user_id)


def create_app(settings: Optional[Settings] = None, repository: Optional[ProgressRepository] = None) -> FastAPI:
    settings = settings or Settings.from_env()
    setup_logging(settings.log_level)

    engine = None
    if repository is None:
        engine = make_engine(settings.database_url, echo=settings.sql_echo)
        repository = HabitRepository(RecordStore(engine))

    app = FastAPI(title="Habit Progress API")
    app.state.settings = settings
    app.state.registry = AggregatorRegistry(repository, settings)

    @app.on_event("startup")
    def on_startup():
        if engine is not None:
            create_db_and_tables(engine)
        logger.info("Habit progress API started")

    @app.on_event("shutdown")
    async def on_shutdown():
        await app.state.registry.aclose()
        if engine is not None:
            engine.dispose()

    # ----- Error mapping -----
    def error_response(status_code: int, exc: Exception, headers=None) -> JSONResponse:
        return JSONResponse(status_code=status_code, content={"detail": str(exc)}, headers=headers)

    @app.exception_handler(AuthRequired)
    async def auth_required_handler(request: Request, exc: AuthRequired):
        return error_response(status.HTTP_401_UNAUTHORIZED, exc)

    @app.exception_handler(HabitNotFound)
    async def habit_not_found_handler(request: Request, exc: HabitNotFound):
        return error_response(status.HTTP_404_NOT_FOUND, exc)

    @app.exception_handler(CountersNotLoaded)
    async def counters_not_loaded_handler(request: Request, exc: CountersNotLoaded):
        return error_response(status.HTTP_409_CONFLICT, exc)

    @app.exception_handler(FetchError)
    async def fetch_error_handler(request: Request, exc: FetchError):
        return error_response(status.HTTP_502_BAD_GATEWAY, exc)

    @app.exception_handler(WriteError)
    async def write_error_handler(request: Request, exc: WriteError):
        return error_response(status.HTTP_502_BAD_GATEWAY, exc)

    # ----- Health -----
    @app.get("/health")
    def health():
        return {"status": "ok"}

    # ----- Habit endpoints -----
    @app.get("/habits", response_model=List[HabitRead])
    async def list_habits(aggregator: HabitProgressAggregator = Depends(get_aggregator)):
        await aggregator.load()
        return [habit_read(h) for h in aggregator.habits.values()]

    @app.post("/habits", response_model=HabitRead, status_code=201)
    async def create_habit(habit_in: HabitCreate, aggregator: HabitProgressAggregator = Depends(get_aggregator)):
        habit = await aggregator.create_habit(habit_in)
        return habit_read(habit)

    @app.delete("/habits/{habit_id}", status_code=204)
    async def archive_habit(habit_id: uuid.UUID, aggregator: HabitProgressAggregator = Depends(get_aggregator)):
        await aggregator.archive_habit(habit_id)

    @app.post("/habits/{habit_id}/adjust", response_model=AdjustResult)
    async def adjust_habit(
        habit_id: uuid.UUID,
        adjust_in: AdjustRequest,
        aggregator: HabitProgressAggregator = Depends(get_aggregator),
    ):
        day = adjust_in.date or aggregator.loaded_date
        if day is None or day != aggregator.loaded_date:
            await aggregator.select_date(day or aggregator.selected_date)
            day = aggregator.loaded_date
        # no await from here on: the counters stay those of `day`
        if habit_id not in aggregator.habits:
            raise HTTPException(404, "Habit not found")
        before = aggregator.progress.get(habit_id, 0)
        daily = aggregator.adjust(habit_id, adjust_in.delta, on_date=day)
        return AdjustResult(habit_id=habit_id, date=day, daily=daily, applied=daily != before)

    # ----- Progress endpoints -----
    @app.get("/progress", response_model=ProgressView)
    async def progress(date: Optional[dt.date] = None, aggregator: HabitProgressAggregator = Depends(get_aggregator)):
        await aggregator.select_date(date or dt.date.today())
        return aggregator.view()

    @app.get("/progress/week", response_model=Dict[str, DayWeekCounts])
    async def progress_week(date: Optional[dt.date] = None, aggregator: HabitProgressAggregator = Depends(get_aggregator)):
        counts = await aggregator.load_week(date or dt.date.today())
        return {str(habit_id): c for habit_id, c in counts.items()}

    @app.get("/progress/all-time", response_model=Dict[str, int])
    async def progress_all_time(aggregator: HabitProgressAggregator = Depends(get_aggregator)):
        totals = await aggregator.load_all_time()
        return {str(habit_id): total for habit_id, total in totals.items()}

    @app.post("/progress/flush", response_model=ProgressView)
    async def flush(aggregator: HabitProgressAggregator = Depends(get_aggregator)):
        await aggregator.flush()
        return aggregator.view()

    return app
