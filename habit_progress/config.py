import os
from pydantic import BaseModel


def _env_flag(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class Settings(BaseModel):
    database_url: str = "sqlite:///./habit_tracker.db"
    sql_echo: bool = False
    log_level: str = "INFO"
    # re-fetch counters after a failed log entry write instead of keeping the local value
    reconcile_on_write_failure: bool = True

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=os.environ.get("DATABASE_URL", "sqlite:///./habit_tracker.db"),
            sql_echo=_env_flag("SQL_ECHO", False),
            log_level=os.environ.get("LOG_LEVEL", "INFO").upper(),
            reconcile_on_write_failure=_env_flag("RECONCILE_ON_WRITE_FAILURE", True),
        )
