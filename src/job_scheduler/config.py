import logging
import os
from typing import Optional

from pydantic import BaseModel, Field

from job_scheduler.retry import RetryPolicy

ENV_PREFIX = "JOB_SCHEDULER_"


class SchedulerSettings(BaseModel):
    """
    Runtime configuration for the scheduler.

    Every field can be overridden with an environment variable named
    ``JOB_SCHEDULER_<FIELD>`` (e.g. ``JOB_SCHEDULER_RETRY_BASE_DELAY_MS``).
    ``JOB_SCHEDULER_EXECUTION_TIMEOUT_S`` unset or empty means no timeout.
    """
    database_url: str = Field("sqlite+aiosqlite:///:memory:", description="SQLAlchemy async database URL")
    retry_base_delay_ms: int = 5000
    retry_max_delay_ms: int = 300_000
    dispatch_attempts: int = Field(3, description="Tries per arm/disarm call before DispatchError")
    dispatch_retry_delay_ms: int = 200
    execution_timeout_s: Optional[float] = None
    stale_running_after_s: int = Field(3600, description="Age after which a running job is treated as interrupted")
    history_limit: int = 50
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "SchedulerSettings":
        defaults = cls()
        timeout_raw = (os.environ.get(ENV_PREFIX + "EXECUTION_TIMEOUT_S") or "").strip()
        return cls(
            database_url=(os.environ.get(ENV_PREFIX + "DATABASE_URL") or defaults.database_url).strip(),
            retry_base_delay_ms=max(0, _env_int("RETRY_BASE_DELAY_MS", defaults.retry_base_delay_ms)),
            retry_max_delay_ms=max(0, _env_int("RETRY_MAX_DELAY_MS", defaults.retry_max_delay_ms)),
            dispatch_attempts=max(1, _env_int("DISPATCH_ATTEMPTS", defaults.dispatch_attempts)),
            dispatch_retry_delay_ms=max(0, _env_int("DISPATCH_RETRY_DELAY_MS", defaults.dispatch_retry_delay_ms)),
            execution_timeout_s=_parse_float(timeout_raw),
            stale_running_after_s=max(1, _env_int("STALE_RUNNING_AFTER_S", defaults.stale_running_after_s)),
            history_limit=max(1, _env_int("HISTORY_LIMIT", defaults.history_limit)),
            log_level=(os.environ.get(ENV_PREFIX + "LOG_LEVEL") or defaults.log_level).strip().upper(),
        )

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(base_delay_ms=self.retry_base_delay_ms, max_delay_ms=self.retry_max_delay_ms)


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(ENV_PREFIX + name)
    if raw is None:
        return int(default)
    try:
        return int(str(raw).strip())
    except ValueError:
        return int(default)


def _parse_float(raw: str) -> Optional[float]:
    if not raw:
        return None
    try:
        value = float(raw)
    except ValueError:
        return None
    return value if value > 0 else None
