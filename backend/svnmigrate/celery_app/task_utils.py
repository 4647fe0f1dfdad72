"""
Shared utilities for Celery tasks.

Provides:
- Retry classification and backoff countdown
- Task execution context for timing and logging
- Result builder for standardized task returns
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from svnmigrate.exceptions import is_retryable

logger = logging.getLogger(__name__)


def retry_countdown(backoff_seconds: float, retries: int) -> int:
    """Exponential backoff: backoff * 2**retries (retries counts previous retries)."""
    return int(backoff_seconds * (2 ** retries))


def calculate_duration_ms(start_time: datetime) -> int:
    return int((datetime.now(timezone.utc) - start_time).total_seconds() * 1000)


@dataclass
class TaskContext:
    """
    Execution context for a Celery task.

    Usage:
        ctx = TaskContext.from_celery_task(self, job_id=job_id)
        ctx.log_start("Running migration job")
        ...
        ctx.log_success()
        return build_task_result(ctx, success=True)
    """
    task_id: str
    task_name: str
    attempt: int
    max_attempts: int
    start_time: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_celery_task(cls, task, **extra) -> "TaskContext":
        return cls(
            task_id=task.request.id or "unknown",
            task_name=task.name or "unknown",
            attempt=task.request.retries + 1,
            max_attempts=task.max_retries + 1,
            extra=extra,
        )

    @property
    def duration_ms(self) -> int:
        return calculate_duration_ms(self.start_time)

    def log_extra(self, **kwargs) -> Dict[str, Any]:
        return {
            "task_id": self.task_id,
            "task_name": self.task_name,
            "attempt": self.attempt,
            "max_attempts": self.max_attempts,
            **self.extra,
            **kwargs,
        }

    def log_start(self, message: Optional[str] = None):
        msg = message or f"Starting {self.task_name}"
        logger.info(
            f"{msg}: attempt={self.attempt}/{self.max_attempts}",
            extra=self.log_extra(),
        )

    def log_success(self, message: Optional[str] = None, **kwargs):
        logger.info(
            message or f"Completed {self.task_name}",
            extra=self.log_extra(success=True, duration_ms=self.duration_ms, **kwargs),
        )

    def log_error(self, error: Exception, message: Optional[str] = None, **kwargs):
        """Warning for retryable errors, error otherwise."""
        retryable = is_retryable(error)
        log_func = logger.warning if retryable else logger.error
        log_func(
            message or f"Error in {self.task_name}: {error}",
            extra=self.log_extra(
                success=False,
                error=str(error),
                error_type=type(error).__name__,
                retryable=retryable,
                duration_ms=self.duration_ms,
                **kwargs,
            ),
        )


def build_task_result(
    ctx: TaskContext,
    success: bool,
    error: Optional[str] = None,
    **kwargs,
) -> Dict[str, Any]:
    """Standardized task result dict with duration_ms."""
    result = {
        "success": success,
        "duration_ms": ctx.duration_ms,
        **kwargs,
    }
    if error:
        result["error"] = error
    return result
