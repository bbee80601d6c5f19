"""
Run identifiers for log correlation.

Every sync run gets a run id that is attached to each log record, so the
records of one batch run can be pulled out of a shared log stream.
"""

import contextvars
import logging
import uuid
from typing import Optional

logger = logging.getLogger(__name__)

_run_id: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar("run_id", default=None)


def generate_run_id() -> str:
    return str(uuid.uuid4())


def get_run_id() -> Optional[str]:
    return _run_id.get()


def set_run_id(run_id: str) -> None:
    """
    Set the run id of the current context.

    Raises:
        ValueError: If run_id is empty or not a string
    """
    if not run_id or not isinstance(run_id, str):
        raise ValueError("Run ID must be a non-empty string")
    _run_id.set(run_id)


def clear_run_id() -> None:
    _run_id.set(None)


class RunContext:
    """
    Context manager scoping a run id.

    The previous run id (if any) is restored on exit.
    """

    def __init__(self, run_id: Optional[str] = None):
        self.run_id = run_id
        self.previous_id = None

    def __enter__(self) -> str:
        self.previous_id = get_run_id()
        if not self.run_id:
            self.run_id = generate_run_id()
        set_run_id(self.run_id)
        logger.debug(f"Entered run context: {self.run_id}")
        return self.run_id

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.previous_id:
            set_run_id(self.previous_id)
        else:
            clear_run_id()


def run_id_filter(record: logging.LogRecord) -> bool:
    """Logging filter adding ``run_id`` to every record."""
    record.run_id = get_run_id() or "N/A"
    return True


def setup_run_logging(handler: logging.Handler) -> None:
    """Attach the run id filter to a handler."""
    handler.addFilter(run_id_filter)
