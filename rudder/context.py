"""Utilities for tracing the phases of a release operation.

Phases nest, so a debug log of an upgrade reads like:

    [Trace] > upgrade web > render web:1.0.0 > scope web/db

A release operation runs within `release_context`, which also records the
release being changed. `ReleaseLogFilter` copies both onto log records so an
embedding program can include them in its log format:

```python
handler.addFilter(ReleaseLogFilter())
handler.setFormatter(logging.Formatter("%(release)s [%(phase)s] %(message)s"))
```
"""

from collections.abc import Generator
import contextvars
from contextlib import contextmanager
from dataclasses import dataclass
import logging
from time import perf_counter


_LOGGER = logging.getLogger(__name__)

__all__ = [
    "ReleaseLogFilter",
    "current_release",
]

_NONE = "-"


@dataclass(frozen=True)
class _Operation:
    name: str
    operation: str


_phases: contextvars.ContextVar[tuple[str, ...]] = contextvars.ContextVar(
    "phases", default=()
)
_operation: contextvars.ContextVar[_Operation | None] = contextvars.ContextVar(
    "operation", default=None
)


def current_release() -> str | None:
    """Return the name of the release changed by the running operation."""
    if (operation := _operation.get()) is None:
        return None
    return operation.name


def current_phase() -> str:
    """Return the nested phases of the running task, outermost first."""
    return " > ".join(_phases.get())


@contextmanager
def trace_context(name: str) -> Generator[None, None, None]:
    """Log entry and exit of a named phase nested under the enclosing phases."""
    stack = _phases.get() + (name,)
    token = _phases.set(stack)
    label = " > ".join(stack)
    t1 = perf_counter()
    _LOGGER.debug("[Trace] > %s", label)
    outcome = "<"
    try:
        yield
    except BaseException:
        outcome = "!"
        raise
    finally:
        _phases.reset(token)
        _LOGGER.debug("[Trace] %s %s (%0.2fs)", outcome, label, perf_counter() - t1)


@contextmanager
def release_context(operation: str, name: str) -> Generator[None, None, None]:
    """Trace a lifecycle operation on a release.

    A nested operation, such as the rollback of a failed atomic upgrade, is
    the running operation until it returns.
    """
    token = _operation.set(_Operation(name, operation))
    try:
        with trace_context(f"{operation} {name}"):
            yield
    finally:
        _operation.reset(token)


class ReleaseLogFilter(logging.Filter):
    """Adds `release`, `operation` and `phase` attributes to log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        operation = _operation.get()
        record.release = operation.name if operation else _NONE
        record.operation = operation.operation if operation else _NONE
        record.phase = current_phase() or _NONE
        return True
