"""Exceptions related to rudder."""

from dataclasses import dataclass

__all__ = [
    "RudderException",
    "InputException",
    "UnsatisfiableConstraint",
    "LockMismatch",
    "InvalidValueSyntax",
    "RenderFailure",
    "RenderAggregateError",
    "ChartIncompatible",
    "HookTimeout",
    "HookFailed",
    "ConcurrentModification",
    "ApplyFailed",
    "NotFound",
    "InvalidTransition",
    "ReleaseFailedError",
    "ReleaseInterrupted",
]


class RudderException(Exception):
    """Generic base exception used for this library."""


class InputException(RudderException):
    """Raised when the input charts or values are not formatted as expected."""


class UnsatisfiableConstraint(RudderException):
    """Raised when no available version satisfies a dependency constraint."""

    def __init__(
        self, dependency: str, constraint: str, available: list[str] | None = None
    ) -> None:
        detail = f"; available: {', '.join(available)}" if available else ""
        super().__init__(
            f"No version of dependency '{dependency}' satisfies '{constraint}'{detail}"
        )
        self.dependency = dependency
        self.constraint = constraint
        self.available = available or []


class LockMismatch(RudderException):
    """Raised when an existing lock no longer matches the declared dependencies.

    The caller is expected to re-resolve the chart dependencies.
    """


class InvalidValueSyntax(InputException):
    """Raised for malformed value files or inline value overrides."""


@dataclass(frozen=True)
class RenderFailure:
    """A single template that failed to render."""

    path: str
    """Path of the template within the chart tree."""

    message: str
    """Description of the failure."""

    def __str__(self) -> str:
        return f"{self.path}: {self.message}"


class RenderAggregateError(RudderException):
    """Raised when one or more templates failed to render.

    All per-file failures are collected rather than stopping at the first.
    """

    def __init__(self, failures: list[RenderFailure]) -> None:
        lines = "\n".join(f"  {failure}" for failure in failures)
        super().__init__(f"{len(failures)} template(s) failed to render:\n{lines}")
        self.failures = failures


class ChartIncompatible(RudderException):
    """Raised when a chart declares it cannot run on the target cluster."""


class HookTimeout(RudderException):
    """Raised when a hook does not reach an outcome within its timeout."""

    def __init__(self, hook_name: str, event: str, timeout: float) -> None:
        super().__init__(
            f"Hook {hook_name} for event {event} timed out after {timeout}s"
        )
        self.hook_name = hook_name
        self.event = event
        self.timeout = timeout


class HookFailed(RudderException):
    """Raised when a hook's cluster operation reports a failed outcome."""

    def __init__(self, hook_name: str, event: str, message: str | None) -> None:
        super().__init__(
            f"Hook {hook_name} for event {event} failed: {message or 'Unknown error'}"
        )
        self.hook_name = hook_name
        self.event = event
        self.message = message


class ConcurrentModification(RudderException):
    """Raised when another mutation of the same release won the race.

    Callers retry at a higher level by re-reading the release history.
    """


class ApplyFailed(RudderException):
    """Raised when the cluster client fails to apply or delete objects."""


class NotFound(RudderException):
    """Raised when a release or revision does not exist."""


class InvalidTransition(RudderException):
    """Raised when an operation is not allowed from the current release state."""


class ReleaseFailedError(RudderException):
    """Raised when a lifecycle operation failed after creating a revision.

    The underlying error is chained as `__cause__`.
    """

    def __init__(
        self, release_name: str, revision: int, status: str, message: str
    ) -> None:
        super().__init__(
            f"Release {release_name} revision {revision} is {status}: {message}"
        )
        self.release_name = release_name
        self.revision = revision
        self.status = status


class ReleaseInterrupted(RudderException):
    """Raised when the caller's deadline elapsed during a pending transition.

    The revision is left in its pending status for manual remediation.
    """

    def __init__(self, release_name: str, revision: int, status: str) -> None:
        super().__init__(
            f"Release {release_name} revision {revision} interrupted while {status}"
        )
        self.release_name = release_name
        self.revision = revision
        self.status = status
