"""Storage module for persisting release revisions.

Revisions are append only. The only write besides creating a revision is a
status update, which may be made conditional on the status currently
stored (compare-and-swap). Both writes run while holding the release's
claim, and a write that would put a revision into a pending status is
refused while another revision of the release is pending. This guarantees
that at most one transition of a release is in flight, even when the
backend is shared by several processes.
"""

from abc import ABC, abstractmethod
import asyncio
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
import logging

from rudder.exceptions import ConcurrentModification, InvalidTransition

from .revision import Revision
from .status import ReleaseStatus

__all__ = [
    "Storage",
]

_LOGGER = logging.getLogger(__name__)


class Storage(ABC):
    """Abstract base class for release revision storage."""

    def __init__(self) -> None:
        """Initialize Storage."""
        self._locks: dict[str, asyncio.Lock] = {}

    @asynccontextmanager
    async def _claim(self, name: str) -> AsyncGenerator[None, None]:
        """Hold exclusive write access to a release while checking and writing.

        The base implementation only excludes tasks of this process. Backends
        shared between processes extend it.
        """
        async with self._locks.setdefault(name, asyncio.Lock()):
            yield

    @abstractmethod
    async def get(self, name: str, revision: int) -> Revision:
        """Return a revision, raising NotFound if it does not exist."""

    @abstractmethod
    async def list_revisions(self, name: str) -> list[Revision]:
        """Return all revisions of a release ordered by revision number."""

    @abstractmethod
    async def list_names(self) -> list[str]:
        """Return the names of all stored releases."""

    @abstractmethod
    async def _create(self, revision: Revision) -> None:
        """Store a new revision, raising ConcurrentModification if it exists."""

    @abstractmethod
    async def _replace(self, revision: Revision) -> None:
        """Overwrite a stored revision."""

    @abstractmethod
    async def delete(self, name: str, revision: int) -> None:
        """Remove a revision, raising NotFound if it does not exist."""

    async def _check_no_other_pending(self, name: str, revision: int) -> None:
        for other in await self.list_revisions(name):
            if other.revision != revision and other.status.is_pending:
                raise ConcurrentModification(
                    f"Release {name} revision {other.revision} is {other.status}, "
                    "another operation is in progress"
                )

    async def create_if_absent(
        self, revision: Revision, basis: Revision | None = None
    ) -> None:
        """Store a new revision.

        Raises ConcurrentModification if the revision number is already taken,
        if the new revision is pending while another revision is pending, or
        if the `basis` revision the caller read no longer has the status it
        had when it was read.
        """
        name = revision.name
        async with self._claim(name):
            if revision.status.is_pending:
                await self._check_no_other_pending(name, revision.revision)
            if basis is not None:
                stored = await self.get(name, basis.revision)
                if stored.status != basis.status:
                    raise ConcurrentModification(
                        f"Release {name} revision {basis.revision} is now "
                        f"{stored.status}, expected {basis.status}"
                    )
            await self._create(revision)

    async def last(self, name: str) -> Revision | None:
        """Return the highest numbered revision of a release."""
        if revisions := await self.list_revisions(name):
            return revisions[-1]
        return None

    async def pending(self, name: str) -> list[Revision]:
        """Return the revisions of a release with a transition in flight."""
        return [rev for rev in await self.list_revisions(name) if rev.status.is_pending]

    async def deployed(self, name: str) -> Revision | None:
        """Return the highest numbered deployed revision of a release."""
        for revision in reversed(await self.list_revisions(name)):
            if revision.status == ReleaseStatus.DEPLOYED:
                return revision
        return None

    async def update_status(
        self,
        name: str,
        revision: int,
        status: ReleaseStatus,
        description: str | None = None,
        expected: ReleaseStatus | None = None,
        expected_latest: int | None = None,
    ) -> Revision:
        """Move a revision to a new status and return the updated record.

        When `expected` is given the update only happens if the stored status
        still equals it, and when `expected_latest` is given only if no
        revision newer than that number exists. Otherwise, or when moving to a
        pending status while another revision is pending,
        ConcurrentModification is raised. Raises InvalidTransition if the
        status change is not allowed.
        """
        async with self._claim(name):
            current = await self.get(name, revision)
            if expected is not None and current.status != expected:
                raise ConcurrentModification(
                    f"Release {name} revision {revision} is {current.status}, "
                    f"expected {expected}"
                )
            if expected_latest is not None:
                latest = await self.last(name)
                if latest is not None and latest.revision > expected_latest:
                    raise ConcurrentModification(
                        f"Release {name} has a newer revision {latest.revision} "
                        f"than {expected_latest}"
                    )
            if current.status != status and not current.status.can_transition(status):
                raise InvalidTransition(
                    f"Release {name} revision {revision} cannot move from "
                    f"{current.status} to {status}"
                )
            if status.is_pending and status != current.status:
                await self._check_no_other_pending(name, revision)
            updated = current.with_status(status, description)
            await self._replace(updated)
        _LOGGER.debug(
            "Release %s revision %d: %s -> %s", name, revision, current.status, status
        )
        return updated
