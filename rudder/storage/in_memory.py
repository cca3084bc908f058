"""Module for in memory release storage."""

from collections import defaultdict
from typing import DefaultDict
import logging

from rudder.exceptions import ConcurrentModification, NotFound

from .revision import Revision
from .storage import Storage

_LOGGER = logging.getLogger(__name__)


class InMemoryStorage(Storage):
    """In-memory implementation of the Storage interface.

    Revisions live in a dict per release name; nothing is shared between
    processes, so the claim of the base class is sufficient.
    """

    def __init__(self) -> None:
        """Initialize the InMemoryStorage."""
        super().__init__()
        self._revisions: DefaultDict[str, dict[int, Revision]] = defaultdict(dict)

    async def get(self, name: str, revision: int) -> Revision:
        try:
            return self._revisions[name][revision]
        except KeyError:
            raise NotFound(f"Release {name} revision {revision} not found")

    async def list_revisions(self, name: str) -> list[Revision]:
        revisions = self._revisions.get(name, {})
        return [revisions[number] for number in sorted(revisions)]

    async def list_names(self) -> list[str]:
        return sorted(name for name, revisions in self._revisions.items() if revisions)

    async def _create(self, revision: Revision) -> None:
        revisions = self._revisions[revision.name]
        if revision.revision in revisions:
            raise ConcurrentModification(
                f"Release {revision.name} revision {revision.revision} already exists"
            )
        _LOGGER.debug("Creating release %s revision %d", revision.name, revision.revision)
        revisions[revision.revision] = revision

    async def _replace(self, revision: Revision) -> None:
        self._revisions[revision.name][revision.revision] = revision

    async def delete(self, name: str, revision: int) -> None:
        try:
            del self._revisions[name][revision]
        except KeyError:
            raise NotFound(f"Release {name} revision {revision} not found")
        _LOGGER.debug("Deleted release %s revision %d", name, revision)
