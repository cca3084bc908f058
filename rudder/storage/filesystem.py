"""Module for storing release revisions as YAML files.

Each revision is one file, `<root>/<release name>/<revision>.yaml`. A new
revision is written with an exclusive create, so two writers racing for the
same revision number cannot both succeed. Status updates write a temporary
file and atomically replace the revision file.

Writes to a release hold its claim, a `.lock` file created exclusively in
the release directory, so processes sharing the directory are serialized. A
lock file left behind by a crashed process must be removed by an operator.
"""

import asyncio
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
import logging
import os
from pathlib import Path
import re

import aiofiles
import aiofiles.os
from aiofiles.ospath import exists, isdir

from rudder.exceptions import ConcurrentModification, InputException, NotFound

from .revision import Revision
from .storage import Storage

_LOGGER = logging.getLogger(__name__)

_SUFFIX = ".yaml"
_LOCK_FILE = ".lock"
_LOCK_POLL_INTERVAL = 0.01
_REVISION_FILE = re.compile(r"^(\d+)\.yaml$")
_VALID_NAME = re.compile(r"^[a-z0-9]([-a-z0-9.]*[a-z0-9])?$")


class FileSystemStorage(Storage):
    """Storage keeping one YAML document per revision under a directory."""

    def __init__(self, root: Path, lock_timeout: float = 10.0) -> None:
        """Initialize FileSystemStorage.

        Args:
            root: Directory holding a subdirectory per release
            lock_timeout: Seconds to wait for another process to release
                a claim before raising ConcurrentModification
        """
        super().__init__()
        self._root = root
        self._lock_timeout = lock_timeout

    @asynccontextmanager
    async def _claim(self, name: str) -> AsyncGenerator[None, None]:
        lock_path = self._release_dir(name) / _LOCK_FILE
        async with super()._claim(name):
            await aiofiles.os.makedirs(lock_path.parent, exist_ok=True)
            await self._acquire(lock_path)
            try:
                yield
            finally:
                await aiofiles.os.remove(lock_path)

    async def _acquire(self, lock_path: Path) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._lock_timeout
        while True:
            try:
                async with aiofiles.open(str(lock_path), mode="x") as lock_file:
                    await lock_file.write(f"{os.getpid()}\n")
                return
            except FileExistsError as err:
                if loop.time() >= deadline:
                    raise ConcurrentModification(
                        f"Release lock {lock_path} is held by another process"
                    ) from err
            await asyncio.sleep(_LOCK_POLL_INTERVAL)

    def _release_dir(self, name: str) -> Path:
        if not _VALID_NAME.match(name):
            raise InputException(f"Invalid release name '{name}'")
        return self._root / name

    def _path(self, name: str, revision: int) -> Path:
        return self._release_dir(name) / f"{revision:08d}{_SUFFIX}"

    async def _read(self, path: Path) -> Revision:
        async with aiofiles.open(str(path)) as revision_file:
            content = await revision_file.read()
        return Revision.parse_yaml(content)

    async def get(self, name: str, revision: int) -> Revision:
        path = self._path(name, revision)
        try:
            return await self._read(path)
        except FileNotFoundError:
            raise NotFound(f"Release {name} revision {revision} not found")

    async def list_revisions(self, name: str) -> list[Revision]:
        release_dir = self._release_dir(name)
        if not await isdir(release_dir):
            return []
        numbers = sorted(
            int(match.group(1))
            for entry in await aiofiles.os.listdir(release_dir)
            if (match := _REVISION_FILE.match(entry))
        )
        return [await self._read(self._path(name, number)) for number in numbers]

    async def list_names(self) -> list[str]:
        if not await isdir(self._root):
            return []
        names = []
        for entry in await aiofiles.os.listdir(self._root):
            if _VALID_NAME.match(entry) and await isdir(self._root / entry):
                if await self.list_revisions(entry):
                    names.append(entry)
        return sorted(names)

    async def _create(self, revision: Revision) -> None:
        release_dir = self._release_dir(revision.name)
        await aiofiles.os.makedirs(release_dir, exist_ok=True)
        path = self._path(revision.name, revision.revision)
        try:
            async with aiofiles.open(str(path), mode="x") as revision_file:
                await revision_file.write(revision.yaml())
        except FileExistsError as err:
            raise ConcurrentModification(
                f"Release {revision.name} revision {revision.revision} already exists"
            ) from err
        _LOGGER.debug("Created %s", path)

    async def _replace(self, revision: Revision) -> None:
        path = self._path(revision.name, revision.revision)
        tmp_path = path.with_suffix(".tmp")
        async with aiofiles.open(str(tmp_path), mode="w") as revision_file:
            await revision_file.write(revision.yaml())
        await aiofiles.os.replace(tmp_path, path)

    async def delete(self, name: str, revision: int) -> None:
        path = self._path(name, revision)
        if not await exists(path):
            raise NotFound(f"Release {name} revision {revision} not found")
        await aiofiles.os.remove(path)
        _LOGGER.debug("Deleted %s", path)
