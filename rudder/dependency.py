"""Library for resolving chart dependencies into a lock.

Resolution picks, for every enabled dependency, the highest version offered by
the chart source that satisfies the declared constraint. Dependencies are
resolved concurrently up to `ResolverConfig.concurrency` at a time:

```python
resolver = DependencyResolver(source)
lock = await resolver.resolve(chart)
chart = await resolver.build(chart, lock)
```

`build` fetches the locked subcharts and recursively resolves their own
dependencies, returning a chart tree ready for rendering. Given unchanged
declarations and unchanged available versions, resolving again produces the
same lock.
"""

from abc import ABC, abstractmethod
import asyncio
from collections.abc import Awaitable, Iterable
import hashlib
import json
import logging
from typing import Any, TypeVar

from .chart import Chart, Dependency, Lock, LockEntry
from .config import GatingPolicy, ResolverConfig
from .context import trace_context
from .exceptions import LockMismatch, NotFound, UnsatisfiableConstraint
from .gating import dependency_enabled
from .values import GLOBAL_KEY, TAGS_KEY, merge_values
from .version import Constraint, Version, highest_satisfying

__all__ = [
    "ChartSource",
    "InMemoryChartSource",
    "DependencyResolver",
    "locate_chart",
    "declaration_digest",
    "verify_lock",
]

_LOGGER = logging.getLogger(__name__)

_T = TypeVar("_T")

# Constraint used when development versions are requested without a version
DEVEL_CONSTRAINT = ">0.0.0-0"


class ChartSource(ABC):
    """Abstract source of charts, such as a repository or registry."""

    @abstractmethod
    async def list_versions(self, repository: str, name: str) -> list[str]:
        """Return the versions of a chart available in the repository."""

    @abstractmethod
    async def fetch(self, repository: str, name: str, version: str) -> Chart:
        """Return the chart at the given version.

        Raises NotFound if the chart version does not exist.
        """


class InMemoryChartSource(ChartSource):
    """A chart source holding charts in memory, keyed by repository."""

    def __init__(self) -> None:
        """Initialize InMemoryChartSource."""
        self._charts: dict[tuple[str, str], dict[str, Chart]] = {}

    def add(self, chart: Chart, repository: str = "") -> None:
        """Make the chart available from the repository."""
        versions = self._charts.setdefault((repository, chart.name), {})
        versions[chart.version] = chart

    def add_charts(self, charts: Iterable[Chart], repository: str = "") -> None:
        for chart in charts:
            self.add(chart, repository)

    async def list_versions(self, repository: str, name: str) -> list[str]:
        return list(self._charts.get((repository, name), {}))

    async def fetch(self, repository: str, name: str, version: str) -> Chart:
        try:
            return self._charts[(repository, name)][version]
        except KeyError:
            raise NotFound(f"Chart {name}:{version} not found in '{repository}'")


def _sha256(payload: Any) -> str:
    content = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return "sha256:" + hashlib.sha256(content.encode("utf-8")).hexdigest()


def declaration_digest(dependencies: list[Dependency]) -> str:
    """Digest of the dependency declarations a lock is resolved from."""
    return _sha256([dep.to_dict() for dep in dependencies])


def source_digest(repository: str, name: str, version: str) -> str:
    """Digest identifying a chart version within its source."""
    return _sha256({"repository": repository, "name": name, "version": version})


async def _gather_or_cancel(aws: Iterable[Awaitable[_T]]) -> list[_T]:
    """Run awaitables concurrently, cancelling the rest when one fails."""
    tasks = [asyncio.ensure_future(aw) for aw in aws]
    try:
        return list(await asyncio.gather(*tasks))
    except BaseException:
        for task in tasks:
            task.cancel()
        raise


class DependencyResolver:
    """Resolves declared chart dependencies into locks and chart trees."""

    def __init__(
        self,
        source: ChartSource,
        config: ResolverConfig | None = None,
        policy: GatingPolicy = GatingPolicy.CONDITION_OVER_TAGS,
    ) -> None:
        """Initialize DependencyResolver."""
        self._source = source
        self._config = config or ResolverConfig()
        self._policy = policy
        self._sem = asyncio.Semaphore(self._config.concurrency)

    def enabled_dependencies(
        self,
        chart: Chart,
        values: dict[str, Any] | None = None,
        tags: dict[str, Any] | None = None,
    ) -> list[Dependency]:
        """Return the dependencies enabled by the chart defaults and values.

        The `tags` table of the root chart applies to the whole tree; when not
        given, the chart's own `tags` are used.
        """
        parent_values = merge_values(chart.values, values)
        if tags is None:
            tags = parent_values.get(TAGS_KEY) or {}
        enabled = []
        for dep in chart.metadata.dependencies:
            if dependency_enabled(dep, parent_values, tags, self._policy):
                enabled.append(dep)
            else:
                _LOGGER.info(
                    "Dependency %s of %s is disabled, excluding it from the lock",
                    dep.scope_name,
                    chart.reference,
                )
        return enabled

    async def _available(self, chart: Chart, dep: Dependency) -> list[str]:
        versions: list[str] = []
        if dep.repository:
            async with self._sem:
                versions = await self._source.list_versions(dep.repository, dep.name)
        elif (embedded := _embedded(chart, dep)) is not None:
            versions = [embedded.version]
        _LOGGER.debug(
            "Dependency %s has %d available versions", dep.scope_name, len(versions)
        )
        return versions

    async def _resolve_one(self, chart: Chart, dep: Dependency) -> LockEntry:
        versions = await self._available(chart, dep)
        version = highest_satisfying(
            versions, dep.constraint, self._config.include_prereleases
        )
        if version is None:
            raise UnsatisfiableConstraint(
                dep.scope_name, dep.version or "*", sorted(versions)
            )
        _LOGGER.debug("Resolved %s %s to %s", dep.scope_name, dep.version, version)
        return LockEntry(
            name=dep.name,
            version=version,
            repository=dep.repository,
            digest=source_digest(dep.repository, dep.name, version),
            alias=dep.alias,
        )

    async def resolve(
        self,
        chart: Chart,
        lock: Lock | None = None,
        values: dict[str, Any] | None = None,
        tags: dict[str, Any] | None = None,
    ) -> Lock:
        """Resolve the enabled dependencies of the chart into a lock.

        An existing lock is verified and reused. Raises LockMismatch when it no
        longer matches the declarations, and UnsatisfiableConstraint when no
        available version satisfies a dependency.
        """
        with trace_context(f"resolve {chart.reference}"):
            enabled = self.enabled_dependencies(chart, values, tags)
            digest = declaration_digest(chart.metadata.dependencies)
            if lock is not None:
                return await self._verify(chart, lock, digest, enabled)
            entries = await _gather_or_cancel(
                self._resolve_one(chart, dep) for dep in enabled
            )
            _LOGGER.info(
                "Resolved %d dependencies of %s", len(entries), chart.reference
            )
            return Lock(digest=digest, dependencies=entries)

    async def _verify(
        self, chart: Chart, lock: Lock, digest: str, enabled: list[Dependency]
    ) -> Lock:
        if lock.digest != digest:
            raise LockMismatch(
                f"Lock for {chart.reference} does not match its dependency declarations"
            )
        entries: list[LockEntry] = []
        for dep in enabled:
            if (entry := lock.entry(dep.scope_name)) is None:
                raise LockMismatch(
                    f"Lock for {chart.reference} has no entry for {dep.scope_name}"
                )
            if not dep.constraint.check(
                Version.parse(entry.version), self._config.include_prereleases
            ):
                raise LockMismatch(
                    f"Locked {dep.scope_name} {entry.version} does not satisfy "
                    f"'{dep.version}'"
                )
            entries.append(entry)

        available = await _gather_or_cancel(
            self._available(chart, dep) for dep in enabled
        )
        for entry, versions in zip(entries, available):
            if entry.version not in versions:
                raise LockMismatch(
                    f"Locked {entry.scope_name} {entry.version} is no longer available"
                )
        return Lock(digest=digest, dependencies=entries)

    async def _fetch(self, chart: Chart, entry: LockEntry) -> Chart:
        dep = next(
            (d for d in chart.metadata.dependencies if d.scope_name == entry.scope_name),
            None,
        )
        if dep is None:
            raise LockMismatch(
                f"Lock entry {entry.scope_name} is not declared by {chart.reference}"
            )
        embedded = _embedded(chart, dep)
        if embedded is not None and embedded.version == entry.version:
            return embedded
        if not entry.repository:
            raise LockMismatch(
                f"Locked {entry.scope_name} {entry.version} is not embedded in "
                f"{chart.reference}"
            )
        async with self._sem:
            fetched = await self._source.fetch(entry.repository, entry.name, entry.version)
        if fetched.name != entry.name or fetched.version != entry.version:
            raise LockMismatch(
                f"Source returned {fetched.reference} for {entry.name}:{entry.version}"
            )
        return fetched

    async def _build_child(
        self,
        chart: Chart,
        entry: LockEntry,
        values: dict[str, Any],
        tags: dict[str, Any],
    ) -> Chart:
        subchart = await self._fetch(chart, entry)
        if not subchart.metadata.dependencies:
            return subchart
        child_values = values.get(entry.scope_name)
        if not isinstance(child_values, dict):
            child_values = {}
        return await self._build(
            subchart, None, child_values, tags, values.get(GLOBAL_KEY) or {}
        )

    async def _build(
        self,
        chart: Chart,
        lock: Lock | None,
        values: dict[str, Any],
        tags: dict[str, Any] | None,
        globals_: dict[str, Any],
    ) -> Chart:
        parent_values = merge_values(chart.values, values)
        # Globals of the parent win over the subchart's own defaults
        merged_globals = merge_values(parent_values.get(GLOBAL_KEY) or {}, globals_)
        if merged_globals:
            parent_values[GLOBAL_KEY] = merged_globals
        if tags is None:
            tags = parent_values.get(TAGS_KEY) or {}
        if lock is None:
            lock = await self.resolve(chart, chart.lock, parent_values, tags)
        with trace_context(f"build {chart.reference}"):
            children = await _gather_or_cancel(
                self._build_child(chart, entry, parent_values, tags)
                for entry in lock.dependencies
            )
        subcharts = {
            entry.scope_name: child for entry, child in zip(lock.dependencies, children)
        }
        # Embedded subcharts without a declaration are kept as is
        declared = {dep.name for dep in chart.metadata.dependencies}
        for scope_name, subchart in chart.subcharts.items():
            if subchart.name not in declared and scope_name not in subcharts:
                subcharts[scope_name] = subchart
        return chart.with_subcharts(subcharts).with_lock(lock)

    async def build(
        self,
        chart: Chart,
        lock: Lock | None = None,
        values: dict[str, Any] | None = None,
    ) -> Chart:
        """Return the chart with exactly the locked subcharts attached.

        Without a lock the chart's own lock is reused when present, otherwise
        dependencies are resolved. Subcharts' dependencies are resolved in turn,
        gated by the root chart's `tags` and the `global` values inherited
        from their parents, the same way values are composed for rendering.
        """
        return await self._build(chart, lock, values or {}, None, {})


def verify_lock(chart: Chart, lock: Lock) -> None:
    """Raise LockMismatch unless the chart carries exactly the locked subcharts."""
    if lock.digest != declaration_digest(chart.metadata.dependencies):
        raise LockMismatch(
            f"Lock for {chart.reference} does not match its dependency declarations"
        )
    for entry in lock.dependencies:
        subchart = chart.subchart(entry.scope_name)
        if subchart is None or subchart.version != entry.version:
            raise LockMismatch(
                f"Chart {chart.reference} does not contain locked "
                f"{entry.scope_name} {entry.version}"
            )


def _embedded(chart: Chart, dep: Dependency) -> Chart | None:
    """Return the subchart shipped inside the chart for a dependency."""
    for candidate in (chart.subchart(dep.scope_name), chart.subchart(dep.name)):
        if candidate is not None and candidate.name == dep.name:
            return candidate
    return None


async def locate_chart(
    source: ChartSource,
    repository: str,
    name: str,
    version: str | None = None,
    devel: bool = False,
) -> Chart:
    """Fetch the highest version of a chart satisfying a version constraint.

    With `devel` and no explicit version, pre-release versions are included.
    """
    if not version and devel:
        _LOGGER.debug("Setting version to %s", DEVEL_CONSTRAINT)
        version = DEVEL_CONSTRAINT
    versions = await source.list_versions(repository, name)
    selected = highest_satisfying(versions, Constraint.parse(version))
    if selected is None:
        raise UnsatisfiableConstraint(name, version or "*", sorted(versions))
    return await source.fetch(repository, name, selected)
