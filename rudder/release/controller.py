"""Release controller implementing the release lifecycle.

Every mutating operation follows the same shape:

1. Read the release history and refuse to start while another transition of
   the release is in flight.
2. Render the chart and write a new revision in a pending status with a
   conditional create, which also fails when another revision became
   pending or the revision the operation started from changed status in the
   meantime. Uninstall instead moves the current revision to `uninstalling`,
   conditional on its status and on no newer revision existing. Losing either
   race raises `ConcurrentModification` and nothing else happens.
3. Run the pre hooks, apply the change to the cluster and run the post hooks.
4. Move the revision to `deployed`, or to `failed` and raise
   `ReleaseFailedError` naming the revision. The previously deployed revision
   is only superseded once the new one is deployed.

Operations accept a deadline. When it elapses the operation raises
`ReleaseInterrupted` and the revision stays pending for an operator to
inspect; cancellation leaves it pending as well.
"""

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from datetime import datetime, timezone
import logging
from typing import Any

from rudder.chart import Chart
from rudder.cluster import ClusterClient, OperationResult
from rudder.config import ReleaseConfig, RenderConfig, ResolverConfig
from rudder.context import release_context, trace_context
from rudder.dependency import ChartSource, DependencyResolver
from rudder.exceptions import (
    ApplyFailed,
    ConcurrentModification,
    InvalidTransition,
    NotFound,
    ReleaseFailedError,
    ReleaseInterrupted,
    RudderException,
)
from rudder.hooks import HookEvent, HookScheduler
from rudder.manifest import Manifest, ObjectRef, sort_for_uninstall
from rudder.render import ReleaseInfo, RenderedOutput, RenderEngine
from rudder.storage import ReleaseStatus, Revision, Storage
from rudder.values import merge_values

from .options import (
    InstallOptions,
    RollbackOptions,
    TestOptions,
    UninstallOptions,
    UpgradeOptions,
)

__all__ = [
    "ReleaseController",
]

_LOGGER = logging.getLogger(__name__)

_OPERATIONS = {
    ReleaseStatus.PENDING_INSTALL: "Install",
    ReleaseStatus.PENDING_UPGRADE: "Upgrade",
    ReleaseStatus.PENDING_ROLLBACK: "Rollback",
    ReleaseStatus.UNINSTALLING: "Uninstallation",
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _check_not_pending(name: str, history: Sequence[Revision]) -> None:
    for revision in history:
        if revision.status.is_pending:
            raise ConcurrentModification(
                f"Release {name} revision {revision.revision} is {revision.status}, "
                "another operation is in progress"
            )


def _orphans(previous: Sequence[Manifest], current: Sequence[Manifest]) -> list[Manifest]:
    """Objects of the previous revision that the current one no longer has."""
    keep = {manifest.ref for manifest in current}
    orphans = []
    for manifest in previous:
        if manifest.ref in keep:
            continue
        if manifest.keep_on_delete:
            _LOGGER.warning("Keeping %s due to its resource policy", manifest.ref)
            continue
        orphans.append(manifest)
    return sort_for_uninstall(orphans)


class ReleaseController:
    """Controller for the lifecycle of releases.

    Transitions of different releases may run concurrently. Transitions of
    the same release are serialized by the storage backend's conditional
    writes rather than by any lock held in this process.
    """

    def __init__(
        self,
        storage: Storage,
        cluster: ClusterClient,
        source: ChartSource | None = None,
        config: ReleaseConfig | None = None,
        render_config: RenderConfig | None = None,
        resolver_config: ResolverConfig | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize ReleaseController.

        Args:
            storage: Backend holding the release history
            cluster: Client applying objects to the cluster
            source: Chart source used to fetch dependencies, when charts are
                not passed in with their subcharts already attached
            config: Release configuration
            render_config: Render engine configuration
            resolver_config: Dependency resolver configuration
            clock: Returns the current time for revision timestamps
        """
        self._storage = storage
        self._cluster = cluster
        self._config = config or ReleaseConfig()
        self._engine = RenderEngine(render_config, self._config.gating_policy)
        self._resolver = (
            DependencyResolver(source, resolver_config, self._config.gating_policy)
            if source is not None
            else None
        )
        self._hooks = HookScheduler(cluster, self._config.default_hook_timeout)
        self._clock = clock or _utcnow

    async def _prepare(self, chart: Chart, values: dict[str, Any]) -> Chart:
        """Attach the locked subcharts when a chart source is available."""
        if self._resolver is None or not chart.metadata.dependencies:
            return chart
        return await self._resolver.build(chart, values=values)

    async def _render(
        self, chart: Chart, values: dict[str, Any], release: ReleaseInfo
    ) -> RenderedOutput:
        capabilities = await self._cluster.capabilities()
        return self._engine.render(chart, None, values, release, capabilities)

    def _new_revision(
        self,
        release: ReleaseInfo,
        chart: Chart,
        config: dict[str, Any],
        rendered: RenderedOutput,
        status: ReleaseStatus,
        description: str,
        first_deployed: datetime | None,
    ) -> Revision:
        now = self._clock()
        return Revision(
            name=release.name,
            namespace=release.namespace,
            revision=release.revision,
            chart=chart,
            status=status,
            config=config,
            values=rendered.values,
            manifest=rendered.manifest,
            hooks=rendered.hooks,
            notes=rendered.notes,
            description=description,
            first_deployed=first_deployed or now,
            last_deployed=now,
        )

    async def _apply(self, manifests: Sequence[Manifest], namespace: str) -> None:
        if not manifests:
            return
        with trace_context("apply"):
            try:
                result = await self._cluster.apply(manifests, namespace)
            except RudderException:
                raise
            except Exception as err:
                raise ApplyFailed(f"Unable to apply manifests: {err}") from err
            if not result.success:
                raise ApplyFailed(f"Unable to apply manifests: {result.message}")

    async def _delete(self, manifests: Sequence[Manifest], namespace: str) -> None:
        if not manifests:
            return
        refs = [manifest.ref for manifest in manifests]
        with trace_context("delete"):
            try:
                result = await self._cluster.delete(refs, namespace)
            except RudderException:
                raise
            except Exception as err:
                raise ApplyFailed(f"Unable to delete objects: {err}") from err
            if not result.success:
                raise ApplyFailed(f"Unable to delete objects: {result.message}")

    async def _wait(self, refs: list[ObjectRef], namespace: str, wait: bool | None) -> None:
        if not (self._config.wait if wait is None else wait) or not refs:
            return
        timeout = self._config.wait_timeout
        with trace_context("wait"):
            try:
                async with asyncio.timeout(timeout):
                    result: OperationResult = await self._cluster.wait_until_ready(
                        refs, namespace, timeout
                    )
            except TimeoutError as err:
                raise ApplyFailed(
                    f"Objects not ready after {timeout}s"
                ) from err
            if not result.success:
                raise ApplyFailed(f"Objects not ready: {result.message}")

    async def _perform(
        self,
        revision: Revision,
        pre: HookEvent,
        post: HookEvent,
        action: Callable[[], Awaitable[None]],
        options: InstallOptions | UpgradeOptions | RollbackOptions | UninstallOptions,
        success: ReleaseStatus = ReleaseStatus.DEPLOYED,
    ) -> Revision:
        """Run hooks around the action and finalize the revision's status."""
        name, number, pending = revision.name, revision.revision, revision.status
        try:
            async with asyncio.timeout(options.timeout):
                if not options.skip_hooks:
                    await self._hooks.run(pre, revision.hooks, revision.namespace)
                await action()
                if not options.skip_hooks:
                    await self._hooks.run(post, revision.hooks, revision.namespace)
        except TimeoutError as err:
            _LOGGER.error(
                "Release %s revision %d interrupted, leaving it %s", name, number, pending
            )
            raise ReleaseInterrupted(name, number, pending) from err
        except Exception as err:
            _LOGGER.error("Release %s revision %d failed: %s", name, number, err)
            await self._storage.update_status(
                name,
                number,
                ReleaseStatus.FAILED,
                f"{_OPERATIONS[pending]} failed: {err}",
                expected=pending,
            )
            raise ReleaseFailedError(
                name, number, ReleaseStatus.FAILED, str(err)
            ) from err

        finished = await self._storage.update_status(
            name,
            number,
            success,
            options.description or f"{_OPERATIONS[pending]} complete",
            expected=pending,
        )
        _LOGGER.info("Release %s revision %d is %s", name, number, success)
        return finished

    async def _supersede(self, revision: Revision) -> None:
        """Mark every other deployed revision of the release as superseded."""
        for other in await self._storage.list_revisions(revision.name):
            if other.revision == revision.revision:
                continue
            if other.status != ReleaseStatus.DEPLOYED:
                continue
            try:
                await self._storage.update_status(
                    other.name,
                    other.revision,
                    ReleaseStatus.SUPERSEDED,
                    expected=ReleaseStatus.DEPLOYED,
                )
            except ConcurrentModification as err:
                _LOGGER.warning("Unable to supersede %s: %s", other.revision, err)

    async def _prune(self, name: str) -> None:
        """Remove the oldest revisions beyond the configured history limit."""
        if (limit := self._config.max_history) <= 0:
            return
        history = await self._storage.list_revisions(name)
        removable = [
            rev
            for rev in history[:-1]
            if rev.status in (ReleaseStatus.SUPERSEDED, ReleaseStatus.FAILED)
        ]
        excess = len(history) - limit
        for revision in removable[: max(excess, 0)]:
            _LOGGER.debug("Pruning release %s revision %d", name, revision.revision)
            await self._storage.delete(name, revision.revision)

    async def install(
        self,
        name: str,
        chart: Chart,
        values: dict[str, Any] | None = None,
        options: InstallOptions | None = None,
    ) -> Revision:
        """Install a chart as a new release.

        Raises InvalidTransition if the release already exists, unless
        `replace` is set and the release is uninstalled or failed.
        """
        options = options or InstallOptions()
        config = values or {}
        with release_context("install", name):
            history = await self._storage.list_revisions(name)
            _check_not_pending(name, history)
            if history:
                last = history[-1]
                if not options.replace or last.status not in (
                    ReleaseStatus.UNINSTALLED,
                    ReleaseStatus.FAILED,
                ):
                    raise InvalidTransition(
                        f"Release {name} already exists with revision "
                        f"{last.revision} {last.status}"
                    )
            release = ReleaseInfo(
                name=name,
                namespace=options.namespace,
                revision=history[-1].revision + 1 if history else 1,
                is_install=True,
                is_upgrade=False,
            )
            chart = await self._prepare(chart, config)
            rendered = await self._render(chart, config, release)
            revision = self._new_revision(
                release,
                chart,
                config,
                rendered,
                ReleaseStatus.PENDING_INSTALL,
                "Install in progress",
                None,
            )
            if options.dry_run:
                _LOGGER.info("Dry run of install of %s", chart.reference)
                return revision

            await self._storage.create_if_absent(
                revision, basis=history[-1] if history else None
            )
            _LOGGER.info(
                "Installing %s as release %s revision %d",
                chart.reference,
                name,
                revision.revision,
            )

            async def action() -> None:
                if not options.skip_crds:
                    await self._apply(rendered.crds, release.namespace)
                await self._apply(rendered.manifests, release.namespace)
                await self._wait(
                    [m.ref for m in rendered.manifests], release.namespace, options.wait
                )

            try:
                deployed = await self._perform(
                    revision, HookEvent.PRE_INSTALL, HookEvent.POST_INSTALL, action, options
                )
            except ReleaseFailedError:
                if options.atomic:
                    await self._atomic_cleanup(
                        self.uninstall(
                            name, UninstallOptions(description="Atomic install cleanup")
                        )
                    )
                raise
            await self._supersede(deployed)
            await self._prune(name)
            return deployed

    async def upgrade(
        self,
        name: str,
        chart: Chart,
        values: dict[str, Any] | None = None,
        options: UpgradeOptions | None = None,
    ) -> Revision:
        """Upgrade the deployed revision of a release to a new chart or values.

        Raises InvalidTransition if the release has no deployed revision.
        """
        options = options or UpgradeOptions()
        with release_context("upgrade", name):
            history = await self._storage.list_revisions(name)
            if not history:
                raise NotFound(f"Release {name} not found")
            _check_not_pending(name, history)
            current = next(
                (r for r in reversed(history) if r.status == ReleaseStatus.DEPLOYED),
                None,
            )
            if current is None:
                raise InvalidTransition(
                    f"Release {name} has no deployed revision to upgrade"
                )
            config = self._upgrade_values(current, values, options)
            release = ReleaseInfo(
                name=name,
                namespace=current.namespace,
                revision=history[-1].revision + 1,
                is_install=False,
                is_upgrade=True,
            )
            chart = await self._prepare(chart, config)
            rendered = await self._render(chart, config, release)
            revision = self._new_revision(
                release,
                chart,
                config,
                rendered,
                ReleaseStatus.PENDING_UPGRADE,
                "Upgrade in progress",
                history[0].first_deployed,
            )
            if options.dry_run:
                _LOGGER.info("Dry run of upgrade of %s", name)
                return revision

            await self._storage.create_if_absent(revision, basis=current)
            _LOGGER.info(
                "Upgrading release %s from revision %d to %d (%s)",
                name,
                current.revision,
                revision.revision,
                chart.reference,
            )

            async def action() -> None:
                await self._apply(rendered.manifests, release.namespace)
                await self._wait(
                    [m.ref for m in rendered.manifests], release.namespace, options.wait
                )
                await self._delete(
                    _orphans(current.manifests, rendered.manifests), release.namespace
                )

            try:
                deployed = await self._perform(
                    revision, HookEvent.PRE_UPGRADE, HookEvent.POST_UPGRADE, action, options
                )
            except ReleaseFailedError:
                if options.atomic:
                    await self._atomic_cleanup(
                        self.rollback(
                            name,
                            current.revision,
                            RollbackOptions(
                                description=f"Atomic rollback to {current.revision}"
                            ),
                        )
                    )
                raise
            await self._supersede(deployed)
            await self._prune(name)
            return deployed

    def _upgrade_values(
        self,
        current: Revision,
        values: dict[str, Any] | None,
        options: UpgradeOptions,
    ) -> dict[str, Any]:
        if options.reset_values:
            return values or {}
        if options.reuse_values:
            return merge_values(current.config, values)
        if not values:
            _LOGGER.debug("Reusing values of revision %d", current.revision)
            return current.config
        return values

    async def _atomic_cleanup(self, cleanup: Awaitable[Revision]) -> None:
        try:
            revision = await cleanup
        except RudderException as err:
            _LOGGER.error("Atomic cleanup failed: %s", err)
            return
        _LOGGER.info(
            "Atomic cleanup left release %s at revision %d %s",
            revision.name,
            revision.revision,
            revision.status,
        )

    async def rollback(
        self,
        name: str,
        revision: int = 0,
        options: RollbackOptions | None = None,
    ) -> Revision:
        """Roll back to the chart and values of an earlier revision.

        The target revision is re-rendered against the current cluster
        capabilities and deployed as a new revision; the target's own record
        is not modified. Revision 0 means the revision before the latest.
        """
        options = options or RollbackOptions()
        with release_context("rollback", name):
            history = await self._storage.list_revisions(name)
            if not history:
                raise NotFound(f"Release {name} not found")
            _check_not_pending(name, history)
            if revision == 0:
                if len(history) < 2:
                    raise InvalidTransition(
                        f"Release {name} has no previous revision to roll back to"
                    )
                revision = history[-2].revision
            target = await self._storage.get(name, revision)
            latest = history[-1]
            current = next(
                (r for r in reversed(history) if r.status == ReleaseStatus.DEPLOYED),
                latest,
            )
            release = ReleaseInfo(
                name=name,
                namespace=target.namespace,
                revision=latest.revision + 1,
                is_install=False,
                is_upgrade=True,
            )
            rendered = await self._render(target.chart, target.config, release)
            pending = self._new_revision(
                release,
                target.chart,
                target.config,
                rendered,
                ReleaseStatus.PENDING_ROLLBACK,
                f"Rollback to {target.revision} in progress",
                history[0].first_deployed,
            )
            if options.dry_run:
                _LOGGER.info("Dry run of rollback of %s to %d", name, target.revision)
                return pending

            await self._storage.create_if_absent(pending, basis=current)
            _LOGGER.info(
                "Rolling back release %s to revision %d as revision %d",
                name,
                target.revision,
                pending.revision,
            )

            async def action() -> None:
                await self._apply(rendered.manifests, release.namespace)
                await self._wait(
                    [m.ref for m in rendered.manifests], release.namespace, options.wait
                )
                if current.status != ReleaseStatus.UNINSTALLED:
                    await self._delete(
                        _orphans(current.manifests, rendered.manifests),
                        release.namespace,
                    )

            deployed = await self._perform(
                pending, HookEvent.PRE_ROLLBACK, HookEvent.POST_ROLLBACK, action, options
            )
            await self._supersede(deployed)
            await self._prune(name)
            return deployed

    async def uninstall(
        self, name: str, options: UninstallOptions | None = None
    ) -> Revision:
        """Delete the objects of a release.

        The history is kept with the latest revision marked uninstalled,
        unless `purge` is set in which case all revisions are removed.
        """
        options = options or UninstallOptions()
        with release_context("uninstall", name):
            history = await self._storage.list_revisions(name)
            if not history:
                raise NotFound(f"Release {name} not found")
            _check_not_pending(name, history)
            latest = history[-1]
            if latest.status == ReleaseStatus.UNINSTALLED:
                if not options.purge:
                    raise InvalidTransition(f"Release {name} is already uninstalled")
                if not options.dry_run:
                    await self._purge(name, history)
                return latest
            current = next(
                (r for r in reversed(history) if r.status == ReleaseStatus.DEPLOYED),
                latest,
            )
            if current.status not in (ReleaseStatus.DEPLOYED, ReleaseStatus.FAILED):
                raise InvalidTransition(
                    f"Release {name} revision {current.revision} is {current.status}"
                )
            if options.dry_run:
                return current.with_status(ReleaseStatus.UNINSTALLING)

            uninstalling = await self._storage.update_status(
                name,
                current.revision,
                ReleaseStatus.UNINSTALLING,
                "Deletion in progress",
                expected=current.status,
                expected_latest=latest.revision,
            )
            _LOGGER.info("Uninstalling release %s revision %d", name, current.revision)

            async def action() -> None:
                doomed = []
                for manifest in uninstalling.manifests:
                    if manifest.keep_on_delete:
                        _LOGGER.warning(
                            "Keeping %s due to its resource policy", manifest.ref
                        )
                        continue
                    doomed.append(manifest)
                await self._delete(sort_for_uninstall(doomed), uninstalling.namespace)

            uninstalled = await self._perform(
                uninstalling,
                HookEvent.PRE_DELETE,
                HookEvent.POST_DELETE,
                action,
                options,
                success=ReleaseStatus.UNINSTALLED,
            )
            if options.purge:
                await self._purge(name, await self._storage.list_revisions(name))
            return uninstalled

    async def _purge(self, name: str, history: Sequence[Revision]) -> None:
        _LOGGER.info("Purging %d revision(s) of release %s", len(history), name)
        for revision in history:
            await self._storage.delete(name, revision.revision)

    async def test(self, name: str, options: TestOptions | None = None) -> Revision:
        """Run the test hooks of the deployed revision.

        Raises HookFailed or HookTimeout for the first failing test. The
        revision's status is not changed by running tests.
        """
        options = options or TestOptions()
        revision = await self._storage.deployed(name)
        if revision is None:
            raise NotFound(f"Release {name} has no deployed revision")
        with release_context("test", name):
            async with asyncio.timeout(options.timeout):
                await self._hooks.run(HookEvent.TEST, revision.hooks, revision.namespace)
        return revision

    async def history(self, name: str) -> list[Revision]:
        """Return all revisions of a release, oldest first."""
        if not (history := await self._storage.list_revisions(name)):
            raise NotFound(f"Release {name} not found")
        return history

    async def status(self, name: str, revision: int = 0) -> Revision:
        """Return a revision of a release, the latest when `revision` is 0."""
        if revision:
            return await self._storage.get(name, revision)
        if (latest := await self._storage.last(name)) is None:
            raise NotFound(f"Release {name} not found")
        return latest

    async def get_values(
        self, name: str, revision: int = 0, all_values: bool = False
    ) -> dict[str, Any]:
        """Return the user supplied values, or all computed values."""
        record = await self.status(name, revision)
        return record.values if all_values else record.config
