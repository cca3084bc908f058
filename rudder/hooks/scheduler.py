"""Scheduler running the hooks of one lifecycle event.

Hooks of an event run one at a time in ascending weight, ties broken by
name. For every hook the scheduler:

1. Deletes a previous object of the same name when the hook's delete policy
   includes `before-hook-creation` (the default when none is declared).
2. Applies the hook object.
3. Waits for the hook to reach an outcome within its timeout.
4. Deletes the object when its outcome matches `hook-succeeded` or
   `hook-failed`.

The first hook that fails or times out aborts the rest of the event. Errors
raised by the cluster client are reported as `ApplyFailed`.
"""

import asyncio
from collections.abc import Iterable
import logging

from rudder.cluster import ClusterClient, OperationResult
from rudder.context import trace_context
from rudder.exceptions import ApplyFailed, HookFailed, HookTimeout, RudderException
from rudder.manifest import Hook, HookDeletePolicy, HookEvent

__all__ = [
    "HookScheduler",
    "hooks_for_event",
]

_LOGGER = logging.getLogger(__name__)


def hooks_for_event(hooks: Iterable[Hook], event: HookEvent) -> list[Hook]:
    """Return the hooks of an event in the order they run."""
    return sorted(
        (hook for hook in hooks if event in hook.hook.events),
        key=lambda hook: hook.sort_key,
    )


class HookScheduler:
    """Runs lifecycle hooks sequentially against the cluster."""

    def __init__(self, cluster: ClusterClient, default_timeout: float = 300.0) -> None:
        """Initialize HookScheduler."""
        self._cluster = cluster
        self._default_timeout = default_timeout

    async def run(self, event: HookEvent, hooks: Iterable[Hook], namespace: str) -> None:
        """Run the hooks declared for the event.

        Raises HookTimeout or HookFailed for the first hook that does not
        succeed; later hooks of the event are not started.
        """
        selected = hooks_for_event(hooks, event)
        if not selected:
            _LOGGER.debug("No hooks for event %s", event)
            return
        with trace_context(f"hooks {event}"):
            _LOGGER.info("Running %d %s hook(s)", len(selected), event)
            for hook in selected:
                await self._run_hook(event, hook, namespace)

    async def _run_hook(self, event: HookEvent, hook: Hook, namespace: str) -> None:
        policies = hook.hook.effective_delete_policies
        timeout = hook.hook.timeout or self._default_timeout
        _LOGGER.debug(
            "Running hook %s (weight %d, timeout %ss)", hook.ref, hook.hook.weight, timeout
        )
        if HookDeletePolicy.BEFORE_HOOK_CREATION in policies:
            await self._delete(hook, namespace)

        try:
            result = await self._cluster.apply([hook], namespace)
        except RudderException:
            raise
        except Exception as err:
            _LOGGER.error("Hook %s could not be applied: %s", hook.ref, err)
            raise ApplyFailed(f"Unable to apply hook {hook.ref}: {err}") from err
        if not result.success:
            await self._after(hook, namespace, succeeded=False)
            raise HookFailed(hook.name, event, result.message)

        try:
            async with asyncio.timeout(timeout):
                result = await self._cluster.wait_until_ready(
                    [hook.ref], namespace, timeout
                )
        except TimeoutError as err:
            _LOGGER.error("Hook %s timed out after %ss", hook.ref, timeout)
            raise HookTimeout(hook.name, event, timeout) from err
        except RudderException:
            raise
        except Exception as err:
            raise ApplyFailed(f"Unable to wait for hook {hook.ref}: {err}") from err

        await self._after(hook, namespace, succeeded=result.success)
        if not result.success:
            _LOGGER.error("Hook %s failed: %s", hook.ref, result.message)
            raise HookFailed(hook.name, event, result.message)
        _LOGGER.debug("Hook %s succeeded", hook.ref)

    async def _after(self, hook: Hook, namespace: str, succeeded: bool) -> None:
        policy = (
            HookDeletePolicy.HOOK_SUCCEEDED if succeeded else HookDeletePolicy.HOOK_FAILED
        )
        if policy in hook.hook.effective_delete_policies:
            await self._delete(hook, namespace)
        elif not succeeded:
            _LOGGER.warning("Leaving failed hook %s for inspection", hook.ref)

    async def _delete(self, hook: Hook, namespace: str) -> None:
        try:
            result: OperationResult = await self._cluster.delete([hook.ref], namespace)
        except RudderException:
            raise
        except Exception as err:
            raise ApplyFailed(f"Unable to delete hook {hook.ref}: {err}") from err
        if not result.success:
            raise ApplyFailed(f"Unable to delete hook {hook.ref}: {result}")
