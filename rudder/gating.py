"""Evaluation of dependency `condition` and `tags` against values.

A dependency's condition is a comma separated list of value paths relative to
the parent chart's values, e.g. `db.enabled,global.db.enabled`. The first path
that resolves to a boolean is the condition's result. Tags are looked up in the
top level `tags` table: any `true` tag enables the dependency, and listed tags
that are all `false` disable it.

How the two combine is a `GatingPolicy`, `CONDITION_OVER_TAGS` by default. When
neither a condition nor a tag resolves, the dependency's `enabled` field decides.
"""

import logging
from typing import Any

from .chart import Dependency
from .config import GatingPolicy

__all__ = [
    "lookup",
    "dependency_enabled",
]

_LOGGER = logging.getLogger(__name__)

_MISSING = object()


def lookup(tree: dict[str, Any], path: str, default: Any = None) -> Any:
    """Return the value at a dotted path, or the default when absent."""
    node: Any = tree
    for part in path.split("."):
        if not isinstance(node, dict) or (node := node.get(part, _MISSING)) is _MISSING:
            return default
    return node


def _condition_result(dep: Dependency, parent_values: dict[str, Any]) -> bool | None:
    if not dep.condition:
        return None
    for path in dep.condition.split(","):
        if not (path := path.strip()):
            continue
        value = lookup(parent_values, path)
        if isinstance(value, bool):
            return value
        if value is not None:
            _LOGGER.warning(
                "Condition path '%s' for dependency %s returned non-bool value %r",
                path,
                dep.scope_name,
                value,
            )
    return None


def _tags_result(dep: Dependency, tags: dict[str, Any]) -> bool | None:
    found = [tags[tag] for tag in dep.tags if isinstance(tags.get(tag), bool)]
    if not found:
        return None
    return any(found)


def dependency_enabled(
    dep: Dependency,
    parent_values: dict[str, Any],
    tags: dict[str, Any] | None = None,
    policy: GatingPolicy = GatingPolicy.CONDITION_OVER_TAGS,
) -> bool:
    """Return True if the dependency is enabled by the given values."""
    condition = _condition_result(dep, parent_values)
    tag = _tags_result(dep, tags or {})
    if policy == GatingPolicy.ALL:
        decided = [result for result in (condition, tag) if result is not None]
        enabled = all(decided) if decided else dep.enabled
    else:
        ordered = (
            (condition, tag)
            if policy == GatingPolicy.CONDITION_OVER_TAGS
            else (tag, condition)
        )
        enabled = next((r for r in ordered if r is not None), dep.enabled)
    _LOGGER.debug(
        "Dependency %s enabled=%s (condition=%s, tags=%s, policy=%s)",
        dep.scope_name,
        enabled,
        condition,
        tag,
        policy,
    )
    return enabled
