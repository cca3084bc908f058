"""Configuration objects for rudder."""

from dataclasses import dataclass
from enum import StrEnum


class GatingPolicy(StrEnum):
    """How a dependency's `condition` and `tags` combine to enable it."""

    CONDITION_OVER_TAGS = "condition-over-tags"
    """A resolvable condition decides; tags are consulted only otherwise."""

    TAGS_OVER_CONDITION = "tags-over-condition"
    """Resolvable tags decide; the condition is consulted only otherwise."""

    ALL = "all"
    """Every resolvable condition and tag setting must enable the dependency."""


@dataclass
class ResolverConfig:
    """Configuration for the DependencyResolver."""

    concurrency: int = 8
    """Maximum number of dependencies resolved at the same time."""

    include_prereleases: bool = False
    """Allow pre-release versions even when constraints don't ask for them."""


@dataclass
class RenderConfig:
    """Configuration for the RenderEngine."""

    strict_capabilities: bool = False
    """Fail a template whose output uses an apiVersion the cluster lacks."""

    strict_undefined: bool = True
    """Fail a template that references an undefined value."""


@dataclass
class ReleaseConfig:
    """Configuration for the ReleaseController."""

    default_hook_timeout: float = 300.0
    """Seconds a hook may take when it does not declare its own timeout."""

    wait: bool = True
    """Wait for applied manifests to become ready before marking deployed."""

    wait_timeout: float = 300.0
    """Seconds to wait for applied manifests to become ready."""

    max_history: int = 0
    """Maximum revisions retained per release, zero for unlimited."""

    gating_policy: GatingPolicy = GatingPolicy.CONDITION_OVER_TAGS
    """Policy deciding which dependencies are resolved and which scopes render."""
