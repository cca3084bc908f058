"""Options for the release lifecycle operations."""

from dataclasses import dataclass


@dataclass
class _Options:
    description: str | None = None
    """Description stored on the new revision instead of the default."""

    timeout: float | None = None
    """Seconds until the operation is interrupted, no deadline when unset.

    An interrupted operation leaves its revision in the pending status.
    """

    skip_hooks: bool = False
    """Don't run the lifecycle hooks of the operation."""

    dry_run: bool = False
    """Render and return the revision without storing or applying it."""

    wait: bool | None = None
    """Wait for applied objects to become ready, the controller default when unset."""


@dataclass
class InstallOptions(_Options):
    """Options for installing a release."""

    namespace: str = "default"

    skip_crds: bool = False
    """Don't apply the custom resource definitions shipped with the chart."""

    replace: bool = False
    """Re-use the name of a release that is uninstalled or failed."""

    atomic: bool = False
    """Uninstall the release again if the install fails."""


@dataclass
class UpgradeOptions(_Options):
    """Options for upgrading a release."""

    reuse_values: bool = False
    """Merge the new values over the values of the current revision."""

    reset_values: bool = False
    """Use only the new values, discarding the values of the current revision."""

    atomic: bool = False
    """Roll back to the current revision if the upgrade fails."""


@dataclass
class RollbackOptions(_Options):
    """Options for rolling back a release."""


@dataclass
class UninstallOptions(_Options):
    """Options for uninstalling a release."""

    purge: bool = False
    """Remove the release history instead of keeping it as uninstalled."""


@dataclass
class TestOptions:
    """Options for running the tests of a release."""

    __test__ = False

    timeout: float | None = None
