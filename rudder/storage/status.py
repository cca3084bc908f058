"""Status of a release revision."""

from enum import StrEnum


class ReleaseStatus(StrEnum):
    """Lifecycle status of a release revision."""

    PENDING_INSTALL = "pending-install"
    PENDING_UPGRADE = "pending-upgrade"
    PENDING_ROLLBACK = "pending-rollback"
    DEPLOYED = "deployed"
    FAILED = "failed"
    SUPERSEDED = "superseded"
    UNINSTALLING = "uninstalling"
    UNINSTALLED = "uninstalled"

    @property
    def is_pending(self) -> bool:
        """True while a transition of the revision is in flight."""
        return self in _PENDING

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL

    def can_transition(self, status: "ReleaseStatus") -> bool:
        """Return True if a revision may move from this status to `status`."""
        return status in _TRANSITIONS[self]


_PENDING = frozenset(
    {
        ReleaseStatus.PENDING_INSTALL,
        ReleaseStatus.PENDING_UPGRADE,
        ReleaseStatus.PENDING_ROLLBACK,
        ReleaseStatus.UNINSTALLING,
    }
)

_TERMINAL = frozenset(
    {
        ReleaseStatus.DEPLOYED,
        ReleaseStatus.FAILED,
        ReleaseStatus.SUPERSEDED,
        ReleaseStatus.UNINSTALLED,
    }
)

_TRANSITIONS: dict[ReleaseStatus, frozenset[ReleaseStatus]] = {
    ReleaseStatus.PENDING_INSTALL: frozenset(
        {ReleaseStatus.DEPLOYED, ReleaseStatus.FAILED}
    ),
    ReleaseStatus.PENDING_UPGRADE: frozenset(
        {ReleaseStatus.DEPLOYED, ReleaseStatus.FAILED}
    ),
    ReleaseStatus.PENDING_ROLLBACK: frozenset(
        {ReleaseStatus.DEPLOYED, ReleaseStatus.FAILED}
    ),
    ReleaseStatus.DEPLOYED: frozenset(
        {ReleaseStatus.SUPERSEDED, ReleaseStatus.UNINSTALLING}
    ),
    ReleaseStatus.FAILED: frozenset(
        {ReleaseStatus.SUPERSEDED, ReleaseStatus.UNINSTALLING}
    ),
    ReleaseStatus.SUPERSEDED: frozenset(),
    ReleaseStatus.UNINSTALLING: frozenset(
        {ReleaseStatus.UNINSTALLED, ReleaseStatus.FAILED}
    ),
    ReleaseStatus.UNINSTALLED: frozenset(),
}
