"""The release lifecycle.

A release is the sequence of revisions sharing a name. The
`ReleaseController` installs, upgrades, rolls back and uninstalls releases,
recording every transition as a revision in a `Storage` backend.
"""

from rudder.storage import ReleaseStatus, Revision

from .controller import ReleaseController
from .options import (
    InstallOptions,
    RollbackOptions,
    TestOptions,
    UninstallOptions,
    UpgradeOptions,
)

__all__ = [
    "ReleaseController",
    "ReleaseStatus",
    "Revision",
    "InstallOptions",
    "UpgradeOptions",
    "RollbackOptions",
    "UninstallOptions",
    "TestOptions",
]
