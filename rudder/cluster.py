"""Interface to the cluster a release is deployed to.

The cluster client is an external collaborator: it applies and deletes
objects and reports readiness. Reconciling individual objects is entirely its
concern; rudder only decides what to apply and in which order.
"""

from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass, field

from .manifest import Manifest, ObjectRef
from .version import Version

__all__ = [
    "Capabilities",
    "ClusterClient",
    "OperationResult",
    "DEFAULT_API_VERSIONS",
]

DEFAULT_KUBE_VERSION = "1.30.0"
DEFAULT_API_VERSIONS = frozenset(
    {
        "v1",
        "admissionregistration.k8s.io/v1",
        "apiextensions.k8s.io/v1",
        "apps/v1",
        "autoscaling/v1",
        "autoscaling/v2",
        "batch/v1",
        "coordination.k8s.io/v1",
        "networking.k8s.io/v1",
        "policy/v1",
        "rbac.authorization.k8s.io/v1",
        "scheduling.k8s.io/v1",
        "storage.k8s.io/v1",
    }
)


@dataclass(frozen=True)
class Capabilities:
    """The API versions and version of the target cluster."""

    kube_version: str = DEFAULT_KUBE_VERSION
    api_versions: frozenset[str] = field(default=DEFAULT_API_VERSIONS)
    """Available `group/version` and optionally `group/version/Kind` entries."""

    @property
    def version(self) -> Version:
        return Version.parse(self.kube_version)

    def has(self, api_version: str, kind: str | None = None) -> bool:
        """Return True if the cluster serves the API version (and kind)."""
        if kind is not None:
            return (
                f"{api_version}/{kind}" in self.api_versions
                or api_version in self.api_versions
            )
        return api_version in self.api_versions

    def with_api_versions(self, *api_versions: str) -> "Capabilities":
        """Return capabilities with additional API versions available."""
        return Capabilities(
            kube_version=self.kube_version,
            api_versions=self.api_versions | frozenset(api_versions),
        )


@dataclass(frozen=True)
class OperationResult:
    """Outcome of a cluster operation."""

    success: bool = True
    message: str | None = None

    def __str__(self) -> str:
        status = "succeeded" if self.success else "failed"
        if self.message:
            return f"{status}: {self.message}"
        return status


class ClusterClient(ABC):
    """Abstract client for the cluster a release is deployed to.

    Implementations raise an exception or return an unsuccessful result on
    failure; the release controller wraps both as `ApplyFailed`.
    """

    @abstractmethod
    async def capabilities(self) -> Capabilities:
        """Return the API versions the cluster currently serves."""

    @abstractmethod
    async def apply(
        self, manifests: Sequence[Manifest], namespace: str
    ) -> OperationResult:
        """Create or update the objects, in the given order."""

    @abstractmethod
    async def delete(
        self, refs: Sequence[ObjectRef], namespace: str
    ) -> OperationResult:
        """Delete the objects, ignoring ones that do not exist."""

    @abstractmethod
    async def wait_until_ready(
        self, refs: Sequence[ObjectRef], namespace: str, timeout: float
    ) -> OperationResult:
        """Wait for the objects to become ready, or report why they did not.

        For hooks, ready means the hook's workload ran to completion.
        """
