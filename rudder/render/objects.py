"""Built-in objects available to templates besides `Values`."""

from collections.abc import Iterator, Mapping
from dataclasses import dataclass
import base64
import fnmatch
import posixpath

import yaml

from rudder.cluster import Capabilities
from rudder.version import Version

__all__ = [
    "ReleaseInfo",
    "APIVersions",
    "CapabilitiesView",
    "Files",
    "TemplateInfo",
]


@dataclass(frozen=True)
class ReleaseInfo:
    """Release metadata, exposed to templates as `Release`."""

    name: str
    namespace: str = "default"
    revision: int = 1
    is_install: bool = True
    is_upgrade: bool = False
    service: str = "Rudder"


@dataclass(frozen=True)
class APIVersions:
    """The API versions served by the cluster, `Capabilities.api_versions`."""

    capabilities: Capabilities

    def has(self, api_version: str, kind: str | None = None) -> bool:
        return self.capabilities.has(api_version, kind)

    def __contains__(self, api_version: object) -> bool:
        return isinstance(api_version, str) and self.capabilities.has(api_version)

    def __iter__(self) -> Iterator[str]:
        return iter(sorted(self.capabilities.api_versions))


@dataclass(frozen=True)
class CapabilitiesView:
    """Cluster capabilities, exposed to templates as `Capabilities`."""

    kube_version: str
    major: int
    minor: int
    api_versions: APIVersions

    @classmethod
    def from_capabilities(cls, capabilities: Capabilities) -> "CapabilitiesView":
        version: Version = capabilities.version
        return cls(
            kube_version=capabilities.kube_version,
            major=version.major,
            minor=version.minor,
            api_versions=APIVersions(capabilities),
        )


class Files(Mapping[str, str]):
    """Read-only access to the non-template files of one chart scope."""

    def __init__(self, files: Mapping[str, str]) -> None:
        self._files = dict(files)

    def __getitem__(self, name: str) -> str:
        return self._files[name]

    def __iter__(self) -> Iterator[str]:
        return iter(sorted(self._files))

    def __len__(self) -> int:
        return len(self._files)

    def get(self, name: str, default: str = "") -> str:  # type: ignore[override]
        """Return the file contents, empty when the file does not exist."""
        return self._files.get(name, default)

    def glob(self, pattern: str) -> "Files":
        """Return the files whose path matches a shell style pattern."""
        return Files({k: v for k, v in self._files.items() if fnmatch.fnmatch(k, pattern)})

    def lines(self, name: str) -> list[str]:
        return self.get(name).splitlines()

    def as_config(self) -> str:
        """Render the files as the body of a ConfigMap `data` field."""
        data = {posixpath.basename(k): self._files[k] for k in self}
        return yaml.safe_dump(data, default_flow_style=False, sort_keys=True).rstrip("\n")

    def as_secrets(self) -> str:
        """Render the files, base64 encoded, as the body of a Secret `data` field."""
        data = {
            posixpath.basename(k): base64.b64encode(self._files[k].encode()).decode()
            for k in self
        }
        return yaml.safe_dump(data, default_flow_style=False, sort_keys=True).rstrip("\n")


@dataclass(frozen=True)
class TemplateInfo:
    """The template being rendered, exposed to templates as `Template`."""

    name: str
    """Full path of the template, e.g. `web/charts/db/templates/svc.yaml`."""

    base_path: str
    """Directory holding the scope's templates, e.g. `web/charts/db/templates`."""
