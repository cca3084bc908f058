"""Representation of a chart and its resolved dependency lock.

A chart is an immutable tree: metadata, templates, default values, plain files
and child charts addressed by their scope name (the dependency alias, or the
chart name). Charts are usually read from an archive or directory by a chart
source; `Chart.from_files` builds one from the conventional layout given as a
mapping of relative paths to file contents:

```python
chart = Chart.from_files({
    "Chart.yaml": "apiVersion: v2\\nname: web\\nversion: 1.0.0\\n",
    "values.yaml": "replicas: 1\\n",
    "templates/deployment.yaml": "...",
    "charts/db/Chart.yaml": "apiVersion: v2\\nname: db\\nversion: 2.1.0\\n",
})
```
"""

from collections.abc import Mapping
from dataclasses import dataclass, field, replace
import logging
from typing import Any

import yaml
from mashumaro import DataClassDictMixin, field_options
from mashumaro.config import BaseConfig
from mashumaro.exceptions import MissingField, InvalidFieldValue

from .exceptions import InputException
from .version import Constraint, Version

__all__ = [
    "Chart",
    "ChartMetadata",
    "Dependency",
    "Lock",
    "LockEntry",
    "CHART_FILE",
    "VALUES_FILE",
    "LOCK_FILE",
]

_LOGGER = logging.getLogger(__name__)

CHART_FILE = "Chart.yaml"
VALUES_FILE = "values.yaml"
LOCK_FILE = "Chart.lock"
TEMPLATES_DIR = "templates/"
CRDS_DIR = "crds/"
CHARTS_DIR = "charts/"

CHART_TYPE_APPLICATION = "application"
CHART_TYPE_LIBRARY = "library"
API_VERSIONS = ("v1", "v2")


class _Base(DataClassDictMixin):
    class Config(BaseConfig):
        omit_none = True
        serialize_by_alias = True
        lazy_compilation = True


@dataclass(frozen=True)
class Dependency(_Base):
    """A dependency declared by a chart."""

    name: str
    """The name of the chart within its repository."""

    version: str = ""
    """A version constraint such as `^1.2.0`."""

    repository: str = ""
    """Reference to the repository the chart is sourced from."""

    condition: str | None = None
    """Comma separated value paths, the first boolean found toggles the dependency."""

    tags: list[str] = field(default_factory=list)
    """Tags toggling the dependency through the top level `tags` values."""

    alias: str | None = None
    """Name used for the dependency within the parent chart scope."""

    import_values: list[str | dict[str, str]] = field(
        metadata=field_options(alias="import-values"), default_factory=list
    )
    """Values exported by the dependency to lift into the parent values."""

    enabled: bool = True
    """Whether the dependency is enabled when no condition or tag applies."""

    @property
    def scope_name(self) -> str:
        """Name of the dependency within the parent's scope."""
        return self.alias or self.name

    @property
    def constraint(self) -> Constraint:
        """The parsed version constraint."""
        return Constraint.parse(self.version)


@dataclass(frozen=True)
class ChartMetadata(_Base):
    """Contents of a chart's Chart.yaml."""

    name: str
    """The name of the chart."""

    version: str
    """The semantic version of the chart."""

    api_version: str = field(metadata=field_options(alias="apiVersion"), default="v2")
    """The chart API version."""

    app_version: str | None = field(
        metadata=field_options(alias="appVersion"), default=None
    )
    """Version of the application packaged by the chart."""

    description: str | None = None

    kube_version: str | None = field(
        metadata=field_options(alias="kubeVersion"), default=None
    )
    """Constraint on the cluster versions the chart is compatible with."""

    type: str = CHART_TYPE_APPLICATION
    """Either `application` or `library`."""

    dependencies: list[Dependency] = field(default_factory=list)

    keywords: list[str] = field(default_factory=list)

    home: str | None = None

    @classmethod
    def parse_yaml(cls, content: str) -> "ChartMetadata":
        """Parse and validate the contents of a Chart.yaml file."""
        try:
            doc = yaml.safe_load(content)
        except yaml.YAMLError as err:
            raise InputException(f"Invalid {CHART_FILE}: {err}") from err
        if not isinstance(doc, dict):
            raise InputException(f"Invalid {CHART_FILE}, expected a mapping: {doc}")
        try:
            metadata = cls.from_dict(doc)
        except (MissingField, InvalidFieldValue) as err:
            raise InputException(f"Invalid {CHART_FILE}: {err}") from err
        metadata.validate()
        return metadata

    def validate(self) -> None:
        """Raise InputException if the metadata is not usable."""
        if not self.name:
            raise InputException(f"Invalid {CHART_FILE} missing name")
        if self.api_version not in API_VERSIONS:
            raise InputException(
                f"Chart {self.name} has unsupported apiVersion {self.api_version}"
            )
        if self.type not in (CHART_TYPE_APPLICATION, CHART_TYPE_LIBRARY):
            raise InputException(f"Chart {self.name} has invalid type {self.type}")
        Version.parse(self.version)
        if self.kube_version:
            Constraint.parse(self.kube_version)
        seen: set[str] = set()
        for dep in self.dependencies:
            if dep.scope_name in seen:
                raise InputException(
                    f"Chart {self.name} declares dependency {dep.scope_name} twice"
                )
            seen.add(dep.scope_name)
            Constraint.parse(dep.version)


@dataclass(frozen=True)
class LockEntry(_Base):
    """A dependency resolved to a concrete version."""

    name: str
    version: str
    repository: str = ""
    digest: str = ""
    """Digest identifying the resolved source of the dependency."""

    alias: str | None = None

    @property
    def scope_name(self) -> str:
        return self.alias or self.name


@dataclass(frozen=True)
class Lock(_Base):
    """The resolved dependency set of a chart."""

    digest: str
    """Digest of the dependency declarations the lock was resolved from."""

    dependencies: list[LockEntry] = field(default_factory=list)

    def entry(self, scope_name: str) -> LockEntry | None:
        """Return the entry for the dependency with the given scope name."""
        for entry in self.dependencies:
            if entry.scope_name == scope_name:
                return entry
        return None

    @classmethod
    def parse_yaml(cls, content: str) -> "Lock":
        """Parse the contents of a Chart.lock file."""
        doc = yaml.safe_load(content)
        if not isinstance(doc, dict):
            raise InputException(f"Invalid {LOCK_FILE}, expected a mapping: {doc}")
        try:
            return cls.from_dict(doc)
        except (MissingField, InvalidFieldValue) as err:
            raise InputException(f"Invalid {LOCK_FILE}: {err}") from err

    def yaml(self) -> str:
        return yaml.safe_dump(self.to_dict(), sort_keys=False)


@dataclass(frozen=True)
class Chart(_Base):
    """A chart with its templates, default values and child charts."""

    metadata: ChartMetadata

    templates: dict[str, str] = field(default_factory=dict)
    """Template files keyed by path relative to the chart, e.g. `templates/svc.yaml`."""

    values: dict[str, Any] = field(default_factory=dict)
    """The default value tree."""

    files: dict[str, str] = field(default_factory=dict)
    """Non-template files of the chart, readable from templates."""

    crds: dict[str, str] = field(default_factory=dict)
    """Custom resource definitions installed before the manifests, never templated."""

    subcharts: dict[str, "Chart"] = field(default_factory=dict)
    """Child charts keyed by their scope name."""

    lock: Lock | None = None
    """The lock shipped with the chart, if any."""

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def version(self) -> str:
        return self.metadata.version

    @property
    def reference(self) -> str:
        """Short `name:version` reference for logging and history."""
        return f"{self.metadata.name}:{self.metadata.version}"

    @property
    def is_library(self) -> bool:
        return self.metadata.type == CHART_TYPE_LIBRARY

    def subchart(self, scope_name: str) -> "Chart | None":
        """Return the child chart addressed by the scope name."""
        return self.subcharts.get(scope_name)

    def with_subcharts(self, subcharts: Mapping[str, "Chart"]) -> "Chart":
        """Return a copy of this chart with a new set of child charts."""
        return replace(self, subcharts=dict(subcharts))

    def with_lock(self, lock: Lock | None) -> "Chart":
        return replace(self, lock=lock)

    @classmethod
    def from_files(cls, files: Mapping[str, str]) -> "Chart":
        """Build a chart from relative file paths and their contents.

        Paths may share a single top level directory, as in chart archives.
        """
        normalized = {_normalize(path): content for path, content in files.items()}
        if CHART_FILE not in normalized:
            normalized = _strip_top_level(normalized)
        if (chart_yaml := normalized.get(CHART_FILE)) is None:
            raise InputException(f"Chart is missing {CHART_FILE}")
        metadata = ChartMetadata.parse_yaml(chart_yaml)

        values: dict[str, Any] = {}
        if (values_yaml := normalized.get(VALUES_FILE)) is not None:
            try:
                loaded = yaml.safe_load(values_yaml)
            except yaml.YAMLError as err:
                raise InputException(
                    f"Chart {metadata.name} has invalid {VALUES_FILE}: {err}"
                ) from err
            if loaded is not None and not isinstance(loaded, dict):
                raise InputException(
                    f"Chart {metadata.name} {VALUES_FILE} must be a mapping"
                )
            values = loaded or {}

        lock: Lock | None = None
        if (lock_yaml := normalized.get(LOCK_FILE)) is not None:
            lock = Lock.parse_yaml(lock_yaml)

        templates: dict[str, str] = {}
        crds: dict[str, str] = {}
        other: dict[str, str] = {}
        children: dict[str, dict[str, str]] = {}
        for path, content in sorted(normalized.items()):
            if path in (CHART_FILE, VALUES_FILE, LOCK_FILE):
                continue
            if path.startswith(TEMPLATES_DIR):
                templates[path] = content
            elif path.startswith(CRDS_DIR):
                crds[path] = content
            elif path.startswith(CHARTS_DIR) and path.count("/") >= 2:
                child, _, rest = path[len(CHARTS_DIR) :].partition("/")
                children.setdefault(child, {})[rest] = content
            else:
                other[path] = content

        subcharts: dict[str, Chart] = {}
        for child_dir, child_files in children.items():
            subchart = cls.from_files(child_files)
            _LOGGER.debug(
                "Chart %s embeds subchart %s from %s",
                metadata.name,
                subchart.reference,
                child_dir,
            )
            subcharts[subchart.name] = subchart

        return cls(
            metadata=metadata,
            templates=templates,
            values=values,
            files=other,
            crds=crds,
            subcharts=subcharts,
            lock=lock,
        )


def _normalize(path: str) -> str:
    path = path.replace("\\", "/")
    while path.startswith("./"):
        path = path[2:]
    return path.lstrip("/")


def _strip_top_level(files: dict[str, str]) -> dict[str, str]:
    """Remove a single shared top level directory from all paths."""
    tops = {path.partition("/")[0] for path in files}
    if len(tops) != 1:
        return files
    prefix = f"{tops.pop()}/"
    return {path[len(prefix) :]: content for path, content in files.items()}
