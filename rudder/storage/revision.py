"""The immutable record stored for each revision of a release."""

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, cast

from mashumaro import DataClassDictMixin
from mashumaro.codecs.yaml import yaml_decode, yaml_encode
from mashumaro.config import BaseConfig

from rudder.chart import Chart
from rudder.manifest import Hook, Manifest, split_manifests

from .status import ReleaseStatus

__all__ = [
    "Revision",
]


@dataclass(frozen=True)
class Revision(DataClassDictMixin):
    """A snapshot of a release at one revision.

    Everything but `status` and `description` is fixed when the revision is
    created.
    """

    name: str
    """Release name, shared by all revisions of the release."""

    namespace: str

    revision: int
    """Revision number, starting at 1 and increasing by one per transition."""

    chart: Chart
    """The chart tree that was rendered, subcharts included."""

    status: ReleaseStatus

    config: dict[str, Any] = field(default_factory=dict)
    """The values supplied by the user."""

    values: dict[str, Any] = field(default_factory=dict)
    """The computed values of the root chart."""

    manifest: str = ""
    """The rendered manifests as a multi-document YAML stream."""

    hooks: list[Hook] = field(default_factory=list)

    notes: str = ""

    description: str = ""

    first_deployed: datetime | None = None
    last_deployed: datetime | None = None

    class Config(BaseConfig):
        omit_none = True
        lazy_compilation = True

    @property
    def chart_reference(self) -> str:
        return self.chart.reference

    @property
    def manifests(self) -> list[Manifest]:
        """The rendered manifests parsed back from the stored stream."""
        return split_manifests(self.manifest)

    def with_status(self, status: ReleaseStatus, description: str | None = None) -> "Revision":
        return replace(
            self,
            status=status,
            description=self.description if description is None else description,
        )

    @classmethod
    def parse_yaml(cls, content: str) -> "Revision":
        """Parse a serialized revision."""
        return cast(Revision, yaml_decode(content, cls))

    def yaml(self) -> str:
        return cast(str, yaml_encode(self, self.__class__))
