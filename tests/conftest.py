"""Shared fixtures for rudder tests."""

import asyncio
from collections.abc import Sequence
from typing import Any

import pytest
import yaml

from rudder.chart import Chart
from rudder.cluster import Capabilities, ClusterClient, OperationResult
from rudder.dependency import InMemoryChartSource
from rudder.manifest import Manifest, ObjectRef
from rudder.storage import InMemoryStorage


class FakeClusterClient(ClusterClient):
    """Cluster client recording every call in order.

    Objects named in `fail_apply` are rejected when applied, objects named in
    `fail_ready` report a failed outcome and objects named in `hang` never
    become ready.
    """

    def __init__(self) -> None:
        self.calls: list[tuple[str, list[str]]] = []
        self.live: dict[ObjectRef, Manifest] = {}
        self.fail_apply: set[str] = set()
        self.fail_ready: set[str] = set()
        self.hang: set[str] = set()
        self.capability_set = Capabilities()
        self.delay = 0.0

    async def capabilities(self) -> Capabilities:
        await asyncio.sleep(self.delay)
        return self.capability_set

    async def apply(
        self, manifests: Sequence[Manifest], namespace: str
    ) -> OperationResult:
        await asyncio.sleep(self.delay)
        self.calls.append(("apply", [m.name for m in manifests]))
        for manifest in manifests:
            if manifest.name in self.fail_apply:
                return OperationResult(False, f"{manifest.name} rejected")
            self.live[manifest.ref] = manifest
        return OperationResult()

    async def delete(
        self, refs: Sequence[ObjectRef], namespace: str
    ) -> OperationResult:
        await asyncio.sleep(self.delay)
        self.calls.append(("delete", [ref.name for ref in refs]))
        for ref in refs:
            self.live.pop(ref, None)
        return OperationResult()

    async def wait_until_ready(
        self, refs: Sequence[ObjectRef], namespace: str, timeout: float
    ) -> OperationResult:
        self.calls.append(("wait", [ref.name for ref in refs]))
        for ref in refs:
            if ref.name in self.hang:
                await asyncio.sleep(3600)
            if ref.name in self.fail_ready:
                return OperationResult(False, f"{ref.name} failed")
        return OperationResult()

    def names(self, action: str) -> list[str]:
        """Return the object names passed to an action, in call order."""
        return [name for call, names in self.calls if call == action for name in names]


def deployment(name: str = "{{ Release.name }}", replicas: str = "{{ Values.replicas }}") -> str:
    return (
        "apiVersion: apps/v1\n"
        "kind: Deployment\n"
        "metadata:\n"
        f"  name: {name}\n"
        "spec:\n"
        f"  replicas: {replicas}\n"
    )


def hook_job(name: str, events: str, weight: int = 0, policy: str | None = None) -> str:
    annotations = {"helm.sh/hook": events, "helm.sh/hook-weight": str(weight)}
    if policy:
        annotations["helm.sh/hook-delete-policy"] = policy
    return yaml.safe_dump(
        {
            "apiVersion": "batch/v1",
            "kind": "Job",
            "metadata": {"name": name, "annotations": annotations},
        }
    )


def build_chart(
    name: str = "web",
    version: str = "1.0.0",
    values: dict[str, Any] | None = None,
    templates: dict[str, str] | None = None,
    dependencies: list[dict[str, Any]] | None = None,
    extra: dict[str, str] | None = None,
    **metadata: Any,
) -> Chart:
    chart_yaml: dict[str, Any] = {"apiVersion": "v2", "name": name, "version": version}
    chart_yaml.update(metadata)
    if dependencies:
        chart_yaml["dependencies"] = dependencies
    files = {"Chart.yaml": yaml.safe_dump(chart_yaml)}
    if values is not None:
        files["values.yaml"] = yaml.safe_dump(values)
    for path, content in (templates or {}).items():
        files[f"templates/{path}"] = content
    files.update(extra or {})
    return Chart.from_files(files)


@pytest.fixture(name="cluster")
def cluster_fixture() -> FakeClusterClient:
    """Create a fake cluster client."""
    return FakeClusterClient()


@pytest.fixture(name="storage")
def storage_fixture() -> InMemoryStorage:
    """Create an in-memory storage backend."""
    return InMemoryStorage()


@pytest.fixture(name="chart_source")
def chart_source_fixture() -> InMemoryChartSource:
    """Create an empty in-memory chart source."""
    return InMemoryChartSource()


@pytest.fixture(name="web_chart")
def web_chart_fixture() -> Chart:
    """A chart with one deployment, defaults `replicas: 1` and `image: x`."""
    return build_chart(
        values={"replicas": 1, "image": "x"},
        templates={"deployment.yaml": deployment()},
    )

