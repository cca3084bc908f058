"""Tests for the release storage backends."""

import asyncio
from datetime import datetime, timezone
from pathlib import Path

import pytest

from rudder.exceptions import ConcurrentModification, InputException, InvalidTransition, NotFound
from rudder.manifest import Hook, parse_documents
from rudder.storage import (
    FileSystemStorage,
    InMemoryStorage,
    ReleaseStatus,
    Revision,
    Storage,
)

from conftest import build_chart, deployment, hook_job

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def make_revision(
    number: int,
    status: ReleaseStatus = ReleaseStatus.DEPLOYED,
    name: str = "web",
) -> Revision:
    (hook,) = parse_documents("web/templates/job.yaml", hook_job("migrate", "pre-upgrade", 3))
    assert isinstance(hook, Hook)
    return Revision(
        name=name,
        namespace="default",
        revision=number,
        chart=build_chart(
            values={"replicas": 1},
            templates={"deployment.yaml": deployment()},
            appVersion="2.0",
            dependencies=[{"name": "db", "version": "^1.0.0", "import-values": ["data"]}],
        ),
        status=status,
        config={"replicas": number},
        values={"replicas": number, "image": "x"},
        manifest="---\n# Source: web/templates/deployment.yaml\n"
        + deployment(name="web", replicas="1"),
        hooks=[hook],
        notes="Thanks",
        description="Install complete",
        first_deployed=NOW,
        last_deployed=NOW,
    )


@pytest.fixture(name="backend", params=["memory", "filesystem"])
def backend_fixture(request: pytest.FixtureRequest, tmp_path: Path) -> Storage:
    """Create each storage backend."""
    if request.param == "memory":
        return InMemoryStorage()
    return FileSystemStorage(tmp_path / "releases")


async def test_create_and_get(backend: Storage) -> None:
    """Test that a stored revision reads back unchanged."""
    revision = make_revision(1)
    await backend.create_if_absent(revision)
    assert await backend.get("web", 1) == revision
    assert await backend.list_revisions("web") == [revision]
    assert await backend.list_names() == ["web"]


async def test_empty(backend: Storage) -> None:
    """Test reading a release that does not exist."""
    assert await backend.list_revisions("web") == []
    assert await backend.list_names() == []
    assert await backend.last("web") is None
    assert await backend.deployed("web") is None
    with pytest.raises(NotFound):
        await backend.get("web", 1)
    with pytest.raises(NotFound):
        await backend.delete("web", 1)


async def test_create_conflict(backend: Storage) -> None:
    """Test that a revision number can only be created once."""
    await backend.create_if_absent(make_revision(1))
    with pytest.raises(ConcurrentModification, match="already exists"):
        await backend.create_if_absent(make_revision(1, ReleaseStatus.FAILED))
    assert (await backend.get("web", 1)).status == ReleaseStatus.DEPLOYED


async def test_concurrent_create(backend: Storage) -> None:
    """Test that exactly one of two racing creates succeeds."""
    results = await asyncio.gather(
        backend.create_if_absent(make_revision(2, ReleaseStatus.PENDING_UPGRADE)),
        backend.create_if_absent(make_revision(2, ReleaseStatus.PENDING_ROLLBACK)),
        return_exceptions=True,
    )
    errors = [result for result in results if isinstance(result, Exception)]
    assert len(errors) == 1
    assert isinstance(errors[0], ConcurrentModification)


async def test_history_order_and_queries(backend: Storage) -> None:
    """Test ordering of revisions and the derived queries."""
    for number, status in [
        (2, ReleaseStatus.DEPLOYED),
        (10, ReleaseStatus.PENDING_UPGRADE),
        (1, ReleaseStatus.SUPERSEDED),
    ]:
        await backend.create_if_absent(make_revision(number, status))
    await backend.create_if_absent(make_revision(1, name="other"))
    assert [r.revision for r in await backend.list_revisions("web")] == [1, 2, 10]
    assert (await backend.last("web")).revision == 10
    assert (await backend.deployed("web")).revision == 2
    assert [r.revision for r in await backend.pending("web")] == [10]
    assert await backend.list_names() == ["other", "web"]


async def test_update_status(backend: Storage) -> None:
    """Test moving a revision along an allowed transition."""
    await backend.create_if_absent(make_revision(1, ReleaseStatus.PENDING_INSTALL))
    updated = await backend.update_status(
        "web", 1, ReleaseStatus.DEPLOYED, "Install complete", expected=ReleaseStatus.PENDING_INSTALL
    )
    assert updated.status == ReleaseStatus.DEPLOYED
    assert await backend.get("web", 1) == updated
    assert updated.config == {"replicas": 1}


async def test_update_status_compare_and_swap(backend: Storage) -> None:
    """Test that a status update fails when the stored status changed."""
    await backend.create_if_absent(make_revision(1, ReleaseStatus.DEPLOYED))
    with pytest.raises(ConcurrentModification, match="expected pending-install"):
        await backend.update_status(
            "web", 1, ReleaseStatus.FAILED, expected=ReleaseStatus.PENDING_INSTALL
        )
    assert (await backend.get("web", 1)).status == ReleaseStatus.DEPLOYED


async def test_concurrent_status_updates(backend: Storage) -> None:
    """Test that only one of two racing conditional updates wins."""
    await backend.create_if_absent(make_revision(1, ReleaseStatus.DEPLOYED))
    results = await asyncio.gather(
        backend.update_status(
            "web", 1, ReleaseStatus.SUPERSEDED, expected=ReleaseStatus.DEPLOYED
        ),
        backend.update_status(
            "web", 1, ReleaseStatus.UNINSTALLING, expected=ReleaseStatus.DEPLOYED
        ),
        return_exceptions=True,
    )
    assert isinstance(results[0], Revision)
    assert isinstance(results[1], ConcurrentModification)
    assert (await backend.get("web", 1)).status == ReleaseStatus.SUPERSEDED


async def test_invalid_transition(backend: Storage) -> None:
    """Test that a status change outside the lifecycle is rejected."""
    await backend.create_if_absent(make_revision(1, ReleaseStatus.SUPERSEDED))
    with pytest.raises(InvalidTransition):
        await backend.update_status("web", 1, ReleaseStatus.DEPLOYED)


async def test_delete(backend: Storage) -> None:
    """Test removing revisions."""
    await backend.create_if_absent(make_revision(1, ReleaseStatus.SUPERSEDED))
    await backend.create_if_absent(make_revision(2))
    await backend.delete("web", 1)
    assert [r.revision for r in await backend.list_revisions("web")] == [2]
    await backend.delete("web", 2)
    assert await backend.list_names() == []


async def test_revision_keeps_chart_and_hooks(backend: Storage) -> None:
    """Test that the chart tree and hooks survive storage."""
    await backend.create_if_absent(make_revision(1))
    stored = await backend.get("web", 1)
    assert stored.chart.metadata.app_version == "2.0"
    assert stored.chart.metadata.dependencies[0].import_values == ["data"]
    assert stored.hooks[0].hook.weight == 3
    assert [m.name for m in stored.manifests] == ["web"]
    assert stored.first_deployed == NOW


async def test_filesystem_layout(tmp_path: Path) -> None:
    """Test that each revision is one YAML file under the release directory."""
    storage = FileSystemStorage(tmp_path)
    await storage.create_if_absent(make_revision(3))
    path = tmp_path / "web" / "00000003.yaml"
    assert path.exists()
    assert Revision.parse_yaml(path.read_text()) == make_revision(3)
    (tmp_path / "web" / "notes.txt").write_text("ignored")
    (tmp_path / "Not_A_Release").mkdir()
    assert [r.revision for r in await storage.list_revisions("web")] == [3]
    assert await storage.list_names() == ["web"]


async def test_filesystem_rejects_invalid_names(tmp_path: Path) -> None:
    """Test that release names must be safe to use as a directory name."""
    storage = FileSystemStorage(tmp_path)
    with pytest.raises(InputException, match="Invalid release name"):
        await storage.create_if_absent(make_revision(1, name="../escape"))
    with pytest.raises(InputException):
        await storage.list_revisions("Web")


async def test_one_pending_revision(backend: Storage) -> None:
    """Test that no second revision can become pending while one is."""
    await backend.create_if_absent(make_revision(1))
    await backend.create_if_absent(make_revision(2, ReleaseStatus.PENDING_UPGRADE))
    with pytest.raises(ConcurrentModification, match="in progress"):
        await backend.create_if_absent(make_revision(3, ReleaseStatus.PENDING_ROLLBACK))
    with pytest.raises(ConcurrentModification, match="in progress"):
        await backend.update_status("web", 1, ReleaseStatus.UNINSTALLING)
    assert [r.revision for r in await backend.pending("web")] == [2]
    assert (await backend.get("web", 1)).status == ReleaseStatus.DEPLOYED


async def test_create_checks_basis(backend: Storage) -> None:
    """Test that a create fails when the revision it was based on changed."""
    basis = make_revision(1)
    await backend.create_if_absent(basis)
    await backend.update_status("web", 1, ReleaseStatus.UNINSTALLING)
    await backend.update_status("web", 1, ReleaseStatus.UNINSTALLED)
    with pytest.raises(ConcurrentModification, match="now uninstalled"):
        await backend.create_if_absent(
            make_revision(2, ReleaseStatus.PENDING_UPGRADE), basis=basis
        )
    assert [r.revision for r in await backend.list_revisions("web")] == [1]


async def test_update_status_expected_latest(backend: Storage) -> None:
    """Test that a status update fails when a newer revision appeared."""
    await backend.create_if_absent(make_revision(1))
    await backend.create_if_absent(make_revision(2))
    with pytest.raises(ConcurrentModification, match="newer revision 2"):
        await backend.update_status(
            "web",
            1,
            ReleaseStatus.UNINSTALLING,
            expected=ReleaseStatus.DEPLOYED,
            expected_latest=1,
        )
    assert (await backend.get("web", 1)).status == ReleaseStatus.DEPLOYED
    updated = await backend.update_status(
        "web", 2, ReleaseStatus.UNINSTALLING, expected_latest=2
    )
    assert updated.status == ReleaseStatus.UNINSTALLING


async def test_filesystem_lock_file(tmp_path: Path) -> None:
    """Test that writes wait for the release lock held by another process."""
    storage = FileSystemStorage(tmp_path, lock_timeout=0.05)
    await storage.create_if_absent(make_revision(1))
    lock = tmp_path / "web" / ".lock"
    assert not lock.exists()

    lock.write_text("12345\n")
    with pytest.raises(ConcurrentModification, match="held by another process"):
        await storage.update_status("web", 1, ReleaseStatus.SUPERSEDED)
    assert (await storage.get("web", 1)).status == ReleaseStatus.DEPLOYED
    assert [r.revision for r in await storage.list_revisions("web")] == [1]

    lock.unlink()
    await storage.update_status("web", 1, ReleaseStatus.SUPERSEDED)
    assert not lock.exists()
