"""Tests for tracing release operations."""

from collections.abc import Generator
import logging

import pytest

from rudder.chart import Chart
from rudder.context import (
    ReleaseLogFilter,
    current_release,
    release_context,
    trace_context,
)
from rudder.release import ReleaseController
from rudder.storage import InMemoryStorage

from conftest import FakeClusterClient

_LOGGER = logging.getLogger("rudder.tests")


@pytest.fixture(name="records")
def records_fixture(
    caplog: pytest.LogCaptureFixture,
) -> Generator[pytest.LogCaptureFixture, None, None]:
    """Capture debug logs annotated with the running release operation."""
    caplog.set_level(logging.DEBUG)
    log_filter = ReleaseLogFilter()
    caplog.handler.addFilter(log_filter)
    yield caplog
    caplog.handler.removeFilter(log_filter)


def _record(caplog: pytest.LogCaptureFixture, message: str) -> logging.LogRecord:
    return next(r for r in caplog.records if r.getMessage() == message)


def test_outside_operation(records: pytest.LogCaptureFixture) -> None:
    """Test that records logged outside an operation carry placeholders."""
    _LOGGER.info("idle")
    record = _record(records, "idle")
    assert (record.release, record.operation, record.phase) == ("-", "-", "-")
    assert current_release() is None


def test_release_context(records: pytest.LogCaptureFixture) -> None:
    """Test that nested phases and operations are recorded on log records."""
    with release_context("upgrade", "web"):
        assert current_release() == "web"
        with trace_context("render web:1.0.0"):
            _LOGGER.info("rendering")
        with release_context("rollback", "web"):
            _LOGGER.info("rolling back")
        _LOGGER.info("upgraded")
    assert current_release() is None

    record = _record(records, "rendering")
    assert record.release == "web"
    assert record.operation == "upgrade"
    assert record.phase == "upgrade web > render web:1.0.0"
    record = _record(records, "rolling back")
    assert record.operation == "rollback"
    assert record.phase == "upgrade web > rollback web"
    assert _record(records, "upgraded").operation == "upgrade"


def test_trace_context_failure(records: pytest.LogCaptureFixture) -> None:
    """Test that a phase left by an exception is logged as failed."""
    with pytest.raises(ValueError):
        with trace_context("apply"):
            raise ValueError("broken")
    messages = [r.getMessage() for r in records.records]
    assert "[Trace] > apply" in messages
    assert any(m.startswith("[Trace] ! apply (") for m in messages)


async def test_controller_operation(
    records: pytest.LogCaptureFixture,
    storage: InMemoryStorage,
    cluster: FakeClusterClient,
    web_chart: Chart,
) -> None:
    """Test that controller logs name the release and operation."""
    controller = ReleaseController(storage, cluster)
    await controller.install("web", web_chart)
    record = _record(records, "Release web revision 1 is deployed")
    assert record.release == "web"
    assert record.operation == "install"
    assert record.phase == "install web"
