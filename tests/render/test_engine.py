"""Tests for the render engine."""

import pytest
import yaml

from rudder.chart import Chart, Lock, LockEntry
from rudder.cluster import Capabilities
from rudder.config import RenderConfig
from rudder.dependency import declaration_digest
from rudder.exceptions import ChartIncompatible, LockMismatch, RenderAggregateError
from rudder.manifest import Hook, HookEvent
from rudder.render import ReleaseInfo, RenderEngine

from conftest import build_chart, deployment, hook_job

CONFIGMAP = """\
apiVersion: v1
kind: ConfigMap
metadata:
  name: {name}
data:
  value: {value}
"""

INGRESS = """\
{% if Values.ingress.enabled %}
{{ require_api("networking.k8s.io/v1", "Ingress") }}
apiVersion: networking.k8s.io/v1
kind: Ingress
metadata:
  name: {{ Release.name }}
{% endif %}
"""

SERVICE_MONITOR = """\
apiVersion: monitoring.coreos.com/v1
kind: ServiceMonitor
metadata:
  name: {{ Release.name }}
"""


@pytest.fixture(name="engine")
def engine_fixture() -> RenderEngine:
    """Create a render engine with the default configuration."""
    return RenderEngine()


@pytest.fixture(name="release")
def release_fixture() -> ReleaseInfo:
    """Release metadata used for rendering."""
    return ReleaseInfo(name="rel", namespace="prod")


def test_render_manifests(engine: RenderEngine, web_chart: Chart, release: ReleaseInfo) -> None:
    """Test rendering a chart with user values."""
    output = engine.render(web_chart, values={"replicas": 2}, release=release)
    assert list(output.files) == ["web/templates/deployment.yaml"]
    assert len(output.manifests) == 1
    manifest = output.manifests[0]
    assert manifest.kind == "Deployment"
    assert manifest.name == "rel"
    assert manifest.path == "web/templates/deployment.yaml"
    assert yaml.safe_load(manifest.content)["spec"]["replicas"] == 2
    assert output.values == {"replicas": 2, "image": "x"}
    assert output.hooks == []
    assert output.manifest.startswith("---\n# Source: web/templates/deployment.yaml\n")


def test_render_is_deterministic(engine: RenderEngine, release: ReleaseInfo) -> None:
    """Test that rendering the same inputs twice gives identical output."""
    chart = build_chart(
        values={"labels": {"b": "2", "a": "1"}},
        templates={
            "deployment.yaml": deployment(),
            "cm.yaml": CONFIGMAP.format(
                name="cfg", value="{{ Values.labels | to_json | quote }}"
            ),
            "secret.yaml": CONFIGMAP.format(
                name="secret", value='"{{ rand_alpha_num(16) }}"'
            ),
        },
    )
    values = {"replicas": 3}
    first = engine.render(chart, values=values, release=release)
    second = engine.render(chart, values=values, release=release)
    assert first == second
    assert first.manifest == second.manifest


def test_render_collects_all_failures(engine: RenderEngine, release: ReleaseInfo) -> None:
    """Test that every failing template is reported, not only the first."""
    chart = build_chart(
        values={"replicas": 1},
        templates={
            "a.yaml": "value: {{ Values.missing.deep }}\n",
            "b.yaml": deployment(),
            "c.yaml": "{{ fail('boom') }}\n",
            "d.yaml": "just a string\n",
        },
    )
    with pytest.raises(RenderAggregateError) as exc_info:
        engine.render(chart, release=release)
    failures = exc_info.value.failures
    assert [failure.path for failure in failures] == [
        "web/templates/a.yaml",
        "web/templates/c.yaml",
        "web/templates/d.yaml",
    ]
    assert "UndefinedError" in failures[0].message
    assert "TemplateFailure: boom" in failures[1].message
    assert "Expected a mapping" in failures[2].message
    assert "3 template(s) failed" in str(exc_info.value)


def test_render_collects_runtime_errors(engine: RenderEngine, release: ReleaseInfo) -> None:
    """Test that arbitrary errors raised while rendering are collected per file."""
    chart = build_chart(
        values={"replicas": 1, "ports": []},
        templates={
            "a.yaml": "value: {{ 1 // 0 }}\n",
            "b.yaml": "{{ fail('b broken') }}\n",
            "c.yaml": deployment(),
            "d.yaml": "port: {{ Values.ports | first }}\n",
        },
    )
    with pytest.raises(RenderAggregateError) as exc_info:
        engine.render(chart, release=release)
    failures = exc_info.value.failures
    assert [failure.path for failure in failures] == [
        "web/templates/a.yaml",
        "web/templates/b.yaml",
        "web/templates/d.yaml",
    ]
    assert failures[0].message.startswith("ZeroDivisionError: ")
    assert failures[1].message == "TemplateFailure: b broken"


def test_render_lenient_undefined(release: ReleaseInfo) -> None:
    """Test that undefined values render empty when not strict."""
    engine = RenderEngine(RenderConfig(strict_undefined=False))
    chart = build_chart(
        templates={"cm.yaml": CONFIGMAP.format(name="cfg", value='"{{ Values.missing.deep }}"')}
    )
    output = engine.render(chart, release=release)
    assert yaml.safe_load(output.manifests[0].content)["data"]["value"] == ""


def test_mapping_keys_win_over_attributes(engine: RenderEngine, release: ReleaseInfo) -> None:
    """Test that value keys named like dict methods are reachable."""
    chart = build_chart(
        values={"items": ["a", "b"]},
        templates={
            "cm.yaml": CONFIGMAP.format(name="cfg", value='"{{ Values.items | length }}"')
        },
    )
    output = engine.render(chart, release=release)
    assert yaml.safe_load(output.manifests[0].content)["data"]["value"] == "2"


def test_require_api_only_when_reached(engine: RenderEngine, release: ReleaseInfo) -> None:
    """Test that an API requirement in a skipped branch has no effect."""
    chart = build_chart(
        values={"ingress": {"enabled": False}}, templates={"ingress.yaml": INGRESS}
    )
    capabilities = Capabilities(api_versions=frozenset({"v1", "apps/v1"}))
    output = engine.render(chart, release=release, capabilities=capabilities)
    assert output.manifests == []

    with pytest.raises(
        RenderAggregateError, match="networking.k8s.io/v1/Ingress is not available"
    ):
        engine.render(
            chart,
            values={"ingress": {"enabled": True}},
            release=release,
            capabilities=capabilities,
        )

    output = engine.render(chart, values={"ingress": {"enabled": True}}, release=release)
    assert [m.kind for m in output.manifests] == ["Ingress"]


def test_strict_capabilities(release: ReleaseInfo) -> None:
    """Test rejecting output that uses an API the cluster does not serve."""
    chart = build_chart(templates={"monitor.yaml": SERVICE_MONITOR})
    assert RenderEngine().render(chart, release=release).manifests

    strict = RenderEngine(RenderConfig(strict_capabilities=True))
    with pytest.raises(RenderAggregateError, match="API not available in the cluster"):
        strict.render(chart, release=release)

    capabilities = Capabilities().with_api_versions("monitoring.coreos.com/v1")
    output = strict.render(chart, release=release, capabilities=capabilities)
    assert [m.kind for m in output.manifests] == ["ServiceMonitor"]


def test_hooks_are_classified(engine: RenderEngine, release: ReleaseInfo) -> None:
    """Test that annotated documents become hooks ordered by weight."""
    chart = build_chart(
        values={"replicas": 1},
        templates={
            "deployment.yaml": deployment(),
            "hooks.yaml": (
                hook_job("migrate", "pre-install,pre-upgrade", weight=5)
                + "---\n"
                + hook_job("seed", "pre-install", weight=-1, policy="hook-succeeded")
            ),
        },
    )
    output = engine.render(chart, release=release)
    assert [m.kind for m in output.manifests] == ["Deployment"]
    assert [hook.name for hook in output.hooks] == ["seed", "migrate"]
    assert all(isinstance(hook, Hook) for hook in output.hooks)
    assert output.hooks[0].hook.weight == -1
    assert [hook.name for hook in output.hooks_for(HookEvent.PRE_UPGRADE)] == ["migrate"]
    assert "seed" not in output.manifest


def test_invalid_hook_annotation(engine: RenderEngine, release: ReleaseInfo) -> None:
    """Test that an unknown hook event fails the template."""
    chart = build_chart(templates={"hook.yaml": hook_job("bad", "pre-launch")})
    with pytest.raises(RenderAggregateError, match="Unknown hook event 'pre-launch'"):
        engine.render(chart, release=release)


def test_partials_and_macros(engine: RenderEngine, release: ReleaseInfo) -> None:
    """Test that partials are importable but never emitted."""
    chart = build_chart(
        templates={
            "_helpers.tpl": "{% macro fullname(name) %}{{ name }}-web{% endmacro %}",
            "cm.yaml": (
                '{% import "templates/_helpers.tpl" as h %}'
                + CONFIGMAP.format(name="{{ h.fullname(Release.name) }}", value="x")
            ),
        }
    )
    output = engine.render(chart, release=release)
    assert list(output.files) == ["web/templates/cm.yaml"]
    assert output.manifests[0].name == "rel-web"


def test_notes(engine: RenderEngine, release: ReleaseInfo) -> None:
    """Test that NOTES.txt is returned separately from the manifests."""
    chart = build_chart(templates={"NOTES.txt": "Installed {{ Release.name }} in {{ Release.namespace }}\n"})
    output = engine.render(chart, release=release)
    assert output.notes == "Installed rel in prod\n"
    assert output.files == {}


@pytest.fixture(name="parent")
def parent_fixture() -> Chart:
    """A chart with an enabled and a disabled subchart."""
    db = build_chart(
        name="db",
        values={"port": 5432},
        templates={
            "cm.yaml": CONFIGMAP.format(name="{{ Release.name }}-db", value='"{{ Values.port }}"'),
            "NOTES.txt": "db notes",
        },
    )
    cache = build_chart(
        name="cache",
        templates={"cm.yaml": CONFIGMAP.format(name="cache", value="x")},
    )
    chart = build_chart(
        values={"db": {"port": 6432}, "cache": {"enabled": False}},
        templates={"cm.yaml": CONFIGMAP.format(name="{{ Release.name }}", value="x")},
        dependencies=[
            {"name": "db"},
            {"name": "cache", "condition": "cache.enabled"},
        ],
    )
    return chart.with_subcharts({"db": db, "cache": cache})


def test_subchart_scopes(engine: RenderEngine, parent: Chart, release: ReleaseInfo) -> None:
    """Test that subcharts render with their own values and paths."""
    output = engine.render(parent, release=release)
    assert sorted(output.files) == [
        "web/charts/db/templates/cm.yaml",
        "web/templates/cm.yaml",
    ]
    db = next(m for m in output.manifests if m.name == "rel-db")
    assert yaml.safe_load(db.content)["data"]["value"] == "6432"
    assert output.notes == ""

    output = engine.render(parent, values={"cache": {"enabled": True}}, release=release)
    assert "web/charts/cache/templates/cm.yaml" in output.files


def test_subchart_cannot_see_parent_templates(engine: RenderEngine, release: ReleaseInfo) -> None:
    """Test that a subchart's loader is restricted to its own templates."""
    child = build_chart(
        name="child", templates={"bad.yaml": '{% include "templates/_helpers.tpl" %}'}
    )
    chart = build_chart(
        templates={"_helpers.tpl": "kind: Secret"}
    ).with_subcharts({"child": child})
    with pytest.raises(RenderAggregateError) as exc_info:
        engine.render(chart, release=release)
    (failure,) = exc_info.value.failures
    assert failure.path == "web/charts/child/templates/bad.yaml"
    assert "TemplateNotFound" in failure.message


def test_library_subchart(engine: RenderEngine, release: ReleaseInfo) -> None:
    """Test that library charts provide templates without rendering any."""
    common = build_chart(
        name="common",
        type="library",
        templates={
            "_names.tpl": "{% macro name(release) %}{{ release }}-common{% endmacro %}",
            "ignored.yaml": CONFIGMAP.format(name="ignored", value="x"),
        },
    )
    chart = build_chart(
        templates={
            "cm.yaml": (
                '{% import "charts/common/templates/_names.tpl" as common %}'
                + CONFIGMAP.format(name="{{ common.name(Release.name) }}", value="x")
            )
        }
    ).with_subcharts({"common": common})
    output = engine.render(chart, release=release)
    assert [m.name for m in output.manifests] == ["rel-common"]


def test_kube_version_incompatible(engine: RenderEngine, release: ReleaseInfo) -> None:
    """Test that a chart rejecting the cluster version fails before rendering."""
    chart = build_chart(kubeVersion=">=1.31.0", templates={"d.yaml": "{{ fail('x') }}"})
    with pytest.raises(ChartIncompatible, match="requires kubeVersion"):
        engine.render(chart, release=release)
    with pytest.raises(RenderAggregateError):
        engine.render(chart, release=release, capabilities=Capabilities(kube_version="1.31.2"))


def test_capabilities_in_templates(engine: RenderEngine, release: ReleaseInfo) -> None:
    """Test the Capabilities object exposed to templates."""
    chart = build_chart(
        templates={
            "cm.yaml": CONFIGMAP.format(
                name="cfg",
                value=(
                    '"{{ Capabilities.major }}.{{ Capabilities.minor }}'
                    '-{{ \'batch/v1\' in Capabilities.api_versions }}"'
                ),
            )
        }
    )
    output = engine.render(
        chart, release=release, capabilities=Capabilities(kube_version="1.29.3")
    )
    assert yaml.safe_load(output.manifests[0].content)["data"]["value"] == "1.29-True"


def test_files_and_chart_objects(engine: RenderEngine, release: ReleaseInfo) -> None:
    """Test reading chart files and metadata from templates."""
    chart = build_chart(
        version="1.2.3",
        templates={
            "cm.yaml": (
                "apiVersion: v1\n"
                "kind: ConfigMap\n"
                "metadata:\n"
                "  name: {{ Chart.name }}-{{ Chart.version }}\n"
                "data:\n"
                '  app.ini: {{ Files.get("config/app.ini") | to_json }}\n'
                "  {{ Files.glob('config/*.json').as_config() | indent(2) | trim }}\n"
            )
        },
        extra={"config/app.ini": "[main]\nkey=value\n", "config/extra.json": "{}"},
    )
    output = engine.render(chart, release=release)
    manifest = output.manifests[0]
    assert manifest.name == "web-1.2.3"
    data = yaml.safe_load(manifest.content)["data"]
    assert data == {"app.ini": "[main]\nkey=value\n", "extra.json": "{}"}


def test_crds_are_collected(engine: RenderEngine, release: ReleaseInfo) -> None:
    """Test that CRDs are returned apart from manifests and never templated."""
    chart = build_chart(
        templates={"d.yaml": deployment(replicas="1")},
        extra={
            "crds/crontab.yaml": (
                "apiVersion: apiextensions.k8s.io/v1\n"
                "kind: CustomResourceDefinition\n"
                "metadata:\n"
                "  name: crontabs.example.com\n"
                "  annotations:\n"
                "    note: '{{ not templated }}'\n"
            )
        },
    )
    output = engine.render(chart, release=release)
    assert [crd.name for crd in output.crds] == ["crontabs.example.com"]
    assert output.crds[0].annotations == {"note": "{{ not templated }}"}
    assert [m.kind for m in output.manifests] == ["Deployment"]


def test_lock_must_match_subcharts(engine: RenderEngine, release: ReleaseInfo) -> None:
    """Test that rendering refuses a chart missing its locked subcharts."""
    chart = build_chart(dependencies=[{"name": "db", "version": "1.0.0"}])
    lock = Lock(
        digest=declaration_digest(chart.metadata.dependencies),
        dependencies=[LockEntry(name="db", version="1.0.0")],
    )
    with pytest.raises(LockMismatch):
        engine.render(chart.with_lock(lock), release=release)
    with pytest.raises(LockMismatch):
        engine.render(chart, lock, release=release)

    db = build_chart(name="db", version="1.0.0")
    output = engine.render(chart.with_subcharts({"db": db}), lock, release=release)
    assert output.manifests == []
