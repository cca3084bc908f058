"""Render engine turning a chart tree and values into manifests.

Rendering walks the chart tree from the root, parent scopes before their
subcharts. Each scope has its own Jinja2 environment whose loader only sees
that chart's templates (plus those of library subcharts), so
`{% include %}` and `{% import %}` never cross into a sibling chart.

Every template is evaluated independently. A template that fails is recorded
and rendering continues with the next one; once all templates were visited
any failures are raised together as a `RenderAggregateError`.

Rendered text is split into YAML documents and each document is classified
once as either a `Manifest` or a `Hook`, based on its annotations.
"""

from collections.abc import Generator, Mapping
from dataclasses import dataclass, field
import logging
import posixpath
from typing import Any

import jinja2

from rudder.chart import Chart, Lock
from rudder.cluster import Capabilities
from rudder.config import GatingPolicy, RenderConfig
from rudder.context import trace_context
from rudder.dependency import verify_lock
from rudder.exceptions import (
    ChartIncompatible,
    InputException,
    RenderAggregateError,
    RenderFailure,
)
from rudder.manifest import (
    Hook,
    HookEvent,
    Manifest,
    join_manifests,
    parse_documents,
    sort_for_install,
)
from rudder.values import ROOT_SCOPE, ScopedValues, compose_values, scope_path
from rudder.version import Constraint

from .functions import FILTERS, GLOBALS
from .objects import CapabilitiesView, Files, ReleaseInfo, TemplateInfo

__all__ = [
    "RenderEngine",
    "RenderedOutput",
]

_LOGGER = logging.getLogger(__name__)

NOTES_FILE = "templates/NOTES.txt"
PARTIAL_PREFIX = "_"


@dataclass(frozen=True)
class RenderedOutput:
    """The result of rendering a chart tree."""

    files: dict[str, str]
    """Rendered text by template path, partials and notes excluded."""

    manifests: list[Manifest]
    """Standard manifests in install order."""

    hooks: list[Hook]
    """Hook manifests, ordered by weight and name."""

    values: dict[str, Any] = field(default_factory=dict)
    """The computed values of the root chart."""

    notes: str = ""
    """The rendered NOTES.txt of the root chart."""

    crds: list[Manifest] = field(default_factory=list)
    """Custom resource definitions shipped in the charts' `crds/` directories."""

    @property
    def manifest(self) -> str:
        """The manifests as a single multi-document YAML stream."""
        return join_manifests(self.manifests)

    def hooks_for(self, event: HookEvent) -> list[Hook]:
        return [hook for hook in self.hooks if event in hook.hook.events]


class _Environment(jinja2.Environment):
    """Environment where mapping keys win over attributes.

    This lets values use keys such as `items` or `keys`.
    """

    def getattr(self, obj: Any, attribute: str) -> Any:
        if isinstance(obj, Mapping) and not isinstance(obj, Files):
            try:
                return obj[attribute]
            except (KeyError, TypeError):
                pass
        return super().getattr(obj, attribute)


@dataclass(frozen=True)
class _Scope:
    path: str
    """Scope path, `""` for the root chart."""

    chart: Chart
    base: str
    """Path prefix for the scope's templates, e.g. `web/charts/db`."""


def _walk(chart: Chart, path: str, base: str) -> Generator[_Scope, None, None]:
    yield _Scope(path, chart, base)
    for scope_name, subchart in sorted(chart.subcharts.items()):
        yield from _walk(
            subchart, scope_path(path, scope_name), f"{base}/charts/{scope_name}"
        )


def _loader_templates(chart: Chart) -> dict[str, str]:
    """Templates visible from a chart scope, library subcharts included."""
    templates = dict(chart.templates)
    for scope_name, subchart in chart.subcharts.items():
        if subchart.is_library:
            for path, content in _loader_templates(subchart).items():
                templates[f"charts/{scope_name}/{path}"] = content
    return templates


def _is_partial(path: str) -> bool:
    return posixpath.basename(path).startswith(PARTIAL_PREFIX)


class RenderEngine:
    """Renders chart trees into manifests and hooks."""

    def __init__(
        self,
        config: RenderConfig | None = None,
        policy: GatingPolicy = GatingPolicy.CONDITION_OVER_TAGS,
    ) -> None:
        """Initialize RenderEngine."""
        self._config = config or RenderConfig()
        self._policy = policy

    def _environment(self, chart: Chart) -> jinja2.Environment:
        env = _Environment(
            loader=jinja2.DictLoader(_loader_templates(chart)),
            undefined=(
                jinja2.StrictUndefined
                if self._config.strict_undefined
                else jinja2.ChainableUndefined
            ),
            trim_blocks=True,
            lstrip_blocks=True,
            keep_trailing_newline=True,
            autoescape=False,
        )
        env.filters.update(FILTERS)
        env.globals.update(GLOBALS)
        return env

    def _check_compatible(self, scopes: list[_Scope], capabilities: Capabilities) -> None:
        for scope in scopes:
            if not (kube_version := scope.chart.metadata.kube_version):
                continue
            if not Constraint.parse(kube_version).check(
                capabilities.version, include_prereleases=True
            ):
                raise ChartIncompatible(
                    f"Chart {scope.chart.reference} requires kubeVersion "
                    f"'{kube_version}', cluster is {capabilities.kube_version}"
                )

    def render(
        self,
        chart: Chart,
        lock: Lock | None = None,
        values: dict[str, Any] | None = None,
        release: ReleaseInfo | None = None,
        capabilities: Capabilities | None = None,
    ) -> RenderedOutput:
        """Render every enabled scope of the chart tree.

        The chart's own lock is used when no lock is given. Raises LockMismatch
        if the chart tree does not carry the locked subcharts, ChartIncompatible
        if a chart rejects the cluster version and RenderAggregateError listing
        every template that failed.
        """
        release = release or ReleaseInfo(name=chart.name)
        capabilities = capabilities or Capabilities()
        if (lock := lock or chart.lock) is not None:
            verify_lock(chart, lock)

        with trace_context(f"render {chart.reference}"):
            scoped = compose_values(chart, values, policy=self._policy)
            scopes = [
                scope
                for scope in _walk(chart, ROOT_SCOPE, chart.name)
                if scope.path in scoped.scopes
            ]
            self._check_compatible(scopes, capabilities)

            view = CapabilitiesView.from_capabilities(capabilities)
            files: dict[str, str] = {}
            documents: list[Manifest] = []
            crds: list[Manifest] = []
            notes = ""
            failures: list[RenderFailure] = []
            for scope in scopes:
                with trace_context(f"scope {scope.base}"):
                    rendered, scope_notes = self._render_scope(
                        scope, scoped, release, view, failures
                    )
                for path, text in rendered.items():
                    files[path] = text
                    documents.extend(self._parse(path, text, capabilities, failures))
                if scope.path == ROOT_SCOPE:
                    notes = scope_notes
                for path, content in sorted(scope.chart.crds.items()):
                    crds.extend(
                        self._parse(f"{scope.base}/{path}", content, None, failures)
                    )

        if failures:
            _LOGGER.error(
                "Rendering %s failed for %d template(s)", chart.reference, len(failures)
            )
            raise RenderAggregateError(failures)

        manifests = [doc for doc in documents if not isinstance(doc, Hook)]
        hooks = sorted(
            (doc for doc in documents if isinstance(doc, Hook)),
            key=lambda hook: hook.sort_key,
        )
        _LOGGER.info(
            "Rendered %s: %d manifests, %d hooks",
            chart.reference,
            len(manifests),
            len(hooks),
        )
        return RenderedOutput(
            files=files,
            manifests=sort_for_install(manifests),
            hooks=hooks,
            values=scoped.root,
            notes=notes,
            crds=crds,
        )

    def _render_scope(
        self,
        scope: _Scope,
        scoped: ScopedValues,
        release: ReleaseInfo,
        capabilities: CapabilitiesView,
        failures: list[RenderFailure],
    ) -> tuple[dict[str, str], str]:
        """Render the templates of one scope, returning files and notes."""
        if scope.chart.is_library:
            _LOGGER.debug("Skipping library chart %s", scope.chart.reference)
            return {}, ""
        env = self._environment(scope.chart)
        context: dict[str, Any] = {
            "Values": scoped.scope(scope.path),
            "Release": release,
            "Chart": scope.chart.metadata,
            "Capabilities": capabilities,
            "Files": Files(scope.chart.files),
        }
        rendered: dict[str, str] = {}
        notes = ""
        for path in sorted(scope.chart.templates):
            if _is_partial(path):
                continue
            name = f"{scope.base}/{path}"
            context["Template"] = TemplateInfo(
                name=name, base_path=f"{scope.base}/templates"
            )
            _LOGGER.debug("Rendering template %s", name)
            try:
                text = env.get_template(path).render(context)
            except Exception as err:
                _LOGGER.debug("Template %s failed: %s", name, err)
                failures.append(RenderFailure(name, f"{type(err).__name__}: {err}"))
                continue
            if path == NOTES_FILE:
                notes = text
                continue
            rendered[name] = text
        return rendered, notes

    def _parse(
        self,
        path: str,
        text: str,
        capabilities: Capabilities | None,
        failures: list[RenderFailure],
    ) -> list[Manifest]:
        """Classify the documents of one file, recording a failure on error."""
        try:
            documents = parse_documents(path, text)
        except InputException as err:
            failures.append(RenderFailure(path, str(err)))
            return []
        if capabilities is None or not self._config.strict_capabilities:
            return documents
        missing = [
            doc for doc in documents if not capabilities.has(doc.api_version, doc.kind)
        ]
        if missing:
            refs = ", ".join(f"{doc.api_version}/{doc.kind}" for doc in missing)
            failures.append(
                RenderFailure(path, f"API not available in the cluster: {refs}")
            )
            return []
        return documents
