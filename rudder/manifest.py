"""Representation of rendered manifests.

The render engine produces text; this module splits that text into individual
YAML documents and classifies each one exactly once. A document annotated with
`helm.sh/hook` becomes a `Hook` carrying its `HookMetadata`, every other
document is a plain `Manifest`:

    RenderedFile = Manifest | Hook
"""

from dataclasses import dataclass, field
from enum import StrEnum
import logging
import re
from typing import Any

import yaml
from mashumaro import DataClassDictMixin
from mashumaro.config import BaseConfig

from .exceptions import InputException

__all__ = [
    "ObjectRef",
    "Manifest",
    "Hook",
    "HookMetadata",
    "HookEvent",
    "HookDeletePolicy",
    "RenderedFile",
    "parse_documents",
    "sort_for_install",
    "sort_for_uninstall",
]

_LOGGER = logging.getLogger(__name__)

HOOK_ANNOTATION = "helm.sh/hook"
HOOK_WEIGHT_ANNOTATION = "helm.sh/hook-weight"
HOOK_DELETE_POLICY_ANNOTATION = "helm.sh/hook-delete-policy"
HOOK_TIMEOUT_ANNOTATION = "helm.sh/hook-timeout"
RESOURCE_POLICY_ANNOTATION = "helm.sh/resource-policy"
RESOURCE_POLICY_KEEP = "keep"

# Kinds are created in this order and removed in reverse, unknown kinds last
INSTALL_ORDER = [
    "PriorityClass",
    "Namespace",
    "NetworkPolicy",
    "ResourceQuota",
    "LimitRange",
    "PodSecurityPolicy",
    "PodDisruptionBudget",
    "ServiceAccount",
    "Secret",
    "SecretList",
    "ConfigMap",
    "StorageClass",
    "PersistentVolume",
    "PersistentVolumeClaim",
    "CustomResourceDefinition",
    "ClusterRole",
    "ClusterRoleList",
    "ClusterRoleBinding",
    "ClusterRoleBindingList",
    "Role",
    "RoleList",
    "RoleBinding",
    "RoleBindingList",
    "Service",
    "DaemonSet",
    "Pod",
    "ReplicationController",
    "ReplicaSet",
    "Deployment",
    "HorizontalPodAutoscaler",
    "StatefulSet",
    "Job",
    "CronJob",
    "IngressClass",
    "Ingress",
    "APIService",
]
_KIND_RANK = {kind: rank for rank, kind in enumerate(INSTALL_ORDER)}

_DOCUMENT_SEPARATOR = re.compile(r"(?m)^---[ \t]*(?:#.*)?$")
_DURATION_RE = re.compile(r"^(?P<amount>\d+(?:\.\d+)?)(?P<unit>ms|s|m|h)?$")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0, None: 1.0}


class HookEvent(StrEnum):
    """Lifecycle events at which hooks run."""

    PRE_INSTALL = "pre-install"
    POST_INSTALL = "post-install"
    PRE_UPGRADE = "pre-upgrade"
    POST_UPGRADE = "post-upgrade"
    PRE_ROLLBACK = "pre-rollback"
    POST_ROLLBACK = "post-rollback"
    PRE_DELETE = "pre-delete"
    POST_DELETE = "post-delete"
    TEST = "test"


class HookDeletePolicy(StrEnum):
    """When the object created by a hook is deleted."""

    BEFORE_HOOK_CREATION = "before-hook-creation"
    HOOK_SUCCEEDED = "hook-succeeded"
    HOOK_FAILED = "hook-failed"


@dataclass(frozen=True, order=True)
class ObjectRef:
    """Identifier for a cluster object."""

    kind: str
    namespace: str | None
    name: str

    @property
    def namespaced_name(self) -> str:
        if self.namespace:
            return f"{self.namespace}/{self.name}"
        return self.name

    def __str__(self) -> str:
        """Return the kind and namespaced name concatenated as an id."""
        return f"{self.kind}/{self.namespaced_name}"


class _Document(DataClassDictMixin):
    class Config(BaseConfig):
        omit_none = True


@dataclass(frozen=True)
class Manifest(_Document):
    """A single rendered object applied as part of the release."""

    path: str
    """Template path that produced the document."""

    api_version: str
    kind: str
    name: str
    namespace: str | None = None

    content: str = ""
    """The YAML text of the document."""

    annotations: dict[str, str] = field(default_factory=dict)

    @property
    def ref(self) -> ObjectRef:
        return ObjectRef(self.kind, self.namespace, self.name)

    @property
    def keep_on_delete(self) -> bool:
        """True when the object must survive uninstall and upgrades."""
        return self.annotations.get(RESOURCE_POLICY_ANNOTATION) == RESOURCE_POLICY_KEEP


@dataclass(frozen=True)
class HookMetadata(_Document):
    """Hook settings declared through annotations."""

    events: list[HookEvent]
    weight: int = 0
    delete_policies: list[HookDeletePolicy] = field(default_factory=list)
    timeout: float | None = None
    """Seconds the hook may take, the release default applies when unset."""

    @property
    def effective_delete_policies(self) -> list[HookDeletePolicy]:
        """Declared policies, `before-hook-creation` when none are declared."""
        return self.delete_policies or [HookDeletePolicy.BEFORE_HOOK_CREATION]

    @classmethod
    def parse_annotations(cls, annotations: dict[str, str]) -> "HookMetadata":
        """Parse hook annotations, raising InputException for invalid values."""
        events: list[HookEvent] = []
        for raw in str(annotations[HOOK_ANNOTATION]).split(","):
            if not (name := raw.strip()):
                continue
            try:
                events.append(HookEvent(name))
            except ValueError as err:
                raise InputException(f"Unknown hook event '{name}'") from err
        if not events:
            raise InputException(f"Annotation {HOOK_ANNOTATION} names no events")

        weight = 0
        if (raw_weight := annotations.get(HOOK_WEIGHT_ANNOTATION)) is not None:
            try:
                weight = int(str(raw_weight).strip())
            except ValueError as err:
                raise InputException(f"Invalid hook weight '{raw_weight}'") from err

        policies: list[HookDeletePolicy] = []
        if raw_policies := annotations.get(HOOK_DELETE_POLICY_ANNOTATION):
            for raw in str(raw_policies).split(","):
                if not (name := raw.strip()):
                    continue
                try:
                    policies.append(HookDeletePolicy(name))
                except ValueError as err:
                    raise InputException(f"Unknown hook delete policy '{name}'") from err

        timeout: float | None = None
        if (raw_timeout := annotations.get(HOOK_TIMEOUT_ANNOTATION)) is not None:
            timeout = parse_duration(str(raw_timeout))
        return cls(
            events=events, weight=weight, delete_policies=policies, timeout=timeout
        )


@dataclass(frozen=True)
class Hook(Manifest):
    """A rendered object run at lifecycle events instead of being applied."""

    hook: HookMetadata = field(default_factory=lambda: HookMetadata(events=[]))

    @property
    def sort_key(self) -> tuple[int, str]:
        """Hooks run by ascending weight, then by name."""
        return (self.hook.weight, self.name)


RenderedFile = Manifest | Hook


def parse_duration(text: str) -> float:
    """Parse a duration like `30`, `30s`, `500ms` or `5m` into seconds."""
    if not (match := _DURATION_RE.match(text.strip())):
        raise InputException(f"Invalid duration '{text}'")
    return float(match["amount"]) * _DURATION_UNITS[match["unit"]]


def _parse_document(path: str, doc: Any, content: str) -> RenderedFile:
    if not isinstance(doc, dict):
        raise InputException(f"Expected a mapping, found {type(doc).__name__}")
    if not (kind := doc.get("kind")):
        raise InputException("Object is missing kind")
    if not (api_version := doc.get("apiVersion")):
        raise InputException(f"Object of kind {kind} is missing apiVersion")
    metadata = doc.get("metadata")
    if not isinstance(metadata, dict) or not (name := metadata.get("name")):
        raise InputException(f"Object of kind {kind} is missing metadata.name")
    annotations = metadata.get("annotations") or {}
    if not isinstance(annotations, dict):
        raise InputException(f"Object {kind}/{name} has invalid annotations")
    annotations = {str(k): str(v) for k, v in annotations.items()}
    common: dict[str, Any] = {
        "path": path,
        "api_version": str(api_version),
        "kind": str(kind),
        "name": str(name),
        "namespace": metadata.get("namespace"),
        "content": content,
        "annotations": annotations,
    }
    if HOOK_ANNOTATION in annotations:
        return Hook(**common, hook=HookMetadata.parse_annotations(annotations))
    return Manifest(**common)


def parse_documents(path: str, text: str) -> list[RenderedFile]:
    """Split rendered text into documents and classify each one.

    Empty documents and documents containing only comments are dropped.
    """
    results: list[RenderedFile] = []
    for chunk in _DOCUMENT_SEPARATOR.split(text):
        if not chunk.strip():
            continue
        try:
            doc = yaml.safe_load(chunk)
        except yaml.YAMLError as err:
            raise InputException(f"Rendered output is not valid YAML: {err}") from err
        if doc is None:
            continue
        results.append(_parse_document(path, doc, chunk.strip("\n") + "\n"))
    return results


def _install_key(manifest: Manifest) -> tuple[int, str, str, str]:
    rank = _KIND_RANK.get(manifest.kind, len(INSTALL_ORDER))
    return (rank, manifest.kind, manifest.path, manifest.name)


def sort_for_install(manifests: list[Manifest]) -> list[Manifest]:
    """Order manifests by kind so that dependencies are created first."""
    return sorted(manifests, key=_install_key)


def sort_for_uninstall(manifests: list[Manifest]) -> list[Manifest]:
    """Order manifests so that dependents are removed first."""
    return sorted(manifests, key=_install_key, reverse=True)


def join_manifests(manifests: list[Manifest]) -> str:
    """Join manifests into a single multi-document YAML stream."""
    return "".join(f"---\n# Source: {m.path}\n{m.content}" for m in manifests)


def split_manifests(text: str) -> list[Manifest]:
    """Parse a stream produced by `join_manifests` back into manifests."""
    manifests: list[Manifest] = []
    for chunk in _DOCUMENT_SEPARATOR.split(text):
        if not chunk.strip():
            continue
        path = ""
        if chunk.lstrip("\n").startswith("# Source: "):
            first, _, chunk = chunk.lstrip("\n").partition("\n")
            path = first[len("# Source: ") :].strip()
        for item in parse_documents(path, chunk):
            manifests.append(item)
    return manifests
