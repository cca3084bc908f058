"""Module for composing chart values.

Values for a release come from several sources, lowest precedence first:

1. The default values of each chart in the tree.
2. Values a parent chart passes to a subchart under the subchart's scope name.
3. User supplied value files.
4. Inline `--set` style overrides.

Merging is a deep union where the later source wins: nested tables merge
recursively, while scalars and lists replace the earlier value wholesale. Each
chart scope gets its own effective value tree, and the top level `global`
table flows down to every subchart.
"""

import copy
from dataclasses import dataclass, field
import logging
import re
from typing import Any

import yaml

from .chart import Chart, Dependency
from .config import GatingPolicy
from .exceptions import InvalidValueSyntax
from .gating import dependency_enabled, lookup

__all__ = [
    "merge_values",
    "parse_value_file",
    "parse_set_values",
    "ValueSources",
    "ScopedValues",
    "compose_values",
    "ROOT_SCOPE",
]

_LOGGER = logging.getLogger(__name__)

ROOT_SCOPE = ""
GLOBAL_KEY = "global"
TAGS_KEY = "tags"
EXPORTS_KEY = "exports"

# Guards against `a[99999999]=x` allocating a huge list
MAX_LIST_INDEX = 65536


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge two dictionaries without modifying either.

    Lists are replaced entirely, never concatenated.
    """
    result = dict(base)
    for key, override_value in override.items():
        base_value = result.get(key)
        if isinstance(base_value, dict) and isinstance(override_value, dict):
            result[key] = _deep_merge(base_value, override_value)
        else:
            result[key] = copy.deepcopy(override_value)
    return result


def merge_values(*trees: dict[str, Any] | None) -> dict[str, Any]:
    """Merge value trees in precedence order, later trees win."""
    result: dict[str, Any] = {}
    for tree in trees:
        if tree:
            result = _deep_merge(result, tree)
    return result


def parse_value_file(content: str, source: str = "values") -> dict[str, Any]:
    """Parse a YAML value file, which must contain a mapping."""
    try:
        values = yaml.safe_load(content)
    except yaml.YAMLError as err:
        raise InvalidValueSyntax(f"Unable to parse {source}: {err}") from err
    if values is None:
        return {}
    if not isinstance(values, dict):
        raise InvalidValueSyntax(
            f"Expected {source} to contain a mapping, found {type(values).__name__}"
        )
    return values


_INT_RE = re.compile(r"^-?(0|[1-9]\d*)$")
_INDEX_RE = re.compile(r"^(?P<name>.*?)(?P<indexes>(?:\[\d+\])+)$")


def _typed(value: str) -> Any:
    """Convert an inline override value to a bool, null or int when it is one.

    Decimals stay strings so that versions such as `1.10` survive unchanged.
    """
    if value == "true":
        return True
    if value == "false":
        return False
    if value == "null":
        return None
    if _INT_RE.match(value):
        return int(value)
    return value


def _split_unescaped(text: str, sep: str, *, nested: bool = False) -> list[str]:
    """Split on a separator unless escaped with a backslash or inside `{...}`."""
    parts: list[str] = []
    current: list[str] = []
    depth = 0
    i = 0
    while i < len(text):
        char = text[i]
        if char == "\\" and i + 1 < len(text):
            current.append(text[i : i + 2])
            i += 2
            continue
        if nested and char == "{":
            depth += 1
        elif nested and char == "}":
            depth -= 1
        if char == sep and depth <= 0:
            parts.append("".join(current))
            current = []
        else:
            current.append(char)
        i += 1
    parts.append("".join(current))
    return parts


def _unescape(text: str) -> str:
    return re.sub(r"\\(.)", r"\1", text)


@dataclass
class _Segment:
    name: str
    indexes: list[int]


def _parse_key(key: str, expr: str) -> list[_Segment]:
    segments: list[_Segment] = []
    for raw in _split_unescaped(key, "."):
        indexes: list[int] = []
        if match := _INDEX_RE.match(raw):
            raw = match["name"]
            indexes = [int(i) for i in re.findall(r"\[(\d+)\]", match["indexes"])]
        name = _unescape(raw)
        if not name:
            raise InvalidValueSyntax(f"Empty key segment in '{key}' of '{expr}'")
        if any(index > MAX_LIST_INDEX for index in indexes):
            raise InvalidValueSyntax(
                f"List index in '{key}' exceeds {MAX_LIST_INDEX} in '{expr}'"
            )
        segments.append(_Segment(name, indexes))
    return segments


def _parse_value(raw: str, as_string: bool) -> Any:
    if not as_string and raw.startswith("{") and raw.endswith("}"):
        inner = raw[1:-1]
        if not inner:
            return []
        return [_typed(_unescape(item)) for item in _split_unescaped(inner, ",")]
    value = _unescape(raw)
    return value if as_string else _typed(value)


_KIND_NAMES = {dict: "table", list: "list"}


def _pad(node: list[Any], index: int) -> None:
    while len(node) <= index:
        node.append(None)


class _Assigner:
    """Applies assignments to a tree, rejecting key paths used ambiguously.

    Values from a lower precedence `base` tree are replaced freely; only
    conflicting uses within the same expression are errors.
    """

    def __init__(self, tree: dict[str, Any], expr: str) -> None:
        self._tree = tree
        self._expr = expr
        self._leaves: set[tuple[Any, ...]] = set()
        self._containers: dict[tuple[Any, ...], type] = {}

    def _ambiguous(self, path: tuple[Any, ...], usage: str) -> InvalidValueSyntax:
        key = ".".join(str(p) for p in path)
        return InvalidValueSyntax(
            f"Ambiguous key path '{key}' in '{self._expr}': {usage}"
        )

    def _descend(self, node: Any, step: Any, path: tuple[Any, ...], kind: type) -> Any:
        if path in self._leaves:
            raise self._ambiguous(
                path, f"already set to a value, cannot use it as a {_KIND_NAMES[kind]}"
            )
        if self._containers.get(path, kind) is not kind:
            raise self._ambiguous(path, "used as both a table and a list")
        if isinstance(node, list):
            _pad(node, step)
            current = node[step]
        else:
            current = node.get(step)
        if not isinstance(current, kind):
            current = kind()
            node[step] = current
        self._containers[path] = kind
        return current

    def assign(self, segments: list[_Segment], value: Any) -> None:
        steps: list[Any] = []
        for segment in segments:
            steps.append(segment.name)
            steps.extend(segment.indexes)
        node: Any = self._tree
        path: tuple[Any, ...] = ()
        for step, next_step in zip(steps, steps[1:]):
            path += (step,)
            kind = list if isinstance(next_step, int) else dict
            node = self._descend(node, step, path, kind)
        last = steps[-1]
        path += (last,)
        if path in self._containers:
            raise self._ambiguous(
                path, f"used as a {_KIND_NAMES[self._containers[path]]}, cannot set it"
            )
        if isinstance(node, list):
            _pad(node, last)
        node[last] = value
        self._leaves.add(path)


def parse_set_values(
    expr: str, *, as_string: bool = False, base: dict[str, Any] | None = None
) -> dict[str, Any]:
    """Parse inline overrides such as `image.tag=1.2,hosts[0]=a.example.com`.

    Values are converted to bool, null or int unless `as_string` is set. A
    `{a,b}` value is a list. Commas, dots and equals signs in keys or values
    may be escaped with a backslash. Returns a new tree, layered on a copy
    of `base` when given.
    """
    tree = copy.deepcopy(base) if base else {}
    if not expr.strip():
        return tree
    assigner = _Assigner(tree, expr)
    for assignment in _split_unescaped(expr, ",", nested=True):
        if not assignment.strip():
            raise InvalidValueSyntax(f"Empty assignment in '{expr}'")
        key_value = _split_unescaped(assignment, "=")
        if len(key_value) < 2:
            raise InvalidValueSyntax(f"Key '{assignment}' has no value in '{expr}'")
        key, raw = key_value[0].strip(), "=".join(key_value[1:])
        if not key:
            raise InvalidValueSyntax(f"Missing key in '{assignment}' of '{expr}'")
        assigner.assign(_parse_key(key, expr), _parse_value(raw, as_string))
    return tree


@dataclass
class ValueSources:
    """User supplied values in precedence order, lowest first."""

    files: list[str] = field(default_factory=list)
    """Contents of YAML value files."""

    values: list[dict[str, Any]] = field(default_factory=list)
    """Already parsed value trees."""

    set_values: list[str] = field(default_factory=list)
    """Inline `--set` expressions."""

    set_string_values: list[str] = field(default_factory=list)
    """Inline `--set-string` expressions, values are never type converted."""

    def user_values(self) -> dict[str, Any]:
        """Merge all sources into a single value tree."""
        result: dict[str, Any] = {}
        for index, content in enumerate(self.files):
            result = merge_values(result, parse_value_file(content, f"values file {index}"))
        result = merge_values(result, *self.values)
        for expr in self.set_values:
            result = parse_set_values(expr, base=result)
        for expr in self.set_string_values:
            result = parse_set_values(expr, as_string=True, base=result)
        return result


def scope_path(parent: str, name: str) -> str:
    """Return the path identifying a child scope, `db` or `db/cache`."""
    return f"{parent}/{name}" if parent else name


@dataclass(frozen=True)
class ScopedValues:
    """Effective value trees for every enabled chart scope."""

    scopes: dict[str, dict[str, Any]]
    """Value tree by scope path, `""` for the root chart."""

    excluded: frozenset[str] = frozenset()
    """Scope paths of dependencies disabled by condition or tags."""

    @property
    def root(self) -> dict[str, Any]:
        """The root chart's values, including coalesced subchart sections."""
        return self.scopes[ROOT_SCOPE]

    def scope(self, path: str) -> dict[str, Any]:
        return self.scopes[path]


def _declared(chart: Chart, scope_name: str) -> Dependency:
    for dep in chart.metadata.dependencies:
        if dep.scope_name == scope_name:
            return dep
    # Embedded subcharts without a declaration are always enabled
    return Dependency(name=scope_name)


def _import_values(dep: Dependency, child_values: dict[str, Any]) -> dict[str, Any]:
    """Lift values a subchart exports into a tree for its parent."""
    imported: dict[str, Any] = {}
    for entry in dep.import_values:
        if isinstance(entry, str):
            child_path, parent_path = f"{EXPORTS_KEY}.{entry}", ""
        else:
            if "child" not in entry or "parent" not in entry:
                raise InvalidValueSyntax(
                    f"Dependency {dep.scope_name} import-values entry needs "
                    f"'child' and 'parent': {entry}"
                )
            child_path, parent_path = entry["child"], entry["parent"]
        value = lookup(child_values, child_path)
        if value is None:
            _LOGGER.warning(
                "Dependency %s has no value at '%s' to import", dep.scope_name, child_path
            )
            continue
        if not parent_path:
            if not isinstance(value, dict):
                raise InvalidValueSyntax(
                    f"Dependency {dep.scope_name} export '{entry}' is not a table"
                )
            imported = merge_values(imported, value)
            continue
        nested: Any = copy.deepcopy(value)
        for part in reversed(parent_path.split(".")):
            nested = {part: nested}
        imported = merge_values(imported, nested)
    return imported


def _compose_scope(
    chart: Chart,
    supplied: dict[str, Any],
    globals_: dict[str, Any],
    tags: dict[str, Any] | None,
    path: str,
    policy: GatingPolicy,
    scopes: dict[str, dict[str, Any]],
    excluded: set[str],
) -> dict[str, Any]:
    values = merge_values(chart.values, supplied)
    merged_globals = merge_values(values.get(GLOBAL_KEY) or {}, globals_)
    if merged_globals:
        values[GLOBAL_KEY] = merged_globals
    if tags is None:
        tags = values.get(TAGS_KEY) or {}

    imports: dict[str, Any] = {}
    for scope_name, subchart in chart.subcharts.items():
        child_path = scope_path(path, scope_name)
        dep = _declared(chart, scope_name)
        if not dependency_enabled(dep, values, tags, policy):
            _LOGGER.info("Dependency %s is disabled, excluding it", child_path)
            excluded.add(child_path)
            continue
        child_supplied = values.get(scope_name)
        if child_supplied is None:
            child_supplied = {}
        elif not isinstance(child_supplied, dict):
            _LOGGER.warning(
                "Skipped value for %s: expected a table, found %r",
                child_path,
                child_supplied,
            )
            child_supplied = {}
        child_values = _compose_scope(
            subchart,
            child_supplied,
            merged_globals,
            tags,
            child_path,
            policy,
            scopes,
            excluded,
        )
        values[scope_name] = child_values
        if dep.import_values:
            imports = merge_values(imports, _import_values(dep, child_values))

    if imports:
        # Values set by the parent itself win over imported ones
        values = merge_values(imports, values)
    scopes[path] = values
    return values


def compose_values(
    chart: Chart,
    user_values: dict[str, Any] | None = None,
    *,
    policy: GatingPolicy = GatingPolicy.CONDITION_OVER_TAGS,
) -> ScopedValues:
    """Compute the effective value tree of every enabled scope of the chart.

    Subcharts disabled by their condition or tags are left out and reported
    in `ScopedValues.excluded`.
    """
    scopes: dict[str, dict[str, Any]] = {}
    excluded: set[str] = set()
    _compose_scope(
        chart,
        user_values or {},
        {},
        None,
        ROOT_SCOPE,
        policy,
        scopes,
        excluded,
    )
    return ScopedValues(scopes=scopes, excluded=frozenset(excluded))
