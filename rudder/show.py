"""Inspection of chart contents.

`show` returns a printable view of one part of a chart, or all of them:

```python
print(show(chart, ShowKind.VALUES, jsonpath="{.image.tag}"))
```

The JSONPath filter understands dotted keys, `['quoted keys']`, list
indexes and the `*` wildcard, e.g. `{.servers[*].host}`. Text outside of
`{...}` is copied to the output as is.
"""

from enum import StrEnum
import json
import logging
import re
from typing import Any

import yaml

from .chart import Chart
from .exceptions import InputException

__all__ = [
    "ShowKind",
    "show",
    "apply_jsonpath",
]

_LOGGER = logging.getLogger(__name__)

SEPARATOR = "---\n"
README_NAMES = ("readme.md", "readme.txt", "readme")

_EXPRESSION = re.compile(r"\{([^{}]*)\}")
_STEP = re.compile(
    r"\.(?P<key>[A-Za-z0-9_-]+)|\.(?P<wild>\*)|\[(?P<index>-?\d+)\]"
    r"|\['(?P<quoted>[^']*)'\]|\[(?P<all>\*)\]"
)


class ShowKind(StrEnum):
    """Part of a chart to show."""

    ALL = "all"
    CHART = "chart"
    VALUES = "values"
    README = "readme"
    CRDS = "crds"


def _step(nodes: list[Any], match: re.Match[str], expr: str) -> list[Any]:
    results: list[Any] = []
    for node in nodes:
        if match["wild"] or match["all"]:
            if isinstance(node, dict):
                results.extend(node.values())
            elif isinstance(node, list):
                results.extend(node)
            continue
        if match["index"] is not None:
            if not isinstance(node, list):
                raise InputException(f"JSONPath '{expr}': not a list")
            index = int(match["index"])
            if not -len(node) <= index < len(node):
                raise InputException(f"JSONPath '{expr}': index {index} out of range")
            results.append(node[index])
            continue
        key = match["key"] if match["key"] is not None else match["quoted"]
        if not isinstance(node, dict) or key not in node:
            raise InputException(f"JSONPath '{expr}': {key} is not found")
        results.append(node[key])
    return results


def _evaluate(expr: str, data: Any) -> list[Any]:
    expr = expr.strip()
    if expr in ("", "."):
        return [data]
    if not expr.startswith((".", "[")):
        expr = f".{expr}"
    nodes = [data]
    pos = 0
    while pos < len(expr):
        if not (match := _STEP.match(expr, pos)):
            raise InputException(f"Invalid JSONPath expression '{expr}'")
        nodes = _step(nodes, match, expr)
        pos = match.end()
    return nodes


def _format(value: Any) -> str:
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return ""
    return str(value)


def apply_jsonpath(template: str, data: Any) -> str:
    """Apply a JSONPath template to the data."""
    if not _EXPRESSION.search(template):
        template = f"{{{template}}}"
    output: list[str] = []
    pos = 0
    for match in _EXPRESSION.finditer(template):
        output.append(template[pos : match.start()])
        output.append(" ".join(_format(v) for v in _evaluate(match.group(1), data)))
        pos = match.end()
    output.append(template[pos:])
    return "".join(output)


def _chart(chart: Chart) -> str:
    return yaml.safe_dump(chart.metadata.to_dict(), sort_keys=False)


def _values(chart: Chart, path: str | None) -> str:
    if path:
        return apply_jsonpath(path, chart.values)
    if not chart.values:
        return ""
    return yaml.safe_dump(chart.values, sort_keys=False)


def _readme(chart: Chart) -> str:
    for name in sorted(chart.files):
        if name.lower() in README_NAMES:
            return chart.files[name]
    _LOGGER.debug("Chart %s has no README", chart.reference)
    return ""


def _crds(chart: Chart) -> str:
    return "".join(
        SEPARATOR + content if not content.startswith("---") else content
        for _, content in sorted(chart.crds.items())
    )


def show(chart: Chart, kind: ShowKind = ShowKind.ALL, jsonpath: str | None = None) -> str:
    """Return the chart's metadata, values, README or CRDs for display."""
    if kind == ShowKind.CHART:
        return _chart(chart)
    if kind == ShowKind.VALUES:
        return _values(chart, jsonpath)
    if kind == ShowKind.README:
        return _readme(chart)
    if kind == ShowKind.CRDS:
        return _crds(chart)
    sections = [_chart(chart)]
    if values := _values(chart, None):
        sections.append(values)
    if readme := _readme(chart):
        sections.append(readme)
    result = SEPARATOR.join(
        section if section.endswith("\n") else section + "\n" for section in sections
    )
    if crds := _crds(chart):
        result += crds
    return result
