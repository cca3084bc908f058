"""Helper functions available to chart templates.

Every helper is registered both as a Jinja2 filter and as a global, so
`{{ Values.labels | to_yaml | nindent(4) }}` and `{{ nindent(to_yaml(x), 4) }}`
are equivalent. Helpers are pure: the only source of randomness is
`rand_alpha_num`, which is seeded and therefore reproducible.
"""

import base64
from collections.abc import Callable, Mapping
import hashlib
import json
import random
import re
import string
from typing import Any

import jinja2
import yaml

from rudder.gating import lookup
from rudder.values import merge_values
from rudder.version import semver_compare as _semver_compare
from rudder.exceptions import InputException

__all__ = [
    "TemplateFailure",
    "FILTERS",
    "GLOBALS",
]

_ALPHANUM = string.ascii_letters + string.digits


class TemplateFailure(jinja2.TemplateRuntimeError):
    """Raised from a template through `fail`, `required` or `require_api`."""


def to_yaml(value: Any) -> str:
    if isinstance(value, jinja2.Undefined):
        value = None
    return yaml.safe_dump(value, default_flow_style=False, sort_keys=True).rstrip("\n")


def to_json(value: Any) -> str:
    return json.dumps(value, sort_keys=True)


def from_yaml(text: str) -> Any:
    try:
        return yaml.safe_load(str(text))
    except yaml.YAMLError as err:
        raise TemplateFailure(f"from_yaml: {err}") from err


def from_json(text: str) -> Any:
    try:
        return json.loads(str(text))
    except json.JSONDecodeError as err:
        raise TemplateFailure(f"from_json: {err}") from err


def indent(text: str, width: int) -> str:
    """Indent every line, including the first, by `width` spaces."""
    pad = " " * width
    return "\n".join(pad + line if line else line for line in str(text).split("\n"))


def nindent(text: str, width: int) -> str:
    """Like `indent`, preceded by a newline."""
    return "\n" + indent(text, width)


def quote(value: Any) -> str:
    return json.dumps("" if value is None else str(value))


def squote(value: Any) -> str:
    return "'" + ("" if value is None else str(value)).replace("'", "''") + "'"


def required(value: Any, message: str = "value is required") -> Any:
    if isinstance(value, jinja2.Undefined) or value is None or value == "":
        raise TemplateFailure(message)
    return value


def fail(message: str) -> None:
    raise TemplateFailure(message)


def b64enc(value: str) -> str:
    return base64.b64encode(str(value).encode("utf-8")).decode("ascii")


def b64dec(value: str) -> str:
    try:
        return base64.b64decode(str(value), validate=True).decode("utf-8")
    except ValueError as err:
        raise TemplateFailure(f"b64dec: {err}") from err


def sha256sum(value: str) -> str:
    return hashlib.sha256(str(value).encode("utf-8")).hexdigest()


def sha1sum(value: str) -> str:
    return hashlib.sha1(str(value).encode("utf-8")).hexdigest()


def trunc(value: str, length: int) -> str:
    """Truncate to `length` characters, keeping the tail when negative."""
    text = str(value)
    if length < 0:
        return text[length:]
    return text[:length]


def trim_suffix(value: str, suffix: str) -> str:
    return str(value).removesuffix(suffix)


def trim_prefix(value: str, prefix: str) -> str:
    return str(value).removeprefix(prefix)


_WORD_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])|[^A-Za-z0-9]+")


def _words(value: str) -> list[str]:
    return [word.lower() for word in _WORD_BOUNDARY.split(str(value)) if word]


def kebabcase(value: str) -> str:
    return "-".join(_words(value))


def snakecase(value: str) -> str:
    return "_".join(_words(value))


def merge(dest: Mapping[str, Any], *sources: Mapping[str, Any]) -> dict[str, Any]:
    """Deep merge maps into a new one, `dest` takes precedence."""
    return merge_values(*[dict(s) for s in reversed(sources)], dict(dest))


def keys(*maps: Mapping[str, Any]) -> list[str]:
    """Sorted keys of one or more maps."""
    return sorted({key for value in maps for key in value})


def has_key(value: Mapping[str, Any], key: str) -> bool:
    return key in value


def pluck(key: str, *maps: Mapping[str, Any]) -> list[Any]:
    return [value[key] for value in maps if key in value]


def uniq(values: list[Any]) -> list[Any]:
    result: list[Any] = []
    for value in values:
        if value not in result:
            result.append(value)
    return result


def compact(values: list[Any]) -> list[Any]:
    """Drop empty values, keeping `0` and `false`."""
    return [value for value in values if value not in (None, "", [], {})]


def dig(value: Mapping[str, Any], path: str, default: Any = None) -> Any:
    return lookup(dict(value), path, default)


def semver_compare(constraint: str, version: str) -> bool:
    try:
        return _semver_compare(constraint, version)
    except InputException as err:
        raise TemplateFailure(str(err)) from err


@jinja2.pass_context
def tpl(context: jinja2.runtime.Context, text: str, values: Any = None) -> str:
    """Render a string as a template with the current context."""
    variables = dict(context.get_all())
    if values is not None:
        variables["Values"] = values
    return context.environment.from_string(str(text)).render(variables)


@jinja2.pass_context
def rand_alpha_num(
    context: jinja2.runtime.Context, length: int, seed: str | None = None
) -> str:
    """Return a pseudo random string, reproducible for the same seed.

    Without an explicit seed the release and template name are used.
    """
    if seed is None:
        seed = f"{context.get('Release').name}/{context.get('Template').name}"
    rng = random.Random(str(seed))
    return "".join(rng.choice(_ALPHANUM) for _ in range(length))


@jinja2.pass_context
def require_api(
    context: jinja2.runtime.Context, api_version: str, kind: str | None = None
) -> str:
    """Fail the template unless the cluster serves the API version."""
    capabilities = context.get("Capabilities")
    if not capabilities.api_versions.has(api_version, kind):
        target = f"{api_version}/{kind}" if kind else api_version
        raise TemplateFailure(f"API {target} is not available in the cluster")
    return ""


FILTERS: dict[str, Callable[..., Any]] = {
    "to_yaml": to_yaml,
    "to_json": to_json,
    "from_yaml": from_yaml,
    "from_json": from_json,
    "indent": indent,
    "nindent": nindent,
    "quote": quote,
    "squote": squote,
    "required": required,
    "b64enc": b64enc,
    "b64dec": b64dec,
    "sha256sum": sha256sum,
    "sha1sum": sha1sum,
    "trunc": trunc,
    "trim_suffix": trim_suffix,
    "trim_prefix": trim_prefix,
    "kebabcase": kebabcase,
    "snakecase": snakecase,
    "keys": keys,
    "uniq": uniq,
    "compact": compact,
    "dig": dig,
    "tpl": tpl,
}

GLOBALS: dict[str, Callable[..., Any]] = {
    **FILTERS,
    "fail": fail,
    "merge": merge,
    "has_key": has_key,
    "pluck": pluck,
    "semver_compare": semver_compare,
    "rand_alpha_num": rand_alpha_num,
    "require_api": require_api,
}
