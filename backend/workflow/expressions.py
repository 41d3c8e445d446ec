"""Dotted-path lookup and ``{{ path }}`` template resolution.

Used by the condition evaluator (field lookup), by module-call steps
(params templating) and by chain-call steps and routing rules
(input mappings). Everything here is pure: no I/O, no exceptions for
missing data.
"""

import re
from typing import Any

MISSING = object()

_TEMPLATE_RE = re.compile(r"\{\{\s*([^{}]+?)\s*\}\}")


def resolve_path(data: Any, path: str) -> Any:
    """Resolve a dot-notation path like ``step_fetch_output.items.0.name``.

    Dict segments are looked up by key, list/tuple segments by integer
    index. Returns ``MISSING`` when any segment cannot be resolved.
    """
    if not path:
        return MISSING

    current = data
    for part in path.split("."):
        if isinstance(current, dict):
            if part not in current:
                return MISSING
            current = current[part]
        elif isinstance(current, (list, tuple)):
            try:
                current = current[int(part)]
            except (ValueError, IndexError):
                return MISSING
        else:
            return MISSING
    return current


def render_template(value: Any, namespace: dict) -> Any:
    """Resolve ``{{ path }}`` references inside a single value.

    A string that is exactly one template yields the raw referenced value
    (so dicts and numbers survive). Embedded templates are interpolated as
    text, with unresolved references rendered as an empty string.
    Non-string values are returned unchanged.
    """
    if not isinstance(value, str) or "{{" not in value:
        return value

    whole = _TEMPLATE_RE.fullmatch(value.strip())
    if whole:
        resolved = resolve_path(namespace, whole.group(1))
        return None if resolved is MISSING else resolved

    def _substitute(match: re.Match) -> str:
        resolved = resolve_path(namespace, match.group(1))
        return "" if resolved is MISSING or resolved is None else str(resolved)

    return _TEMPLATE_RE.sub(_substitute, value)


def render_mapping(mapping: Any, namespace: dict) -> Any:
    """Recursively resolve templates in dicts and lists."""
    if isinstance(mapping, dict):
        return {key: render_mapping(value, namespace) for key, value in mapping.items()}
    if isinstance(mapping, list):
        return [render_mapping(item, namespace) for item in mapping]
    return render_template(mapping, namespace)
