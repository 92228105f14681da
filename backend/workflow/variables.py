"""Variable resolution for workflow steps.

Substitutes ``{{ name }}`` placeholders against a flat variable scope:

- "Deploy to {{environment}}" -> "Deploy to staging"
- "{{files}}" -> the bound list itself (a lone placeholder keeps its type)
- unknown names are left untouched

Lists, tuples and dicts are resolved recursively. Inputs are never mutated.
"""

import json
import re
from typing import Any, Mapping, Optional

PLACEHOLDER_PATTERN = re.compile(r"\{\{([^}]+)\}\}")


def _stringify(value: Any) -> str:
    """Render a bound value for embedding inside a larger string."""
    if isinstance(value, str):
        return value
    if isinstance(value, (bool, type(None), list, tuple, dict)):
        try:
            return json.dumps(value, default=str)
        except (TypeError, ValueError):
            return str(value)
    return str(value)


def resolve_string(text: str, scope: Mapping[str, Any]) -> Any:
    """Resolve placeholders inside a single string."""
    whole = PLACEHOLDER_PATTERN.fullmatch(text)
    if whole:
        name = whole.group(1).strip()
        if name in scope:
            return scope[name]
        return text

    def _replace(match: re.Match) -> str:
        name = match.group(1).strip()
        if name in scope:
            return _stringify(scope[name])
        return match.group(0)

    return PLACEHOLDER_PATTERN.sub(_replace, text)


def resolve_variables(value: Any, scope: Mapping[str, Any]) -> Any:
    """Recursively resolve placeholders in strings, sequences and mappings."""
    if isinstance(value, str):
        return resolve_string(value, scope)
    if isinstance(value, list):
        return [resolve_variables(item, scope) for item in value]
    if isinstance(value, tuple):
        return tuple(resolve_variables(item, scope) for item in value)
    if isinstance(value, dict):
        return {key: resolve_variables(val, scope) for key, val in value.items()}
    return value


def get_nested_value(obj: Any, path: str) -> Any:
    """Look up a dot-notation path like 'data.items.0.name'.

    Returns None as soon as a segment cannot be followed.
    """
    current = obj
    for part in path.split("."):
        if current is None:
            return None
        if isinstance(current, Mapping):
            current = current.get(part)
        elif isinstance(current, (list, tuple)):
            try:
                current = current[int(part)]
            except (ValueError, IndexError):
                return None
        else:
            current = getattr(current, part, None)
    return current


def extract_outputs(output_mappings: Optional[Mapping[str, str]], result: Any) -> dict[str, Any]:
    """Pick declared outputs out of a raw tool result.

    ``output_mappings`` maps an output variable name to a dotted path
    into ``result``.
    """
    if not output_mappings or result is None:
        return {}
    return {
        name: get_nested_value(result, path)
        for name, path in output_mappings.items()
    }
