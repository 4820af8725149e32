"""Dot-path extraction over parsed JSON documents.

Paths like ``items.id`` are matched against arbitrarily nested dicts and lists:

- a list applies the remaining path to every element,
- a dict containing the next key descends into it,
- a dict *not* containing the next key searches all of its values with the
  unchanged path before giving up.

That last rule lets recipes name a path relative to wherever the data sits in
the response, e.g. ``id`` finds every ``id`` at any depth.
"""

from typing import Any, TypeAlias

JSONValue: TypeAlias = dict[str, "JSONValue"] | list["JSONValue"] | str | int | float | bool | None


def _is_scalar(value: JSONValue) -> bool:
    return isinstance(value, (str, int, float)) and not isinstance(value, bool)


def _leaf_values(value: JSONValue) -> list[str]:
    if _is_scalar(value):
        return [str(value)]
    if isinstance(value, list):
        return [str(item) for item in value if _is_scalar(item)]
    return []


def _extract(value: JSONValue, keys: list[str]) -> list[str]:
    if not keys:
        return _leaf_values(value)

    if isinstance(value, dict):
        head, rest = keys[0], keys[1:]
        if head in value:
            return _extract(value[head], rest)
        results: list[str] = []
        for child in value.values():
            results.extend(_extract(child, keys))
        return results

    if isinstance(value, list):
        results = []
        for item in value:
            results.extend(_extract(item, keys))
        return results

    return []


def extract_values(data: Any, path: str) -> list[str]:
    """Extract all scalar values found at a dot-notation path.

    Strings are returned as-is, numbers are stringified, booleans and nulls
    are ignored. Order follows document order.

    Examples:
        >>> extract_values({"items": [{"id": "A"}, {"id": "B"}]}, "items.id")
        ['A', 'B']
        >>> extract_values({"data": {"items": [{"id": 7}]}}, "items.id")
        ['7']
    """
    keys = [k for k in path.split(".") if k] if path else []
    return _extract(data, keys)
