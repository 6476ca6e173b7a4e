from collections.abc import Callable, Mapping
from typing import Any


def deep_traverse(obj: Any, func: Callable[[Any, Any, Any], None]) -> None:
    """
    Walks every key of nested dicts and lists, calling ``func(key, value, parent)``.

    ``func`` may replace ``parent[key]``; the walk then descends into the new value.
    List elements are visited with their index as key.
    """
    if isinstance(obj, dict):
        items = list(obj.keys())
    elif isinstance(obj, list):
        items = list(range(len(obj)))
    else:
        return
    for key in items:
        func(key, obj[key], obj)
        value = obj[key]
        if isinstance(value, (dict, list)):
            deep_traverse(value, func)


def is_operator_object(value: Any) -> bool:
    """A query operator object is a non-empty mapping whose keys all start with '$'."""
    return isinstance(value, Mapping) and bool(value) and all(str(k).startswith("$") for k in value)


def flatten_query(query: Mapping[str, Any], parent: str = "") -> dict[str, Any]:
    """
    Flattens nested field paths of a query into dotted keys.

    Operator objects (``{"$in": [...]}``) and top-level logical operators are kept as leaves.

    Example:
        {"name": {"first": "Peter"}, "age": {"$gt": 3}} -> {"name.first": "Peter", "age": {"$gt": 3}}
    """
    flat: dict[str, Any] = {}
    for key, value in query.items():
        path = f"{parent}.{key}" if parent else str(key)
        if isinstance(value, Mapping) and value and not is_operator_object(value) and not str(key).startswith("$"):
            flat.update(flatten_query(value, path))
        else:
            flat[path] = value
    return flat


def get_path(record: Mapping[str, Any], path: str, default: Any = None) -> Any:
    """Reads a dotted path from nested mappings; returns ``default`` when any segment is missing."""
    current: Any = record
    for part in path.split("."):
        if not isinstance(current, Mapping) or part not in current:
            return default
        current = current[part]
    return current
