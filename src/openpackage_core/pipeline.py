"""Map pipeline operations for structured documents.

Flows that target merged config files (JSON/YAML documents, markdown
frontmatter) can reshape the package document before it is merged:

    map:
      - $set: {name: $$name}
      - $rename: {"mcp.*": "mcpServers.*"}
      - $unset: [legacy]
      - $copy:
          from: permission
          to: permissionMode
          transform:
            cases:
              - pattern: {edit: deny, bash: deny}
                value: plan
            default: default
      - $transform:
          field: tools
          steps:
            - filter: {value: true}
            - keys: true
            - map: capitalize
            - join: ", "

Operations never mutate their input. A ``$transform`` that ends with an empty
string or empty list deletes the field instead of writing the empty value.
"""

import copy
import fnmatch
from collections.abc import Mapping
from typing import Any

from pydantic import JsonValue

from .exceptions import FlowError

Document = dict[str, JsonValue]

OPERATIONS = ("$set", "$rename", "$unset", "$copy", "$transform")
TRANSFORM_STEPS = ("filter", "keys", "values", "entries", "map", "join")
MAP_TRANSFORMS = ("capitalize", "uppercase", "lowercase")

_MISSING = object()


# ---------------------------------------------------------------------------
# Dot-path helpers
# ---------------------------------------------------------------------------


def get_nested_value(document: Mapping[str, Any], path: str, default: Any = None) -> Any:
    """Get a value by dot-notated path (``a.b.c``)."""
    current: Any = document
    for part in path.split("."):
        if not isinstance(current, Mapping) or part not in current:
            return default
        current = current[part]
    return current


def has_nested_value(document: Mapping[str, Any], path: str) -> bool:
    return get_nested_value(document, path, _MISSING) is not _MISSING


def set_nested_value(document: dict[str, Any], path: str, value: Any) -> None:
    """Set a value by dot-notated path, creating intermediate objects."""
    parts = path.split(".")
    current = document
    for part in parts[:-1]:
        child = current.get(part)
        if not isinstance(child, dict):
            child = {}
            current[part] = child
        current = child
    current[parts[-1]] = value


def delete_nested_value(document: dict[str, Any], path: str) -> bool:
    """Delete a value by dot-notated path. Returns True if something was deleted."""
    parts = path.split(".")
    current: Any = document
    for part in parts[:-1]:
        if not isinstance(current, dict) or part not in current:
            return False
        current = current[part]
    if isinstance(current, dict) and parts[-1] in current:
        del current[parts[-1]]
        return True
    return False


def delete_nested_key(document: dict[str, Any], path: str) -> None:
    """
    Delete a dot-notated key and prune parents left empty by the deletion.

    Example:
        >>> doc = {"mcp": {"server1": {}, "server2": {}}}
        >>> delete_nested_key(doc, "mcp.server1")
        >>> doc
        {'mcp': {'server2': {}}}
    """
    parts = path.split(".")
    chain: list[dict[str, Any]] = [document]
    current: Any = document
    for part in parts[:-1]:
        child = current.get(part)
        if not isinstance(child, dict):
            return
        chain.append(child)
        current = child

    current.pop(parts[-1], None)

    for depth in range(len(chain) - 1, 0, -1):
        if chain[depth]:
            break
        del chain[depth - 1][parts[depth - 1]]


def extract_all_keys(data: Any, prefix: str = "") -> list[str]:
    """
    List the dot-notated leaf keys of a document.

    Arrays and scalars are leaves; nested objects are descended into.

    Example:
        >>> extract_all_keys({"mcp": {"server1": {"url": "x"}, "server2": 1}})
        ['mcp.server1.url', 'mcp.server2']
    """
    if not isinstance(data, dict):
        return [prefix] if prefix else []

    keys: list[str] = []
    for key, value in data.items():
        full_path = f"{prefix}.{key}" if prefix else str(key)
        if isinstance(value, dict) and value:
            keys.extend(extract_all_keys(value, full_path))
        else:
            keys.append(full_path)
    return keys


def is_effectively_empty(data: Any) -> bool:
    """True for None, empty containers, and objects whose values are all effectively empty."""
    if data is None:
        return True
    if isinstance(data, list):
        return len(data) == 0
    if isinstance(data, dict):
        return all(is_effectively_empty(value) for value in data.values())
    return False


def deep_merge(base: Mapping[str, Any], override: Mapping[str, Any]) -> dict[str, Any]:
    """Recursively merge ``override`` into ``base`` without mutating either.

    Example:
        >>> deep_merge({"a": 1, "b": {"c": 2}}, {"b": {"d": 3}})
        {'a': 1, 'b': {'c': 2, 'd': 3}}
    """
    result: dict[str, Any] = copy.deepcopy(dict(base))
    for key, value in override.items():
        if isinstance(result.get(key), dict) and isinstance(value, Mapping):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = copy.deepcopy(value)
    return result


# ---------------------------------------------------------------------------
# Variable resolution
# ---------------------------------------------------------------------------


def resolve_value(value: Any, variables: Mapping[str, Any]) -> Any:
    """
    Resolve ``$$variable`` references in an operation argument.

    - ``"$$name"`` -> ``variables["name"]`` (left unchanged if unknown)
    - ``"\\$$name"`` -> literal ``"$$name"``
    - lists and objects are resolved recursively
    """
    if isinstance(value, str):
        if value.startswith("\\$$"):
            return value[1:]
        if value.startswith("$$"):
            name = value[2:]
            return variables[name] if name in variables else value
        return value
    if isinstance(value, list):
        return [resolve_value(item, variables) for item in value]
    if isinstance(value, dict):
        return {key: resolve_value(item, variables) for key, item in value.items()}
    return value


def matches_case(value: Any, pattern: Any) -> bool:
    """
    Check a value against a ``$copy`` transform case pattern.

    String patterns match strings with glob semantics; object patterns match
    objects containing every key/value of the pattern; anything else compares
    by equality.
    """
    if isinstance(pattern, str):
        return isinstance(value, str) and fnmatch.fnmatchcase(value, pattern)
    if isinstance(pattern, dict):
        if not isinstance(value, dict):
            return False
        return all(key in value and matches_case(value[key], expected) for key, expected in pattern.items())
    return value == pattern


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------


def execute_set(document: Document, fields: Mapping[str, Any], variables: Mapping[str, Any]) -> Document:
    """``$set``: assign fields (dot paths), resolving ``$$`` variables."""
    result = copy.deepcopy(document)
    for path, value in fields.items():
        set_nested_value(result, path, resolve_value(value, variables))
    return result


def execute_unset(document: Document, fields: str | list[str]) -> Document:
    """``$unset``: remove one or more fields (dot paths)."""
    result = copy.deepcopy(document)
    for path in [fields] if isinstance(fields, str) else fields:
        delete_nested_value(result, path)
    return result


def execute_rename(document: Document, mappings: Mapping[str, str]) -> Document:
    """``$rename``: move fields; a single ``*`` in both sides renames every matching key."""
    result = copy.deepcopy(document)
    for old_path, new_path in mappings.items():
        if "*" in old_path:
            old_prefix, _, old_suffix = old_path.partition("*")
            new_prefix, _, new_suffix = new_path.partition("*")
            for key in _matching_keys(result, old_prefix, old_suffix):
                wildcard = key[len(old_prefix) : len(key) - len(old_suffix)]
                _move(result, key, f"{new_prefix}{wildcard}{new_suffix}")
            container = old_prefix.rpartition(".")[0]
            if container and get_nested_value(result, container) == {}:
                delete_nested_value(result, container)
        else:
            _move(result, old_path, new_path)
    return result


def _move(document: dict[str, Any], old_path: str, new_path: str) -> None:
    value = get_nested_value(document, old_path, _MISSING)
    if value is _MISSING:
        return
    delete_nested_value(document, old_path)
    set_nested_value(document, new_path, value)


def _matching_keys(document: dict[str, Any], prefix: str, suffix: str) -> list[str]:
    """Dot paths matching ``prefix*suffix`` where ``*`` spans exactly one key segment."""
    parent_path = prefix.rstrip(".")
    key_prefix = ""
    if prefix and not prefix.endswith("."):
        parent_path, _, key_prefix = prefix.rpartition(".")
    parent = get_nested_value(document, parent_path) if parent_path else document
    if not isinstance(parent, dict):
        return []

    base = f"{parent_path}." if parent_path else ""
    keys = []
    for key in list(parent):
        if not str(key).startswith(key_prefix):
            continue
        full = f"{base}{key}{suffix}"
        if has_nested_value(document, full):
            keys.append(full)
    return keys


def execute_copy(document: Document, config: Mapping[str, Any], variables: Mapping[str, Any]) -> Document:
    """``$copy``: copy a field, optionally mapping its value through ``transform.cases``."""
    result = copy.deepcopy(document)
    value = get_nested_value(result, config["from"], _MISSING)
    if value is _MISSING:
        return result

    transform = config.get("transform")
    if transform:
        mapped = _MISSING
        for case in transform.get("cases", []):
            if matches_case(value, case.get("pattern")):
                mapped = case.get("value")
                break
        if mapped is _MISSING:
            mapped = transform["default"] if "default" in transform else value
        value = resolve_value(mapped, variables)

    set_nested_value(result, config["to"], copy.deepcopy(value))
    return result


def execute_transform(document: Document, config: Mapping[str, Any]) -> Document:
    """``$transform``: thread a field through steps; empty results delete the field."""
    result = copy.deepcopy(document)
    field = config["field"]
    if not has_nested_value(result, field):
        return result

    value = get_nested_value(result, field)
    for step in config.get("steps", []):
        value = _apply_step(value, step)

    if value == "" or value == []:
        delete_nested_value(result, field)
    else:
        set_nested_value(result, field, value)
    return result


def _apply_step(value: Any, step: Mapping[str, Any]) -> Any:
    if "filter" in step:
        if not isinstance(value, dict):
            return value
        criteria = step["filter"] or {}
        return {
            key: item
            for key, item in value.items()
            if ("value" not in criteria or item == criteria["value"]) and ("key" not in criteria or key == criteria["key"])
        }
    if "keys" in step:
        return list(value.keys()) if isinstance(value, dict) else []
    if "values" in step:
        return list(value.values()) if isinstance(value, dict) else []
    if "entries" in step:
        return [[key, item] for key, item in value.items()] if isinstance(value, dict) else []
    if "map" in step:
        if not isinstance(value, list):
            return value
        return [_map_item(item, step["map"]) for item in value]
    if "join" in step:
        if not isinstance(value, list):
            return value
        return str(step["join"]).join(str(item) for item in value)
    return value


def _map_item(item: Any, transform: str) -> Any:
    if not isinstance(item, str):
        return item
    if transform == "capitalize":
        return item[:1].upper() + item[1:]
    if transform == "uppercase":
        return item.upper()
    if transform == "lowercase":
        return item.lower()
    return item


# ---------------------------------------------------------------------------
# Validation and execution
# ---------------------------------------------------------------------------


def validate_operation(operation: Any) -> list[str]:
    """
    Validate one pipeline operation.

    Returns:
        List of error messages (empty if valid)
    """
    if not isinstance(operation, dict) or len(operation) != 1:
        return ["Operation must be an object with exactly one key"]

    name, config = next(iter(operation.items()))
    if name not in OPERATIONS:
        return [f"Unknown operation {name!r}. Valid: {', '.join(OPERATIONS)}"]

    errors: list[str] = []
    if name == "$set":
        if not isinstance(config, dict) or not config:
            errors.append("$set must be a non-empty object")
        elif any(not str(key).strip() for key in config):
            errors.append("$set field path cannot be empty")
    elif name == "$unset":
        fields = [config] if isinstance(config, str) else config
        if not isinstance(fields, list) or not fields:
            errors.append("$unset must be a string or a non-empty list of strings")
        elif any(not isinstance(field, str) or not field.strip() for field in fields):
            errors.append("$unset field path must be a non-empty string")
    elif name == "$rename":
        if not isinstance(config, dict) or not config:
            errors.append("$rename must be a non-empty object")
        else:
            for old_path, new_path in config.items():
                if not str(old_path).strip() or not isinstance(new_path, str) or not new_path.strip():
                    errors.append("$rename paths cannot be empty")
                    continue
                if old_path.count("*") != new_path.count("*"):
                    errors.append(f"$rename wildcard mismatch: {old_path!r} -> {new_path!r}")
                if old_path.count("*") > 1:
                    errors.append(f"$rename supports a single wildcard: {old_path!r}")
    elif name == "$copy":
        if not isinstance(config, dict):
            errors.append("$copy must be an object")
        else:
            for key in ("from", "to"):
                if not isinstance(config.get(key), str) or not config[key]:
                    errors.append(f"$copy.{key} must be a non-empty string")
            transform = config.get("transform")
            if transform is not None:
                cases = transform.get("cases") if isinstance(transform, dict) else None
                if not isinstance(cases, list) or not cases:
                    errors.append("$copy.transform.cases must be a non-empty list")
                else:
                    for i, case in enumerate(cases):
                        if not isinstance(case, dict) or "pattern" not in case or "value" not in case:
                            errors.append(f"$copy.transform.cases[{i}] must have 'pattern' and 'value'")
    elif name == "$transform":
        if not isinstance(config, dict):
            errors.append("$transform must be an object")
        else:
            if not isinstance(config.get("field"), str) or not config["field"]:
                errors.append("$transform.field must be a non-empty string")
            steps = config.get("steps")
            if not isinstance(steps, list) or not steps:
                errors.append("$transform.steps must be a non-empty list")
            else:
                for i, step in enumerate(steps):
                    if not isinstance(step, dict) or len(step) != 1:
                        errors.append(f"$transform.steps[{i}] must have exactly one operation")
                        continue
                    step_name = next(iter(step))
                    if step_name not in TRANSFORM_STEPS:
                        errors.append(f"$transform.steps[{i}] has unknown operation {step_name!r}")
                    elif step_name == "map" and step["map"] not in MAP_TRANSFORMS:
                        errors.append(f"$transform.steps[{i}].map must be one of: {', '.join(MAP_TRANSFORMS)}")
                    elif step_name == "join" and not isinstance(step["join"], str):
                        errors.append(f"$transform.steps[{i}].join must be a string")
    return errors


def apply_operations(document: Document, operations: list[dict[str, Any]], variables: Mapping[str, Any]) -> Document:
    """
    Run a map pipeline over a document.

    Args:
        document: Source document (not modified)
        operations: Ordered pipeline operations
        variables: Flow variables for ``$$`` resolution

    Returns:
        Transformed document

    Raises:
        FlowError: If an operation is invalid
    """
    result = document
    for operation in operations:
        errors = validate_operation(operation)
        if errors:
            raise FlowError(f"Invalid map operation: {'; '.join(errors)}", context={"operation": operation})

        name, config = next(iter(operation.items()))
        if name == "$set":
            result = execute_set(result, config, variables)
        elif name == "$unset":
            result = execute_unset(result, config)
        elif name == "$rename":
            result = execute_rename(result, config)
        elif name == "$copy":
            result = execute_copy(result, config, variables)
        elif name == "$transform":
            result = execute_transform(result, config)
    return result
