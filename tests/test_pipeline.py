"""Tests for map pipeline operations."""

import pytest
from openpackage_core import apply_operations
from openpackage_core.exceptions import FlowError
from openpackage_core.pipeline import deep_merge
from openpackage_core.pipeline import delete_nested_key
from openpackage_core.pipeline import extract_all_keys
from openpackage_core.pipeline import is_effectively_empty
from openpackage_core.pipeline import resolve_value
from openpackage_core.pipeline import validate_operation


def test_set_resolves_variables():
    """Test $set with $$ variables and the escape."""
    result = apply_operations(
        {},
        [{"$set": {"meta.package": "$$name", "literal": "\\$$name"}}],
        {"name": "my-rules"},
    )

    assert result == {"meta": {"package": "my-rules"}, "literal": "$$name"}


def test_operations_do_not_mutate_input():
    """Test the source document is left untouched."""
    document = {"a": {"b": 1}}

    apply_operations(document, [{"$unset": "a.b"}], {})

    assert document == {"a": {"b": 1}}


def test_rename_with_wildcard():
    """Test $rename moves every key matching the wildcard."""
    document = {"servers": {"github": {"url": "g"}, "linear": {"url": "l"}}, "other": 1}

    result = apply_operations(document, [{"$rename": {"servers.*": "mcpServers.*"}}], {})

    assert result == {"mcpServers": {"github": {"url": "g"}, "linear": {"url": "l"}}, "other": 1}


def test_rename_with_wildcard_leaves_non_string_keys():
    """Test YAML integer keys neither crash a wildcard rename nor move."""
    document = {"servers": {1: "x", "github": {"url": "g"}}}

    result = apply_operations(document, [{"$rename": {"servers.*": "mcpServers.*"}}], {})

    assert result == {"servers": {1: "x"}, "mcpServers": {"github": {"url": "g"}}}


def test_copy_with_cases():
    """Test $copy maps values through ordered cases."""
    operations = [
        {
            "$copy": {
                "from": "permission",
                "to": "permissionMode",
                "transform": {
                    "cases": [
                        {"pattern": {"edit": "deny", "bash": "deny"}, "value": "plan"},
                        {"pattern": {"edit": "allow"}, "value": "acceptEdits"},
                    ],
                    "default": "default",
                },
            }
        }
    ]

    plan = apply_operations({"permission": {"edit": "deny", "bash": "deny", "read": "allow"}}, operations, {})
    edits = apply_operations({"permission": {"edit": "allow"}}, operations, {})
    other = apply_operations({"permission": {"edit": "ask"}}, operations, {})
    missing = apply_operations({}, operations, {})

    assert plan["permissionMode"] == "plan"
    assert edits["permissionMode"] == "acceptEdits"
    assert other["permissionMode"] == "default"
    assert "permissionMode" not in missing


def test_transform_steps():
    """Test filter -> keys -> map -> join."""
    document = {"tools": {"read": True, "write": False, "bash": True}}
    operations = [
        {
            "$transform": {
                "field": "tools",
                "steps": [{"filter": {"value": True}}, {"keys": True}, {"map": "capitalize"}, {"join": ", "}],
            }
        }
    ]

    assert apply_operations(document, operations, {}) == {"tools": "Read, Bash"}


@pytest.mark.parametrize(
    "steps",
    [
        [{"filter": {"value": True}}, {"keys": True}, {"join": ", "}],
        [{"filter": {"value": True}}, {"keys": True}],
    ],
)
def test_transform_empty_result_deletes_field(steps):
    """Test an empty string or list removes a field that had a value."""
    document = {"tools": {"read": False, "write": False}, "name": "agent"}

    result = apply_operations(document, [{"$transform": {"field": "tools", "steps": steps}}], {})

    assert result == {"name": "agent"}


def test_transform_missing_field_is_noop():
    """Test $transform on a missing field leaves the document alone."""
    document = {"name": "agent"}

    result = apply_operations(document, [{"$transform": {"field": "tools", "steps": [{"keys": True}]}}], {})

    assert result == {"name": "agent"}


def test_invalid_operation_raises():
    """Test invalid operations are rejected before running."""
    with pytest.raises(FlowError, match="Unknown operation"):
        apply_operations({}, [{"$explode": {}}], {})


def test_validate_operation_messages():
    """Test validation catches malformed operations."""
    assert validate_operation({"$set": {"a": 1}}) == []
    assert validate_operation({"$set": {}, "$unset": "a"}) == ["Operation must be an object with exactly one key"]
    assert validate_operation({"$rename": {"a.*": "b"}}) == ["$rename wildcard mismatch: 'a.*' -> 'b'"]
    assert validate_operation({"$transform": {"field": "x", "steps": [{"map": "reverse"}]}}) == [
        "$transform.steps[0].map must be one of: capitalize, uppercase, lowercase"
    ]


def test_resolve_value_recurses():
    """Test $$ resolution inside lists and objects; unknown names stay."""
    assert resolve_value({"a": ["$$x", "$$missing"]}, {"x": 1}) == {"a": [1, "$$missing"]}


def test_key_helpers():
    """Test key extraction, surgical deletion and emptiness."""
    document = {"mcpServers": {"github": {"url": "g"}, "linear": {"url": "l"}}, "theme": "dark"}

    assert extract_all_keys(document) == ["mcpServers.github.url", "mcpServers.linear.url", "theme"]

    delete_nested_key(document, "mcpServers.github.url")
    assert document == {"mcpServers": {"linear": {"url": "l"}}, "theme": "dark"}

    delete_nested_key(document, "mcpServers.linear.url")
    delete_nested_key(document, "theme")
    assert document == {}
    assert is_effectively_empty({"a": {}, "b": []})
    assert not is_effectively_empty({"a": 0})


def test_deep_merge():
    """Test nested objects merge and scalars are replaced."""
    assert deep_merge({"a": {"x": 1}, "b": 1}, {"a": {"y": 2}, "b": 2}) == {"a": {"x": 1, "y": 2}, "b": 2}
