"""JSON Schema for the exported n8n workflow graph.

The exported ``workflow`` is the one artifact other tooling imports, so its
shape is checked in two layers: structure via JSON Schema, then graph rules
JSON Schema cannot express (unique names, connections naming real nodes).

Example usage:
    >>> from flowforge.core.workflow_schema import validate_workflow
    >>> validate_workflow({
    ...     "nodes": [{"id": "a", "name": "webhook", "type": "n8n-nodes-base.webhook",
    ...                "typeVersion": 1, "position": [250, 300], "parameters": {}}],
    ...     "connections": {},
    ... })
"""

import json
from typing import Any, Union

import jsonschema
from jsonschema import Draft7Validator
from jsonschema import ValidationError as JsonSchemaValidationError

from flowforge.core.exceptions import WorkflowSchemaError

CONNECTION_TARGET_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "node": {"type": "string", "minLength": 1},
        "type": {"type": "string"},
        "index": {"type": "integer", "minimum": 0},
    },
    "required": ["node"],
}

WORKFLOW_SCHEMA: dict[str, Any] = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "title": "n8n workflow graph",
    "type": "object",
    "properties": {
        "name": {"type": "string"},
        "nodes": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "id": {"type": "string", "minLength": 1},
                    "name": {"type": "string", "minLength": 1},
                    "type": {"type": "string", "minLength": 1},
                    "typeVersion": {"type": "number"},
                    "position": {
                        "type": "array",
                        "items": {"type": "number"},
                        "minItems": 2,
                        "maxItems": 2,
                    },
                    "parameters": {"type": "object"},
                    "onError": {
                        "type": "string",
                        "enum": ["stopWorkflow", "continueRegularOutput", "continueErrorOutput"],
                    },
                },
                "required": ["id", "name", "type", "position", "parameters"],
            },
        },
        "connections": {
            "type": "object",
            "additionalProperties": {
                "type": "object",
                "properties": {
                    "main": {
                        "type": "array",
                        "items": {"type": "array", "items": CONNECTION_TARGET_SCHEMA},
                    }
                },
            },
        },
        "settings": {"type": "object"},
    },
    "required": ["nodes", "connections"],
}


def _format_path(path: list) -> str:
    """Format a jsonschema path into a readable string like "nodes[0].position"."""
    formatted = ""
    for component in path:
        if isinstance(component, int):
            formatted += f"[{component}]"
        else:
            if formatted:
                formatted += "."
            formatted += str(component)
    return formatted or "root"


def _get_suggestion(error: JsonSchemaValidationError) -> str:
    """Suggest a fix for the common structural mistakes."""
    path = list(error.absolute_path)
    if "position" in path:
        return "Node positions are [x, y] pairs of numbers"
    if "onError" in path:
        return "Use one of: stopWorkflow, continueRegularOutput, continueErrorOutput"
    if error.validator == "required":
        return "Add the missing property"
    return ""


def validate_workflow(data: Union[dict[str, Any], str]) -> None:
    """Validate an exported workflow graph.

    Args:
        data: Workflow dict (alias keys) or its JSON string

    Raises:
        WorkflowSchemaError: With the path of the first problem found
        ValueError: If a JSON string does not parse
    """
    if isinstance(data, str):
        try:
            data = json.loads(data)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON: {e}") from e

    validator = Draft7Validator(WORKFLOW_SCHEMA)
    try:
        validator.check_schema(WORKFLOW_SCHEMA)
    except jsonschema.SchemaError as e:
        raise RuntimeError(f"Schema definition error: {e}") from e

    errors = sorted(validator.iter_errors(data), key=lambda e: [str(p) for p in e.absolute_path])
    if errors:
        error = errors[0]
        raise WorkflowSchemaError(
            message=error.message, path=_format_path(list(error.absolute_path)), suggestion=_get_suggestion(error)
        )

    if isinstance(data, dict):
        _validate_unique_names(data)
        _validate_connection_references(data)


def _validate_unique_names(data: dict[str, Any]) -> None:
    """Node names must be unique because connections address nodes by name."""
    seen: set[str] = set()
    for i, node in enumerate(data["nodes"]):
        if node["name"] in seen:
            raise WorkflowSchemaError(
                message=f"Duplicate node name '{node['name']}'",
                path=f"nodes[{i}].name",
                suggestion="Give every node a unique name",
            )
        seen.add(node["name"])


def _validate_connection_references(data: dict[str, Any]) -> None:
    """Every connection endpoint must name an existing node."""
    names = {node["name"] for node in data["nodes"]}

    for source, outputs in data["connections"].items():
        if source not in names:
            raise WorkflowSchemaError(
                message=f"Connection source '{source}' is not a node",
                path=f"connections.{source}",
                suggestion=f"Change to one of: {sorted(names)}",
            )
        for slot_index, slot in enumerate(outputs.get("main", [])):
            for link_index, link in enumerate(slot):
                if link["node"] not in names:
                    raise WorkflowSchemaError(
                        message=f"Connection target '{link['node']}' is not a node",
                        path=f"connections.{source}.main[{slot_index}][{link_index}].node",
                        suggestion=f"Change to one of: {sorted(names)}",
                    )
