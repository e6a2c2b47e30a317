#!/usr/bin/env python3
"""Schema & Compatibility Validator.

Each document declares a ``schemaVersion``. Every version owns a fixed
required-field table per document type; the table is compiled to a Draft 7
JSON Schema and every violation is collected (not just the first).

Version 1 is frozen. ``data/schema_contract.lock.yaml`` records its
contract, and before any document is checked the live tables are compared
against the lock: a required field that was removed or retyped is a
SchemaContractBroken failure. Adding optional fields never breaks the lock.

Usage:
  python -m content_gate.schema_validator content/v1/workspaces/de
"""

from __future__ import annotations

import argparse
import sys
from functools import lru_cache
from pathlib import Path
from typing import Optional

import yaml
from jsonschema import Draft7Validator

from content_gate.graph_loader import DOC_ENTRY, ENTRY_PATH_RE, ContentGraph, Node, load_workspace
from content_gate.report import Report

# ---------------------------------------------------------------------------
# Version tables
# ---------------------------------------------------------------------------

LOCK_PATH = Path(__file__).parent / "data" / "schema_contract.lock.yaml"

SEMVER_PATTERN = r"^\d+\.\d+\.\d+$"

_CATALOG_V1 = {
    "version": "string",
    "workspace": "string",
    "languageCode": "string",
    "languageName": "string",
    "sections": "array",
}

_INDEX_V1 = {
    "version": "string",
    "kind": "string",
    "pageSize": "integer",
    "page": "integer",
    "items": "array",
    "nextPage": "string|null",
}

_SCENARIO_INDEX_V1 = {
    "version": "string",
    "kind": "string",
    "scenarios": "array",
}

_MECHANICS_INDEX_V1 = {
    "version": "string",
    "kind": "string",
    "total": "integer",
    "mechanics": "array",
}

_DRILL_GROUPS_V1 = {
    "drillGroups": "array",
}

_PACK_V1 = {
    "id": "string",
    "kind": "string",
    "title": "string",
    "level": "string",
    "estimatedMinutes": "number",
    "description": "string",
    "outline": "array",
    "sessionPlan": "object",
    "scenario": "string",
    "register": "string",
    "primaryStructure": "string",
    "packVersion": "string",
    "analytics": "object",
}

_DRILL_V1 = {
    "id": "string",
    "kind": "string",
    "title": "string",
    "estimatedMinutes": "number",
}

_EXAM_V1 = {
    "id": "string",
    "kind": "string",
    "title": "string",
    "level": "string",
    "estimatedMinutes": "number",
}

_TRACK_V1 = {
    "id": "string",
    "kind": "string",
    "title": "string",
    "level": "string",
    "scenario": "string",
    "estimatedMinutes": "number",
    "description": "string",
    "items": "array",
    "ordering": "object",
    "version": "number",
}

# Optional fields: type-checked when present, never required
OPTIONAL_FIELDS = {
    "index": {"total": "integer", "groups": "array"},
    "pack": {"variationSlots": "array", "prompts": "array", "provenance": "object"},
    "drill": {"level": "string", "exercises": "array", "analytics": "object", "provenance": "object"},
    "exam": {"analytics": "object", "provenance": "object"},
    "track": {"analytics": "object", "provenance": "object"},
}

# Required fields of array elements, keyed by (table, dotted array field)
ELEMENT_FIELDS = {
    ("mechanics_index", "mechanics"): {"id": "string", "title": "string", "itemsUrl": "string"},
    ("drill_groups", "drillGroups"): {
        "id": "string",
        "kind": "string",
        "title": "string",
        "description": "string",
        "tiers": "array",
    },
    ("drill_groups", "drillGroups.tiers"): {
        "id": "string",
        "tier": "number",
        "level": "string",
        "durationMinutes": "number",
        "status": "string",
        "entryUrl": "string",
    },
}

# Extra value constraints layered on the field types
FIELD_PATTERNS = {
    ("pack", "packVersion"): SEMVER_PATTERN,
}
FIELD_CONSTANTS = {
    ("drill_groups", "drillGroups.kind"): "drill_group",
}

SCHEMA_TABLES: dict[int, dict[str, dict[str, str]]] = {
    1: {
        "catalog": _CATALOG_V1,
        "index": _INDEX_V1,
        "scenario_index": _SCENARIO_INDEX_V1,
        "mechanics_index": _MECHANICS_INDEX_V1,
        "drill_groups": _DRILL_GROUPS_V1,
        "pack": _PACK_V1,
        "drill": _DRILL_V1,
        "exam": _EXAM_V1,
        "track": _TRACK_V1,
    },
    # Version 2 adds the telemetry identifier to every entry
    2: {
        "catalog": dict(_CATALOG_V1),
        "index": dict(_INDEX_V1),
        "scenario_index": dict(_SCENARIO_INDEX_V1),
        "mechanics_index": dict(_MECHANICS_INDEX_V1),
        "drill_groups": dict(_DRILL_GROUPS_V1),
        "pack": {**_PACK_V1, "contentId": "string"},
        "drill": {**_DRILL_V1, "contentId": "string"},
        "exam": {**_EXAM_V1, "contentId": "string"},
        "track": {**_TRACK_V1, "contentId": "string"},
    },
}

SUPPORTED_SCHEMA_VERSIONS = tuple(sorted(SCHEMA_TABLES))


def table_name(node: Node) -> str:
    """Entries use their path's kind (pack/drill/...), other nodes their doc type."""
    if node.doc_type == DOC_ENTRY:
        m = ENTRY_PATH_RE.match(node.rel_path)
        if m:
            return m.group("kind")
    return node.doc_type


def _json_type(type_spec: str):
    parts = type_spec.split("|")
    return parts[0] if len(parts) == 1 else parts


def _properties(name: str, prefix: str, fields: dict[str, str]) -> dict:
    properties = {}
    for field_name, type_spec in fields.items():
        path = prefix + field_name
        prop = {"type": _json_type(type_spec)}
        pattern = FIELD_PATTERNS.get((name, path))
        if pattern:
            prop["pattern"] = pattern
        if (name, path) in FIELD_CONSTANTS:
            prop["const"] = FIELD_CONSTANTS[(name, path)]
        element = ELEMENT_FIELDS.get((name, path))
        if element is not None:
            prop["items"] = {
                "type": "object",
                "required": sorted(element),
                "properties": _properties(name, path + ".", element),
            }
        properties[field_name] = prop
    return properties


def build_json_schema(name: str, fields: dict[str, str]) -> dict:
    return {
        "$schema": "http://json-schema.org/draft-07/schema#",
        "title": name,
        "type": "object",
        "required": sorted(fields),
        "properties": _properties(name, "", {**OPTIONAL_FIELDS.get(name, {}), **fields}),
    }


@lru_cache(maxsize=None)
def _validator(version: int, name: str) -> Optional[Draft7Validator]:
    fields = SCHEMA_TABLES.get(version, {}).get(name)
    if fields is None:
        return None
    return Draft7Validator(build_json_schema(name, fields))


# ---------------------------------------------------------------------------
# Contract lock
# ---------------------------------------------------------------------------

def load_contract_lock(path=LOCK_PATH) -> dict:
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    return {int(version): tables for version, tables in data.items()}


def contract_violations(tables: dict, lock: dict) -> list[tuple[str, str]]:
    """(path, message) for every locked required field the live tables break."""
    violations = []
    for version in sorted(lock):
        live_version = tables.get(version)
        for name in sorted(lock[version]):
            path = f"schema:{name}@v{version}"
            live = (live_version or {}).get(name)
            if live is None:
                violations.append((path, f"document type '{name}' was removed from schema version {version}"))
                continue
            for field_name, locked_type in sorted(lock[version][name].items()):
                if field_name not in live:
                    violations.append((path, f"required field '{field_name}' was removed"))
                elif live[field_name] != locked_type:
                    violations.append(
                        (path, f"required field '{field_name}' was retyped from {locked_type} to {live[field_name]}"))
    return violations


# ---------------------------------------------------------------------------
# Document checks
# ---------------------------------------------------------------------------

def _error_field(error) -> str:
    path = [str(p) for p in error.absolute_path]
    if error.validator == "required":
        # message: "'x' is a required property"
        path.append(error.message.split("'")[1] if "'" in error.message else "?")
    return ".".join(path) or "?"


def validate_node(node: Node, report: Report):
    version = node.schema_version
    if version is None:
        report.error("MissingSchemaVersion", node.key, "document does not declare schemaVersion")
        return
    if isinstance(version, bool) or not isinstance(version, int) or version not in SCHEMA_TABLES:
        report.error("UnknownSchemaVersion", node.key,
                     f"schemaVersion {version!r} is not supported (supported: "
                     f"{', '.join(str(v) for v in SUPPORTED_SCHEMA_VERSIONS)})")
        return

    name = table_name(node)
    validator = _validator(version, name)
    if validator is None:
        report.error("UnknownSchemaVersion", node.key, f"schemaVersion {version} has no table for '{name}'")
        return

    for error in sorted(validator.iter_errors(node.data), key=lambda e: (_error_field(e), e.message)):
        field_name = _error_field(error)
        prefix = f"{name} schemaVersion {version}"
        if error.validator == "required":
            report.error("MissingRequiredField", node.key, f"{prefix}: missing required field '{field_name}'")
        elif error.validator == "type":
            report.error("InvalidFieldType", node.key,
                         f"{prefix}: field '{field_name}' must be {error.validator_value}, "
                         f"got {type(error.instance).__name__}")
        else:
            report.error("InvalidFieldFormat", node.key, f"{prefix}: field '{field_name}': {error.message[:200]}")


def validate_schemas(graph: ContentGraph, report: Report, tables: Optional[dict] = None,
                     lock: Optional[dict] = None):
    """Run the contract lock check, then field-validate every node."""
    report.stage = "schema"
    tables = SCHEMA_TABLES if tables is None else tables
    lock = load_contract_lock() if lock is None else lock
    for path, message in contract_violations(tables, lock):
        report.error("SchemaContractBroken", path, message)

    for node in graph.nodes.values():
        validate_node(node, report)


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Check documents against their schemaVersion contract")
    parser.add_argument("workspace_root")
    args = parser.parse_args(argv)

    graph = load_workspace(args.workspace_root)
    report = Report(graph.workspace)
    validate_schemas(graph, report)
    return 0 if report.print_summary() else 1


if __name__ == "__main__":
    sys.exit(main())
