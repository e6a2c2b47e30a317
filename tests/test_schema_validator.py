"""Tests for content_gate/schema_validator.py — version tables and the frozen v1 contract."""

import copy

from content_gate.graph_loader import load_workspace
from content_gate.report import Report
from content_gate.schema_validator import (
    SCHEMA_TABLES,
    build_json_schema,
    contract_violations,
    load_contract_lock,
    validate_schemas,
)


def _run(root) -> Report:
    graph = load_workspace(root)
    report = Report(graph.workspace)
    validate_schemas(graph, report)
    return report


class TestContractLock:
    def test_live_tables_honor_lock(self):
        assert contract_violations(SCHEMA_TABLES, load_contract_lock()) == []

    def test_removed_required_field(self):
        tables = copy.deepcopy(SCHEMA_TABLES)
        del tables[1]["pack"]["register"]
        violations = contract_violations(tables, load_contract_lock())
        assert violations == [("schema:pack@v1", "required field 'register' was removed")]

    def test_retyped_required_field(self):
        tables = copy.deepcopy(SCHEMA_TABLES)
        tables[1]["index"]["pageSize"] = "string"
        violations = contract_violations(tables, load_contract_lock())
        assert len(violations) == 1
        assert "retyped from integer to string" in violations[0][1]

    def test_added_field_is_allowed(self):
        tables = copy.deepcopy(SCHEMA_TABLES)
        tables[1]["catalog"]["featured"] = "array"
        assert contract_violations(tables, load_contract_lock()) == []

    def test_removed_document_type(self):
        tables = copy.deepcopy(SCHEMA_TABLES)
        del tables[1]["track"]
        violations = contract_violations(tables, load_contract_lock())
        assert violations[0][0] == "schema:track@v1"

    def test_broken_contract_is_reported_as_hard_finding(self, valid_ws):
        tables = copy.deepcopy(SCHEMA_TABLES)
        del tables[1]["catalog"]["languageName"]
        graph = load_workspace(valid_ws)
        report = Report("de")
        validate_schemas(graph, report, tables=tables)
        assert report.codes() == ["SchemaContractBroken"]
        assert not report.passed


class TestBuildJsonSchema:
    def test_nullable_field(self):
        schema = build_json_schema("index", SCHEMA_TABLES[1]["index"])
        assert schema["properties"]["nextPage"]["type"] == ["string", "null"]
        assert "total" not in schema["required"]
        assert schema["properties"]["total"]["type"] == "integer"

    def test_semver_pattern_on_pack_version(self):
        schema = build_json_schema("pack", SCHEMA_TABLES[1]["pack"])
        assert "pattern" in schema["properties"]["packVersion"]


class TestValidateSchemas:
    def test_valid_workspace_has_no_findings(self, valid_ws):
        assert _run(valid_ws).findings == []

    def test_missing_required_field(self, content, valid_ws):
        content.update("packs/doctor_001/pack.json", lambda d: d.pop("sessionPlan"))
        report = _run(valid_ws)
        assert report.codes() == ["MissingRequiredField"]
        finding = report.findings[0]
        assert finding.path == "workspaces/de/packs/doctor_001/pack.json"
        assert "sessionPlan" in finding.message
        assert finding.severity == "hard"

    def test_every_missing_field_is_reported(self, content, valid_ws):
        def strip(doc):
            for name in ("languageCode", "languageName", "sections"):
                doc.pop(name)
        content.update("catalog.json", strip)
        report = _run(valid_ws)
        assert report.codes() == ["MissingRequiredField"] * 3

    def test_wrong_primitive_type(self, content, valid_ws):
        content.update("context/index.json", lambda d: d.update(pageSize="2"))
        report = _run(valid_ws)
        assert report.codes() == ["InvalidFieldType"]
        assert "pageSize" in report.findings[0].message

    def test_bool_is_not_a_number(self, content, valid_ws):
        content.update("drills/verbs_001/drill.json", lambda d: d.update(estimatedMinutes=True))
        assert _run(valid_ws).codes() == ["InvalidFieldType"]

    def test_bad_pack_version_format(self, content, valid_ws):
        content.update("packs/doctor_002/pack.json", lambda d: d.update(packVersion="v1"))
        assert _run(valid_ws).codes() == ["InvalidFieldFormat"]

    def test_unknown_schema_version(self, content, valid_ws):
        content.update("packs/doctor_003/pack.json", lambda d: d.update(schemaVersion=7))
        report = _run(valid_ws)
        assert report.codes() == ["UnknownSchemaVersion"]
        assert not report.passed

    def test_missing_schema_version(self, content, valid_ws):
        content.update("drills/index.json", lambda d: d.pop("schemaVersion"))
        assert _run(valid_ws).codes() == ["MissingSchemaVersion"]

    def test_version_2_requires_content_id(self, content, valid_ws):
        content.update("packs/doctor_001/pack.json", lambda d: d.update(schemaVersion=2))
        report = _run(valid_ws)
        assert report.codes() == ["MissingRequiredField"]
        assert "contentId" in report.findings[0].message

    def test_version_2_document_with_content_id_passes(self, content, valid_ws):
        content.update("packs/doctor_001/pack.json",
                       lambda d: d.update(schemaVersion=2, contentId="de:pack:doctor_001"))
        assert _run(valid_ws).findings == []


class TestSectionListingSchemas:
    def test_listings_pass(self, content, valid_ws):
        content.add_mechanics()
        content.use_shaped_drills()
        assert _run(valid_ws).findings == []

    def test_mechanics_index_is_not_a_paged_index(self, content, valid_ws):
        content.add_mechanics()
        content.update("mechanics/index.json", lambda d: (d.pop("total"), d.pop("mechanics")))
        report = _run(valid_ws)
        assert report.codes() == ["MissingRequiredField", "MissingRequiredField"]
        assert "mechanics_index schemaVersion 1" in report.findings[0].message
        assert not any("pageSize" in f.message for f in report.findings)

    def test_mechanic_needs_items_url(self, content, valid_ws):
        content.add_mechanics()
        content.update("mechanics/index.json", lambda d: d["mechanics"][0].pop("itemsUrl"))
        report = _run(valid_ws)
        assert report.codes() == ["MissingRequiredField"]
        assert "'mechanics.0.itemsUrl'" in report.findings[0].message

    def test_drill_tier_fields(self, content, valid_ws):
        content.use_shaped_drills()

        def break_tier(doc):
            tier = doc["drillGroups"][0]["tiers"][0]
            tier.pop("status")
            tier["durationMinutes"] = "8"
        content.update("drills/index.json", break_tier)
        report = _run(valid_ws)
        assert sorted(report.codes()) == ["InvalidFieldType", "MissingRequiredField"]
        messages = " ".join(f.message for f in report.findings)
        assert "drillGroups.0.tiers.0.status" in messages
        assert "drillGroups.0.tiers.0.durationMinutes" in messages

    def test_drill_group_kind_is_fixed(self, content, valid_ws):
        content.use_shaped_drills()
        content.update("drills/index.json", lambda d: d["drillGroups"][0].update(kind="group"))
        report = _run(valid_ws)
        assert report.codes() == ["InvalidFieldFormat"]
        assert "drillGroups.0.kind" in report.findings[0].message
