"""Tests for content_gate/integrity.py — references, duplicate ids, pagination chains."""

from content_gate.graph_loader import load_workspace
from content_gate.integrity import check_integrity, id_collisions
from content_gate.report import Report

from tests.conftest import PROMPT_SETS, make_pack, url


def _run(root) -> Report:
    graph = load_workspace(root)
    report = Report(graph.workspace)
    check_integrity(graph, report)
    return report


def _add_page(content, n, items, next_page=None, **extra):
    doc = {"schemaVersion": 1, "version": "v1", "kind": "context", "pageSize": 2, "page": n,
           "total": 3, "items": items, "nextPage": next_page}
    doc.update(extra)
    content.write(f"context/pages/{n}.json", doc)


class TestReferences:
    def test_valid_workspace(self, valid_ws):
        assert _run(valid_ws).findings == []

    def test_dangling_entry_url(self, content, valid_ws):
        def point_at_ghost(doc):
            doc["items"][1]["id"] = "ghost_pack"
            doc["items"][1]["entryUrl"] = url("packs/ghost_pack/pack.json")
            doc["groups"] = []
        content.update("context/index.json", point_at_ghost)
        report = _run(valid_ws)
        dangling = [f for f in report.findings if f.code == "DanglingReference"]
        assert len(dangling) == 1
        assert dangling[0].path == "workspaces/de/context/index.json"
        assert "/v1/workspaces/de/packs/ghost_pack/pack.json" in dangling[0].message
        assert not report.passed

    def test_kind_mismatch(self, content, valid_ws):
        content.update("drills/index.json", lambda d: d["items"][0].update(kind="exam"))
        report = _run(valid_ws)
        # URL no longer follows the exam pattern, and the target is a drill
        assert report.codes() == ["EntryUrlMismatch", "KindMismatch"]

    def test_kind_mismatch_on_section_index(self, content, valid_ws):
        content.update("catalog.json", lambda d: d["sections"][1].update(kind="exams"))
        report = _run(valid_ws)
        assert report.codes() == ["KindMismatch"]
        assert "expects kind 'exams'" in report.findings[0].message

    def test_entry_url_id_mismatch(self, content, valid_ws):
        content.update("context/index.json",
                       lambda d: d["items"][0].update(entryUrl=url("packs/doctor_002/pack.json")))
        report = _run(valid_ws)
        assert "EntryUrlMismatch" in report.codes()

    def test_items_url_outside_workspace(self, content, valid_ws):
        content.update("catalog.json",
                       lambda d: d["sections"][1].update(itemsUrl="/v1/workspaces/en/drills/index.json"))
        report = _run(valid_ws)
        assert "ItemsUrlOutsideWorkspace" in report.codes()
        assert "DanglingReference" not in report.codes()

    def test_non_content_url(self, content, valid_ws):
        content.update("drills/index.json", lambda d: d["items"][0].update(entryUrl="drills/verbs_001/drill.json"))
        report = _run(valid_ws)
        assert "DanglingReference" in report.codes()

    def test_unknown_group_item(self, content, valid_ws):
        content.update("context/index.json", lambda d: d["groups"][0]["itemIds"].append("nope"))
        report = _run(valid_ws)
        assert report.codes() == ["UnknownGroupItem"]

    def test_catalog_workspace_mismatch(self, content, valid_ws):
        content.update("catalog.json", lambda d: d.update(workspace="en"))
        assert _run(valid_ws).codes() == ["WorkspaceMismatch"]

    def test_missing_catalog(self, content, valid_ws):
        content.path("catalog.json").unlink()
        report = _run(valid_ws)
        assert "MissingCatalog" in report.codes()


class TestDuplicateIds:
    def test_two_packs_same_id(self, content, valid_ws):
        content.write("packs/dup_pack/pack.json", make_pack("dup_pack", prompts=PROMPT_SETS["doctor_001"], title="Erste Variante"))
        content.write("packs/dup_pack_copy/pack.json", make_pack("dup_pack", prompts=PROMPT_SETS["doctor_002"], title="Zweite Variante"))
        report = _run(valid_ws)
        dups = [f for f in report.findings if f.code == "DuplicateId"]
        assert [f.path for f in dups] == [
            "workspaces/de/packs/dup_pack/pack.json",
            "workspaces/de/packs/dup_pack_copy/pack.json",
        ]
        assert not report.passed

    def test_same_id_different_kind_is_fine(self, content, valid_ws):
        drill = content.read("drills/verbs_001/drill.json")
        drill["id"] = "doctor_001"
        content.write("drills/doctor_001/drill.json", drill)
        graph = load_workspace(valid_ws)
        assert id_collisions(graph) == {}


class TestPagination:
    def test_total_mismatch(self, content, valid_ws):
        content.update("context/pages/2.json", lambda d: d.update(total=5))
        report = _run(valid_ws)
        assert report.codes() == ["TotalMismatch"]
        assert report.findings[0].path == "workspaces/de/context/pages/2.json"

    def test_total_is_optional(self, content, valid_ws):
        content.update("context/index.json", lambda d: d.pop("total"))
        content.update("context/pages/2.json", lambda d: d.pop("total"))
        assert _run(valid_ws).findings == []

    def test_page_overflow(self, content, valid_ws):
        def overflow(doc):
            doc["pageSize"] = 1
        content.update("context/index.json", overflow)
        content.update("context/pages/2.json", overflow)
        report = _run(valid_ws)
        assert report.codes() == ["PageOverflow"]

    def test_page_size_mismatch(self, content, valid_ws):
        content.update("context/pages/2.json", lambda d: d.update(pageSize=50))
        assert _run(valid_ws).codes() == ["PageSizeMismatch"]

    def test_header_mismatch(self, content, valid_ws):
        content.update("context/pages/2.json", lambda d: d.update(kind="exams"))
        assert _run(valid_ws).codes() == ["IndexHeaderMismatch"]

    def test_malformed_next_page(self, content, valid_ws):
        content.update("context/index.json", lambda d: d.update(nextPage="/v1/workspaces/de/context/page2.json"))
        report = _run(valid_ws)
        assert "MalformedNextPage" in report.codes()
        assert "MissingTerminalPage" in report.codes()
        # pages/2.json is now unreachable
        assert "OrphanPage" in report.codes()

    def test_next_page_to_index_one_is_malformed(self, content, valid_ws):
        content.update("context/pages/2.json", lambda d: d.update(nextPage=url("context/pages/1.json")))
        assert "MalformedNextPage" in _run(valid_ws).codes()

    def test_page_gap(self, content, valid_ws):
        page2 = content.read("context/pages/2.json")
        content.path("context/pages/2.json").unlink()
        page2["page"] = 3
        content.write("context/pages/3.json", page2)
        content.update("context/index.json", lambda d: d.update(nextPage=url("context/pages/3.json")))
        report = _run(valid_ws)
        assert report.codes() == ["PageGap", "PageGap"]

    def test_pagination_loop(self, content, valid_ws):
        content.update("context/pages/2.json", lambda d: d.update(nextPage=url("context/pages/3.json")))
        _add_page(content, 3, [], next_page=url("context/pages/2.json"))
        report = _run(valid_ws)
        assert "PaginationLoop" in report.codes()
        assert "MissingTerminalPage" in report.codes()

    def test_dangling_next_page(self, content, valid_ws):
        content.update("context/pages/2.json", lambda d: d.update(nextPage=url("context/pages/3.json")))
        report = _run(valid_ws)
        assert sorted(report.codes()) == ["DanglingReference", "MissingTerminalPage"]

    def test_duplicate_item_across_pages(self, content, valid_ws):
        def repeat_first(doc):
            doc["items"].append(content.read("context/index.json")["items"][0])
            doc["total"] = 4
        content.update("context/pages/2.json", repeat_first)
        content.update("context/index.json", lambda d: d.update(total=4))
        report = _run(valid_ws)
        assert report.codes() == ["DuplicateItemId"]

    def test_three_page_chain_sums_items(self, content, valid_ws):
        content.update("context/pages/2.json", lambda d: d.update(nextPage=url("context/pages/3.json"), total=3))
        _add_page(content, 3, [], next_page=None)
        report = _run(valid_ws)
        assert report.findings == []

    def test_exactly_one_terminal_page(self, valid_ws):
        graph = load_workspace(valid_ws)
        pages, _ = graph.chain_pages("workspaces/de/context/index.json")
        assert sum(1 for p in pages if p.data["nextPage"] is None) == 1
        assert sum(len(p.data["items"]) for p in pages) == pages[0].data["total"]


class TestSectionListings:
    def test_mechanics_section_is_clean(self, content, valid_ws):
        content.add_mechanics()
        assert _run(valid_ws).findings == []

    def test_mechanics_listing_under_wrong_section_kind(self, content, valid_ws):
        content.add_mechanics()
        content.update("catalog.json", lambda d: d["sections"][2].update(kind="context"))
        report = _run(valid_ws)
        assert report.codes() == ["KindMismatch"]
        assert "mechanics_index" in report.findings[0].message

    def test_paged_index_is_not_a_mechanics_target(self, content, valid_ws):
        content.add_mechanics()
        content.update("mechanics/modal_verbs/index.json", lambda d: d.update(kind="mechanics_index"))
        report = _run(valid_ws)
        assert "KindMismatch" in report.codes()

    def test_dangling_mechanic_items_url(self, content, valid_ws):
        content.add_mechanics()
        content.path("mechanics/modal_verbs/index.json").unlink()
        report = _run(valid_ws)
        assert report.codes() == ["DanglingReference"]
        assert report.findings[0].path == "workspaces/de/mechanics/index.json"
        assert report.findings[0].message.startswith("mechanics[0].itemsUrl")

    def test_mechanic_items_url_outside_workspace(self, content, valid_ws):
        content.add_mechanics()
        content.update("mechanics/index.json", lambda d: d["mechanics"][0].update(
            itemsUrl="/v1/workspaces/en/mechanics/modal_verbs/index.json"))
        report = _run(valid_ws)
        assert "ItemsUrlOutsideWorkspace" in report.codes()

    def test_mechanics_total_mismatch(self, content, valid_ws):
        content.add_mechanics()
        content.update("mechanics/index.json", lambda d: d.update(total=3))
        report = _run(valid_ws)
        assert report.codes() == ["TotalMismatch"]
        assert "1 mechanics" in report.findings[0].message

    def test_shaped_drills_index_is_clean(self, content, valid_ws):
        content.use_shaped_drills()
        assert _run(valid_ws).findings == []

    def test_dangling_drill_tier(self, content, valid_ws):
        content.use_shaped_drills()
        content.update("drills/index.json", lambda d: d["drillGroups"][0]["tiers"][0].update(
            entryUrl=url("drills/verbs_404/drill.json")))
        report = _run(valid_ws)
        assert report.codes() == ["DanglingReference"]
        assert report.findings[0].path == "workspaces/de/drills/index.json"
        assert "drillGroups[0].tiers[0].entryUrl" in report.findings[0].message

    def test_drill_tier_pointing_at_pack(self, content, valid_ws):
        content.use_shaped_drills()
        content.update("drills/index.json", lambda d: d["drillGroups"][0]["tiers"][0].update(
            entryUrl=url("packs/doctor_001/pack.json")))
        report = _run(valid_ws)
        assert "EntryUrlMismatch" in report.codes()
        assert "KindMismatch" in report.codes()

    def test_shaped_drills_under_non_drill_section(self, content, valid_ws):
        content.use_shaped_drills()
        content.update("catalog.json", lambda d: d["sections"][1].update(kind="exams"))
        assert _run(valid_ws).codes() == ["KindMismatch"]
