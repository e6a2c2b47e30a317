#!/usr/bin/env python3
"""Referential Integrity Checker.

Resolves every Reference recorded by the graph loader and walks every
paginated index chain.

Checks:
  1. Catalog present and bound to this workspace
  2. Every reference target exists (DanglingReference)
  3. Target doc type / kind tag matches the edge (KindMismatch)
  4. itemsUrl stays inside the workspace, entryUrl follows the canonical
     /v1/workspaces/<ws>/<kind>s/<id>/<kind>.json pattern
  5. No two entries of one kind share an id (DuplicateId)
  6. Pagination chains: contiguous pages from 1, stable pageSize/kind/version,
     no overflow, no loops, exactly one terminal page, total == item count
  7. groups[].itemIds resolve to items listed in the same chain
  8. The unpaged section listings (mechanics index, shaped drills index)
     are only reachable from a section of a matching kind; a mechanics
     index's total equals its mechanics count

Usage:
  python -m content_gate.integrity content/v1/workspaces/de
"""

from __future__ import annotations

import argparse
import re
import sys
from collections import defaultdict

from content_gate.graph_loader import (
    DOC_CATALOG,
    DOC_DRILL_GROUPS,
    DOC_ENTRY,
    DOC_INDEX,
    DOC_MECHANICS_INDEX,
    ENTRY_PATH_RE,
    NEXT_PAGE_RE,
    SECTION_DOC_TYPES,
    ContentGraph,
    Node,
    Reference,
    load_workspace,
    normalize_kind,
    url_to_key,
)
from content_gate.report import Report


def entry_url_pattern(kind: str) -> re.Pattern:
    return re.compile(rf"^/v1/workspaces/(?P<ws>[^/]+)/{kind}s/(?P<id>[^/]+)/{kind}\.json$")


def entry_kind(node: Node) -> str:
    """Kind of an entry: its declared tag, else the kind implied by its path."""
    if node.kind:
        return node.kind
    m = ENTRY_PATH_RE.match(node.rel_path)
    return m.group("kind") if m else "?"


# ---------------------------------------------------------------------------
# References
# ---------------------------------------------------------------------------

def check_catalog(graph: ContentGraph, report: Report):
    catalog = graph.catalog
    if catalog is None:
        report.error("MissingCatalog", f"workspaces/{graph.workspace}/catalog.json",
                     "workspace has no catalog.json")
        return
    declared = catalog.data.get("workspace")
    if isinstance(declared, str) and declared != graph.workspace:
        report.error("WorkspaceMismatch", catalog.key,
                     f"catalog declares workspace '{declared}' but lives under '{graph.workspace}'")


def _check_entry_url(graph: ContentGraph, ref: Reference, report: Report):
    if ref.expected_kind is None:
        return
    m = entry_url_pattern(ref.expected_kind).match(ref.url)
    if not m:
        report.error("EntryUrlMismatch", ref.source,
                     f"{ref.field} '{ref.url}' does not match the canonical pattern "
                     f"/v1/workspaces/{{workspace}}/{ref.expected_kind}s/{{id}}/{ref.expected_kind}.json")
        return
    source = graph.nodes[ref.source]
    if source.doc_type == DOC_INDEX:
        # field is items[N].entryUrl
        idx = int(ref.field[len("items["):ref.field.index("]")])
        item = source.data["items"][idx]
        item_id = item.get("id") if isinstance(item, dict) else None
        if isinstance(item_id, str) and item_id != m.group("id"):
            report.error("EntryUrlMismatch", ref.source,
                         f"{ref.field} '{ref.url}' embeds id '{m.group('id')}' but the item id is '{item_id}'")


def section_kind_matches(section_kind, target: Node) -> bool:
    """Section kind tags for the unpaged listings: mechanics, or any drills alias."""
    if section_kind is None:
        return True
    if target.doc_type == DOC_MECHANICS_INDEX:
        return section_kind in ("mechanics", "mechanics_index")
    return normalize_kind(section_kind) == "drill"


def check_references(graph: ContentGraph, report: Report):
    prefix = f"workspaces/{graph.workspace}/"
    for ref in graph.references:
        if ref.ref_type != "url":
            continue
        if ref.field == "nextPage":
            # Format and resolution of nextPage belong to the chain walk
            continue
        if ref.target is None:
            report.error("DanglingReference", ref.source,
                         f"{ref.field} {ref.url!r} is not a /v1/ content URL")
            continue
        if ref.field.endswith("itemsUrl") and not ref.target.startswith(prefix):
            report.error("ItemsUrlOutsideWorkspace", ref.source,
                         f"{ref.field} '{ref.url}' resolves outside workspace '{graph.workspace}'")
            continue
        if ref.field.endswith("entryUrl"):
            _check_entry_url(graph, ref, report)

        target = graph.get(ref.target)
        if target is None:
            report.error("DanglingReference", ref.source,
                         f"{ref.field} '{ref.url}' does not exist (expected {ref.target})")
            continue
        from_catalog = graph.nodes[ref.source].doc_type == DOC_CATALOG
        accepted = SECTION_DOC_TYPES if from_catalog else (ref.expected_doc_type,)
        if ref.expected_doc_type and target.doc_type not in accepted:
            report.error("KindMismatch", ref.source,
                         f"{ref.field} '{ref.url}' points at a {target.doc_type} document, "
                         f"expected {ref.expected_doc_type}")
            continue
        if target.doc_type in (DOC_MECHANICS_INDEX, DOC_DRILL_GROUPS):
            if not section_kind_matches(ref.expected_kind, target):
                report.error("KindMismatch", ref.source,
                             f"{ref.field} section kind {ref.expected_kind!r} cannot list "
                             f"the {target.doc_type} document '{target.key}'")
            continue
        actual = entry_kind(target) if target.doc_type == DOC_ENTRY else target.kind
        if ref.expected_kind and actual != ref.expected_kind:
            report.error("KindMismatch", ref.source,
                         f"{ref.field} expects kind '{ref.expected_kind}' but '{target.key}' "
                         f"has kind '{actual}'")


# ---------------------------------------------------------------------------
# Duplicate identifiers
# ---------------------------------------------------------------------------

def id_collisions(graph: ContentGraph) -> dict[tuple[str, str], list[Node]]:
    """(kind, id) -> entries sharing it, only for groups of two or more."""
    groups: dict[tuple[str, str], list[Node]] = defaultdict(list)
    for node in graph.entries():
        if node.entry_id is not None:
            groups[(entry_kind(node), node.entry_id)].append(node)
    return {k: v for k, v in sorted(groups.items()) if len(v) > 1}


def check_duplicate_ids(graph: ContentGraph, report: Report):
    for (kind, entry_id), nodes in id_collisions(graph).items():
        keys = [n.key for n in nodes]
        for node in nodes:
            others = ", ".join(k for k in keys if k != node.key)
            report.error("DuplicateId", node.key,
                         f"{kind} id '{entry_id}' is also declared by {others}")


# ---------------------------------------------------------------------------
# Pagination
# ---------------------------------------------------------------------------

def _index_dir(first_key: str) -> str:
    return first_key[: -len("index.json")]


def check_chain(graph: ContentGraph, first: Node, report: Report) -> list[Node]:
    """Walk one chain from its first page; returns the pages visited."""
    pages: list[Node] = []
    seen: set[str] = set()
    item_ids: set[str] = set()
    item_count = 0
    terminal = False
    node = first
    base = _index_dir(first.key)
    page_size = first.data.get("pageSize")

    while node is not None:
        seen.add(node.key)
        pages.append(node)
        expected_page = len(pages)
        data = node.data

        if node.page is not None and node.page != expected_page:
            report.error("PageGap", node.key,
                         f"page number {node.page} but it is page {expected_page} of the chain")
        if data.get("pageSize") != page_size:
            report.error("PageSizeMismatch", node.key,
                         f"pageSize {data.get('pageSize')!r} differs from first page {page_size!r}")
        for header in ("version", "kind", "schemaVersion"):
            if node is not first and data.get(header) != first.data.get(header):
                report.error("IndexHeaderMismatch", node.key,
                             f"{header} {data.get(header)!r} differs from first page {first.data.get(header)!r}")

        items = data.get("items") if isinstance(data.get("items"), list) else []
        if isinstance(page_size, int) and len(items) > page_size:
            report.error("PageOverflow", node.key, f"{len(items)} items exceed pageSize {page_size}")
        for idx, item in enumerate(items):
            item_id = item.get("id") if isinstance(item, dict) else None
            if not isinstance(item_id, str):
                continue
            if item_id in item_ids:
                report.error("DuplicateItemId", node.key,
                             f"items[{idx}] id '{item_id}' is already listed earlier in this index")
            item_ids.add(item_id)
        item_count += len(items)

        next_page = data.get("nextPage")
        if next_page is None:
            terminal = True
            break
        m = NEXT_PAGE_RE.match(next_page) if isinstance(next_page, str) else None
        next_key = url_to_key(next_page) if m else None
        if next_key is None or int(m.group("n")) < 2 or not next_key.startswith(base + "pages/"):
            report.error("MalformedNextPage", node.key,
                         f"nextPage {next_page!r} must be null or /v1/{base}pages/{{n}}.json with n >= 2")
            break
        n = int(m.group("n"))
        if n != expected_page + 1:
            report.error("PageGap", node.key,
                         f"nextPage jumps to page {n}, expected page {expected_page + 1}")
        if next_key in seen:
            report.error("PaginationLoop", node.key, f"nextPage '{next_page}' loops back into the chain")
            break
        nxt = graph.get(next_key)
        if nxt is None or nxt.doc_type != DOC_INDEX:
            report.error("DanglingReference", node.key, f"nextPage '{next_page}' does not exist")
            break
        node = nxt

    if not terminal:
        report.error("MissingTerminalPage", first.key,
                     "index chain never reaches a page with nextPage == null")
    else:
        for page in pages:
            total = page.data.get("total")
            if isinstance(total, int) and not isinstance(total, bool) and total != item_count:
                report.error("TotalMismatch", page.key,
                             f"total {total} but the chain lists {item_count} items across {len(pages)} page(s)")

    page_keys = {p.key for p in pages}
    for ref in graph.references:
        if ref.ref_type == "item_id" and ref.source in page_keys and ref.target not in item_ids:
            report.error("UnknownGroupItem", ref.source,
                         f"{ref.field} {ref.target!r} is not an item of this index")
    return pages


def check_pagination(graph: ContentGraph, report: Report):
    chained: set[str] = set()
    for first in graph.first_pages():
        chained.update(p.key for p in check_chain(graph, first, report))
    for node in graph.by_type(DOC_INDEX):
        if node.key not in chained:
            report.warn("OrphanPage", node.key, "index page is not reachable from any index.json")


def check_mechanics_totals(graph: ContentGraph, report: Report):
    for node in graph.by_type(DOC_MECHANICS_INDEX):
        total, mechanics = node.data.get("total"), node.data.get("mechanics")
        if isinstance(total, bool) or not isinstance(total, int) or not isinstance(mechanics, list):
            continue
        if total != len(mechanics):
            report.error("TotalMismatch", node.key, f"total {total} but {len(mechanics)} mechanics are listed")


def check_integrity(graph: ContentGraph, report: Report):
    report.stage = "integrity"
    check_catalog(graph, report)
    check_references(graph, report)
    check_duplicate_ids(graph, report)
    check_pagination(graph, report)
    check_mechanics_totals(graph, report)


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Check references, ids and pagination of a workspace")
    parser.add_argument("workspace_root")
    args = parser.parse_args(argv)

    graph = load_workspace(args.workspace_root)
    report = Report(graph.workspace)
    check_integrity(graph, report)
    return 0 if report.print_summary() else 1


if __name__ == "__main__":
    sys.exit(main())
