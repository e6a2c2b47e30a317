#!/usr/bin/env python3
"""Graph Loader: reads one workspace's content tree into a typed node graph.

Every JSON document under the workspace root becomes a Node keyed by its
canonical path (the content URL without the leading ``/v1/``). Reference
fields (``itemsUrl``, ``entryUrl``, ``nextPage``, ``groups[].itemIds``,
``mechanics[].itemsUrl``, ``drillGroups[].tiers[].entryUrl``) are
recorded as Reference edges and left unresolved; the integrity checker
resolves them against ``graph.nodes`` later, so a single broken document
never stops the rest of the tree from loading.

Parse failures become ParseError load errors and the document is left out
of the graph. When more than ``max_parse_errors`` documents fail, loading
stops with a ParseStorm error (the tree is almost certainly not content).

Usage:
  python -m content_gate.graph_loader content/v1/workspaces/de
"""

from __future__ import annotations

import argparse
import json
import re
import sys
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Iterator, Optional

from content_gate.log import log

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

CONTENT_PREFIX = "/v1/"

DOC_CATALOG = "catalog"
DOC_INDEX = "index"
DOC_SCENARIO_INDEX = "scenario_index"
DOC_MECHANICS_INDEX = "mechanics_index"
DOC_DRILL_GROUPS = "drill_groups"
DOC_ENTRY = "entry"

# What a catalog section's itemsUrl may point at
SECTION_DOC_TYPES = (DOC_INDEX, DOC_MECHANICS_INDEX, DOC_DRILL_GROUPS)

ENTRY_KINDS = ("pack", "drill", "exam", "track")

# Section/item kind tags used in indexes, mapped to the entry kind they list
KIND_ALIASES = {
    "pack": "pack",
    "context": "pack",
    "drill": "drill",
    "drills": "drill",
    "exam": "exam",
    "exams": "exam",
    "track": "track",
    "tracks": "track",
}

ENTRY_PATH_RE = re.compile(r"^(?P<dir>packs|drills|exams|tracks)/(?P<id>[^/]+)/(?P<kind>pack|drill|exam|track)\.json$")
PAGE_PATH_RE = re.compile(r"/pages/(?P<n>\d+)\.json$")
NEXT_PAGE_RE = re.compile(r"^/v1/workspaces/[^/]+/.+/pages/(?P<n>\d+)\.json$")
SCENARIO_INDEX_PATH = "context/scenarios.json"
SHAPED_DRILLS_PATH = "drills/index.json"


def normalize_kind(kind) -> Optional[str]:
    """Map an index/section kind tag to its entry kind (None if unknown)."""
    if not isinstance(kind, str):
        return None
    return KIND_ALIASES.get(kind.strip().lower())


def url_to_key(url) -> Optional[str]:
    """``/v1/workspaces/de/catalog.json`` -> ``workspaces/de/catalog.json``.

    Returns None for anything that is not an absolute content URL.
    """
    if not isinstance(url, str) or not url.startswith(CONTENT_PREFIX) or not url.endswith(".json"):
        return None
    key = url[len(CONTENT_PREFIX):]
    if ".." in key.split("/") or "//" in key:
        return None
    return key


def key_to_url(key: str) -> str:
    return CONTENT_PREFIX + key


# ---------------------------------------------------------------------------
# Graph types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Node:
    """One loaded document. ``data`` is the parsed JSON and is never mutated."""
    key: str
    doc_type: str                      # catalog | index | scenario_index | mechanics_index | drill_groups | entry
    kind: Optional[str]                # declared kind tag (None if absent)
    schema_version: object             # raw declared schemaVersion (None if absent)
    data: dict
    workspace: str
    rel_path: str                      # path relative to the workspace root

    @property
    def url(self) -> str:
        return key_to_url(self.key)

    @property
    def entry_id(self) -> Optional[str]:
        value = self.data.get("id")
        return value if isinstance(value, str) else None

    @property
    def page(self) -> Optional[int]:
        value = self.data.get("page")
        return value if isinstance(value, int) and not isinstance(value, bool) else None


@dataclass(frozen=True)
class Reference:
    """A deferred edge from ``source`` to ``target``.

    For ``ref_type == "url"`` the target is a graph key (None when the URL
    is not a content URL at all). For ``ref_type == "item_id"`` the target
    is an item id that must be listed somewhere in the source's index chain.
    """
    source: str
    field: str                         # e.g. items[3].entryUrl
    url: Optional[str]
    target: Optional[str]
    expected_doc_type: Optional[str]
    expected_kind: Optional[str]
    ref_type: str = "url"


@dataclass(frozen=True)
class LoadError:
    code: str                          # ParseError | ParseStorm | UnrecognizedDocument
    path: str
    message: str
    severity: str = "hard"


class ContentGraph:
    """Arena of nodes indexed by key, plus the recorded reference edges.

    The node mapping is exposed read-only; nothing downstream adds, removes
    or edits nodes once loading has finished.
    """

    def __init__(self, workspace: str, root: Path, nodes: dict, references: list, errors: list,
                 aborted: bool = False):
        self.workspace = workspace
        self.root = root
        self.nodes = MappingProxyType(dict(sorted(nodes.items())))
        self.references = tuple(references)
        self.errors = tuple(errors)
        self.aborted = aborted

    def __len__(self):
        return len(self.nodes)

    def get(self, key) -> Optional[Node]:
        if key is None:
            return None
        return self.nodes.get(key)

    def by_type(self, doc_type: str) -> list[Node]:
        return [n for n in self.nodes.values() if n.doc_type == doc_type]

    @property
    def catalog(self) -> Optional[Node]:
        return self.nodes.get(f"workspaces/{self.workspace}/catalog.json")

    def entries(self) -> list[Node]:
        return self.by_type(DOC_ENTRY)

    def first_pages(self) -> list[Node]:
        """Index documents that start a chain (``.../index.json``)."""
        return [n for n in self.by_type(DOC_INDEX) if n.key.endswith("/index.json")]

    def chain_pages(self, first_key: str) -> tuple[list[Node], Optional[str]]:
        """Follow ``nextPage`` from ``first_key``.

        Returns the pages in chain order and, when the chain revisits a page,
        the key it looped back to. The walk stops at a null/absent nextPage,
        an unparseable URL, or a page missing from the graph.
        """
        pages: list[Node] = []
        seen: set[str] = set()
        key = first_key
        while key is not None:
            if key in seen:
                return pages, key
            node = self.nodes.get(key)
            if node is None or node.doc_type != DOC_INDEX:
                break
            seen.add(key)
            pages.append(node)
            key = url_to_key(node.data.get("nextPage"))
        return pages, None

    def chain_items(self, first_key: str) -> Iterator[tuple[Node, int, dict]]:
        pages, _ = self.chain_pages(first_key)
        for page in pages:
            items = page.data.get("items")
            if not isinstance(items, list):
                continue
            for idx, item in enumerate(items):
                if isinstance(item, dict):
                    yield page, idx, item

    def referenced_entries(self) -> list[Node]:
        """Entries reachable from any index item or track item."""
        keys = {r.target for r in self.references
                if r.ref_type == "url" and r.field.endswith("entryUrl") and r.target in self.nodes}
        return [self.nodes[k] for k in sorted(keys) if self.nodes[k].doc_type == DOC_ENTRY]


# ---------------------------------------------------------------------------
# Classification and reference extraction
# ---------------------------------------------------------------------------

def classify(rel_path: str) -> Optional[str]:
    """Document type from the path inside the workspace, None if not content."""
    if rel_path == "catalog.json":
        return DOC_CATALOG
    if rel_path == SCENARIO_INDEX_PATH:
        return DOC_SCENARIO_INDEX
    if ENTRY_PATH_RE.match(rel_path):
        return DOC_ENTRY
    if rel_path.endswith("/index.json") or PAGE_PATH_RE.search(rel_path):
        return DOC_INDEX
    return None


def document_type(rel_path: str, data) -> Optional[str]:
    """classify(), refined by content for the two unpaged section listings.

    A ``kind: mechanics_index`` document lists mechanics instead of items, and
    a top-level ``drills/index.json`` carrying ``drillGroups`` is the shaped
    drills listing. Neither is a page of a chain.
    """
    doc_type = classify(rel_path)
    if doc_type != DOC_INDEX or not isinstance(data, dict):
        return doc_type
    if data.get("kind") == "mechanics_index":
        return DOC_MECHANICS_INDEX
    if rel_path == SHAPED_DRILLS_PATH and isinstance(data.get("drillGroups"), list):
        return DOC_DRILL_GROUPS
    return doc_type


def _ref(source, field, url, expected_doc_type, expected_kind) -> Reference:
    return Reference(source=source, field=field, url=url, target=url_to_key(url),
                     expected_doc_type=expected_doc_type, expected_kind=expected_kind)


def extract_references(key: str, doc_type: str, data: dict) -> list[Reference]:
    """Every reference field of one document, in document order."""
    refs: list[Reference] = []

    if doc_type == DOC_CATALOG:
        for i, section in enumerate(_dicts(data.get("sections"))):
            if "itemsUrl" in section and section["itemsUrl"] is not None:
                kind = section.get("kind") if isinstance(section.get("kind"), str) else None
                refs.append(_ref(key, f"sections[{i}].itemsUrl", section["itemsUrl"], DOC_INDEX, kind))

    elif doc_type == DOC_SCENARIO_INDEX:
        for i, scenario in enumerate(_dicts(data.get("scenarios"))):
            if "itemsUrl" in scenario:
                refs.append(_ref(key, f"scenarios[{i}].itemsUrl", scenario["itemsUrl"], DOC_INDEX, "context"))

    elif doc_type == DOC_MECHANICS_INDEX:
        for i, mechanic in enumerate(_dicts(data.get("mechanics"))):
            if "itemsUrl" in mechanic:
                refs.append(_ref(key, f"mechanics[{i}].itemsUrl", mechanic["itemsUrl"], DOC_INDEX, None))

    elif doc_type == DOC_DRILL_GROUPS:
        for g, group in enumerate(_dicts(data.get("drillGroups"))):
            for t, tier in enumerate(_dicts(group.get("tiers"))):
                if "entryUrl" in tier:
                    refs.append(_ref(key, f"drillGroups[{g}].tiers[{t}].entryUrl", tier["entryUrl"],
                                     DOC_ENTRY, "drill"))

    elif doc_type == DOC_INDEX:
        index_kind = data.get("kind")
        for i, item in enumerate(_dicts(data.get("items"))):
            if "entryUrl" in item:
                kind = normalize_kind(item.get("kind") or index_kind)
                refs.append(_ref(key, f"items[{i}].entryUrl", item["entryUrl"], DOC_ENTRY, kind))
        next_page = data.get("nextPage")
        if next_page is not None:
            # Kind consistency along a chain is checked per chain, not per edge
            refs.append(_ref(key, "nextPage", next_page, DOC_INDEX, None))
        for g, group in enumerate(_dicts(data.get("groups"))):
            item_ids = group.get("itemIds")
            if not isinstance(item_ids, list):
                continue
            for j, item_id in enumerate(item_ids):
                refs.append(Reference(source=key, field=f"groups[{g}].itemIds[{j}]", url=None,
                                      target=item_id if isinstance(item_id, str) else None,
                                      expected_doc_type=None, expected_kind=None, ref_type="item_id"))

    elif doc_type == DOC_ENTRY and data.get("kind") == "track":
        for i, item in enumerate(_dicts(data.get("items"))):
            if "entryUrl" in item:
                refs.append(_ref(key, f"items[{i}].entryUrl", item["entryUrl"], DOC_ENTRY,
                                 normalize_kind(item.get("kind"))))

    return refs


def reference_urls(doc_type: str, data: dict) -> list[str]:
    """Plain URL strings a document points at (used when crawling remote stores)."""
    return [r.url for r in extract_references("", doc_type, data)
            if r.ref_type == "url" and isinstance(r.url, str)]


def crawl_workspace(workspace: str, fetch) -> Iterator[tuple[str, bytes]]:
    """Yield (rel_path, raw bytes) for every document reachable from the catalog.

    ``fetch(rel_path)`` returns the raw document or None when it is missing.
    The scenario listing is a second root since no catalog section links it.
    Targets outside the workspace are never fetched. Unparseable documents
    are yielded but not followed.
    """
    prefix = f"workspaces/{workspace}/"
    queue = deque(["catalog.json", SCENARIO_INDEX_PATH])
    seen: set[str] = set()
    while queue:
        rel_path = queue.popleft()
        if rel_path in seen:
            continue
        seen.add(rel_path)
        raw = fetch(rel_path)
        if raw is None:
            continue
        yield rel_path, raw
        try:
            data = json.loads(raw.decode("utf-8"))
        except (ValueError, UnicodeDecodeError):
            continue
        doc_type = document_type(rel_path, data)
        if not isinstance(data, dict) or doc_type is None:
            continue
        for target_url in reference_urls(doc_type, data):
            target = url_to_key(target_url)
            if target and target.startswith(prefix) and target[len(prefix):] not in seen:
                queue.append(target[len(prefix):])


def _dicts(value) -> list[dict]:
    if not isinstance(value, list):
        return []
    return [v if isinstance(v, dict) else {} for v in value]


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

def _read_json(path: Path):
    with open(path, encoding="utf-8") as f:
        return json.load(f)


def load_workspace(workspace_root, max_parse_errors: Optional[int] = None) -> ContentGraph:
    """Load every document under ``workspace_root`` into a ContentGraph.

    The workspace id is the directory name. Documents are visited in sorted
    path order so the graph (and everything derived from it) is stable.
    """
    root = Path(workspace_root)
    workspace = root.name
    nodes: dict[str, Node] = {}
    references: list[Reference] = []
    errors: list[LoadError] = []
    parse_errors = 0
    aborted = False

    if not root.is_dir():
        errors.append(LoadError("ParseError", f"workspaces/{workspace}",
                                f"Workspace root does not exist or is not a directory: {root}"))
        return ContentGraph(workspace, root, nodes, references, errors)

    for path in sorted(root.rglob("*.json")):
        rel_path = path.relative_to(root).as_posix()
        key = f"workspaces/{workspace}/{rel_path}"
        if classify(rel_path) is None:
            errors.append(LoadError("UnrecognizedDocument", key,
                                    "JSON file is not at a known content path; ignored", severity="warning"))
            continue

        try:
            data = _read_json(path)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            data = None
            reason = f"invalid JSON: {e}"
        else:
            reason = "top-level value must be an object"
        if not isinstance(data, dict):
            parse_errors += 1
            errors.append(LoadError("ParseError", key, reason))
            if max_parse_errors is not None and parse_errors > max_parse_errors:
                errors.append(LoadError("ParseStorm", f"workspaces/{workspace}",
                                        f"More than {max_parse_errors} documents failed to parse; load aborted"))
                aborted = True
                log(f"{workspace}: parse storm after {parse_errors} failures, aborting load", "ERROR")
                break
            continue

        doc_type = document_type(rel_path, data)
        kind = data.get("kind") if isinstance(data.get("kind"), str) else None
        if doc_type == DOC_CATALOG:
            kind = kind or "catalog"
        nodes[key] = Node(key=key, doc_type=doc_type, kind=kind,
                          schema_version=data.get("schemaVersion"), data=data,
                          workspace=workspace, rel_path=rel_path)
        references.extend(extract_references(key, doc_type, data))

    log(f"{workspace}: loaded {len(nodes)} documents, {len(references)} references, "
        f"{parse_errors} parse error(s)")
    return ContentGraph(workspace, root, nodes, references, errors, aborted=aborted)


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Load a workspace and print its graph summary")
    parser.add_argument("workspace_root", help="Path to content/v1/workspaces/<ws>")
    args = parser.parse_args(argv)

    graph = load_workspace(args.workspace_root)
    counts: dict[str, int] = {}
    for node in graph.nodes.values():
        counts[node.doc_type] = counts.get(node.doc_type, 0) + 1
    print(f"Workspace: {graph.workspace}")
    for doc_type in sorted(counts):
        print(f"  {doc_type:<16} {counts[doc_type]}")
    print(f"  references       {len(graph.references)}")
    for err in graph.errors:
        print(f"  [{err.code}] {err.path}: {err.message}")
    return 1 if any(e.severity == "hard" for e in graph.errors) else 0


if __name__ == "__main__":
    sys.exit(main())
