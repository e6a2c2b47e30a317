#!/usr/bin/env python3
"""Duplicate Detector.

Exact duplicates block promotion:
  - two different entry ids with the same normalized title (DuplicateTitle)
  - id collisions (reported as DuplicateId by the integrity checker; here
    they are re-listed with titles in the report's duplicates section)

Near duplicates only warn: prompt pairs whose token-set Jaccard similarity
reaches the configured threshold (default 0.92). Pairs are compared inside
each entry, and across entries when cross_entry_near_duplicates is on.

Usage:
  python -m content_gate.duplicates content/v1/workspaces/de [--threshold 0.9] [--cross-entry]
"""

from __future__ import annotations

import argparse
import re
import sys
from collections import defaultdict
from typing import Optional

from content_gate.analytics import exercise_texts, prompt_texts, tokenize
from content_gate.config import GateConfig
from content_gate.graph_loader import ContentGraph, Node, load_workspace
from content_gate.integrity import entry_kind, id_collisions
from content_gate.report import Report


# ---------------------------------------------------------------------------
# Similarity
# ---------------------------------------------------------------------------

def normalize_title(title) -> str:
    """Trim, collapse inner whitespace, lowercase."""
    if not isinstance(title, str):
        return ""
    return re.sub(r"\s+", " ", title).strip().lower()


def token_set(text) -> frozenset[str]:
    return frozenset(tokenize(text))


def jaccard(a: frozenset, b: frozenset) -> float:
    if not a and not b:
        return 0.0
    return len(a & b) / len(a | b)


def entry_prompts(node: Node) -> list[str]:
    """Prompt texts of a pack, or exercise prompts of a drill."""
    data = node.data
    if isinstance(data.get("prompts"), list):
        return prompt_texts(data["prompts"])
    return exercise_texts(data.get("exercises"))


def similar_pairs(items: list[tuple[object, frozenset]], threshold: float):
    """Yield (a, b, score) for every pair at or above ``threshold``.

    Items are sorted by set size; once the size ratio alone rules out the
    threshold the inner loop stops (|A & B| / |A | B| <= |A| / |B|).
    """
    ordered = sorted((it for it in items if it[1]), key=lambda it: (len(it[1]), str(it[0])))
    for i, (label_a, set_a) in enumerate(ordered):
        for label_b, set_b in ordered[i + 1:]:
            if len(set_a) / len(set_b) < threshold:
                break
            score = jaccard(set_a, set_b)
            if score >= threshold:
                yield label_a, label_b, score


# ---------------------------------------------------------------------------
# Checks
# ---------------------------------------------------------------------------

def check_titles(graph: ContentGraph, report: Report):
    by_title: dict[str, list[Node]] = defaultdict(list)
    for node in graph.entries():
        norm = normalize_title(node.data.get("title"))
        if norm:
            by_title[norm].append(node)
    for norm, nodes in sorted(by_title.items()):
        ids = {(entry_kind(n), n.entry_id) for n in nodes}
        if len(ids) < 2:
            # Same id twice is an id collision, not a title collision
            continue
        for node in nodes:
            others = ", ".join(f"{entry_kind(n)}:{n.entry_id}" for n in nodes
                               if (entry_kind(n), n.entry_id) != (entry_kind(node), node.entry_id))
            report.error("DuplicateTitle", node.key, f"title {norm!r} is also used by {others}")


def collect_id_collisions(graph: ContentGraph, report: Report):
    for (kind, entry_id), nodes in id_collisions(graph).items():
        report.duplicates.append({
            "workspace": graph.workspace,
            "kind": kind,
            "id": entry_id,
            "documents": [{"path": n.key, "title": n.data.get("title")} for n in nodes],
        })


def check_prompts(graph: ContentGraph, report: Report, config: GateConfig):
    threshold = config.near_duplicate_threshold
    cross: list[tuple[tuple[str, int], frozenset]] = []

    for node in graph.entries():
        texts = entry_prompts(node)
        seen: dict[frozenset, int] = {}
        items = []
        for i, text in enumerate(texts):
            tokens = token_set(text)
            if not tokens:
                continue
            if tokens in seen:
                report.warn("DuplicatePrompt", node.key,
                            f"prompt {i} repeats prompt {seen[tokens]}: {text.strip()!r}")
                continue
            seen[tokens] = i
            items.append((i, tokens))
            cross.append(((node.key, i), tokens))
        for a, b, score in similar_pairs(items, threshold):
            first, second = sorted((a, b))
            report.warn("NearDuplicatePrompt", node.key,
                        f"prompts {first} and {second} are {score:.2f} similar "
                        f"(threshold {threshold}): {texts[first].strip()!r} / {texts[second].strip()!r}")

    if not config.cross_entry_near_duplicates:
        return
    for a, b, score in similar_pairs(cross, threshold):
        (key_a, i), (key_b, j) = sorted((a, b))
        if key_a == key_b:
            continue
        report.warn("NearDuplicatePrompt", key_a,
                    f"prompt {i} is {score:.2f} similar to {key_b} prompt {j} (threshold {threshold})")


def check_duplicates(graph: ContentGraph, report: Report, config: Optional[GateConfig] = None):
    report.stage = "duplicates"
    config = config or GateConfig()
    check_titles(graph, report)
    collect_id_collisions(graph, report)
    check_prompts(graph, report, config)


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Find duplicate titles and near-duplicate prompts")
    parser.add_argument("workspace_root")
    parser.add_argument("--threshold", type=float, default=GateConfig.near_duplicate_threshold)
    parser.add_argument("--cross-entry", action="store_true", help="Also compare prompts across entries")
    args = parser.parse_args(argv)

    config = GateConfig(near_duplicate_threshold=args.threshold, cross_entry_near_duplicates=args.cross_entry)
    graph = load_workspace(args.workspace_root)
    report = Report(graph.workspace)
    check_duplicates(graph, report, config)
    return 0 if report.print_summary() else 1


if __name__ == "__main__":
    sys.exit(main())
