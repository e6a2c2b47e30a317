#!/usr/bin/env python3
"""Analytics Computer: deterministic metrics for entry analytics blocks.

Recomputes slotSwitchDensity, promptDiversityScore, scenarioCoverageScore
and estimatedCognitiveLoad from an entry's own prompts (or, for drills, its
exercises) and compares them with the stored block. Every function here is
pure: same entry in, same numbers out, no clocks, no randomness.

Cross-checks:
  - analytics.primaryStructure / variationSlots == the entry's top-level fields
  - scores in [0, 1], cognitive load in {low, medium, high}
  - intendedOutcome is real text (no TODO / FIXME / TBD)
  - index items' analyticsSummary agrees with the entry it lists
  - catalog sections' analyticsRollup counts agree with their index items

Usage:
  python -m content_gate.analytics content/v1/workspaces/de/packs/doctor_001/pack.json
"""

from __future__ import annotations

import argparse
import json
import math
import re
import sys
from collections import Counter
from functools import lru_cache
from pathlib import Path
from typing import Optional

import yaml

from content_gate.config import GateConfig
from content_gate.graph_loader import DOC_ENTRY, DOC_INDEX, ContentGraph, Node, url_to_key
from content_gate.integrity import entry_kind
from content_gate.report import Report

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

TOLERANCE = 1e-9
CLUSTER_SIZE = 3
COGNITIVE_LOADS = ("low", "medium", "high")
PLACEHOLDER_MARKERS = ("TODO", "FIXME", "TBD")
SCORE_FIELDS = ("slotSwitchDensity", "promptDiversityScore", "scenarioCoverageScore")
MATCHED_FIELDS = ("primaryStructure", "variationSlots")
CORE_FIELDS = MATCHED_FIELDS + SCORE_FIELDS + ("estimatedCognitiveLoad", "intendedOutcome")
# Explainability fields older packs may lack; absence is only a warning
LEGACY_FIELDS = ("goal", "successDefinition", "targetLatencyMs")

DRILL_STRUCTURE = "drill_pattern"
SCENARIO_TOKENS_PATH = Path(__file__).parent / "data" / "scenario_tokens.yaml"

_PUNCT_RE = re.compile(r"[.,!?;:]")


@lru_cache(maxsize=1)
def _shipped_scenario_tokens() -> dict:
    with open(SCENARIO_TOKENS_PATH, encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    return {str(k): [str(t) for t in v] for k, v in data.items()}


def scenario_dictionaries(config: Optional[GateConfig] = None) -> dict[str, list[str]]:
    """Shipped dictionaries with any per-scenario overrides from config."""
    tokens = dict(_shipped_scenario_tokens())
    if config is not None and config.scenario_tokens:
        tokens.update(config.scenario_tokens)
    return tokens


# ---------------------------------------------------------------------------
# Pure metric functions
# ---------------------------------------------------------------------------

def tokenize(text) -> list[str]:
    """Whitespace split, lowercased, ``.,!?;:`` stripped, empties dropped."""
    if not isinstance(text, str):
        return []
    tokens = (_PUNCT_RE.sub("", t.lower()).strip() for t in text.split())
    return [t for t in tokens if t]


def prompt_texts(prompts) -> list[str]:
    texts = []
    for p in prompts or []:
        text = p.get("text") if isinstance(p, dict) else None
        texts.append(text if isinstance(text, str) else "")
    return texts


def exercise_texts(exercises) -> list[str]:
    """Drill exercises read as prompts: ``prompt``, falling back to ``text``."""
    texts = []
    for ex in exercises if isinstance(exercises, list) else []:
        text = (ex.get("prompt") or ex.get("text")) if isinstance(ex, dict) else None
        texts.append(text if isinstance(text, str) else "")
    return texts


def slot_set(slots) -> set[str]:
    """Distinct slot names; anything that is not a string is ignored."""
    if not isinstance(slots, list):
        return set()
    return {s for s in slots if isinstance(s, str)}


def slot_switch_density(prompts) -> float:
    """Share of prompts whose slotsChanged names two or more distinct slots."""
    prompts = prompts or []
    if not prompts:
        return 0.0
    multi = 0
    for p in prompts:
        changed = p.get("slotsChanged") if isinstance(p, dict) else None
        if len(slot_set(changed)) >= 2:
            multi += 1
    return multi / len(prompts)


def prompt_diversity_score(texts: list[str]) -> float:
    """0.7 * lexical uniqueness + 0.3 * coefficient of variation of lengths.

    The structural term is capped at 1. A lone prompt scores 0.5.
    """
    if not texts:
        return 0.0
    if len(texts) == 1:
        return 0.5
    distinct: set[str] = set()
    lengths = []
    for text in texts:
        tokens = tokenize(text)
        lengths.append(len(tokens))
        distinct.update(tokens)
    total = sum(lengths)
    lexical = len(distinct) / total if total > 0 else 0.0
    mean = total / len(lengths)
    variance = sum((n - mean) ** 2 for n in lengths) / len(lengths)
    structural = min(1.0, math.sqrt(variance) / mean) if mean > 0 else 0.0
    return lexical * 0.7 + structural * 0.3


def token_clusters(tokens: list[str]) -> list[list[str]]:
    return [tokens[i:i + CLUSTER_SIZE] for i in range(0, len(tokens), CLUSTER_SIZE)]


def scenario_coverage_score(texts: list[str], scenario, dictionaries: dict[str, list[str]]) -> float:
    """Share of the scenario's token clusters that occur in the prompt text."""
    if not texts or not isinstance(scenario, str) or not scenario:
        return 0.0
    clusters = token_clusters(dictionaries.get(scenario) or [])
    if not clusters:
        return 0.0
    haystack = " ".join(t.lower() for t in texts)
    covered = sum(1 for cluster in clusters if any(tok.lower() in haystack for tok in cluster))
    return covered / len(clusters)


def average_prompt_length(texts: list[str]) -> float:
    if not texts:
        return 0.0
    return sum(len(tokenize(t)) for t in texts) / len(texts)


def cognitive_load_score(slot_count: int, density: float, avg_length: float) -> int:
    score = 1 if slot_count <= 2 else 2 if slot_count == 3 else 3
    if density >= 0.5:
        score += 2
    elif density >= 0.3:
        score += 1
    if avg_length >= 10:
        score += 2
    elif avg_length >= 6:
        score += 1
    return score


def load_class(score: int) -> str:
    if score <= 2:
        return "low"
    if score <= 4:
        return "medium"
    return "high"


def estimate_cognitive_load(variation_slots, density: float, texts: list[str]) -> str:
    slot_count = len(slot_set(variation_slots))
    return load_class(cognitive_load_score(slot_count, density, average_prompt_length(texts)))


def outcome_problem(text) -> Optional[tuple[str, str]]:
    """(code, message) when intendedOutcome is unusable, else None."""
    if not isinstance(text, str) or not text.strip():
        return "EmptyOutcome", "intendedOutcome must be non-empty text"
    upper = text.upper()
    found = [m for m in PLACEHOLDER_MARKERS if m in upper]
    if found:
        return "PlaceholderOutcome", f"intendedOutcome contains placeholder marker(s) {', '.join(found)}: {text.strip()!r}"
    return None


def compute_pack_analytics(entry: dict, dictionaries: dict[str, list[str]]) -> dict:
    prompts = entry.get("prompts") if isinstance(entry.get("prompts"), list) else []
    texts = prompt_texts(prompts)
    slots = entry.get("variationSlots") if isinstance(entry.get("variationSlots"), list) else []
    density = slot_switch_density(prompts)
    return {
        "primaryStructure": entry.get("primaryStructure") or "",
        "variationSlots": list(slots),
        "slotSwitchDensity": density,
        "promptDiversityScore": prompt_diversity_score(texts),
        "scenarioCoverageScore": scenario_coverage_score(texts, entry.get("scenario"), dictionaries),
        "estimatedCognitiveLoad": estimate_cognitive_load(slots, density, texts),
    }


def compute_drill_analytics(entry: dict) -> dict:
    """Drills have no slots or scenario; load follows the exercise count."""
    texts = exercise_texts(entry.get("exercises"))
    n = len(texts)
    return {
        "primaryStructure": DRILL_STRUCTURE,
        "variationSlots": [],
        "slotSwitchDensity": 0.0,
        "promptDiversityScore": prompt_diversity_score(texts),
        "scenarioCoverageScore": 0.0,
        "estimatedCognitiveLoad": "low" if n <= 5 else "medium" if n <= 10 else "high",
    }


def recomputation_inputs(kind: str, entry: dict) -> bool:
    """True when the entry carries the raw content its scores derive from."""
    field = {"pack": "prompts", "drill": "exercises"}.get(kind)
    return field is not None and isinstance(entry.get(field), list) and len(entry[field]) > 0


def compute_analytics(kind: str, entry: dict, dictionaries: dict[str, list[str]]) -> Optional[dict]:
    if kind == "pack":
        return compute_pack_analytics(entry, dictionaries)
    if kind == "drill":
        return compute_drill_analytics(entry)
    return None


# ---------------------------------------------------------------------------
# Entry checks
# ---------------------------------------------------------------------------

def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _same_slots(a, b) -> bool:
    if not isinstance(a, list) or not isinstance(b, list):
        return False
    try:
        return set(a) == set(b)
    except TypeError:
        return False


def check_matched_fields(node: Node, block: dict, kind: str, report: Report):
    data = node.data
    for field_name in MATCHED_FIELDS:
        in_block, in_entry = field_name in block, field_name in data
        if not in_entry and (not in_block or kind != "pack"):
            # only packs carry structure and slots at the top level
            continue
        if in_block != in_entry:
            where = "analytics block" if not in_block else "entry top level"
            report.error("AnalyticsFieldMismatch", node.key, f"{field_name} is missing from the {where}")
            continue
        stored, own = block[field_name], data[field_name]
        same = _same_slots(stored, own) if field_name == "variationSlots" else stored == own
        if not same:
            report.error("AnalyticsFieldMismatch", node.key,
                         f"analytics.{field_name} {stored!r} != entry {field_name} {own!r}")


def check_block_values(node: Node, block: dict, kind: str, report: Report):
    for field_name in SCORE_FIELDS:
        if field_name not in block:
            continue
        value = block[field_name]
        if not _is_number(value) or not (0.0 <= value <= 1.0) or math.isnan(value):
            report.error("ScoreOutOfRange", node.key, f"analytics.{field_name} = {value!r} is not a number in [0, 1]")

    if "estimatedCognitiveLoad" in block and block["estimatedCognitiveLoad"] not in COGNITIVE_LOADS:
        report.error("InvalidCognitiveLoad", node.key,
                     f"analytics.estimatedCognitiveLoad {block['estimatedCognitiveLoad']!r} "
                     f"must be one of {', '.join(COGNITIVE_LOADS)}")

    if "intendedOutcome" in block:
        problem = outcome_problem(block["intendedOutcome"])
        if problem:
            report.error(problem[0], node.key, problem[1])

    missing = [f for f in CORE_FIELDS if f not in block]
    if kind == "pack":
        for field_name in missing:
            report.error("MissingAnalyticsField", node.key, f"analytics.{field_name} is required for packs")
        legacy = [f for f in LEGACY_FIELDS if f not in block]
        if legacy:
            report.warn("MissingLegacyAnalytics", node.key,
                        f"optional analytics field(s) absent: {', '.join(legacy)}")
    elif missing:
        report.warn("MissingLegacyAnalytics", node.key,
                    f"analytics block lacks {', '.join(missing)}")


def check_recomputed(node: Node, block: dict, kind: str, report: Report, config: GateConfig,
                     dictionaries: dict[str, list[str]]):
    computed = compute_analytics(kind, node.data, dictionaries)
    if computed is None:
        return
    authoritative = config.analytics_authoritative and recomputation_inputs(kind, node.data)

    def mismatch(message):
        if authoritative:
            report.error("AnalyticsMismatch", node.key, message)
        else:
            report.warn("AnalyticsDrift", node.key, message)

    for field_name in SCORE_FIELDS:
        stored = block.get(field_name)
        if not _is_number(stored) or math.isnan(stored):
            continue
        if abs(stored - computed[field_name]) > TOLERANCE:
            mismatch(f"analytics.{field_name} stored {stored!r}, recomputed {computed[field_name]!r}")

    stored_load = block.get("estimatedCognitiveLoad")
    if stored_load in COGNITIVE_LOADS and stored_load != computed["estimatedCognitiveLoad"]:
        mismatch(f"analytics.estimatedCognitiveLoad stored {stored_load!r}, "
                 f"recomputed {computed['estimatedCognitiveLoad']!r}")

    if kind == "pack":
        coverage = block.get("scenarioCoverageScore", computed["scenarioCoverageScore"])
        diversity = block.get("promptDiversityScore", computed["promptDiversityScore"])
        if _is_number(coverage) and coverage < config.min_coverage:
            report.warn("LowCoverage", node.key,
                        f"scenarioCoverageScore {coverage:.3f} below recommended {config.min_coverage}")
        if _is_number(diversity) and diversity < config.min_diversity:
            report.warn("LowDiversity", node.key,
                        f"promptDiversityScore {diversity:.3f} below recommended {config.min_diversity}")


def check_entry(node: Node, report: Report, config: GateConfig, dictionaries: dict[str, list[str]]):
    block = node.data.get("analytics")
    if not isinstance(block, dict):
        # Absent or mistyped blocks are schema findings
        return
    kind = entry_kind(node)
    check_matched_fields(node, block, kind, report)
    check_block_values(node, block, kind, report)
    check_recomputed(node, block, kind, report, config, dictionaries)


# ---------------------------------------------------------------------------
# Catalog-level cross-checks
# ---------------------------------------------------------------------------

def _stored_load(block: dict):
    return block.get("estimatedCognitiveLoad", block.get("cognitiveLoad"))


def check_index_summaries(graph: ContentGraph, report: Report):
    for first in graph.first_pages():
        for page, idx, item in graph.chain_items(first.key):
            summary = item.get("analyticsSummary")
            if not isinstance(summary, dict):
                continue
            entry = graph.get(url_to_key(item.get("entryUrl")))
            if entry is None or entry.doc_type != DOC_ENTRY:
                continue
            block = entry.data.get("analytics") if isinstance(entry.data.get("analytics"), dict) else {}
            label = f"items[{idx}].analyticsSummary"
            if "primaryStructure" in summary and summary["primaryStructure"] != entry.data.get("primaryStructure"):
                report.error("AnalyticsSummaryMismatch", page.key,
                             f"{label}.primaryStructure {summary['primaryStructure']!r} != "
                             f"{entry.key} primaryStructure {entry.data.get('primaryStructure')!r}")
            if "variationSlots" in summary and not _same_slots(summary["variationSlots"],
                                                                entry.data.get("variationSlots")):
                report.error("AnalyticsSummaryMismatch", page.key,
                             f"{label}.variationSlots {summary['variationSlots']!r} != "
                             f"{entry.key} variationSlots {entry.data.get('variationSlots')!r}")
            if "cognitiveLoad" in summary and _stored_load(block) is not None \
                    and summary["cognitiveLoad"] != _stored_load(block):
                report.error("AnalyticsSummaryMismatch", page.key,
                             f"{label}.cognitiveLoad {summary['cognitiveLoad']!r} != "
                             f"{entry.key} cognitive load {_stored_load(block)!r}")


def compute_rollup(items: list[dict]) -> dict:
    """Counts per scenario, level and primaryStructure over index items.

    Only string values are counted; mistyped fields are schema findings.
    """
    scenarios: Counter = Counter()
    levels: Counter = Counter()
    structures: Counter = Counter()
    for item in items:
        summary = item.get("analyticsSummary") if isinstance(item.get("analyticsSummary"), dict) else None
        level = item.get("level")
        if isinstance(level, str) and level:
            levels[level] += 1
        scenario = item.get("scenario") or ("unknown" if summary is not None else None)
        if isinstance(scenario, str) and scenario:
            scenarios[scenario] += 1
        structure = item.get("primaryStructure") or (summary or {}).get("primaryStructure")
        if isinstance(structure, str) and structure:
            structures[structure] += 1
    return {
        "scenarios": dict(sorted(scenarios.items())),
        "levels": dict(sorted(levels.items())),
        "primaryStructures": dict(sorted(structures.items())),
    }


def check_rollups(graph: ContentGraph, report: Report):
    catalog = graph.catalog
    if catalog is None:
        return
    sections = catalog.data.get("sections")
    for i, section in enumerate(sections if isinstance(sections, list) else []):
        if not isinstance(section, dict) or not isinstance(section.get("analyticsRollup"), dict):
            continue
        first_key = url_to_key(section.get("itemsUrl"))
        first = graph.get(first_key)
        if first is None or first.doc_type != DOC_INDEX:
            continue
        items = [item for _, _, item in graph.chain_items(first_key)]
        expected = compute_rollup(items)
        stored = section["analyticsRollup"]
        for name in ("scenarios", "levels", "primaryStructures"):
            if (stored.get(name) or {}) != expected[name]:
                report.error("RollupMismatch", catalog.key,
                             f"sections[{i}].analyticsRollup.{name} {stored.get(name)!r} != "
                             f"counted {expected[name]!r}")


def check_analytics(graph: ContentGraph, report: Report, config: Optional[GateConfig] = None):
    report.stage = "analytics"
    config = config or GateConfig()
    dictionaries = scenario_dictionaries(config)
    for node in graph.entries():
        check_entry(node, report, config, dictionaries)
    check_index_summaries(graph, report)
    check_rollups(graph, report)


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Recompute analytics for one entry document")
    parser.add_argument("entry", help="Path to a pack.json or drill.json")
    args = parser.parse_args(argv)

    with open(args.entry, encoding="utf-8") as f:
        entry = json.load(f)
    kind = entry.get("kind", Path(args.entry).stem)
    computed = compute_analytics(kind, entry, scenario_dictionaries())
    if computed is None:
        print(f"No recomputable analytics for kind '{kind}'", file=sys.stderr)
        return 1
    print(json.dumps(computed, indent=2, sort_keys=True, ensure_ascii=False))
    return 0


if __name__ == "__main__":
    sys.exit(main())
