"""Quality Gate Evaluator.

``validate(workspace_root)`` is the single entry point the promotion
workflow calls. It loads the workspace once and runs, in order:

  load -> schema -> integrity -> analytics -> duplicates -> review

Every stage appends to the same Report; nothing raises on bad content.
The verdict is ``pass`` iff the report holds zero hard findings.

``validate_many`` runs several workspaces on a thread pool. Workspaces
share nothing, each one gets its own Report, and the reports are merged
once at the end in workspace order, so the merged output does not depend
on scheduling. A crash inside one workspace becomes an InternalError
finding for that workspace and the others still complete.
"""

from __future__ import annotations

import json
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml

from content_gate.analytics import check_analytics
from content_gate.config import ConfigError, GateConfig
from content_gate.duplicates import check_duplicates
from content_gate.graph_loader import ContentGraph, load_workspace
from content_gate.integrity import check_integrity, entry_kind
from content_gate.log import log, log_separator
from content_gate.report import Report
from content_gate.schema_validator import validate_schemas


# ---------------------------------------------------------------------------
# Review snapshot
# ---------------------------------------------------------------------------

HANDCRAFTED = "handcrafted"


@dataclass(frozen=True)
class ReviewSnapshot:
    """Read-only copy of the review bookkeeping, keys are ``<kind>:<id>``."""
    approved: frozenset = field(default_factory=frozenset)
    pending: frozenset = field(default_factory=frozenset)

    def status(self, kind: str, entry_id: str) -> str:
        key = f"{kind}:{entry_id}"
        if key in self.approved:
            return "approved"
        if key in self.pending:
            return "pending"
        return "unknown"


def load_review_snapshot(path) -> ReviewSnapshot:
    """Read a YAML or JSON file with ``approved`` and ``pending`` lists."""
    p = Path(path)
    try:
        text = p.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"Cannot read review snapshot {p}: {e}") from e
    try:
        data = json.loads(text) if p.suffix == ".json" else yaml.safe_load(text)
    except (ValueError, yaml.YAMLError) as e:
        raise ConfigError(f"Review snapshot {p} is not valid: {e}") from e
    data = data or {}
    if not isinstance(data, dict):
        raise ConfigError(f"Review snapshot {p} must be a mapping with approved/pending lists")
    lists = {}
    for name in ("approved", "pending"):
        values = data.get(name) or []
        if not isinstance(values, list) or not all(isinstance(v, str) for v in values):
            raise ConfigError(f"Review snapshot {p}: '{name}' must be a list of '<kind>:<id>' strings")
        lists[name] = frozenset(values)
    return ReviewSnapshot(**lists)


def check_review(graph: ContentGraph, report: Report, review: ReviewSnapshot):
    report.stage = "review"
    for node in graph.referenced_entries():
        provenance = node.data.get("provenance")
        if isinstance(provenance, dict) and provenance.get("source") == HANDCRAFTED:
            continue
        kind = entry_kind(node)
        status = review.status(kind, node.entry_id or "?")
        if status != "approved":
            report.error("UnapprovedEntry", node.key,
                         f"{kind}:{node.entry_id} is listed in an index but its review status is {status}")


# ---------------------------------------------------------------------------
# Gate
# ---------------------------------------------------------------------------

def report_load_errors(graph: ContentGraph, report: Report):
    report.stage = "load"
    for err in graph.errors:
        if err.severity == "hard":
            report.error(err.code, err.path, err.message)
        else:
            report.warn(err.code, err.path, err.message)


def run_checks(graph: ContentGraph, report: Report, config: GateConfig,
               review: Optional[ReviewSnapshot] = None):
    report_load_errors(graph, report)
    if graph.aborted:
        return
    validate_schemas(graph, report)
    check_integrity(graph, report)
    check_analytics(graph, report, config)
    check_duplicates(graph, report, config)
    if review is not None:
        check_review(graph, report, review)


def validate(workspace_root, config: Optional[GateConfig] = None,
             review: Optional[ReviewSnapshot] = None) -> Report:
    """Validate one workspace and return its report."""
    config = config or GateConfig()
    root = Path(workspace_root)
    report = Report(root.name)
    log_separator(f"workspace {root.name}")
    graph = load_workspace(root, max_parse_errors=config.max_parse_errors)
    run_checks(graph, report, config, review)
    report.stage = ""
    report.note(f"{root.name}: {len(graph)} document(s), {len(graph.references)} reference(s)")
    log(f"{root.name}: verdict {report.verdict} "
        f"({len(report.hard)} hard, {len(report.warnings)} warning)",
        "INFO" if report.passed else "ERROR")
    return report


def _validate_isolated(root: Path, config: GateConfig, review: Optional[ReviewSnapshot]) -> Report:
    try:
        return validate(root, config, review)
    except Exception as e:  # reported as InternalError for this workspace only
        log(f"{root.name}: internal error: {e!r}", "ERROR")
        report = Report(root.name)
        report.error("InternalError", f"workspaces/{root.name}", f"validation crashed: {e!r}")
        return report


def validate_many(roots, config: Optional[GateConfig] = None,
                  review: Optional[ReviewSnapshot] = None) -> Report:
    """Validate independent workspaces concurrently and merge their reports."""
    config = config or GateConfig()
    paths = sorted({Path(r) for r in roots}, key=lambda p: (p.name, str(p)))
    merged = Report()
    if not paths:
        return merged
    with ThreadPoolExecutor(max_workers=min(config.max_workers, len(paths))) as pool:
        reports = list(pool.map(lambda p: _validate_isolated(p, config, review), paths))
    for report in reports:
        merged.merge(report)
    return merged
