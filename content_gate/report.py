"""Findings and the gate report.

Every check appends findings instead of raising, so one run surfaces every
defect. The report renders deterministically: findings are ordered by
workspace, stage, then (path, code, message), and nothing time-dependent is
ever written into it.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass

HARD = "hard"
WARNING = "warning"
SEVERITIES = (HARD, WARNING)

# Stage order in the rendered report
STAGES = ("load", "schema", "integrity", "analytics", "duplicates", "review", "manifest")

BANNER = "CONTENT GATE"


@dataclass(frozen=True)
class Finding:
    severity: str
    code: str
    path: str
    message: str
    stage: str = ""
    workspace: str = ""

    def __post_init__(self):
        if self.severity not in SEVERITIES:
            raise ValueError(f"Invalid severity '{self.severity}'. Must be one of {SEVERITIES}")

    def sort_key(self):
        stage_idx = STAGES.index(self.stage) if self.stage in STAGES else len(STAGES)
        return (self.workspace, stage_idx, self.path, self.code, self.message)

    def to_dict(self) -> dict:
        return asdict(self)


class Report:
    """Append-only collector for one validation run."""

    def __init__(self, workspace: str = ""):
        self.workspace = workspace
        self.stage = ""
        self._findings: list[Finding] = []
        self.info: list[str] = []
        self.duplicates: list[dict] = []
        self.workspaces: list[str] = [workspace] if workspace else []

    def add(self, severity: str, code: str, path: str, message: str) -> Finding:
        finding = Finding(severity, code, path, message, stage=self.stage, workspace=self.workspace)
        self._findings.append(finding)
        return finding

    def error(self, code: str, path: str, message: str) -> Finding:
        return self.add(HARD, code, path, message)

    def warn(self, code: str, path: str, message: str) -> Finding:
        return self.add(WARNING, code, path, message)

    def note(self, msg: str):
        self.info.append(msg)

    def merge(self, other: "Report"):
        """Fold another workspace's report into this one."""
        self._findings.extend(other._findings)
        self.info.extend(other.info)
        self.duplicates.extend(other.duplicates)
        for ws in other.workspaces:
            if ws not in self.workspaces:
                self.workspaces.append(ws)

    # -- views ---------------------------------------------------------------

    @property
    def findings(self) -> list[Finding]:
        # Sets of identical findings collapse; the same defect is reported once
        return sorted(set(self._findings), key=Finding.sort_key)

    @property
    def hard(self) -> list[Finding]:
        return [f for f in self.findings if f.severity == HARD]

    @property
    def warnings(self) -> list[Finding]:
        return [f for f in self.findings if f.severity == WARNING]

    @property
    def passed(self) -> bool:
        return not any(f.severity == HARD for f in self._findings)

    @property
    def verdict(self) -> str:
        return "pass" if self.passed else "fail"

    def codes(self) -> list[str]:
        return [f.code for f in self.findings]

    def has(self, code: str) -> bool:
        return any(f.code == code for f in self._findings)

    # -- rendering -----------------------------------------------------------

    def to_dict(self) -> dict:
        findings = self.findings
        return {
            "verdict": self.verdict,
            "passed": self.passed,
            "workspaces": sorted(self.workspaces),
            "counts": {
                HARD: sum(1 for f in findings if f.severity == HARD),
                WARNING: sum(1 for f in findings if f.severity == WARNING),
            },
            "findings": [f.to_dict() for f in findings],
            "duplicates": sorted(self.duplicates, key=lambda d: (d.get("workspace", ""), d["kind"], d["id"])),
            "info": sorted(self.info),
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2, sort_keys=True, ensure_ascii=False) + "\n"

    def print_summary(self, file=None):
        hard = self.hard
        warnings = self.warnings

        def out(s=""):
            print(s, file=file)

        out("\n" + "=" * 70)
        out(f"  {BANNER} — VALIDATION REPORT ({', '.join(sorted(self.workspaces)) or '-'})")
        out("=" * 70)
        if hard:
            out(f"\n❌ HARD FAILURES ({len(hard)}):")
            for f in hard:
                out(f"  • [{f.code}] {f.path}: {f.message}")
        if warnings:
            out(f"\n⚠️  WARNINGS ({len(warnings)}):")
            for f in warnings:
                out(f"  • [{f.code}] {f.path}: {f.message}")
        if self.info:
            out(f"\nℹ️  INFO ({len(self.info)}):")
            for i in sorted(self.info):
                out(f"  • {i}")
        if not hard:
            out(f"\n✅ PASS ({len(warnings)} warning(s))")
        else:
            out(f"\n🛑 FAIL — {len(hard)} HARD FAILURE(S) BLOCK PROMOTION")
        out("=" * 70)
        return self.passed
