#!/usr/bin/env python3
"""Content gate CLI: validate one or more workspaces and print the verdict.

Exit status: 0 pass, 1 fail, 2 usage/config error.

Usage:
  # Local workspaces
  python -m content_gate.validate_content content/v1/workspaces/de content/v1/workspaces/en \\
    [--config gate.yaml] [--review-snapshot review.yaml] [--json] [--output report.json] \\
    [--log-file gate.log]

  # Smoke check of the served content (mirrored locally before validation)
  python -m content_gate.validate_content --base-url https://content.example.com \\
    --workspace de [--manifest content/meta/manifest.json]
"""

from __future__ import annotations

import argparse
import sys
import tempfile
from pathlib import Path

import httpx

from content_gate.config import ConfigError, GateConfig, load_config
from content_gate.log import log, set_log_file
from content_gate.manifest import ManifestError, check_against_manifest, read_manifest
from content_gate.quality_gate import load_review_snapshot, validate, validate_many
from content_gate.storage import HttpBlobStore, mirror_workspace


def smoke_check(base_url: str, workspaces: list[str], config: GateConfig, review=None,
                manifest=None, client=None):
    """Mirror each served workspace into a temp dir, validate, compare to manifest."""
    store = HttpBlobStore(base_url, client=client)
    merged = None
    try:
        with tempfile.TemporaryDirectory(prefix="content-gate-") as tmp:
            for workspace in sorted(workspaces):
                root = mirror_workspace(store, workspace, tmp)
                report = validate(root, config, review)
                if manifest is not None:
                    check_against_manifest(manifest, workspace, root, report)
                if merged is None:
                    merged = report
                else:
                    merged.merge(report)
    finally:
        if client is None:
            store.close()
    return merged


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Validate content workspaces before promotion")
    parser.add_argument("workspace_roots", nargs="*", help="Paths to content/v1/workspaces/<ws>")
    parser.add_argument("--config", help="Gate config YAML")
    parser.add_argument("--review-snapshot", help="YAML/JSON with approved and pending lists")
    parser.add_argument("--json", action="store_true", help="Print the JSON report to stdout")
    parser.add_argument("--output", help="Also write the JSON report to this file")
    parser.add_argument("--log-file", help="Append progress log lines to this file")
    parser.add_argument("--base-url", help="Smoke check: content origin to mirror from")
    parser.add_argument("--workspace", action="append", default=[],
                        help="Smoke check: workspace id to mirror (repeatable)")
    parser.add_argument("--manifest", help="Smoke check: manifest whose workspaceHashes must match")
    return parser


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.base_url and not args.workspace:
        parser.error("--base-url requires at least one --workspace")
    if not args.base_url and not args.workspace_roots:
        parser.error("give workspace roots, or --base-url with --workspace")
    if args.log_file:
        set_log_file(args.log_file)

    try:
        config = load_config(args.config) if args.config else GateConfig()
        review = load_review_snapshot(args.review_snapshot) if args.review_snapshot else None
        manifest = read_manifest(args.manifest) if args.manifest else None
    except (ConfigError, ManifestError) as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 2

    if args.base_url:
        try:
            report = smoke_check(args.base_url, args.workspace, config, review, manifest)
        except httpx.HTTPError as e:
            print(f"ERROR: fetching {args.base_url} failed: {e}", file=sys.stderr)
            return 2
    else:
        missing = [r for r in args.workspace_roots if not Path(r).is_dir()]
        if missing:
            print(f"ERROR: workspace root(s) not found: {', '.join(missing)}", file=sys.stderr)
            return 2
        report = validate_many(args.workspace_roots, config, review)

    if args.output:
        Path(args.output).write_text(report.to_json(), encoding="utf-8")
        log(f"Report written to {args.output}")
    if args.json:
        sys.stdout.write(report.to_json())
    else:
        report.print_summary()
    return 0 if report.passed else 1


if __name__ == "__main__":
    sys.exit(main())
