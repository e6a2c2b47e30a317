#!/usr/bin/env python3
"""Manifest/Archive Manager: gated promotion, archives and rollback.

The active manifest (``<meta>/manifest.json``) maps each workspace to the
catalog currently served. Promotion only happens behind a passing gate
report. Each promoted manifest is archived write-once under
``<meta>/manifests/<version_id>.json``, and the manifest it replaces is
archived under its own contentVersion first, so any promoted state can be
restored. Every write is a temp file plus os.replace.

Usage:
  # Validate the workspaces, then promote the staging manifest if they pass
  python -m content_gate.manifest promote \\
    --meta-dir content/meta \\
    --staging content/meta/manifest.staging.json \\
    --version-id 3f2a9c1 \\
    --workspace-root content/v1/workspaces/de content/v1/workspaces/en

  # Restore an archived manifest
  python -m content_gate.manifest rollback --meta-dir content/meta --version-id 3f2a9c1

  # List archives / print a workspace fingerprint
  python -m content_gate.manifest list --meta-dir content/meta
  python -m content_gate.manifest hash content/v1/workspaces/de
"""

from __future__ import annotations

import argparse
import hashlib
import json
import re
import sys
from pathlib import Path
from typing import Optional

from jsonschema import Draft7Validator

from content_gate.config import ConfigError, GateConfig, load_config
from content_gate.graph_loader import crawl_workspace
from content_gate.log import log
from content_gate.quality_gate import validate_many
from content_gate.report import Report
from content_gate.storage import BlobNotFound, LocalBlobStore, json_blob

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

ACTIVE_KEY = "manifest.json"
ARCHIVE_PREFIX = "manifests/"
VERSION_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$")

MANIFEST_SCHEMA = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "title": "Manifest",
    "type": "object",
    "required": ["activeVersion", "activeWorkspace", "workspaces"],
    "properties": {
        "activeVersion": {"type": "string", "minLength": 1},
        "activeWorkspace": {"type": "string", "minLength": 1},
        "contentVersion": {"type": "string"},
        "workspaces": {
            "type": "object",
            "minProperties": 1,
            "additionalProperties": {
                "type": "string",
                "pattern": r"^/v1/workspaces/[^/]+/catalog\.json$",
            },
        },
        "workspaceHashes": {
            "type": "object",
            "additionalProperties": {"type": "string", "pattern": "^[0-9a-f]{64}$"},
        },
    },
}

_MANIFEST_VALIDATOR = Draft7Validator(MANIFEST_SCHEMA)


class ManifestError(Exception):
    """Invalid manifest, missing archive, or conflicting archive write."""


class PromotionRefused(ManifestError):
    """The gate report did not pass; the active manifest was left untouched."""


# ---------------------------------------------------------------------------
# Reading and validating
# ---------------------------------------------------------------------------

def manifest_problems(manifest) -> list[str]:
    problems = [f"{'.'.join(str(p) for p in e.absolute_path) or '<root>'}: {e.message}"
                for e in sorted(_MANIFEST_VALIDATOR.iter_errors(manifest), key=lambda e: e.message)]
    if not problems and manifest["activeWorkspace"] not in manifest["workspaces"]:
        problems.append(f"activeWorkspace '{manifest['activeWorkspace']}' is not listed in workspaces")
    return problems


def parse_manifest(data: bytes, label: str) -> dict:
    try:
        manifest = json.loads(data.decode("utf-8"))
    except (ValueError, UnicodeDecodeError) as e:
        raise ManifestError(f"{label}: invalid JSON: {e}") from e
    problems = manifest_problems(manifest)
    if problems:
        raise ManifestError(f"{label}: " + "; ".join(problems))
    return manifest


def read_manifest(path) -> dict:
    p = Path(path)
    if not p.is_file():
        raise ManifestError(f"Manifest not found: {p}")
    return parse_manifest(p.read_bytes(), str(p))


def read_active(meta_dir) -> Optional[dict]:
    store = LocalBlobStore(meta_dir)
    try:
        blob = store.get(ACTIVE_KEY)
    except BlobNotFound:
        return None
    return parse_manifest(blob.data, f"{meta_dir}/{ACTIVE_KEY}")


# ---------------------------------------------------------------------------
# Fingerprints
# ---------------------------------------------------------------------------

def stable_json(obj) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def workspace_hash(workspace_root) -> str:
    """sha256 over the documents reachable from the catalog, as stable JSON.

    Uses the same crawl as mirror_workspace, so a promoted hash and the hash
    of a mirrored snapshot of the same content agree. Files nothing links to
    (drafts, stale pages) do not contribute.
    """
    root = Path(workspace_root)

    def fetch(rel_path: str) -> Optional[bytes]:
        path = root / rel_path
        return path.read_bytes() if path.is_file() else None

    documents = dict(crawl_workspace(root.name, fetch))
    h = hashlib.sha256()
    for rel_path in sorted(documents):
        try:
            doc = json.loads(documents[rel_path].decode("utf-8"))
        except (ValueError, UnicodeDecodeError) as e:
            raise ManifestError(f"Cannot fingerprint {root / rel_path}: {e}") from e
        h.update(stable_json(doc).encode("utf-8"))
        h.update(b"\n")
    return h.hexdigest()


def check_against_manifest(manifest: dict, workspace: str, workspace_root, report: Report):
    """Smoke check: the validated snapshot is the one the manifest points at."""
    report.stage = "manifest"
    key = f"workspaces/{workspace}"
    if workspace not in manifest.get("workspaces", {}):
        report.error("WorkspaceNotInManifest", key, f"manifest does not serve workspace '{workspace}'")
        return
    expected = (manifest.get("workspaceHashes") or {}).get(workspace)
    if expected is None:
        report.warn("MissingWorkspaceHash", key, "manifest carries no workspaceHashes entry to compare")
        return
    actual = workspace_hash(workspace_root)
    if actual != expected:
        report.error("WorkspaceHashMismatch", key,
                     f"served content hashes to {actual}, manifest expects {expected}")


# ---------------------------------------------------------------------------
# Archive operations
# ---------------------------------------------------------------------------

def _check_version_id(version_id: str):
    if not isinstance(version_id, str) or not VERSION_ID_RE.match(version_id):
        raise ManifestError(f"Invalid version id: {version_id!r}")


def _archive(store: LocalBlobStore, version_id: str, manifest: dict):
    """Write-once: an existing archive must hold the same manifest."""
    key = f"{ARCHIVE_PREFIX}{version_id}.json"
    if store.exists(key):
        existing = json.loads(store.get(key).data.decode("utf-8"))
        if stable_json(existing) != stable_json(manifest):
            raise ManifestError(f"Archive {key} already exists with different content")
        return
    store.put(key, json_blob(manifest, key))
    log(f"Archived manifest as {key}")


def _archive_id(manifest: dict) -> str:
    version = manifest.get("contentVersion")
    if isinstance(version, str) and VERSION_ID_RE.match(version):
        return version
    return "pre-" + hashlib.sha256(stable_json(manifest).encode("utf-8")).hexdigest()[:12]


def _swap(store: LocalBlobStore, new_manifest: dict):
    current_blob = store.get(ACTIVE_KEY) if store.exists(ACTIVE_KEY) else None
    if current_blob is not None:
        current = json.loads(current_blob.data.decode("utf-8"))
        _archive(store, _archive_id(current), current)
    store.put(ACTIVE_KEY, json_blob(new_manifest, ACTIVE_KEY))


def promote(meta_dir, staging_manifest, version_id: str, report: Report,
            workspace_roots=None) -> dict:
    """Make ``staging_manifest`` active if ``report`` passed.

    ``workspace_roots`` (optional) are fingerprinted into workspaceHashes.
    Returns the manifest now active.
    """
    if not report.passed:
        raise PromotionRefused(
            f"Gate verdict is {report.verdict} ({len(report.hard)} hard finding(s)); promotion aborted")
    _check_version_id(version_id)
    staging = read_manifest(staging_manifest)
    manifest = dict(staging)
    manifest["contentVersion"] = version_id
    if workspace_roots:
        hashes = dict(manifest.get("workspaceHashes") or {})
        for root in workspace_roots:
            hashes[Path(root).name] = workspace_hash(root)
        manifest["workspaceHashes"] = dict(sorted(hashes.items()))

    store = LocalBlobStore(meta_dir)
    _archive(store, version_id, manifest)
    _swap(store, manifest)
    log(f"Promoted {version_id}: active workspace {manifest['activeWorkspace']}")
    return manifest


def rollback(meta_dir, version_id: str) -> dict:
    """Restore ``manifests/<version_id>.json`` as the active manifest."""
    _check_version_id(version_id)
    store = LocalBlobStore(meta_dir)
    key = f"{ARCHIVE_PREFIX}{version_id}.json"
    try:
        blob = store.get(key)
    except BlobNotFound:
        raise ManifestError(f"No archived manifest for version {version_id} ({key})") from None
    manifest = parse_manifest(blob.data, key)
    _swap(store, manifest)
    log(f"Rolled back to {version_id}")
    return manifest


def list_archives(meta_dir) -> list[str]:
    store = LocalBlobStore(meta_dir)
    return [k[len(ARCHIVE_PREFIX):-len(".json")]
            for k in store.keys(ARCHIVE_PREFIX) if k.endswith(".json")]


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Gated manifest promotion, rollback and archives")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("promote", help="Validate workspaces, then promote the staging manifest")
    p.add_argument("--meta-dir", required=True)
    p.add_argument("--staging", required=True, help="Staging manifest JSON")
    p.add_argument("--version-id", required=True, help="Content version id (e.g. git SHA)")
    p.add_argument("--workspace-root", nargs="+", required=True)
    p.add_argument("--config", help="Gate config YAML")

    r = sub.add_parser("rollback", help="Restore an archived manifest")
    r.add_argument("--meta-dir", required=True)
    r.add_argument("--version-id", required=True)

    ls = sub.add_parser("list", help="List archived manifest ids")
    ls.add_argument("--meta-dir", required=True)

    h = sub.add_parser("hash", help="Print a workspace fingerprint")
    h.add_argument("workspace_root")

    args = parser.parse_args(argv)

    try:
        if args.command == "promote":
            config = load_config(args.config) if args.config else GateConfig()
            report = validate_many(args.workspace_root, config)
            report.print_summary()
            promote(args.meta_dir, args.staging, args.version_id, report, args.workspace_root)
            print(f"✅ Promoted {args.version_id}")
        elif args.command == "rollback":
            manifest = rollback(args.meta_dir, args.version_id)
            print(f"✅ Active manifest restored to {args.version_id} "
                  f"(activeWorkspace={manifest['activeWorkspace']})")
        elif args.command == "list":
            for version_id in list_archives(args.meta_dir):
                print(version_id)
        elif args.command == "hash":
            print(workspace_hash(args.workspace_root))
    except PromotionRefused as e:
        print(f"🛑 {e}", file=sys.stderr)
        return 1
    except (ManifestError, ConfigError) as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 2
    return 0


if __name__ == "__main__":
    sys.exit(main())
