"""Key -> blob storage for published content and archived manifests.

Keys are slash-separated paths relative to the content root, e.g.
``v1/workspaces/de/catalog.json`` or ``meta/manifest.json``. Each blob
carries its content type and cache-control header.

LocalBlobStore backs a directory; HttpBlobStore reads from the public
content origin (read-only) and is what smoke checks use. The gate itself
never touches the network: mirror_workspace() copies a remote workspace to
local disk first, and the snapshot is validated from there.
"""

from __future__ import annotations

import json
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import httpx

from content_gate.graph_loader import crawl_workspace
from content_gate.log import log

DEFAULT_TIMEOUT = 30.0

CONTENT_TYPES = {
    ".json": "application/json",
    ".yaml": "application/yaml",
    ".txt": "text/plain",
}

CACHE_ACTIVE_MANIFEST = "public, max-age=30, stale-while-revalidate=300"
CACHE_IMMUTABLE = "public, max-age=31536000, immutable"
CACHE_CONTENT = "public, max-age=300, stale-while-revalidate=86400"


class BlobNotFound(KeyError):
    """The store has no object under the requested key."""


@dataclass(frozen=True)
class Blob:
    data: bytes
    content_type: str = "application/octet-stream"
    cache_control: Optional[str] = None

    def json(self):
        return json.loads(self.data.decode("utf-8"))


def content_type_for(key: str) -> str:
    return CONTENT_TYPES.get(Path(key).suffix.lower(), "application/octet-stream")


def cache_control_for(key: str) -> str:
    """Active manifest: short cache. Archived manifests: immutable. Content: 5 min."""
    if "manifests/" in key:
        return CACHE_IMMUTABLE
    if key.endswith("manifest.json"):
        return CACHE_ACTIVE_MANIFEST
    return CACHE_CONTENT


def json_blob(obj, key: str) -> Blob:
    data = (json.dumps(obj, indent=2, ensure_ascii=False) + "\n").encode("utf-8")
    return Blob(data, content_type_for(key), cache_control_for(key))


def _check_key(key: str) -> str:
    parts = key.split("/")
    if not key or key.startswith("/") or ".." in parts or "" in parts:
        raise ValueError(f"Invalid storage key: {key!r}")
    return key


class BlobStore:
    """Interface shared by every store."""

    def get(self, key: str) -> Blob:
        raise NotImplementedError

    def exists(self, key: str) -> bool:
        try:
            self.get(key)
        except BlobNotFound:
            return False
        return True

    def keys(self, prefix: str = "") -> list[str]:
        raise NotImplementedError

    def put(self, key: str, blob: Blob):
        raise NotImplementedError


class LocalBlobStore(BlobStore):
    """Directory-backed store; writes are atomic (temp file + os.replace)."""

    def __init__(self, root):
        self.root = Path(root)

    def _path(self, key: str) -> Path:
        return self.root / _check_key(key)

    def get(self, key: str) -> Blob:
        path = self._path(key)
        if not path.is_file():
            raise BlobNotFound(key)
        return Blob(path.read_bytes(), content_type_for(key), cache_control_for(key))

    def exists(self, key: str) -> bool:
        return self._path(key).is_file()

    def keys(self, prefix: str = "") -> list[str]:
        if not self.root.is_dir():
            return []
        found = (p.relative_to(self.root).as_posix() for p in self.root.rglob("*") if p.is_file())
        return sorted(k for k in found if k.startswith(prefix) and not Path(k).name.startswith(".tmp"))

    def put(self, key: str, blob: Blob):
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=".tmp", suffix=path.suffix)
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(blob.data)
            os.replace(tmp, path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise


class HttpBlobStore(BlobStore):
    """Read-only store over HTTP(S). ``client`` may be injected for tests."""

    def __init__(self, base_url: str, client: Optional[httpx.Client] = None, timeout: float = DEFAULT_TIMEOUT):
        self.base_url = base_url.rstrip("/")
        self.client = client or httpx.Client(timeout=timeout, follow_redirects=True)

    def get(self, key: str) -> Blob:
        resp = self.client.get(f"{self.base_url}/{_check_key(key)}")
        if resp.status_code == 404:
            raise BlobNotFound(key)
        resp.raise_for_status()
        return Blob(resp.content,
                    resp.headers.get("content-type", content_type_for(key)),
                    resp.headers.get("cache-control"))

    def keys(self, prefix: str = "") -> list[str]:
        raise NotImplementedError("HTTP origins cannot be listed; crawl from a catalog instead")

    def put(self, key: str, blob: Blob):
        raise NotImplementedError("HttpBlobStore is read-only")

    def close(self):
        self.client.close()


# ---------------------------------------------------------------------------
# Mirroring
# ---------------------------------------------------------------------------

def mirror_workspace(store: BlobStore, workspace: str, dest) -> Path:
    """Copy every document reachable from a workspace's catalog into ``dest``.

    Returns the local workspace root (``dest/v1/workspaces/<workspace>``).
    Missing targets are skipped; the gate reports them as dangling once the
    snapshot is validated. Unparseable documents are copied as-is.
    """
    local = LocalBlobStore(dest)
    prefix = f"v1/workspaces/{workspace}/"
    copied = 0

    def fetch(rel_path: str) -> Optional[bytes]:
        try:
            return store.get(prefix + rel_path).data
        except BlobNotFound:
            return None

    for rel_path, data in crawl_workspace(workspace, fetch):
        key = prefix + rel_path
        local.put(key, Blob(data, content_type_for(key), cache_control_for(key)))
        copied += 1

    log(f"Mirrored {copied} document(s) of workspace '{workspace}' into {dest}")
    return Path(dest) / "v1" / "workspaces" / workspace
