"""Storage path helpers shared by the tile and PDF namespaces."""

from __future__ import annotations

import re

TILES_PREFIX = "drawings-tiles"
PDFS_PREFIX = "drawings-pdfs"

_PAGE_PNG_RE = re.compile(r"page-(\d+)\.png$")


def normalize_path(path: str) -> str:
    """Strip a single leading slash from a logical storage path."""
    if not path:
        raise ValueError("Storage path is empty")
    return path[1:] if path.startswith("/") else path


def build_object_key(prefix: str, path: str) -> str:
    """Map a logical path to a bucket key inside a namespace prefix."""
    return f"{prefix}/{normalize_path(path)}"


def join_public_url(base_url: str, path: str) -> str:
    """Join a public base URL and a logical path without doubling slashes."""
    return f"{base_url.rstrip('/')}/{path[1:] if path.startswith('/') else path}"


def parse_page_index_from_path(path: str | None) -> int | None:
    """Recover the page index from a '.../page-<N>.png' storage path."""
    if not path:
        return None
    match = _PAGE_PNG_RE.search(path)
    if not match:
        return None
    return int(match.group(1))


def build_tiles_base_path(org_id: str, source_hash: str, page_index: int) -> str:
    return f"{org_id}/{source_hash}/page-{page_index}"


def build_temp_page_path(org_id: str, source_hash: str, page_index: int) -> str:
    return f"{org_id}/{source_hash}/temp/page-{page_index}.png"
