"""Parsing of design references (tool URLs or bare node ids)."""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional
from urllib.parse import parse_qs, urlparse

_URL_PATH_PATTERN = re.compile(r"^/(?:design|file)/(?P<file_key>[^/]+)(?:/(?P<file_name>[^/?]*))?")
_NODE_ID_PATTERN = re.compile(r"^\d+[:-]\d+$")
_BARE_REFERENCE_PATTERN = re.compile(r"^[\w.:-]+$")


@dataclass(frozen=True)
class DesignReference:
    """Components of a design reference.

    Attributes:
        node_id: Node identifier in ``123:456`` form
        file_key: File key when the reference was a URL
        file_name: URL slug of the file name, if present
        raw: The reference as given
    """

    node_id: str
    raw: str
    file_key: Optional[str] = None
    file_name: Optional[str] = None


def normalize_node_id(node_id: str) -> str:
    """URLs carry ``123-456``; the design source expects ``123:456``."""
    return node_id.strip().replace("-", ":")


def is_url_reference(reference: str) -> bool:
    return "://" in reference


def parse_design_reference(reference: str) -> DesignReference:
    """Parse a design URL (``/design/<key>/...`` or ``/file/<key>/...`` with a
    ``node-id`` query parameter) or a bare node id.

    Numeric ids in URL form (``123-456``) are normalized to ``123:456``;
    other bare tokens are passed through unchanged.

    Raises:
        ValueError: If the reference has no recognizable node id
    """
    raw = reference.strip()
    if not raw:
        raise ValueError("Design reference is empty")

    if _NODE_ID_PATTERN.match(raw):
        return DesignReference(node_id=normalize_node_id(raw), raw=raw)

    if not is_url_reference(raw):
        if not _BARE_REFERENCE_PATTERN.match(raw):
            raise ValueError(f"Unrecognized design reference: {raw!r}")
        return DesignReference(node_id=raw, raw=raw)

    parsed = urlparse(raw)
    if not parsed.scheme or not parsed.netloc:
        raise ValueError(f"Malformed design URL: {raw!r}")

    match = _URL_PATH_PATTERN.match(parsed.path)
    if match is None:
        raise ValueError(f"Design URL must use a /design/ or /file/ path: {raw!r}")

    node_ids = parse_qs(parsed.query).get("node-id")
    if not node_ids or not node_ids[0].strip():
        raise ValueError(f"Design URL has no node-id parameter: {raw!r}")

    return DesignReference(
        node_id=normalize_node_id(node_ids[0]),
        raw=raw,
        file_key=match.group("file_key"),
        file_name=match.group("file_name") or None,
    )
