from __future__ import annotations

import re
from pathlib import Path

from .config import ZIP_CONTENT_TYPES
from .errors import PathTraversal


_LOG_UNSAFE_RE = re.compile(r"[\r\n]")


def sanitize_for_log(value: object) -> str:
    """Strip CR/LF so attacker-controlled values cannot forge log lines."""
    return _LOG_UNSAFE_RE.sub("", str(value))


def is_zip_upload(content_type: str | None, filename: str | None) -> bool:
    """Cheap MIME/extension sniff for uploaded archives."""
    ct = (content_type or "").split(";")[0].strip().lower()
    name = (filename or "").lower()
    return ct in ZIP_CONTENT_TYPES or name.endswith(".zip")


def safe_join(base_dir: Path, *parts: str) -> Path:
    """Join paths and ensure the result stays strictly within base_dir.

    This defends against path traversal (zip-slip) for user-controlled entry names:
    '..' segments, absolute names and names resolving to base_dir itself are refused.
    """
    base_dir = base_dir.resolve()
    candidate = base_dir
    for part in parts:
        candidate = candidate / part
    resolved = candidate.resolve()
    if base_dir not in resolved.parents:
        raise PathTraversal(f"Zip Slip detected: {sanitize_for_log(parts[-1] if parts else '')}")
    return resolved
