from __future__ import annotations

import os
import tempfile
from pathlib import Path


# Root directory for per-request scratch workspaces.
# Default: <OS temp dir>/protorelay. Override with env var PROTORELAY_SCRATCH_ROOT.
_root_raw = os.environ.get("PROTORELAY_SCRATCH_ROOT")
if _root_raw and _root_raw.strip():
    SCRATCH_ROOT = Path(_root_raw)
else:
    SCRATCH_ROOT = Path(tempfile.gettempdir()) / "protorelay"
SCRATCH_ROOT = SCRATCH_ROOT.resolve()

# Scratch dirs are normally released at the end of each request; anything older than
# this was orphaned by a crashed worker and is swept.
SCRATCH_TTL_HOURS = float(os.environ.get("PROTORELAY_SCRATCH_TTL_HOURS", "1"))

# How often the server scans for orphaned scratch dirs.
CLEANUP_INTERVAL_SECONDS = int(os.environ.get("PROTORELAY_CLEANUP_INTERVAL_SECONDS", "600"))

# Upload + extraction limits.
MAX_ZIP_UPLOAD_BYTES = int(os.environ.get("PROTORELAY_MAX_ZIP_UPLOAD_BYTES", str(25 * 1024 * 1024)))  # 25MB
MAX_ZIP_ENTRIES = int(os.environ.get("PROTORELAY_MAX_ZIP_ENTRIES", "3000"))
MAX_UNCOMPRESSED_BYTES = int(
    os.environ.get("PROTORELAY_MAX_UNCOMPRESSED_BYTES", str(300 * 1024 * 1024))
)  # 300MB

ZIP_CONTENT_TYPES = {"application/zip", "application/x-zip-compressed"}

# Schema compiler.
PROTOC_EXECUTABLE = os.environ.get("PROTORELAY_PROTOC", "protoc")
PROTOC_TIMEOUT_SECONDS = float(os.environ.get("PROTORELAY_PROTOC_TIMEOUT_SECONDS", "60"))
SCHEMA_SUFFIX = ".proto"
DESCRIPTOR_FILENAME = "descriptor.pb"

# Relay.
HOST_POLICY = os.environ.get("PROTORELAY_HOST_POLICY", "restricted").strip().lower()
RESOLVE_HOSTS = os.environ.get("PROTORELAY_RESOLVE_HOSTS", "1").strip().lower() in {"1", "true", "yes"}
RELAY_TIMEOUT_SECONDS = float(os.environ.get("PROTORELAY_RELAY_TIMEOUT_SECONDS", "30"))
RELAY_CONTENT_TYPE = "application/x-protobuf"
RELAY_ACCEPTED_CONTENT_TYPES = {"application/x-protobuf", "application/octet-stream"}

# Debug echo endpoint (handy as a relay target during local development).
ENABLE_MOCK_ENDPOINT = os.environ.get("PROTORELAY_ENABLE_MOCK", "1").strip().lower() in {"1", "true", "yes"}

LOG_LEVEL = os.environ.get("PROTORELAY_LOG_LEVEL", "INFO").strip().upper()
