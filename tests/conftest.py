import io
import os
import zipfile
from pathlib import Path
from typing import Callable, Dict, Iterable, Tuple, Union

import pytest

# Keep scratch dirs and the host policy predictable regardless of the caller's env.
os.environ.setdefault("PROTORELAY_HOST_POLICY", "restricted")

from protorelay_backend.workspace import ScratchStorage  # noqa: E402

Entry = Union[str, Tuple[str, Union[bytes, str]]]


def build_zip(entries: Iterable[Entry]) -> bytes:
    """Build a ZIP in memory.

    Plain strings ending in '/' become directory entries; (name, data) tuples become
    files. Names are written verbatim, so '../evil.txt' stays malicious.
    """
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, mode="w", compression=zipfile.ZIP_DEFLATED) as zf:
        for entry in entries:
            if isinstance(entry, str):
                zf.writestr(zipfile.ZipInfo(entry), b"")
                continue
            name, data = entry
            if isinstance(data, str):
                data = data.encode("utf-8")
            zf.writestr(zipfile.ZipInfo(name), data, compress_type=zipfile.ZIP_DEFLATED)
    return buf.getvalue()


@pytest.fixture
def make_zip() -> Callable[..., bytes]:
    return lambda *entries: build_zip(entries)


@pytest.fixture
def scratch_root(tmp_path: Path) -> Path:
    root = tmp_path / "scratch"
    root.mkdir()
    return root


@pytest.fixture
def storage(scratch_root: Path) -> ScratchStorage:
    return ScratchStorage(scratch_root)


@pytest.fixture
def write_tree() -> Callable[[Path, Dict[str, Union[bytes, str]]], None]:
    """Write {relative_path: content} under a directory."""

    def _write(root: Path, files: Dict[str, Union[bytes, str]]) -> None:
        for rel, content in files.items():
            path = root / rel
            path.parent.mkdir(parents=True, exist_ok=True)
            if isinstance(content, str):
                content = content.encode("utf-8")
            path.write_bytes(content)

    return _write
