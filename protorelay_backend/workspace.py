from __future__ import annotations

import logging
import shutil
import time
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from .security import sanitize_for_log


logger = logging.getLogger(__name__)

SCRATCH_PREFIX = "proto-"


def _now_epoch() -> float:
    return time.time()


def _is_scratch_dir_name(name: str) -> bool:
    if not name.startswith(SCRATCH_PREFIX):
        return False
    try:
        uuid.UUID(name[len(SCRATCH_PREFIX):])
    except ValueError:
        return False
    return True


class ScratchStorage:
    """Per-request scratch directories under a single root.

    Directories are named ``proto-<uuid4>`` so they are unique per call and can be
    told apart from anything else living under the root.
    """

    def __init__(self, root: Path) -> None:
        self.root = Path(root).resolve()

    def allocate(self) -> Path:
        self.root.mkdir(parents=True, exist_ok=True)
        path = self.root / f"{SCRATCH_PREFIX}{uuid.uuid4()}"
        path.mkdir()
        return path

    def owns(self, path: Path) -> bool:
        """Only direct children of root that look like our scratch dirs."""
        path = Path(path)
        return path.parent.resolve() == self.root and _is_scratch_dir_name(path.name)

    def release(self, path: Path) -> None:
        path = Path(path)
        if not self.owns(path):
            logger.warning("Refused to delete outside of scratch root: %s", sanitize_for_log(path))
            return
        if path.exists():
            shutil.rmtree(path, ignore_errors=True)
            logger.debug("Scratch dir deleted: %s", path)

    @contextmanager
    def scope(self) -> Iterator["ScratchScope"]:
        scope = ScratchScope(self)
        try:
            yield scope
        finally:
            scope.close()

    def sweep_expired(self, ttl_hours: float) -> int:
        """Delete scratch dirs older than the TTL.

        These are leftovers from workers that died mid-request. Returns the number of
        deleted directories.
        """
        if not self.root.exists():
            return 0

        ttl_seconds = max(0.0, ttl_hours) * 3600.0
        if not ttl_seconds:
            return 0
        now = _now_epoch()

        deleted = 0
        for child in self.root.iterdir():
            if not child.is_dir() or not _is_scratch_dir_name(child.name):
                continue
            try:
                age = now - child.stat().st_mtime
            except OSError:
                continue
            if age > ttl_seconds:
                shutil.rmtree(child, ignore_errors=True)
                deleted += 1
        return deleted


class ScratchScope:
    """Allocation scope: every directory handed out is released on close()."""

    def __init__(self, storage: ScratchStorage) -> None:
        self._storage = storage
        self._allocated: list[Path] = []

    @property
    def allocated(self) -> tuple[Path, ...]:
        return tuple(self._allocated)

    def allocate(self) -> Path:
        path = self._storage.allocate()
        self._allocated.append(path)
        return path

    def close(self) -> None:
        while self._allocated:
            self._storage.release(self._allocated.pop())
