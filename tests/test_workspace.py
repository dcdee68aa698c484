import os
import time

import pytest

from protorelay_backend.workspace import SCRATCH_PREFIX, ScratchStorage


def test_allocate_creates_unique_dirs_under_root(storage):
    first = storage.allocate()
    second = storage.allocate()

    assert first != second
    assert first.is_dir() and second.is_dir()
    assert first.parent == storage.root
    assert first.name.startswith(SCRATCH_PREFIX)


def test_allocate_creates_missing_root(tmp_path):
    storage = ScratchStorage(tmp_path / "not" / "yet")

    path = storage.allocate()

    assert path.is_dir()


def test_release_deletes_recursively(storage):
    path = storage.allocate()
    (path / "a" / "b").mkdir(parents=True)
    (path / "a" / "b" / "x.proto").write_text("x")

    storage.release(path)

    assert not path.exists()


def test_release_refuses_paths_it_does_not_own(storage, tmp_path):
    outsider = tmp_path / "keep-me"
    outsider.mkdir()
    lookalike = storage.root / "not-a-scratch-dir"
    lookalike.mkdir()

    storage.release(outsider)
    storage.release(lookalike)
    storage.release(storage.root)

    assert outsider.exists()
    assert lookalike.exists()
    assert storage.root.exists()


def test_scope_releases_on_success(storage):
    with storage.scope() as scope:
        a = scope.allocate()
        b = scope.allocate()
        assert scope.allocated == (a, b)

    assert not a.exists()
    assert not b.exists()
    assert list(storage.root.iterdir()) == []


def test_scope_releases_on_failure(storage):
    with pytest.raises(RuntimeError):
        with storage.scope() as scope:
            path = scope.allocate()
            (path / "partial.proto").write_text("half")
            raise RuntimeError("boom")

    assert not path.exists()


def test_sweep_expired_only_removes_old_scratch_dirs(storage):
    old = storage.allocate()
    fresh = storage.allocate()
    foreign = storage.root / "something-else"
    foreign.mkdir()
    two_hours_ago = time.time() - 7200
    os.utime(old, (two_hours_ago, two_hours_ago))
    os.utime(foreign, (two_hours_ago, two_hours_ago))

    deleted = storage.sweep_expired(ttl_hours=1)

    assert deleted == 1
    assert not old.exists()
    assert fresh.exists()
    assert foreign.exists()


def test_sweep_with_zero_ttl_is_disabled(storage):
    storage.allocate()

    assert storage.sweep_expired(ttl_hours=0) == 0
