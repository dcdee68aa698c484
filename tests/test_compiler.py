import os
import stat
import sys

import pytest

from protorelay_backend.compiler import SchemaCompiler
from protorelay_backend.errors import CompilerFailure, NoSchemaFiles, UnsafeSchemaPath
from protorelay_backend.zip_utils import ArchiveExtractor, ExtractionLimits

PROTO = 'syntax = "proto3";'
FAKE_DESCRIPTOR = bytes([0xDE, 0xAD, 0xBE, 0xEF])

posix_only = pytest.mark.skipif(sys.platform.startswith("win"), reason="uses a /bin/sh stand-in for protoc")


class RecordingCompiler(SchemaCompiler):
    """Stands in for protoc: records the invocation and writes a fixed descriptor."""

    def __init__(self, descriptor=FAKE_DESCRIPTOR, **kwargs):
        super().__init__(**kwargs)
        self.descriptor = descriptor
        self.calls = []

    def _run(self, argv, cwd):
        self.calls.append((list(argv), cwd))
        out_flag = next(a for a in argv if a.startswith("--descriptor_set_out="))
        with open(out_flag.split("=", 1)[1], "wb") as fh:
            fh.write(self.descriptor)


def _script(path, body):
    path.write_text("#!/bin/sh\n" + body)
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return str(path)


def test_no_proto_files(tmp_path, write_tree):
    write_tree(tmp_path, {"notes.txt": "ignore"})

    with pytest.raises(NoSchemaFiles, match="No .proto files found"):
        RecordingCompiler().compile(tmp_path)


def test_invokes_protoc_with_expected_args(tmp_path, write_tree):
    write_tree(tmp_path, {"a/b/x.proto": PROTO, "ROOT.PROTO": PROTO, "notes.txt": "ignore"})
    compiler = RecordingCompiler()

    out = compiler.compile(tmp_path)

    assert out == FAKE_DESCRIPTOR
    (argv, cwd) = compiler.calls[0]
    root = tmp_path.resolve()
    assert cwd == root
    assert argv == [
        "protoc",
        f"--proto_path={root}",
        "--include_imports",
        "--include_source_info",
        f"--descriptor_set_out={root / 'descriptor.pb'}",
        "ROOT.PROTO",
        "a/b/x.proto",
    ]


def test_honors_custom_output_name(tmp_path, write_tree):
    write_tree(tmp_path, {"x.proto": PROTO})
    compiler = RecordingCompiler(descriptor=b"\x01\x02\x03")

    out = compiler.compile(tmp_path, "out.desc")

    assert out == b"\x01\x02\x03"
    assert (tmp_path / "out.desc").read_bytes() == out
    argv, _ = compiler.calls[0]
    assert f"--descriptor_set_out={tmp_path.resolve() / 'out.desc'}" in argv


def test_invocation_is_deterministic(tmp_path, write_tree):
    write_tree(tmp_path, {"z.proto": PROTO, "m/n.proto": PROTO, "a.proto": PROTO})
    compiler = RecordingCompiler()

    compiler.compile(tmp_path)
    compiler.compile(tmp_path)

    assert compiler.calls[0] == compiler.calls[1]
    assert compiler.calls[0][0][-3:] == ["a.proto", "m/n.proto", "z.proto"]


def test_missing_output_file_is_a_failure(tmp_path, write_tree):
    write_tree(tmp_path, {"x.proto": PROTO})

    class SilentCompiler(SchemaCompiler):
        def _run(self, argv, cwd):
            return None

    with pytest.raises(CompilerFailure) as excinfo:
        SilentCompiler().compile(tmp_path)
    assert excinfo.value.exit_code == 0


@posix_only
def test_runs_external_process_and_passes_output_through(tmp_path, write_tree):
    src = tmp_path / "src"
    write_tree(src, {"pkg/a.proto": PROTO})
    fake = _script(
        tmp_path / "protoc",
        'for a in "$@"; do case "$a" in --descriptor_set_out=*) out="${a#--descriptor_set_out=}";; esac; done\n'
        "printf 'DESC' > \"$out\"\n",
    )

    out = SchemaCompiler(executable=fake, timeout=10).compile(src)

    assert out == b"DESC"
    assert (src / "descriptor.pb").read_bytes() == b"DESC"


@posix_only
def test_non_zero_exit_carries_code_and_diagnostics(tmp_path, write_tree):
    src = tmp_path / "src"
    write_tree(src, {"a.proto": PROTO})
    fake = _script(tmp_path / "protoc", 'echo "a.proto: missing import" >&2\nexit 3\n')

    with pytest.raises(CompilerFailure) as excinfo:
        SchemaCompiler(executable=fake, timeout=10).compile(src)

    assert excinfo.value.exit_code == 3
    assert excinfo.value.diagnostics == "a.proto: missing import"
    assert str(excinfo.value) == "protoc exit 3: a.proto: missing import"


def test_missing_executable(tmp_path, write_tree):
    write_tree(tmp_path, {"a.proto": PROTO})
    missing = os.path.join(str(tmp_path), "no-such-protoc")

    with pytest.raises(CompilerFailure) as excinfo:
        SchemaCompiler(executable=missing).compile(tmp_path)

    assert excinfo.value.exit_code is None


@posix_only
def test_archive_entry_cannot_smuggle_protoc_options(tmp_path, storage, make_zip):
    target = tmp_path / "outside.proto"
    marker = tmp_path / "protoc-was-run"
    data = make_zip((f"--dependency_out={target}", "ignored"), ("ok.proto", PROTO))
    extracted = ArchiveExtractor().extract(data, ExtractionLimits(max_entries=10, max_uncompressed_bytes=1024), storage)
    fake = _script(
        tmp_path / "protoc",
        f"touch '{marker}'\n"
        'for a in "$@"; do case "$a" in --dependency_out=*) : > "${a#--dependency_out=}";; esac; done\n',
    )

    with pytest.raises(UnsafeSchemaPath):
        SchemaCompiler(executable=fake, timeout=10).compile(extracted.output_directory)

    assert not marker.exists()
    assert not target.exists()


def test_response_file_paths_are_refused(tmp_path, write_tree):
    write_tree(tmp_path, {"@args/x.proto": PROTO, "ok.proto": PROTO})
    compiler = RecordingCompiler()

    with pytest.raises(UnsafeSchemaPath):
        compiler.compile(tmp_path)
    assert compiler.calls == []
