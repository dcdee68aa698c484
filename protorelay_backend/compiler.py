from __future__ import annotations

import logging
import subprocess
from pathlib import Path
from typing import Optional, Sequence

from .config import DESCRIPTOR_FILENAME, PROTOC_EXECUTABLE, SCHEMA_SUFFIX
from .errors import CompilerFailure, NoSchemaFiles, UnsafeSchemaPath
from .zip_utils import is_schema_file


logger = logging.getLogger(__name__)

# protoc treats leading "-" as a flag and leading "@" as a response file.
_ARGV_UNSAFE_PREFIXES = ("-", "@")


class SchemaCompiler:
    """Run ``protoc`` over a directory of .proto files and return the descriptor set."""

    def __init__(
        self,
        executable: str = PROTOC_EXECUTABLE,
        timeout: Optional[float] = None,
        schema_suffix: str = SCHEMA_SUFFIX,
    ) -> None:
        self.executable = executable
        self.timeout = timeout
        self.schema_suffix = schema_suffix

    def compile(self, directory: Path, output_name: str = DESCRIPTOR_FILENAME) -> bytes:
        directory = Path(directory).resolve()
        schema_files = self.list_schema_files(directory)
        if not schema_files:
            raise NoSchemaFiles("No .proto files found")
        for rel in schema_files:
            if rel.startswith(_ARGV_UNSAFE_PREFIXES):
                raise UnsafeSchemaPath(f"Refusing schema path that protoc would read as an option: {rel}")

        out_path = directory / output_name
        args = [
            f"--proto_path={directory}",
            "--include_imports",
            "--include_source_info",
            f"--descriptor_set_out={out_path}",
            *schema_files,
        ]

        self._run([self.executable, *args], cwd=directory)
        if not out_path.is_file():
            raise CompilerFailure(0, f"no descriptor written to {output_name}")
        return out_path.read_bytes()

    def list_schema_files(self, directory: Path) -> list[str]:
        """Schema files under directory, recursively, as sorted forward-slash relative paths."""
        directory = Path(directory).resolve()
        return sorted(
            p.relative_to(directory).as_posix()
            for p in directory.rglob("*")
            if p.is_file() and is_schema_file(p.name, self.schema_suffix)
        )

    def _run(self, argv: Sequence[str], cwd: Path) -> None:
        try:
            proc = subprocess.run(
                list(argv),
                cwd=str(cwd),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                timeout=self.timeout,
                check=False,
            )
        except FileNotFoundError as exc:
            raise CompilerFailure(None, f"compiler not found: {argv[0]}") from exc
        except subprocess.TimeoutExpired as exc:
            raise CompilerFailure(None, f"timed out after {self.timeout}s") from exc

        diagnostics = proc.stderr.decode("utf-8", errors="replace").strip()
        logger.debug("protoc exited with %d", proc.returncode)
        if proc.returncode != 0:
            raise CompilerFailure(proc.returncode, diagnostics)
