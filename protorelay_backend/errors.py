"""Error kinds raised by the core services.

Every error carries a ``kind`` discriminator so the request layer can branch on it
(status code, error code) without caring about the concrete class.
"""
from __future__ import annotations

from typing import Optional


class ProtoRelayError(Exception):
    kind = "ProtoRelayError"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ArchiveError(ProtoRelayError):
    kind = "ArchiveError"


class InvalidArchive(ArchiveError):
    kind = "InvalidArchive"


class TooManyEntries(ArchiveError):
    kind = "TooManyEntries"


class PathTraversal(ArchiveError):
    kind = "PathTraversal"


class SizeLimitExceeded(ArchiveError):
    kind = "SizeLimitExceeded"


class DuplicateEntry(ArchiveError):
    kind = "DuplicateEntry"


class CompileError(ProtoRelayError):
    kind = "CompileError"


class NoSchemaFiles(CompileError):
    kind = "NoSchemaFiles"


class UnsafeSchemaPath(CompileError):
    """A schema path protoc would parse as an option ('-') or response file ('@')."""

    kind = "UnsafeSchemaPath"


class CompilerFailure(CompileError):
    """The compiler exited non-zero, timed out or could not be started.

    ``exit_code`` is None when no exit status exists (not startable / timeout).
    """

    kind = "CompilerFailure"

    def __init__(self, exit_code: Optional[int], diagnostics: str) -> None:
        if exit_code is None:
            message = f"protoc failed: {diagnostics}"
        else:
            message = f"protoc exit {exit_code}: {diagnostics}"
        super().__init__(message)
        self.exit_code = exit_code
        self.diagnostics = diagnostics


class RelayError(ProtoRelayError):
    kind = "RelayError"


class InvalidUrl(RelayError):
    kind = "InvalidUrl"


class ForbiddenHost(RelayError):
    kind = "ForbiddenHost"


class TransportError(RelayError):
    kind = "TransportError"

    def __init__(self, cause: BaseException) -> None:
        super().__init__(str(cause) or type(cause).__name__)
        self.cause = cause
