from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import httpx

from . import config
from .compiler import SchemaCompiler
from .relay import HostPolicyMode, RelayForwarder, Resolver, resolve_host
from .workspace import ScratchStorage
from .zip_utils import ArchiveExtractor, ExtractionLimits


@dataclass(frozen=True)
class Services:
    storage: ScratchStorage
    extractor: ArchiveExtractor
    limits: ExtractionLimits
    compiler: SchemaCompiler
    relay: RelayForwarder


def build_services(
    *,
    scratch_root: Optional[Path] = None,
    limits: Optional[ExtractionLimits] = None,
    compiler: Optional[SchemaCompiler] = None,
    host_policy: Optional[HostPolicyMode] = None,
    relay_transport: Optional[httpx.AsyncBaseTransport] = None,
    relay_resolver: Optional[Resolver] = None,
) -> Services:
    """Assemble every service from config; keyword overrides exist for tests."""
    return Services(
        storage=ScratchStorage(scratch_root or config.SCRATCH_ROOT),
        extractor=ArchiveExtractor(),
        limits=limits
        or ExtractionLimits(
            max_entries=config.MAX_ZIP_ENTRIES,
            max_uncompressed_bytes=config.MAX_UNCOMPRESSED_BYTES,
        ),
        compiler=compiler or SchemaCompiler(timeout=config.PROTOC_TIMEOUT_SECONDS),
        relay=RelayForwarder(
            host_policy or HostPolicyMode(config.HOST_POLICY),
            timeout=config.RELAY_TIMEOUT_SECONDS,
            resolve_hosts=config.RESOLVE_HOSTS,
            resolver=relay_resolver or resolve_host,
            transport=relay_transport,
        ),
    )
