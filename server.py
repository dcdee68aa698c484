from __future__ import annotations

import asyncio
import json
import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional, Union
from urllib.parse import quote

from fastapi import APIRouter, FastAPI, File, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, StrictBool, StrictFloat, StrictInt, StrictStr, TypeAdapter, ValidationError
from starlette.concurrency import run_in_threadpool

from protorelay_backend.config import (
    CLEANUP_INTERVAL_SECONDS,
    ENABLE_MOCK_ENDPOINT,
    LOG_LEVEL,
    MAX_ZIP_UPLOAD_BYTES,
    RELAY_ACCEPTED_CONTENT_TYPES,
    RELAY_CONTENT_TYPE,
    SCRATCH_TTL_HOURS,
)
from protorelay_backend.errors import ArchiveError, CompileError, CompilerFailure, RelayError
from protorelay_backend.security import is_zip_upload, sanitize_for_log
from protorelay_backend.services import Services, build_services


logger = logging.getLogger("protorelay.server")

# encodeURIComponent leaves these unescaped; clients decode the header with it.
_URI_COMPONENT_SAFE = "-_.!~*'()"

_header_overrides = TypeAdapter(dict[str, Union[StrictBool, StrictInt, StrictFloat, StrictStr]])

_RELAY_ERRORS = {
    "InvalidUrl": (400, "SEND_INVALID_URL"),
    "ForbiddenHost": (403, "SEND_FORBIDDEN_HOST"),
    "TransportError": (502, "SEND_PROXY_ERROR"),
}


class ErrorModel(BaseModel):
    code: str
    message: Optional[str] = None


class HealthResponse(BaseModel):
    status: str
    timestamp: str


def configure_logging(level: str = LOG_LEVEL) -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _error(status_code: int, code: str, message: Optional[str] = None) -> JSONResponse:
    return JSONResponse(ErrorModel(code=code, message=message).model_dump(), status_code=status_code)


def _services(request: Request) -> Services:
    return request.app.state.services


def _extract_and_compile(services: Services, zip_bytes: bytes) -> tuple[bytes, tuple[str, ...]]:
    # Every scratch dir allocated in here is deleted on the way out, success or not.
    with services.storage.scope() as scratch:
        result = services.extractor.extract(zip_bytes, services.limits, scratch)
        logger.info("Extraction complete: %d proto files found", len(result.schema_files))
        descriptor = services.compiler.compile(result.output_directory)
        logger.info("Descriptor generated successfully (%d bytes)", len(descriptor))
    return descriptor, result.schema_files


async def _cleanup_worker(services: Services) -> None:
    # Periodically delete scratch dirs orphaned by crashed requests.
    while True:
        await asyncio.sleep(max(30, CLEANUP_INTERVAL_SECONDS))
        try:
            deleted = services.storage.sweep_expired(SCRATCH_TTL_HOURS)
        except OSError:
            logger.exception("Scratch sweep failed")
            continue
        if deleted:
            logger.info("Swept %d orphaned scratch dirs", deleted)


@asynccontextmanager
async def lifespan(app: FastAPI):
    services: Services = app.state.services
    deleted = services.storage.sweep_expired(SCRATCH_TTL_HOURS)
    if deleted:
        logger.info("Swept %d orphaned scratch dirs at startup", deleted)

    task = asyncio.create_task(_cleanup_worker(services))
    try:
        yield
    finally:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass


router = APIRouter()


@router.get("/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    return HealthResponse(status="ok", timestamp=datetime.now(timezone.utc).isoformat())


@router.post("/parse")
async def parse_proto(request: Request, file: Optional[UploadFile] = File(None)) -> Response:
    """Compile an uploaded ZIP of .proto files into a descriptor set.

    The descriptor is the body; the list of compiled files travels in X-Proto-Files as
    URI-encoded JSON.
    """
    if file is None:
        logger.warning("Upload rejected: no file received")
        return _error(400, "EMPTY_ZIP_FILE", "No file received")
    if not is_zip_upload(file.content_type, file.filename):
        logger.warning("Upload rejected: not a zip (%s)", sanitize_for_log(file.content_type))
        return _error(400, "INVALID_ZIP_FILE", "Only .zip uploads are accepted")

    # Limit read to prevent huge uploads from being buffered.
    zip_bytes = await file.read(MAX_ZIP_UPLOAD_BYTES + 1)
    if len(zip_bytes) > MAX_ZIP_UPLOAD_BYTES:
        return _error(413, "INVALID_ZIP_FILE", "ZIP too large")

    services = _services(request)
    logger.info("Starting extraction of %s", sanitize_for_log(file.filename))
    try:
        descriptor, schema_files = await run_in_threadpool(_extract_and_compile, services, zip_bytes)
    except CompilerFailure as e:
        logger.error("protoc error: %s", sanitize_for_log(e.message))
        if e.exit_code is None:
            return _error(500, "COMPILER_UNAVAILABLE", e.message)
        return _error(400, "INVALID_ZIP_FILE", e.message)
    except (ArchiveError, CompileError) as e:
        logger.error("ZIP extraction error (%s): %s", e.kind, sanitize_for_log(e.message))
        return _error(400, "INVALID_ZIP_FILE", e.message)

    files_json = json.dumps(list(schema_files), ensure_ascii=False, separators=(",", ":"))
    files_header = quote(files_json, safe=_URI_COMPONENT_SAFE)
    headers = {"X-Proto-Files": files_header, "Cache-Control": "no-store"}
    return Response(content=descriptor, media_type="application/octet-stream", headers=headers)


@router.post("/send")
async def send(request: Request, url: Optional[str] = None, headers: Optional[str] = None) -> Response:
    """Relay the raw request body to ``url`` and mirror the upstream status and body."""
    if not url:
        logger.warning("Proxy rejected: missing 'url' query param")
        return _error(400, "SEND_INVALID_URL", "Missing url query param")

    content_type = (request.headers.get("content-type") or "").split(";")[0].strip().lower()
    if content_type not in RELAY_ACCEPTED_CONTENT_TYPES:
        logger.warning("Proxy rejected: protobuf payload is missing or not binary")
        return _error(400, "SEND_INVALID_PAYLOAD", "Missing protobuf payload")

    parsed_headers = None
    if headers is not None:
        try:
            parsed_headers = _header_overrides.validate_json(headers)
        except ValidationError:
            logger.warning("Proxy rejected: headers is not a JSON object of scalars")
            return _error(400, "SEND_INVALID_HEADER", "Invalid headers format")

    payload = await request.body()
    target = sanitize_for_log(url)
    logger.info("Proxying request to %s", target)
    try:
        result = await _services(request).relay.forward(url, payload, parsed_headers)
    except RelayError as e:
        status_code, code = _RELAY_ERRORS.get(e.kind, (500, "SEND_PROXY_ERROR"))
        logger.error("Proxy error <- %s (%s): %s", target, e.kind, sanitize_for_log(e.message))
        return _error(status_code, code, e.message)

    logger.info('Proxy success <- "%s" status=%d', target, result.status)
    return Response(content=result.data, status_code=result.status, media_type="application/octet-stream")


async def mock_echo(request: Request) -> Response:
    # Local relay target: echoes the payload back.
    payload = await request.body()
    logger.debug("Mock received %d bytes", len(payload))
    return Response(content=payload, media_type=RELAY_CONTENT_TYPE)


def create_app(services: Optional[Services] = None, enable_mock: bool = ENABLE_MOCK_ENDPOINT) -> FastAPI:
    app = FastAPI(title="protorelay", lifespan=lifespan)
    app.state.services = services or build_services()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Proto-Files"],
    )

    app.include_router(router)
    if enable_mock:
        app.add_api_route("/mock", mock_echo, methods=["POST"])
    return app


configure_logging()
app = create_app()


if __name__ == "__main__":
    # Convenience: python server.py
    import uvicorn

    port = int(os.environ.get("PORT", "8010"))
    uvicorn.run("server:app", host="127.0.0.1", port=port, reload=False)
