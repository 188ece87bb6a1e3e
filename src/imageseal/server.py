"""imageseal HTTP server with API endpoints."""

from __future__ import annotations

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any
from urllib.parse import quote

from fastapi import Depends, FastAPI, File, Form, Header, HTTPException, Request, UploadFile
from fastapi import status as http_status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel

from imageseal import __version__
from imageseal.config import EngineConfig
from imageseal.engine import ProvenanceEngine
from imageseal.errors import (
    ImageSealError,
    KeyConflict,
    KeyNotFound,
    MalformedKey,
    MalformedSignature,
    RecordNotFound,
    SecurityError,
    SigningError,
)
from imageseal.provenance.keys import KeyStatus
from imageseal.provenance.signing import read_private_key_document
from imageseal.provenance.verifier import generate_error_id
from imageseal.server_security import (
    USER_ID_HEADER,
    AuthenticationError,
    ErrorCategory,
    ErrorSeverity,
    RequestIDMiddleware,
    SecurityMiddleware,
    ValidationError,
    create_error_response,
    require_user_id,
)

logger = logging.getLogger(__name__)

UPLOAD_CHUNK_SIZE = 1024 * 1024

USER_ID_HEADER_FIELD = Header(default=None, alias=USER_ID_HEADER)
UPLOAD_FILE_FIELD = File(...)
PRIVATE_KEY_FIELD = Form(...)


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    timestamp: str


class KeyStatusResponse(BaseModel):
    """Key provisioning state of the caller."""

    user_id: str
    status: str
    usable: bool
    updated_at: str | None = None


class PublicKeyResponse(BaseModel):
    """Public key lookup result."""

    user_id: str
    public_key: str


class PublicKeyRegistration(BaseModel):
    """Public key generated by the caller."""

    public_key: str


def current_user(x_user_id: str | None = USER_ID_HEADER_FIELD) -> str:
    """Trusted identity of the caller."""
    return require_user_id(x_user_id)


CURRENT_USER = Depends(current_user)


def get_cors_origins() -> list[str]:
    """Get allowed CORS origins from environment or default.

    Returns:
        List of allowed origins. Empty list means no CORS (same-origin only).
    """
    origins_env = os.environ.get("IMAGESEAL_CORS_ORIGINS", "")
    if origins_env:
        return [origin.strip() for origin in origins_env.split(",") if origin.strip()]
    return []


def _classify(exc: ImageSealError) -> tuple[ErrorCategory, int]:
    if isinstance(exc, KeyConflict):
        return ErrorCategory.CONFLICT, http_status.HTTP_409_CONFLICT
    if isinstance(exc, (RecordNotFound, KeyNotFound)):
        return ErrorCategory.NOT_FOUND, http_status.HTTP_404_NOT_FOUND
    if isinstance(exc, (SecurityError, MalformedKey, MalformedSignature, SigningError)):
        return ErrorCategory.VALIDATION, http_status.HTTP_422_UNPROCESSABLE_ENTITY
    return ErrorCategory.INTERNAL, http_status.HTTP_500_INTERNAL_SERVER_ERROR


def content_disposition(file_name: str) -> str:
    """RFC 6266 attachment header with an ASCII fallback name."""
    fallback = "".join(c if " " <= c <= "~" else "_" for c in file_name)
    fallback = fallback.replace("\\", "\\\\").replace('"', '\\"')
    return f"attachment; filename=\"{fallback}\"; filename*=UTF-8''{quote(file_name, safe='')}"


async def _read_upload(upload: UploadFile, max_size: int) -> bytes:
    """Read an uploaded file into memory with size enforcement."""
    chunks = []
    total = 0
    try:
        while True:
            chunk = await upload.read(UPLOAD_CHUNK_SIZE)
            if not chunk:
                break
            total += len(chunk)
            if total > max_size:
                raise HTTPException(
                    status_code=http_status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
                    detail=f"File too large. Maximum size: {max_size} bytes",
                )
            chunks.append(chunk)
    finally:
        await upload.close()
    return b"".join(chunks)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifespan."""
    engine: ProvenanceEngine = app.state.engine
    logger.info(
        f"imageseal server starting up (store={engine.config.store_backend}, "
        f"tolerance={engine.config.tolerance})"
    )
    if engine.config.store_backend == "memory":
        logger.warning("Using the in-memory store - records and keys are lost on shutdown")
    if engine.config.self_heal_keys:
        logger.warning("Key self-heal is enabled; keys generated during lookups are never delivered")

    cors_origins = get_cors_origins()
    if cors_origins:
        logger.info(f"CORS enabled for origins: {cors_origins}")

    yield
    logger.info("imageseal server shutting down")


def create_app(
    engine: ProvenanceEngine | None = None,
    config: EngineConfig | None = None,
    debug: bool = False,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        engine: Engine to serve (default: built from config)
        config: Engine configuration (default: from environment)
        debug: Enable debug mode (shows internal errors and stack traces)

    Returns:
        Configured FastAPI application
    """
    if engine is None:
        engine = ProvenanceEngine.from_config(config or EngineConfig.from_env())

    app = FastAPI(
        title="imageseal API",
        description="Owner-scoped image provenance signing and verification",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.engine = engine

    cors_origins = get_cors_origins()
    if cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=cors_origins,
            allow_credentials=False,  # Never allow credentials with CORS
            allow_methods=["GET", "POST", "DELETE"],
            allow_headers=[USER_ID_HEADER, "Content-Type"],
        )

    app.add_middleware(SecurityMiddleware)
    app.add_middleware(RequestIDMiddleware)

    def error_response(request: Request, exc: Exception, category: ErrorCategory, status_code: int):
        error_id = generate_error_id()
        request_id = getattr(request.state, "request_id", "unknown")
        internal = category is ErrorCategory.INTERNAL

        if internal:
            logger.error(f"Error {error_id} (request: {request_id}): {exc}", exc_info=exc)
        else:
            logger.info(f"Rejected request {request_id} [{error_id}]: {exc}")

        message = str(exc) if (debug or not internal) else "Internal server error"
        content = create_error_response(
            error_id=error_id,
            request_id=request_id,
            message=message,
            category=category,
            severity=ErrorSeverity.ERROR if internal else ErrorSeverity.WARNING,
            error=exc,
            include_traceback=debug and internal,
        )
        return JSONResponse(status_code=status_code, content=content)

    @app.exception_handler(ImageSealError)
    async def imageseal_exception_handler(request: Request, exc: ImageSealError):
        """Map engine exceptions to error envelopes."""
        category, status_code = _classify(exc)
        return error_response(request, exc, category, status_code)

    @app.exception_handler(AuthenticationError)
    async def authentication_exception_handler(request: Request, exc: AuthenticationError):
        """Reject requests without an identity."""
        return error_response(request, exc, ErrorCategory.AUTHENTICATION, http_status.HTTP_401_UNAUTHORIZED)

    @app.exception_handler(ValidationError)
    async def validation_exception_handler(request: Request, exc: ValidationError):
        """Reject malformed request values."""
        return error_response(request, exc, ErrorCategory.VALIDATION, http_status.HTTP_422_UNPROCESSABLE_ENTITY)

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        """Handle uncaught exceptions with standardized error envelopes."""
        return error_response(request, exc, ErrorCategory.INTERNAL, http_status.HTTP_500_INTERNAL_SERVER_ERROR)

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        """Wrap HTTP exceptions in a standardized error envelope."""
        if exc.status_code == http_status.HTTP_404_NOT_FOUND:
            category = ErrorCategory.NOT_FOUND
        elif exc.status_code == http_status.HTTP_409_CONFLICT:
            category = ErrorCategory.CONFLICT
        elif exc.status_code < 500:
            category = ErrorCategory.VALIDATION
        else:
            category = ErrorCategory.INTERNAL
        content = create_error_response(
            error_id=generate_error_id(),
            request_id=getattr(request.state, "request_id", "unknown"),
            message=str(exc.detail),
            category=category,
            severity=ErrorSeverity.WARNING if exc.status_code < 500 else ErrorSeverity.ERROR,
        )
        return JSONResponse(status_code=exc.status_code, content=content)

    @app.exception_handler(RequestValidationError)
    async def request_validation_exception_handler(request: Request, exc: RequestValidationError):
        """Wrap request validation errors in a standardized envelope."""
        content = create_error_response(
            error_id=generate_error_id(),
            request_id=getattr(request.state, "request_id", "unknown"),
            message=str(exc),
            category=ErrorCategory.VALIDATION,
            severity=ErrorSeverity.WARNING,
        )
        return JSONResponse(status_code=http_status.HTTP_422_UNPROCESSABLE_ENTITY, content=content)

    @app.get("/health", response_model=HealthResponse)
    async def health():
        """Health check endpoint."""
        return HealthResponse(
            status="healthy",
            version=__version__,
            timestamp=datetime.now(timezone.utc).isoformat(),
        )

    @app.get("/api/v1/keys/status", response_model=KeyStatusResponse)
    async def key_status(user_id: str = CURRENT_USER):
        """Key provisioning state of the caller."""
        record = await asyncio.to_thread(engine.key_manager.get_key_record, user_id)
        status = engine.key_manager.classify(record.public_key if record else None)
        return KeyStatusResponse(
            user_id=user_id,
            status=status.value,
            usable=status is KeyStatus.PROVISIONED,
            updated_at=record.updated_at if record else None,
        )

    @app.post("/api/v1/keys")
    async def register_key(
        registration: PublicKeyRegistration,
        user_id: str = CURRENT_USER,
    ) -> dict[str, Any]:
        """Register a public key generated by the caller.

        The private key never reaches the server. A usable key already on
        file is never replaced; use the regenerate endpoint for rotation.
        """
        provisioning = await asyncio.to_thread(
            engine.key_manager.register_public_key, user_id, registration.public_key
        )
        return {"user_id": user_id, "exists": provisioning.exists, "public_key": provisioning.public_key}

    @app.post("/api/v1/keys/ensure")
    async def ensure_key(user_id: str = CURRENT_USER) -> dict[str, Any]:
        """Provision a key pair for the caller if none is usable.

        The private key is present in the response only when a new pair was
        generated; it is not stored anywhere and cannot be fetched again.
        """
        provisioning = await asyncio.to_thread(engine.key_manager.ensure_public_key, user_id)
        return {"user_id": user_id, **provisioning.to_dict()}

    @app.post("/api/v1/keys/regenerate")
    async def regenerate_key(user_id: str = CURRENT_USER) -> dict[str, Any]:
        """Replace the caller's key pair; earlier images stop verifying."""
        private_key = await asyncio.to_thread(engine.key_manager.regenerate_key_pair, user_id)
        public_key = engine.key_manager.resolve_public_key(user_id, self_heal=False)
        return {"user_id": user_id, "public_key": public_key, "private_key": private_key}

    @app.get("/api/v1/users/{user_id}/public-key", response_model=PublicKeyResponse)
    async def public_key(user_id: str, _caller: str = CURRENT_USER):
        """Fetch the stored public key string for a user."""
        try:
            key = await asyncio.to_thread(engine.key_manager.resolve_public_key, user_id, False)
        except MalformedKey as e:
            raise HTTPException(
                status_code=http_status.HTTP_409_CONFLICT,
                detail=f"Public key on file for user {user_id} is corrupt",
            ) from e
        return PublicKeyResponse(user_id=user_id, public_key=key)

    @app.post("/api/v1/images", status_code=http_status.HTTP_201_CREATED)
    async def upload_image(
        file: UploadFile = UPLOAD_FILE_FIELD,
        private_key: str = PRIVATE_KEY_FIELD,
        user_id: str = CURRENT_USER,
    ) -> dict[str, Any]:
        """Sign and store an image for the caller.

        ``private_key`` is either the key file document or a bare export.
        """
        data = await _read_upload(file, engine.config.max_file_size)
        export = read_private_key_document(private_key)
        record = await asyncio.to_thread(
            engine.registrar.register,
            user_id,
            file.filename or "",
            data,
            export,
            file.content_type if file.content_type != "application/octet-stream" else None,
        )
        return record.to_dict()

    @app.get("/api/v1/images")
    async def list_images(user_id: str = CURRENT_USER) -> dict[str, Any]:
        """The caller's images, newest first."""
        records = await asyncio.to_thread(engine.registrar.list_images, user_id)
        return {"count": len(records), "images": [record.to_dict() for record in records]}

    @app.get("/api/v1/images/{image_id}/content")
    async def image_content(image_id: str, user_id: str = CURRENT_USER):
        """Stored bytes of one of the caller's images."""
        record, data = await asyncio.to_thread(engine.registrar.fetch_content, image_id, user_id)
        return Response(
            content=data,
            media_type=record.file_type,
            headers={"Content-Disposition": content_disposition(record.file_name)},
        )

    @app.delete("/api/v1/images/{image_id}")
    async def delete_image(image_id: str, user_id: str = CURRENT_USER) -> dict[str, Any]:
        """Delete one of the caller's images."""
        deleted = await asyncio.to_thread(engine.registrar.delete_image, image_id, user_id)
        if not deleted:
            raise HTTPException(
                status_code=http_status.HTTP_404_NOT_FOUND,
                detail=f"No image {image_id}",
            )
        return {"deleted": True, "image_id": image_id}

    @app.post("/api/v1/verify")
    async def verify_image(
        file: UploadFile = UPLOAD_FILE_FIELD,
        user_id: str = CURRENT_USER,
    ) -> dict[str, Any]:
        """Verify a candidate image within the caller's scope.

        Always answers 200 with a verdict; infrastructure failures surface as
        an ERROR verdict carrying an error id.
        """
        data = await _read_upload(file, engine.config.max_file_size)
        verdict = await asyncio.to_thread(engine.verify, data, file.filename, user_id)
        return verdict.to_dict()

    return app
