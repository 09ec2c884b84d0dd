"""
Global Exception Handling

Every failure in the service is one of the exceptions below. The HTTP layer
renders them as structured JSON with the exception's status code.
"""

import traceback
from enum import Enum
from typing import Optional, Dict, Any
from datetime import datetime
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from bgflip.core.logging import get_logger, image_id_var

logger = get_logger(__name__)


# =============================================================================
# Custom Exceptions
# =============================================================================

class BgFlipBaseException(Exception):
    """Base exception for bgflip."""

    def __init__(
        self,
        message: str,
        code: int = 500,
        image_id: Optional[str] = None,
        stage: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.image_id = image_id or image_id_var.get()
        self.stage = stage
        self.details = details or {}
        super().__init__(self.message)


class ValidationError(BgFlipBaseException):
    """Raised when input validation fails."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, code=400, **kwargs)


class ImageNotFoundError(BgFlipBaseException):
    """Raised when a stored image does not exist."""

    def __init__(self, message: str = "Image not found", **kwargs):
        super().__init__(message, code=404, **kwargs)


class ConfigurationError(BgFlipBaseException):
    """Raised when a required setting is missing at first use."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, code=500, **kwargs)


class CredentialExchangeError(BgFlipBaseException):
    """Raised when a credential acquisition step fails."""

    def __init__(
        self,
        message: str,
        exchange_stage: str,
        http_status: Optional[int] = None,
        **kwargs
    ):
        super().__init__(message, code=500, **kwargs)
        self.details["exchange_stage"] = exchange_stage
        self.details["http_status"] = http_status


class ErrorCategory(str, Enum):
    """Background removal failure categories."""
    INVALID_API_KEY = "invalid_api_key"
    INSUFFICIENT_CREDITS = "insufficient_credits"
    RATE_LIMITED = "rate_limited"
    UPSTREAM_UNAVAILABLE = "upstream_unavailable"
    UPSTREAM_ERROR = "upstream_error"


class BackgroundRemovalError(BgFlipBaseException):
    """Raised when the background removal API call fails."""

    def __init__(
        self,
        message: str,
        category: ErrorCategory,
        http_status: Optional[int] = None,
        **kwargs
    ):
        super().__init__(message, code=500, **kwargs)
        self.category = category
        self.http_status = http_status
        self.details["service"] = "clipdrop"
        self.details["category"] = category.value
        self.details["http_status"] = http_status


class ImageDecodeError(BgFlipBaseException):
    """Raised when bytes are not a recognizable image."""

    def __init__(self, message: str = "Unsupported or corrupt image data", **kwargs):
        super().__init__(message, code=500, **kwargs)


class StorageError(BgFlipBaseException):
    """Raised when storage operations fail."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, code=500, **kwargs)


class PipelineStageError(BgFlipBaseException):
    """Raised when a pipeline stage fails unexpectedly."""

    def __init__(self, message: str, stage: str, **kwargs):
        super().__init__(message, code=500, stage=stage, **kwargs)


# =============================================================================
# Exception Handlers
# =============================================================================

def error_body(exc: BgFlipBaseException) -> Dict[str, Any]:
    """Structured JSON body for a bgflip exception."""
    return {
        "error": exc.message,
        "image_id": exc.image_id or image_id_var.get(),
        "code": exc.code,
        "stage": exc.stage,
        "details": exc.details,
        "timestamp": datetime.utcnow().isoformat() + "Z"
    }


def register_exception_handlers(app: FastAPI):
    """Register custom exception handlers with FastAPI app."""

    @app.exception_handler(BgFlipBaseException)
    async def bgflip_exception_handler(request: Request, exc: BgFlipBaseException):
        log = logger.warning if exc.code < 500 else logger.error
        log(
            "request_failed",
            error=exc.message,
            error_type=type(exc).__name__,
            code=exc.code,
            stage=exc.stage,
            path=str(request.url.path),
            details=exc.details
        )

        return JSONResponse(
            status_code=exc.code,
            content=error_body(exc)
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        logger.error(
            "unhandled_exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=str(request.url.path),
            traceback=traceback.format_exc()
        )

        return JSONResponse(
            status_code=500,
            content={
                "error": "Internal server error",
                "image_id": image_id_var.get(),
                "code": 500,
                "timestamp": datetime.utcnow().isoformat() + "Z"
            }
        )
