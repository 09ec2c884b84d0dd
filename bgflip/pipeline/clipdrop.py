"""
Clipdrop Background Removal Client

Single request per image, no retries. HTTP failures are mapped to
BackgroundRemovalError categories so callers can tell an invalid key from
a rate limit.
"""

from typing import Optional

import httpx

from bgflip.core.config import Settings, settings as default_settings
from bgflip.core.exceptions import BackgroundRemovalError, ConfigurationError, ErrorCategory
from bgflip.core.logging import get_logger
from bgflip.core.metrics import record_clipdrop_call

logger = get_logger(__name__)

DEFAULT_ERROR_MESSAGE = "Failed to remove background"

STATUS_ERRORS = {
    401: (ErrorCategory.INVALID_API_KEY, "Invalid API Key. Please check your CLIPDROP_API_KEY."),
    402: (ErrorCategory.INSUFFICIENT_CREDITS, "Insufficient credits. Please upgrade your Clipdrop plan."),
    429: (ErrorCategory.RATE_LIMITED, "Rate limit exceeded. Please try again later."),
}

UNAVAILABLE_MESSAGE = "Clipdrop service is currently unavailable. Please try again later."


def extract_error_message(response: httpx.Response) -> str:
    """Best-effort message from a JSON ``error`` field or a plain-text body."""
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict) and payload.get("error"):
        return str(payload["error"])

    text = response.text.strip()
    if payload is None and text:
        return text
    return DEFAULT_ERROR_MESSAGE


def error_for_response(response: httpx.Response) -> BackgroundRemovalError:
    """Map a failed Clipdrop response to a categorized error."""
    status = response.status_code

    if status in STATUS_ERRORS:
        category, message = STATUS_ERRORS[status]
        return BackgroundRemovalError(message, category=category, http_status=status)

    if status >= 500:
        return BackgroundRemovalError(
            UNAVAILABLE_MESSAGE,
            category=ErrorCategory.UPSTREAM_UNAVAILABLE,
            http_status=status
        )

    return BackgroundRemovalError(
        f"Clipdrop API Error: {extract_error_message(response)}",
        category=ErrorCategory.UPSTREAM_ERROR,
        http_status=status
    )


class ClipdropClient:
    """Wrapper around the Clipdrop remove-background endpoint."""

    def __init__(
        self,
        api_key: Optional[str],
        api_url: str = "https://clipdrop-api.co/remove-background/v1",
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.api_key = api_key
        self.api_url = api_url
        self.timeout = timeout
        self._transport = transport

    @classmethod
    def from_settings(cls, settings: Settings = default_settings, **kwargs) -> "ClipdropClient":
        return cls(
            api_key=settings.CLIPDROP_API_KEY,
            api_url=settings.CLIPDROP_API_URL,
            timeout=settings.CLIPDROP_TIMEOUT_SECONDS,
            **kwargs
        )

    async def remove_background(self, png_bytes: bytes) -> bytes:
        """
        Remove the background of a PNG image.

        Args:
            png_bytes: Input image, PNG encoded

        Returns:
            Background-stripped image bytes as returned by Clipdrop
        """
        if not self.api_key:
            raise ConfigurationError("CLIPDROP_API_KEY environment variable is not set")

        logger.info("clipdrop_request_started", input_size=len(png_bytes))

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(
                    self.api_url,
                    headers={"x-api-key": self.api_key},
                    files={"image_file": ("image.png", png_bytes, "image/png")}
                )
        except httpx.TimeoutException:
            record_clipdrop_call(status="timeout", http_status=0)
            raise BackgroundRemovalError(
                f"Clipdrop request timed out after {self.timeout:.0f}s. Please try again later.",
                category=ErrorCategory.UPSTREAM_UNAVAILABLE
            )
        except httpx.HTTPError as e:
            record_clipdrop_call(status="error", http_status=0)
            raise BackgroundRemovalError(
                f"Clipdrop API Error: {type(e).__name__}: {e}",
                category=ErrorCategory.UPSTREAM_ERROR
            )

        if not response.is_success:
            record_clipdrop_call(status="error", http_status=response.status_code)
            error = error_for_response(response)
            logger.warning(
                "clipdrop_request_failed",
                http_status=response.status_code,
                category=error.category.value
            )
            raise error

        record_clipdrop_call(status="success", http_status=response.status_code)
        logger.info("clipdrop_request_completed", output_size=len(response.content))
        return response.content
