"""Error taxonomy shared by the gateway, the LLM layer and the web boundary.

Each class carries the HTTP status the Flask layer answers with. Lower layers
only raise for malformed requests and for used-up retries; every other
degraded condition becomes an explicit ``None``/empty value instead.
"""

from __future__ import annotations


class CoinsightError(Exception):
    """Base class for errors that map onto an HTTP response."""

    http_status: int = 500
    #: Message shown to the end user; ``str(exc)`` stays the diagnostic text.
    public_message: str = "Failed to process query"

    def __init__(self, message: str = "", *, public_message: str | None = None) -> None:
        super().__init__(message or self.public_message)
        if public_message is not None:
            self.public_message = public_message


class QueryValidationError(CoinsightError, ValueError):
    """Missing or malformed query; fatal to the request, never retried."""

    http_status = 400
    public_message = "Query is required and must be a non-empty string"

    def __init__(self, message: str = "") -> None:
        super().__init__(message, public_message=message or None)


class UpstreamError(CoinsightError):
    """An external collaborator failed in a way the caller must hear about."""


class UpstreamSaturated(UpstreamError):
    """Retries and model fallbacks were exhausted on retryable errors."""

    http_status = 503
    public_message = "The AI service is busy. Please try again in a few moments."


class UpstreamCapacity(UpstreamSaturated):
    """HTTP 503/529 or an "over capacity" response from the LLM service."""

    public_message = "The AI service is currently over capacity. Please try again in a few moments."


class UpstreamRateLimited(UpstreamSaturated):
    """HTTP 429 or a rate-limit response from the LLM service."""

    public_message = "The AI service has reached its rate limit. Please try again later."


class UpstreamTimeout(UpstreamError):
    """The final LLM call timed out after every fallback was tried."""

    http_status = 503
    public_message = "The AI service took too long to respond. Please try again."


class LLMUnavailable(UpstreamError):
    """The LLM cannot be called at all: no key configured or circuit open."""

    http_status = 503
    public_message = "The AI service is temporarily unavailable. Please try again later."


class AllSourcesFailed(UpstreamError):
    """Every requested analysis source failed."""

    http_status = 502
    public_message = "All analysis sources failed"
