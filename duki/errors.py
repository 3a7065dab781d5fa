from __future__ import annotations

from typing import Optional

from google.api_core import exceptions as google_exceptions


class DukiError(Exception):
    """Base class for assistant errors."""


class ConfigurationError(DukiError):
    """Missing credentials or corpus; fatal at startup."""


class CorpusUnavailableError(DukiError):
    """The knowledge base is not loaded or holds no usable entries."""


class EmbeddingError(DukiError):
    """The embedding collaborator failed or returned an empty vector."""


class GenerationError(DukiError):
    """The generation collaborator failed after retries and fallback."""


class GenerationOverloadedError(GenerationError):
    """Model overloaded, unavailable, or timing out."""


class GenerationQuotaError(GenerationError):
    """Quota or rate limit exceeded."""


class InvalidRequestError(DukiError):
    """Malformed client input; rejected before any side effect."""


OVERLOAD_MARKERS = ("503", "overloaded", "unavailable", "deadline", "timed out", "timeout")
QUOTA_MARKERS = ("429", "quota", "rate limit", "resource exhausted", "resource_exhausted")


def classify_generation_failure(exc: BaseException) -> Optional[str]:
    """Purpose: Map an SDK exception onto a transient failure class.
    Inputs/Outputs: Input is an exception; output is "quota", "overload", or None.
    Side Effects / State: None.
    Dependencies: Uses google.api_core exception types with a message fallback.
    Failure Modes: Unknown failures return None and are not retried.
    If Removed: Quota and overload failures collapse into a single generic apology.
    Testing Notes: Pass ResourceExhausted, ServiceUnavailable, and plain errors.
    """
    # Prefer typed exceptions, then fall back to message markers.
    if isinstance(exc, (google_exceptions.ResourceExhausted, google_exceptions.TooManyRequests)):
        return "quota"
    if isinstance(
        exc,
        (
            google_exceptions.ServiceUnavailable,
            google_exceptions.InternalServerError,
            google_exceptions.DeadlineExceeded,
        ),
    ):
        return "overload"
    message = str(exc).lower()
    if any(marker in message for marker in QUOTA_MARKERS):
        return "quota"
    if any(marker in message for marker in OVERLOAD_MARKERS):
        return "overload"
    if isinstance(exc, TimeoutError):
        return "overload"
    return None
