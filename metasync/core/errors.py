"""MetaSync - Error Taxonomy.

Every upstream failure is classified into one of a handful of classes so the
sync engines and the HTTP layer can decide between retry, skip, abort, and
surface without re-parsing Graph error envelopes.
"""

from typing import Any, Dict, List, Optional

# Graph error codes
EXPIRED_TOKEN_CODES = {102, 190}
THROTTLE_CODES = {1, 2, 4, 17, 32, 341, 613, 80000, 80003, 80004, 80014}
THROTTLE_SUBCODES = {2446079}
RETRYABLE_HTTP_STATUSES = {429, 500, 502, 503, 504}
RATE_LIMIT_HINTS = ("too many", "rate limit", "api call")


class MetaSyncError(Exception):
    """Base class for all MetaSync errors."""

    instruction: Optional[str] = None


class MetaAPIError(MetaSyncError):
    """Raised when Meta API returns an error."""

    def __init__(
        self,
        message: str,
        status_code: int = 0,
        error_code: int = 0,
        error_subcode: int = 0,
    ):
        self.status_code = status_code
        self.error_code = error_code
        self.error_subcode = error_subcode
        super().__init__(message)


class TransientUpstreamError(MetaAPIError):
    """Rate limit or 5xx. Safe to retry with backoff."""


class ExpiredCredentialError(MetaAPIError):
    """Token expired or invalidated (code 190). Retrying cannot help."""

    # Sub-responses that completed before the expiry was seen
    partial: Optional[List[Any]] = None

    instruction = (
        "Update the configured long-lived Meta access token "
        "(POST /meta/credentials) or run the token refresh."
    )


class PermissionDeniedError(MetaAPIError):
    """Token lacks the scope needed for the call."""

    instruction = (
        "Ensure the Meta access token has the 'leads_retrieval', "
        "'pages_show_list' and 'ads_read' permissions."
    )


class MalformedInputError(MetaSyncError):
    """Bad date range or missing identifier, rejected before any upstream call."""


class PersistenceError(MetaSyncError):
    """A write to the relational store failed."""


class MissingCredentialError(MalformedInputError):
    """A required credential is not configured."""

    instruction = "Configure the credential via POST /meta/credentials or the .env file."


def _as_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def classify_graph_error(
    status_code: int,
    body: Optional[Dict[str, Any]],
    fallback_message: str = "",
) -> MetaAPIError:
    """Map an HTTP status + Graph error envelope to a typed exception."""
    error = (body or {}).get("error") if isinstance(body, dict) else None
    error = error if isinstance(error, dict) else {}
    code = _as_int(error.get("code"))
    subcode = _as_int(error.get("error_subcode"))
    message = str(error.get("message") or fallback_message or f"HTTP {status_code}")
    lowered = message.lower()

    if code in EXPIRED_TOKEN_CODES:
        cls = ExpiredCredentialError
    elif (
        code in THROTTLE_CODES
        or subcode in THROTTLE_SUBCODES
        or status_code in RETRYABLE_HTTP_STATUSES
        or any(hint in lowered for hint in RATE_LIMIT_HINTS)
    ):
        cls = TransientUpstreamError
    elif code == 10 or 200 <= code <= 299 or status_code == 403:
        cls = PermissionDeniedError
    else:
        cls = MetaAPIError
    return cls(message, status_code, code, subcode)


def is_rate_limit_error(exc: BaseException) -> bool:
    """True when ``exc`` signals upstream throttling (not a plain 5xx)."""
    if not isinstance(exc, TransientUpstreamError):
        return False
    if exc.status_code == 429:
        return True
    if exc.error_code in THROTTLE_CODES or exc.error_subcode in THROTTLE_SUBCODES:
        return True
    return any(hint in str(exc).lower() for hint in RATE_LIMIT_HINTS)
