# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Error taxonomy and classification.

Every failure seen by the orchestrator is turned into a ClassifiedError.
Only QUOTA errors are eligible for failover to another credential; AUTH,
TRANSIENT_SERVER and INVALID_REQUEST always propagate to the caller.
"""

import asyncio
import json
import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

import httpx
from litellm.exceptions import (
    APIConnectionError,
    AuthenticationError,
    BadRequestError,
    InternalServerError,
    PermissionDeniedError,
    RateLimitError,
    ServiceUnavailableError,
    Timeout,
)

lib_logger = logging.getLogger("relay_library")


# =============================================================================
# EXCEPTIONS
# =============================================================================


class RelayError(Exception):
    """Base class for errors raised by the relay library."""


class NoAvailableAccountsError(RelayError):
    """Raised when a provider has no credential to try at all."""

    def __init__(self, provider: str, model: Optional[str] = None):
        self.provider = provider
        self.model = model
        target = f"{provider}/{model}" if model else provider
        super().__init__(
            f"No available accounts for {target}. Add an account or re-enable one."
        )


class CandidatesExhaustedError(RelayError):
    """
    Every candidate credential failed with a quota-class error.

    The last upstream error is kept as ``last_error`` (and chained as the
    cause) so callers can still inspect the provider's response.
    """

    def __init__(
        self,
        provider: str,
        model: str,
        last_error: BaseException,
        attempts: int,
        summary: str = "",
    ):
        self.provider = provider
        self.model = model
        self.last_error = last_error
        self.attempts = attempts
        message = (
            f"All {attempts} account(s) for {provider} are rate limited or out of "
            f"quota for {model}."
        )
        if summary:
            message += f" ({summary})"
        super().__init__(message)


class UpstreamHTTPError(RelayError):
    """Non-2xx response from a provider."""

    def __init__(
        self,
        status_code: int,
        body: str = "",
        headers: Optional[Dict[str, str]] = None,
        provider: Optional[str] = None,
    ):
        self.status_code = status_code
        self.body = body or ""
        self.headers = dict(headers or {})
        self.provider = provider
        snippet = self.body[:300]
        super().__init__(f"HTTP {status_code}: {snippet}" if snippet else f"HTTP {status_code}")


class StreamedAPIError(RelayError):
    """An error object delivered inside an otherwise successful stream."""

    # Anthropic error.type -> equivalent HTTP status
    TYPE_STATUS = {
        "rate_limit_error": 429,
        "overloaded_error": 529,
        "api_error": 500,
        "authentication_error": 401,
        "permission_error": 403,
        "invalid_request_error": 400,
        "not_found_error": 404,
    }

    def __init__(self, data: Dict[str, Any]):
        self.data = data
        error = data.get("error", data) if isinstance(data, dict) else {}
        if not isinstance(error, dict):
            error = {"message": str(error)}
        self.error_type = str(error.get("type") or error.get("status") or "")
        self.status_code = error.get("code") if isinstance(error.get("code"), int) else None
        if self.status_code is None:
            self.status_code = self.TYPE_STATUS.get(self.error_type)
        super().__init__(str(error.get("message") or json.dumps(data)[:300]))


class AccountNotFoundError(RelayError):
    def __init__(self, account_id: str):
        self.account_id = account_id
        super().__init__(f"Account not found: {account_id}")


class MissingCredentialsError(RelayError):
    def __init__(self, account_id: str):
        self.account_id = account_id
        super().__init__(f"No stored credentials for account {mask_credential(account_id)}")


# =============================================================================
# CLASSIFICATION
# =============================================================================


class ErrorCategory(str, Enum):
    """What went wrong, from the point of view of credential failover."""

    QUOTA = "quota"
    AUTH = "auth"
    TRANSIENT_SERVER = "transient_server"
    MALFORMED_UPSTREAM = "malformed_upstream"
    INVALID_REQUEST = "invalid_request"
    CANCELLED = "cancelled"
    UNKNOWN = "unknown"


@dataclass
class ClassifiedError:
    """A structured representation of a classified error."""

    category: ErrorCategory
    original: Optional[BaseException] = None
    status_code: Optional[int] = None
    retry_after: Optional[float] = None
    message: str = ""

    @property
    def is_quota(self) -> bool:
        return self.category == ErrorCategory.QUOTA

    def __str__(self) -> str:
        return (
            f"ClassifiedError(category={self.category.value}, status={self.status_code}, "
            f"retry_after={self.retry_after})"
        )


QUOTA_MESSAGE_PREFIXES = ("Quota exceeded", "Rate limited", "Account quota exhausted")
QUOTA_MESSAGE_MARKERS = (
    "HTTP 429",
    '"code": 429',
    '"code":429',
    "RESOURCE_EXHAUSTED",
    "Resource has been exhausted",
    "insufficient_quota",
)


def is_quota_message(message: str) -> bool:
    """Checks the message heuristics used by providers that only give text."""
    if not message:
        return False
    if message.startswith(QUOTA_MESSAGE_PREFIXES):
        return True
    return any(marker in message for marker in QUOTA_MESSAGE_MARKERS)


def is_permission_denied(status_code: Optional[int], body: str) -> bool:
    """
    A 403 that means "this account may not use this API" rather than a quota.

    Google style bodies carry ``error.status == "PERMISSION_DENIED"``.
    """
    if status_code != 403 or not body:
        return False
    if "permission denied" in body.lower():
        return True
    try:
        parsed = json.loads(body)
    except (json.JSONDecodeError, TypeError):
        return False
    error = parsed.get("error") if isinstance(parsed, dict) else None
    return isinstance(error, dict) and error.get("status") == "PERMISSION_DENIED"


def categorize_http_status(status_code: int, body: str = "") -> ErrorCategory:
    """Maps an HTTP status (plus body hints) to an ErrorCategory."""
    if status_code == 401:
        return ErrorCategory.AUTH
    if status_code == 403:
        if is_permission_denied(status_code, body):
            return ErrorCategory.AUTH
        return ErrorCategory.QUOTA
    if status_code in (402, 429):
        return ErrorCategory.QUOTA
    if status_code >= 500:
        return ErrorCategory.TRANSIENT_SERVER
    if 400 <= status_code < 500:
        # Some gateways wrap quota errors in a 400
        if is_quota_message(body):
            return ErrorCategory.QUOTA
        return ErrorCategory.INVALID_REQUEST
    return ErrorCategory.UNKNOWN


def classify_error(error: BaseException, provider: Optional[str] = None) -> ClassifiedError:
    """
    Classifies an exception raised while talking to a provider.

    Args:
        error: The exception
        provider: Provider name, used for logging only

    Returns:
        ClassifiedError with category, status code and any retry delay
    """
    if isinstance(error, asyncio.CancelledError):
        return ClassifiedError(ErrorCategory.CANCELLED, error, message="cancelled")

    if isinstance(error, UpstreamHTTPError):
        category = categorize_http_status(error.status_code, error.body)
        retry_after = parse_retry_delay(error.body, error.headers)
        return ClassifiedError(category, error, error.status_code, retry_after, str(error))

    if isinstance(error, httpx.HTTPStatusError):
        response = error.response
        try:
            body = response.text
        except httpx.ResponseNotRead:
            body = ""
        category = categorize_http_status(response.status_code, body)
        retry_after = parse_retry_delay(body, dict(response.headers))
        return ClassifiedError(
            category, error, response.status_code, retry_after, str(error)
        )

    if isinstance(error, StreamedAPIError):
        message = str(error)
        if error.status_code is not None:
            category = categorize_http_status(error.status_code, message)
        elif is_quota_message(message):
            category = ErrorCategory.QUOTA
        else:
            category = ErrorCategory.UNKNOWN
        return ClassifiedError(
            category, error, error.status_code, parse_retry_delay(json.dumps(error.data)), message
        )

    # litellm exception hierarchy, for callers that route through litellm
    status_code = getattr(error, "status_code", None)
    message = str(error)
    if isinstance(error, RateLimitError):
        return ClassifiedError(
            ErrorCategory.QUOTA, error, status_code or 429, parse_retry_delay(message), message
        )
    if isinstance(error, (AuthenticationError, PermissionDeniedError)):
        if status_code == 403 and not is_permission_denied(403, message):
            return ClassifiedError(ErrorCategory.QUOTA, error, 403, parse_retry_delay(message), message)
        return ClassifiedError(ErrorCategory.AUTH, error, status_code, None, message)
    if isinstance(
        error, (ServiceUnavailableError, InternalServerError, APIConnectionError, Timeout)
    ):
        return ClassifiedError(ErrorCategory.TRANSIENT_SERVER, error, status_code, None, message)
    if isinstance(error, BadRequestError):
        if is_quota_message(message):
            return ClassifiedError(ErrorCategory.QUOTA, error, status_code, parse_retry_delay(message), message)
        return ClassifiedError(ErrorCategory.INVALID_REQUEST, error, status_code, None, message)

    if isinstance(error, httpx.TransportError):
        return ClassifiedError(ErrorCategory.TRANSIENT_SERVER, error, None, None, message)

    if isinstance(error, (json.JSONDecodeError, UnicodeDecodeError)):
        return ClassifiedError(ErrorCategory.MALFORMED_UPSTREAM, error, None, None, message)

    if is_quota_message(message):
        return ClassifiedError(ErrorCategory.QUOTA, error, status_code, parse_retry_delay(message), message)

    if isinstance(status_code, int):
        category = categorize_http_status(status_code, message)
        return ClassifiedError(category, error, status_code, None, message)

    lib_logger.debug(f"Unclassified error from {provider or 'unknown provider'}: {type(error).__name__}")
    return ClassifiedError(ErrorCategory.UNKNOWN, error, None, None, message)


# =============================================================================
# RETRY DELAY PARSING
# =============================================================================


def parse_duration(duration: str) -> Optional[float]:
    """
    Parses Google style durations to seconds.

    Handles "12.5s", "290ms", "1h2m3s", "45m", "2h" and bare numbers.

    Returns:
        Seconds as float, or None if the string is not a duration
    """
    if not duration:
        return None
    remaining = duration.strip().lower()

    try:
        return float(remaining)
    except ValueError:
        pass

    ms_match = re.fullmatch(r"([\d.]+)ms", remaining)
    if ms_match:
        return float(ms_match.group(1)) / 1000.0

    match = re.fullmatch(r"(?:(\d+)h)?(?:(\d+)m(?!s))?(?:([\d.]+)s)?", remaining)
    if not match or not any(match.groups()):
        return None
    hours, minutes, seconds = match.groups()
    total = 0.0
    if hours:
        total += int(hours) * 3600
    if minutes:
        total += int(minutes) * 60
    if seconds:
        total += float(seconds)
    return total


def _iter_error_details(body: str) -> List[Dict[str, Any]]:
    json_match = re.search(r"(\{.*\})", body, re.DOTALL)
    if not json_match:
        return []
    try:
        parsed = json.loads(json_match.group(1))
    except json.JSONDecodeError:
        return []
    if isinstance(parsed, list) and parsed:
        parsed = parsed[0]
    if not isinstance(parsed, dict):
        return []
    error = parsed.get("error", parsed)
    details = error.get("details", []) if isinstance(error, dict) else []
    return [d for d in details if isinstance(d, dict)]


def parse_retry_delay(
    body: Optional[str], headers: Optional[Dict[str, str]] = None
) -> Optional[float]:
    """
    Extracts the server's suggested wait from an error response.

    Looks at, in order:
    - ``google.rpc.RetryInfo`` ``retryDelay`` ("12.5s")
    - ``google.rpc.ErrorInfo`` ``metadata.quotaResetDelay`` ("1h2m3s")
    - a ``Retry-After`` header (seconds)

    Returns:
        Delay in seconds, or None when the response carries no hint
    """
    if body:
        for detail in _iter_error_details(body):
            detail_type = detail.get("@type", "")
            if "RetryInfo" in detail_type:
                delay = detail.get("retryDelay")
                if isinstance(delay, dict) and delay.get("seconds") is not None:
                    return float(delay["seconds"])
                if isinstance(delay, str):
                    parsed = parse_duration(delay)
                    if parsed is not None:
                        return parsed
            metadata = detail.get("metadata")
            if isinstance(metadata, dict):
                reset = metadata.get("quotaResetDelay") or metadata.get("quotaresetdelay")
                if isinstance(reset, str):
                    parsed = parse_duration(reset)
                    if parsed is not None:
                        return parsed

    if headers:
        lowered = {k.lower(): v for k, v in headers.items()}
        retry_after = lowered.get("retry-after")
        if retry_after:
            try:
                return max(0.0, float(retry_after))
            except ValueError:
                return None
    return None


# =============================================================================
# HELPERS
# =============================================================================


def mask_credential(credential: str) -> str:
    """
    Mask a credential for safe display in logs and error messages.

    Shows the last 6 characters for anything long enough to identify.
    """
    if not credential:
        return "***"
    if len(credential) > 6:
        return f"...{credential[-6:]}"
    return "***"


class RequestErrorAccumulator:
    """
    Tracks errors encountered while failing over across credentials.

    Used to build a readable summary once every candidate is exhausted.
    """

    def __init__(self):
        self.errors: List[Dict[str, Any]] = []
        self._tried_credentials: set = set()

    def record_error(self, credential_id: str, classified: ClassifiedError) -> None:
        """Record an error for a credential."""
        self._tried_credentials.add(credential_id)
        first_line = classified.message.split("\n")[0]
        if len(first_line) > 150:
            first_line = first_line[:150] + "..."
        self.errors.append(
            {
                "credential": mask_credential(credential_id),
                "category": classified.category.value,
                "status_code": classified.status_code,
                "message": first_line,
            }
        )

    @property
    def total_credentials_tried(self) -> int:
        return len(self._tried_credentials)

    def has_errors(self) -> bool:
        return bool(self.errors)

    def build_summary(self) -> str:
        """Summary like "2 quota, 1 auth"."""
        counts: Dict[str, int] = {}
        for err in self.errors:
            counts[err["category"]] = counts.get(err["category"], 0) + 1
        return ", ".join(f"{count} {category}" for category, count in counts.items())
