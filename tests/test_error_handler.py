import asyncio
import json

import httpx
import pytest
from litellm.exceptions import RateLimitError

from relay_library.error_handler import (
    ClassifiedError,
    ErrorCategory,
    MissingCredentialsError,
    RequestErrorAccumulator,
    StreamedAPIError,
    UpstreamHTTPError,
    categorize_http_status,
    classify_error,
    is_quota_message,
    mask_credential,
    parse_duration,
    parse_retry_delay,
)


@pytest.mark.parametrize(
    "status, body, expected",
    [
        (429, "", ErrorCategory.QUOTA),
        (402, "", ErrorCategory.QUOTA),
        (403, "quota exceeded", ErrorCategory.QUOTA),
        (403, '{"error": {"status": "PERMISSION_DENIED", "message": "no"}}', ErrorCategory.AUTH),
        (401, "", ErrorCategory.AUTH),
        (400, "bad request", ErrorCategory.INVALID_REQUEST),
        (400, '{"error": {"status": "RESOURCE_EXHAUSTED"}}', ErrorCategory.QUOTA),
        (500, "", ErrorCategory.TRANSIENT_SERVER),
        (503, "", ErrorCategory.TRANSIENT_SERVER),
    ],
)
def test_categorize_http_status(status: int, body: str, expected: ErrorCategory) -> None:
    assert categorize_http_status(status, body) == expected


def test_quota_message_heuristics() -> None:
    assert is_quota_message("Quota exceeded for model x")
    assert is_quota_message("Rate limited, retry later")
    assert is_quota_message('upstream said: HTTP 429 {"code": 429}')
    assert not is_quota_message("Connection reset")
    assert not is_quota_message("")


@pytest.mark.parametrize(
    "value, expected",
    [
        ("12.5s", 12.5),
        ("290ms", 0.29),
        ("1h2m3s", 3723.0),
        ("45m", 2700.0),
        ("2h", 7200.0),
        ("30", 30.0),
        ("soon", None),
        ("", None),
    ],
)
def test_parse_duration(value: str, expected) -> None:
    result = parse_duration(value)
    if expected is None:
        assert result is None
    else:
        assert result == pytest.approx(expected)


def test_retry_delay_from_retry_info() -> None:
    body = json.dumps(
        {
            "error": {
                "code": 429,
                "details": [
                    {"@type": "type.googleapis.com/google.rpc.RetryInfo", "retryDelay": "7.5s"}
                ],
            }
        }
    )
    assert parse_retry_delay(body) == 7.5


def test_retry_delay_from_quota_reset_metadata() -> None:
    body = "Error 429: " + json.dumps(
        [
            {
                "error": {
                    "details": [
                        {
                            "@type": "type.googleapis.com/google.rpc.ErrorInfo",
                            "metadata": {"quotaResetDelay": "1h2m3s"},
                        }
                    ]
                }
            }
        ]
    )
    assert parse_retry_delay(body) == 3723.0


def test_retry_delay_from_header() -> None:
    assert parse_retry_delay("", {"Retry-After": "20"}) == 20.0
    assert parse_retry_delay(None, {"retry-after": "Wed, 21 Oct 2026 07:28:00 GMT"}) is None
    assert parse_retry_delay("no details here") is None


def test_classify_upstream_http_error() -> None:
    error = UpstreamHTTPError(429, "slow down", {"retry-after": "3"}, provider="openai")
    classified = classify_error(error)
    assert classified.category == ErrorCategory.QUOTA
    assert classified.status_code == 429
    assert classified.retry_after == 3.0
    assert classified.is_quota


def test_classify_httpx_status_error() -> None:
    request = httpx.Request("POST", "https://example.invalid")
    response = httpx.Response(401, request=request, content=b"unauthorized")
    error = httpx.HTTPStatusError("401", request=request, response=response)
    assert classify_error(error).category == ErrorCategory.AUTH


def test_classify_streamed_errors() -> None:
    anthropic = StreamedAPIError({"type": "error", "error": {"type": "rate_limit_error", "message": "slow"}})
    assert classify_error(anthropic).category == ErrorCategory.QUOTA

    openai = StreamedAPIError({"error": {"message": "Quota exceeded", "type": "insufficient_quota"}})
    assert openai.status_code is None
    assert classify_error(openai).category == ErrorCategory.QUOTA

    unknown = StreamedAPIError({"error": {"message": "weird"}})
    assert classify_error(unknown).category == ErrorCategory.UNKNOWN


def test_classify_transport_and_parse_errors() -> None:
    assert classify_error(httpx.ConnectError("refused")).category == ErrorCategory.TRANSIENT_SERVER
    with pytest.raises(json.JSONDecodeError) as excinfo:
        json.loads("{")
    assert classify_error(excinfo.value).category == ErrorCategory.MALFORMED_UPSTREAM
    assert classify_error(asyncio.CancelledError()).category == ErrorCategory.CANCELLED
    assert classify_error(MissingCredentialsError("openai_env_1")).category == ErrorCategory.UNKNOWN


def test_classify_litellm_rate_limit() -> None:
    error = RateLimitError(message="Rate limit reached", llm_provider="openai", model="gpt-4o")
    classified = classify_error(error)
    assert classified.category == ErrorCategory.QUOTA
    assert classified.status_code == 429


def test_accumulator_summary() -> None:
    acc = RequestErrorAccumulator()
    acc.record_error("cred-aaaaaa1", ClassifiedError(ErrorCategory.QUOTA, message="HTTP 429\nmore"))
    acc.record_error("cred-bbbbbb2", ClassifiedError(ErrorCategory.QUOTA, message="x" * 300))
    acc.record_error("cred-bbbbbb2", ClassifiedError(ErrorCategory.AUTH, message="nope"))
    assert acc.has_errors()
    assert acc.total_credentials_tried == 2
    assert acc.build_summary() == "2 quota, 1 auth"
    assert acc.errors[0]["message"] == "HTTP 429"
    assert acc.errors[1]["message"].endswith("...")
    assert acc.errors[0]["credential"] == "...aaaaa1"


def test_mask_credential() -> None:
    assert mask_credential("sk-1234567890") == "...567890"
    assert mask_credential("short") == "***"
    assert mask_credential("") == "***"
