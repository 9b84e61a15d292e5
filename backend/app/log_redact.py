"""Secret redaction for logs: Supabase keys, admin tokens, query secrets."""

from __future__ import annotations

import logging
import re
import traceback
from urllib.parse import parse_qsl, quote_plus, urlsplit, urlunsplit

import httpx

SENSITIVE_QUERY_KEYS = frozenset(
    {
        "apikey",
        "api-key",
        "token",
        "access-token",
        "refresh-token",
        "key",
        "secret",
        "password",
        "service-role-key",
    }
)
_SENSITIVE_KEY_PATTERN = r"(?:apikey|api_key|token|access_token|refresh_token|service_role_key|key|secret|password)"
_URL_PATTERN = re.compile(r"(?i)https?://[^\s\"'<>]+")
_JSON_SECRET_PATTERN = re.compile(
    rf"(?i)(\"{_SENSITIVE_KEY_PATTERN}\"[ \t]*:[ \t]*\")([^\"]*)(\")"
)
_KV_SECRET_PATTERN = re.compile(
    rf"(?i)(\b{_SENSITIVE_KEY_PATTERN}\b[ \t]*[=:][ \t]*)([^&\s,;\"'<>]+)"
)
_BEARER_PATTERN = re.compile(r"(?i)\bBearer\s+[A-Za-z0-9._~+\-/]+=*")
# Supabase anon/service keys are JWTs: three base64url segments, header starts with "eyJ".
_JWT_PATTERN = re.compile(r"\beyJ[A-Za-z0-9_\-]+\.[A-Za-z0-9_\-]+\.[A-Za-z0-9_\-]+")

_FILTER_LOGGERS = (
    "",
    "uvicorn",
    "uvicorn.error",
    "uvicorn.access",
    "httpx",
    "httpcore",
    "sugar",
)
_HTTP_LOGGER = logging.getLogger("sugar.http")


def _is_sensitive_query_key(key: str) -> bool:
    return key.strip().lower().replace("_", "-") in SENSITIVE_QUERY_KEYS


def redact_url(url: str) -> str:
    """Mask sensitive query-param values, keeping host, path and filters."""
    if not url or "?" not in url:
        return url

    try:
        parsed = urlsplit(url)
    except ValueError:
        return url

    query_pairs = parse_qsl(parsed.query, keep_blank_values=True)
    if not any(_is_sensitive_query_key(key) for key, _ in query_pairs):
        return url

    redacted_query = "&".join(
        f"{quote_plus(key)}={'***' if _is_sensitive_query_key(key) else quote_plus(value)}"
        for key, value in query_pairs
    )
    return urlunsplit((parsed.scheme, parsed.netloc, parsed.path, redacted_query, parsed.fragment))


def redact_text(value: str | None) -> str | None:
    if value is None:
        return None
    text = str(value)

    text = _URL_PATTERN.sub(lambda match: redact_url(match.group(0)), text)
    text = _JSON_SECRET_PATTERN.sub(r"\1***\3", text)
    text = _KV_SECRET_PATTERN.sub(r"\1***", text)
    text = _BEARER_PATTERN.sub("Bearer ***", text)
    text = _JWT_PATTERN.sub("***", text)
    return text


class SecretRedactionFilter(logging.Filter):
    """Logging filter that redacts secrets before records are emitted."""

    def filter(self, record: logging.LogRecord) -> bool:
        try:
            message = record.getMessage()
        except Exception:
            message = str(record.msg)

        record.msg = redact_text(message) or ""
        record.args = ()
        if record.exc_info:
            exc_text = "".join(traceback.format_exception(*record.exc_info))
            record.exc_text = redact_text(exc_text)
        return True


def install_log_redaction() -> None:
    """Attach the redaction filter process-wide and quiet httpx request lines."""
    redaction_filter = SecretRedactionFilter()
    for logger_name in _FILTER_LOGGERS:
        logger = logging.getLogger(logger_name)
        if not any(isinstance(existing, SecretRedactionFilter) for existing in logger.filters):
            logger.addFilter(redaction_filter)
        for handler in logger.handlers:
            if not any(isinstance(existing, SecretRedactionFilter) for existing in handler.filters):
                handler.addFilter(redaction_filter)

    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


async def _log_http_request(request: httpx.Request) -> None:
    _HTTP_LOGGER.debug("Supabase request method=%s url=%s", request.method, redact_url(str(request.url)))


async def _log_http_response(response: httpx.Response) -> None:
    request = response.request
    _HTTP_LOGGER.debug(
        "Supabase response method=%s url=%s status=%d",
        request.method,
        redact_url(str(request.url)),
        response.status_code,
    )


def httpx_event_hooks() -> dict[str, list]:
    return {
        "request": [_log_http_request],
        "response": [_log_http_response],
    }
