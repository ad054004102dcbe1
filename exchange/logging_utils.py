"""
Exchange Client - Credential-Safe Request Logging.

============================================================
PURPOSE
============================================================
Debug logging of signed Bybit calls without leaking what
signs them.

- X-BAPI-API-KEY / X-BAPI-SIGN never appear in clear
- Query values that look like keys or signatures are masked
- Every request/response pair shares a correlation id

============================================================
"""

import json
import logging
import re
from itertools import count
from typing import Any, Dict, Optional


logger = logging.getLogger(__name__)


SENSITIVE_HEADERS = frozenset({
    "x-bapi-api-key",
    "x-bapi-sign",
    "authorization",
})

SENSITIVE_PARAMS = frozenset({
    "api_key",
    "apikey",
    "api_secret",
    "secret",
    "sign",
    "signature",
})

# hex HMAC-SHA256 digests, then long opaque tokens
_SIGNATURE_RE = re.compile(r"\b[a-f0-9]{64}\b", re.IGNORECASE)
_TOKEN_RE = re.compile(r"\b[A-Za-z0-9]{32,}\b")

PREVIEW_CHARS = 200


def mask_value(value: Optional[str], show_chars: int = 4) -> str:
    """Keep the first `show_chars` characters of values long enough to hide the rest."""
    if not value or len(value) <= show_chars * 2:
        return "***"
    return f"{value[:show_chars]}...***"


def mask_headers(headers: Optional[Dict[str, str]]) -> Dict[str, str]:
    return {
        name: mask_value(str(value)) if name.lower() in SENSITIVE_HEADERS else value
        for name, value in (headers or {}).items()
    }


def _scrub(text: str) -> str:
    text = _SIGNATURE_RE.sub("***SIGN***", text)
    return _TOKEN_RE.sub("***KEY***", text)


def mask_params(params: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Mask sensitive query parameters; free-form strings are scrubbed of signature-like tokens."""
    masked: Dict[str, Any] = {}
    for name, value in (params or {}).items():
        if name.lower() in SENSITIVE_PARAMS:
            masked[name] = mask_value(str(value)) if value else value
        elif isinstance(value, dict):
            masked[name] = mask_params(value)
        elif isinstance(value, str):
            masked[name] = _scrub(value)
        else:
            masked[name] = value
    return masked


def _preview(body: Any) -> Optional[str]:
    if not body:
        return None
    if isinstance(body, (dict, list)):
        body = json.dumps(body, default=str)
    return _scrub(str(body))[:PREVIEW_CHARS]


class AdapterLogger:
    """
    Request/response logger for one exchange client.

    Requests and successful responses log at DEBUG; failed
    responses at WARNING with the provider's message.
    """

    def __init__(self, exchange_id: str):
        self._exchange_id = exchange_id
        self._logger = logging.getLogger(f"exchange.{exchange_id}")
        self._ids = count(1)

    def log_request(
        self,
        operation: str,
        method: str,
        endpoint: str,
        headers: Optional[Dict[str, str]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Returns the correlation id to pass to log_response."""
        request_id = f"{self._exchange_id}-{next(self._ids)}"
        if self._logger.isEnabledFor(logging.DEBUG):
            self._logger.debug(
                f"-> {request_id} {method} {endpoint} "
                f"params={json.dumps(mask_params(params), default=str)} "
                f"headers={json.dumps(mask_headers(headers))}",
                extra={"exchange": self._exchange_id, "operation": operation},
            )
        return request_id

    def log_response(
        self,
        operation: str,
        request_id: str,
        status_code: int,
        latency_ms: float,
        success: bool,
        error_code: Optional[str] = None,
        error_message: Optional[str] = None,
        response_body: Optional[Any] = None,
    ) -> None:
        extra = {"exchange": self._exchange_id, "operation": operation}
        if success:
            if self._logger.isEnabledFor(logging.DEBUG):
                self._logger.debug(
                    f"<- {request_id} {status_code} in {latency_ms:.1f}ms {_preview(response_body) or ''}",
                    extra=extra,
                )
            return

        message = (error_message or "")[:PREVIEW_CHARS]
        self._logger.warning(
            f"<- {request_id} {operation} failed with HTTP {status_code} "
            f"after {latency_ms:.1f}ms: {error_code} {message}",
            extra=extra,
        )
