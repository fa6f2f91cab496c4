from __future__ import annotations

from typing import Any, Dict, Optional

_AUTH_ERROR_MARKERS = (
    "unauthorized",
    "bearer token required",
    "invalid or expired access token",
)


class MemoryApiError(Exception):
    """Upstream failure classified with the HTTP status the boundary should answer with."""

    def __init__(self, message: str, status_code: int = 503, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = int(status_code)
        self.details = details


class UnsupportedCapabilityError(MemoryApiError):
    def __init__(self, capability: str) -> None:
        super().__init__(
            f"Selected memory backend does not support {capability}.",
            501,
            {"capability": capability},
        )
        self.capability = capability


class OperationCancelled(Exception):
    pass


def is_auth_error(error: BaseException) -> bool:
    if isinstance(error, MemoryApiError) and error.status_code == 401:
        return True
    message = str(error).lower()
    return any(marker in message for marker in _AUTH_ERROR_MARKERS)


def read_error_message(payload: Any) -> Optional[str]:
    if not isinstance(payload, dict):
        return None
    nested = payload.get("error")
    if isinstance(nested, dict) and isinstance(nested.get("message"), str):
        return nested["message"]
    if isinstance(nested, str) and nested.strip():
        return nested
    detail = payload.get("detail")
    if isinstance(detail, str):
        return detail
    if isinstance(detail, dict) and isinstance(detail.get("message"), str):
        return detail["message"]
    return None
