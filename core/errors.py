"""
Gateway error type.

Every rejection the gateway produces (auth, limits, validation, upstream
failures) is a GatewayError. The API layer renders it as

    {"code": <code>, "message": <message>, **extra}

with the error's HTTP status and headers.
"""

from typing import Any, Dict, Optional


class GatewayError(Exception):
    """
    An HTTP-mappable error with a machine-readable code.

    Attributes:
        status_code: HTTP status to respond with.
        code: Stable machine-readable error code (e.g. "DAILY_LIMIT_REACHED").
        message: Human-readable message.
        extra: Additional fields merged into the response body.
        headers: Additional response headers.
    """

    def __init__(
        self,
        status_code: int,
        code: str,
        message: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
        **extra: Any,
    ):
        self.status_code = status_code
        self.code = code
        self.message = message or code
        self.headers = headers
        self.extra = extra
        super().__init__(f"{code}: {self.message}")

    def to_dict(self) -> Dict[str, Any]:
        body = {"code": self.code, "message": self.message}
        body.update(self.extra)
        return body
