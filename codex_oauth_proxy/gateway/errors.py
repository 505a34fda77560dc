from __future__ import annotations

from typing import Any

from fastapi import status
from fastapi.responses import JSONResponse, Response


class ProxyError(Exception):
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    error_type: str = "proxy_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_response(self, *, request_id: str | None = None) -> Response:
        headers = {"X-Request-Id": request_id} if request_id else None
        return JSONResponse(
            status_code=self.status_code,
            headers=headers,
            content=error_envelope(self.message, self.error_type),
        )


class AuthError(ProxyError):
    status_code = status.HTTP_401_UNAUTHORIZED
    error_type = "invalid_request_error"

    def to_response(self, *, request_id: str | None = None) -> Response:
        response = super().to_response(request_id=request_id)
        response.headers["WWW-Authenticate"] = "Bearer"
        return response


class InvalidRequestError(ProxyError):
    status_code = status.HTTP_400_BAD_REQUEST
    error_type = "invalid_request_error"


class PayloadTooLargeError(ProxyError):
    status_code = status.HTTP_413_CONTENT_TOO_LARGE
    error_type = "invalid_request_error"


class CredentialFetchError(ProxyError):
    """Raised when the OAuth client-credentials exchange fails."""

    status_code = status.HTTP_502_BAD_GATEWAY
    error_type = "credential_error"

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.upstream_status = status_code


class NetworkError(ProxyError):
    """No response was received from the upstream API."""


class StreamError(ProxyError):
    """The upstream event stream failed before response headers were sent."""


class UpstreamError(ProxyError):
    """The upstream API answered with a non-2xx status; relayed verbatim."""

    def __init__(
        self,
        *,
        status_code: int,
        body: bytes,
        content_type: str | None,
        reason: str = "",
    ) -> None:
        super().__init__(f"upstream returned status {status_code}")
        self.status_code = status_code
        self.body = body
        self.content_type = content_type
        self.reason = reason

    def to_response(self, *, request_id: str | None = None) -> Response:
        headers = {"X-Request-Id": request_id} if request_id else {}
        if not self.body:
            return JSONResponse(
                status_code=self.status_code,
                headers=headers,
                content={
                    "error": {
                        "message": f"API error: {self.reason or self.status_code}",
                        "type": "api_error",
                        "code": self.status_code,
                    }
                },
            )
        return Response(
            content=self.body,
            status_code=self.status_code,
            headers=headers,
            media_type=self.content_type or "application/json",
        )


def error_envelope(message: str, error_type: str) -> dict[str, Any]:
    return {"error": {"message": message, "type": error_type}}
