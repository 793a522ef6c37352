"""Error taxonomy for the gateway.

Every error that can reach a caller is a ``GatewayError`` carrying the HTTP
status and a stable error code. The FastAPI app renders them through a single
exception handler; nothing here is ever retried automatically.
"""

from typing import Any


class GatewayError(Exception):
    """Base exception for all gateway errors."""

    status_code: int = 500
    error_code: str = "INTERNAL_ERROR"

    def __init__(self, detail: str, extra: dict[str, Any] | None = None):
        self.detail = detail
        self.extra = extra or {}
        super().__init__(detail)

    def to_dict(self) -> dict[str, Any]:
        """Convert to the JSON body returned to HTTP callers."""
        body = {"success": False, "error": self.detail, "code": self.error_code}
        body.update(self.extra)
        return body


class InvalidModel(GatewayError):
    """The requested model id is not in the static registry."""

    status_code = 400
    error_code = "INVALID_MODEL"

    def __init__(self, model: str | None, available: list[str] | None = None):
        self.model = model
        extra = {"availableModels": available} if available is not None else None
        super().__init__(f"Invalid or unsupported model: {model!r}", extra)


class UnsupportedMedia(GatewayError):
    """Images were sent to a model that only handles text."""

    status_code = 400
    error_code = "UNSUPPORTED_MEDIA"

    def __init__(self, model: str):
        self.model = model
        super().__init__(
            f"Model {model} does not support image processing.",
            {"modelSupportsImages": False},
        )


class InvalidRequest(GatewayError):
    """The request body is structurally unusable."""

    status_code = 400
    error_code = "INVALID_REQUEST"


class ServiceUnavailable(GatewayError):
    """The inference engine could not be reached."""

    status_code = 503
    error_code = "SERVICE_UNAVAILABLE"


class ModelNotFound(GatewayError):
    """The engine rejected the model at call time (usually not pulled yet)."""

    status_code = 404
    error_code = "MODEL_NOT_FOUND"

    def __init__(self, model: str):
        self.model = model
        super().__init__(f"Model {model} is not available. It may need to be pulled first.")


class RequestTimeout(GatewayError):
    """The engine did not answer within the selected timeout."""

    status_code = 408
    error_code = "REQUEST_TIMEOUT"


class LoadTimeout(GatewayError):
    """Warming the target model exceeded the load timeout."""

    status_code = 408
    error_code = "LOAD_TIMEOUT"


class InternalError(GatewayError):
    """Anything not covered by a more specific error."""
