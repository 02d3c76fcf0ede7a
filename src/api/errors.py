"""Application error taxonomy shared by services and routers."""

from typing import Any, Dict, Optional


class AppError(Exception):
    """Base error carrying an HTTP status and a machine-readable code."""

    def __init__(self, message: str, status_code: int = 500, code: str = "INTERNAL_ERROR"):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.code = code

    def to_dict(self) -> Dict[str, Any]:
        return {"detail": self.message, "code": self.code}


class ValidationError(AppError):
    """Bad client input. Never retried."""

    def __init__(self, message: str, code: str = "VALIDATION_ERROR"):
        super().__init__(message, status_code=400, code=code)


class UpstreamServiceError(AppError):
    """Failure of an external gateway (embedding, vector, web, completion)."""

    def __init__(
        self,
        message: str,
        *,
        service: str,
        status: Optional[int] = None,
        status_code: int = 502,
        code: str = "UPSTREAM_ERROR",
    ):
        super().__init__(message, status_code=status_code, code=code)
        self.service = service
        self.status = status


class ConfigurationError(AppError):
    """A gateway is missing credentials or endpoints; its stage is unavailable."""

    def __init__(self, message: str, code: str = "SERVICE_NOT_CONFIGURED"):
        super().__init__(message, status_code=503, code=code)


class StageError(Exception):
    """Error side of a pipeline stage result."""

    def __init__(self, stage: str, cause: BaseException):
        super().__init__(f"{stage}: {cause}")
        self.stage = stage
        self.cause = cause


def error_status(error: BaseException) -> Optional[int]:
    """Best-effort HTTP status extraction from library and app errors."""
    for attr in ("status", "status_code"):
        value = getattr(error, attr, None)
        if isinstance(value, int):
            return value
    response = getattr(error, "response", None)
    value = getattr(response, "status_code", None)
    if isinstance(value, int):
        return value
    return None


def error_code(error: BaseException) -> str:
    value = getattr(error, "code", None)
    if isinstance(value, str):
        return value
    body = getattr(error, "body", None)
    if isinstance(body, dict):
        nested = body.get("error") if isinstance(body.get("error"), dict) else body
        if isinstance(nested.get("code"), str):
            return nested["code"]
    return ""


def map_completion_error(error: BaseException) -> AppError:
    """Translate a chat-completion failure into the error surfaced to the caller."""
    if isinstance(error, AppError):
        return error
    if error_code(error) == "context_length_exceeded" or "context_length_exceeded" in str(error):
        return ValidationError(
            "Question or context is too long. Please shorten your question.",
            code="CONTEXT_TOO_LONG",
        )
    status = error_status(error)
    if status is None:
        return AppError(f"AI service error: {error}", status_code=500, code="AI_SERVICE_ERROR")
    if status == 401:
        return AppError("AI service API key is invalid", status_code=500, code="AI_API_KEY_INVALID")
    if status == 429:
        return AppError("AI service rate limit exceeded. Please try again later.", status_code=429, code="AI_RATE_LIMIT")
    if status in (500, 503):
        return AppError("AI service is temporarily unavailable", status_code=503, code="AI_SERVICE_UNAVAILABLE")
    return AppError(f"AI service error: {error}", status_code=500, code="AI_API_ERROR")
