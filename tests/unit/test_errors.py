from types import SimpleNamespace

from src.api.errors import (
    AppError,
    ConfigurationError,
    ValidationError,
    error_code,
    error_status,
    map_completion_error,
)


class _ApiError(Exception):
    def __init__(self, message, status=None, body=None):
        super().__init__(message)
        if status is not None:
            self.status_code = status
        self.body = body


def test_error_payload_shape():
    assert ValidationError("bad").to_dict() == {"detail": "bad", "code": "VALIDATION_ERROR"}
    assert ConfigurationError("missing key").status_code == 503


def test_error_status_and_code_extraction():
    assert error_status(_ApiError("x", status=429)) == 429
    response_error = Exception("x")
    response_error.response = SimpleNamespace(status_code=502)
    assert error_status(response_error) == 502
    assert error_status(ValueError("x")) is None
    assert error_code(_ApiError("x", body={"error": {"code": "rate_limit_exceeded"}})) == "rate_limit_exceeded"
    assert error_code(ValueError("x")) == ""


def test_map_completion_error():
    assert map_completion_error(_ApiError("no", status=401)).code == "AI_API_KEY_INVALID"
    limited = map_completion_error(_ApiError("slow down", status=429))
    assert (limited.status_code, limited.code) == (429, "AI_RATE_LIMIT")
    assert map_completion_error(_ApiError("down", status=503)).code == "AI_SERVICE_UNAVAILABLE"
    assert map_completion_error(_ApiError("teapot", status=418)).code == "AI_API_ERROR"
    assert map_completion_error(RuntimeError("boom")).code == "AI_SERVICE_ERROR"


def test_context_length_is_a_validation_error():
    error = _ApiError("too long", status=400, body={"error": {"code": "context_length_exceeded"}})

    mapped = map_completion_error(error)

    assert isinstance(mapped, ValidationError)
    assert mapped.code == "CONTEXT_TOO_LONG"


def test_app_errors_pass_through():
    original = AppError("already mapped", status_code=418, code="TEAPOT")

    assert map_completion_error(original) is original
