from __future__ import annotations

from typing import Any

from fastapi import Request
from fastapi.responses import JSONResponse

from studygraph.infrastructure.observability.correlation import get_correlation_id


def _error_example(code: str, message: str, details: Any) -> dict[str, Any]:
    return {
        "error": {
            "code": code,
            "message": message,
            "details": details,
            "request_id": "f6a4c304-1ce0-4cf5-9d8f-5d4deca4f51f",
        }
    }


ERROR_RESPONSES: dict[int, dict[str, Any]] = {
    400: {
        "description": "Bad Request",
        "content": {
            "application/json": {
                "example": _error_example(
                    "INPUT_VALIDATION_FAILED",
                    "Text too short (12 characters). Send at least 80 characters.",
                    None,
                )
            }
        },
    },
    404: {
        "description": "Not Found",
        "content": {
            "application/json": {
                "example": _error_example("NOT_FOUND", "Resource not found", None)
            }
        },
    },
    409: {
        "description": "Conflict",
        "content": {
            "application/json": {
                "example": _error_example(
                    "GENERATION_IN_PROGRESS",
                    "A generation is already running for this subject",
                    {"generation_id": "3b0f1f7e-6a1d-4c43-9a51-2f8d3c6f2c11"},
                )
            }
        },
    },
    422: {
        "description": "Unprocessable Entity",
        "content": {
            "application/json": {
                "example": _error_example(
                    "REQUEST_CONTRACT_BREACH",
                    "Request validation failed",
                    [{"loc": ["path", "subject_id"], "msg": "Field required"}],
                )
            }
        },
    },
}


class ApiError(Exception):
    def __init__(self, status_code: int, code: str, message: str, details: Any = None):
        super().__init__(message)
        self.status_code = int(status_code)
        self.code = code
        self.message = message
        self.details = details


def error_body(code: str, message: str, details: Any = None) -> dict[str, Any]:
    return {
        "error": {
            "code": code,
            "message": message,
            "details": details,
            "request_id": get_correlation_id(),
        }
    }


async def api_error_exception_handler(_: Request, exc: ApiError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content=error_body(exc.code, exc.message, exc.details),
    )
