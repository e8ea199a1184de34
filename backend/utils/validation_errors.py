"""
Structured Validation Error Utilities

Standardized 400 responses for request payloads that fail validation, so
webhook senders and the UI can tell a bad payload apart from a settlement
or connectivity failure.

Error Response Format:
{
    "success": false,
    "error": "missing_parameter" | "invalid_parameter" | "validation_error",
    "parameter": "userAddress",
    "message": "userAddress is required"
}
"""

from typing import Any, Dict, List, Optional

from fastapi import status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from core.errors import InvalidInputError


class ValidationErrorResponse:
    """Structured validation error response builder."""

    @staticmethod
    def missing_parameter(parameter: str, message: Optional[str] = None) -> dict:
        return {
            "success": False,
            "error": "missing_parameter",
            "parameter": parameter,
            "message": message or f"{parameter} is required"
        }

    @staticmethod
    def invalid_parameter(parameter: str, message: str, value: Optional[Any] = None) -> dict:
        """
        Create an invalid parameter error response.

        Args:
            parameter: Name of the invalid parameter
            message: Description of the validation error
            value: The invalid value (optional, for debugging)
        """
        response = {
            "success": False,
            "error": "invalid_parameter",
            "parameter": parameter,
            "message": message
        }
        if value is not None:
            response["received_value"] = str(value)[:100]  # Truncate for safety
        return response

    @staticmethod
    def validation_error(message: str, details: Optional[list] = None) -> dict:
        response = {
            "success": False,
            "error": "validation_error",
            "parameter": None,
            "message": message
        }
        if details:
            response["details"] = details
        return response


def _parameter_name(loc: List[Any]) -> Optional[str]:
    # loc is ("body", "userAddress") for body fields, ("body",) for the body itself
    names = [str(part) for part in loc if part not in ("body", "query", "path", "header")]
    return ".".join(names) or None


def describe_validation_error(exc: RequestValidationError) -> Dict[str, Any]:
    """Convert a FastAPI validation error into the structured error body."""
    errors = exc.errors()
    if not errors:
        return ValidationErrorResponse.validation_error("Invalid request payload")

    first = errors[0]
    parameter = _parameter_name(first.get("loc", ()))

    if parameter is None:
        details = [{"loc": list(e.get("loc", ())), "msg": e.get("msg")} for e in errors]
        return ValidationErrorResponse.validation_error("Invalid request payload", details)

    if first.get("type") == "missing":
        return ValidationErrorResponse.missing_parameter(parameter)

    return ValidationErrorResponse.invalid_parameter(
        parameter, first.get("msg", "Invalid value"), first.get("input")
    )


def validation_error_response(exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=describe_validation_error(exc)
    )


def invalid_input_response(exc: InvalidInputError) -> JSONResponse:
    """400 for inputs the reconciliation core rejected itself."""
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=ValidationErrorResponse.invalid_parameter(exc.field, exc.message)
    )
