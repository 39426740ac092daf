"""Standardized API response helpers.

Ensures consistent response structure across all endpoints.
All successful responses include {"success": True, ...}; failures carry
{"success": False, "error": {"code", "message"}}.
"""

from fastapi import status

# Stable error code -> HTTP status. Unknown codes map to 500.
ERROR_STATUS = {
    # Not found
    "CONVERSATION_NOT_FOUND": status.HTTP_404_NOT_FOUND,
    "ROUND_NOT_FOUND": status.HTTP_404_NOT_FOUND,
    "RESPONSE_NOT_FOUND": status.HTTP_404_NOT_FOUND,
    "SOURCE_CONVERSATION_NOT_FOUND": status.HTTP_404_NOT_FOUND,
    # Authorization
    "FORBIDDEN": status.HTTP_403_FORBIDDEN,
    "UNAUTHORIZED": status.HTTP_403_FORBIDDEN,
    # State conflicts
    "NOT_DECISION_SESSION": status.HTTP_409_CONFLICT,
    "NOT_A_PROPOSAL": status.HTTP_409_CONFLICT,
    "NEGATIVE_VOTES": status.HTTP_409_CONFLICT,
    "BUDGET_EXCEEDED": status.HTTP_409_CONFLICT,
    "ROUND_NOT_OPEN": status.HTTP_409_CONFLICT,
    "ROUND_NOT_CLOSED_OR_NOT_FINALIZED": status.HTTP_409_CONFLICT,
    "INVALID_TRANSITION": status.HTTP_409_CONFLICT,
    # Validation
    "VALIDATION_ERROR": status.HTTP_400_BAD_REQUEST,
    # Transient infrastructure (after retries)
    "STORE_UNAVAILABLE": status.HTTP_503_SERVICE_UNAVAILABLE,
    "TRANSACTION_CONFLICT": status.HTTP_503_SERVICE_UNAVAILABLE,
}


def status_for_code(code: str) -> int:
    return ERROR_STATUS.get(code, status.HTTP_500_INTERNAL_SERVER_ERROR)


def success_response(data: dict, **extras) -> dict:
    """Standard success response wrapper.

    Usage:
        return success_response({"result": result.to_dict()})

    Returns:
        {"success": True, **data, **extras}
    """
    return {"success": True, **data, **extras}


def error_response(code: str, message: str, **extras) -> dict:
    """Standard error response body.

    Usage:
        return JSONResponse(status_for_code(code), error_response(code, "Insufficient credits"))

    Returns:
        {"success": False, "error": {"code": code, "message": message}, **extras}
    """
    return {"success": False, "error": {"code": code, "message": message}, **extras}
