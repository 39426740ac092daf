"""FastAPI Dependencies

Centralized dependency injection for reuse across all route modules.
Provides type-safe, testable access to shared resources.
"""

from fastapi import Request

from decision.service import DecisionService
from exceptions import NotAuthenticatedError
from server.auth import is_initialized, verify_token


def get_decision_service(request: Request) -> DecisionService:
    """Dependency to get the DecisionService built at startup

    Tests swap in a service over the in-memory store via create_app(service=...).
    """
    return request.app.state.decision_service


async def get_current_user_id(request: Request) -> str:
    """
    FastAPI dependency to extract the caller's user id from a bearer access token.

    Returns:
        user_id claim of the token

    Raises:
        NotAuthenticatedError (401) if the token is missing, invalid or expired
    """
    auth_header = request.headers.get("authorization")
    if not auth_header or not auth_header.startswith("Bearer ") or not is_initialized():
        raise NotAuthenticatedError()

    access_token = auth_header.replace("Bearer ", "", 1)
    payload = verify_token(access_token, expected_type="access")
    user_id = payload.get("user_id") if payload else None
    if not user_id:
        raise NotAuthenticatedError()

    request.state.user_id = user_id
    return user_id
