"""
JWT session tokens

The auth service issues access tokens; this module verifies them and
extracts `user_id`. Token issuance is kept for tooling and tests.

The secret is module state, set once by init_jwt() at startup (tests call
it from their fixtures).
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import JWTError, jwt

from exceptions import ConfigurationError

_SECRET_KEY: Optional[str] = None
_ALGORITHM = "HS256"

_ACCESS_TOKEN_EXPIRY = timedelta(hours=1)


def init_jwt(secret: str) -> None:
    """Install the signing secret.

    Repeating the call with the same secret is a no-op.

    Raises:
        ConfigurationError: empty secret, or a different secret is already installed
    """
    global _SECRET_KEY

    if not secret or not secret.strip():
        raise ConfigurationError("JWT secret cannot be empty", config_key="HIVEMIND_JWT_SECRET")

    if _SECRET_KEY is not None and _SECRET_KEY != secret:
        raise ConfigurationError(
            "JWT secret already installed with a different value",
            config_key="HIVEMIND_JWT_SECRET",
        )

    _SECRET_KEY = secret


def is_initialized() -> bool:
    return _SECRET_KEY is not None


def _require_secret() -> str:
    if _SECRET_KEY is None:
        raise ConfigurationError("init_jwt() has not been called", config_key="HIVEMIND_JWT_SECRET")
    return _SECRET_KEY


def generate_access_token(user_id: str, expires_in: timedelta = _ACCESS_TOKEN_EXPIRY) -> str:
    payload = {
        "user_id": user_id,
        "type": "access",
        "exp": datetime.now(timezone.utc) + expires_in,
    }
    return jwt.encode(payload, _require_secret(), algorithm=_ALGORITHM)


def verify_token(token: str, expected_type: Optional[str] = None) -> Optional[dict]:
    """Decoded payload, or None when the token is bad, expired or of the wrong type"""
    secret = _require_secret()
    try:
        payload = jwt.decode(token, secret, algorithms=[_ALGORITHM])
    except JWTError:
        return None

    if expected_type and payload.get("type") != expected_type:
        return None
    return payload
