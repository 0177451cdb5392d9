import hashlib
import re
from functools import lru_cache
from typing import Any

import jwt
from google.auth import exceptions as google_auth_exceptions
from google.auth.transport import requests as google_requests
from google.oauth2 import id_token

from creditmeter.core.config import get_settings
from creditmeter.core.exceptions import InvalidArgumentError, UnauthenticatedError

APP_CHECK_JWKS_URL = "https://firebaseappcheck.googleapis.com/v1/jwks"
APP_CHECK_ISSUER_PREFIX = "https://firebaseappcheck.googleapis.com/"

SESSION_ID_RE = re.compile(r"^[A-Za-z0-9_-]{8,128}$")


def verify_firebase_id_token(token: str) -> dict[str, Any]:
    """Verify a Firebase ID token; return decoded claims (sub, email, admin, ...)."""
    settings = get_settings()
    if not settings.firebase_project_id:
        raise UnauthenticatedError("Identity verification is not configured")
    try:
        claims = id_token.verify_firebase_token(
            token,
            google_requests.Request(),
            audience=settings.firebase_project_id,
        )
    except (ValueError, google_auth_exceptions.GoogleAuthError) as e:
        raise UnauthenticatedError(f"Invalid ID token: {e}") from e
    if not claims or not claims.get("sub"):
        raise UnauthenticatedError("Invalid ID token")
    return claims


def bearer_token(authorization: str | None) -> str:
    if not authorization:
        raise UnauthenticatedError("Missing bearer credential")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise UnauthenticatedError("Missing bearer credential")
    return token.strip()


def purchase_record_id(purchase_token: str) -> str:
    """Deterministic purchase document id; the raw token is never stored as a key."""
    return hashlib.sha256(purchase_token.encode("utf-8")).hexdigest()


def require_session_id(session_id: str | None) -> str:
    if not session_id or not SESSION_ID_RE.match(session_id):
        raise InvalidArgumentError("Invalid sessionId")
    return session_id


@lru_cache
def _app_check_keys() -> jwt.PyJWKClient:
    return jwt.PyJWKClient(APP_CHECK_JWKS_URL, cache_keys=True, lifespan=6 * 60 * 60)


def verify_app_check_token(token: str | None) -> dict[str, Any]:
    """Verify a Firebase App Check attestation token (RS256, project audience)."""
    settings = get_settings()
    if not token:
        raise UnauthenticatedError("Missing App Check token")
    try:
        signing_key = _app_check_keys().get_signing_key_from_jwt(token)
        claims = jwt.decode(
            token,
            signing_key.key,
            algorithms=["RS256"],
            audience=f"projects/{settings.firebase_project_id}",
        )
    except jwt.PyJWTError as e:
        raise UnauthenticatedError(f"Invalid App Check token: {e}") from e
    if not str(claims.get("iss", "")).startswith(APP_CHECK_ISSUER_PREFIX):
        raise UnauthenticatedError("Invalid App Check token issuer")
    return claims
