"""
Identity resolution for inbound requests and channel handshakes.

The approuter in front of the service has already authenticated the user and
forwards a JWT; this module only decodes the payload (no signature check) and
turns it into a UserIdentity. Expired tokens are rejected so a stale session
surfaces as a 401 instead of silently continuing.
"""

import logging
from dataclasses import dataclass, asdict
from typing import Any, Dict, Mapping, Optional

import jwt

from errors import AuthenticationError

logger = logging.getLogger(__name__)

# Signatures are verified upstream; expiry is still enforced here
_DECODE_OPTIONS = {"verify_signature": False, "verify_exp": True}


@dataclass
class UserIdentity:
    id: str
    email: Optional[str] = None
    name: Optional[str] = None
    given_name: Optional[str] = None
    family_name: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def decode_token(token: str) -> UserIdentity:
    """Decode a bearer JWT into a UserIdentity.

    The user id is the first of user_name, email, sub that is present.

    Raises:
        AuthenticationError: empty, malformed, id-less or expired token
    """
    if not token or not token.strip():
        raise AuthenticationError("No authentication token provided", reason="missing")

    try:
        payload = jwt.decode(token.strip(), options=_DECODE_OPTIONS)
    except jwt.ExpiredSignatureError:
        raise AuthenticationError("Session expired", reason="expired")
    except jwt.InvalidTokenError as e:
        logger.debug(f"Rejected bearer token: {e}")
        raise AuthenticationError("Unauthorized - Invalid token")

    user_id = payload.get("user_name") or payload.get("email") or payload.get("sub")
    if not user_id:
        raise AuthenticationError("Unauthorized - Invalid token")

    return UserIdentity(
        id=user_id,
        email=payload.get("email"),
        name=payload.get("given_name") or payload.get("user_name"),
        given_name=payload.get("given_name"),
        family_name=payload.get("family_name"),
    )


def _bearer(value: Optional[str]) -> Optional[str]:
    if value and value.startswith("Bearer "):
        return value[len("Bearer "):]
    return None


def resolve_request_user(headers: Mapping[str, str]) -> UserIdentity:
    """Resolve an HTTP request; only the Authorization bearer is accepted."""
    token = _bearer(headers.get("authorization"))
    if token is None:
        raise AuthenticationError("Unauthorized", reason="missing")
    return decode_token(token)


def resolve_channel_user(headers: Mapping[str, str]) -> UserIdentity:
    """Resolve a persistent-channel handshake.

    Tries Authorization, then x-approuter-authorization, then the
    x-forwarded-user / x-user-id headers some proxies set.
    """
    last_error: Optional[AuthenticationError] = None
    for header in ("authorization", "x-approuter-authorization"):
        token = _bearer(headers.get(header))
        if token is None:
            continue
        try:
            return decode_token(token)
        except AuthenticationError as e:
            last_error = e

    forwarded = headers.get("x-forwarded-user") or headers.get("x-user-id")
    if forwarded:
        return UserIdentity(id=forwarded, name=forwarded)

    if last_error is not None:
        raise last_error
    raise AuthenticationError("No authentication token provided", reason="missing")
