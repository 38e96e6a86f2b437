"""Supabase access-token verification and the marketplace identity it yields.

Tokens are signed either with the project's shared HS256 secret or with the
ES256 keys published at ``<SUPABASE_URL>/auth/v1/.well-known/jwks.json``.
The marketplace role (client or provider) is read from ``app_metadata``
only; ``user_metadata`` is editable by the user and contributes display
names, never authority.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Optional

import jwt
from fastapi import Header, HTTPException
from jwt import PyJWKClient

from clickwork.core.config import Settings, get_settings

logger = logging.getLogger(__name__)

ALLOWED_ROLES = {"CLIENT", "PROVIDER"}

Claims = dict[str, Any]


@dataclass
class CurrentUser:
    id: str
    role: str
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None

    @property
    def user_type(self) -> str:
        return self.role.lower()


@lru_cache(maxsize=4)
def _jwks_client(jwks_url: str) -> PyJWKClient:
    # PyJWKClient caches fetched keys itself; one client per project URL.
    return PyJWKClient(jwks_url, cache_keys=True, lifespan=3600)


def _bearer_token(authorization: Optional[str]) -> str:
    scheme, _, token = (authorization or "").partition(" ")
    if scheme != "Bearer" or not token.strip():
        raise HTTPException(401, "Missing bearer token")
    return token.strip()


def _decode(token: str, key: Any, algorithm: str, settings: Settings) -> Claims:
    audience = (settings.supabase_jwt_audience or "").strip()
    return jwt.decode(
        token,
        key,
        algorithms=[algorithm],
        audience=audience or None,
        options={"verify_aud": bool(audience)},
    )


def _verify_shared_secret(token: str, settings: Settings) -> Optional[Claims]:
    if not settings.supabase_jwt_secret:
        return None
    try:
        return _decode(token, settings.supabase_jwt_secret, "HS256", settings)
    except jwt.InvalidTokenError:
        return None


def _verify_project_keys(token: str, settings: Settings) -> Optional[Claims]:
    base_url = (settings.supabase_url or "").rstrip("/")
    if not base_url:
        return None
    try:
        signing_key = _jwks_client(f"{base_url}/auth/v1/.well-known/jwks.json").get_signing_key_from_jwt(token)
        return _decode(token, signing_key.key, "ES256", settings)
    except (jwt.InvalidTokenError, jwt.PyJWKClientError) as exc:
        logger.debug("ES256 verification failed: %s", exc)
        return None


def verify_token(token: str, settings: Settings) -> Claims:
    """Return the verified claims, trying the verifier that matches the token's ``alg`` first."""
    try:
        algorithm = jwt.get_unverified_header(token).get("alg", "")
    except jwt.DecodeError:
        raise HTTPException(401, "Invalid token")

    verifiers: list[Callable[[str, Settings], Optional[Claims]]] = [_verify_shared_secret, _verify_project_keys]
    if algorithm == "ES256":
        verifiers.reverse()
    for verify in verifiers:
        claims = verify(token, settings)
        if claims is not None:
            return claims
    raise HTTPException(401, "Invalid token")


def _marketplace_role(claims: Claims) -> Optional[str]:
    app_meta = claims.get("app_metadata") or {}
    # Accounts registered from the web app carry `user_type`; provisioned ones carry `role`.
    raw = app_meta.get("role") or app_meta.get("user_type")
    role = str(raw).strip().upper() if raw is not None else ""
    return role if role in ALLOWED_ROLES else None


def _display_name(meta: dict, field: str) -> Optional[str]:
    value = meta.get(field)
    return value.strip() or None if isinstance(value, str) else None


def identity_from_claims(claims: Claims) -> CurrentUser:
    user_id = claims.get("sub")
    if not user_id:
        raise HTTPException(401, "Invalid token")
    role = _marketplace_role(claims)
    if role is None:
        raise HTTPException(403, "Missing role")

    profile = claims.get("user_metadata") or {}
    return CurrentUser(
        id=user_id,
        role=role,
        email=claims.get("email"),
        first_name=_display_name(profile, "first_name"),
        last_name=_display_name(profile, "last_name"),
    )


def get_current_user(
    authorization: Optional[str] = Header(None, alias="Authorization"),
) -> CurrentUser:
    token = _bearer_token(authorization)
    settings = get_settings()
    if not settings.supabase_jwt_secret and not settings.supabase_url:
        raise HTTPException(500, "SUPABASE_JWT_SECRET is not configured")
    return identity_from_claims(verify_token(token, settings))
