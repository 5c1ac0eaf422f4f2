import json
import time
from typing import Any, Dict, Optional

import jwt
import requests
from jwt.algorithms import RSAAlgorithm

from config import SETTINGS
from errors import ApiError, ForbiddenError, UnauthenticatedError
from models import Actor, Role

_JWKS_CACHE: Dict[str, Any] = {"url": None, "fetched_at": 0.0, "keys": {}}
_JWKS_TTL_SECONDS = 300

ROLE_GROUPS = (
    ("shipyard-platform-admins", Role.PLATFORM_ADMIN),
    ("shipyard-project-admins", Role.PROJECT_ADMIN),
    ("shipyard-observers", Role.OBSERVER),
)


def _config_error(setting: str) -> ApiError:
    return ApiError(f"{setting} is required", code="OIDC_CONFIG_MISSING")


def _jwks_url() -> str:
    if SETTINGS.oidc_jwks_url:
        return SETTINGS.oidc_jwks_url
    if not SETTINGS.oidc_issuer:
        return ""
    issuer = SETTINGS.oidc_issuer.rstrip("/")
    return f"{issuer}/.well-known/jwks.json"


def _fetch_jwks(jwks_url: str) -> Dict[str, dict]:
    now = time.time()
    if _JWKS_CACHE["url"] == jwks_url and (now - _JWKS_CACHE["fetched_at"]) < _JWKS_TTL_SECONDS:
        return _JWKS_CACHE["keys"]
    response = requests.get(jwks_url, timeout=5)
    response.raise_for_status()
    keys = {key["kid"]: key for key in response.json().get("keys", []) if key.get("kid")}
    _JWKS_CACHE.update({"url": jwks_url, "fetched_at": now, "keys": keys})
    return keys


def _decode_jwt(token: str) -> dict:
    if not SETTINGS.oidc_issuer:
        raise _config_error("SHIPYARD_OIDC_ISSUER")
    if not SETTINGS.oidc_audience:
        raise _config_error("SHIPYARD_OIDC_AUDIENCE")
    jwks_url = _jwks_url()
    if not jwks_url:
        raise _config_error("SHIPYARD_OIDC_JWKS_URL")
    try:
        header = jwt.get_unverified_header(token)
    except jwt.InvalidTokenError as exc:
        raise UnauthenticatedError("Invalid token header") from exc
    kid = header.get("kid")
    if not kid:
        raise UnauthenticatedError("Token is missing kid")
    jwk = _fetch_jwks(jwks_url).get(kid)
    if not jwk:
        raise UnauthenticatedError("Unknown signing key")
    try:
        key = RSAAlgorithm.from_jwk(json.dumps(jwk))
        return jwt.decode(
            token,
            key=key,
            algorithms=["RS256"],
            audience=SETTINGS.oidc_audience,
            issuer=SETTINGS.oidc_issuer,
        )
    except jwt.ExpiredSignatureError as exc:
        raise UnauthenticatedError("Token expired") from exc
    except jwt.InvalidTokenError as exc:
        raise UnauthenticatedError("Invalid token") from exc


def _map_role(groups: list) -> Role:
    for group, role in ROLE_GROUPS:
        if group in groups:
            return role
    raise ForbiddenError("No recognized Shipyard role in token", code="AUTHZ_ROLE_REQUIRED")


def _extract_actor_id(claims: dict) -> str:
    return (
        claims.get("sub")
        or claims.get("email")
        or claims.get("https://shipyard.example/claims/email")
        or "unknown"
    )


def get_actor(authorization: Optional[str]) -> Actor:
    if not authorization:
        raise UnauthenticatedError("Authorization header required")
    parts = authorization.split(" ")
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise UnauthenticatedError("Authorization must be Bearer token")
    token = parts[1].strip()
    if not token:
        raise UnauthenticatedError("Authorization token missing")
    claims = _decode_jwt(token)
    groups = claims.get(SETTINGS.oidc_roles_claim, [])
    if not isinstance(groups, list):
        raise ForbiddenError("Roles claim missing or invalid", code="AUTHZ_ROLE_REQUIRED")
    return Actor(actor_id=_extract_actor_id(claims), role=_map_role(groups), email=claims.get("email"))
