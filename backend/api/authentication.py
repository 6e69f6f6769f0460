import logging
from dataclasses import dataclass, field
from typing import Optional, Tuple

import jwt
from jwt import InvalidTokenError, PyJWKClient, PyJWKClientError
from django.conf import settings
from rest_framework.authentication import BaseAuthentication
from rest_framework.exceptions import AuthenticationFailed

logger = logging.getLogger(__name__)


@dataclass
class Principal:
    user_id: Optional[str]
    username: Optional[str]
    roles: list[str]
    department: Optional[str] = None
    name: Optional[str] = None
    email: Optional[str] = None
    permissions: list[str] = field(default_factory=list)
    is_authenticated: bool = True

    @property
    def display_name(self) -> str:
        return self.name or self.username or self.user_id or ""


def _verify_jwt_with_jwks(token: str, jwks_url: str) -> dict:
    if not jwks_url:
        raise AuthenticationFailed("JWKS URL is not configured.")
    try:
        header = jwt.get_unverified_header(token)
        alg = header.get("alg")
        if not alg:
            raise AuthenticationFailed("JWT alg is missing.")
        if settings.AUTH_ALGORITHMS and alg not in settings.AUTH_ALGORITHMS:
            raise AuthenticationFailed("JWT alg is not allowed.")

        jwk_client = PyJWKClient(jwks_url)
        signing_key = jwk_client.get_signing_key_from_jwt(token)

        options = {
            "verify_aud": bool(settings.AUTH_AUDIENCE),
            "verify_iss": bool(settings.AUTH_ISSUER),
        }
        kwargs = {
            "algorithms": [alg],
            "options": options,
        }
        if settings.AUTH_ISSUER:
            kwargs["issuer"] = settings.AUTH_ISSUER
        if settings.AUTH_AUDIENCE:
            kwargs["audience"] = settings.AUTH_AUDIENCE

        payload = jwt.decode(token, signing_key.key, **kwargs)
        if not isinstance(payload, dict):
            raise AuthenticationFailed("Invalid JWT payload.")
        return payload
    except (PyJWKClientError, InvalidTokenError, AuthenticationFailed, ValueError) as exc:
        logger.warning("JWT verification failed: %s", exc)
        if isinstance(exc, AuthenticationFailed):
            raise
        raise AuthenticationFailed("Invalid bearer token.") from exc


def _parse_roles(value) -> list[str]:
    if value is None:
        return []
    if isinstance(value, list):
        return [str(role) for role in value]
    if isinstance(value, str):
        if "," in value:
            return [role.strip() for role in value.split(",") if role.strip()]
        return [value]
    return [str(value)]


def _claim(payload: dict, claim_name: str) -> Optional[str]:
    if not claim_name:
        return None
    value = payload.get(claim_name)
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _dev_principal() -> Principal:
    return Principal(
        user_id=str(settings.DEV_AUTH_USER_ID),
        username=str(settings.DEV_AUTH_USER_ID),
        roles=list(settings.DEV_AUTH_ROLES),
        department=getattr(settings, "DEV_AUTH_DEPARTMENT", None),
        name=getattr(settings, "DEV_AUTH_NAME", None),
        email=getattr(settings, "DEV_AUTH_EMAIL", None),
        permissions=list(getattr(settings, "DEV_AUTH_PERMISSIONS", []) or []),
    )


class OversightAuthentication(BaseAuthentication):
    """
    Bearer JWT verified against the identity provider's JWKS, or a fixed
    principal built from DEV_AUTH_* settings for local development.
    """

    def authenticate(self, request) -> Optional[Tuple[Principal, None]]:
        if settings.DEV_AUTH_ENABLED:
            return _dev_principal(), None

        if not settings.AUTH_ENABLED:
            return None

        auth_header = request.META.get("HTTP_AUTHORIZATION", "")
        if not auth_header.startswith("Bearer "):
            raise AuthenticationFailed("Missing bearer token.")

        token = auth_header.replace("Bearer ", "", 1).strip()
        if not token:
            raise AuthenticationFailed("Missing bearer token.")

        payload = _verify_jwt_with_jwks(token, settings.AUTH_JWKS_URL)

        user_id = _claim(payload, settings.AUTH_USER_ID_CLAIM)
        if user_id is None:
            raise AuthenticationFailed("Token has no user id claim.")

        roles = []
        if settings.AUTH_ROLES_CLAIM:
            roles = _parse_roles(payload.get(settings.AUTH_ROLES_CLAIM))

        principal = Principal(
            user_id=user_id,
            username=_claim(payload, settings.AUTH_USERNAME_CLAIM),
            roles=roles,
            department=_claim(payload, settings.AUTH_DEPARTMENT_CLAIM),
            name=_claim(payload, settings.AUTH_NAME_CLAIM),
            email=_claim(payload, settings.AUTH_EMAIL_CLAIM),
        )
        return principal, None

    def authenticate_header(self, request) -> str:
        return "Bearer"
