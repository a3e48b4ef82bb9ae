"""
Gateway token validation - decide whether an inbound webhook is authentic.

Authenticator is pluggable. JwtAuthenticator verifies the signature with the
configured gateway secret. Structure-only acceptance (no signature check) is
available solely through an explicit opt-in outside production, and logs a
warning on every use.
"""
import logging
from abc import ABC, abstractmethod
from typing import Optional

import jwt

logger = logging.getLogger(__name__)

REQUIRED_CLAIMS = ("sub", "iat")


class Authenticator(ABC):
    """Answers 'is this bearer token valid?'"""

    @abstractmethod
    def authenticate(self, token: str) -> Optional[dict]:
        """Return the token claims if valid, None otherwise."""
        ...


class JwtAuthenticator(Authenticator):
    """Verifies gateway JWTs signed with a shared secret."""

    def __init__(self, secret: str, algorithm: str = "HS256"):
        self.secret = secret
        self.algorithm = algorithm

    def authenticate(self, token: str) -> Optional[dict]:
        if not token or not self.secret:
            return None
        try:
            claims = jwt.decode(
                token,
                self.secret,
                algorithms=[self.algorithm],
                options={"require": list(REQUIRED_CLAIMS)},
            )
        except jwt.ExpiredSignatureError:
            logger.warning("Gateway JWT expired")
            return None
        except jwt.InvalidTokenError as e:
            logger.warning("Gateway JWT rejected: %s", str(e))
            return None
        return claims


class UnverifiedJwtAuthenticator(Authenticator):
    """
    Checks JWT structure, required claims and expiry WITHOUT verifying the
    signature. Development only.
    """

    def authenticate(self, token: str) -> Optional[dict]:
        if not token:
            return None
        logger.warning("Accepting gateway JWT without signature verification")
        try:
            claims = jwt.decode(
                token,
                options={"verify_signature": False, "verify_exp": True, "require": list(REQUIRED_CLAIMS)},
            )
        except jwt.InvalidTokenError as e:
            logger.warning("Gateway JWT rejected: %s", str(e))
            return None
        return claims


class RejectAllAuthenticator(Authenticator):
    """Used when no gateway secret is configured and unverified tokens are not allowed."""

    def authenticate(self, token: str) -> Optional[dict]:
        logger.error("No gateway JWT secret configured - rejecting webhook")
        return None


def build_authenticator(settings) -> Authenticator:
    """Pick the authenticator for the current configuration."""
    if settings.gateway_jwt_secret:
        return JwtAuthenticator(settings.gateway_jwt_secret, settings.gateway_jwt_algorithm)

    if settings.allow_unverified_tokens and not settings.is_production:
        logger.warning(
            "GATEWAY_JWT_SECRET not set and ALLOW_UNVERIFIED_TOKENS=true - "
            "gateway tokens will NOT be signature-checked. Never use this in production."
        )
        return UnverifiedJwtAuthenticator()

    if settings.allow_unverified_tokens:
        logger.error("ALLOW_UNVERIFIED_TOKENS is ignored in production")
    return RejectAllAuthenticator()


def extract_bearer_token(headers, body: Optional[dict] = None) -> Optional[str]:
    """Token from Authorization: Bearer, X-Auth-Token, or a 'token' body field."""
    auth_header = headers.get("authorization") or ""
    if auth_header.startswith("Bearer "):
        return auth_header[len("Bearer "):].strip() or None

    x_auth = headers.get("x-auth-token")
    if x_auth:
        return x_auth

    if body and isinstance(body.get("token"), str) and body["token"]:
        return body["token"]
    return None
