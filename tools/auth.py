"""Bearer-token auth for the admin API.

Tokens are JWTs signed either with a shared HS256 secret or by an identity
provider publishing a JWKS. The caller's role comes from the sales-team
roster (matched by the ``email`` claim), then ADMIN_EMAILS, else viewer.
"""
import asyncio
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import jwt
from fastapi import Depends, Header
from loguru import logger

from db import get_db
from db.repositories import sales_team as sales_team_repo
from errors import AuthenticationError, AuthorizationError, TransientInfrastructureError

ASYMMETRIC_ALGORITHMS = ("RS256", "ES256")


@dataclass
class AdminUser:
    email: str
    subject: Optional[str]
    role: str
    name: Optional[str] = None
    chat_user_id: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    @property
    def actor_id(self) -> str:
        return self.chat_user_id or self.email


class TokenVerifier:
    def __init__(self):
        self.secret: Optional[str] = None
        self.jwks_url: Optional[str] = None
        self.audience: Optional[str] = None
        self.admin_emails: List[str] = []
        self._jwks_client: Optional[jwt.PyJWKClient] = None

    def configure(self, settings) -> None:
        self.secret = settings.admin_jwt_secret
        self.jwks_url = settings.admin_jwks_url
        self.audience = settings.admin_jwt_audience
        self.admin_emails = list(settings.admin_emails)
        self._jwks_client = None

    def _jwks(self) -> jwt.PyJWKClient:
        if self._jwks_client is None:
            self._jwks_client = jwt.PyJWKClient(self.jwks_url, cache_keys=True, timeout=10)
        return self._jwks_client

    async def decode(self, token: str) -> Dict[str, Any]:
        try:
            algorithm = jwt.get_unverified_header(token).get("alg")
        except jwt.DecodeError as e:
            raise AuthenticationError(f"Invalid token header: {e}")

        if algorithm == "HS256" and self.secret:
            key = self.secret
        elif algorithm in ASYMMETRIC_ALGORITHMS and self.jwks_url:
            try:
                # PyJWKClient fetches keys with blocking urllib
                signing_key = await asyncio.to_thread(self._jwks().get_signing_key_from_jwt, token)
            except jwt.PyJWKClientConnectionError as e:
                raise TransientInfrastructureError("identity_provider", str(e)) from e
            except jwt.PyJWKClientError as e:
                raise AuthenticationError(f"Unknown signing key: {e}")
            key = signing_key.key
        else:
            raise AuthenticationError(f"Unsupported token algorithm: {algorithm}")

        try:
            return jwt.decode(
                token,
                key,
                algorithms=[algorithm],
                audience=self.audience,
                options={"verify_aud": bool(self.audience)},
            )
        except jwt.InvalidTokenError as e:
            logger.info(f"Rejected admin token: {e}")
            raise AuthenticationError("Invalid or expired token")


token_verifier = TokenVerifier()


async def get_current_user(authorization: Optional[str] = Header(None)) -> AdminUser:
    """FastAPI dependency: verify the bearer token and resolve the caller's role."""
    if not authorization or not authorization.startswith("Bearer "):
        raise AuthenticationError("Missing or malformed Authorization header")
    token = authorization[len("Bearer "):].strip()
    if not token or token.lower() in ("null", "undefined", "none"):
        raise AuthenticationError("Missing token")

    payload = await token_verifier.decode(token)
    email = payload.get("email")
    if not email:
        raise AuthenticationError("Token missing email claim")

    async with get_db() as db:
        role, member = await sales_team_repo.resolve_role(db, email, token_verifier.admin_emails)

    return AdminUser(
        email=email.lower(),
        subject=payload.get("sub"),
        role=role,
        name=(member.name if member else None) or payload.get("name"),
        chat_user_id=member.chat_user_id if member else None,
    )


async def require_admin(user: AdminUser = Depends(get_current_user)) -> AdminUser:
    if not user.is_admin:
        raise AuthorizationError("Admin role required")
    return user
