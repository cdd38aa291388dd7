"""
Service credentials for internal API calls.

The HTTP entitlement data source authenticates to the internal API with a
short-lived JWT minted from a ServiceCredential. There is no module-level
token: a credential is constructed explicitly and passed to whoever needs it.

Security Requirements:
- Tokens are scoped (e.g. "entitlements:read") and short-lived
- Tokens are re-minted before expiry, never cached past it
- The signing secret is never logged
"""

import logging
import os
from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import List, Optional

import jwt
from pydantic import BaseModel

logger = logging.getLogger(__name__)

ENTITLEMENTS_READ_SCOPE = "entitlements:read"


class ServiceTokenConfig(BaseModel):
    """Configuration for service token minting."""
    secret: str
    algorithm: str = "HS256"
    lifetime_seconds: int = 300
    refresh_threshold_seconds: int = 30
    issuer: str = "retailvis-entitlements"
    audience: str = "retailvis-internal-api"


class ServiceTokenClaims(BaseModel):
    """Decoded service token claims."""
    sub: str
    scopes: List[str]
    iss: str
    aud: str
    iat: int
    exp: int


class ServiceTokenError(Exception):
    """Base exception for service token errors."""
    pass


class ServiceTokenExpiredError(ServiceTokenError):
    pass


class ServiceTokenInvalidError(ServiceTokenError):
    pass


class ServiceCredential:
    """
    Mints and verifies scoped service tokens for one calling service.

    Usage:
        credential = ServiceCredential.from_env("entitlement-engine")
        headers = {"Authorization": credential.authorization_header()}
    """

    def __init__(
        self,
        service_name: str,
        config: ServiceTokenConfig,
        scopes: Optional[List[str]] = None,
    ):
        if not service_name:
            raise ValueError("service_name is required")
        self.service_name = service_name
        self.config = config
        self.scopes = list(scopes or [ENTITLEMENTS_READ_SCOPE])
        self._token: Optional[str] = None
        self._expires_at: Optional[datetime] = None
        self._lock = Lock()

    @classmethod
    def from_env(
        cls, service_name: str, scopes: Optional[List[str]] = None
    ) -> "ServiceCredential":
        """
        Build a credential from SERVICE_TOKEN_SECRET / SERVICE_TOKEN_LIFETIME_SECONDS.

        Raises:
            ValueError: SERVICE_TOKEN_SECRET is not set
        """
        secret = os.getenv("SERVICE_TOKEN_SECRET")
        if not secret:
            raise ValueError("SERVICE_TOKEN_SECRET environment variable is required")
        config = ServiceTokenConfig(
            secret=secret,
            lifetime_seconds=int(os.getenv("SERVICE_TOKEN_LIFETIME_SECONDS", "300")),
        )
        return cls(service_name, config, scopes)

    def mint(self, now: Optional[datetime] = None) -> str:
        """Mint a fresh token."""
        now = now or datetime.now(timezone.utc)
        exp = now + timedelta(seconds=self.config.lifetime_seconds)
        payload = {
            "sub": self.service_name,
            "scopes": self.scopes,
            "iss": self.config.issuer,
            "aud": self.config.audience,
            "iat": int(now.timestamp()),
            "exp": int(exp.timestamp()),
        }
        token = jwt.encode(payload, self.config.secret, algorithm=self.config.algorithm)

        logger.debug(
            "Minted service token",
            extra={
                "service": self.service_name,
                "scopes": self.scopes,
                "expires_at": exp.isoformat(),
            },
        )
        self._token = token
        self._expires_at = exp
        return token

    def token(self, now: Optional[datetime] = None) -> str:
        """Current token, re-minted when within the refresh threshold of expiry."""
        now = now or datetime.now(timezone.utc)
        with self._lock:
            threshold = timedelta(seconds=self.config.refresh_threshold_seconds)
            if self._token is None or self._expires_at - now <= threshold:
                return self.mint(now)
            return self._token

    def authorization_header(self) -> str:
        return f"Bearer {self.token()}"

    def verify(self, token: str, required_scope: Optional[str] = None) -> ServiceTokenClaims:
        """
        Verify a token minted with the same secret.

        Raises:
            ServiceTokenExpiredError: token has expired
            ServiceTokenInvalidError: bad signature, issuer, audience or scope
        """
        try:
            payload = jwt.decode(
                token,
                self.config.secret,
                algorithms=[self.config.algorithm],
                issuer=self.config.issuer,
                audience=self.config.audience,
            )
        except jwt.ExpiredSignatureError:
            raise ServiceTokenExpiredError("Service token has expired")
        except jwt.InvalidTokenError as e:
            raise ServiceTokenInvalidError(f"Invalid service token: {e}")

        claims = ServiceTokenClaims(**payload)
        if required_scope and required_scope not in claims.scopes:
            raise ServiceTokenInvalidError(f"Service token lacks scope '{required_scope}'")
        return claims
