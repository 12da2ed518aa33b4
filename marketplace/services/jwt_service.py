"""
JWT token service.

Issues the platform's own bearer tokens (tenant users calling this API) and
the short-lived signed tokens presented to integrations that use the
signed_token auth method.
"""
from datetime import datetime, timedelta, timezone
from jose import JWTError, jwt
from marketplace.config import settings


class JWTService:
    """Service for creating and verifying JWT tokens."""

    def __init__(
        self,
        secret_key: str | None = None,
        integration_secret: str | None = None,
        algorithm: str | None = None,
    ):
        self.secret_key = secret_key or settings.JWT_SECRET_KEY
        self.integration_secret = integration_secret or settings.INTEGRATION_TOKEN_SECRET
        self.algorithm = algorithm or settings.JWT_ALGORITHM

    def create_token(self, user_id: str, tenant_id: str, role: str, email: str) -> str:
        """
        Create a JWT token with user context.

        Args:
            user_id: User's unique ID
            tenant_id: Tenant (restaurant) ID
            role: User role (admin or member)
            email: User's email

        Returns:
            Encoded JWT token string
        """
        expires = datetime.now(timezone.utc) + timedelta(minutes=settings.JWT_EXPIRATION_MINUTES)

        payload = {
            "sub": user_id,
            "tenant_id": tenant_id,
            "role": role,
            "email": email,
            "exp": expires
        }

        return jwt.encode(payload, self.secret_key, algorithm=self.algorithm)

    def verify_token(self, token: str) -> dict | None:
        """
        Verify and decode a JWT token.

        Args:
            token: JWT token string

        Returns:
            Decoded payload dict or None if invalid
        """
        try:
            payload = jwt.decode(
                token,
                self.secret_key,
                algorithms=[self.algorithm]
            )
            return payload
        except JWTError:
            return None

    def create_installation_token(
        self,
        installation_id: str,
        tenant_id: str,
        permissions: list[str],
    ) -> str:
        """
        Mint a short-lived token an integration can use to identify the caller.

        Signed with the platform integration secret, valid for one hour by default.
        """
        now = datetime.now(timezone.utc)
        payload = {
            "installation_id": installation_id,
            "tenant_id": tenant_id,
            "permissions": permissions,
            "iat": now,
            "exp": now + timedelta(minutes=settings.INTEGRATION_TOKEN_EXPIRATION_MINUTES),
        }
        return jwt.encode(payload, self.integration_secret, algorithm=self.algorithm)

    def verify_installation_token(self, token: str) -> dict | None:
        try:
            return jwt.decode(token, self.integration_secret, algorithms=[self.algorithm])
        except JWTError:
            return None
