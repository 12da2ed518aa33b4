"""
Auth strategies for outbound calls.

One strategy per auth method an integration can declare. The gateway
picks the strategy at call time from the integration record.
"""
import base64
from abc import ABC, abstractmethod

from marketplace.errors import MissingCredentials
from marketplace.models.installation import Installation
from marketplace.models.integration import AuthMethod
from marketplace.services.jwt_service import JWTService


class AuthStrategy(ABC):
    """Builds the auth headers for a call made on behalf of an installation."""

    method: AuthMethod

    @abstractmethod
    def headers(self, installation: Installation) -> dict[str, str]:
        ...


class ApiKeyAuth(AuthStrategy):
    method = AuthMethod.API_KEY

    def headers(self, installation: Installation) -> dict[str, str]:
        if not installation.config.api_key:
            raise MissingCredentials(installation.installation_id, "apiKey")
        return {"X-API-Key": installation.config.api_key}


class OAuth2Auth(AuthStrategy):
    """Bearer access token. Refreshing it is the token owner's job, not ours."""

    method = AuthMethod.OAUTH2

    def headers(self, installation: Installation) -> dict[str, str]:
        if not installation.config.access_token:
            raise MissingCredentials(installation.installation_id, "accessToken")
        return {"Authorization": f"Bearer {installation.config.access_token}"}


class SignedTokenAuth(AuthStrategy):
    method = AuthMethod.SIGNED_TOKEN

    def __init__(self, jwt_service: JWTService | None = None):
        self.jwt_service = jwt_service or JWTService()

    def headers(self, installation: Installation) -> dict[str, str]:
        token = self.jwt_service.create_installation_token(
            installation_id=installation.installation_id,
            tenant_id=installation.tenant_id,
            permissions=installation.permissions.granted,
        )
        return {"Authorization": f"Bearer {token}"}


class BasicAuth(AuthStrategy):
    """Basic auth from the api key and the api_secret setting."""

    method = AuthMethod.BASIC

    def headers(self, installation: Installation) -> dict[str, str]:
        key = installation.config.api_key
        secret = installation.config.settings.get("api_secret")
        if not key:
            raise MissingCredentials(installation.installation_id, "apiKey")
        if not secret:
            raise MissingCredentials(installation.installation_id, "settings.api_secret")
        encoded = base64.b64encode(f"{key}:{secret}".encode()).decode()
        return {"Authorization": f"Basic {encoded}"}


def build_strategies(jwt_service: JWTService | None = None) -> dict[AuthMethod, AuthStrategy]:
    return {
        AuthMethod.API_KEY: ApiKeyAuth(),
        AuthMethod.OAUTH2: OAuth2Auth(),
        AuthMethod.SIGNED_TOKEN: SignedTokenAuth(jwt_service),
        AuthMethod.BASIC: BasicAuth(),
    }
