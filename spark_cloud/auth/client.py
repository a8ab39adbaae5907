"""
Auth client for account onboarding against the Spark cloud.
"""

from typing import Optional

import httpx

from ..shared.config import SparkCloudConfig
from ..shared.errors import AuthenticationError, PreconditionError, ServiceError
from ..shared.http import send_request
from ..shared.logging import get_logger
from .session import Session, TokenStore


def _json_object(body, context: str) -> dict:
    if not isinstance(body, dict):
        raise ServiceError(
            f"{context} response was not a JSON object",
            details={"body_type": type(body).__name__}
        )
    return body


class AuthClient:
    """Login, signup, logout and password reset.

    Successful login/signup populates the ``TokenStore``; nothing here is
    persisted to disk.
    """

    def __init__(self, config: SparkCloudConfig, http_client: httpx.AsyncClient, token_store: TokenStore):
        self.config = config
        self.http_client = http_client
        self.token_store = token_store
        self.logger = get_logger("spark_cloud.auth.client")

    @property
    def _client_credentials(self) -> httpx.BasicAuth:
        return httpx.BasicAuth(self.config.oauth_client_id, self.config.oauth_client_secret)

    async def login(self, user: str, password: str) -> Session:
        """Log in with existing account credentials."""
        if not user or not password:
            raise PreconditionError("Username and password are required")

        body = await send_request(
            self.http_client,
            "POST",
            self.config.url("/oauth/token"),
            context="login",
            logger=self.logger,
            auth=self._client_credentials,
            data={"grant_type": "password", "username": user, "password": password},
        )
        body = _json_object(body, "Login")

        access_token = body.get("access_token")
        if not access_token:
            raise AuthenticationError("Login response carried no access token")

        session = Session(username=user, access_token=access_token)
        self.token_store.set_session(session)
        self.logger.info("Logged in", username=user)
        return session

    async def signup(self, user: str, password: str) -> Session:
        """Create a new account, then log in with it."""
        if not user or not password:
            raise PreconditionError("Username and password are required")

        body = await send_request(
            self.http_client,
            "POST",
            self.config.url("/v1/users"),
            context="signup",
            logger=self.logger,
            data={"username": user, "password": password},
        )
        body = _json_object(body, "Signup")
        if body.get("ok") is False:
            raise ServiceError("Signup rejected", details={"errors": body.get("errors")})

        self.logger.info("Account created", username=user)
        return await self.login(user, password)

    async def signup_organization_user(
        self,
        email: str,
        password: str,
        org_name: str,
        invite_code: Optional[str] = None
    ) -> Session:
        """Create a customer account under an organization and store its token."""
        if not email or not password or not org_name:
            raise PreconditionError("Email, password and organization name are required")

        data = {"email": email, "password": password}
        if invite_code:
            data["activation_code"] = invite_code

        body = await send_request(
            self.http_client,
            "POST",
            self.config.url(f"/v1/orgs/{org_name}/customers"),
            context="organization signup",
            logger=self.logger,
            auth=self._client_credentials,
            data=data,
        )
        body = _json_object(body, "Organization signup")

        access_token = body.get("access_token")
        if not access_token:
            raise AuthenticationError("Organization signup response carried no access token")

        session = Session(username=email, access_token=access_token)
        self.token_store.set_session(session)
        self.logger.info("Organization customer created", username=email, org=org_name)
        return session

    def logout(self):
        """Remove session data."""
        self.token_store.clear_session()

    async def request_password_reset(self, org_name: str, email: str):
        """Ask the organization to email a password reset link to ``email``."""
        if not org_name or not email:
            raise PreconditionError("Organization name and email are required")

        await send_request(
            self.http_client,
            "POST",
            self.config.url(f"/v1/orgs/{org_name}/customers/reset_password"),
            context="password reset",
            logger=self.logger,
            data={"email": email},
        )
        self.logger.info("Password reset requested", org=org_name)
