"""Google OAuth access tokens from a long-lived refresh token."""

import logging
import os

import httpx

from note_processor.utils.errors import AuthError

logger = logging.getLogger(__name__)

TOKEN_URL = "https://oauth2.googleapis.com/token"


class OAuthTokenProvider:
    """Exchanges the refresh token for an access token on every call.

    Tokens are not cached; each upload attempt gets a fresh one.

    Reads configuration from environment variables:
        GOOGLE_CLIENT_ID, GOOGLE_CLIENT_SECRET, GOOGLE_REFRESH_TOKEN
    """

    def __init__(
        self,
        client_id: str | None = None,
        client_secret: str | None = None,
        refresh_token: str | None = None,
        token_url: str = TOKEN_URL,
    ) -> None:
        self.client_id = client_id or os.environ.get("GOOGLE_CLIENT_ID", "")
        self.client_secret = client_secret or os.environ.get("GOOGLE_CLIENT_SECRET", "")
        self.refresh_token = refresh_token or os.environ.get("GOOGLE_REFRESH_TOKEN", "")
        self.token_url = token_url

    async def access_token(self, client: httpx.AsyncClient) -> str:
        """Fetch a new access token.

        Raises:
            AuthError: If credentials are missing or the exchange fails.
        """
        if not (self.client_id and self.client_secret and self.refresh_token):
            raise AuthError("Google OAuth credentials are not configured")

        form = {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "refresh_token": self.refresh_token,
            "grant_type": "refresh_token",
        }
        try:
            response = await client.post(self.token_url, data=form)
        except httpx.RequestError as exc:
            raise AuthError(f"Token exchange failed: {exc}") from exc

        if response.status_code != 200:
            logger.error(
                "Token exchange returned %d: %s", response.status_code, response.text
            )
            raise AuthError(
                f"Token exchange failed with status {response.status_code}",
                status_code=response.status_code,
            )
        try:
            token = response.json().get("access_token")
        except ValueError as exc:
            raise AuthError("Token response is not JSON") from exc
        if not token:
            raise AuthError("Token response has no access_token")
        return token
