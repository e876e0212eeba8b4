import logging
from datetime import datetime, timezone

import httpx
from jose import JWTError, jwt

from .errors import ErrorKind, RemoteError, error_from_response, error_from_transport
from .models import Identity
from .settings import Settings, settings as default_settings

logger = logging.getLogger(__name__)


def token_expired(token: str, leeway_seconds: int = 0) -> bool:
    """
    Check the `exp` claim of a JWT without verifying its signature.

    The signing key belongs to the backend; this only tells whether it is
    worth sending the token at all. Malformed tokens count as expired.
    """
    try:
        claims = jwt.get_unverified_claims(token)
    except JWTError:
        return True
    exp = claims.get("exp")
    if exp is None:
        return False
    now = datetime.now(timezone.utc).timestamp()
    return now + leeway_seconds >= float(exp)


class AuthProvider:
    """
    Holds the externally issued credential and talks to the backend's auth
    endpoints. The rest of the service only needs two calls from it:
    `get_current_identity()` and `refresh_credential()`.
    """

    def __init__(
        self,
        config: Settings | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self.config = config or default_settings
        self.access_token: str | None = self.config.access_token or None
        self.refresh_token: str | None = self.config.refresh_token or None
        self.signed_out = False
        self._client = client or httpx.AsyncClient(timeout=self.config.http_timeout_seconds)

    def headers(self) -> dict[str, str]:
        headers = {"apikey": self.config.backend_anon_key}
        token = self.access_token
        if token is None and not self.signed_out:
            # Public reads before anyone has signed in
            token = self.config.backend_anon_key
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    async def get_current_identity(self) -> Identity:
        """Lightweight "who am I" check. Raises RemoteError(auth_expired) when the credential is no longer valid."""
        if not self.access_token:
            raise RemoteError(ErrorKind.auth_expired, "Not authenticated")
        if token_expired(self.access_token):
            raise RemoteError(ErrorKind.auth_expired, "JWT expired")

        try:
            response = await self._client.get(f"{self.config.auth_url}/user", headers=self.headers())
        except httpx.TransportError as e:
            raise error_from_transport(e) from e
        if response.status_code != 200:
            raise error_from_response(response)

        data = response.json()
        return Identity(id=data["id"], email=data.get("email"), role=data.get("role"))

    async def refresh_credential(self) -> bool:
        """Exchange the refresh token for a new access token. Returns False on any failure."""
        if not self.refresh_token:
            logger.warning("Session refresh requested without a refresh token")
            return False

        try:
            response = await self._client.post(
                f"{self.config.auth_url}/token",
                params={"grant_type": "refresh_token"},
                json={"refresh_token": self.refresh_token},
                headers={"apikey": self.config.backend_anon_key},
            )
        except httpx.TransportError as e:
            logger.error(f"Session refresh failed: {e}", exc_info=True)
            return False

        if response.status_code != 200:
            logger.warning(f"Session refresh rejected: {response.status_code} - {response.text}")
            return False

        data = response.json()
        self.access_token = data.get("access_token")
        self.refresh_token = data.get("refresh_token", self.refresh_token)
        logger.info("Session refreshed successfully")
        return bool(self.access_token)

    def sign_out(self) -> None:
        self.access_token = None
        self.refresh_token = None
        self.signed_out = True

    async def aclose(self) -> None:
        await self._client.aclose()
