"""
MobilePay access token cache.

Tokens are fetched lazily with the client credentials and reused until they
are within ``TOKEN_REFRESH_BUFFER_SECONDS`` of expiry. There is no background
refresh; the next caller after the buffer is crossed pays for the fetch.
Two callers racing on an expired token both fetch; the last write wins.
"""

import time
from typing import Callable, Optional

import httpx
import structlog

from mobilepay_bridge.exceptions import TokenFetchFailed
from mobilepay_bridge.schemas.mobilepay import AccessTokenResponse

logger = structlog.get_logger(__name__)

TOKEN_REFRESH_BUFFER_SECONDS = 300


class AccessTokenCache:
    """Single owner of the MobilePay bearer token and its expiry."""

    def __init__(self, config, clock: Callable[[], float] = time.time):
        """
        Args:
            config: MobilePayConfig with credentials and base URL
            clock: Returns the current time in seconds (overridable in tests)
        """
        self.config = config
        self._clock = clock
        self._access_token: Optional[str] = None
        self._expires_at: Optional[float] = None

    async def get_token(self) -> str:
        """Return a valid access token, fetching a new one if needed.

        Raises:
            TokenFetchFailed: If a new token could not be obtained
        """
        if self._access_token and self.is_token_valid():
            logger.debug("mobilepay_token_cache_hit")
            return self._access_token

        logger.info("fetching_mobilepay_access_token")
        await self.refresh_token()
        return self._access_token

    async def refresh_token(self) -> None:
        """Force-fetch a new token. Clears the cache on failure."""
        self.config.validate()
        headers = {
            "client_id": self.config.client_id,
            "client_secret": self.config.client_secret,
            "Ocp-Apim-Subscription-Key": self.config.subscription_key,
            "Merchant-Serial-Number": self.config.merchant_serial_number,
            "Content-Type": "application/json",
        }

        try:
            async with httpx.AsyncClient(timeout=self.config.timeout) as client:
                response = await client.post(
                    f"{self.config.base_url}/accesstoken/get",
                    json={},
                    headers=headers,
                )
            if response.status_code >= 400:
                raise TokenFetchFailed(
                    "MobilePay rejected the token request",
                    details={"status_code": response.status_code, "body": response.text},
                )
            token = AccessTokenResponse.model_validate(response.json())
        except TokenFetchFailed as e:
            self.clear()
            logger.error("mobilepay_token_fetch_failed", error=e.message, details=e.details)
            raise
        except Exception as e:
            self.clear()
            logger.error("mobilepay_token_fetch_failed", error=str(e))
            raise TokenFetchFailed("Failed to obtain MobilePay access token", original_error=e) from e

        self._access_token = token.access_token
        self._expires_at = self._clock() + token.expires_in
        logger.info("mobilepay_access_token_obtained", expires_in=token.expires_in)

    def is_token_valid(self) -> bool:
        """True if the cached token outlives the refresh buffer."""
        if self._expires_at is None:
            return False
        return self._expires_at - self._clock() > TOKEN_REFRESH_BUFFER_SECONDS

    def clear(self) -> None:
        self._access_token = None
        self._expires_at = None
