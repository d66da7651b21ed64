"""
MobilePay Recurring API v3 client.

Thin async wrapper over the agreement and charge endpoints. Authentication is
delegated to the shared ``AccessTokenCache``. Reads and idempotent writes are
retried on transport errors; agreement creation is not, since MobilePay has
no idempotency key for it.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx
import structlog
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
)

from mobilepay_bridge.clients.access_token import AccessTokenCache
from mobilepay_bridge.config import settings
from mobilepay_bridge.exceptions import ProviderAPIError, ProviderConfigError
from mobilepay_bridge.schemas.mobilepay import (
    CreateAgreementResponse,
    CreateChargeResponse,
    GetAgreementResponse,
    GetChargeResponse,
)

logger = structlog.get_logger(__name__)

AGREEMENTS_PATH = "/recurring/v3/agreements"


@dataclass
class MobilePayConfig:
    """Credentials and endpoint for the MobilePay API"""

    base_url: str = "https://apitest.vipps.no"
    client_id: str = ""
    client_secret: str = ""
    subscription_key: str = ""
    merchant_serial_number: str = ""
    timeout: float = 30.0

    @classmethod
    def from_settings(cls) -> "MobilePayConfig":
        return cls(
            base_url=settings.MOBILEPAY_BASE_URL.rstrip("/"),
            client_id=settings.MOBILEPAY_CLIENT_ID,
            client_secret=settings.MOBILEPAY_CLIENT_SECRET,
            subscription_key=settings.MOBILEPAY_SUBSCRIPTION_KEY,
            merchant_serial_number=settings.MOBILEPAY_MERCHANT_SERIAL_NUMBER,
            timeout=settings.MOBILEPAY_TIMEOUT_SECONDS,
        )

    def validate(self) -> None:
        missing = [
            name
            for name in ("client_id", "client_secret", "subscription_key", "merchant_serial_number")
            if not getattr(self, name)
        ]
        if missing:
            raise ProviderConfigError(
                "MobilePay credentials are not configured",
                details={"missing": missing},
            )


class MobilePayClient:
    """
    Async client for the MobilePay Recurring API.

    Example:
        ```python
        client = MobilePayClient(MobilePayConfig.from_settings())
        created = await client.create_agreement({...})
        status = await client.get_agreement(created.agreement_id)
        ```
    """

    def __init__(
        self,
        config: Optional[MobilePayConfig] = None,
        token_cache: Optional[AccessTokenCache] = None,
    ):
        self.config = config or MobilePayConfig.from_settings()
        self.token_cache = token_cache or AccessTokenCache(self.config)
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self):
        self._get_client()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client"""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.config.base_url,
                timeout=self.config.timeout,
            )
        return self._client

    def _get_headers(self, token: str, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        headers = {
            "Authorization": f"Bearer {token}",
            "Ocp-Apim-Subscription-Key": self.config.subscription_key,
            "Merchant-Serial-Number": self.config.merchant_serial_number,
            "Content-Type": "application/json",
        }
        if extra:
            headers.update(extra)
        return headers

    async def _send(
        self,
        method: str,
        path: str,
        json: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> httpx.Response:
        token = await self.token_cache.get_token()
        client = self._get_client()
        return await client.request(method, path, json=json, headers=self._get_headers(token, headers))

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception_type(httpx.RequestError),
        reraise=True,
    )
    async def _send_with_retry(
        self,
        method: str,
        path: str,
        json: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> httpx.Response:
        return await self._send(method, path, json=json, headers=headers)

    async def _call(
        self,
        method: str,
        path: str,
        json: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        retryable: bool = True,
    ) -> Any:
        """
        Perform an authenticated request and decode the JSON body.

        Returns:
            Decoded body, or None for empty responses

        Raises:
            ProviderAPIError: On non-2xx responses or transport failure
        """
        send = self._send_with_retry if retryable else self._send
        try:
            response = await send(method, path, json=json, headers=headers)
        except httpx.RequestError as e:
            logger.error("mobilepay_unreachable", method=method, path=path, error=str(e))
            raise ProviderAPIError(f"MobilePay unreachable: {e}", original_error=e) from e

        if response.status_code >= 400:
            try:
                body = response.json()
            except ValueError:
                body = response.text
            logger.error(
                "mobilepay_request_failed",
                method=method,
                path=path,
                status_code=response.status_code,
                body=body,
            )
            raise ProviderAPIError(
                f"MobilePay {method} {path} failed with status {response.status_code}",
                status_code=response.status_code,
                body=body,
            )

        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    # Agreements

    async def create_agreement(self, payload: Dict[str, Any]) -> CreateAgreementResponse:
        """Create a draft agreement. The payer confirms it via the returned URL."""
        data = await self._call("POST", AGREEMENTS_PATH, json=payload, retryable=False)
        created = CreateAgreementResponse.model_validate(data)
        logger.info("mobilepay_agreement_created", agreement_id=created.agreement_id)
        return created

    async def get_agreement(self, agreement_id: str) -> GetAgreementResponse:
        data = await self._call("GET", f"{AGREEMENTS_PATH}/{agreement_id}")
        return GetAgreementResponse.model_validate(data)

    async def stop_agreement(self, agreement_id: str) -> None:
        await self._call("PATCH", f"{AGREEMENTS_PATH}/{agreement_id}", json={"status": "STOPPED"})
        logger.info("mobilepay_agreement_stopped", agreement_id=agreement_id)

    # Charges

    async def create_charge(
        self,
        agreement_id: str,
        payload: Dict[str, Any],
        idempotency_key: str,
    ) -> CreateChargeResponse:
        """Create a charge. Safe to retry thanks to the idempotency key."""
        data = await self._call(
            "POST",
            f"{AGREEMENTS_PATH}/{agreement_id}/charges",
            json=payload,
            headers={"Idempotency-Key": idempotency_key},
        )
        created = CreateChargeResponse.model_validate(data)
        logger.info(
            "mobilepay_charge_created",
            agreement_id=agreement_id,
            charge_id=created.charge_id,
            idempotency_key=idempotency_key,
        )
        return created

    async def get_charge(self, agreement_id: str, charge_id: str) -> GetChargeResponse:
        data = await self._call("GET", f"{AGREEMENTS_PATH}/{agreement_id}/charges/{charge_id}")
        return GetChargeResponse.model_validate(data)

    async def cancel_charge(self, agreement_id: str, charge_id: str) -> None:
        await self._call("DELETE", f"{AGREEMENTS_PATH}/{agreement_id}/charges/{charge_id}")
        logger.info("mobilepay_charge_cancelled", agreement_id=agreement_id, charge_id=charge_id)


_token_cache: Optional[AccessTokenCache] = None
_client: Optional[MobilePayClient] = None


def get_token_cache() -> AccessTokenCache:
    """Process-wide token cache shared by every MobilePayClient"""
    global _token_cache
    if _token_cache is None:
        _token_cache = AccessTokenCache(MobilePayConfig.from_settings())
    return _token_cache


def get_mobilepay_client() -> MobilePayClient:
    """Process-wide client for the API server's event loop"""
    global _client
    if _client is None:
        _client = MobilePayClient(token_cache=get_token_cache())
    return _client
