"""
M-Pesa (Safaricom Daraja) STK push client.

A pure protocol adapter: it knows how to talk to the gateway and nothing
about registrations. The only state it holds is the OAuth token cache,
which is shared by every in-flight registration and therefore owns its
own lock.

Endpoints used:
  GET  /oauth/v1/generate?grant_type=client_credentials   (token)
  POST /mpesa/stkpush/v1/processrequest                  (push)
  POST /mpesa/stkpushquery/v1/query                      (status)
"""

import asyncio
import base64
import time
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Awaitable, Callable, Optional

import httpx

from app.core.config import Settings, get_settings
from app.core.logging import get_logger
from app.core.metrics import gateway_latency, record_gateway_request, token_refreshes
from app.core.phone import mask_phone_number
from app.schemas.payment import EAT, SettlementResult

logger = get_logger(__name__)

ACCOUNT_REFERENCE_MAX_LENGTH = 12
TRANSACTION_DESC_MAX_LENGTH = 13
DEFAULT_TOKEN_TTL_SECONDS = 3599

# Daraja error codes
QUERY_STILL_PROCESSING = "500.001.1001"
INVALID_ACCESS_TOKEN = "404.001.03"


class GatewayError(Exception):
    reason = "gateway_error"

    def __init__(self, message: str, status_code: Optional[int] = None, payload: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.payload = payload or {}


class GatewayUnavailable(GatewayError):
    """Network failure, timeout, auth failure or provider 5xx."""

    reason = "gateway_unavailable"


class GatewayRejected(GatewayError):
    """The provider understood the request and refused it."""

    reason = "gateway_rejected"


@dataclass(frozen=True)
class PushResult:
    checkout_request_id: str
    merchant_request_id: Optional[str]
    response_code: str
    response_description: Optional[str]
    customer_message: Optional[str]


@dataclass(frozen=True)
class ProviderStatus:
    checkout_request_id: str
    result_code: Optional[int]
    result_desc: Optional[str]

    @property
    def is_final(self) -> bool:
        return self.result_code is not None

    def to_settlement(self) -> SettlementResult:
        return SettlementResult(
            checkout_request_id=self.checkout_request_id,
            result_code=self.result_code,
            result_desc=self.result_desc,
        )


class AccessTokenCache:
    """
    Bearer token cache with single-flight refresh.

    The token is kept until `safety_margin` seconds before the provider's
    stated expiry. Callers that arrive while a refresh is running wait on
    the lock and then reuse the token it produced.
    """

    def __init__(
        self,
        fetch: Callable[[], Awaitable[tuple[str, int]]],
        safety_margin: float = 300,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._fetch = fetch
        self._safety_margin = safety_margin
        self._clock = clock
        self._lock = asyncio.Lock()
        self._token: Optional[str] = None
        self._expires_at: float = 0.0

    def _current(self) -> Optional[str]:
        if self._token and self._clock() < self._expires_at:
            return self._token
        return None

    async def get_valid_token(self) -> str:
        token = self._current()
        if token:
            return token

        async with self._lock:
            token = self._current()
            if token:
                return token

            token, expires_in = await self._fetch()
            self._token = token
            self._expires_at = self._clock() + max(expires_in - self._safety_margin, 0)
            return token

    def invalidate(self) -> None:
        self._token = None
        self._expires_at = 0.0


def round_amount(amount) -> int:
    """Daraja only accepts whole shillings."""
    return int(Decimal(str(amount)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def daraja_timestamp(now: Optional[datetime] = None) -> str:
    return (now or datetime.now(EAT)).strftime("%Y%m%d%H%M%S")


class MpesaClient:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings or get_settings()
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self.token_cache = AccessTokenCache(
            self._fetch_token,
            safety_margin=self.settings.MPESA_TOKEN_SAFETY_MARGIN_SECONDS,
        )

    @property
    def is_configured(self) -> bool:
        s = self.settings
        return all((s.MPESA_CONSUMER_KEY, s.MPESA_CONSUMER_SECRET, s.MPESA_PASSKEY, s.MPESA_SHORTCODE))

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.settings.mpesa_base_url,
                timeout=self.settings.MPESA_TIMEOUT_SECONDS,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _require_credentials(self) -> None:
        if not self.is_configured:
            raise GatewayUnavailable("M-Pesa credentials not configured")

    def _password(self, timestamp: str) -> str:
        raw = f"{self.settings.MPESA_SHORTCODE}{self.settings.MPESA_PASSKEY}{timestamp}"
        return base64.b64encode(raw.encode()).decode()

    async def _fetch_token(self) -> tuple[str, int]:
        start = time.perf_counter()
        try:
            response = await self._http().get(
                "/oauth/v1/generate",
                params={"grant_type": "client_credentials"},
                auth=(self.settings.MPESA_CONSUMER_KEY, self.settings.MPESA_CONSUMER_SECRET),
            )
        except httpx.HTTPError as e:
            record_gateway_request("token", "unavailable")
            logger.error("mpesa_token_request_failed", error=str(e))
            raise GatewayUnavailable(f"Failed to obtain M-Pesa access token: {e}") from e
        finally:
            gateway_latency.labels(operation="token").observe(time.perf_counter() - start)

        data = _json_body(response)
        if response.status_code != 200 or "access_token" not in data:
            record_gateway_request("token", "unavailable")
            logger.error("mpesa_token_rejected", status_code=response.status_code, body=data)
            raise GatewayUnavailable(
                "Failed to obtain M-Pesa access token",
                status_code=response.status_code,
                payload=data,
            )

        token_refreshes.inc()
        record_gateway_request("token", "ok")
        try:
            expires_in = int(data.get("expires_in", DEFAULT_TOKEN_TTL_SECONDS))
        except (TypeError, ValueError):
            expires_in = DEFAULT_TOKEN_TTL_SECONDS
        logger.info("mpesa_token_refreshed", expires_in=expires_in)
        return data["access_token"], expires_in

    async def _post(self, operation: str, path: str, payload: dict) -> tuple[httpx.Response, dict]:
        token = await self.token_cache.get_valid_token()
        start = time.perf_counter()
        try:
            response = await self._http().post(
                path,
                json=payload,
                headers={"Authorization": f"Bearer {token}"},
            )
        except httpx.TimeoutException as e:
            record_gateway_request(operation, "unavailable")
            logger.error("mpesa_request_timeout", operation=operation)
            raise GatewayUnavailable("M-Pesa request timed out") from e
        except httpx.HTTPError as e:
            record_gateway_request(operation, "unavailable")
            logger.error("mpesa_request_failed", operation=operation, error=str(e))
            raise GatewayUnavailable(f"M-Pesa request failed: {e}") from e
        finally:
            gateway_latency.labels(operation=operation).observe(time.perf_counter() - start)

        data = _json_body(response)
        if response.status_code == 401 or data.get("errorCode") == INVALID_ACCESS_TOKEN:
            self.token_cache.invalidate()
            record_gateway_request(operation, "unavailable")
            raise GatewayUnavailable(
                "M-Pesa rejected the access token",
                status_code=response.status_code,
                payload=data,
            )
        return response, data

    async def initiate_push(self, phone: str, amount, reference: str, description: str) -> PushResult:
        """
        Ask the provider to prompt `phone` for `amount`.

        Raises GatewayUnavailable on network/auth problems and GatewayRejected
        when the provider refuses the request.
        """
        self._require_credentials()
        whole_amount = round_amount(amount)
        if whole_amount < 1:
            raise GatewayRejected(f"Amount {amount} is below the M-Pesa minimum")

        timestamp = daraja_timestamp()
        payload = {
            "BusinessShortCode": self.settings.MPESA_SHORTCODE,
            "Password": self._password(timestamp),
            "Timestamp": timestamp,
            "TransactionType": self.settings.MPESA_TRANSACTION_TYPE,
            "Amount": whole_amount,
            "PartyA": phone,
            "PartyB": self.settings.MPESA_SHORTCODE,
            "PhoneNumber": phone,
            "CallBackURL": self.settings.MPESA_CALLBACK_URL,
            "AccountReference": reference[:ACCOUNT_REFERENCE_MAX_LENGTH],
            "TransactionDesc": description[:TRANSACTION_DESC_MAX_LENGTH],
        }

        response, data = await self._post("stk_push", "/mpesa/stkpush/v1/processrequest", payload)
        message = _error_message(data) or "Failed to initiate M-Pesa payment"

        if response.status_code >= 500:
            record_gateway_request("stk_push", "unavailable")
            logger.error("stk_push_unavailable", status_code=response.status_code, body=data)
            raise GatewayUnavailable(message, status_code=response.status_code, payload=data)

        if response.status_code >= 400 or str(data.get("ResponseCode")) != "0" or not data.get("CheckoutRequestID"):
            record_gateway_request("stk_push", "rejected")
            logger.warning(
                "stk_push_rejected",
                status_code=response.status_code,
                phone=mask_phone_number(phone),
                body=data,
            )
            raise GatewayRejected(message, status_code=response.status_code, payload=data)

        record_gateway_request("stk_push", "ok")
        result = PushResult(
            checkout_request_id=data["CheckoutRequestID"],
            merchant_request_id=data.get("MerchantRequestID"),
            response_code=str(data.get("ResponseCode")),
            response_description=data.get("ResponseDescription"),
            customer_message=data.get("CustomerMessage"),
        )
        logger.info(
            "stk_push_initiated",
            phone=mask_phone_number(phone),
            amount=whole_amount,
            checkout_request_id=result.checkout_request_id,
        )
        return result

    async def query_status(self, checkout_request_id: str) -> ProviderStatus:
        """Reconciliation path for pushes whose callback never arrived."""
        self._require_credentials()
        timestamp = daraja_timestamp()
        payload = {
            "BusinessShortCode": self.settings.MPESA_SHORTCODE,
            "Password": self._password(timestamp),
            "Timestamp": timestamp,
            "CheckoutRequestID": checkout_request_id,
        }

        response, data = await self._post("stk_query", "/mpesa/stkpushquery/v1/query", payload)

        if data.get("errorCode") == QUERY_STILL_PROCESSING:
            record_gateway_request("stk_query", "ok")
            return ProviderStatus(checkout_request_id, None, _error_message(data))

        if response.status_code >= 500:
            record_gateway_request("stk_query", "unavailable")
            raise GatewayUnavailable(
                _error_message(data) or "Failed to verify payment status",
                status_code=response.status_code,
                payload=data,
            )
        if response.status_code >= 400 or data.get("ResultCode") is None:
            record_gateway_request("stk_query", "rejected")
            raise GatewayRejected(
                _error_message(data) or "Failed to verify payment status",
                status_code=response.status_code,
                payload=data,
            )

        record_gateway_request("stk_query", "ok")
        try:
            result_code = int(data["ResultCode"])
        except (TypeError, ValueError):
            raise GatewayRejected(f"Unexpected ResultCode {data['ResultCode']!r}", payload=data)
        return ProviderStatus(checkout_request_id, result_code, data.get("ResultDesc"))


def _json_body(response: httpx.Response) -> dict:
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def _error_message(data: dict) -> Optional[str]:
    return data.get("errorMessage") or data.get("ResponseDescription")


_mpesa_client: Optional[MpesaClient] = None


def get_mpesa_client() -> MpesaClient:
    """FastAPI dependency: process-wide gateway client."""
    global _mpesa_client
    if _mpesa_client is None:
        _mpesa_client = MpesaClient()
    return _mpesa_client


async def close_mpesa_client() -> None:
    global _mpesa_client
    if _mpesa_client is not None:
        await _mpesa_client.close()
        _mpesa_client = None
