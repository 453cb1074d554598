"""
Payment gateway integration (dynamic QR resources and closed virtual accounts).

Create calls are keyed by our reference (referenceId / externalId). When the
gateway reports that a resource already exists for that reference, the
existing resource is fetched and returned as AlreadyExists instead of failing,
so a retried create converges on one resource.
"""

from __future__ import annotations

import hashlib
import hmac
import random
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from functools import lru_cache
from typing import Any, Dict, Optional, Union

import httpx

from topup.core.config import settings
from topup.core.exceptions import GatewayError, TopupValidationError
from topup.core.logging import get_logger
from topup.models.base import utc_now

logger = get_logger(__name__)

QR_ENDPOINT = "/qr-resources"
VA_ENDPOINT = "/virtual-accounts"

# endpoint -> (reference field in body/lookup, snake_case variant in responses)
_REFERENCE_KEYS = {
    QR_ENDPOINT: ("referenceId", "reference_id"),
    VA_ENDPOINT: ("externalId", "external_id"),
}


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class GatewayResource:
    resource_id: str
    status: Optional[str]
    reference: str
    qr_string: Optional[str] = None
    account_number: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Created:
    resource: GatewayResource


@dataclass(frozen=True)
class AlreadyExists:
    resource: GatewayResource


GatewayResult = Union[Created, AlreadyExists]


def _iso(dt: datetime) -> str:
    return dt.isoformat().replace("+00:00", "Z")


def _first(data: Dict[str, Any], *keys: str) -> Any:
    for k in keys:
        v = data.get(k)
        if v not in (None, ""):
            return v
    return None


def _reference_keys(endpoint: str) -> tuple[str, str]:
    try:
        return _REFERENCE_KEYS[endpoint]
    except KeyError:
        raise TopupValidationError(
            f"Unsupported gateway endpoint: {endpoint}", code="UNSUPPORTED_GATEWAY_ENDPOINT"
        ) from None


def parse_resource(endpoint: str, data: Any, reference: str) -> GatewayResource:
    """Turn a gateway JSON object into a GatewayResource; GatewayError if it has no id."""
    if not isinstance(data, dict) or not data.get("id"):
        raise GatewayError("Malformed gateway response: missing resource id", body=data)
    camel, snake = _reference_keys(endpoint)
    return GatewayResource(
        resource_id=str(data["id"]),
        status=_first(data, "status"),
        reference=str(_first(data, camel, snake) or reference),
        qr_string=_first(data, "qrString", "qr_string"),
        account_number=_first(data, "accountNumber", "account_number"),
        raw=data,
    )


# ---------------------------------------------------------------------------
# Clients
# ---------------------------------------------------------------------------
class BaseGatewayClient:
    """Request builders shared by the HTTP and in-memory clients."""

    def __init__(
        self,
        *,
        currency: Optional[str] = None,
        qr_expiry_minutes: Optional[int] = None,
        va_expiry_hours: Optional[int] = None,
    ):
        self.currency = currency or settings.BILLING_CURRENCY
        self.qr_expiry = timedelta(minutes=qr_expiry_minutes or settings.QR_EXPIRY_MINUTES)
        self.va_expiry = timedelta(hours=va_expiry_hours or settings.VA_EXPIRY_HOURS)

    def build_qr_request(self, reference_id: str, amount: int, now: Optional[datetime] = None) -> dict:
        now = now or utc_now()
        return {
            "method": "POST",
            "endpoint": QR_ENDPOINT,
            "body": {
                "referenceId": reference_id,
                "type": "DYNAMIC",
                "currency": self.currency,
                "amount": int(amount),
                "expiresAt": _iso(now + self.qr_expiry),
            },
        }

    def build_virtual_account_request(
        self,
        external_id: str,
        amount: int,
        bank: str,
        payer_name: str,
        now: Optional[datetime] = None,
    ) -> dict:
        now = now or utc_now()
        return {
            "method": "POST",
            "endpoint": VA_ENDPOINT,
            "body": {
                "externalId": external_id,
                "bankCode": bank.upper(),
                "name": payer_name,
                "currency": self.currency,
                "amount": int(amount),
                "isClosed": True,
                "expirationDate": _iso(now + self.va_expiry),
            },
        }

    async def submit(self, gateway_request: dict) -> GatewayResult:
        raise NotImplementedError

    async def create_qr_resource(self, reference_id: str, amount: int) -> GatewayResult:
        return await self.submit(self.build_qr_request(reference_id, amount))

    async def create_virtual_account(
        self, external_id: str, amount: int, bank: str, payer_name: str
    ) -> GatewayResult:
        return await self.submit(self.build_virtual_account_request(external_id, amount, bank, payer_name))

    @staticmethod
    def _unpack(gateway_request: dict) -> tuple[str, dict, str]:
        endpoint = gateway_request.get("endpoint") or ""
        body = dict(gateway_request.get("body") or {})
        camel, _ = _reference_keys(endpoint)
        reference = body.get(camel)
        if not reference:
            raise TopupValidationError(f"Gateway request has no {camel}", code="GATEWAY_REQUEST_INVALID")
        return endpoint, body, str(reference)


class PaymentGatewayClient(BaseGatewayClient):
    """HTTP client for the gateway REST API (Basic auth with the secret key)."""

    def __init__(
        self,
        *,
        base_url: Optional[str] = None,
        secret_key: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        **kwargs,
    ):
        super().__init__(**kwargs)
        self.base_url = (base_url or settings.PAYMENT_GATEWAY_URL).rstrip("/")
        self.secret_key = secret_key if secret_key is not None else (settings.PAYMENT_GATEWAY_SECRET_KEY or "")
        self.timeout = float(timeout or settings.PAYMENT_GATEWAY_TIMEOUT_SECONDS)
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            auth=httpx.BasicAuth(self.secret_key, ""),
            timeout=httpx.Timeout(self.timeout),
            headers={"Content-Type": "application/json", "Accept": "application/json"},
            transport=self._transport,
        )

    async def submit(self, gateway_request: dict) -> GatewayResult:
        endpoint, body, reference = self._unpack(gateway_request)

        async with self._client() as client:
            response = await self._send(
                client, "POST", endpoint, json=body, headers={"Idempotency-Key": reference}
            )

            if self._is_duplicate(response):
                logger.info("gateway.duplicate_reference", endpoint=endpoint, reference=reference)
                existing = await self._lookup(client, endpoint, reference)
                return AlreadyExists(existing)

            if not response.is_success:
                raise GatewayError(
                    f"Gateway rejected {endpoint} with HTTP {response.status_code}",
                    status_code=response.status_code,
                    body=self._body(response),
                )

            resource = parse_resource(endpoint, self._json(response), reference)
            logger.info(
                "gateway.resource_created",
                endpoint=endpoint,
                reference=reference,
                resource_id=resource.resource_id,
            )
            return Created(resource)

    async def _send(self, client: httpx.AsyncClient, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            return await client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            logger.warning("gateway.timeout", method=method, url=url, timeout=self.timeout)
            raise GatewayError(f"Gateway {method} {url} timed out", timeout=True) from e
        except httpx.HTTPError as e:
            logger.error("gateway.transport_error", method=method, url=url, error=str(e))
            raise GatewayError(f"Gateway {method} {url} failed: {e}") from e

    async def _lookup(self, client: httpx.AsyncClient, endpoint: str, reference: str) -> GatewayResource:
        camel, snake = _reference_keys(endpoint)
        response = await self._send(client, "GET", endpoint, params={camel: reference})
        if not response.is_success:
            raise GatewayError(
                f"Gateway lookup of {reference} failed with HTTP {response.status_code}",
                status_code=response.status_code,
                body=self._body(response),
            )

        data = self._json(response)
        if isinstance(data, dict) and isinstance(data.get("data"), list):
            data = data["data"]
        candidates = [c for c in (data if isinstance(data, list) else [data]) if isinstance(c, dict)]
        # a row without a reference field is taken as the filtered answer; a foreign reference never is
        matching = [c for c in candidates if str(_first(c, camel, snake) or reference) == reference]
        if not matching:
            logger.error(
                "gateway.duplicate_lookup_mismatch",
                endpoint=endpoint,
                reference=reference,
                returned=[_first(c, camel, snake) for c in candidates],
            )
            raise GatewayError(
                f"Gateway reported a duplicate for {reference} but lookup returned no matching resource",
                body=data,
            )
        return parse_resource(endpoint, matching[0], reference)

    @staticmethod
    def _is_duplicate(response: httpx.Response) -> bool:
        if response.status_code == 409:
            return True
        if response.is_success:
            return False
        try:
            data = response.json()
        except ValueError:
            return False
        code = data.get("error_code") if isinstance(data, dict) else None
        return isinstance(code, str) and code.upper().startswith("DUPLICATE")

    @staticmethod
    def _json(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError as e:
            raise GatewayError(
                "Malformed gateway response: body is not JSON",
                status_code=response.status_code,
                body=response.text[:500],
            ) from e

    @staticmethod
    def _body(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError:
            return response.text[:500]


class MockGatewayClient(BaseGatewayClient):
    """In-memory gateway for local runs and tests; deduplicates by reference like the real one."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.resources: Dict[tuple[str, str], GatewayResource] = {}
        self.submitted: list[dict] = []

    async def submit(self, gateway_request: dict) -> GatewayResult:
        endpoint, body, reference = self._unpack(gateway_request)
        self.submitted.append({"endpoint": endpoint, "body": body})

        existing = self.resources.get((endpoint, reference))
        if existing is not None:
            return AlreadyExists(existing)

        if endpoint == QR_ENDPOINT:
            data = {
                "id": f"qr_{uuid.uuid4().hex}",
                "referenceId": reference,
                "status": "ACTIVE",
                "qrString": f"00020101021226{reference}5303360540{body.get('amount')}6304MOCK",
                **body,
            }
        else:
            data = {
                "id": f"va_{uuid.uuid4().hex}",
                "externalId": reference,
                "status": "PENDING",
                "accountNumber": "8888" + str(random.randint(10_000_000, 99_999_999)),
                **body,
            }
        resource = parse_resource(endpoint, data, reference)
        self.resources[(endpoint, reference)] = resource
        logger.info("gateway.mock_resource_created", endpoint=endpoint, resource_id=resource.resource_id)
        return Created(resource)


@lru_cache
def _mock_gateway() -> MockGatewayClient:
    return MockGatewayClient()


def get_gateway_client() -> BaseGatewayClient:
    """FastAPI dependency: gateway client for the configured PAYMENT_GATEWAY_MODE."""
    if settings.PAYMENT_GATEWAY_MODE == "mock":
        return _mock_gateway()
    return PaymentGatewayClient()


# ---------------------------------------------------------------------------
# Webhook signature
# ---------------------------------------------------------------------------
def compute_callback_signature(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_callback_signature(body: bytes, signature: Optional[str], secret: Optional[str] = None) -> bool:
    """HMAC-SHA256 hex digest of the raw callback body, compared in constant time."""
    secret = secret if secret is not None else settings.PAYMENT_WEBHOOK_SECRET
    if not secret or not signature:
        return False
    expected = compute_callback_signature(body, secret)
    return hmac.compare_digest(signature.strip().lower(), expected)


__all__ = [
    "GatewayResource",
    "Created",
    "AlreadyExists",
    "GatewayResult",
    "BaseGatewayClient",
    "PaymentGatewayClient",
    "MockGatewayClient",
    "get_gateway_client",
    "parse_resource",
    "compute_callback_signature",
    "verify_callback_signature",
    "QR_ENDPOINT",
    "VA_ENDPOINT",
]
