"""
Gateway adapter contract and shared HTTP plumbing.

Implements:
- Result types exchanged between the payment service and adapters
- Circuit breaker pattern for outbound gateway calls
- Exponential backoff for transient errors (tenacity)
- Timeout-bounded JSON POST over httpx
"""
import asyncio
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

import httpx
import structlog
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from order_settlement.config import Settings, get_settings
from order_settlement.core.errors import (
    GatewayError,
    GatewayRejected,
    GatewayUnavailable,
    SettlementError,
)
from order_settlement.core.lifecycle import PaymentMethod, PaymentStatus
from order_settlement.database.models import Payment
from order_settlement.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class GatewayContext:
    """Per-request data an adapter needs beyond the payment row."""

    order_id: str
    description: str
    return_url: Optional[str] = None
    client_ip: str = "127.0.0.1"


@dataclass(frozen=True)
class GatewayInitiationResult:
    redirect_url: Optional[str] = None
    qr_payload: Optional[str] = None
    gateway_reference: Optional[str] = None
    raw_response: Optional[str] = None


@dataclass(frozen=True)
class CallbackVerification:
    """
    Verified callback content.

    ``amount`` is the amount the gateway reports, when it reports one, so
    the reconciler can cross-check it against the recorded payment.
    """

    transaction_id: str
    outcome: PaymentStatus
    gateway_transaction_id: Optional[str] = None
    amount: Optional[Decimal] = None
    message: Optional[str] = None
    raw_payload: Optional[str] = None


@dataclass(frozen=True)
class RefundResult:
    refund_reference: Optional[str] = None
    raw_response: Optional[str] = None


@dataclass(frozen=True)
class GatewayAcknowledgement:
    """HTTP response a gateway expects from a callback endpoint."""

    status_code: int
    body: Optional[Dict[str, Any]] = field(default=None)
    accepted: bool = True


class CircuitBreaker:
    """
    Circuit breaker for gateway API calls.

    Prevents cascading failures by temporarily stopping requests when
    transient failures pile up. Business rejections do not count.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        timeout: int = 60,
        success_threshold: int = 2,
    ):
        """
        Initialize circuit breaker.

        Args:
            name: Gateway name (metrics label)
            failure_threshold: Number of failures before opening circuit
            timeout: Seconds before attempting to close circuit
            success_threshold: Successful calls needed to close circuit
        """
        self.name = name
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, half_open

    def _set_state(self, state: str) -> None:
        self.state = state
        metrics.set_circuit_breaker_state(self.name, state)

    async def call(self, func: Callable[..., Awaitable[Any]], *args: Any, **kwargs: Any) -> Any:
        """
        Execute coroutine function with circuit breaker protection.

        Raises:
            GatewayUnavailable: If circuit is open
        """
        if self.state == "open":
            if self.last_failure_time and time.time() - self.last_failure_time > self.timeout:
                self._set_state("half_open")
                self.success_count = 0
                logger.info("circuit_breaker_half_open", gateway=self.name)
            else:
                raise GatewayUnavailable(f"{self.name} circuit breaker is open", gateway=self.name)

        try:
            result = await func(*args, **kwargs)
        except GatewayUnavailable:
            self.on_failure()
            raise
        self.on_success()
        return result

    def on_success(self) -> None:
        """Record successful call."""
        self.failure_count = 0
        if self.state == "half_open":
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self._set_state("closed")
                logger.info("circuit_breaker_closed", gateway=self.name)

    def on_failure(self) -> None:
        """Record failed call."""
        self.failure_count += 1
        self.last_failure_time = time.time()
        if self.state == "half_open" or self.failure_count >= self.failure_threshold:
            self._set_state("open")
            logger.warning(
                "circuit_breaker_opened",
                gateway=self.name,
                failure_count=self.failure_count,
            )


def truncate(text: Optional[str], limit: int) -> Optional[str]:
    if text is None:
        return None
    return text[:limit]


class GatewayAdapter(ABC):
    """Capability contract implemented once per payment method."""

    method: PaymentMethod
    name: str

    @abstractmethod
    async def initiate(self, payment: Payment, context: GatewayContext) -> GatewayInitiationResult:
        """
        Start a payment with the gateway.

        Raises:
            GatewayUnavailable: Network error, timeout or 5xx
            GatewayRejected: Gateway refused the request
        """

    @abstractmethod
    def verify_callback(self, payload: Mapping[str, Any]) -> CallbackVerification:
        """
        Authenticate a callback and map its result code.

        Raises:
            InvalidSignature: Signature does not match
            InvalidRequest: Required fields missing or malformed
        """

    @abstractmethod
    async def refund(self, payment: Payment, amount: Decimal) -> RefundResult:
        """
        Refund part or all of a successful payment.

        Raises:
            GatewayUnavailable: Network error, timeout or 5xx
            RefundRejected: Gateway refused the refund
        """

    @abstractmethod
    def acknowledge(self) -> GatewayAcknowledgement:
        """Response telling the gateway the callback was processed."""

    @abstractmethod
    def reject(self, error: SettlementError) -> GatewayAcknowledgement:
        """Response for a callback that could not be processed."""


class HttpGatewayAdapter(GatewayAdapter):
    """Adapter base for gateways reached over JSON HTTP APIs."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
    ):
        """
        Initialize gateway adapter.

        Args:
            settings: Optional settings (defaults to cached settings)
            http_client: Optional shared client; a short-lived one is
                created per call otherwise
            circuit_breaker: Optional circuit breaker
        """
        self.settings = settings or get_settings()
        self.http_client = http_client
        self.circuit_breaker = circuit_breaker or CircuitBreaker(self.name)

    def _truncate(self, text: Optional[str]) -> Optional[str]:
        return truncate(text, self.settings.gateway_response_max_length)

    async def _send(self, operation: str, url: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        timeout = self.settings.gateway_timeout_seconds
        try:
            if self.http_client is not None:
                response = await asyncio.wait_for(
                    self.http_client.post(url, json=payload, timeout=timeout), timeout
                )
            else:
                async with httpx.AsyncClient(timeout=timeout) as client:
                    response = await asyncio.wait_for(client.post(url, json=payload), timeout)
        except (asyncio.TimeoutError, httpx.TimeoutException) as e:
            raise GatewayUnavailable(
                f"{self.name} {operation} timed out", gateway=self.name, operation=operation
            ) from e
        except httpx.TransportError as e:
            raise GatewayUnavailable(
                f"{self.name} {operation} failed: {e}", gateway=self.name, operation=operation
            ) from e

        if response.status_code >= 500:
            raise GatewayUnavailable(
                f"{self.name} {operation} returned HTTP {response.status_code}",
                gateway=self.name,
                operation=operation,
            )
        if response.status_code >= 400:
            raise GatewayRejected(
                f"{self.name} {operation} returned HTTP {response.status_code}",
                gateway=self.name,
                body=self._truncate(response.text),
            )

        try:
            body = response.json()
        except ValueError as e:
            raise GatewayRejected(
                f"{self.name} {operation} returned a non-JSON body",
                gateway=self.name,
                body=self._truncate(response.text),
            ) from e
        if not isinstance(body, dict):
            raise GatewayRejected(f"{self.name} {operation} returned an unexpected body")
        return body

    async def _post_json(self, operation: str, url: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """
        POST ``payload`` and return the decoded JSON body.

        Transient failures are retried with exponential backoff up to
        ``gateway_retry_max_attempts``.

        Raises:
            GatewayUnavailable: All attempts failed transiently or circuit is open
            GatewayRejected: 4xx or undecodable response
        """
        start = time.perf_counter()
        status = "success"
        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception_type(GatewayUnavailable),
                stop=stop_after_attempt(self.settings.gateway_retry_max_attempts),
                wait=wait_exponential(multiplier=self.settings.gateway_retry_base_delay, max=8),
                reraise=True,
            ):
                with attempt:
                    return await self.circuit_breaker.call(self._send, operation, url, payload)
        except GatewayError as e:
            status = e.error_code
            logger.error(
                "gateway_api_error",
                gateway=self.name,
                operation=operation,
                error_code=e.error_code,
                error_message=str(e),
            )
            raise
        finally:
            metrics.record_gateway_call(self.name, operation, status, time.perf_counter() - start)
        raise GatewayUnavailable(f"{self.name} {operation} was not attempted")
