"""
Pytest configuration and fixtures.

Every test gets its own SQLite file database (immediate transactions, so
concurrent tests exercise real locking) and gateways backed by an
``httpx.MockTransport``.
"""
from decimal import Decimal
from typing import Any, AsyncGenerator, Awaitable, Callable, Dict, List, Optional

import httpx
import pytest
import pytest_asyncio
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import NullPool

from order_settlement.config import Settings
from order_settlement.core.collaborators import CatalogItem, Principal
from order_settlement.core.inventory import InventoryLedger
from order_settlement.core.orders import OrderLineRequest, OrderService
from order_settlement.core.payments import PaymentService
from order_settlement.core.pricing import PricingPolicy
from order_settlement.core.reconciler import NotificationReconciler
from order_settlement.core.signing import SignatureAlgorithm, sign
from order_settlement.database.connection import build_engine, build_session_factory, init_db
from order_settlement.database.models import Order, PaymentEvent
from order_settlement.integrations.registry import GatewayRegistry
from order_settlement.integrations.vnpay_client import signed_fields


class FakeCatalog:
    """In-memory catalog keyed by (product_id, variant_id)."""

    def __init__(self, items: List[CatalogItem]):
        self.items = {(item.product_id, item.variant_id): item for item in items}

    async def lookup(self, product_id: str, variant_id: Optional[str]) -> Optional[CatalogItem]:
        return self.items.get((product_id, variant_id))


class FakeUserDirectory:
    def __init__(self, user_ids: List[str]):
        self.user_ids = set(user_ids)

    async def exists(self, user_id: str) -> bool:
        return user_id in self.user_ids


class FakeGatewayServer:
    """
    Stand-in for the MoMo and VNPay HTTP APIs.

    Set ``error`` to raise a transport error, or ``status_code`` / the
    response bodies to script a gateway answer.
    """

    def __init__(self) -> None:
        self.requests: List[httpx.Request] = []
        self.error: Optional[Exception] = None
        self.failures_before_success = 0
        self.status_code = 200
        self.momo_create: Dict[str, Any] = {
            "resultCode": 0,
            "message": "Successful.",
            "payUrl": "https://test-payment.momo.vn/pay/abc123",
            "qrCodeUrl": "momo://app?action=payWithApp&sid=abc123",
        }
        self.momo_refund: Dict[str, Any] = {"resultCode": 0, "message": "Successful."}
        self.vnpay_refund: Dict[str, Any] = {
            "vnp_ResponseCode": "00",
            "vnp_Message": "Refund success",
            "vnp_TransactionNo": "14226112",
        }

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.failures_before_success > 0:
            self.failures_before_success -= 1
            raise httpx.ConnectError("connection refused", request=request)
        if self.error is not None:
            raise self.error

        path = request.url.path
        if path.endswith("/v2/gateway/api/create"):
            body = self.momo_create
        elif path.endswith("/v2/gateway/api/refund"):
            body = self.momo_refund
        else:
            body = self.vnpay_refund
        return httpx.Response(self.status_code, json=body)


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings."""
    return Settings(
        database_url="sqlite+aiosqlite:///:memory:",
        app_name="order-settlement-test",
        app_env="test",
        log_level="DEBUG",
        tax_rate=Decimal("0.05"),
        shipping_fee=Decimal("5.00"),
        gateway_timeout_seconds=2.0,
        gateway_retry_max_attempts=1,
        gateway_retry_base_delay=0,
        momo_partner_code="MOMOTEST",
        momo_access_key="test-access-key",
        momo_secret_key="test-momo-secret",
        momo_endpoint="https://momo.test",
        vnpay_tmn_code="TESTTMN1",
        vnpay_hash_secret="TESTVNPAYSECRET",
        vnpay_payment_url="https://vnpay.test/paymentv2/vpcpay.html",
        vnpay_api_url="https://vnpay.test/merchant_webapi/api/transaction",
    )


@pytest_asyncio.fixture
async def engine(tmp_path: Any) -> AsyncGenerator[AsyncEngine, Any]:
    """Fresh SQLite file database with all tables."""
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'settlement.db'}", poolclass=NullPool)
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return build_session_factory(engine)


@pytest.fixture
def catalog() -> FakeCatalog:
    return FakeCatalog(
        [
            CatalogItem("prod-1", "var-x", "var-x", "T-shirt / M / black", Decimal("10.00")),
            CatalogItem("prod-1", "var-y", "var-y", "T-shirt / L / black", Decimal("10.00")),
            CatalogItem("prod-2", None, "prod-2", "Mug", Decimal("7.50")),
            CatalogItem("prod-3", None, "prod-3", "Discontinued", Decimal("3.00"), active=False),
        ]
    )


@pytest.fixture
def users() -> FakeUserDirectory:
    return FakeUserDirectory(["user-1", "user-2", "admin-1"])


@pytest.fixture
def buyer() -> Principal:
    return Principal("user-1")


@pytest.fixture
def other_user() -> Principal:
    return Principal("user-2")


@pytest.fixture
def admin() -> Principal:
    return Principal("admin-1", is_admin=True)


@pytest.fixture
def ledger() -> InventoryLedger:
    return InventoryLedger()


@pytest.fixture
def stock(
    session_factory: async_sessionmaker[AsyncSession], ledger: InventoryLedger
) -> Callable[..., Awaitable[None]]:
    """Seed stock: ``await stock("var-x", 2)``."""

    async def _stock(sku: str, quantity: int, product_id: str = "prod-1") -> None:
        async with session_factory() as db:
            await ledger.restock(db, sku, product_id, quantity)
            await db.commit()

    return _stock


@pytest.fixture
def available(
    session_factory: async_sessionmaker[AsyncSession], ledger: InventoryLedger
) -> Callable[[str], Awaitable[Optional[int]]]:
    async def _available(sku: str) -> Optional[int]:
        async with session_factory() as db:
            return await ledger.available(db, sku)

    return _available


@pytest.fixture
def events(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[..., Awaitable[List[PaymentEvent]]]:
    """Audit rows, optionally filtered by event type."""

    async def _events(event_type: Optional[str] = None) -> List[PaymentEvent]:
        stmt = select(PaymentEvent).order_by(PaymentEvent.id)
        if event_type is not None:
            stmt = stmt.where(PaymentEvent.event_type == event_type)
        async with session_factory() as db:
            return list((await db.scalars(stmt)).all())

    return _events


@pytest.fixture
def order_count(session_factory: async_sessionmaker[AsyncSession]) -> Callable[[], Awaitable[int]]:
    async def _count() -> int:
        async with session_factory() as db:
            return await db.scalar(select(func.count()).select_from(Order))

    return _count


@pytest.fixture
def fake_gateway() -> FakeGatewayServer:
    return FakeGatewayServer()


@pytest_asyncio.fixture
async def http_client(fake_gateway: FakeGatewayServer) -> AsyncGenerator[httpx.AsyncClient, Any]:
    async with httpx.AsyncClient(transport=httpx.MockTransport(fake_gateway)) as client:
        yield client


@pytest.fixture
def gateways(test_settings: Settings, http_client: httpx.AsyncClient) -> GatewayRegistry:
    return GatewayRegistry.from_settings(test_settings, http_client=http_client)


@pytest.fixture
def orders(
    session_factory: async_sessionmaker[AsyncSession],
    catalog: FakeCatalog,
    users: FakeUserDirectory,
    ledger: InventoryLedger,
    test_settings: Settings,
) -> OrderService:
    return OrderService(
        session_factory,
        catalog=catalog,
        users=users,
        inventory=ledger,
        pricing=PricingPolicy.from_settings(test_settings),
    )


@pytest.fixture
def payments(
    session_factory: async_sessionmaker[AsyncSession],
    orders: OrderService,
    gateways: GatewayRegistry,
    test_settings: Settings,
) -> PaymentService:
    return PaymentService(session_factory, orders, gateways, settings=test_settings)


@pytest.fixture
def reconciler(payments: PaymentService, gateways: GatewayRegistry) -> NotificationReconciler:
    return NotificationReconciler(payments, gateways)


@pytest_asyncio.fixture
async def placed_order(orders: OrderService, stock: Any, buyer: Principal) -> Order:
    """2 x variant X at 10.00 (stock 2), paid through MoMo: total 26.00."""
    await stock("var-x", 2)
    return await orders.create_order(
        [OrderLineRequest("prod-1", 2, variant_id="var-x")],
        {"line1": "1 Main St", "city": "Hanoi"},
        "MOMO",
        buyer,
    )


@pytest.fixture
def momo_ipn(test_settings: Settings) -> Callable[..., Dict[str, Any]]:
    """Build a correctly signed MoMo IPN body."""

    def _build(
        transaction_id: str,
        amount_minor: int = 2600,
        result_code: int = 0,
        trans_id: int = 4088878653,
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "partnerCode": test_settings.momo_partner_code,
            "orderId": transaction_id,
            "requestId": "MOMO_1700000000000_abc123",
            "amount": amount_minor,
            "orderInfo": "Payment for order",
            "orderType": "momo_wallet",
            "transId": trans_id,
            "resultCode": result_code,
            "message": "Successful." if result_code == 0 else "Failed.",
            "payType": "qr",
            "responseTime": 1700000000123,
            "extraData": "",
        }
        payload["signature"] = sign(
            {"accessKey": test_settings.momo_access_key, **payload},
            test_settings.momo_secret_key,
            SignatureAlgorithm.HMAC_SHA256,
        )
        return payload

    return _build


@pytest.fixture
def vnpay_ipn(test_settings: Settings) -> Callable[..., Dict[str, str]]:
    """Build a correctly signed VNPay IPN query."""

    def _build(
        txn_ref: str,
        amount_minor: int = 2600,
        response_code: str = "00",
        transaction_no: str = "14226112",
    ) -> Dict[str, str]:
        params = {
            "vnp_Amount": str(amount_minor),
            "vnp_BankCode": "NCB",
            "vnp_CardType": "ATM",
            "vnp_OrderInfo": "Payment for order",
            "vnp_PayDate": "20240101120000",
            "vnp_ResponseCode": response_code,
            "vnp_TmnCode": test_settings.vnpay_tmn_code,
            "vnp_TransactionNo": transaction_no,
            "vnp_TransactionStatus": response_code,
            "vnp_TxnRef": txn_ref,
            "vnp_SecureHashType": "HmacSHA512",
        }
        params["vnp_SecureHash"] = sign(
            signed_fields(params), test_settings.vnpay_hash_secret, SignatureAlgorithm.HMAC_SHA512
        )
        return params

    return _build
