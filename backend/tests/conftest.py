"""Pytest配置文件"""
import inspect
import os
import sys
from collections.abc import AsyncGenerator, Callable
from pathlib import Path
from typing import Any
from urllib.parse import urlencode

import httpx
import pytest
import pytest_asyncio
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

_ROOT = Path(__file__).resolve().parents[1]
if str(_ROOT) not in sys.path:
    sys.path.insert(0, str(_ROOT))

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

from quotapay.config import Settings
from quotapay.database import Base, create_engine_for, get_db, get_session_factory
from quotapay.main import app
from quotapay.models.payment import DiscountCode
from quotapay.models.user import User
from quotapay.services.credit_ledger import CreditLedger
from quotapay.services.gateways import GatewayClient, build_gateway_client
from quotapay.services.order_lifecycle import OrderLifecycle
from quotapay.utils.deps import get_order_lifecycle
from quotapay.utils.signature import AlipaySigner

ClientFactory = Callable[[str], GatewayClient]


@pytest.fixture(scope="session")
def rsa_keys() -> dict[str, str]:
    """测试用 RSA 密钥对（PKCS#8 私钥 + SubjectPublicKeyInfo 公钥）"""
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("utf-8")
    pkcs1_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("utf-8")
    public_pem = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode("utf-8")
    return {"private": private_pem, "private_pkcs1": pkcs1_pem, "public": public_pem}


@pytest.fixture
def settings(rsa_keys: dict[str, str]) -> Settings:
    return Settings(
        database_url="sqlite+aiosqlite:///:memory:",
        server_address="https://pay.example.com",
        quota_per_unit=500000.0,
        alipay_app_id="2021000000000001",
        alipay_private_key=rsa_keys["private"],
        alipay_public_key=rsa_keys["public"],
        alipay_gateway_url="https://openapi.alipay.example/gateway.do",
        wechat_app_id="wx_app",
        wechat_mch_id="1900000109",
        wechat_key="wechat_secret_key_0123456789abcd",
        wechat_gateway_url="https://api.mch.weixin.example/pay/unifiedorder",
        paypal_business="merchant@example.com",
        paypal_gateway_url="https://www.paypal.example/cgi-bin/webscr",
        paypal_verify_url="https://ipnpb.paypal.example/cgi-bin/webscr",
        reconcile_enabled=False,
    )


@pytest_asyncio.fixture
async def session_factory(tmp_path) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """每个用例一个临时文件库，多个会话之间真实并发"""
    engine = create_engine_for(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)
    yield factory
    await engine.dispose()


@pytest_asyncio.fixture
async def seeded_codes(session_factory) -> None:
    async with session_factory() as db:
        db.add_all(
            [
                DiscountCode(code="WELCOME10", discount_ratio=0.10, enabled=True),
                DiscountCode(code="NEWUSER20", discount_ratio=0.20, enabled=True),
                DiscountCode(code="DISABLED50", discount_ratio=0.50, enabled=False),
                DiscountCode(code="BROKEN", discount_ratio=1.5, enabled=True),
            ]
        )
        await db.commit()


async def create_user(session_factory, username: str = "alice", role: str = "user", quota: int = 0) -> User:
    async with session_factory() as db:
        user = User(username=username, role=role, is_active=True, quota=quota)
        db.add(user)
        await db.commit()
        await db.refresh(user)
        return user


async def read_user_quota(session_factory, user_id: int) -> int:
    async with session_factory() as db:
        user = await db.get(User, user_id)
        assert user is not None
        return int(user.quota)


def make_client_factory(settings: Settings, handler: Callable[[httpx.Request], httpx.Response] | None = None) -> ClientFactory:
    """网关客户端工厂；传入 handler 时出站 HTTP 走 MockTransport"""
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler)) if handler else None

    def _factory(method: str) -> GatewayClient:
        return build_gateway_client(method, settings, http_client=http_client)

    return _factory


@pytest.fixture
def lifecycle_builder(session_factory, settings):
    def _build(
        *,
        handler: Callable[[httpx.Request], httpx.Response] | None = None,
        ledger: CreditLedger | None = None,
        settings_override: Settings | None = None,
    ) -> OrderLifecycle:
        s = settings_override or settings
        return OrderLifecycle(session_factory, s, ledger=ledger, client_factory=make_client_factory(s, handler))

    return _build


@pytest.fixture
def lifecycle(lifecycle_builder) -> OrderLifecycle:
    return lifecycle_builder()


@pytest_asyncio.fixture
async def client(session_factory, lifecycle: OrderLifecycle) -> AsyncGenerator[AsyncClient, None]:
    """创建测试客户端"""
    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_order_lifecycle] = lambda: lifecycle

    transport_kwargs: dict[str, Any] = {"app": app}
    if "lifespan" in inspect.signature(ASGITransport.__init__).parameters:
        transport_kwargs["lifespan"] = "off"
    transport = ASGITransport(**transport_kwargs)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


def alipay_notify_body(rsa_keys, order_id: str, trade_status: str = "TRADE_SUCCESS", total: str = "9.00") -> bytes:
    """构造一条用测试私钥签名的支付宝异步通知"""
    params = {
        "app_id": "2021000000000001",
        "out_trade_no": order_id,
        "trade_no": f"T{order_id}",
        "total_amount": total,
        "trade_status": trade_status,
        "charset": "utf-8",
    }
    params["sign"] = AlipaySigner(rsa_keys["private"]).sign(params)
    params["sign_type"] = "RSA2"
    return urlencode(params).encode("utf-8")
