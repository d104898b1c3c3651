"""支付网关客户端"""
from __future__ import annotations

import httpx

from ...config import Settings
from ...models.payment import PaymentMethod
from ..payment_errors import UnsupportedGateway
from .alipay import AlipayClient, AlipayConfig
from .base import CallbackPayload, CallbackResult, GatewayClient, GatewayResult
from .paypal import PayPalClient, PayPalConfig
from .wechat import WeChatConfig, WeChatPayClient

SUPPORTED_GATEWAYS = tuple(m.value for m in PaymentMethod)


def gateway_configs(settings: Settings) -> dict[str, AlipayConfig | WeChatConfig | PayPalConfig]:
    """从 Settings 构造各网关的不可变配置"""
    base = settings.callback_base_url
    return {
        "alipay": AlipayConfig(
            app_id=settings.alipay_app_id.strip(),
            private_key=settings.alipay_private_key,
            public_key=settings.alipay_public_key,
            gateway_url=settings.alipay_gateway_url,
            notify_url=f"{base}/alipay",
            return_url=settings.alipay_return_url.strip(),
            subject=f"{settings.app_name} 充值",
            allow_unverified_callbacks=settings.alipay_allow_unverified_callbacks,
        ),
        "wechat": WeChatConfig(
            app_id=settings.wechat_app_id.strip(),
            mch_id=settings.wechat_mch_id.strip(),
            key=settings.wechat_key.strip(),
            gateway_url=settings.wechat_gateway_url,
            notify_url=f"{base}/wechat",
            spbill_create_ip=settings.wechat_spbill_create_ip,
            timeout_seconds=settings.gateway_timeout_seconds,
            allow_unverified_callbacks=settings.wechat_allow_unverified_callbacks,
        ),
        "paypal": PayPalConfig(
            business=settings.paypal_business.strip(),
            gateway_url=settings.paypal_gateway_url,
            verify_url=settings.paypal_verify_url,
            notify_url=f"{base}/paypal",
            currency=settings.paypal_currency,
            timeout_seconds=settings.gateway_timeout_seconds,
            allow_unverified_callbacks=settings.paypal_allow_unverified_callbacks,
        ),
    }


def build_gateway_client(
    method: str,
    settings: Settings,
    http_client: httpx.AsyncClient | None = None,
) -> GatewayClient:
    """按支付方式构造网关客户端；配置缺失或密钥错误在此处抛出"""
    name = str(method or "").strip().lower()
    if name not in SUPPORTED_GATEWAYS:
        raise UnsupportedGateway(f"不支持的支付方式: {method}")
    config = gateway_configs(settings)[name]
    if isinstance(config, AlipayConfig):
        return AlipayClient(config)
    if isinstance(config, WeChatConfig):
        return WeChatPayClient(config, http_client=http_client)
    return PayPalClient(config, http_client=http_client)


def allows_unverified_callbacks(client: GatewayClient) -> bool:
    config = getattr(client, "config", None)
    return bool(getattr(config, "allow_unverified_callbacks", False))


__all__ = [
    "AlipayClient",
    "AlipayConfig",
    "CallbackPayload",
    "CallbackResult",
    "GatewayClient",
    "GatewayResult",
    "PayPalClient",
    "PayPalConfig",
    "SUPPORTED_GATEWAYS",
    "WeChatConfig",
    "WeChatPayClient",
    "allows_unverified_callbacks",
    "build_gateway_client",
    "gateway_configs",
]
