"""支付宝电脑网站支付（alipay.trade.page.pay）"""
from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
from urllib.parse import urlencode
from zoneinfo import ZoneInfo

from ...utils.signature import AlipaySigner
from ..payment_errors import CallbackParseError, ConfigIncomplete
from .base import (
    CallbackPayload,
    CallbackResult,
    GatewayClient,
    GatewayResult,
    PayableOrder,
    parse_form_body,
    parse_paid_amount,
    quantize_amount,
    require_fields,
)

logger = logging.getLogger(__name__)

ALIPAY_SUCCESS_STATUSES = frozenset({"TRADE_SUCCESS", "TRADE_FINISHED"})
ALIPAY_PENDING_STATUSES = frozenset({"WAIT_BUYER_PAY"})
# 开放平台要求 timestamp 为北京时间
ALIPAY_TIMEZONE = ZoneInfo("Asia/Shanghai")


@dataclass(frozen=True)
class AlipayConfig:
    app_id: str
    private_key: str
    public_key: str
    gateway_url: str
    notify_url: str
    return_url: str = ""
    subject: str = "额度充值"
    allow_unverified_callbacks: bool = False


class AlipayClient(GatewayClient):
    name = "alipay"

    def __init__(self, config: AlipayConfig):
        require_fields("支付宝", ALIPAY_APP_ID=config.app_id, ALIPAY_PRIVATE_KEY=config.private_key)
        self.config = config
        self.signer = AlipaySigner(config.private_key, config.public_key or None)

    def build_page_pay_url(self, order: PayableOrder) -> str:
        params: dict[str, str] = {
            "app_id": self.config.app_id,
            "method": "alipay.trade.page.pay",
            "format": "JSON",
            "charset": "utf-8",
            "sign_type": "RSA2",
            "timestamp": datetime.now(ALIPAY_TIMEZONE).strftime("%Y-%m-%d %H:%M:%S"),
            "version": "1.0",
            "notify_url": self.config.notify_url,
            "biz_content": json.dumps(
                {
                    "out_trade_no": order.order_id,
                    "total_amount": str(quantize_amount(order.pay_amount)),
                    "subject": self.config.subject,
                    "body": f"充值 {int(order.quota_amount)} 额度",
                    "product_code": "FAST_INSTANT_TRADE_PAY",
                },
                ensure_ascii=False,
                separators=(",", ":"),
            ),
        }
        if self.config.return_url:
            params["return_url"] = self.config.return_url
        params["sign"] = self.signer.sign(params)
        return f"{self.config.gateway_url}?{urlencode(params)}"

    async def create_payment(self, order: PayableOrder) -> GatewayResult:
        url = self.build_page_pay_url(order)
        return GatewayResult(redirect_target=url, raw_fields={"payment_url": url})

    def parse_callback(
        self,
        body: bytes,
        query: Mapping[str, str] | None = None,
        content_type: str | None = None,
    ) -> dict[str, str]:
        return parse_form_body(body, query)

    async def verify_callback(self, fields: Mapping[str, str], body: bytes) -> bool:
        if not self.signer.can_verify:
            logger.error("alipay public key not configured, callback cannot be verified")
            raise ConfigIncomplete("支付宝 支付配置不完整: ALIPAY_PUBLIC_KEY")
        return self.signer.verify(fields)

    def interpret_callback(self, fields: Mapping[str, str]) -> CallbackPayload:
        order_id = str(fields.get("out_trade_no") or "").strip()
        if not order_id:
            raise CallbackParseError("支付宝回调缺少 out_trade_no")
        trade_status = str(fields.get("trade_status") or "").strip()
        if trade_status in ALIPAY_SUCCESS_STATUSES:
            result = CallbackResult.SUCCESS
        elif trade_status in ALIPAY_PENDING_STATUSES:
            result = CallbackResult.IGNORED
        else:
            result = CallbackResult.FAILURE
        return CallbackPayload(
            order_id=order_id,
            external_status=trade_status,
            result=result,
            paid_amount=parse_paid_amount("支付宝", "total_amount", fields.get("total_amount")),
        )
