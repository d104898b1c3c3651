"""PayPal Website Payments Standard + IPN"""
from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from urllib.parse import urlencode

import httpx

from ..payment_errors import CallbackParseError
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

PAYPAL_SUCCESS_STATUSES = frozenset({"Completed"})
PAYPAL_PENDING_STATUSES = frozenset({"Pending", "Processed", "In-Progress"})


@dataclass(frozen=True)
class PayPalConfig:
    business: str
    gateway_url: str
    verify_url: str
    notify_url: str
    currency: str = "USD"
    timeout_seconds: float = 10.0
    allow_unverified_callbacks: bool = False


class PayPalClient(GatewayClient):
    name = "paypal"

    def __init__(self, config: PayPalConfig, http_client: httpx.AsyncClient | None = None):
        require_fields("PayPal", PAYPAL_BUSINESS=config.business)
        self.config = config
        self.currency = config.currency
        self._http_client = http_client

    async def create_payment(self, order: PayableOrder) -> GatewayResult:
        amount = str(quantize_amount(order.pay_amount))
        description = f"充值 {int(order.quota_amount)} 额度"
        params = {
            "cmd": "_xclick",
            "business": self.config.business,
            "item_name": description,
            "amount": amount,
            "currency_code": self.config.currency,
            "invoice": order.order_id,
            "notify_url": self.config.notify_url,
            "no_shipping": "1",
        }
        url = f"{self.config.gateway_url}?{urlencode(params)}"
        return GatewayResult(
            redirect_target=url,
            raw_fields={
                "invoice_id": order.order_id,
                "amount": amount,
                "currency": self.config.currency,
                "description": description,
            },
        )

    def parse_callback(
        self,
        body: bytes,
        query: Mapping[str, str] | None = None,
        content_type: str | None = None,
    ) -> dict[str, str]:
        return parse_form_body(body, query)

    async def _post_back(self, payload: bytes) -> httpx.Response:
        headers = {"Content-Type": "application/x-www-form-urlencoded"}
        if self._http_client is not None:
            return await self._http_client.post(
                self.config.verify_url,
                content=payload,
                headers=headers,
                timeout=self.config.timeout_seconds,
            )
        async with httpx.AsyncClient(timeout=self.config.timeout_seconds) as client:
            return await client.post(self.config.verify_url, content=payload, headers=headers)

    async def verify_callback(self, fields: Mapping[str, str], body: bytes) -> bool:
        """IPN 回传校验：原样回传并附加 cmd=_notify-validate，PayPal 返回 VERIFIED 即为真"""
        receiver = str(fields.get("receiver_email") or fields.get("business") or "").strip()
        if receiver and receiver.lower() != self.config.business.strip().lower():
            logger.warning("paypal ipn receiver mismatch: %s", receiver)
            return False

        raw = body if body else urlencode(dict(fields)).encode("utf-8")
        try:
            resp = await self._post_back(b"cmd=_notify-validate&" + raw)
        except httpx.HTTPError as e:
            logger.warning("paypal ipn post-back failed: %s", e)
            return False
        if resp.status_code != 200:
            logger.warning("paypal ipn post-back http %s", resp.status_code)
            return False
        return resp.text.strip() == "VERIFIED"

    def interpret_callback(self, fields: Mapping[str, str]) -> CallbackPayload:
        order_id = str(fields.get("invoice") or fields.get("custom") or "").strip()
        if not order_id:
            raise CallbackParseError("PayPal 回调缺少 invoice")
        payment_status = str(fields.get("payment_status") or "").strip()
        if payment_status in PAYPAL_SUCCESS_STATUSES:
            result = CallbackResult.SUCCESS
        elif payment_status in PAYPAL_PENDING_STATUSES:
            result = CallbackResult.IGNORED
        else:
            result = CallbackResult.FAILURE
        return CallbackPayload(
            order_id=order_id,
            external_status=payment_status,
            result=result,
            paid_amount=parse_paid_amount("PayPal", "mc_gross", fields.get("mc_gross")),
            currency=str(fields.get("mc_currency") or "").strip() or None,
        )
