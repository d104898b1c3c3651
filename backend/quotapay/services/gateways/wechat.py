"""微信支付 v2 统一下单（NATIVE 扫码）"""
from __future__ import annotations

import logging
import uuid
import xml.etree.ElementTree as ET
from collections.abc import Mapping
from dataclasses import dataclass

import httpx

from ...utils.signature import wechat_sign, wechat_verify
from ..payment_errors import CallbackParseError, GatewayCallFailed
from .base import (
    CallbackPayload,
    CallbackResult,
    GatewayClient,
    GatewayResult,
    PayableOrder,
    amount_to_fen,
    parse_paid_amount,
    require_fields,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WeChatConfig:
    app_id: str
    mch_id: str
    key: str
    gateway_url: str
    notify_url: str
    spbill_create_ip: str = "127.0.0.1"
    timeout_seconds: float = 10.0
    allow_unverified_callbacks: bool = False


def dict_to_xml(params: Mapping[str, str]) -> bytes:
    root = ET.Element("xml")
    for k, v in params.items():
        child = ET.SubElement(root, k)
        child.text = str(v)
    return ET.tostring(root, encoding="utf-8")


def xml_to_dict(raw: bytes | str) -> dict[str, str]:
    if not raw:
        raise CallbackParseError("XML 内容为空")
    try:
        root = ET.fromstring(raw)
    except ET.ParseError as e:
        raise CallbackParseError(f"XML 解析失败: {e}") from e
    if root.tag != "xml":
        raise CallbackParseError(f"XML 根节点应为 <xml>，实际为 <{root.tag}>")
    # 值原样保留，签名按网关发送的原文计算
    return {child.tag: child.text or "" for child in root}


class WeChatPayClient(GatewayClient):
    name = "wechat"

    def __init__(self, config: WeChatConfig, http_client: httpx.AsyncClient | None = None):
        require_fields("微信", WECHAT_APP_ID=config.app_id, WECHAT_MCH_ID=config.mch_id, WECHAT_KEY=config.key)
        self.config = config
        self._http_client = http_client

    def build_unified_order(self, order: PayableOrder) -> dict[str, str]:
        params: dict[str, str] = {
            "appid": self.config.app_id,
            "mch_id": self.config.mch_id,
            "nonce_str": uuid.uuid4().hex,
            "body": f"充值 {int(order.quota_amount)} 额度",
            "out_trade_no": order.order_id,
            "total_fee": str(amount_to_fen(order.pay_amount)),
            "spbill_create_ip": self.config.spbill_create_ip,
            "notify_url": self.config.notify_url,
            "trade_type": "NATIVE",
        }
        params["sign"] = wechat_sign(params, self.config.key)
        return params

    async def _post(self, payload: bytes) -> httpx.Response:
        headers = {"Content-Type": "text/xml; charset=utf-8"}
        if self._http_client is not None:
            return await self._http_client.post(
                self.config.gateway_url,
                content=payload,
                headers=headers,
                timeout=self.config.timeout_seconds,
            )
        async with httpx.AsyncClient(timeout=self.config.timeout_seconds) as client:
            return await client.post(self.config.gateway_url, content=payload, headers=headers)

    async def create_payment(self, order: PayableOrder) -> GatewayResult:
        params = self.build_unified_order(order)
        try:
            resp = await self._post(dict_to_xml(params))
        except httpx.TimeoutException as e:
            raise GatewayCallFailed(f"微信统一下单超时: {e}", order_id=order.order_id) from e
        except httpx.HTTPError as e:
            raise GatewayCallFailed(f"微信统一下单请求失败: {e}", order_id=order.order_id) from e

        if resp.status_code != 200:
            raise GatewayCallFailed(f"微信统一下单 HTTP {resp.status_code}", order_id=order.order_id)

        try:
            data = xml_to_dict(resp.content)
        except CallbackParseError as e:
            raise GatewayCallFailed(f"微信统一下单响应无法解析: {e.message}", order_id=order.order_id) from e

        if data.get("return_code") != "SUCCESS":
            raise GatewayCallFailed(
                f"微信统一下单失败: {data.get('return_msg') or data.get('return_code') or 'unknown'}",
                order_id=order.order_id,
            )
        if data.get("sign") and not wechat_verify(data, self.config.key):
            raise GatewayCallFailed("微信统一下单响应签名校验失败", order_id=order.order_id)
        if data.get("result_code") != "SUCCESS":
            raise GatewayCallFailed(
                f"微信统一下单业务失败: {data.get('err_code_des') or data.get('err_code') or 'unknown'}",
                order_id=order.order_id,
            )

        code_url = data.get("code_url") or ""
        prepay_id = data.get("prepay_id") or ""
        if not code_url:
            raise GatewayCallFailed("微信统一下单未返回 code_url", order_id=order.order_id)
        return GatewayResult(redirect_target=code_url, raw_fields={"code_url": code_url, "prepay_id": prepay_id})

    def parse_callback(
        self,
        body: bytes,
        query: Mapping[str, str] | None = None,
        content_type: str | None = None,
    ) -> dict[str, str]:
        return xml_to_dict(body)

    async def verify_callback(self, fields: Mapping[str, str], body: bytes) -> bool:
        return wechat_verify(fields, self.config.key)

    def interpret_callback(self, fields: Mapping[str, str]) -> CallbackPayload:
        order_id = str(fields.get("out_trade_no") or "").strip()
        if not order_id:
            raise CallbackParseError("微信回调缺少 out_trade_no")
        return_code = str(fields.get("return_code") or "").strip()
        result_code = str(fields.get("result_code") or "").strip()
        ok = return_code == "SUCCESS" and result_code == "SUCCESS"
        return CallbackPayload(
            order_id=order_id,
            external_status=f"{return_code}/{result_code}",
            result=CallbackResult.SUCCESS if ok else CallbackResult.FAILURE,
            paid_amount=parse_paid_amount("微信", "total_fee", fields.get("total_fee"), in_fen=True),
            currency=str(fields.get("fee_type") or "").strip() or None,
        )
