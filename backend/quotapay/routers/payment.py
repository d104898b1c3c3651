"""支付API路由"""
import logging
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from ..database import get_db
from ..models.user import User
from ..schemas.payment import (
    AmountRequest,
    AmountResponse,
    CallbackAck,
    CreateOrderRequest,
    CreateOrderResponse,
    OrderDetailResponse,
    OrderListResponse,
    OrderResponse,
)
from ..services.gateways.base import quantize_amount
from ..services.order_lifecycle import OrderLifecycle
from ..services.order_store import OrderStore
from ..services.payment_errors import (
    CallbackParseError,
    GatewayCallFailed,
    OrderAccessDenied,
    OrderNotFound,
    PaymentError,
    UnsupportedGateway,
)
from ..utils.deps import get_current_user, get_order_lifecycle, require_admin

router = APIRouter(prefix="/payment", tags=["支付管理"])

logger = logging.getLogger(__name__)

Lifecycle = Annotated[OrderLifecycle, Depends(get_order_lifecycle)]


@router.post("/orders", response_model=CreateOrderResponse)
async def create_order(
    data: CreateOrderRequest,
    current_user: Annotated[User, Depends(get_current_user)],
    lifecycle: Lifecycle,
):
    """创建充值订单并返回支付跳转地址"""
    try:
        created = await lifecycle.create_order(
            user_id=current_user.id,
            amount=data.amount,
            method=data.payment_method,
            discount_code=data.top_up_code,
        )
    except GatewayCallFailed as e:
        logger.error("create order: gateway call failed user=%s order=%s: %s", current_user.id, e.order_id, e.message)
        return CreateOrderResponse(
            success=False,
            message="生成支付数据失败",
            data={"order_id": e.order_id} if e.order_id else None,
        )
    except PaymentError as e:
        logger.info("create order rejected user=%s code=%s: %s", current_user.id, e.error_code, e.message)
        return CreateOrderResponse(success=False, message=e.message)

    order = created.order
    payload: dict[str, object] = {
        "order_id": order.order_id,
        "pay_amount": f"{order.pay_amount:.2f}",
        "quota_amount": int(order.quota_amount),
        "payment_method": order.gateway,
    }
    payload.update(created.gateway_result.raw_fields)
    return CreateOrderResponse(
        success=True,
        message="success",
        data=payload,
        url=created.gateway_result.redirect_target,
    )


@router.post("/amount", response_model=AmountResponse)
async def calculate_amount(data: AmountRequest, lifecycle: Lifecycle):
    """计算折后应付金额与可得额度"""
    try:
        quote = await lifecycle.quote(data.amount, data.top_up_code)
    except PaymentError as e:
        return AmountResponse(success=False, message=e.message)
    return AmountResponse(
        success=True,
        message="success",
        amount=float(quantize_amount(quote.effective_amount)),
        count=quote.quota_count,
    )


@router.get("/orders/{order_id}", response_model=OrderDetailResponse)
async def get_order(
    order_id: str,
    current_user: Annotated[User, Depends(get_current_user)],
    lifecycle: Lifecycle,
):
    """查询订单（仅本人）"""
    try:
        order = await lifecycle.get_order_for_user(order_id, current_user.id)
    except OrderNotFound:
        return OrderDetailResponse(success=False, message="订单不存在")
    except OrderAccessDenied:
        raise HTTPException(status_code=403, detail="无权查看该订单")
    return OrderDetailResponse(success=True, data=OrderResponse.model_validate(order))


@router.get("/orders", response_model=OrderListResponse)
async def list_my_orders(
    current_user: Annotated[User, Depends(get_current_user)],
    db: Annotated[AsyncSession, Depends(get_db)],
    page: Annotated[int, Query(ge=1)] = 1,
    page_size: Annotated[int, Query(ge=1, le=100)] = 20,
):
    """我的充值记录"""
    rows, total = await OrderStore(db).list_for_user(current_user.id, page, page_size)
    return OrderListResponse(success=True, data=[OrderResponse.model_validate(o) for o in rows], total=total)


@router.get("/admin/orders", response_model=OrderListResponse)
async def admin_list_orders(
    _admin: Annotated[User, Depends(require_admin)],
    db: Annotated[AsyncSession, Depends(get_db)],
    page: Annotated[int, Query(ge=1)] = 1,
    page_size: Annotated[int, Query(ge=1, le=100)] = 20,
):
    """管理员查看全部充值记录"""
    rows, total = await OrderStore(db).list_all(page, page_size)
    return OrderListResponse(success=True, data=[OrderResponse.model_validate(o) for o in rows], total=total)


@router.api_route("/callback/{method}", methods=["GET", "POST"], response_model=CallbackAck)
async def payment_callback(method: str, request: Request, lifecycle: Lifecycle):
    """支付网关异步通知

    能解析的通知一律应答 success，处理异常只记日志与回调记录，避免网关无限重发；
    无法解析或未知网关返回 400。
    """
    body = await request.body()
    query = {k: v for k, v in request.query_params.items()}
    source_ip = request.client.host if request.client else None
    try:
        resolution = await lifecycle.resolve_callback(
            method,
            body,
            query,
            request.headers.get("content-type"),
            source_ip,
        )
    except (CallbackParseError, UnsupportedGateway) as e:
        logger.warning("%s callback rejected: %s", method, e.message)
        return JSONResponse(status_code=400, content={"success": False, "message": e.message})
    except PaymentError as e:
        logger.error("%s callback handling error (%s): %s", method, e.error_code, e.message)
        return CallbackAck(success=True)

    return CallbackAck(success=True, message=resolution.outcome.value)
