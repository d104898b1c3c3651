"""依赖注入"""
import logging
from typing import Annotated

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..config import get_settings
from ..database import get_session_factory
from ..models.user import User
from ..services.order_lifecycle import OrderLifecycle
from .security import decode_token

security = HTTPBearer(auto_error=False)

logger = logging.getLogger(__name__)

SessionFactory = Annotated[async_sessionmaker[AsyncSession], Depends(get_session_factory)]


async def get_current_user(
    session_factory: SessionFactory,
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)] = None,
) -> User:
    """获取当前登录用户（用户查询在独立的短会话里完成，不占用后续订单事务）"""
    if not credentials:
        logger.info("auth: missing credentials")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="未提供认证凭证",
            headers={"WWW-Authenticate": "Bearer"},
        )

    payload = decode_token(credentials.credentials)
    if payload is None:
        logger.info("auth: token decode failed")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="无效的认证凭证",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        user_id = int(str(payload.get("sub")))
    except (TypeError, ValueError):
        logger.info("auth: token sub not int")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="无效的认证凭证",
        )

    async with session_factory() as db:
        result = await db.execute(select(User).where(User.id == user_id))
        user = result.scalar_one_or_none()

    if user is None:
        logger.info("auth: user not found (id=%s)", user_id)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="用户不存在",
        )

    if not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="用户已被禁用",
        )

    return user


async def require_admin(current_user: Annotated[User, Depends(get_current_user)]) -> User:
    """要求管理员权限"""
    if current_user.role != "admin":
        logger.warning(
            f"权限检查失败: 用户 {current_user.username} (role={current_user.role}) 尝试访问管理员资源"
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="需要管理员权限",
        )
    return current_user


def get_order_lifecycle(session_factory: SessionFactory) -> OrderLifecycle:
    return OrderLifecycle(session_factory, get_settings())
