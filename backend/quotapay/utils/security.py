"""JWT 工具（令牌由账号服务签发，这里负责校验）"""
from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt

from ..config import get_settings


def create_access_token(data: dict[str, object], expires_delta: timedelta | None = None) -> str:
    """创建 JWT Token"""
    settings = get_settings()
    to_encode = dict(data)
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=60))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.secret_key, algorithm=settings.algorithm)


def decode_token(token: str) -> dict[str, object] | None:
    """解码 JWT Token，无效或过期返回 None"""
    settings = get_settings()
    try:
        return jwt.decode(token, settings.secret_key, algorithms=[settings.algorithm])
    except JWTError:
        return None
