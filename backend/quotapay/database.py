"""数据库配置"""
import importlib
import logging
from pathlib import Path

from sqlalchemy import event, func, select
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from .config import get_settings

settings = get_settings()

logger = logging.getLogger(__name__)

if settings.database_url.startswith("sqlite"):
    parts = settings.database_url.split("///", 1)
    if len(parts) == 2:
        db_path = parts[1]
        if db_path.startswith("./"):
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)


def install_sqlite_write_locking(async_engine: AsyncEngine) -> None:
    """SQLite 不支持 SELECT ... FOR UPDATE，改为每个事务以 BEGIN IMMEDIATE 开始，
    事务之间按写锁串行，订单状态的读-改-写不会交错。"""
    if async_engine.url.get_backend_name() != "sqlite":
        return

    @event.listens_for(async_engine.sync_engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(async_engine.sync_engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def create_engine_for(database_url: str, **kwargs) -> AsyncEngine:
    if database_url.startswith("sqlite"):
        kwargs.setdefault("connect_args", {"timeout": 30})
    async_engine = create_async_engine(database_url, echo=False, future=True, **kwargs)
    install_sqlite_write_locking(async_engine)
    return async_engine


engine = create_engine_for(settings.database_url)

AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autocommit=False,
    autoflush=False,
)


class Base(DeclarativeBase):
    pass


MODEL_MODULES = (
    "quotapay.models.user",
    "quotapay.models.payment",
)

DEFAULT_DISCOUNT_CODES = {
    "WELCOME10": 0.10,
    "NEWUSER20": 0.20,
    "VIP15": 0.15,
}


async def get_db():
    """获取数据库会话"""
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """订单状态机需要自己管理多段事务，因此注入的是会话工厂"""
    return AsyncSessionLocal


async def init_db() -> None:
    """初始化数据库表"""
    for module_name in MODEL_MODULES:
        _ = importlib.import_module(module_name)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    if settings.seed_discount_codes:
        async with AsyncSessionLocal() as session:
            await seed_discount_codes(session)


async def seed_discount_codes(session: AsyncSession) -> int:
    """折扣码表为空时写入默认折扣码"""
    from .models.payment import DiscountCode

    count = (await session.execute(select(func.count(DiscountCode.id)))).scalar() or 0
    if int(count) > 0:
        return 0

    for code, ratio in DEFAULT_DISCOUNT_CODES.items():
        session.add(DiscountCode(code=code, discount_ratio=ratio, enabled=True))
    await session.commit()
    logger.info("seeded %s default discount codes", len(DEFAULT_DISCOUNT_CODES))
    return len(DEFAULT_DISCOUNT_CODES)
