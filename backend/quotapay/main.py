"""QuotaPay - 额度充值支付服务"""
import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import ResponseValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import get_settings
from .database import AsyncSessionLocal, init_db
from .middleware.logging_middleware import RequestLoggingMiddleware
from .routers import api_router
from .services.cache_service import cache_service
from .services.order_lifecycle import OrderLifecycle
from .services.reconcile_service import RECONCILE_LOCK_KEY, ReconcileService
from .utils.logging_config import setup_logging
from .utils.periodic_task_runner import PeriodicLockedRunner

settings = get_settings()

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用生命周期管理"""
    _ = app
    setup_logging(settings.log_level, settings.log_dir, settings.app_name)
    await init_db()

    if settings.redis_url:
        _ = await cache_service.connect(settings.redis_url)

    stop_event = asyncio.Event()
    reconcile_task: asyncio.Task[None] | None = None
    if settings.reconcile_enabled:
        reconciler = ReconcileService(
            AsyncSessionLocal,
            OrderLifecycle(AsyncSessionLocal, settings),
            settings,
        )
        runner = PeriodicLockedRunner(stop_event=stop_event, lock_client=cache_service, logger=logger)
        reconcile_task = asyncio.create_task(
            runner.run(
                lock_key=RECONCILE_LOCK_KEY,
                lock_ttl_seconds=max(30, int(settings.reconcile_interval_seconds) * 2),
                interval_seconds=settings.reconcile_interval_seconds,
                job=reconciler.sweep,
            )
        )
        logger.info("支付对账任务已启动，间隔 %ss", settings.reconcile_interval_seconds)

    logger.info("数据库初始化完成")

    yield

    stop_event.set()
    if reconcile_task is not None:
        reconcile_task.cancel()
        try:
            await reconcile_task
        except asyncio.CancelledError:
            pass

    await cache_service.disconnect()

    logger.info("应用关闭")


app = FastAPI(
    title=settings.app_name,
    description="""
# QuotaPay API

通过支付宝、微信支付、PayPal 购买账户额度。

## 认证方式

使用 JWT Bearer Token 认证，在请求头中添加：
```
Authorization: Bearer <your_token>
```

支付网关回调 `/api/payment/callback/{method}` 无需认证，以网关签名校验来源。
""",
    version="1.0.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_tags=[
        {"name": "支付管理", "description": "充值订单、金额计算与网关回调"},
    ],
)


@app.exception_handler(ResponseValidationError)
async def response_validation_exception_handler(request: Request, exc: ResponseValidationError):
    logger.exception("Response validation error path=%s", request.url.path)
    return JSONResponse(
        status_code=500,
        content={"detail": exc.errors() if settings.debug else "服务器错误"},
    )


app.add_middleware(RequestLoggingMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_allow_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(api_router, prefix="/api")


@app.get("/health")
async def health_check():
    """健康检查"""
    return {"status": "healthy"}
