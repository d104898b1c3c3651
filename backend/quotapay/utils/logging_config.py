"""日志配置"""
import logging
import sys
from datetime import datetime
from pathlib import Path

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s:%(lineno)d | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# 订单状态机、网关与对账的日志额外写一份支付审计文件
PAYMENT_LOGGER_NAMES = (
    "quotapay.services.order_lifecycle",
    "quotapay.services.reconcile_service",
    "quotapay.services.credit_ledger",
    "quotapay.services.gateways",
)


def _file_handler(path: Path, level: int) -> logging.FileHandler:
    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(LOG_FORMAT, DATE_FORMAT))
    return handler


def setup_logging(
    log_level: str = "INFO",
    log_dir: str = "logs",
    app_name: str = "quotapay",
) -> None:
    """
    配置日志系统

    Args:
        log_level: 日志级别
        log_dir: 日志目录
        app_name: 应用名称，用作日志文件前缀
    """
    log_path = Path(log_dir)
    log_path.mkdir(parents=True, exist_ok=True)
    prefix = app_name.strip().lower().replace(" ", "_") or "quotapay"
    today = datetime.now().strftime("%Y-%m-%d")

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.DEBUG)
    console_handler.setFormatter(logging.Formatter(LOG_FORMAT, DATE_FORMAT))
    root_logger.addHandler(console_handler)

    root_logger.addHandler(_file_handler(log_path / f"{prefix}_{today}.log", logging.INFO))
    root_logger.addHandler(_file_handler(log_path / f"{prefix}_error_{today}.log", logging.ERROR))

    payment_handler = _file_handler(log_path / f"{prefix}_payment_{today}.log", logging.INFO)
    for name in PAYMENT_LOGGER_NAMES:
        payment_logger = logging.getLogger(name)
        for h in list(payment_logger.handlers):
            payment_logger.removeHandler(h)
            h.close()
        payment_logger.addHandler(payment_handler)

    # 降低第三方库日志级别
    logging.getLogger("uvicorn").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    logging.info("Logging configured: level=%s, dir=%s", log_level, log_dir)
