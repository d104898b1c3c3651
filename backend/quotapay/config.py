"""应用配置"""
import sys
from functools import lru_cache
from typing import ClassVar, cast

from pydantic import AliasChoices, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _running_tests() -> bool:
    return "pytest" in sys.modules


class Settings(BaseSettings):
    """应用设置"""
    app_name: str = "QuotaPay"
    debug: bool = Field(default_factory=_running_tests)

    database_url: str = "sqlite+aiosqlite:///./data/quotapay.db"
    redis_url: str = ""

    # JWT（由账号服务签发，这里只做校验）
    secret_key: str = Field(
        default="your-super-secret-key-change-in-production",
        validation_alias=AliasChoices("SECRET_KEY", "JWT_SECRET_KEY"),
    )
    algorithm: str = "HS256"

    cors_allow_origins: list[str] = ["http://localhost:3000"]

    log_level: str = "INFO"
    log_dir: str = "logs"

    # 回调地址前缀，例如 https://api.example.com
    server_address: str = "http://localhost:3000"

    # 1 元可兑换的额度
    quota_per_unit: float = 500000.0
    gateway_timeout_seconds: float = 10.0
    seed_discount_codes: bool = True

    # 支付宝
    alipay_app_id: str = ""
    alipay_private_key: str = ""
    alipay_public_key: str = ""
    alipay_gateway_url: str = "https://openapi.alipay.com/gateway.do"
    alipay_return_url: str = ""
    alipay_allow_unverified_callbacks: bool = False

    # 微信支付（v2 MD5 签名）
    wechat_app_id: str = ""
    wechat_mch_id: str = ""
    wechat_key: str = ""
    wechat_gateway_url: str = "https://api.mch.weixin.qq.com/pay/unifiedorder"
    wechat_spbill_create_ip: str = "127.0.0.1"
    wechat_allow_unverified_callbacks: bool = False

    # PayPal（IPN）
    paypal_business: str = ""
    paypal_gateway_url: str = "https://www.paypal.com/cgi-bin/webscr"
    paypal_verify_url: str = "https://ipnpb.paypal.com/cgi-bin/webscr"
    paypal_currency: str = "USD"
    paypal_allow_unverified_callbacks: bool = False

    # 卡在 processing 的订单对账
    reconcile_enabled: bool = True
    reconcile_interval_seconds: float = 60.0
    reconcile_processing_timeout_seconds: int = 300
    reconcile_stuck_action: str = "resume"
    reconcile_batch_size: int = 100

    model_config: ClassVar[SettingsConfigDict] = cast(
        SettingsConfigDict,
        cast(
            object,
            {
                "env_file": None if _running_tests() else ".env",
                "extra": "ignore",
            },
        ),
    )

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _parse_cors_allow_origins(cls, value: object):
        if isinstance(value, str):
            parts = [p.strip() for p in value.replace("，", ",").split(",")]
            return [p for p in parts if p]
        return value

    @field_validator("reconcile_stuck_action", mode="before")
    @classmethod
    def _parse_stuck_action(cls, value: object):
        s = str(value or "").strip().lower()
        if s not in {"resume", "revert"}:
            raise ValueError("RECONCILE_STUCK_ACTION must be 'resume' or 'revert'")
        return s

    @field_validator("quota_per_unit")
    @classmethod
    def _check_quota_per_unit(cls, value: float):
        if value <= 0:
            raise ValueError("QUOTA_PER_UNIT must be positive")
        return value

    @model_validator(mode="after")
    def _validate_security(self):
        if _running_tests():
            return self
        insecure_defaults = {
            "your-super-secret-key-change-in-production",
            "your-secret-key-here",
        }
        if not self.debug:
            if self.secret_key in insecure_defaults or len(self.secret_key) < 32:
                raise ValueError("SECRET_KEY must be set to a secure value when DEBUG is False")
        return self

    @property
    def callback_base_url(self) -> str:
        return f"{self.server_address.strip().rstrip('/')}/api/payment/callback"


@lru_cache()
def get_settings() -> Settings:
    """获取缓存的设置实例"""
    return Settings()
