"""
Commerce Ledger Configuration Management
遵循约束：环境变量前缀 CL__
"""
from decimal import Decimal
from functools import lru_cache
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """全局配置类"""
    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="CL__",
        case_sensitive=False
    )

    # Database
    db_host: str = Field(default="localhost")
    db_port: int = Field(default=5432)
    db_name: str = Field(default="commerce_ledger")
    db_user: str = Field(default="commerce")
    db_password: str = Field(default="")
    db_pool_size: int = Field(default=10)
    db_max_overflow: int = Field(default=20)
    db_echo: bool = Field(default=False)
    # 直接指定连接串时优先使用（测试环境使用 sqlite+aiosqlite）
    db_url: Optional[str] = Field(default=None)

    # Pricing
    currency: str = Field(default="SGD")
    tax_rate_percent: Decimal = Field(default=Decimal("9"))
    shipping_threshold: Decimal = Field(default=Decimal("60"))
    shipping_fee: Decimal = Field(default=Decimal("5"))
    voucher_role: str = Field(default="adopter")

    # Wallet / 风控阈值
    wallet_balance_cap: Decimal = Field(default=Decimal("1000"))
    wallet_topup_max_per_txn: Decimal = Field(default=Decimal("500"))
    topup_rapid_window_minutes: int = Field(default=10)
    topup_rapid_max_count: int = Field(default=3)
    topup_volume_window_hours: int = Field(default=24)
    topup_volume_threshold: Decimal = Field(default=Decimal("800"))

    # Refunds
    refund_max_rejections: int = Field(default=3)

    # PayPal
    paypal_api_base: str = Field(default="https://api-m.sandbox.paypal.com")
    paypal_client_id: str = Field(default="")
    paypal_client_secret: str = Field(default="")
    gateway_timeout_seconds: float = Field(default=30.0)

    # NETS QR
    nets_api_base: str = Field(default="https://sandbox.nets.openapipaas.com")
    nets_api_key: str = Field(default="")
    nets_project_id: str = Field(default="")
    nets_txn_id: str = Field(default="sandbox_nets|m|8ff8e5b6-d43e-4786-8ac5-7accf8c5bd9b")
    qr_poll_interval_seconds: float = Field(default=5.0)
    qr_poll_max_attempts: int = Field(default=60)

    # Monitoring
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="json")  # json or text

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v):
        """币种统一为 3 位大写代码"""
        v = v.strip().upper()
        if len(v) != 3:
            raise ValueError("currency must be a 3-letter ISO code")
        return v

    @field_validator("tax_rate_percent", "shipping_threshold", "shipping_fee")
    @classmethod
    def validate_non_negative(cls, v):
        if v < 0:
            raise ValueError("pricing values cannot be negative")
        return v

    @field_validator("voucher_role")
    @classmethod
    def validate_voucher_role(cls, v):
        return v.strip().lower()

    @property
    def database_url(self) -> str:
        """构建数据库连接字符串"""
        if self.db_url:
            return self.db_url
        return f"postgresql+asyncpg://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"

    @property
    def sync_database_url(self) -> str:
        """构建同步数据库连接字符串（用于 Alembic）"""
        if self.db_url:
            return self.db_url.replace("+asyncpg", "").replace("+aiosqlite", "")
        return f"postgresql://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"


@lru_cache()
def get_settings() -> Settings:
    """获取配置单例"""
    return Settings()
