from pydantic_settings import BaseSettings
from typing import Optional
from decimal import Decimal
from enum import Enum


class Environment(str, Enum):

    """运行环境枚举"""
    TESTING = "testing"
    PRODUCTION = "production"


class Settings(BaseSettings):

    # 应用基础配置
    app_name: str = "FreshBox Order Engine"
    app_version: str = "1.0.0"
    environment: Environment = Environment.TESTING
    debug: bool = True

    # 数据库配置
    database_url: Optional[str] = None
    db_host: str = "localhost"
    db_port: int = 5432
    db_name: str = "freshbox_db"
    db_user: str = "freshbox_user"
    db_password: str = "freshbox_password"
    db_isolation_level: Optional[str] = "READ COMMITTED"
    auto_create_tables: bool = False

    # Redis配置 (订单缓存 + 订单追踪)
    redis_url: Optional[str] = None
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_password: Optional[str] = None
    redis_db: int = 0

    # PayOS支付网关配置
    payos_client_id: str = ""
    payos_api_key: str = ""
    payos_checksum_key: str = ""
    payos_base_url: str = "https://api-merchant.payos.vn"
    payos_return_url: str = "http://localhost:3000/payment/success"
    payos_cancel_url: str = "http://localhost:3000/payment/cancel"
    payos_timeout: int = 30
    payos_link_expire_minutes: int = 15

    # 业务规则配置
    weekly_package_price: Decimal = Decimal("250000")
    weekly_package_gap_days: int = 3
    weekly_subscription_rate: Decimal = Decimal("0.85")
    boxes_per_week: int = 2
    max_subscription_weeks: int = 52
    default_first_delivery_day: int = 0  # 周一
    default_second_delivery_day: int = 3  # 周四

    # 订单追踪配置
    pending_order_alert_hours: int = 24
    payment_failure_alert_threshold: int = 3
    tracker_ttl_seconds: int = 7 * 24 * 3600

    # 日志配置
    log_level: str = "INFO"

    @property
    def is_testing(self) -> bool:
        return self.environment == Environment.TESTING

    @property
    def is_production(self) -> bool:
        return self.environment == Environment.PRODUCTION

    @property
    def database_url_computed(self) -> str:
        """计算数据库URL"""
        if self.database_url:
            return self.database_url
        return f"postgresql+asyncpg://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"

    @property
    def redis_url_computed(self) -> str:
        """计算Redis URL"""
        if self.redis_url:
            return self.redis_url
        if self.redis_password:
            return f"redis://:{self.redis_password}@{self.redis_host}:{self.redis_port}/{self.redis_db}"
        return f"redis://{self.redis_host}:{self.redis_port}/{self.redis_db}"

    class Config:
        env_file = ".env"
        case_sensitive = False


# 全局配置实例
settings = Settings()
