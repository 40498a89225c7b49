from typing import List, Union
import logging

from pydantic import AnyHttpUrl, Field, validator
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)

class Settings(BaseSettings):
    PROJECT_NAME: str = "EV租车订单结算系统"
    API_V3_STR: str = "/api/v3"

    # CORS配置
    BACKEND_CORS_ORIGINS: List[Union[str, AnyHttpUrl]] = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]

    @validator("BACKEND_CORS_ORIGINS", pre=True)
    def assemble_cors_origins(cls, v: Union[str, List[str]]) -> Union[List[str], str]:
        if isinstance(v, str) and not v.startswith("["):
            return [i.strip() for i in v.split(",")]
        elif isinstance(v, (list, str)):
            return v
        raise ValueError(v)

    # 数据库配置
    SQLITE_DATABASE_URI: str = "sqlite:///./ev_rental.db"
    # SQLite 写锁等待时间（秒）
    SQLITE_BUSY_TIMEOUT: int = 15

    # 日志配置
    LOG_TO_FILE: bool = True
    LOG_DIR: str = "logs"

    # 计价配置
    TIERED_PRICING_ENABLED: bool = Field(default=False, description="是否启用12小时阶梯折扣计价")

    # 订单配置
    ORDER_CODE_LENGTH: int = 6
    ORDER_CODE_MAX_ATTEMPTS: int = 10

    # 结算配置
    # 尾款为负（多付）时是否在完成订单后自动退回差额，默认人工处理
    AUTO_REFUND_OVERPAYMENT: bool = False

    # 待支付订单过期配置
    PENDING_ORDER_EXPIRY_ENABLED: bool = True
    PENDING_ORDER_EXPIRE_MINUTES: int = 30
    PENDING_ORDER_CHECK_INTERVAL_MINUTES: int = 5

    # VNPay 网关配置
    VNPAY_TMN_CODE: str = "DEMO0001"
    VNPAY_HASH_SECRET: str = Field(
        default="dev-only-vnpay-secret-please-change",
        description="VNPay签名密钥，生产环境必须修改"
    )
    VNPAY_PAY_URL: str = "https://sandbox.vnpayment.vn/paymentv2/vpcpay.html"
    VNPAY_VERSION: str = "2.1.0"
    VNPAY_RETURN_URL: str = "http://localhost:8000/api/v3/payments/gateway/callback"
    VNPAY_CANCEL_URL: str = "http://localhost:3000/orders"

    class Config:
        case_sensitive = True
        env_file = ".env"


settings = Settings()
logger.info(f"加载配置: API_V3_STR={settings.API_V3_STR}, DB={settings.SQLITE_DATABASE_URI}")
