"""
支付网关

结算编排层只依赖 PaymentGateway 协议：
- create_redirect_url: 生成跳转支付地址
- verify_callback: 校验回调签名并解析结果，签名不对直接抛 ExternalGatewayError

目前只有 VNPay 一个实现（HMAC-SHA512 签名的查询串）。
"""

import hashlib
import hmac
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Mapping, Optional, Protocol
from urllib.parse import urlencode

from app.core.config import settings
from app.core.errors import ExternalGatewayError
from app.core.logging_config import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class GatewayCallback:
    """已校验签名的回调结果"""
    order_ref: str
    success: bool
    transaction_id: Optional[str]
    amount: Decimal
    response_code: Optional[str] = None


class PaymentGateway(Protocol):
    code: str

    def create_redirect_url(self, order_ref: str, amount: Decimal, return_url: str,
                            cancel_url: Optional[str] = None) -> str:
        ...

    def verify_callback(self, params: Mapping[str, str]) -> GatewayCallback:
        ...


class VNPayGateway:
    """VNPay 跳转支付"""
    code = "vnpay"

    SUCCESS_CODE = "00"

    def __init__(
        self,
        tmn_code: str,
        hash_secret: str,
        pay_url: str,
        version: str = "2.1.0",
        client_ip: str = "127.0.0.1",
    ):
        self.tmn_code = tmn_code
        self.hash_secret = hash_secret
        self.pay_url = pay_url
        self.version = version
        self.client_ip = client_ip

    @staticmethod
    def _query_string(params: Mapping[str, str]) -> str:
        # 只对 vnp_ 参数签名，按参数名排序，值为空的不参与
        items = sorted(
            (key, str(value)) for key, value in params.items()
            if key.startswith("vnp_") and value not in (None, "")
        )
        return urlencode(items)

    def sign(self, params: Mapping[str, str]) -> str:
        return hmac.new(
            self.hash_secret.encode("utf-8"),
            self._query_string(params).encode("utf-8"),
            hashlib.sha512,
        ).hexdigest()

    def create_redirect_url(self, order_ref: str, amount: Decimal, return_url: str,
                            cancel_url: Optional[str] = None) -> str:
        params = {
            "vnp_Version": self.version,
            "vnp_Command": "pay",
            "vnp_TmnCode": self.tmn_code,
            # VNPay 金额单位为 1/100
            "vnp_Amount": str(int(Decimal(str(amount)) * 100)),
            "vnp_CurrCode": "VND",
            "vnp_TxnRef": order_ref,
            "vnp_OrderInfo": f"Thanh toan {order_ref}",
            "vnp_OrderType": "other",
            "vnp_Locale": "vn",
            "vnp_CreateDate": datetime.now().strftime("%Y%m%d%H%M%S"),
            "vnp_IpAddr": self.client_ip,
            "vnp_ReturnUrl": return_url,
        }
        if cancel_url:
            params["vnp_CancelUrl"] = cancel_url

        query = self._query_string(params)
        url = f"{self.pay_url}?{query}&vnp_SecureHash={self.sign(params)}"
        logger.info(f"生成 VNPay 支付地址: 单号={order_ref} 金额={amount}")
        return url

    def verify_callback(self, params: Mapping[str, str]) -> GatewayCallback:
        received = params.get("vnp_SecureHash")
        if not received:
            raise ExternalGatewayError("支付回调缺少签名")

        signed = {
            key: value for key, value in params.items()
            if key not in ("vnp_SecureHash", "vnp_SecureHashType")
        }
        if not hmac.compare_digest(self.sign(signed).lower(), str(received).lower()):
            logger.warning(f"VNPay 回调签名校验失败: 单号={params.get('vnp_TxnRef')}")
            raise ExternalGatewayError("支付回调签名校验失败")

        order_ref = params.get("vnp_TxnRef")
        if not order_ref:
            raise ExternalGatewayError("支付回调缺少单号")

        try:
            amount = Decimal(str(params.get("vnp_Amount", "0"))) / 100
        except InvalidOperation:
            raise ExternalGatewayError("支付回调金额格式错误")

        response_code = params.get("vnp_ResponseCode")
        success = (
            response_code == self.SUCCESS_CODE
            and params.get("vnp_TransactionStatus", self.SUCCESS_CODE) == self.SUCCESS_CODE
        )
        return GatewayCallback(
            order_ref=order_ref,
            success=success,
            transaction_id=params.get("vnp_TransactionNo") or None,
            amount=amount,
            response_code=response_code,
        )


def get_gateway() -> PaymentGateway:
    """按配置创建网关"""
    return VNPayGateway(
        tmn_code=settings.VNPAY_TMN_CODE,
        hash_secret=settings.VNPAY_HASH_SECRET,
        pay_url=settings.VNPAY_PAY_URL,
        version=settings.VNPAY_VERSION,
    )
