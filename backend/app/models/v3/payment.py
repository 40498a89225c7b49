"""
支付记录模型 - 记录订单的押金、尾款、退款
"""

from datetime import datetime
from decimal import Decimal
from sqlalchemy import Column, Integer, String, Text, DateTime, ForeignKey, DECIMAL, Boolean
from sqlalchemy.orm import relationship
from app.db.base import Base


class PaymentType:
    DEPOSIT = "DEPOSIT"
    FINAL = "FINAL"
    REFUND = "REFUND"


class PaymentStatus:
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELED = "CANCELED"


class PaymentMethod:
    WALLET = "WALLET"
    GATEWAY = "GATEWAY"
    CASH = "CASH"

    ALL = (WALLET, GATEWAY, CASH)


class Payment(Base):
    """支付记录

    支持场景：
    - 钱包支付押金/尾款（立即完成）
    - 网关支付押金/尾款（先 PENDING，回调成功后 COMPLETED）
    - 现金尾款（员工收款后直接完成）
    - 退款（退回钱包）
    """
    __tablename__ = "v3_payments"

    id = Column(Integer, primary_key=True, index=True)

    # 支付单号（自动生成）
    # 格式：DEP20250101120000AB12（押金）、FIN...（尾款）、REF...（退款）
    payment_no = Column(String(50), unique=True, nullable=False, index=True, comment="支付单号")

    order_id = Column(Integer, ForeignKey("v3_rental_orders.id"), nullable=False, index=True)

    amount = Column(DECIMAL(12, 2), nullable=False, comment="金额")
    method = Column(String(20), nullable=False, comment="支付方式")
    payment_type = Column(String(20), nullable=False, index=True, comment="支付类型")
    status = Column(String(20), nullable=False, default=PaymentStatus.PENDING, index=True, comment="状态")

    # 网关交易号（网关回调时写入）
    gateway_tx_id = Column(String(100), unique=True, nullable=True, comment="网关交易号")
    gateway_response = Column(Text, comment="网关原始响应")
    idempotency_key = Column(String(100), unique=True, nullable=True, comment="幂等键")

    payment_date = Column(DateTime, default=datetime.utcnow, comment="支付时间")
    is_active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # 关系
    order = relationship("RentalOrder", back_populates="payments")

    def __repr__(self):
        return f"<Payment {self.payment_no}: {self.payment_type} {self.amount} ({self.status})>"

    @property
    def type_display(self) -> str:
        type_map = {
            PaymentType.DEPOSIT: "押金",
            PaymentType.FINAL: "尾款",
            PaymentType.REFUND: "退款",
        }
        return type_map.get(self.payment_type, self.payment_type)

    @property
    def status_display(self) -> str:
        status_map = {
            PaymentStatus.PENDING: "待支付",
            PaymentStatus.COMPLETED: "已完成",
            PaymentStatus.FAILED: "失败",
            PaymentStatus.CANCELED: "已取消",
        }
        return status_map.get(self.status, self.status)
