"""
租车订单模型

生命周期：
- PENDING: 已下单，车辆已锁定，押金未支付
- CONFIRMED: 押金已支付
- ONGOING: 员工交车，客户用车中
- COMPLETED: 已还车并结清尾款
- CANCELED: 已取消（仅 PENDING / CONFIRMED 可取消）
- REFUNDED: 完成后已退款

订单只允许由订单状态机修改，永不物理删除（is_active 软删除）
"""

from datetime import datetime
from decimal import Decimal
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, DECIMAL, Boolean
from sqlalchemy.orm import relationship
from app.db.base import Base


class OrderStatus:
    """订单状态"""
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    ONGOING = "ONGOING"
    COMPLETED = "COMPLETED"
    CANCELED = "CANCELED"
    REFUNDED = "REFUNDED"

    ALL = (PENDING, CONFIRMED, ONGOING, COMPLETED, CANCELED, REFUNDED)

    # 占用车辆的状态
    ACTIVE = (PENDING, CONFIRMED, ONGOING)


class RentalOrder(Base):
    """租车订单"""
    __tablename__ = "v3_rental_orders"

    id = Column(Integer, primary_key=True, index=True)

    # 订单码（6位大写字母+数字，客户到站点取车时出示）
    order_code = Column(String(20), unique=True, nullable=False, index=True, comment="订单码")

    customer_id = Column(Integer, ForeignKey("sys_user.id"), nullable=False, index=True, comment="客户ID")
    vehicle_id = Column(Integer, ForeignKey("v3_vehicles.id"), nullable=False, index=True, comment="车辆ID")

    order_date = Column(DateTime, default=datetime.utcnow, comment="下单时间")
    start_time = Column(DateTime, nullable=False, comment="预约开始时间")
    # 为空表示未约定结束时间，可用性检查时视为无限期占用
    end_time = Column(DateTime, comment="预约结束时间")
    return_time = Column(DateTime, comment="实际还车时间")

    # 金额（整数货币单位）
    base_price = Column(DECIMAL(12, 2), nullable=False, default=Decimal("0.00"), comment="基础价")
    discount_amount = Column(DECIMAL(12, 2), nullable=False, default=Decimal("0.00"), comment="优惠金额")
    deposit_amount = Column(DECIMAL(12, 2), nullable=False, default=Decimal("0.00"), comment="押金")
    total_price = Column(DECIMAL(12, 2), nullable=False, default=Decimal("0.00"), comment="总价")

    promotion_id = Column(Integer, ForeignKey("v3_promotions.id"), comment="促销ID")
    staff_id = Column(Integer, ForeignKey("sys_user.id"), comment="交车员工ID")

    status = Column(String(20), nullable=False, default=OrderStatus.PENDING, index=True, comment="订单状态")
    is_active = Column(Boolean, nullable=False, default=True, comment="是否有效（软删除）")

    # 审计字段
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    completed_at = Column(DateTime, comment="完成时间")
    canceled_at = Column(DateTime, comment="取消时间")

    # 关系
    customer = relationship("User", foreign_keys=[customer_id])
    staff = relationship("User", foreign_keys=[staff_id])
    vehicle = relationship("Vehicle")
    promotion = relationship("Promotion")

    flows = relationship("OrderFlow", back_populates="order", cascade="all, delete-orphan",
                         order_by="OrderFlow.id")
    payments = relationship("Payment", back_populates="order", order_by="Payment.id")
    damage_reports = relationship("DamageReport", back_populates="order")

    def __repr__(self):
        return f"<RentalOrder {self.order_code} ({self.status})>"

    @property
    def is_terminal(self) -> bool:
        return self.status in (OrderStatus.COMPLETED, OrderStatus.CANCELED, OrderStatus.REFUNDED)

    @property
    def occupies_vehicle(self) -> bool:
        """是否占用车辆"""
        return bool(self.is_active) and self.status in OrderStatus.ACTIVE

    @property
    def status_display(self) -> str:
        """状态显示名称"""
        status_map = {
            OrderStatus.PENDING: "待付押金",
            OrderStatus.CONFIRMED: "已确认",
            OrderStatus.ONGOING: "用车中",
            OrderStatus.COMPLETED: "已完成",
            OrderStatus.CANCELED: "已取消",
            OrderStatus.REFUNDED: "已退款",
        }
        return status_map.get(self.status, self.status)
