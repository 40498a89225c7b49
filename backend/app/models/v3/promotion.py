"""
促销与车损模型 - 计价的只读输入

- 促销码：由运营维护，优惠码一旦被订单引用就不能再修改
- 车损报告：由车损模块维护，本系统只按订单读取估算金额，作为尾款附加费
"""

from datetime import datetime
from decimal import Decimal
from sqlalchemy import Column, Integer, String, Text, DateTime, ForeignKey, DECIMAL, Boolean, CheckConstraint
from sqlalchemy.orm import relationship
from app.db.base import Base


class Promotion(Base):
    """促销码"""
    __tablename__ = "v3_promotions"
    __table_args__ = (
        CheckConstraint(
            "discount_percentage >= 1 AND discount_percentage <= 100",
            name="ck_v3_promotions_discount_range",
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    promo_code = Column(String(50), unique=True, nullable=False, index=True, comment="优惠码")
    discount_percentage = Column(DECIMAL(5, 2), nullable=False, comment="折扣百分比（1-100）")

    # 有效期 [start_date, end_date]
    start_date = Column(DateTime, nullable=False, comment="生效时间")
    end_date = Column(DateTime, nullable=False, comment="失效时间")

    is_active = Column(Boolean, default=True, comment="是否启用")

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __repr__(self):
        return f"<Promotion {self.promo_code} -{self.discount_percentage}%>"

    def is_applicable(self, now: datetime) -> bool:
        """是否在有效期内且启用"""
        return bool(self.is_active) and self.start_date <= now <= self.end_date


class DamageReport(Base):
    """车损报告 - 还车时计入尾款"""
    __tablename__ = "v3_damage_reports"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("v3_rental_orders.id"), nullable=False, index=True)
    vehicle_id = Column(Integer, ForeignKey("v3_vehicles.id"), nullable=False, index=True)

    description = Column(Text, nullable=False, comment="损坏描述")
    estimated_cost = Column(DECIMAL(12, 2), nullable=False, default=Decimal("0.00"), comment="估算维修费")

    is_active = Column(Boolean, default=True, comment="是否有效")

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    order = relationship("RentalOrder", back_populates="damage_reports")

    def __repr__(self):
        return f"<DamageReport order={self.order_id} cost={self.estimated_cost}>"
