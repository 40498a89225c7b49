"""
订单流程记录模型 - 记录租车订单的每一次状态流转
使得每笔订单都有完整的生命周期可追溯
"""

from datetime import datetime
from sqlalchemy import Column, Integer, String, Text, DateTime, ForeignKey
from sqlalchemy.dialects.sqlite import JSON
from sqlalchemy.orm import relationship
from app.db.base import Base


class OrderFlow(Base):
    """订单流程记录 - 订单的生命周期"""
    __tablename__ = "v3_order_flows"

    id = Column(Integer, primary_key=True, index=True)

    order_id = Column(Integer, ForeignKey("v3_rental_orders.id"), nullable=False, index=True)

    # 流程类型
    # created / confirmed / started / canceled / completed / refunded / expired
    flow_type = Column(String(20), nullable=False, comment="流程类型")

    # 流转前后状态
    from_status = Column(String(20), comment="原状态")
    to_status = Column(String(20), comment="新状态")

    description = Column(String(200), comment="操作描述")

    # 扩展数据，如：扣款金额、退款原因、网关交易号
    meta_data = Column(JSON, comment="扩展数据")

    notes = Column(Text, comment="备注")

    # 操作人（系统任务为空）
    operator_id = Column(Integer, ForeignKey("sys_user.id"), nullable=True)
    operated_at = Column(DateTime, default=datetime.utcnow, comment="操作时间")

    created_at = Column(DateTime, default=datetime.utcnow)

    # 关系
    order = relationship("RentalOrder", back_populates="flows")
    operator = relationship("User", foreign_keys=[operator_id])

    def __repr__(self):
        return f"<OrderFlow {self.order_id}: {self.flow_type} ({self.from_status}->{self.to_status})>"

    @property
    def type_display(self) -> str:
        """类型显示名称"""
        type_map = {
            "created": "下单",
            "confirmed": "押金确认",
            "started": "交车",
            "canceled": "取消",
            "completed": "还车完成",
            "refunded": "退款",
            "expired": "超时取消",
        }
        return type_map.get(self.flow_type, self.flow_type)
