"""
车辆模型

结构说明：
- 车型（VehicleModel）
  └── 车辆（Vehicle）
      - 序列号（必填，唯一标识）
      - 所在站点（可为空，未分配站点）
      - 状态：AVAILABLE / RENTED / MAINTENANCE / CHARGING

车型和车辆的增删改由外部站点系统负责，本系统只读取车型单价、
并在下单/还车/取消时修改车辆状态。
"""
from datetime import datetime
from decimal import Decimal
from sqlalchemy import Column, Integer, String, Boolean, DateTime, ForeignKey, DECIMAL
from sqlalchemy.orm import relationship
from app.db.base import Base


class VehicleStatus:
    """车辆状态"""
    AVAILABLE = "AVAILABLE"
    RENTED = "RENTED"
    MAINTENANCE = "MAINTENANCE"
    CHARGING = "CHARGING"

    ALL = (AVAILABLE, RENTED, MAINTENANCE, CHARGING)


class VehicleModel(Base):
    """车型 - 决定每小时租金"""
    __tablename__ = "v3_vehicle_models"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=False, comment="车型名称")
    price_per_hour = Column(DECIMAL(12, 2), nullable=False, default=Decimal("0.00"), comment="每小时租金")
    is_active = Column(Boolean, default=True, comment="是否启用")

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    vehicles = relationship("Vehicle", back_populates="model")

    def __repr__(self):
        return f"<VehicleModel {self.name} {self.price_per_hour}/h>"


class Vehicle(Base):
    """车辆 - 属于某个车型，停放在某个站点"""
    __tablename__ = "v3_vehicles"

    id = Column(Integer, primary_key=True, index=True)
    serial_number = Column(String(50), nullable=False, unique=True, comment="车辆序列号（唯一）")

    model_id = Column(Integer, ForeignKey("v3_vehicle_models.id"), nullable=False, comment="车型ID")
    # 站点由外部系统管理，可能尚未分配
    station_id = Column(Integer, nullable=True, index=True, comment="站点ID")

    # 只允许订单状态机修改
    status = Column(String(20), nullable=False, default=VehicleStatus.AVAILABLE, index=True, comment="车辆状态")
    battery_level = Column(Integer, default=100, comment="电量百分比")

    is_active = Column(Boolean, default=True, comment="是否启用")

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # 关系
    model = relationship("VehicleModel", back_populates="vehicles", lazy="joined")

    def __repr__(self):
        return f"<Vehicle {self.serial_number} ({self.status})>"

    @property
    def is_available(self) -> bool:
        return self.status == VehicleStatus.AVAILABLE

    @property
    def status_display(self) -> str:
        """状态显示名称"""
        status_map = {
            VehicleStatus.AVAILABLE: "可租",
            VehicleStatus.RENTED: "已租出",
            VehicleStatus.MAINTENANCE: "维修中",
            VehicleStatus.CHARGING: "充电中",
        }
        return status_map.get(self.status, self.status)
