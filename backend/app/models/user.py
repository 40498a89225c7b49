from datetime import datetime
from sqlalchemy import Column, Integer, String, Boolean, DateTime

from app.db.base import Base


class User(Base):
    """账户 - 租车客户或门店员工

    认证由外部系统负责，这里只保留订单归属和权限判断需要的字段
    """
    __tablename__ = "sys_user"

    id = Column(Integer, primary_key=True, index=True)
    username = Column(String(50), unique=True, index=True, nullable=False)
    full_name = Column(String(100), comment="姓名")
    # customer: 客户, staff: 门店员工, admin: 管理员
    role = Column(String(20), nullable=False, default="customer")
    status = Column(Boolean, nullable=False, default=True)  # True: 启用, False: 禁用
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    @property
    def is_admin(self):
        return self.role == "admin"

    @property
    def is_staff(self):
        """员工或管理员都可以代客户操作订单"""
        return self.role in ("staff", "admin")

    @property
    def is_customer(self):
        return self.role == "customer"

    @property
    def is_active(self):
        return self.status

    def __repr__(self):
        return f"<User {self.username} ({self.role})>"
