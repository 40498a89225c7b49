"""
钱包模型 - 客户余额与流水

核心规则：
- 每个账户一个钱包，首次使用时自动创建，余额从 0 开始
- 余额只能通过钱包账本（wallet_ledger）的扣款/入账修改
- 流水只追加，不修改、不删除
- 余额 = 所有有效流水金额之和（流水是事实来源，余额是缓存）
"""

from datetime import datetime
from decimal import Decimal
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, DECIMAL, Boolean, CheckConstraint
from sqlalchemy.orm import relationship
from app.db.base import Base


class TransactionType:
    """流水类型"""
    DEPOSIT = "DEPOSIT"    # 充值入账 / 押金扣款
    PAYMENT = "PAYMENT"    # 尾款扣款
    REFUND = "REFUND"      # 退款入账

    ALL = (DEPOSIT, PAYMENT, REFUND)


class Wallet(Base):
    """客户钱包"""
    __tablename__ = "v3_wallets"
    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_v3_wallets_balance_non_negative"),
    )

    id = Column(Integer, primary_key=True, index=True)
    account_id = Column(Integer, ForeignKey("sys_user.id"), nullable=False, unique=True, index=True)

    balance = Column(DECIMAL(12, 2), nullable=False, default=Decimal("0.00"), comment="余额")
    is_active = Column(Boolean, nullable=False, default=True, comment="是否启用")

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # 关系
    account = relationship("User", foreign_keys=[account_id])
    transactions = relationship("WalletTransaction", back_populates="wallet", order_by="WalletTransaction.id")

    def __repr__(self):
        return f"<Wallet account={self.account_id} balance={self.balance}>"


class WalletTransaction(Base):
    """钱包流水 - 正数入账，负数扣款"""
    __tablename__ = "v3_wallet_transactions"

    id = Column(Integer, primary_key=True, index=True)
    wallet_id = Column(Integer, ForeignKey("v3_wallets.id"), nullable=False, index=True)
    order_id = Column(Integer, ForeignKey("v3_rental_orders.id"), nullable=True, index=True)

    amount = Column(DECIMAL(12, 2), nullable=False, comment="金额（带符号）")
    transaction_type = Column(String(20), nullable=False, index=True, comment="流水类型")
    description = Column(String(500), comment="说明")

    # 幂等键：同一业务动作重放时命中已有流水
    idempotency_key = Column(String(100), unique=True, nullable=True, comment="幂等键")

    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=datetime.utcnow, index=True)

    # 关系
    wallet = relationship("Wallet", back_populates="transactions")
    order = relationship("RentalOrder")

    def __repr__(self):
        return f"<WalletTransaction {self.transaction_type} {self.amount}>"

    @property
    def type_display(self) -> str:
        """类型显示名称"""
        if self.transaction_type == TransactionType.DEPOSIT:
            return "充值" if self.amount > Decimal("0") else "押金"
        type_map = {
            TransactionType.PAYMENT: "尾款",
            TransactionType.REFUND: "退款",
        }
        return type_map.get(self.transaction_type, self.transaction_type)
