# V3 数据模型
# 租车订单与结算：车辆 → 订单 → 支付/钱包流水

from app.models.v3.vehicle import Vehicle, VehicleModel, VehicleStatus
from app.models.v3.promotion import Promotion, DamageReport
from app.models.v3.rental_order import RentalOrder, OrderStatus
from app.models.v3.order_flow import OrderFlow
from app.models.v3.wallet import Wallet, WalletTransaction, TransactionType
from app.models.v3.payment import Payment, PaymentType, PaymentStatus, PaymentMethod

__all__ = [
    "Vehicle",
    "VehicleModel",
    "VehicleStatus",
    "Promotion",
    "DamageReport",
    "RentalOrder",
    "OrderStatus",
    "OrderFlow",
    "Wallet",
    "WalletTransaction",
    "TransactionType",
    "Payment",
    "PaymentType",
    "PaymentStatus",
    "PaymentMethod",
]
