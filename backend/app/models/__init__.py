# models包初始化文件

from app.models.user import User
from app.models.v3 import (
    Vehicle, VehicleModel, Promotion, DamageReport, RentalOrder, OrderFlow,
    Wallet, WalletTransaction, Payment
)

__all__ = [
    "User",
    "Vehicle",
    "VehicleModel",
    "Promotion",
    "DamageReport",
    "RentalOrder",
    "OrderFlow",
    "Wallet",
    "WalletTransaction",
    "Payment",
]
