"""测试用的数据构造与查询工具"""

from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy import select, func

from app.models import Vehicle, Wallet, WalletTransaction, RentalOrder
from app.services import settlement
from app.services.gateway import VNPayGateway


def tomorrow_at(hour: int, minute: int = 0) -> datetime:
    return (datetime.now() + timedelta(days=1)).replace(hour=hour, minute=minute, second=0, microsecond=0)


def signed_callback(gateway: VNPayGateway, payment_no: str, amount, code: str = "00",
                    transaction_no: str = "VNP0001") -> dict:
    """构造一份签名正确的 VNPay 回调参数"""
    params = {
        "vnp_TmnCode": gateway.tmn_code,
        "vnp_TxnRef": payment_no,
        "vnp_Amount": str(int(Decimal(str(amount)) * 100)),
        "vnp_ResponseCode": code,
        "vnp_TransactionStatus": code,
        "vnp_TransactionNo": transaction_no,
        "vnp_PayDate": datetime.now().strftime("%Y%m%d%H%M%S"),
    }
    params["vnp_SecureHash"] = gateway.sign(params)
    return params


async def fund(db, account_id: int, amount) -> None:
    result = await settlement.top_up(db, account_id, Decimal(str(amount)))
    assert result.success, result.message


async def balance_of(db, account_id: int) -> Decimal:
    result = await db.execute(select(Wallet.balance).where(Wallet.account_id == account_id))
    value = result.scalar_one_or_none()
    return Decimal(str(value)) if value is not None else Decimal("0")


async def ledger_sum(db, account_id: int) -> Decimal:
    result = await db.execute(
        select(func.coalesce(func.sum(WalletTransaction.amount), 0))
        .join(Wallet, Wallet.id == WalletTransaction.wallet_id)
        .where(Wallet.account_id == account_id, WalletTransaction.is_active == True)
    )
    return Decimal(str(result.scalar()))


async def transactions_of(db, order_id: int, transaction_type: str = None):
    query = select(WalletTransaction).where(WalletTransaction.order_id == order_id)
    if transaction_type:
        query = query.where(WalletTransaction.transaction_type == transaction_type)
    result = await db.execute(query)
    return list(result.scalars().all())


async def vehicle_status(db, vehicle_id: int) -> str:
    result = await db.execute(select(Vehicle.status).where(Vehicle.id == vehicle_id))
    return result.scalar_one()


async def order_count(db) -> int:
    result = await db.execute(select(func.count(RentalOrder.id)))
    return result.scalar()
