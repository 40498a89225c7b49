"""
钱包账本

余额的唯一修改入口。规则：
- 钱包首次访问时自动创建，余额 0
- 扣款：金额必须 > 0，余额不足抛 InsufficientFundsError，不写流水
- 入账：金额必须 > 0
- 每次变动写且只写一条流水，流水不修改、不删除
- 幂等键：同一个键重放时直接返回已有流水，余额不变；
  键已用于其他钱包、其他金额或其他类型时按冲突拒绝
- 客户端充值键按账户隔离：topup-{账户ID}-{客户端键}

余额修改使用带条件的原子更新（UPDATE ... WHERE balance >= :amount），
按影响行数判断是否成功，不做"先读余额再写"。
调用方需在同一钱包的锁内调用，并负责提交事务。
"""

from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Tuple

from sqlalchemy import select, update, func
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import ValidationError, NotFoundError, ConflictError, InsufficientFundsError
from app.core.logging_config import get_logger, get_settlement_logger
from app.models.user import User
from app.models.v3.wallet import Wallet, WalletTransaction, TransactionType

logger = get_logger(__name__)
settlement_logger = get_settlement_logger()


def idempotency_key_for(order_id: int, transaction_type: str) -> str:
    """结算流水的幂等键：order-{订单ID}-{类型}"""
    return f"order-{order_id}-{transaction_type}"


def _positive_amount(amount) -> Decimal:
    value = Decimal(str(amount))
    if value <= Decimal("0"):
        raise ValidationError("金额必须大于 0")
    return value


async def get_wallet(db: AsyncSession, account_id: int) -> Optional[Wallet]:
    result = await db.execute(
        select(Wallet)
        .where(Wallet.account_id == account_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_or_create_wallet(db: AsyncSession, account_id: int) -> Wallet:
    """获取钱包，不存在则创建（余额 0）"""
    wallet = await get_wallet(db, account_id)
    if wallet:
        return wallet

    account = await db.get(User, account_id)
    if not account:
        raise NotFoundError(f"账户 {account_id} 不存在")

    wallet = Wallet(account_id=account_id, balance=Decimal("0"), is_active=True)
    db.add(wallet)
    await db.flush()
    logger.info(f"为账户 {account_id} 创建钱包")
    return wallet


async def get_balance(db: AsyncSession, account_id: int) -> Decimal:
    wallet = await get_or_create_wallet(db, account_id)
    return Decimal(str(wallet.balance))


async def find_transaction(db: AsyncSession, idempotency_key: str) -> Optional[WalletTransaction]:
    result = await db.execute(
        select(WalletTransaction).where(WalletTransaction.idempotency_key == idempotency_key)
    )
    return result.scalar_one_or_none()


async def _replayed(
    db: AsyncSession,
    wallet: Wallet,
    signed_amount: Decimal,
    transaction_type: str,
    idempotency_key: Optional[str],
) -> Optional[WalletTransaction]:
    """幂等键命中时返回原流水；键被另一笔不同的变动占用时抛 ConflictError"""
    if not idempotency_key:
        return None
    existing = await find_transaction(db, idempotency_key)
    if not existing:
        return None
    if (existing.wallet_id != wallet.id
            or existing.transaction_type != transaction_type
            or Decimal(str(existing.amount)) != signed_amount):
        raise ConflictError(f"幂等键 {idempotency_key} 已被另一笔流水使用")
    settlement_logger.info(f"幂等命中: {idempotency_key}，返回已有流水 {existing.id}")
    return existing


async def _append(
    db: AsyncSession,
    wallet: Wallet,
    signed_amount: Decimal,
    transaction_type: str,
    order_id: Optional[int],
    description: str,
    idempotency_key: Optional[str],
) -> WalletTransaction:
    tx = WalletTransaction(
        wallet_id=wallet.id,
        order_id=order_id,
        amount=signed_amount,
        transaction_type=transaction_type,
        description=description,
        idempotency_key=idempotency_key,
        is_active=True,
    )
    db.add(tx)
    await db.flush()
    await db.refresh(wallet)
    return tx


async def debit(
    db: AsyncSession,
    account_id: int,
    amount,
    transaction_type: str,
    order_id: Optional[int] = None,
    description: str = "",
    idempotency_key: Optional[str] = None,
) -> WalletTransaction:
    """
    扣款

    Returns:
        流水记录（幂等键命中时返回原流水）
    """
    value = _positive_amount(amount)

    wallet = await get_or_create_wallet(db, account_id)
    existing = await _replayed(db, wallet, -value, transaction_type, idempotency_key)
    if existing:
        return existing
    if not wallet.is_active:
        raise ValidationError("钱包已停用")

    result = await db.execute(
        update(Wallet)
        .where(Wallet.id == wallet.id, Wallet.balance >= value)
        .values(balance=Wallet.balance - value, updated_at=datetime.utcnow())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        await db.refresh(wallet)
        raise InsufficientFundsError(
            f"余额不足：当前余额 {wallet.balance}，需支付 {value}"
        )

    tx = await _append(db, wallet, -value, transaction_type, order_id, description, idempotency_key)
    settlement_logger.info(
        f"钱包扣款: 账户={account_id} 金额={value} 类型={transaction_type} "
        f"订单={order_id} 余额={wallet.balance}"
    )
    return tx


async def credit(
    db: AsyncSession,
    account_id: int,
    amount,
    transaction_type: str,
    order_id: Optional[int] = None,
    description: str = "",
    idempotency_key: Optional[str] = None,
) -> WalletTransaction:
    """入账（充值、退款）"""
    value = _positive_amount(amount)

    wallet = await get_or_create_wallet(db, account_id)
    existing = await _replayed(db, wallet, value, transaction_type, idempotency_key)
    if existing:
        return existing
    if not wallet.is_active:
        raise ValidationError("钱包已停用")

    await db.execute(
        update(Wallet)
        .where(Wallet.id == wallet.id)
        .values(balance=Wallet.balance + value, updated_at=datetime.utcnow())
        .execution_options(synchronize_session=False)
    )

    tx = await _append(db, wallet, value, transaction_type, order_id, description, idempotency_key)
    settlement_logger.info(
        f"钱包入账: 账户={account_id} 金额={value} 类型={transaction_type} "
        f"订单={order_id} 余额={wallet.balance}"
    )
    return tx


async def top_up(db: AsyncSession, account_id: int, amount, description: Optional[str] = None,
                 idempotency_key: Optional[str] = None) -> WalletTransaction:
    """充值（客户端幂等键按账户隔离）"""
    key = f"topup-{account_id}-{idempotency_key}" if idempotency_key else None
    return await credit(
        db, account_id, amount,
        transaction_type=TransactionType.DEPOSIT,
        description=description or "钱包充值",
        idempotency_key=key,
    )


async def has_refund(db: AsyncSession, order_id: int) -> bool:
    """订单是否已有退款流水"""
    result = await db.execute(
        select(func.count(WalletTransaction.id)).where(
            WalletTransaction.order_id == order_id,
            WalletTransaction.transaction_type == TransactionType.REFUND,
            WalletTransaction.is_active == True,
        )
    )
    return (result.scalar() or 0) > 0


async def list_transactions(
    db: AsyncSession,
    account_id: int,
    skip: int = 0,
    limit: int = 20,
    transaction_type: Optional[str] = None,
) -> Tuple[int, List[WalletTransaction]]:
    """流水分页（按时间倒序）"""
    wallet = await get_or_create_wallet(db, account_id)

    query = select(WalletTransaction).where(WalletTransaction.wallet_id == wallet.id)
    count_query = select(func.count(WalletTransaction.id)).where(WalletTransaction.wallet_id == wallet.id)
    if transaction_type:
        query = query.where(WalletTransaction.transaction_type == transaction_type)
        count_query = count_query.where(WalletTransaction.transaction_type == transaction_type)

    total = (await db.execute(count_query)).scalar() or 0
    result = await db.execute(
        query.order_by(WalletTransaction.created_at.desc(), WalletTransaction.id.desc())
        .offset(skip).limit(limit)
    )
    return total, list(result.scalars().all())


async def reconcile(db: AsyncSession, account_id: int) -> dict:
    """
    对账：余额是否等于有效流水之和
    """
    wallet = await get_or_create_wallet(db, account_id)
    result = await db.execute(
        select(func.coalesce(func.sum(WalletTransaction.amount), 0)).where(
            WalletTransaction.wallet_id == wallet.id,
            WalletTransaction.is_active == True,
        )
    )
    ledger_sum = Decimal(str(result.scalar() or 0))
    balance = Decimal(str(wallet.balance))
    consistent = balance == ledger_sum
    if not consistent:
        logger.error(f"钱包对账不一致: 账户={account_id} 余额={balance} 流水合计={ledger_sum}")
    return {
        "account_id": account_id,
        "wallet_id": wallet.id,
        "balance": balance,
        "ledger_sum": ledger_sum,
        "consistent": consistent,
    }
