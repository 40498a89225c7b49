"""
钱包 API
- 余额（首次访问自动开户）
- 充值
- 流水
- 对账
"""

from typing import Any, Optional
from decimal import Decimal
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.deps import get_db
from app.models.v3.wallet import WalletTransaction
from app.schemas.v3.wallet import (
    WalletResponse, TopUpRequest, TopUpResponse, WalletTransactionResponse,
    WalletTransactionListResponse, ReconcileResponse
)
from app.services import settlement

from .orders.core import raise_for_result

router = APIRouter()


def build_transaction_response(tx: WalletTransaction) -> WalletTransactionResponse:
    return WalletTransactionResponse(
        id=tx.id,
        wallet_id=tx.wallet_id,
        order_id=tx.order_id,
        amount=float(tx.amount),
        transaction_type=tx.transaction_type,
        type_display=tx.type_display,
        description=tx.description,
        created_at=tx.created_at,
    )


@router.get("/{account_id}", response_model=WalletResponse)
async def get_wallet(
    *,
    db: AsyncSession = Depends(get_db),
    account_id: int) -> Any:
    """获取钱包余额"""
    wallet = raise_for_result(await settlement.get_wallet(db, account_id))
    return WalletResponse.model_validate(wallet)


@router.post("/{account_id}/topup", response_model=TopUpResponse)
async def top_up(
    *,
    db: AsyncSession = Depends(get_db),
    account_id: int,
    body: TopUpRequest) -> Any:
    """钱包充值"""
    result = await settlement.top_up(
        db, account_id, Decimal(str(body.amount)), body.description, body.idempotency_key
    )
    tx = raise_for_result(result)
    wallet = raise_for_result(await settlement.get_wallet(db, account_id))
    return TopUpResponse(
        message=result.message,
        balance=float(wallet.balance),
        transaction=build_transaction_response(tx),
    )


@router.get("/{account_id}/transactions", response_model=WalletTransactionListResponse)
async def list_transactions(
    *,
    db: AsyncSession = Depends(get_db),
    account_id: int,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    transaction_type: Optional[str] = Query(None)) -> Any:
    """钱包流水（按时间倒序）"""
    result = await settlement.wallet_transactions(
        db, account_id, skip=(page - 1) * limit, limit=limit, transaction_type=transaction_type
    )
    total, items = raise_for_result(result)
    return WalletTransactionListResponse(
        data=[build_transaction_response(tx) for tx in items],
        total=total,
        page=page,
        limit=limit,
    )


@router.get("/{account_id}/reconcile", response_model=ReconcileResponse)
async def reconcile(
    *,
    db: AsyncSession = Depends(get_db),
    account_id: int) -> Any:
    """对账：余额 == 流水之和"""
    report = raise_for_result(await settlement.reconcile_wallet(db, account_id))
    return ReconcileResponse(
        account_id=report["account_id"],
        wallet_id=report["wallet_id"],
        balance=float(report["balance"]),
        ledger_sum=float(report["ledger_sum"]),
        consistent=report["consistent"],
    )
