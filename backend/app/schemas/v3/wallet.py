"""钱包 Schema"""

from datetime import datetime
from typing import Optional, List
from pydantic import BaseModel, Field


class WalletResponse(BaseModel):
    """钱包响应"""
    id: int
    account_id: int
    balance: float
    is_active: bool
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class TopUpRequest(BaseModel):
    """充值"""
    amount: float = Field(..., gt=0)
    description: Optional[str] = Field(None, max_length=200)
    # 客户端重试时带同一个键，避免重复入账
    idempotency_key: Optional[str] = Field(None, max_length=80)


class WalletTransactionResponse(BaseModel):
    """流水响应"""
    id: int
    wallet_id: int
    order_id: Optional[int] = None
    amount: float
    transaction_type: str
    type_display: str
    description: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


class TopUpResponse(BaseModel):
    message: str
    balance: float
    transaction: WalletTransactionResponse


class WalletTransactionListResponse(BaseModel):
    """流水列表"""
    data: List[WalletTransactionResponse]
    total: int
    page: int
    limit: int


class ReconcileResponse(BaseModel):
    """对账结果"""
    account_id: int
    wallet_id: int
    balance: float
    ledger_sum: float
    consistent: bool
