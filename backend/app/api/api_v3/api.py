"""V3 API 路由聚合 - 单机版（无认证）"""
from fastapi import APIRouter

from app.api.api_v3.endpoints import payments, vehicles, wallets
# 使用拆分后的 orders 模块
from app.api.api_v3.endpoints.orders import router as orders_router

api_router = APIRouter()

# V3 核心业务API
api_router.include_router(orders_router, prefix="/orders", tags=["租车订单"])
api_router.include_router(vehicles.router, prefix="/vehicles", tags=["车辆可用性"])

# V3 财务API
api_router.include_router(wallets.router, prefix="/wallets", tags=["钱包"])
api_router.include_router(payments.router, prefix="/payments", tags=["支付"])
