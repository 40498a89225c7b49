"""
租车订单API模块

按功能拆分为多个子模块：
- core: 响应构建、结果转换
- crud: 下单、查询、报价
- actions: 状态变更操作（付押金、交车、取消、还车、退款）
"""

from fastapi import APIRouter
from .crud import router as crud_router
from .actions import router as actions_router

router = APIRouter()

# 合并所有路由
router.include_router(crud_router)
router.include_router(actions_router)
