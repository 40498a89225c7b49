"""
按键串行化的异步锁

同一辆车的下单、同一个钱包的扣款需要串行执行：
    async with vehicle_locks.hold(vehicle_id):
        ...

进程内锁只是第一道关卡，数据库里的条件更新（affected rows 检查）才是最终保证，
多进程部署时依然安全。
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Hashable


class KeyedLocks:
    """按键分配的 asyncio.Lock，无人等待时自动回收"""

    def __init__(self, name: str):
        self.name = name
        self._locks: Dict[Hashable, asyncio.Lock] = {}
        self._waiters: Dict[Hashable, int] = {}

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                del self._waiters[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


# 全局锁注册表
vehicle_locks = KeyedLocks("vehicle")
wallet_locks = KeyedLocks("wallet")
order_locks = KeyedLocks("order")
