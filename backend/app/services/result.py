"""
服务层统一返回结构

业务操作不向外抛异常，统一返回 ServiceResult：
- success: 是否成功
- status_code: 对应的 HTTP 状态码
- message: 可读信息
- data: 操作结果（各操作自己的类型）
- error / retryable: 失败时的错误码，以及重试是否有意义
"""

from dataclasses import dataclass
from typing import Generic, Optional, TypeVar

from app.core.errors import RentalError

T = TypeVar("T")


@dataclass
class ServiceResult(Generic[T]):
    status_code: int
    message: str
    data: Optional[T] = None
    error: Optional[str] = None
    retryable: bool = False

    @property
    def success(self) -> bool:
        return self.error is None

    @classmethod
    def ok(cls, data: Optional[T] = None, message: str = "操作成功", status_code: int = 200) -> "ServiceResult[T]":
        return cls(status_code=status_code, message=message, data=data)

    @classmethod
    def fail(cls, exc: RentalError) -> "ServiceResult[T]":
        return cls(
            status_code=exc.status_code,
            message=exc.message,
            error=exc.error_code,
            retryable=exc.retryable,
        )
