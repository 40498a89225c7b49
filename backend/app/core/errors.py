"""
业务错误类型

服务层抛出以下错误，由结算编排层统一捕获并转换为 ServiceResult：
- ValidationError: 输入不合法（时间范围、优惠码、金额）
- NotFoundError: 订单/车辆/钱包不存在
- ConflictError: 车辆不可用、重复退款、状态流转不允许
- InsufficientFundsError: 钱包余额不足
- ForbiddenError: 非订单所属客户操作
- ExternalGatewayError: 支付网关失败（可重试）
- InternalError: 未分类的内部错误（可重试）
"""


class RentalError(Exception):
    """业务错误基类"""
    status_code = 400
    error_code = "error"
    retryable = False

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def __repr__(self):
        return f"<{self.__class__.__name__} {self.error_code}: {self.message}>"


class ValidationError(RentalError):
    status_code = 400
    error_code = "validation_error"


class NotFoundError(RentalError):
    status_code = 404
    error_code = "not_found"


class ConflictError(RentalError):
    status_code = 409
    error_code = "conflict"


class InsufficientFundsError(RentalError):
    status_code = 402
    error_code = "insufficient_funds"


class ForbiddenError(RentalError):
    status_code = 403
    error_code = "forbidden"


class ExternalGatewayError(RentalError):
    status_code = 502
    error_code = "gateway_error"
    retryable = True


class InternalError(RentalError):
    status_code = 500
    error_code = "internal_error"
    retryable = True
