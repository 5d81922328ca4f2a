"""
业务异常定义
订单结算与配送排期相关的错误分类
"""

from typing import Any, Dict, Optional


class BusinessException(Exception):
    """业务异常基类"""

    status_code = 400
    default_code = "BUSINESS_ERROR"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(BusinessException):
    """输入不合法，在开启事务之前即被拒绝"""

    status_code = 422
    default_code = "VALIDATION_ERROR"


class ConflictError(BusinessException):
    """状态冲突：折扣已使用、重复配送周、重复签收、非法状态流转"""

    status_code = 409
    default_code = "CONFLICT"


class ExternalServiceError(BusinessException):
    """外部支付网关调用失败"""

    status_code = 502
    default_code = "EXTERNAL_SERVICE_ERROR"


class TransactionError(BusinessException):
    """事务已回滚，原始异常保存在 __cause__ 中"""

    status_code = 500
    default_code = "TRANSACTION_FAILED"


class SignatureError(BusinessException):
    """Webhook签名校验失败"""

    status_code = 400
    default_code = "INVALID_SIGNATURE"
