"""
业务操作结果模型
"""

from dataclasses import dataclass
from typing import Generic, Optional, TypeVar

from freshbox.core.exceptions import BusinessException

T = TypeVar("T")


@dataclass
class ServiceResult(Generic[T]):
    """带成功/失败标记的操作结果"""

    is_success: bool
    data: Optional[T] = None
    error: Optional[BusinessException] = None
    message: str = ""

    @classmethod
    def success(cls, data: Optional[T] = None, message: str = "") -> "ServiceResult[T]":
        return cls(is_success=True, data=data, message=message)

    @classmethod
    def failure(
        cls,
        error: BusinessException,
        data: Optional[T] = None
    ) -> "ServiceResult[T]":
        return cls(is_success=False, data=data, error=error, message=error.message)

    @property
    def error_code(self) -> Optional[str]:
        return self.error.code if self.error else None
