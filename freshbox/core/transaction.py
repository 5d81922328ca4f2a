"""
事务协调器
为一组持久化操作提供全有或全无的执行范围
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from contextvars import ContextVar
from typing import AsyncIterator, Awaitable, Callable, Optional, TypeVar

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from freshbox.core.config import settings
from freshbox.core.database import get_session_maker
from freshbox.core.exceptions import TransactionError
from freshbox.models.result import ServiceResult

logger = logging.getLogger(__name__)

T = TypeVar("T")

Operation = Callable[[AsyncSession], Awaitable[ServiceResult[T]]]

# 当前执行上下文中已打开的会话，嵌套调用复用它
_current_session: ContextVar[Optional[AsyncSession]] = ContextVar("freshbox_current_session", default=None)

_UNSET = object()


class TransactionCoordinator:
    """事务协调器

    operation 接收显式传入的 AsyncSession，返回 ServiceResult：
    - 成功结果提交事务，失败结果回滚事务
    - 同一上下文中的嵌套调用直接在外层事务内执行，不会开启新事务
    - 取消时在 shield 中完成回滚后重新抛出 CancelledError
    - 其他异常回滚后转换为携带 TransactionError 的失败结果
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker] = None,
        default_isolation_level=_UNSET
    ):
        self._session_factory = session_factory
        if default_isolation_level is _UNSET:
            default_isolation_level = settings.db_isolation_level
        self.default_isolation_level = default_isolation_level

    @property
    def session_factory(self) -> async_sessionmaker:
        return self._session_factory or get_session_maker()

    @staticmethod
    def current_session() -> Optional[AsyncSession]:
        """获取当前上下文中正在进行的事务会话"""
        return _current_session.get()

    @asynccontextmanager
    async def read_session(self) -> AsyncIterator[AsyncSession]:
        """只读会话：存在外层事务时复用，否则开启独立会话"""
        current = _current_session.get()
        if current is not None:
            yield current
            return
        async with self.session_factory() as session:
            yield session

    async def run(
        self,
        operation: Operation,
        isolation_level: Optional[str] = None
    ) -> ServiceResult[T]:
        """在事务中执行操作"""
        current = _current_session.get()
        if current is not None:
            return await operation(current)

        session = self.session_factory()
        token = _current_session.set(session)
        try:
            level = isolation_level or self.default_isolation_level
            if level:
                await session.connection(execution_options={"isolation_level": level})

            result = await operation(session)

            if result.is_success:
                await session.commit()
            else:
                await self._safe_rollback(session)
            return result

        except asyncio.CancelledError:
            logger.warning("事务被取消，正在回滚")
            await asyncio.shield(self._safe_rollback(session))
            raise

        except Exception as e:
            logger.error(f"事务执行失败，正在回滚: {e}", exc_info=True)
            await self._safe_rollback(session)
            # 存储层细节只记录在日志和 __cause__ 中
            error = TransactionError("Transaction failed")
            error.__cause__ = e
            return ServiceResult.failure(error)

        finally:
            _current_session.reset(token)
            await asyncio.shield(session.close())

    @staticmethod
    async def _safe_rollback(session: AsyncSession) -> None:
        """回滚事务，回滚本身的异常只记录日志"""
        try:
            await session.rollback()
        except Exception as e:
            logger.error(f"事务回滚失败: {e}")


# 全局事务协调器实例
transaction_coordinator = TransactionCoordinator()
