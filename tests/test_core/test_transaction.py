"""
TransactionCoordinator测试
"""

import asyncio
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import select, text
from sqlalchemy.ext.asyncio import AsyncSession

from freshbox.core.exceptions import TransactionError, ValidationError
from freshbox.core.transaction import TransactionCoordinator
from freshbox.models.database import BoxTypeDB
from freshbox.models.result import ServiceResult


def new_box(box_type_id: str) -> BoxTypeDB:
    return BoxTypeDB(box_type_id=box_type_id, name=box_type_id, price=Decimal("1000.00"))


async def box_ids(session_factory):
    async with session_factory() as session:
        result = await session.execute(select(BoxTypeDB.box_type_id))
        return set(result.scalars().all())


@pytest.mark.asyncio
class TestTransactionCoordinator:
    """事务协调器测试类"""

    async def test_commit_on_success(self, coordinator, session_factory):
        """成功结果提交事务"""

        async def operation(session):
            session.add(new_box("BOX_A"))
            await session.flush()
            return ServiceResult.success("ok")

        result = await coordinator.run(operation)

        assert result.is_success
        assert result.data == "ok"
        assert await box_ids(session_factory) == {"BOX_A"}

    async def test_rollback_on_failure_result(self, coordinator, session_factory):
        """失败结果回滚事务"""

        async def operation(session):
            session.add(new_box("BOX_B"))
            await session.flush()
            return ServiceResult.failure(ValidationError("bad input"))

        result = await coordinator.run(operation)

        assert not result.is_success
        assert result.error_code == "VALIDATION_ERROR"
        assert await box_ids(session_factory) == set()

    async def test_exception_becomes_transaction_error(self, coordinator, session_factory):
        """未预期的异常回滚并转换为TransactionError"""
        boom = RuntimeError("storage unavailable")

        async def operation(session):
            session.add(new_box("BOX_C"))
            await session.flush()
            raise boom

        result = await coordinator.run(operation)

        assert not result.is_success
        assert isinstance(result.error, TransactionError)
        assert result.error.__cause__ is boom
        assert result.message == "Transaction failed"
        assert await box_ids(session_factory) == set()

    async def test_storage_error_detail_not_exposed(self, coordinator):
        """数据库错误不把驱动和SQL信息带到结果中"""

        async def operation(session):
            await session.execute(text("SELECT * FROM secret_internal_table"))
            return ServiceResult.success()

        result = await coordinator.run(operation)

        assert result.error_code == "TRANSACTION_FAILED"
        assert result.message == "Transaction failed"
        assert "secret_internal_table" not in str(result.error.to_dict())
        assert "secret_internal_table" in str(result.error.__cause__)

    async def test_nested_run_joins_outer_transaction(self, coordinator, session_factory):
        """嵌套调用在外层事务中执行，外层失败时一起回滚"""
        sessions = []

        async def inner(session):
            sessions.append(session)
            session.add(new_box("BOX_INNER"))
            await session.flush()
            return ServiceResult.success()

        async def outer(session):
            sessions.append(session)
            inner_result = await coordinator.run(inner)
            assert inner_result.is_success
            return ServiceResult.failure(ValidationError("outer failed"))

        result = await coordinator.run(outer)

        assert not result.is_success
        assert sessions[0] is sessions[1]
        assert await box_ids(session_factory) == set()

    async def test_current_session_cleared_after_run(self, coordinator):
        """事务结束后上下文中不再有会话"""
        seen = []

        async def operation(session):
            seen.append(TransactionCoordinator.current_session())
            return ServiceResult.success()

        await coordinator.run(operation)

        assert seen[0] is not None
        assert TransactionCoordinator.current_session() is None

    async def test_read_session_reuses_current_session(self, coordinator):
        """事务中的读取复用事务会话"""

        async def operation(session):
            async with coordinator.read_session() as read_session:
                return ServiceResult.success(read_session is session)

        result = await coordinator.run(operation)
        assert result.data is True

    async def test_isolation_level_applied(self):
        """开启事务时设置隔离级别"""
        session = AsyncMock(spec=AsyncSession)
        coordinator = TransactionCoordinator(
            session_factory=MagicMock(return_value=session),
            default_isolation_level="READ COMMITTED"
        )

        async def operation(s):
            return ServiceResult.success()

        await coordinator.run(operation)

        session.connection.assert_awaited_once_with(execution_options={"isolation_level": "READ COMMITTED"})
        session.commit.assert_awaited_once()
        session.close.assert_awaited_once()

    async def test_explicit_isolation_level_overrides_default(self):
        session = AsyncMock(spec=AsyncSession)
        coordinator = TransactionCoordinator(
            session_factory=MagicMock(return_value=session),
            default_isolation_level="READ COMMITTED"
        )

        async def operation(s):
            return ServiceResult.success()

        await coordinator.run(operation, isolation_level="SERIALIZABLE")

        session.connection.assert_awaited_once_with(execution_options={"isolation_level": "SERIALIZABLE"})

    async def test_cancellation_rolls_back_and_propagates(self):
        """取消时完成回滚并重新抛出"""
        session = AsyncMock(spec=AsyncSession)
        coordinator = TransactionCoordinator(
            session_factory=MagicMock(return_value=session),
            default_isolation_level=None
        )

        async def operation(s):
            raise asyncio.CancelledError()

        with pytest.raises(asyncio.CancelledError):
            await coordinator.run(operation)

        session.rollback.assert_awaited_once()
        session.commit.assert_not_awaited()
        session.close.assert_awaited_once()

    async def test_rollback_error_is_swallowed(self):
        """回滚本身失败时仍返回失败结果"""
        session = AsyncMock(spec=AsyncSession)
        session.rollback.side_effect = RuntimeError("connection lost")
        coordinator = TransactionCoordinator(
            session_factory=MagicMock(return_value=session),
            default_isolation_level=None
        )

        async def operation(s):
            raise ValueError("bad state")

        result = await coordinator.run(operation)

        assert not result.is_success
        assert isinstance(result.error.__cause__, ValueError)
