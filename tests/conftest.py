"""
测试配置文件 - pytest fixtures和共用配置
"""

import uuid
from datetime import datetime, timedelta
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker

from freshbox.core.database import Base
from freshbox.core.transaction import TransactionCoordinator
from freshbox.models.database import BoxTypeDB, DiscountDB
from freshbox.services.collaborators import DatabaseCatalog
from freshbox.services.order_tracking import OrderTracker


@pytest_asyncio.fixture
async def test_db_engine(tmp_path):
    """测试数据库引擎 - 每个测试一个独立的SQLite文件"""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'freshbox_test.db'}", echo=False)

    # pysqlite 默认的事务处理不支持 SAVEPOINT，交给 SQLAlchemy 显式发出 BEGIN
    @event.listens_for(engine.sync_engine, "connect")
    def do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(test_db_engine):
    return async_sessionmaker(test_db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncSession:
    """测试数据库会话"""
    async with session_factory() as session:
        yield session


@pytest.fixture
def coordinator(session_factory):
    """SQLite不支持READ COMMITTED，测试中不设置隔离级别"""
    return TransactionCoordinator(session_factory=session_factory, default_isolation_level=None)


@pytest.fixture
def catalog(coordinator):
    return DatabaseCatalog(coordinator)


@pytest.fixture
def mock_tracker():
    """模拟订单追踪"""
    return AsyncMock(spec=OrderTracker)


@pytest.fixture
def mock_cache():
    """模拟缓存"""
    cache = AsyncMock()
    cache.get = AsyncMock(return_value=None)
    cache.set = AsyncMock(return_value=True)
    cache.delete = AsyncMock(return_value=True)
    return cache


@pytest_asyncio.fixture
async def box_types(session_factory):
    """目录中的盒子类型"""
    rows = [
        BoxTypeDB(box_type_id="BOX_VEG", name="时令蔬菜盒", price=Decimal("150000.00"), is_active=True),
        BoxTypeDB(box_type_id="BOX_FRUIT", name="鲜果盒", price=Decimal("100000.00"), is_active=True),
        BoxTypeDB(box_type_id="BOX_OLD", name="下架盒", price=Decimal("80000.00"), is_active=False),
    ]
    async with session_factory() as session:
        session.add_all(rows)
        await session.commit()
    return {row.box_type_id: row for row in rows}


@pytest.fixture
def discount_factory(session_factory):
    """创建折扣码"""

    async def create(
        code: str = "SALE20",
        value: Decimal = Decimal("20"),
        is_percentage: bool = True,
        start_date: datetime = None,
        end_date: datetime = None,
        is_active: bool = True
    ) -> DiscountDB:
        now = datetime.now()
        db_discount = DiscountDB(
            discount_id=str(uuid.uuid4()),
            code=code.upper(),
            description=f"{code} 测试折扣",
            value=value,
            is_percentage=is_percentage,
            start_date=start_date or now - timedelta(days=1),
            end_date=end_date or now + timedelta(days=30),
            is_active=is_active
        )
        async with session_factory() as session:
            session.add(db_discount)
            await session.commit()
        return db_discount

    return create


@pytest.fixture
def delivery_info():
    """通用配送信息"""
    return {
        "delivery_address": "胡志明市第一郡测试路1号",
        "recipient_name": "测试用户",
        "recipient_phone": "0900000000",
        "allergy_notes": "花生过敏",
    }
