"""
商品目录数据库操作层（只读）
"""

from typing import Optional

from sqlalchemy import select, and_
from sqlalchemy.ext.asyncio import AsyncSession

from freshbox.models.catalog import BoxType
from freshbox.models.database.catalog_db import BoxTypeDB


class BoxTypeRepository:
    """盒子类型数据库操作层"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_by_id(self, box_type_id: str) -> Optional[BoxTypeDB]:
        result = await self.db.execute(
            select(BoxTypeDB).where(
                and_(
                    BoxTypeDB.box_type_id == box_type_id,
                    BoxTypeDB.is_deleted.is_(False)
                )
            )
        )
        return result.scalar_one_or_none()

    def to_model(self, db_box_type: BoxTypeDB) -> BoxType:
        return BoxType(
            box_type_id=db_box_type.box_type_id,
            name=db_box_type.name,
            price=db_box_type.price,
            parent_id=db_box_type.parent_id,
            is_active=db_box_type.is_active
        )
