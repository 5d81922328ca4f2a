"""
商品目录数据库模型（只读）
"""

from sqlalchemy import Column, String, Numeric, Boolean
from freshbox.core.database import Base
from freshbox.models.database.audit import AuditMixin


class BoxTypeDB(AuditMixin, Base):
    """盒子类型表"""

    __tablename__ = "box_types"

    box_type_id = Column(String(50), primary_key=True, comment="盒子类型ID")
    name = Column(String(200), nullable=False, comment="名称")
    price = Column(Numeric(14, 2), nullable=False, comment="价格")
    parent_id = Column(String(50), comment="父级分类ID")
    is_active = Column(Boolean, default=True, nullable=False, comment="是否上架")

    __table_args__ = (
        {'comment': '盒子类型表'}
    )
