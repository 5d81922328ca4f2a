"""
审计字段
"""

from datetime import datetime

from sqlalchemy import Column, String, Boolean, DateTime
from sqlalchemy.sql import func


class AuditMixin:
    """创建/更新/软删除审计字段"""

    created_at = Column(DateTime(timezone=True), default=datetime.now, server_default=func.now(), comment="创建时间")
    created_by = Column(String(50), comment="创建人")
    updated_at = Column(DateTime(timezone=True), default=datetime.now, server_default=func.now(), onupdate=datetime.now, comment="更新时间")
    updated_by = Column(String(50), comment="更新人")
    is_deleted = Column(Boolean, default=False, nullable=False, comment="是否已删除")
    deleted_at = Column(DateTime(timezone=True), comment="删除时间")
    deleted_by = Column(String(50), comment="删除人")
