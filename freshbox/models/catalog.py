"""
商品目录数据模型
"""

from decimal import Decimal
from typing import Optional
from pydantic import BaseModel, Field


class BoxType(BaseModel):
    """盒子类型"""

    box_type_id: str = Field(..., description="盒子类型ID")
    name: str = Field(..., description="名称")
    price: Decimal = Field(..., ge=0, description="当前价格")
    parent_id: Optional[str] = Field(None, description="父级分类ID")
    is_active: bool = Field(default=True, description="是否上架")
