"""
支付网关相关数据模型
"""

from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field
from enum import Enum

from freshbox.models.order import PaymentStatus


class GatewayPaymentStatus(str, Enum):
    """网关回调中的支付状态"""
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    PAID = "PAID"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"
    REFUNDED = "REFUNDED"


class ReconcileOutcome(str, Enum):
    """回调对账结果"""
    APPLIED = "applied"
    DUPLICATE = "duplicate"  # 重复投递，按已应用处理
    IGNORED = "ignored"
    REJECTED = "rejected"


class SettlementAction(str, Enum):
    """对账决策动作"""
    APPLY = "apply"
    NOOP_DUPLICATE = "noop_duplicate"
    IGNORE = "ignore"
    REJECT = "reject"


class PaymentItem(BaseModel):
    """支付链接商品项"""

    name: str
    quantity: int = Field(..., ge=1)
    price: int = Field(..., ge=0, description="单价（最小货币单位）")


class PaymentLinkRequest(BaseModel):
    """创建支付链接请求"""

    order_id: str
    order_code: int = Field(..., description="网关订单号")
    amount: int = Field(..., ge=1, description="金额（最小货币单位）")
    description: str = Field(..., max_length=25)
    items: List[PaymentItem] = Field(default_factory=list)
    return_url: str
    cancel_url: str
    expired_at: Optional[int] = Field(None, description="过期时间（unix秒）")


class PaymentLinkHandle(BaseModel):
    """支付链接结果"""

    order_id: str
    payment_link_id: str
    checkout_url: str
    order_code: int
    amount: Optional[int] = None
    status: Optional[str] = None


class WebhookPayload(BaseModel):
    """网关回调载荷"""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    order_code: int = Field(..., alias="orderCode")
    status: str
    amount: int
    signature: str = ""

    def signature_data(self) -> Dict[str, Any]:
        """参与签名的字段（不含signature本身）"""
        data = self.model_dump(by_alias=True, exclude={"signature"})
        return {key: value for key, value in data.items() if key != "signature"}


class SettlementDecision(BaseModel):
    """对账决策"""

    action: SettlementAction
    new_status: Optional[PaymentStatus] = None
    reason: str = ""


class ReconcileResult(BaseModel):
    """回调对账结果"""

    outcome: ReconcileOutcome
    order_id: Optional[str] = None
    payment_status: Optional[PaymentStatus] = None
    reason: str = ""
