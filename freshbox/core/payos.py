"""
PayOS支付网关客户端
创建支付链接，计算并校验签名
"""

import asyncio
import hashlib
import hmac
import json
import time
from typing import Any, Dict, Optional

import requests
import structlog

from freshbox.core.config import settings
from freshbox.core.exceptions import ExternalServiceError
from freshbox.models.payment import PaymentLinkHandle, PaymentLinkRequest

logger = structlog.get_logger()

SUCCESS_CODE = "00"
DESCRIPTION_MAX_LENGTH = 25


def _format_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, separators=(",", ":"), ensure_ascii=False)
    return str(value)


def build_signature_data(data: Dict[str, Any]) -> str:
    """按key排序拼接为 key=value&key=value"""
    return "&".join(f"{key}={_format_value(data[key])}" for key in sorted(data))


def create_signature(data: Dict[str, Any], checksum_key: str) -> str:
    """HMAC-SHA256签名（十六进制）"""
    return hmac.new(
        checksum_key.encode("utf-8"),
        build_signature_data(data).encode("utf-8"),
        hashlib.sha256
    ).hexdigest()


def verify_signature(data: Dict[str, Any], signature: Optional[str], checksum_key: str) -> bool:
    """常量时间比较签名"""
    if not signature or not checksum_key:
        return False
    expected = create_signature(data, checksum_key)
    return hmac.compare_digest(expected, signature.lower())


def payment_request_signature(request: PaymentLinkRequest, checksum_key: str) -> str:
    """创建支付链接请求的签名，只包含网关要求的五个字段"""
    return create_signature(
        {
            "amount": request.amount,
            "cancelUrl": request.cancel_url,
            "description": request.description,
            "orderCode": request.order_code,
            "returnUrl": request.return_url,
        },
        checksum_key
    )


def generate_order_code() -> int:
    """生成网关订单号（毫秒时间戳截断为12位）"""
    return int(time.time() * 1000) % 1_000_000_000_000


def build_description(text: str) -> str:
    """网关描述最多25个字符且不能包含#"""
    return text.replace("#", "").strip()[:DESCRIPTION_MAX_LENGTH]


class PayOSClient:
    """PayOS HTTP客户端"""

    def __init__(
        self,
        client_id: Optional[str] = None,
        api_key: Optional[str] = None,
        checksum_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[int] = None
    ):
        self.client_id = client_id if client_id is not None else settings.payos_client_id
        self.api_key = api_key if api_key is not None else settings.payos_api_key
        self.checksum_key = checksum_key if checksum_key is not None else settings.payos_checksum_key
        self.base_url = (base_url or settings.payos_base_url).rstrip("/")
        self.timeout = timeout or settings.payos_timeout

    def _headers(self, idempotency_key: str) -> Dict[str, str]:
        return {
            "x-client-id": self.client_id,
            "x-api-key": self.api_key,
            "x-idempotency-key": idempotency_key,
            "Content-Type": "application/json",
        }

    def _build_body(self, request: PaymentLinkRequest) -> Dict[str, Any]:
        body = {
            "orderCode": request.order_code,
            "amount": request.amount,
            "description": request.description,
            "items": [item.model_dump() for item in request.items],
            "returnUrl": request.return_url,
            "cancelUrl": request.cancel_url,
            "signature": payment_request_signature(request, self.checksum_key),
        }
        if request.expired_at:
            body["expiredAt"] = request.expired_at
        return body

    def _post_payment_request(self, request: PaymentLinkRequest) -> Dict[str, Any]:
        url = f"{self.base_url}/v2/payment-requests"
        try:
            res = requests.post(
                url,
                json=self._build_body(request),
                headers=self._headers(request.order_id),
                timeout=self.timeout
            )
        except requests.RequestException as e:
            raise ExternalServiceError(f"PayOS连接错误: {e}", code="GATEWAY_UNAVAILABLE") from e

        try:
            result = res.json()
        except ValueError as e:
            raise ExternalServiceError(
                f"PayOS返回无法解析的响应: HTTP {res.status_code}",
                code="GATEWAY_BAD_RESPONSE"
            ) from e

        if res.status_code >= 400 or result.get("code") != SUCCESS_CODE:
            raise ExternalServiceError(
                f"PayOS创建支付链接失败: {result.get('desc') or res.status_code}",
                code="GATEWAY_REJECTED",
                details={"http_status": res.status_code, "gateway_code": result.get("code")}
            )
        return result.get("data") or {}

    async def create_payment_link(self, request: PaymentLinkRequest) -> PaymentLinkHandle:
        """调用网关创建支付链接，阻塞的HTTP调用放到线程中执行"""
        logger.info("创建PayOS支付链接", order_id=request.order_id, order_code=request.order_code, amount=request.amount)

        data = await asyncio.to_thread(self._post_payment_request, request)

        link_id = data.get("paymentLinkId") or data.get("id")
        checkout_url = data.get("checkoutUrl")
        if not link_id or not checkout_url:
            raise ExternalServiceError("PayOS响应缺少支付链接信息", code="GATEWAY_BAD_RESPONSE")

        logger.info("PayOS支付链接创建成功", order_id=request.order_id, payment_link_id=link_id)
        return PaymentLinkHandle(
            order_id=request.order_id,
            payment_link_id=str(link_id),
            checkout_url=checkout_url,
            order_code=int(data.get("orderCode") or request.order_code),
            amount=data.get("amount"),
            status=data.get("status"),
        )


# 全局PayOS客户端实例
payos_client = PayOSClient()
