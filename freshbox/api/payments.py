from fastapi import APIRouter, Request
import logging

from freshbox.services.payment_service import PaymentService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/payos", tags=["支付回调"])

payment_service = PaymentService()

# 无论处理结果如何都返回统一应答，避免向网关暴露内部状态
WEBHOOK_ACK = {"code": "00", "desc": "success"}


@router.post("/webhook")
async def payos_webhook(request: Request):
    """PayOS支付回调"""
    try:
        body = await request.json()
    except ValueError:
        logger.error("支付回调请求体不是合法的JSON")
        return WEBHOOK_ACK

    if not isinstance(body, dict):
        logger.error("支付回调请求体格式错误")
        return WEBHOOK_ACK

    # 业务数据可能包在 data 字段中，签名位于顶层
    payload = body
    if isinstance(body.get("data"), dict):
        payload = {**body["data"], "signature": body.get("signature", "")}

    try:
        result = await payment_service.reconcile(payload)
    except Exception as e:
        logger.error(f"支付回调处理异常: {e}", exc_info=True)
        return WEBHOOK_ACK

    logger.info(f"支付回调处理结果: {result.outcome.value} {result.order_id or ''} {result.reason}")
    return WEBHOOK_ACK
