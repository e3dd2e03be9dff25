"""
Delivery Provider Webhooks

The messaging gateway posts delivered / opened / bounced events keyed by
its message id. When DELIVERY_GATEWAY_TOKEN is set the gateway must echo
it in X-Webhook-Token.
"""
import hmac
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Header, HTTPException
from pydantic import BaseModel, Field

from ..config import DELIVERY_GATEWAY_TOKEN
from ..dependencies import get_notice_service
from ..services.notices import NoticeService


router = APIRouter(prefix="/webhooks", tags=["webhooks"])


class DeliveryEvent(BaseModel):
    message_id: str = Field(..., description="Provider message id returned at send time")
    event: str = Field(..., description="delivered, opened or bounced")
    payload: Optional[Dict[str, Any]] = Field(None, description="Raw provider fields")


async def verify_webhook_token(x_webhook_token: Optional[str] = Header(None)):
    if DELIVERY_GATEWAY_TOKEN and not hmac.compare_digest(x_webhook_token or "", DELIVERY_GATEWAY_TOKEN):
        raise HTTPException(status_code=403, detail="Invalid webhook token")
    return True


@router.post("/delivery", response_model=dict)
async def delivery_event(
    request: DeliveryEvent,
    service: NoticeService = Depends(get_notice_service),
    _: bool = Depends(verify_webhook_token),
):
    return service.record_delivery_event(request.message_id, request.event, payload=request.payload)
