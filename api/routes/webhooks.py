"""
Provider webhook endpoint.

The raw body is passed through untouched: signature verification needs the
exact bytes the provider signed.
"""
from __future__ import annotations

import ipaddress
from typing import Optional

from fastapi import APIRouter, Depends, Request

from api.dependencies import get_webhook_ingestor
from application.services.webhook_service import WebhookIngestor
from core.logging_config import get_logger
from core.response import success_response
from core.settings import payment_settings
from domain.common.exceptions import BusinessException
from shared.codes import BusinessCode


router = APIRouter(prefix="/webhooks", tags=["Webhooks"])
logger = get_logger(__name__)


def ip_allowed(remote_ip: Optional[str], allowlist: Optional[list[str]]) -> bool:
    """Empty allowlist permits everyone; entries may be single IPs or CIDRs."""
    if not allowlist:
        return True
    if not remote_ip:
        return False
    try:
        rip = ipaddress.ip_address(remote_ip)
    except ValueError:
        return False
    for entry in allowlist:
        try:
            if rip in ipaddress.ip_network(entry.strip(), strict=False):
                return True
        except ValueError:
            logger.warning("webhook_allowlist_entry_invalid", entry=entry)
    return False


@router.post("/stripe", summary="Stripe webhook")
async def stripe_webhook(
    request: Request,
    ingestor: WebhookIngestor = Depends(get_webhook_ingestor),
):
    remote_ip = getattr(request.state, "client_ip", None) or (request.client.host if request.client else None)
    if not ip_allowed(remote_ip, payment_settings.webhook.ip_allowlist):
        logger.warning("webhook_ip_rejected", remote_ip=remote_ip)
        raise BusinessException(
            code=BusinessCode.FORBIDDEN,
            message="Source address not allowed",
            error_type="Forbidden",
        )

    raw_body = await request.body()
    headers = {k: v for k, v in request.headers.items()}
    ack = await ingestor.ingest(raw_body, headers)
    return success_response(data=ack.model_dump(mode="json"), message="Webhook received")
