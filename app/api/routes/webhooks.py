import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from starlette.concurrency import run_in_threadpool

from app.api.dependencies import get_webhook_service
from app.schemas.webhook import WebhookResponse
from app.services.webhook_service import WebhookService

router = APIRouter(prefix="/webhooks", tags=["webhooks"])
logger = logging.getLogger(__name__)


@router.post("/stream", response_model=WebhookResponse, response_model_exclude_none=True)
async def receive_stream_webhook(
    request: Request,
    service: WebhookService = Depends(get_webhook_service),
) -> WebhookResponse:
    raw_body = await request.body()
    signature = request.headers.get("x-signature")
    logger.info(
        "Webhook received provider=stream path=%s has_signature=%s",
        str(request.url.path),
        bool(signature),
    )
    try:
        response = await run_in_threadpool(service.process_webhook, raw_body, signature)
    except HTTPException as exc:
        logger.warning(
            "Webhook rejected provider=stream path=%s status_code=%s detail=%s",
            str(request.url.path),
            exc.status_code,
            exc.detail,
        )
        raise

    logger.info(
        "Webhook processed provider=stream event_type=%s meeting_id=%s status=%s outcome=%s",
        response.event_type,
        response.meeting_id,
        response.status.value,
        response.outcome,
    )
    return response
