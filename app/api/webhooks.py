"""Payment provider webhook routes."""

import logging

from fastapi import APIRouter, Depends, Path, Request
from sqlalchemy.orm import Session

from app.api.deps import get_db, get_webhook_dispatcher
from app.schemas.billing import WebhookAck
from app.schemas.common import ErrorResponse
from app.services import billing as billing_service
from app.services.billing.dispatcher import EventDispatcher

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post(
    "/{provider}",
    response_model=WebhookAck,
    responses={
        401: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
        422: {"model": ErrorResponse},
    },
)
async def receive_webhook(
    request: Request,
    provider: str = Path(pattern="^(stripe|paystack)$"),
    db: Session = Depends(get_db),
    dispatcher: EventDispatcher = Depends(get_webhook_dispatcher),
) -> WebhookAck:
    """Verify, deduplicate and queue a provider event. No auth, signature verified."""
    body = await request.body()
    headers = {key.lower(): value for key, value in request.headers.items()}
    return billing_service.webhook_ingress.ingest(
        db, provider, body, headers, dispatcher=dispatcher
    )
