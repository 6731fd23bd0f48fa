"""
Server-to-server billing endpoints: the Stripe webhook and the link function.
"""
import logging

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.auth_dependency import get_db, require_service_token
from app.schemas.billing import LinkRequest, LinkResponse
from app.services.billing_service import handle_event
from app.services.link_service import link_subscription
from app.services.purchase_service import PurchaseService, get_purchase_service
from app.services.stripe_service import PaymentProvider, get_payment_provider, verify_webhook

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing", tags=["Billing Webhook"])


@router.post("/webhook")
async def stripe_webhook(
    request: Request,
    stripe_signature: str = Header(None),
    db: Session = Depends(get_db),
    provider: PaymentProvider = Depends(get_payment_provider),
    service: PurchaseService = Depends(get_purchase_service),
):
    payload = await request.body()

    try:
        event = verify_webhook(payload, stripe_signature)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    try:
        user_id = await run_in_threadpool(handle_event, event, db, provider)
    except SQLAlchemyError as e:
        # Non-2xx makes Stripe redeliver the event
        logger.error(f"Webhook processing failed: type={event['type']}, id={event['id']}, error={e}")
        raise HTTPException(status_code=500, detail="Webhook processing failed")

    if user_id is not None:
        service.redundancy.notify_change(user_id)

    return {"status": "success"}


@router.post("/link", response_model=LinkResponse, dependencies=[Depends(require_service_token)])
def link(
    payload: LinkRequest,
    db: Session = Depends(get_db),
    provider: PaymentProvider = Depends(get_payment_provider),
):
    """Verify a purchase with the provider and record the entitlement."""
    return link_subscription(db, payload, provider)
