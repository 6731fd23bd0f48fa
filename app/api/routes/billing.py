"""
Purchase and entitlement endpoints.

The checkout session cookie keys the purchase intent so the flow survives
the checkout widget navigating away from the application.
"""
import logging
import secrets
from typing import NoReturn, Optional

from fastapi import APIRouter, Cookie, Depends, HTTPException, Response, status
from fastapi.responses import StreamingResponse

from app.core.auth_dependency import get_current_user_obj
from app.core.errors import CheckoutAborted, EntitlementError
from app.core.plan_catalog import get_price_id
from app.db.models.user import User
from app.schemas.billing import (
    ApproveRequest,
    BeginPurchaseRequest,
    CancelEntitlementRequest,
    CancellationResponse,
    CheckoutCancelResponse,
    CheckoutResponse,
    ConfirmationResponse,
    EntitlementOut,
    EntitlementsResponse,
    IntentResponse,
    ProfileProjectionOut,
    RedundancyResponse,
    SyncResponse,
    TransitionOut,
)
from app.services.purchase_service import PurchaseService, get_purchase_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing", tags=["Billing"])

CHECKOUT_COOKIE = "checkout_session"


def raise_billing_error(error: EntitlementError) -> NoReturn:
    """Translate an entitlement error into an HTTP error with an actionable body."""
    raise HTTPException(status_code=error.status_code, detail=error.to_dict())


@router.post("/purchase", response_model=IntentResponse)
async def begin_purchase(
    payload: BeginPurchaseRequest,
    response: Response,
    checkout_session: Optional[str] = Cookie(None),
    user: User = Depends(get_current_user_obj),
    service: PurchaseService = Depends(get_purchase_service),
):
    """
    Record the purchase intent before the checkout widget opens.

    Sets the checkout session cookie when the browser has none yet.
    """
    session_key = checkout_session or secrets.token_urlsafe(32)
    try:
        intent = await service.begin_purchase(session_key, user.id, payload.track, payload.plan_type)
    except EntitlementError as e:
        raise_billing_error(e)

    if not checkout_session:
        response.set_cookie(CHECKOUT_COOKIE, session_key, httponly=True, samesite="lax")

    return IntentResponse(
        track=intent.track,
        target_plan_type=intent.target_plan_type,
        is_upgrade=intent.is_upgrade,
        previous_provider_subscription_id=intent.previous_provider_subscription_id,
        provider_plan_id=get_price_id(intent.target_plan_type),
    )


@router.post("/purchase/checkout", response_model=CheckoutResponse)
async def create_checkout(
    checkout_session: Optional[str] = Cookie(None),
    user: User = Depends(get_current_user_obj),
    service: PurchaseService = Depends(get_purchase_service),
):
    """Create the provider subscription the checkout widget will collect payment for."""
    try:
        subscription_id = await service.checkout(checkout_session, user.id)
    except EntitlementError as e:
        raise_billing_error(e)
    return CheckoutResponse(provider_subscription_id=subscription_id)


@router.post("/purchase/approve")
async def approve_purchase(
    payload: ApproveRequest,
    checkout_session: Optional[str] = Cookie(None),
    user: User = Depends(get_current_user_obj),
    service: PurchaseService = Depends(get_purchase_service),
):
    """
    Reconcile an approved subscription.

    Streams each state transition as a JSON line; the last line is terminal.
    """
    try:
        transitions = await service.bridge.approved(checkout_session, user.id, payload.provider_subscription_id)
        first = await transitions.__anext__()
    except EntitlementError as e:
        raise_billing_error(e)

    async def stream():
        yield TransitionOut(**first.to_dict()).model_dump_json(exclude_none=True) + "\n"
        async for transition in transitions:
            yield TransitionOut(**transition.to_dict()).model_dump_json(exclude_none=True) + "\n"

    return StreamingResponse(stream(), media_type="application/x-ndjson")


@router.post("/purchase/cancel", response_model=CheckoutCancelResponse)
async def cancel_checkout(
    checkout_session: Optional[str] = Cookie(None),
    user: User = Depends(get_current_user_obj),
    service: PurchaseService = Depends(get_purchase_service),
):
    """The user closed the checkout widget."""
    rolled_back = await service.bridge.cancelled(checkout_session, user.id)
    return CheckoutCancelResponse(status=CheckoutAborted.kind, rolled_back=rolled_back)


@router.get("/purchase/confirmation", response_model=ConfirmationResponse)
async def purchase_confirmation(
    checkout_session: Optional[str] = Cookie(None),
    user: User = Depends(get_current_user_obj),
    service: PurchaseService = Depends(get_purchase_service),
):
    """Read the confirmation left by a confirmed purchase. Readable once."""
    confirmation = await service.confirmation(checkout_session)
    if confirmation is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No confirmed purchase")
    return ConfirmationResponse(
        provider_subscription_id=confirmation.provider_subscription_id,
        plan_type=confirmation.plan_type,
    )


@router.post("/cancel", response_model=CancellationResponse)
async def cancel_entitlement(
    payload: CancelEntitlementRequest,
    user: User = Depends(get_current_user_obj),
    service: PurchaseService = Depends(get_purchase_service),
):
    try:
        result = await service.cancel_entitlement(user.id, payload.track)
    except EntitlementError as e:
        raise_billing_error(e)
    return CancellationResponse(
        status=result.status,
        provider_subscription_id=result.provider_subscription_id,
        track=result.track,
        redundant=result.redundant,
    )


@router.get("/redundancy", response_model=RedundancyResponse)
async def redundancy_status(
    user: User = Depends(get_current_user_obj),
    service: PurchaseService = Depends(get_purchase_service),
):
    result = await service.redundancy_status(user.id)
    return RedundancyResponse(**result.as_dict())


@router.post("/redundancy/resolve", response_model=CancellationResponse)
async def resolve_redundancy(
    user: User = Depends(get_current_user_obj),
    service: PurchaseService = Depends(get_purchase_service),
):
    """Cancel the redundant resume subscription after the user confirmed."""
    try:
        result = await service.resolve_redundancy(user.id)
    except EntitlementError as e:
        raise_billing_error(e)
    return CancellationResponse(
        status=result.status,
        provider_subscription_id=result.provider_subscription_id,
        track=result.track,
        redundant=result.redundant,
    )


@router.get("/entitlements", response_model=EntitlementsResponse)
async def list_entitlements(
    user: User = Depends(get_current_user_obj),
    service: PurchaseService = Depends(get_purchase_service),
):
    projection, rows = await service.entitlements(user.id)
    return EntitlementsResponse(
        profile=ProfileProjectionOut(**projection.as_dict()),
        entitlements=[
            EntitlementOut(
                provider_subscription_id=row.provider_subscription_id,
                track=row.track,
                plan_type=row.plan_type,
                status=row.status,
                created_at=row.created_at,
                end_date=row.end_date,
            )
            for row in rows
        ],
    )


@router.post("/sync", response_model=SyncResponse)
async def sync_subscriptions(
    user: User = Depends(get_current_user_obj),
    service: PurchaseService = Depends(get_purchase_service),
):
    """Re-read the user's subscriptions from the payment provider."""
    counts = await service.sync(user.id)
    return SyncResponse(**counts)
