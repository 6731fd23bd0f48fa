"""
Pydantic schemas for billing endpoints.
"""
from datetime import datetime
from typing import List, Optional
from pydantic import BaseModel, Field


class LinkRequest(BaseModel):
    """Request schema for the server link function."""
    provider_subscription_id: str = Field(..., alias="providerSubscriptionId")
    user_id: int = Field(..., alias="userId")
    plan_type: str = Field(..., alias="planType")
    is_upgrade: bool = Field(False, alias="isUpgrade")
    track: str = Field(..., pattern="^(interview|resume)$")
    is_new_subscription: bool = Field(True, alias="isNewSubscription")

    class Config:
        populate_by_name = True
        json_schema_extra = {
            "example": {
                "providerSubscriptionId": "sub_1PqExample",
                "userId": 42,
                "planType": "gold",
                "isUpgrade": False,
                "track": "interview",
                "isNewSubscription": True
            }
        }


class LinkResponse(BaseModel):
    """Response schema for the server link function."""
    success: bool
    error: Optional[str] = None


class BeginPurchaseRequest(BaseModel):
    """Request schema for recording a purchase intent."""
    track: str = Field(..., description="Entitlement track", pattern="^(interview|resume)$")
    plan_type: str = Field(..., description="Tier to purchase, e.g. 'gold' or 'resume_basic'")

    class Config:
        json_schema_extra = {
            "example": {
                "track": "interview",
                "plan_type": "gold"
            }
        }


class IntentResponse(BaseModel):
    """Response schema for a recorded purchase intent."""
    track: str
    target_plan_type: str
    is_upgrade: bool
    previous_provider_subscription_id: Optional[str] = None
    provider_plan_id: Optional[str] = Field(None, description="Provider price id for the checkout widget")


class CheckoutResponse(BaseModel):
    """Response schema for a server-created provider subscription."""
    provider_subscription_id: str


class ApproveRequest(BaseModel):
    """Request schema sent when the checkout widget approves a subscription."""
    provider_subscription_id: str = Field(..., description="Provider subscription id from the widget")


class CheckoutCancelResponse(BaseModel):
    status: str = "checkout_aborted"
    rolled_back: bool = False


class TransitionOut(BaseModel):
    """One state machine transition as streamed to the client."""
    state: str
    terminal: bool
    provider_subscription_id: Optional[str] = None
    error: Optional[str] = None
    message: Optional[str] = None
    retryable: Optional[bool] = None


class ConfirmationResponse(BaseModel):
    provider_subscription_id: str
    plan_type: str


class CancelEntitlementRequest(BaseModel):
    """Request schema for cancelling the active entitlement on a track."""
    track: str = Field(..., pattern="^(interview|resume)$")


class CancellationResponse(BaseModel):
    status: str = "canceled"
    provider_subscription_id: str
    track: str
    redundant: bool = False


class RedundancyResponse(BaseModel):
    redundant: bool
    message: Optional[str] = None
    resume_provider_subscription_id: Optional[str] = None


class EntitlementOut(BaseModel):
    provider_subscription_id: str
    track: str
    plan_type: str
    status: str
    created_at: Optional[datetime] = None
    end_date: Optional[datetime] = None


class ProfileProjectionOut(BaseModel):
    interview_tier: str
    interview_status: str
    resume_tier: str
    resume_status: str


class EntitlementsResponse(BaseModel):
    profile: ProfileProjectionOut
    entitlements: List[EntitlementOut]


class SyncResponse(BaseModel):
    total: int
    updated: int
    active: int

