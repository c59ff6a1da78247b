"""Entitlement checks and usage metering for collaborator services.

Checks never fail for "not entitled"; they return allowed=false with
reason / limit_reached / requires_upgrade / suggested_action.

- GET  /api/subscriptions/check/browse-limit
- GET  /api/subscriptions/check/listing-limit
- GET  /api/subscriptions/check/job-post-limit
- GET  /api/subscriptions/check/notification-permission
- POST /api/subscriptions/check/listing-visibility   (no auth)
- POST /api/subscriptions/increment/browse-count
- POST /api/subscriptions/increment/listing-count
- POST /api/subscriptions/decrement/listing-count
- POST /api/subscriptions/increment/job-post-count

Increments are gated by require_entitlement for the 403 denial envelope.
The ledger itself refuses an increment at the limit, so two callers that
both passed a check cannot overrun the last slot.
"""
from fastapi import APIRouter, Depends, Request

from middleware import get_current_user, require_auth, require_entitlement
from models import ListingVisibilityRequest
from services.entitlement_engine import Action
from services.entitlement_service import entitlement_service

router = APIRouter(prefix="/api/subscriptions", tags=["subscription-enforcement"])


@router.get("/check/browse-limit")
async def check_browse_limit(user: dict = Depends(require_auth)):
    return {"success": True, **await entitlement_service.check_browse_limit(user["user_id"])}


@router.get("/check/listing-limit")
async def check_listing_limit(user: dict = Depends(require_auth)):
    return {"success": True, **await entitlement_service.check_listing_limit(user["user_id"])}


@router.get("/check/job-post-limit")
async def check_job_post_limit(user: dict = Depends(require_auth)):
    return {"success": True, **await entitlement_service.check_job_post_limit(user["user_id"])}


@router.get("/check/notification-permission")
async def check_notification_permission(user: dict = Depends(require_auth)):
    return {"success": True, **await entitlement_service.check_notification_permission(user["user_id"])}


@router.post("/check/listing-visibility")
async def check_listing_visibility(body: ListingVisibilityRequest, request: Request):
    """Public: the viewer is taken from the body; a bearer token, when present, wins."""
    viewer = await get_current_user(request)
    result = await entitlement_service.check_listing_visibility(
        body.listing_created_at,
        viewer["user_id"] if viewer else body.user_id,
        owner_id=body.owner_id,
        teacher_search=body.teacher_search,
    )
    return {"success": True, **result}


@router.post("/increment/browse-count")
async def increment_browse_count(user: dict = Depends(require_entitlement(Action.BROWSE))):
    return await entitlement_service.increment_browse_count(user["user_id"])


@router.post("/increment/listing-count")
async def increment_listing_count(user: dict = Depends(require_entitlement(Action.CREATE_LISTING))):
    return await entitlement_service.increment_listing_count(user["user_id"])


@router.post("/decrement/listing-count")
async def decrement_listing_count(user: dict = Depends(require_auth)):
    return await entitlement_service.decrement_listing_count(user["user_id"])


@router.post("/increment/job-post-count")
async def increment_job_post_count(user: dict = Depends(require_entitlement(Action.POST_JOB))):
    return await entitlement_service.increment_job_post_count(user["user_id"])
