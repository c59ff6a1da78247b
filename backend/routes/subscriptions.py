"""User subscription management.

Admin:
- GET    /api/subscriptions/user                    - Every subscribed user
- GET    /api/subscriptions/filtered                - Filtered, paginated listing
- GET    /api/subscriptions/stats                   - Global counts and revenue
- GET    /api/subscriptions/plan-stats              - Per-plan counts and revenue
- POST   /api/subscriptions/assign                  - Put a user on a plan
- PUT    /api/subscriptions/{user_id}/extend        - Move end date, force active
- PUT    /api/subscriptions/{user_id}/change-plan   - Switch plan, reset counters
- PUT    /api/subscriptions/{user_id}/reset-browse  - Zero the browse counter
- PUT    /api/subscriptions/{user_id}/suspend
- PUT    /api/subscriptions/{user_id}/reactivate
- DELETE /api/subscriptions/{user_id}               - Cancel (clear the record)

Owner or admin:
- GET /api/subscriptions/user/{user_id}         - Resolve (lazily assigns the free plan)
- GET /api/subscriptions/user/{user_id}/usage   - Usage stats
- GET /api/subscriptions/user/{user_id}/history - Audit trail for the user
- PUT /api/subscriptions/continue               - Owner renews their own subscription
"""
from fastapi import APIRouter, Depends, Query, status
from typing import Optional
import logging

from middleware import admin_route_guard, require_auth
from models import (
    AssignSubscriptionRequest,
    ChangePlanRequest,
    ContinueSubscriptionRequest,
    ExtendSubscriptionRequest,
    SubscriptionStatus,
    SuspendSubscriptionRequest,
    UserRole,
)
from services.entitlement_service import entitlement_service
from services.subscription_errors import ForbiddenError
from services.subscription_reporting import subscription_reporting
from services.subscription_service import subscription_service

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/subscriptions", tags=["subscriptions"])


def _ensure_self_or_admin(user: dict, user_id: str) -> None:
    if user.get("role") != UserRole.ADMIN.value and user.get("user_id") != user_id:
        raise ForbiddenError("You can only access your own subscription")


# ============================================================================
# READS
# ============================================================================

@router.get("/user")
async def list_user_subscriptions(admin: dict = Depends(admin_route_guard)):
    subscriptions = await subscription_service.list_subscriptions()
    return {"success": True, "subscriptions": subscriptions, "total": len(subscriptions)}


@router.get("/user/{user_id}")
async def get_user_subscription(user_id: str, user: dict = Depends(require_auth)):
    _ensure_self_or_admin(user, user_id)
    subscription = await entitlement_service.resolve_subscription(user_id)
    return {"success": True, "subscription": subscription}


@router.get("/user/{user_id}/usage")
async def get_usage_stats(user_id: str, user: dict = Depends(require_auth)):
    _ensure_self_or_admin(user, user_id)
    stats = await subscription_reporting.get_usage_stats(user_id)
    return {"success": True, "usage": stats}


@router.get("/user/{user_id}/history")
async def get_subscription_history(
    user_id: str,
    limit: int = Query(50, ge=1, le=200),
    user: dict = Depends(require_auth),
):
    _ensure_self_or_admin(user, user_id)
    entries = await subscription_service.get_history(user_id, limit=limit)
    return {"success": True, "history": entries, "total": len(entries)}


@router.get("/stats")
async def get_global_stats(admin: dict = Depends(admin_route_guard)):
    stats = await subscription_reporting.get_global_stats()
    return {"success": True, "stats": stats}


@router.get("/plan-stats")
async def get_plan_stats(admin: dict = Depends(admin_route_guard)):
    stats = await subscription_reporting.get_plan_stats()
    return {"success": True, "plans": stats}


@router.get("/filtered")
async def get_filtered_subscriptions(
    status_filter: Optional[SubscriptionStatus] = Query(None, alias="status"),
    plan_id: Optional[str] = None,
    search: Optional[str] = None,
    sort_by: str = "start_date",
    sort_order: str = Query("desc", pattern="^(asc|desc)$"),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    admin: dict = Depends(admin_route_guard),
):
    result = await subscription_service.filter_subscriptions(
        status=status_filter.value if status_filter else None,
        plan_id=plan_id,
        search=search,
        sort_by=sort_by,
        sort_order=sort_order,
        page=page,
        page_size=page_size,
    )
    return {"success": True, **result}


# ============================================================================
# SELF-SERVICE
# ============================================================================

@router.put("/continue")
async def continue_own_subscription(body: ContinueSubscriptionRequest, user: dict = Depends(require_auth)):
    subscription = await subscription_service.continue_own_subscription(
        user["user_id"], body.new_end_date, notes=body.notes
    )
    return {"success": True, "subscription": subscription}


# ============================================================================
# ADMIN LIFECYCLE
# ============================================================================

@router.post("/assign", status_code=status.HTTP_201_CREATED)
async def assign_subscription(body: AssignSubscriptionRequest, admin: dict = Depends(admin_route_guard)):
    subscription = await subscription_service.assign_subscription(
        body.user_id,
        body.plan_id,
        duration=body.duration,
        custom_listings_limit=body.custom_listings_limit,
        custom_browse_limit=body.custom_browse_limit,
        notes=body.notes,
        actor=admin,
    )
    return {"success": True, "subscription": subscription}


@router.put("/{user_id}/extend")
async def extend_subscription(user_id: str, body: ExtendSubscriptionRequest, admin: dict = Depends(admin_route_guard)):
    subscription = await subscription_service.extend_subscription(
        user_id,
        new_end_date=body.new_end_date,
        payment_status=body.payment_status,
        notes=body.notes,
        actor=admin,
    )
    return {"success": True, "subscription": subscription}


@router.put("/{user_id}/change-plan")
async def change_plan(user_id: str, body: ChangePlanRequest, admin: dict = Depends(admin_route_guard)):
    subscription = await subscription_service.change_plan(user_id, body.plan_id, notes=body.notes, actor=admin)
    return {"success": True, "subscription": subscription}


@router.put("/{user_id}/reset-browse")
async def reset_browse_count(user_id: str, admin: dict = Depends(admin_route_guard)):
    subscription = await subscription_service.reset_browse_count(user_id, actor=admin)
    return {"success": True, "subscription": subscription}


@router.put("/{user_id}/suspend")
async def suspend_subscription(
    user_id: str,
    body: Optional[SuspendSubscriptionRequest] = None,
    admin: dict = Depends(admin_route_guard),
):
    subscription = await subscription_service.suspend_subscription(
        user_id, reason=body.reason if body else None, actor=admin
    )
    return {"success": True, "subscription": subscription}


@router.put("/{user_id}/reactivate")
async def reactivate_subscription(user_id: str, admin: dict = Depends(admin_route_guard)):
    subscription = await subscription_service.reactivate_subscription(user_id, actor=admin)
    return {"success": True, "subscription": subscription}


@router.delete("/{user_id}")
async def cancel_subscription(user_id: str, admin: dict = Depends(admin_route_guard)):
    await subscription_service.cancel_subscription(user_id, actor=admin)
    return {"success": True, "message": "Subscription cancelled successfully"}
