"""Subscription plan catalogue.

Endpoints:
- GET  /api/subscriptions/plans                    - All plans (admin)
- GET  /api/subscriptions/plans/active             - Active plans, optional ?plan_type= (public)
- GET  /api/subscriptions/plans/{plan_id}          - One plan (authenticated)
- POST /api/subscriptions/plans                    - Create plan (admin)
- PUT  /api/subscriptions/plans/{plan_id}          - Update plan (admin)
- PUT  /api/subscriptions/plans/{plan_id}/toggle-status - Activate / deactivate (admin)
"""
from fastapi import APIRouter, Depends, Request, status
from typing import Optional
import logging

from middleware import admin_route_guard, require_auth
from models import AuditAction, PlanCreate, PlanUpdate, UserRole
from services.plan_catalog import plan_catalog
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/subscriptions/plans", tags=["subscription-plans"])


@router.get("")
async def list_plans(admin: dict = Depends(admin_route_guard)):
    plans = await plan_catalog.list_plans()
    return {"success": True, "plans": plans, "total": len(plans)}


@router.get("/active")
async def list_active_plans(plan_type: Optional[str] = None):
    """Public: plans shown on the pricing page."""
    plans = await plan_catalog.find_active_plans(plan_type)
    return {"success": True, "plans": plans}


@router.get("/{plan_id}")
async def get_plan(plan_id: str, user: dict = Depends(require_auth)):
    plan = await plan_catalog.find_plan_by_id(plan_id)
    return {"success": True, "plan": plan}


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_plan(body: PlanCreate, admin: dict = Depends(admin_route_guard)):
    plan = await plan_catalog.create_plan(body.model_dump())
    await create_audit_log(
        action=AuditAction.PLAN_CREATED,
        actor_role=UserRole.ADMIN,
        actor_id=admin.get("user_id"),
        resource_type="plan",
        resource_id=plan["plan_id"],
        after_state={"name": plan["name"], "price": plan["price"], "features": plan["features"]},
    )
    return {"success": True, "plan": plan}


@router.put("/{plan_id}")
async def update_plan(plan_id: str, body: PlanUpdate, admin: dict = Depends(admin_route_guard)):
    before = await plan_catalog.find_plan_by_id(plan_id)
    plan = await plan_catalog.update_plan(plan_id, body.model_dump(exclude_unset=True))
    await create_audit_log(
        action=AuditAction.PLAN_UPDATED,
        actor_role=UserRole.ADMIN,
        actor_id=admin.get("user_id"),
        resource_type="plan",
        resource_id=plan_id,
        before_state={k: before.get(k) for k in ("name", "display_name", "price", "duration", "features", "is_active")},
        after_state={k: plan.get(k) for k in ("name", "display_name", "price", "duration", "features", "is_active")},
    )
    return {"success": True, "plan": plan}


@router.put("/{plan_id}/toggle-status")
async def toggle_plan_status(plan_id: str, request: Request, admin: dict = Depends(admin_route_guard)):
    plan = await plan_catalog.toggle_active(plan_id)
    await create_audit_log(
        action=AuditAction.PLAN_STATUS_TOGGLED,
        actor_role=UserRole.ADMIN,
        actor_id=admin.get("user_id"),
        resource_type="plan",
        resource_id=plan_id,
        after_state={"is_active": plan["is_active"]},
        metadata={"endpoint": str(request.url.path)},
    )
    return {"success": True, "plan": plan}
