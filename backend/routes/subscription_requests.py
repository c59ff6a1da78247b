"""Subscription change requests.

- POST /api/subscriptions/requests              - Create (authenticated user, one pending at a time)
- GET  /api/subscriptions/requests              - List, ?status= ?user_id= (admin)
- GET  /api/subscriptions/requests/my           - Caller's own requests
- PUT  /api/subscriptions/requests/{request_id} - Approve / reject (admin)
"""
from fastapi import APIRouter, Depends, Query, status
from typing import Optional

from middleware import admin_route_guard, require_auth
from models import CreateChangeRequest, RequestStatus, ReviewChangeRequest
from services.subscription_request_service import subscription_request_service

router = APIRouter(prefix="/api/subscriptions/requests", tags=["subscription-requests"])


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_change_request(body: CreateChangeRequest, user: dict = Depends(require_auth)):
    request = await subscription_request_service.create_request(
        user["user_id"],
        body.requested_plan_id,
        body.request_type,
        user_notes=body.user_notes,
    )
    return {"success": True, "request": request}


@router.get("")
async def list_change_requests(
    status_filter: Optional[RequestStatus] = Query(None, alias="status"),
    user_id: Optional[str] = None,
    admin: dict = Depends(admin_route_guard),
):
    requests = await subscription_request_service.list_requests(
        status=status_filter.value if status_filter else None,
        user_id=user_id,
    )
    return {"success": True, "requests": requests, "total": len(requests)}


@router.get("/my")
async def list_own_change_requests(user: dict = Depends(require_auth)):
    requests = await subscription_request_service.list_own_requests(user["user_id"])
    return {"success": True, "requests": requests}


@router.put("/{request_id}")
async def review_change_request(request_id: str, body: ReviewChangeRequest, admin: dict = Depends(admin_route_guard)):
    request = await subscription_request_service.review_request(
        request_id, body.status, admin_notes=body.admin_notes, reviewer=admin
    )
    return {"success": True, "request": request}
