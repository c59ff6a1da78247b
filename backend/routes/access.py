"""Persona access checks for the authenticated user.

- GET /api/access/me               - Every permission for the caller's persona
- GET /api/access/vehicle-listing  - Institute vehicle listing
- GET /api/access/job-post         - Institute job post
- GET /api/access/job-application  - Teacher job application
- GET /api/access/product-listing  - Vendor product listing

Vehicle and product listings share the listings counter; the persona decides
which one applies, and the other answers "role not permitted".
"""
from fastapi import APIRouter, Depends

from middleware import require_auth
from models import UserRole
from services.entitlement_engine import ROLE_NOT_PERMITTED, Action, persona_for_role
from services.entitlement_service import entitlement_service

router = APIRouter(prefix="/api/access", tags=["persona-access"])


def _not_permitted() -> dict:
    return {
        "success": True,
        "allowed": False,
        "remaining": 0,
        "limit_reached": False,
        "reason": ROLE_NOT_PERMITTED,
        "requires_upgrade": False,
        "suggested_action": "Switch to an account type that supports this action",
    }


async def _listing_access(user: dict, role: UserRole) -> dict:
    # Listings are one counter for institutes and vendors; gate on the role asked about
    if user.get("role") != UserRole.ADMIN.value and persona_for_role(user.get("role")).value != role.value:
        return _not_permitted()
    result = await entitlement_service.check(user["user_id"], Action.CREATE_LISTING)
    result.pop("subscription", None)
    return {"success": True, **result}


@router.get("/me")
async def get_my_access(user: dict = Depends(require_auth)):
    overview = await entitlement_service.get_access_overview(user["user_id"])
    return {"success": True, **overview}


@router.get("/vehicle-listing")
async def check_vehicle_listing_access(user: dict = Depends(require_auth)):
    return await _listing_access(user, UserRole.INSTITUTE)


@router.get("/product-listing")
async def check_product_listing_access(user: dict = Depends(require_auth)):
    return await _listing_access(user, UserRole.VENDOR)


@router.get("/job-post")
async def check_job_post_access(user: dict = Depends(require_auth)):
    result = await entitlement_service.check_job_post_limit(user["user_id"])
    result.pop("subscription", None)
    return {"success": True, **result}


@router.get("/job-application")
async def check_job_application_access(user: dict = Depends(require_auth)):
    result = await entitlement_service.check_job_application_access(user["user_id"])
    result.pop("subscription", None)
    return {"success": True, **result}
